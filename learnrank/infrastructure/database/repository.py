# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Aggregate repository.

Maps LearnerAggregate documents onto the normalized KPI tables and back.
Every save goes through the BulkWriteExecutor and carries the version the
aggregate was read at:

- a never-persisted aggregate is inserted create-only with version 1
- a persisted one updates its parent row guarded on the read version and
  bumps it; unit and subject rows follow in the same transaction

A guard miss surfaces as ConcurrencyConflictError so callers can re-read
and re-apply their change.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from learnrank.domains.kpi.exceptions import ConcurrencyConflictError, PersistenceError
from learnrank.domains.kpi.models import (
    DayBucket,
    GlobalKPIs,
    LearnerAggregate,
    LearnerType,
    RankingEntry,
    RankingScope,
    RankingTable,
    ScopeKind,
    SubjectKPIs,
    UnitKPIs,
    WeeklyPositionEntry,
    empty_histogram,
)
from learnrank.infrastructure.database.bulk import BulkWriteExecutor, BulkWriteResult, WriteOperation
from learnrank.infrastructure.database.connection import DatabaseError
from learnrank.infrastructure.database.models import (
    LearnerAggregateRow,
    RankingTableRow,
    SubjectKPIRow,
    UnitKPIRow,
)
from learnrank.utils.datetime import ensure_utc, utc_now

logger = logging.getLogger(__name__)

_UNIT_COLUMNS = (
    "unit_title",
    "subject_id",
    "score",
    "rank_position",
    "total_peers",
    "percentile",
    "concept_count",
    "local_study_minutes",
    "intelligent_sessions_total",
    "intelligent_sessions_successful",
    "intelligent_sessions_local",
    "free_sessions_local",
    "success_rate",
    "mastered_count",
    "reviewing_count",
    "mastery_rate",
    "quiz_minutes",
    "guided_study_minutes",
    "free_study_minutes",
)

_SUBJECT_COLUMNS = (
    "subject_name",
    "score",
    "rank_position",
    "total_peers",
    "percentile",
    "study_minutes",
    "intelligent_sessions",
)

_RANK_COLUMNS = ("rank_position", "total_peers", "percentile")


class AggregateRepository:
    """Reads and writes learner aggregates and ranking tables.

    Attributes:
        executor: Bulk writer used for every mutation.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        executor: BulkWriteExecutor,
    ) -> None:
        self._sessionmaker = sessionmaker
        self.executor = executor

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self, learner_id: str) -> LearnerAggregate | None:
        """Load one aggregate, or None when it was never persisted."""
        loaded = await self.load_many([learner_id])
        return loaded.get(learner_id)

    async def load_many(self, learner_ids: Iterable[str]) -> dict[str, LearnerAggregate]:
        """Load several aggregates keyed by learner id; missing ones are omitted."""
        ids = list(dict.fromkeys(learner_ids))
        if not ids:
            return {}

        try:
            async with self._sessionmaker() as session:
                parents = (
                    await session.execute(
                        select(LearnerAggregateRow).where(LearnerAggregateRow.learner_id.in_(ids))
                    )
                ).scalars().all()
                units = (
                    await session.execute(select(UnitKPIRow).where(UnitKPIRow.learner_id.in_(ids)))
                ).scalars().all()
                subjects = (
                    await session.execute(
                        select(SubjectKPIRow).where(SubjectKPIRow.learner_id.in_(ids))
                    )
                ).scalars().all()
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load learner aggregates", e) from e

        units_by_learner: dict[str, list[UnitKPIRow]] = {}
        for row in units:
            units_by_learner.setdefault(row.learner_id, []).append(row)
        subjects_by_learner: dict[str, list[SubjectKPIRow]] = {}
        for row in subjects:
            subjects_by_learner.setdefault(row.learner_id, []).append(row)

        return {
            parent.learner_id: self._to_aggregate(
                parent,
                units_by_learner.get(parent.learner_id, []),
                subjects_by_learner.get(parent.learner_id, []),
            )
            for parent in parents
        }

    async def scope_scores(
        self,
        scope: RankingScope,
        learner_ids: Sequence[str] | None = None,
    ) -> dict[str, float]:
        """Scores of every learner holding a scope.

        Reads only the indexed child table of the scope.

        Args:
            scope: Unit or subject to read.
            learner_ids: Restrict to these learners (an institution roster);
                None reads every learner holding the scope.

        Returns:
            Mapping of learner id to score.
        """
        if scope.kind is ScopeKind.UNIT:
            model, column = UnitKPIRow, UnitKPIRow.unit_id
        else:
            model, column = SubjectKPIRow, SubjectKPIRow.subject_id

        stmt = select(model.learner_id, model.score).where(column == scope.scope_id)
        if learner_ids is not None:
            if not learner_ids:
                return {}
            stmt = stmt.where(model.learner_id.in_(list(learner_ids)))

        try:
            async with self._sessionmaker() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to read scores of {scope}", e) from e

        return {learner_id: score for learner_id, score in rows}

    async def institution_ids(self) -> list[str]:
        """Institutions recorded on stored aggregates."""
        try:
            async with self._sessionmaker() as session:
                rows = await session.execute(
                    select(LearnerAggregateRow.institution_id)
                    .where(LearnerAggregateRow.institution_id.is_not(None))
                    .distinct()
                    .order_by(LearnerAggregateRow.institution_id)
                )
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to list institutions", e) from e
        return list(rows.scalars().all())

    async def load_ranking_table(
        self, institution_id: str, scope: RankingScope
    ) -> RankingTable | None:
        """Load the persisted ranking table of a scope, if any."""
        try:
            async with self._sessionmaker() as session:
                row = await session.get(
                    RankingTableRow, (institution_id, scope.kind.value, scope.scope_id)
                )
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to load ranking table {scope}", e) from e

        if row is None:
            return None
        return RankingTable(
            institution_id=row.institution_id,
            scope_kind=ScopeKind(row.scope_kind),
            scope_id=row.scope_id,
            scope_name=row.scope_name,
            entries=[RankingEntry.model_validate(entry) for entry in row.entries],
            total_peers=row.total_peers,
            last_updated=ensure_utc(row.last_updated),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def build_save_operations(
        self,
        aggregate: LearnerAggregate,
        institution_id: str | None = None,
        unit_ids: Iterable[str] | None = None,
        subject_ids: Iterable[str] | None = None,
    ) -> list[WriteOperation]:
        """Write operations persisting an aggregate at its next version.

        The guarded parent write always comes first so that a conflict
        aborts the transaction before any child row is touched.

        Args:
            aggregate: Aggregate to persist; its version is the one it was read at.
            institution_id: Institution to record on the parent row.
            unit_ids: Only write these unit rows (None writes all).
            subject_ids: Only write these subject rows (None writes all).
        """
        parent = self._parent_payload(aggregate, institution_id)
        key = {"learner_id": aggregate.learner_id}

        if aggregate.is_persisted:
            parent["version"] = aggregate.version + 1
            operations = [
                WriteOperation.update(
                    LearnerAggregateRow, key, parent, guard={"version": aggregate.version}
                )
            ]
        else:
            parent["version"] = 1
            parent["created_at"] = aggregate.created_at
            operations = [WriteOperation.set(LearnerAggregateRow, key, parent, create_only=True)]

        wanted_units = aggregate.units.keys() if unit_ids is None else set(unit_ids)
        for unit_id in wanted_units:
            unit = aggregate.units.get(unit_id)
            if unit is None:
                continue
            operations.append(
                WriteOperation.set(
                    UnitKPIRow,
                    {"learner_id": aggregate.learner_id, "unit_id": unit_id},
                    {column: getattr(unit, column) for column in _UNIT_COLUMNS},
                )
            )

        subjects = aggregate.subjects or {}
        wanted_subjects = subjects.keys() if subject_ids is None else set(subject_ids)
        for subject_id in wanted_subjects:
            subject = subjects.get(subject_id)
            if subject is None:
                continue
            payload = {column: getattr(subject, column) for column in _SUBJECT_COLUMNS}
            payload["child_unit_ids"] = sorted(subject.child_unit_ids)
            operations.append(
                WriteOperation.set(
                    SubjectKPIRow,
                    {"learner_id": aggregate.learner_id, "subject_id": subject_id},
                    payload,
                )
            )

        return operations

    def build_rank_operations(
        self,
        aggregate: LearnerAggregate,
        scopes: Iterable[RankingScope],
    ) -> list[WriteOperation]:
        """Guarded operations writing ranking results of some scopes.

        Only rank columns of the given unit and subject rows change, plus
        the global average percentile and the version on the parent row.
        """
        operations = [
            WriteOperation.update(
                LearnerAggregateRow,
                {"learner_id": aggregate.learner_id},
                {
                    "average_percentile_global": aggregate.global_kpis.average_percentile_global,
                    "last_updated": aggregate.global_kpis.last_updated,
                    "version": aggregate.version + 1,
                    "updated_at": utc_now(),
                },
                guard={"version": aggregate.version},
            )
        ]
        for scope in scopes:
            if scope.kind is ScopeKind.UNIT:
                target: UnitKPIs | SubjectKPIs | None = aggregate.units.get(scope.scope_id)
                model: type[UnitKPIRow] | type[SubjectKPIRow] = UnitKPIRow
                key = {"learner_id": aggregate.learner_id, "unit_id": scope.scope_id}
            else:
                target = (aggregate.subjects or {}).get(scope.scope_id)
                model = SubjectKPIRow
                key = {"learner_id": aggregate.learner_id, "subject_id": scope.scope_id}
            if target is None:
                continue
            operations.append(
                WriteOperation.update(
                    model, key, {column: getattr(target, column) for column in _RANK_COLUMNS}
                )
            )
        return operations

    def build_ranking_table_operation(self, table: RankingTable) -> WriteOperation:
        """SET operation replacing a persisted ranking table."""
        return WriteOperation.set(
            RankingTableRow,
            {
                "institution_id": table.institution_id,
                "scope_kind": table.scope_kind.value,
                "scope_id": table.scope_id,
            },
            {
                "scope_name": table.scope_name,
                "entries": [entry.model_dump(mode="json") for entry in table.entries],
                "total_peers": table.total_peers,
                "last_updated": table.last_updated,
            },
        )

    async def save(
        self,
        aggregate: LearnerAggregate,
        institution_id: str | None = None,
        unit_ids: Iterable[str] | None = None,
        subject_ids: Iterable[str] | None = None,
    ) -> LearnerAggregate:
        """Persist an aggregate and advance its version.

        Args:
            aggregate: Aggregate read at ``aggregate.version``.
            institution_id: Institution to record on the parent row.
            unit_ids: Only write these unit rows (None writes all).
            subject_ids: Only write these subject rows (None writes all).

        Returns:
            The same aggregate with its version advanced.

        Raises:
            ConcurrencyConflictError: If the stored version moved on.
            PersistenceError: If the write failed after retries.
        """
        operations = self.build_save_operations(aggregate, institution_id, unit_ids, subject_ids)
        await self._execute_guarded(aggregate, operations)
        aggregate.version += 1
        logger.debug(
            "Saved aggregate of learner %s at version %d", aggregate.learner_id, aggregate.version
        )
        return aggregate

    async def save_rankings(
        self, aggregate: LearnerAggregate, scopes: Iterable[RankingScope]
    ) -> LearnerAggregate:
        """Persist ranking write-back of some scopes and advance the version.

        Raises:
            ConcurrencyConflictError: If the stored version moved on.
            PersistenceError: If the write failed after retries.
        """
        await self._execute_guarded(aggregate, self.build_rank_operations(aggregate, scopes))
        aggregate.version += 1
        return aggregate

    async def _execute_guarded(
        self, aggregate: LearnerAggregate, operations: list[WriteOperation]
    ) -> BulkWriteResult:
        result = await self.executor.execute(operations, halt_on_failure=True)
        if result.has_conflicts:
            raise ConcurrencyConflictError(aggregate.learner_id, aggregate.version)
        if not result.success:
            raise PersistenceError(
                f"Failed to persist aggregate of learner {aggregate.learner_id}",
                errors=result.errors,
            )
        return result

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _parent_payload(aggregate: LearnerAggregate, institution_id: str | None) -> dict[str, Any]:
        g = aggregate.global_kpis
        history = None
        if aggregate.position_history is not None:
            history = {
                subject_id: [entry.model_dump(mode="json") for entry in entries]
                for subject_id, entries in aggregate.position_history.items()
            }
        payload: dict[str, Any] = {
            "learner_type": aggregate.learner_type.value,
            "roster_bound": aggregate.subjects is not None,
            "score_global": g.score_global,
            "average_percentile_global": g.average_percentile_global,
            "total_study_minutes": g.total_study_minutes,
            "intelligent_sessions_global": g.intelligent_sessions_global,
            "total_units": g.total_units,
            "total_subjects": g.total_subjects,
            "last_updated": g.last_updated,
            "weekly_histogram": [bucket.model_dump(mode="json") for bucket in aggregate.weekly_histogram],
            "position_history": history,
            "updated_at": aggregate.updated_at,
        }
        if institution_id is not None:
            payload["institution_id"] = institution_id
        return payload

    @staticmethod
    def _to_aggregate(
        parent: LearnerAggregateRow,
        units: list[UnitKPIRow],
        subjects: list[SubjectKPIRow],
    ) -> LearnerAggregate:
        histogram = (
            [DayBucket.model_validate(bucket) for bucket in parent.weekly_histogram]
            if parent.weekly_histogram
            else empty_histogram()
        )

        subject_map: dict[str, SubjectKPIs] | None = None
        history: dict[str, list[WeeklyPositionEntry]] | None = None
        if parent.roster_bound:
            subject_map = {
                row.subject_id: SubjectKPIs(
                    subject_id=row.subject_id,
                    child_unit_ids=set(row.child_unit_ids or []),
                    **{column: getattr(row, column) for column in _SUBJECT_COLUMNS},
                )
                for row in subjects
            }
            history = {
                subject_id: [WeeklyPositionEntry.model_validate(entry) for entry in entries]
                for subject_id, entries in (parent.position_history or {}).items()
            }

        return LearnerAggregate(
            learner_id=parent.learner_id,
            learner_type=LearnerType(parent.learner_type),
            global_kpis=GlobalKPIs(
                score_global=parent.score_global,
                average_percentile_global=parent.average_percentile_global,
                total_study_minutes=parent.total_study_minutes,
                intelligent_sessions_global=parent.intelligent_sessions_global,
                total_units=parent.total_units,
                total_subjects=parent.total_subjects,
                last_updated=_aware(parent.last_updated),
            ),
            units={
                row.unit_id: UnitKPIs(
                    unit_id=row.unit_id,
                    **{column: getattr(row, column) for column in _UNIT_COLUMNS},
                )
                for row in units
            },
            subjects=subject_map,
            weekly_histogram=histogram,
            position_history=history,
            version=parent.version,
            created_at=_aware(parent.created_at),
            updated_at=_aware(parent.updated_at),
        )


def _aware(value: datetime | None) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    return ensure_utc(value) or utc_now()
