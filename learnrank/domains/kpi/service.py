# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""KPI service.

This module provides the outward-facing operations of the KPI engine:
- Applying study events (delegates to KPIUpdater)
- Reading learner aggregates and position histories
- Serving ranking tables, backed by a persisted table refreshed on schedule
- Bulk writes and the scheduled institution-wide ranking recompute

The service holds no global state. build_kpi_service() wires the whole
object graph from settings and a sessionmaker.

Usage:
    service = build_kpi_service(sessionmaker, directory, settings.kpi)

    result = await service.apply_event(event)
    aggregate = await service.get_learner_aggregate("ana")
    table = await service.get_ranking_table(RankingScope.subject("math"),
                                            institution_id="school-1")
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from learnrank.domains.kpi.directory import Catalog, RosterDirectory, UnitDirectory
from learnrank.domains.kpi.events import StudyEvent
from learnrank.domains.kpi.exceptions import ConcurrencyConflictError, KPIError
from learnrank.domains.kpi.history import PositionHistoryMaintainer
from learnrank.domains.kpi.locks import LearnerLocks
from learnrank.domains.kpi.models import (
    LearnerAggregate,
    LearnerType,
    RankingEntry,
    RankingScope,
    RankingTable,
    ScopeKind,
    WeeklyPositionEntry,
    percentile_for,
)
from learnrank.domains.kpi.ranking import (
    RankingEngine,
    RankingOutcome,
    RankingStatus,
    apply_outcomes,
    order_scores,
)
from learnrank.domains.kpi.updater import ApplyResult, KPIUpdater
from learnrank.domains.kpi.writeback import write_back
from learnrank.infrastructure.database.bulk import (
    BulkWriteExecutor,
    BulkWriteResult,
    ProgressCallback,
    WriteOperation,
)
from learnrank.infrastructure.database.connection import DatabaseError
from learnrank.infrastructure.database.repository import AggregateRepository
from learnrank.utils.datetime import iso_week_key, utc_now

if TYPE_CHECKING:
    from learnrank.core.config.settings import KPISettings

logger = logging.getLogger(__name__)


class InstitutionRecomputeResult:
    """Result of recomputing every ranking of an institution.

    Attributes:
        institution_id: Institution that was recomputed.
        learners_processed: Roster members with a stored aggregate.
        scopes_ranked: Units and subjects ranked.
        write: Result of the batched rank write.
        table_write: Result of the ranking table write.
        repaired_learners: Learners rewritten one by one after their batch
            was not committed.
        failed_learners: Learners whose ranks could not be written.
    """

    def __init__(
        self,
        institution_id: str,
        learners_processed: int = 0,
        scopes_ranked: int = 0,
        write: BulkWriteResult | None = None,
        table_write: BulkWriteResult | None = None,
        repaired_learners: list[str] | None = None,
        failed_learners: list[str] | None = None,
    ) -> None:
        self.institution_id = institution_id
        self.learners_processed = learners_processed
        self.scopes_ranked = scopes_ranked
        self.write = write or BulkWriteResult(success=True)
        self.table_write = table_write or BulkWriteResult(success=True)
        self.repaired_learners = repaired_learners or []
        self.failed_learners = failed_learners or []

    @property
    def success(self) -> bool:
        return self.table_write.success and not self.failed_learners

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "institution_id": self.institution_id,
            "success": self.success,
            "learners_processed": self.learners_processed,
            "scopes_ranked": self.scopes_ranked,
            "write": self.write.to_dict(),
            "table_write": self.table_write.to_dict(),
            "repaired_learners": list(self.repaired_learners),
            "failed_learners": list(self.failed_learners),
        }


class KPIService:
    """Facade over the KPI engine components."""

    def __init__(
        self,
        repository: AggregateRepository,
        executor: BulkWriteExecutor,
        updater: KPIUpdater,
        ranking: RankingEngine,
        history: PositionHistoryMaintainer,
        roster: RosterDirectory,
        catalog: Catalog,
        locks: LearnerLocks,
        staleness_minutes: int = 10,
        subject_table_limit: int = 100,
        unit_table_limit: int = 50,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.updater = updater
        self.ranking = ranking
        self.history = history
        self._roster = roster
        self._catalog = catalog
        self._locks = locks
        self.staleness_minutes = staleness_minutes
        self.subject_table_limit = subject_table_limit
        self.unit_table_limit = unit_table_limit

    # ------------------------------------------------------------------
    # Events and aggregates
    # ------------------------------------------------------------------

    async def apply_event(self, event: StudyEvent) -> ApplyResult:
        """Apply a study event to its owner's aggregate."""
        return await self.updater.apply(event)

    async def get_learner_aggregate(self, learner_id: str) -> LearnerAggregate | None:
        """Current aggregate of a learner, or None if none was created yet."""
        return await self.repository.load(learner_id)

    async def initialize_learner(
        self, learner_id: str, learner_type: LearnerType | str = LearnerType.FREE
    ) -> LearnerAggregate:
        """Create a zeroed aggregate for a learner.

        Idempotent: an existing aggregate is returned unchanged.

        Args:
            learner_id: Learner to initialize.
            learner_type: Account type; school types get subject maps.

        Returns:
            The stored aggregate.
        """
        learner_type = LearnerType(learner_type)
        async with self._locks.hold(learner_id):
            existing = await self.repository.load(learner_id)
            if existing is not None:
                return existing

            aggregate = LearnerAggregate.new(learner_id, learner_type)
            institution_id = await self._roster.institution_of(learner_id)
            try:
                return await self.repository.save(aggregate, institution_id=institution_id)
            except ConcurrencyConflictError:
                # Created concurrently by another process.
                stored = await self.repository.load(learner_id)
                if stored is None:
                    raise
                return stored

    async def get_position_history(
        self, learner_id: str, subject_id: str, weeks: int = 8
    ) -> list[WeeklyPositionEntry]:
        """Position ledger of a subject for charting, oldest first.

        When fewer than ``weeks`` entries exist, the series is padded at the
        front with the most recent known position and a zero score.

        Args:
            learner_id: Learner to read.
            subject_id: Subject of the ledger.
            weeks: Number of weeks wanted.

        Returns:
            Up to ``weeks`` entries; empty when nothing was recorded.
        """
        aggregate = await self.repository.load(learner_id)
        if aggregate is None or not aggregate.position_history:
            return []

        entries = list(aggregate.position_history.get(subject_id, []))[-weeks:]
        if not entries or len(entries) >= weeks:
            return entries

        latest = entries[-1]
        padding = []
        for offset in range(weeks - len(entries), 0, -1):
            start = entries[0].window_start - timedelta(weeks=offset)
            padding.append(
                WeeklyPositionEntry(
                    week_key=iso_week_key(start),
                    window_start=start,
                    window_end=start + timedelta(days=6),
                    position=latest.position,
                    score_at_time=0.0,
                    total_peers_at_time=latest.total_peers_at_time,
                    delta_from_previous_week=0,
                )
            )
        return padding + entries

    # ------------------------------------------------------------------
    # Rankings
    # ------------------------------------------------------------------

    async def get_ranking_table(
        self,
        scope: RankingScope,
        limit: int = 50,
        institution_id: str | None = None,
    ) -> list[RankingEntry]:
        """Ordered ranking of a scope.

        A persisted institution table younger than the staleness window is
        served as is; otherwise the ranking is recomputed. If recomputing
        fails, the last persisted table is served instead.

        Args:
            scope: Unit or subject.
            limit: Maximum entries returned.
            institution_id: Institution whose roster is ranked; None ranks
                every learner holding the scope.

        Returns:
            Entries ordered by position.

        Raises:
            KPIError: If recomputing fails and no persisted table exists.
            DatabaseError: Same, for store failures.
        """
        table: RankingTable | None = None
        if institution_id is not None:
            table = await self.repository.load_ranking_table(institution_id, scope)
            if table is not None and not table.needs_update(utc_now(), self.staleness_minutes):
                return table.entries[:limit]

        try:
            snapshot = await self.ranking.build_snapshot(scope, institution_id)
        except (KPIError, DatabaseError) as e:
            if table is None:
                raise
            logger.warning("Serving stale ranking table for %s: %s", scope, e)
            return table.entries[:limit]

        return snapshot.entries[:limit]

    async def recompute_institution(self, institution_id: str) -> InstitutionRecomputeResult:
        """Recompute every unit and subject ranking of an institution.

        Rank fields and global averages of every roster member are written
        with one version-guarded update per learner. Learners whose batch
        was not committed, e.g. because a study event moved one of them on,
        are re-read and rewritten one by one. The top entries of each scope
        are persisted as ranking tables in a separate write.

        Args:
            institution_id: Institution to recompute.

        Returns:
            InstitutionRecomputeResult with the write outcomes.
        """
        roster = await self._roster.roster(institution_id)
        aggregates = await self.repository.load_many(roster)
        if not aggregates:
            logger.info("No aggregates to rank for institution %s", institution_id)
            return InstitutionRecomputeResult(institution_id)

        scores: dict[RankingScope, dict[str, float]] = {}
        for learner_id, aggregate in aggregates.items():
            for unit_id, unit in aggregate.units.items():
                scores.setdefault(RankingScope.unit(unit_id), {})[learner_id] = unit.score
            for subject_id, subject in (aggregate.subjects or {}).items():
                scores.setdefault(RankingScope.subject(subject_id), {})[learner_id] = subject.score

        names = dict(
            zip(
                aggregates,
                await asyncio.gather(*(self._roster.display_name(lid) for lid in aggregates)),
            )
        )

        outcomes: dict[str, list[RankingOutcome]] = {}
        tables: list[RankingTable] = []
        now = utc_now()
        for scope, scope_scores in scores.items():
            ordered = order_scores(scope_scores)
            total = len(ordered)
            for position, (learner_id, score) in enumerate(ordered, start=1):
                outcomes.setdefault(learner_id, []).append(
                    RankingOutcome(
                        scope=scope,
                        learner_id=learner_id,
                        status=RankingStatus.APPLIED,
                        position=position,
                        total_peers=total,
                        percentile=percentile_for(position, total),
                        score=score,
                    )
                )

            limit = self.subject_table_limit if scope.kind is ScopeKind.SUBJECT else self.unit_table_limit
            tables.append(
                RankingTable(
                    institution_id=institution_id,
                    scope_kind=scope.kind,
                    scope_id=scope.scope_id,
                    scope_name=await self._scope_name(scope),
                    entries=[
                        RankingEntry(
                            learner_id=learner_id,
                            display_name=names.get(learner_id, learner_id),
                            score=score,
                            position=position,
                        )
                        for position, (learner_id, score) in enumerate(ordered[:limit], start=1)
                    ],
                    total_peers=total,
                    last_updated=now,
                )
            )

        operations: list[WriteOperation] = []
        for learner_id, learner_outcomes in outcomes.items():
            aggregate = aggregates[learner_id]
            scopes = apply_outcomes(aggregate, learner_outcomes)
            if scopes:
                aggregate.global_kpis.last_updated = now
                operations.extend(self.repository.build_rank_operations(aggregate, scopes))

        write = await self.executor.execute(operations)
        repaired: list[str] = []
        failed: list[str] = []
        for learner_id in dict.fromkeys(op.key["learner_id"] for op in write.failed_operations):
            try:
                await self._rewrite_ranks(learner_id, outcomes[learner_id], now)
            except (KPIError, DatabaseError) as e:
                logger.warning("Could not rewrite ranks of learner %s: %s", learner_id, e)
                failed.append(learner_id)
            else:
                repaired.append(learner_id)

        table_write = await self.executor.execute(
            [self.repository.build_ranking_table_operation(table) for table in tables]
        )
        result = InstitutionRecomputeResult(
            institution_id,
            learners_processed=len(aggregates),
            scopes_ranked=len(scores),
            write=write,
            table_write=table_write,
            repaired_learners=repaired,
            failed_learners=failed,
        )
        logger.info(
            "Recomputed rankings of institution %s: %d learners, %d scopes, %s, %d repaired, %d failed",
            institution_id,
            result.learners_processed,
            result.scopes_ranked,
            write.summary,
            len(repaired),
            len(failed),
        )
        return result

    async def _rewrite_ranks(
        self, learner_id: str, learner_outcomes: list[RankingOutcome], now: datetime
    ) -> None:
        scopes: list[RankingScope] = []

        def mutate(aggregate: LearnerAggregate) -> bool:
            scopes[:] = apply_outcomes(aggregate, learner_outcomes)
            aggregate.global_kpis.last_updated = now
            return bool(scopes)

        await write_back(
            self.repository,
            self._locks,
            learner_id,
            mutate,
            lambda aggregate: self.repository.save_rankings(aggregate, scopes),
            self.ranking.max_conflict_retries,
        )

    async def recompute_all_institutions(self) -> list[InstitutionRecomputeResult]:
        """Recompute rankings of every institution with stored aggregates."""
        results = []
        for institution_id in await self.repository.institution_ids():
            results.append(await self.recompute_institution(institution_id))
        return results

    # ------------------------------------------------------------------
    # Bulk writes
    # ------------------------------------------------------------------

    async def execute_bulk(
        self,
        operations: Sequence[WriteOperation],
        on_progress: ProgressCallback | None = None,
    ) -> BulkWriteResult:
        """Run arbitrary writes through the bulk executor."""
        return await self.executor.execute(operations, on_progress=on_progress)

    async def _scope_name(self, scope: RankingScope) -> str:
        if scope.kind is ScopeKind.SUBJECT:
            return await self._catalog.subject_name(scope.scope_id)
        return (await self._catalog.unit_info(scope.scope_id)).title


def build_kpi_service(
    sessionmaker: async_sessionmaker[AsyncSession],
    units: UnitDirectory,
    kpi_settings: "KPISettings",
    roster: RosterDirectory | None = None,
    catalog: Catalog | None = None,
) -> KPIService:
    """Wire a KPIService and its collaborators.

    Args:
        sessionmaker: Sessionmaker of the aggregate store.
        units: Unit owner lookup. Also used as roster and catalog when
            those are not given (InMemoryDirectory implements all three).
        kpi_settings: KPI engine settings.
        roster: Roster lookup.
        catalog: Unit and subject names.

    Returns:
        A ready KPIService.
    """
    roster = roster or units  # type: ignore[assignment]
    catalog = catalog or units  # type: ignore[assignment]

    locks = LearnerLocks()
    executor = BulkWriteExecutor.from_settings(sessionmaker, kpi_settings)
    repository = AggregateRepository(sessionmaker, executor)
    ranking = RankingEngine(
        repository,
        roster,
        locks,
        timeout_seconds=kpi_settings.ranking_timeout_seconds,
        max_conflict_retries=kpi_settings.max_conflict_retries,
    )
    history = PositionHistoryMaintainer(
        repository,
        locks,
        max_weeks=kpi_settings.history_max_weeks,
        max_conflict_retries=kpi_settings.max_conflict_retries,
    )
    updater = KPIUpdater(
        repository,
        units,
        roster,
        catalog,
        locks,
        ranking=ranking,
        history=history,
        max_conflict_retries=kpi_settings.max_conflict_retries,
        defer_ranking=kpi_settings.defer_ranking,
    )
    return KPIService(
        repository,
        executor,
        updater,
        ranking,
        history,
        roster,
        catalog,
        locks,
        staleness_minutes=kpi_settings.ranking_staleness_minutes,
        subject_table_limit=kpi_settings.subject_table_limit,
        unit_table_limit=kpi_settings.unit_table_limit,
    )
