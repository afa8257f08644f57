# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Incremental KPI maintenance from study events.

Each study event mutates exactly one learner aggregate: the owner of the
unit the event belongs to. The update is additive (minutes, counters and
scores only grow) and runs as a locked, version-guarded read-modify-write,
so concurrent events for the same learner never lose an update.

After the aggregate is persisted, the unit and subject rankings of the
learner are refreshed as a best-effort side channel: ranking problems are
reported next to the result but never change its primary status.

Usage:
    updater = KPIUpdater(repository, directory, directory, directory, locks, ranking, history)
    result = await updater.apply(QuizCompleted(unit_id="nb-1", duration_minutes=10,
                                               score=120, timestamp=utc_now()))
    if result.status is ApplyStatus.APPLIED:
        ...
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from learnrank.domains.kpi.directory import (
    Catalog,
    RosterDirectory,
    UnitDirectory,
    UnitInfo,
    UnitOwner,
)
from learnrank.domains.kpi.events import (
    FreeStudyCompleted,
    GuidedStudyCompleted,
    QuizCompleted,
    StudyEvent,
)
from learnrank.domains.kpi.exceptions import (
    ComputationError,
    ConcurrencyConflictError,
    PersistenceError,
    RankingTimeoutError,
    ResolutionError,
)
from learnrank.domains.kpi.history import PositionHistoryMaintainer
from learnrank.domains.kpi.locks import LearnerLocks
from learnrank.domains.kpi.models import (
    LearnerAggregate,
    LearnerType,
    RankingScope,
    ScopeKind,
    SubjectKPIs,
    UnitKPIs,
)
from learnrank.domains.kpi.ranking import RankingEngine, RankingOutcome, RankingStatus
from learnrank.infrastructure.database.connection import DatabaseError
from learnrank.infrastructure.database.repository import AggregateRepository
from learnrank.utils.datetime import utc_now

logger = logging.getLogger(__name__)


class ApplyStatus(str, Enum):
    """Primary outcome of applying an event."""

    APPLIED = "applied"
    DROPPED = "dropped"
    REJECTED = "rejected"
    FAILED = "failed"


class SideChannelStatus(str, Enum):
    """Outcome of a best-effort follow-up such as a ranking refresh."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    STALE = "stale"
    IGNORED = "ignored"
    DEFERRED = "deferred"


@dataclass
class SideChannelResult:
    """Outcome of one best-effort follow-up.

    Attributes:
        name: What ran, e.g. ``ranking:unit:nb-1`` or ``history:math``.
        status: How it ended.
        detail: Error text for ignored failures.
    """

    name: str
    status: SideChannelStatus
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "detail": self.detail}


@dataclass
class ApplyResult:
    """Result of applying one study event.

    Attributes:
        status: Primary outcome.
        learner_id: Owner of the event's unit, when resolved.
        unit_id: Unit the event belongs to.
        errors: Failure details for REJECTED and FAILED.
        side_channels: Ranking and history follow-ups.
        aggregate: Persisted aggregate after the primary write.
    """

    status: ApplyStatus
    unit_id: str
    learner_id: str | None = None
    errors: list[str] = field(default_factory=list)
    side_channels: list[SideChannelResult] = field(default_factory=list)
    aggregate: LearnerAggregate | None = None

    @property
    def applied(self) -> bool:
        return self.status is ApplyStatus.APPLIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "unit_id": self.unit_id,
            "learner_id": self.learner_id,
            "errors": list(self.errors),
            "side_channels": [result.to_dict() for result in self.side_channels],
        }


class KPIUpdater:
    """Applies study events to learner aggregates.

    Attributes:
        max_conflict_retries: Re-reads allowed after a version conflict.
        defer_ranking: Refresh rankings on a background task instead of
            before apply() returns.
    """

    def __init__(
        self,
        repository: AggregateRepository,
        units: UnitDirectory,
        roster: RosterDirectory,
        catalog: Catalog,
        locks: LearnerLocks,
        ranking: RankingEngine | None = None,
        history: PositionHistoryMaintainer | None = None,
        max_conflict_retries: int = 5,
        defer_ranking: bool = False,
    ) -> None:
        self._repository = repository
        self._units = units
        self._roster = roster
        self._catalog = catalog
        self._locks = locks
        self._ranking = ranking
        self._history = history
        self.max_conflict_retries = max_conflict_retries
        self.defer_ranking = defer_ranking
        self._pending: set[asyncio.Task[list[SideChannelResult]]] = set()

    async def apply(self, event: StudyEvent) -> ApplyResult:
        """Apply one study event.

        Args:
            event: Validated study event.

        Returns:
            ApplyResult; store failures are reported, never raised.
        """
        try:
            owner = await self.resolve_owner(event.unit_id)
        except ResolutionError as e:
            logger.warning("Dropping %s event: %s", event.kind, e.message)
            return ApplyResult(status=ApplyStatus.DROPPED, unit_id=event.unit_id, errors=[e.message])

        learner_id = owner.learner_id
        info = await self._catalog.unit_info(event.unit_id)
        subject_id = event.subject_id or owner.subject_id or info.subject_id
        subject_name = await self._catalog.subject_name(subject_id) if subject_id else ""
        institution_id = await self._roster.institution_of(learner_id)

        attempt = 0
        while True:
            try:
                async with self._locks.hold(learner_id):
                    aggregate = await self._load_or_create(learner_id)
                    try:
                        self._mutate(aggregate, event, info, subject_id, subject_name)
                    except ComputationError as e:
                        logger.warning(
                            "Rejecting %s event for learner %s: %s", event.kind, learner_id, e
                        )
                        return ApplyResult(
                            status=ApplyStatus.REJECTED,
                            unit_id=event.unit_id,
                            learner_id=learner_id,
                            errors=[e.message],
                        )

                    touched_subjects = [subject_id] if subject_id and aggregate.subjects is not None else []
                    await self._repository.save(
                        aggregate,
                        institution_id=institution_id,
                        unit_ids=[event.unit_id],
                        subject_ids=touched_subjects,
                    )
                break
            except ConcurrencyConflictError as e:
                if attempt >= self.max_conflict_retries:
                    logger.error("Giving up on learner %s after %d conflicts", learner_id, attempt + 1)
                    return ApplyResult(
                        status=ApplyStatus.FAILED,
                        unit_id=event.unit_id,
                        learner_id=learner_id,
                        errors=[e.message],
                    )
                attempt += 1
                logger.debug("Version conflict for learner %s, retry %d", learner_id, attempt)
            except PersistenceError as e:
                logger.error("Failed to persist learner %s: %s", learner_id, e.errors)
                return ApplyResult(
                    status=ApplyStatus.FAILED,
                    unit_id=event.unit_id,
                    learner_id=learner_id,
                    errors=e.errors or [e.message],
                )
            except DatabaseError as e:
                logger.error("Failed to load learner %s: %s", learner_id, e)
                return ApplyResult(
                    status=ApplyStatus.FAILED,
                    unit_id=event.unit_id,
                    learner_id=learner_id,
                    errors=[str(e)],
                )

        result = ApplyResult(
            status=ApplyStatus.APPLIED,
            unit_id=event.unit_id,
            learner_id=learner_id,
            aggregate=aggregate,
        )
        scopes = [RankingScope.unit(event.unit_id)]
        if subject_id and aggregate.subjects is not None:
            scopes.append(RankingScope.subject(subject_id))
        result.side_channels = await self._schedule_rankings(learner_id, scopes)
        return result

    async def resolve_owner(self, unit_id: str) -> UnitOwner:
        """Owner of a unit.

        Raises:
            ResolutionError: If the unit has no known owner.
        """
        owner = await self._units.owner_of(unit_id)
        if owner is None:
            raise ResolutionError(unit_id)
        return owner

    async def drain(self) -> list[SideChannelResult]:
        """Wait for every deferred ranking refresh and return their results."""
        results: list[SideChannelResult] = []
        while self._pending:
            tasks = list(self._pending)
            self._pending.difference_update(tasks)
            for batch in await asyncio.gather(*tasks):
                results.extend(batch)
        return results

    async def refresh_rankings(
        self, learner_id: str, scopes: list[RankingScope]
    ) -> list[SideChannelResult]:
        """Recompute rankings of a learner and fold subject positions into history.

        Failures are logged and reported as IGNORED.
        """
        if self._ranking is None:
            return [SideChannelResult(f"ranking:{scope}", SideChannelStatus.SKIPPED) for scope in scopes]

        results: list[SideChannelResult] = []
        for scope in scopes:
            name = f"ranking:{scope}"
            try:
                outcome = await self._ranking.compute_ranking(scope, learner_id)
            except RankingTimeoutError as e:
                logger.warning("Ranking of %s for %s timed out", scope, learner_id)
                results.append(SideChannelResult(name, SideChannelStatus.IGNORED, e.message))
                continue
            except Exception as e:
                logger.warning("Ranking of %s for %s failed: %s", scope, learner_id, e)
                results.append(SideChannelResult(name, SideChannelStatus.IGNORED, str(e)))
                continue

            results.append(SideChannelResult(name, SideChannelStatus(outcome.status.value)))

            if (
                self._history is not None
                and outcome.status is RankingStatus.APPLIED
                and scope.kind is ScopeKind.SUBJECT
                and outcome.position is not None
            ):
                results.append(await self._record_history(learner_id, scope, outcome))
        return results

    async def _record_history(
        self, learner_id: str, scope: RankingScope, outcome: RankingOutcome
    ) -> SideChannelResult:
        name = f"history:{scope.scope_id}"
        try:
            await self._history.record_position(
                learner_id,
                scope.scope_id,
                position=outcome.position,
                score_at_time=outcome.score or 0.0,
                total_peers=outcome.total_peers,
            )
        except Exception as e:
            logger.warning("Position history of %s for %s failed: %s", scope, learner_id, e)
            return SideChannelResult(name, SideChannelStatus.IGNORED, str(e))
        return SideChannelResult(name, SideChannelStatus.APPLIED)

    async def _schedule_rankings(
        self, learner_id: str, scopes: list[RankingScope]
    ) -> list[SideChannelResult]:
        if not self.defer_ranking:
            return await self.refresh_rankings(learner_id, scopes)

        task = asyncio.create_task(self.refresh_rankings(learner_id, scopes))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return [SideChannelResult(f"ranking:{scope}", SideChannelStatus.DEFERRED) for scope in scopes]

    async def _load_or_create(self, learner_id: str) -> LearnerAggregate:
        aggregate = await self._repository.load(learner_id)
        if aggregate is not None:
            return aggregate

        raw_type = await self._roster.learner_type(learner_id)
        try:
            learner_type = LearnerType(raw_type)
        except ValueError:
            logger.warning("Unknown learner type %r for %s, using free", raw_type, learner_id)
            learner_type = LearnerType.FREE
        return LearnerAggregate.new(learner_id, learner_type)

    def _mutate(
        self,
        aggregate: LearnerAggregate,
        event: StudyEvent,
        info: UnitInfo,
        subject_id: str | None,
        subject_name: str,
    ) -> None:
        """Apply an event to an aggregate in memory.

        Raises:
            ComputationError: If the stored aggregate holds a negative score
                or the change would decrease one.
        """
        before = aggregate.scores()
        negative = sorted(key for key, score in before.items() if score < 0)
        if negative:
            raise ComputationError(f"Stored aggregate has negative scores: {', '.join(negative)}")

        unit = aggregate.units.get(event.unit_id)
        if unit is None:
            unit = UnitKPIs(
                unit_id=event.unit_id,
                unit_title=info.title,
                subject_id=subject_id,
                concept_count=info.concept_count,
            )
            aggregate.units[event.unit_id] = unit

        subject: SubjectKPIs | None = None
        if subject_id and aggregate.subjects is not None:
            subject = aggregate.subjects.get(subject_id)
            if subject is None:
                subject = SubjectKPIs(subject_id=subject_id, subject_name=subject_name)
                aggregate.subjects[subject_id] = subject
            subject.child_unit_ids.add(event.unit_id)

        minutes = event.duration_minutes
        unit.local_study_minutes += minutes
        aggregate.global_kpis.total_study_minutes += minutes
        if subject is not None:
            subject.study_minutes += minutes

        if isinstance(event, GuidedStudyCompleted):
            unit.guided_study_minutes += minutes
            unit.intelligent_sessions_total += 1
            if event.succeeded:
                unit.intelligent_sessions_successful += 1
                unit.intelligent_sessions_local += 1
                aggregate.global_kpis.intelligent_sessions_global += 1
                if subject is not None:
                    subject.intelligent_sessions += 1
            unit.mastered_count += event.concepts_mastered
            unit.reviewing_count += event.concepts_reviewing
            unit.recompute_rates()
        elif isinstance(event, FreeStudyCompleted):
            unit.free_study_minutes += minutes
            unit.free_sessions_local += 1
        elif isinstance(event, QuizCompleted):
            unit.quiz_minutes += minutes
            unit.score += event.score
            aggregate.global_kpis.score_global += event.score
            if subject is not None:
                subject.score += event.score

        aggregate.bucket_for(event.timestamp).add(minutes, event.activity)
        aggregate.refresh_totals(utc_now())

        after = aggregate.scores()
        decreased = sorted(key for key, score in before.items() if after.get(key, score) < score)
        if decreased:
            raise ComputationError(f"Event would decrease scores: {', '.join(decreased)}")
