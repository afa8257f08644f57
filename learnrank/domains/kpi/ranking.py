# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Ranking computation over units and subjects.

Learners are ranked within a scope (one unit or one subject) against their
peers: the roster of their institution, or for independent learners every
learner holding the scope. Ordering is score descending with ties broken by
ascending learner id, so rankings are deterministic.

    position   = index in the ordering + 1
    percentile = (total - position + 1) / total * 100

A computation only ever writes back to the learner that triggered it.
Computations for the same learner and scope are numbered; a result that
finishes after a newer one was applied is discarded as stale.

Usage:
    engine = RankingEngine(repository, directory, locks)
    outcome = await engine.compute_ranking(RankingScope.unit("nb-1"), "ana")
    if outcome.status is RankingStatus.APPLIED:
        print(outcome.position, outcome.percentile)
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from learnrank.domains.kpi.directory import RosterDirectory
from learnrank.domains.kpi.exceptions import RankingTimeoutError
from learnrank.domains.kpi.locks import LearnerLocks
from learnrank.domains.kpi.models import (
    LearnerAggregate,
    RankingEntry,
    RankingScope,
    RankingSnapshot,
    ScopeKind,
    percentile_for,
)
from learnrank.domains.kpi.writeback import write_back
from learnrank.infrastructure.database.repository import AggregateRepository

logger = logging.getLogger(__name__)


class RankingStatus(str, Enum):
    """Outcome of one ranking computation."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    STALE = "stale"


@dataclass
class RankingOutcome:
    """Result of ranking one learner within one scope.

    Attributes:
        scope: Ranked scope.
        learner_id: Learner that triggered the computation.
        status: APPLIED when written back, SKIPPED when the scope is empty or
            the learner is not in it, STALE when a newer result won.
        position: 1-based position, when ranked.
        total_peers: Ranking size.
        percentile: Percentile of the position.
        score: Learner's score in the scope.
        sequence: Sequence number of the computation.
    """

    scope: RankingScope
    learner_id: str
    status: RankingStatus
    position: int | None = None
    total_peers: int = 0
    percentile: float | None = None
    score: float | None = None
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": str(self.scope),
            "learner_id": self.learner_id,
            "status": self.status.value,
            "position": self.position,
            "total_peers": self.total_peers,
            "percentile": self.percentile,
            "score": self.score,
        }


def order_scores(scores: dict[str, float]) -> list[tuple[str, float]]:
    """Order (learner_id, score) pairs by score descending, then id ascending."""
    return sorted(scores.items(), key=lambda item: (-item[1], item[0]))


class RankingEngine:
    """Computes rankings and writes them back to learner aggregates."""

    def __init__(
        self,
        repository: AggregateRepository,
        directory: RosterDirectory,
        locks: LearnerLocks,
        timeout_seconds: float = 30.0,
        max_conflict_retries: int = 5,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._locks = locks
        self.timeout_seconds = timeout_seconds
        self.max_conflict_retries = max_conflict_retries
        self._issued: dict[tuple[RankingScope, str], int] = {}
        self._applied: dict[tuple[RankingScope, str], int] = {}
        self._in_flight: dict[tuple[RankingScope, str], int] = {}

    def next_sequence(self, scope: RankingScope, learner_id: str) -> int:
        """Issue the next sequence number for a learner and scope.

        Every issued number must be handed back with release_sequence().
        """
        key = (scope, learner_id)
        self._issued[key] = self._issued.get(key, 0) + 1
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        return self._issued[key]

    def release_sequence(self, scope: RankingScope, learner_id: str) -> None:
        """Mark one computation finished; forget the pair once none is running."""
        key = (scope, learner_id)
        remaining = self._in_flight.get(key, 0) - 1
        if remaining > 0:
            self._in_flight[key] = remaining
            return
        # Nothing older can still finish, so numbering may restart.
        self._in_flight.pop(key, None)
        self._issued.pop(key, None)
        self._applied.pop(key, None)

    @property
    def tracked_pairs(self) -> int:
        """Number of (scope, learner) pairs with sequence state."""
        return len(self._issued)

    async def peers_of(self, learner_id: str) -> list[str] | None:
        """Roster a learner is ranked against; None means every holder."""
        institution_id = await self._directory.institution_of(learner_id)
        if institution_id is None:
            return None
        return await self._directory.roster(institution_id)

    async def ordered_scores(
        self, scope: RankingScope, peers: list[str] | None
    ) -> list[tuple[str, float]]:
        """Scan and order the scores of a scope within the time budget.

        Raises:
            RankingTimeoutError: If the scan exceeds the timeout.
        """
        try:
            scores = await asyncio.wait_for(
                self._repository.scope_scores(scope, peers), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise RankingTimeoutError(
                f"Ranking scan of {scope} exceeded {self.timeout_seconds}s"
            ) from e
        return order_scores(scores)

    async def build_snapshot(
        self, scope: RankingScope, institution_id: str | None = None
    ) -> RankingSnapshot:
        """Ordered ranking of a whole scope.

        Args:
            scope: Unit or subject to rank.
            institution_id: Restrict to an institution roster; None ranks
                every learner holding the scope.

        Returns:
            A snapshot computed now; callers must not cache it.
        """
        peers = await self._directory.roster(institution_id) if institution_id else None
        ordered = await self.ordered_scores(scope, peers)
        names = await asyncio.gather(
            *(self._directory.display_name(learner_id) for learner_id, _ in ordered)
        )
        return RankingSnapshot(
            scope_kind=scope.kind,
            scope_id=scope.scope_id,
            entries=[
                RankingEntry(learner_id=learner_id, display_name=name, score=score, position=index)
                for index, ((learner_id, score), name) in enumerate(zip(ordered, names), start=1)
            ],
        )

    async def compute_ranking(self, scope: RankingScope, learner_id: str) -> RankingOutcome:
        """Rank a learner within a scope and write the result back.

        Args:
            scope: Unit or subject the learner changed.
            learner_id: Learner to rank and update.

        Returns:
            RankingOutcome describing what happened.

        Raises:
            RankingTimeoutError: If the scan exceeds the timeout.
            ConcurrencyConflictError: If the write-back kept conflicting.
            PersistenceError: If the write-back failed.
        """
        sequence = self.next_sequence(scope, learner_id)
        try:
            return await self._compute(scope, learner_id, sequence)
        finally:
            self.release_sequence(scope, learner_id)

    async def _compute(
        self, scope: RankingScope, learner_id: str, sequence: int
    ) -> RankingOutcome:
        peers = await self.peers_of(learner_id)
        ordered = await self.ordered_scores(scope, peers)

        position = next(
            (index for index, (peer, _) in enumerate(ordered, start=1) if peer == learner_id),
            None,
        )
        if position is None:
            logger.debug("Learner %s not ranked in %s, skipping", learner_id, scope)
            return RankingOutcome(scope, learner_id, RankingStatus.SKIPPED, sequence=sequence)

        total = len(ordered)
        outcome = RankingOutcome(
            scope=scope,
            learner_id=learner_id,
            status=RankingStatus.APPLIED,
            position=position,
            total_peers=total,
            percentile=percentile_for(position, total),
            score=ordered[position - 1][1],
            sequence=sequence,
        )

        key = (scope, learner_id)
        stale = False

        def mutate(aggregate: LearnerAggregate) -> bool:
            nonlocal stale
            if sequence < self._applied.get(key, 0):
                stale = True
                return False
            if not apply_outcome(aggregate, outcome):
                return False
            self._applied[key] = sequence
            return True

        saved = await write_back(
            self._repository,
            self._locks,
            learner_id,
            mutate,
            lambda aggregate: self._repository.save_rankings(aggregate, [scope]),
            self.max_conflict_retries,
        )

        if stale:
            logger.debug("Discarding stale ranking %d of %s for %s", sequence, scope, learner_id)
            outcome.status = RankingStatus.STALE
        elif saved is None:
            outcome.status = RankingStatus.SKIPPED
        return outcome


def apply_outcome(aggregate: LearnerAggregate, outcome: RankingOutcome) -> bool:
    """Write a ranking result into an aggregate in memory.

    Updates the rank fields of the unit or subject and the learner's global
    average percentile.

    Returns:
        False when the aggregate does not hold the scope.
    """
    if outcome.position is None or outcome.percentile is None:
        return False

    if outcome.scope.kind is ScopeKind.UNIT:
        target = aggregate.units.get(outcome.scope.scope_id)
    else:
        target = (aggregate.subjects or {}).get(outcome.scope.scope_id)
    if target is None:
        return False

    target.rank_position = outcome.position
    target.total_peers = outcome.total_peers
    target.percentile = outcome.percentile
    aggregate.recompute_average_percentile()
    return True


def apply_outcomes(aggregate: LearnerAggregate, outcomes: list[RankingOutcome]) -> list[RankingScope]:
    """Write several ranking results into an aggregate; returns the scopes it held."""
    return [outcome.scope for outcome in outcomes if apply_outcome(aggregate, outcome)]
