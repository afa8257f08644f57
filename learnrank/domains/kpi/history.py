# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Weekly position history per learner and subject.

Each subject keeps a ledger of one entry per ISO week, oldest first, with
the learner's position that week and the change since the week before.
The ledger is a sliding window: only the most recent weeks are kept.

Positions are folded in from ranking results; this module never reads
live ranking data itself.

Usage:
    history = fold_position(
        history, position=3, score_at_time=420.0, total_peers=25,
        week_of=date(2025, 2, 12),
    )
"""

import logging
from bisect import bisect_left
from datetime import date, datetime

from learnrank.domains.kpi.locks import LearnerLocks
from learnrank.domains.kpi.models import LearnerAggregate, WeeklyPositionEntry
from learnrank.domains.kpi.writeback import write_back
from learnrank.infrastructure.database.repository import AggregateRepository
from learnrank.utils.datetime import iso_week_key, utc_now, week_bounds

logger = logging.getLogger(__name__)

DEFAULT_MAX_WEEKS = 12


def fold_position(
    history: list[WeeklyPositionEntry],
    position: int,
    score_at_time: float,
    total_peers: int,
    week_of: date | datetime,
    max_weeks: int = DEFAULT_MAX_WEEKS,
) -> list[WeeklyPositionEntry]:
    """Fold one position into a weekly ledger.

    The entry is placed in week order, replacing an entry for the same
    week. Its delta is taken against the week before it, and the delta of
    the week after it is recomputed against the new position. The result
    keeps the newest max_weeks entries.

    Args:
        history: Current ledger, oldest first. Not modified.
        position: Position in the ranking (1 is best).
        score_at_time: Score behind the position.
        total_peers: Ranking size.
        week_of: Any moment inside the week being recorded.
        max_weeks: Window length.

    Returns:
        The new ledger.
    """
    week_key = iso_week_key(week_of)
    window_start, window_end = week_bounds(week_of)
    ledger = sorted(
        (entry for entry in history if entry.week_key != week_key),
        key=lambda entry: entry.window_start,
    )

    index = bisect_left([entry.window_start for entry in ledger], window_start)
    if index < len(ledger) + 1 - max_weeks:
        # Older than the whole window.
        return ledger[-max_weeks:]

    previous = ledger[index - 1] if index > 0 else None
    ledger.insert(
        index,
        WeeklyPositionEntry(
            week_key=week_key,
            window_start=window_start,
            window_end=window_end,
            position=position,
            score_at_time=score_at_time,
            total_peers_at_time=total_peers,
            delta_from_previous_week=position - previous.position if previous else 0,
        ),
    )

    if index + 1 < len(ledger):
        following = ledger[index + 1]
        ledger[index + 1] = following.model_copy(
            update={"delta_from_previous_week": following.position - position}
        )

    return ledger[-max_weeks:]


class PositionHistoryMaintainer:
    """Records subject positions into learners' weekly ledgers."""

    def __init__(
        self,
        repository: AggregateRepository,
        locks: LearnerLocks,
        max_weeks: int = DEFAULT_MAX_WEEKS,
        max_conflict_retries: int = 5,
    ) -> None:
        self._repository = repository
        self._locks = locks
        self.max_weeks = max_weeks
        self.max_conflict_retries = max_conflict_retries

    def apply(
        self,
        aggregate: LearnerAggregate,
        subject_id: str,
        position: int,
        score_at_time: float,
        total_peers: int,
        week_of: date | datetime,
    ) -> bool:
        """Fold a position into an aggregate in memory.

        Returns:
            False when the learner keeps no position history.
        """
        if aggregate.position_history is None:
            return False
        aggregate.position_history[subject_id] = fold_position(
            aggregate.position_history.get(subject_id, []),
            position,
            score_at_time,
            total_peers,
            week_of,
            self.max_weeks,
        )
        return True

    async def record_position(
        self,
        learner_id: str,
        subject_id: str,
        position: int,
        score_at_time: float,
        total_peers: int,
        week_of: date | datetime | None = None,
    ) -> list[WeeklyPositionEntry]:
        """Record a position and persist the ledger.

        Args:
            learner_id: Learner whose ledger changes.
            subject_id: Subject of the ranking.
            position: Position in the subject ranking.
            score_at_time: Subject score behind the position.
            total_peers: Ranking size.
            week_of: Moment inside the week; defaults to now.

        Returns:
            The persisted ledger, empty when the learner has no aggregate or
            keeps no position history.

        Raises:
            ConcurrencyConflictError: If every write attempt conflicted.
            PersistenceError: If the store write failed.
        """
        moment = week_of or utc_now()

        def mutate(aggregate: LearnerAggregate) -> bool:
            return self.apply(aggregate, subject_id, position, score_at_time, total_peers, moment)

        saved = await write_back(
            self._repository,
            self._locks,
            learner_id,
            mutate,
            lambda aggregate: self._repository.save(aggregate, unit_ids=(), subject_ids=()),
            self.max_conflict_retries,
        )
        if saved is None:
            logger.debug("No position history kept for learner %s", learner_id)
            return []
        return list((saved.position_history or {}).get(subject_id, []))
