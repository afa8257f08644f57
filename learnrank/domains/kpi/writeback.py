# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Locked, version-guarded read-modify-write of one learner aggregate."""

import logging
from collections.abc import Awaitable, Callable

from learnrank.domains.kpi.exceptions import ConcurrencyConflictError
from learnrank.domains.kpi.locks import LearnerLocks
from learnrank.domains.kpi.models import LearnerAggregate
from learnrank.infrastructure.database.repository import AggregateRepository

logger = logging.getLogger(__name__)

Mutation = Callable[[LearnerAggregate], bool]
Persist = Callable[[LearnerAggregate], Awaitable[LearnerAggregate]]


async def write_back(
    repository: AggregateRepository,
    locks: LearnerLocks,
    learner_id: str,
    mutate: Mutation,
    persist: Persist,
    max_retries: int,
) -> LearnerAggregate | None:
    """Apply a mutation to a stored aggregate and persist it.

    On a version conflict the aggregate is re-read and the mutation applied
    again to the fresh copy.

    Args:
        repository: Aggregate store.
        locks: Per-learner lock registry.
        learner_id: Learner to mutate.
        mutate: Changes the aggregate in place; returns False when there
            is nothing to write.
        persist: Writes the mutated aggregate (e.g. repository.save).
        max_retries: Re-reads allowed after a conflict.

    Returns:
        The persisted aggregate, or None when it does not exist or the
        mutation had nothing to write.

    Raises:
        ConcurrencyConflictError: If every attempt conflicted.
    """
    attempt = 0
    async with locks.hold(learner_id):
        while True:
            aggregate = await repository.load(learner_id)
            if aggregate is None or not mutate(aggregate):
                return None
            try:
                return await persist(aggregate)
            except ConcurrencyConflictError:
                if attempt >= max_retries:
                    raise
                attempt += 1
                logger.debug(
                    "Version conflict writing learner %s, retry %d", learner_id, attempt
                )
