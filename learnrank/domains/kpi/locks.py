# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Per-learner serialization of read-modify-write cycles."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class LearnerLocks:
    """Registry of asyncio locks keyed by learner id.

    Locks only serialize writers within one process and one event loop;
    the version guard on the aggregate row covers everything else. Idle
    locks are dropped once no task holds or waits for them.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, learner_id: str) -> AsyncIterator[None]:
        """Hold the lock of one learner for the duration of the block."""
        lock = self._locks.setdefault(learner_id, asyncio.Lock())
        self._users[learner_id] = self._users.get(learner_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[learner_id] -= 1
            if self._users[learner_id] == 0:
                del self._users[learner_id]
                del self._locks[learner_id]

    def __len__(self) -> int:
        return len(self._locks)
