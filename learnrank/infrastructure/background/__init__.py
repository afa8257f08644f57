# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background task infrastructure for LearnRank.

Provides background processing with Dramatiq:
- Redis broker for message persistence and durability
- Actors for study events, ranking refreshes and institution recomputes
- APScheduler integration for the periodic institution recompute

Quick Start:
    from learnrank.infrastructure.background import setup_dramatiq
    setup_dramatiq()

    from learnrank.infrastructure.background.tasks import process_study_event
    process_study_event.send({"kind": "quiz", "unit_id": "nb-1", ...})

Running Workers:
    dramatiq learnrank.infrastructure.background.tasks --processes 2 --threads 4

Scheduler:
    from learnrank.infrastructure.background import start_scheduler, stop_scheduler

    await start_scheduler()
    await stop_scheduler()
"""

from learnrank.infrastructure.background.broker import (
    BrokerManager,
    Priority,
    Queues,
    get_broker,
    get_broker_manager,
    setup_dramatiq,
    shutdown_dramatiq,
)
from learnrank.infrastructure.background.scheduler import (
    DramatiqScheduler,
    RecurringJob,
    get_scheduler,
    start_scheduler,
    stop_scheduler,
)

# Task actors are imported lazily to avoid circular imports.
# Use: from learnrank.infrastructure.background.tasks import process_study_event

__all__ = [
    "BrokerManager",
    "Priority",
    "Queues",
    "get_broker",
    "get_broker_manager",
    "setup_dramatiq",
    "shutdown_dramatiq",
    "DramatiqScheduler",
    "RecurringJob",
    "get_scheduler",
    "start_scheduler",
    "stop_scheduler",
]
