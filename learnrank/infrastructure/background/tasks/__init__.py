# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background task actors for LearnRank.

Usage:
    from learnrank.infrastructure.background.tasks import process_study_event

    process_study_event.send({"kind": "quiz", "unit_id": "nb-1", ...})

Running Workers:
    dramatiq learnrank.infrastructure.background.tasks --processes 2 --threads 4
"""

from learnrank.infrastructure.background.tasks.base import (
    get_worker_service,
    run_async,
    set_directory_factory,
)
from learnrank.infrastructure.background.tasks.rankings import (
    get_ranking_actors,
    process_study_event,
    recompute_institution_rankings,
    refresh_learner_rankings,
)


def get_all_actors() -> list:
    """Get all registered actors.

    Returns:
        List of all actor functions.
    """
    return get_ranking_actors()


__all__ = [
    "get_all_actors",
    "get_worker_service",
    "run_async",
    "set_directory_factory",
    "process_study_event",
    "recompute_institution_rankings",
    "refresh_learner_rankings",
]
