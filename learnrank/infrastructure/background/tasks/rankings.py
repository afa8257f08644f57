# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""KPI background tasks for LearnRank.

Actors:
    - process_study_event: applies one study event to its owner's aggregate
    - refresh_learner_rankings: recomputes unit/subject rankings of a learner
    - recompute_institution_rankings: full recompute of one or all institutions
"""

import logging
from typing import Any

import dramatiq
from pydantic import ValidationError

from learnrank.core.config import get_settings
from learnrank.domains.kpi.events import parse_study_event
from learnrank.domains.kpi.exceptions import KPIError
from learnrank.domains.kpi.models import RankingScope
from learnrank.infrastructure.background.broker import Priority, Queues, setup_dramatiq
from learnrank.infrastructure.background.tasks.base import get_worker_service, run_async
from learnrank.infrastructure.database.connection import DatabaseError
from learnrank.utils.logging import bind_context, clear_context, setup_logging

# Setup logging and broker before defining actors
setup_logging(get_settings())
setup_dramatiq()

logger = logging.getLogger(__name__)


@dramatiq.actor(
    queue_name=Queues.STUDY_EVENTS,
    max_retries=2,
    time_limit=60000,  # 1 minute
    priority=Priority.HIGH,
)
def process_study_event(payload: dict[str, Any]) -> dict[str, Any]:
    """Apply a study event produced by the study or quiz flows.

    Args:
        payload: Event fields plus a ``kind`` discriminator
            (guided_study, free_study or quiz).

    Returns:
        ApplyResult as a dictionary; malformed payloads are reported with
        ``processed: False`` and are not retried.
    """
    try:
        event = parse_study_event(payload)
    except ValidationError as e:
        logger.error("Discarding malformed study event: %s", e)
        return {"processed": False, "error": str(e)}

    async def _process() -> dict[str, Any]:
        bind_context(unit_id=event.unit_id, event_kind=event.kind)
        try:
            result = await get_worker_service().apply_event(event)
        finally:
            clear_context()
        logger.debug(
            "Study event on unit %s for learner %s: %s",
            result.unit_id,
            result.learner_id,
            result.status.value,
        )
        return {"processed": result.applied, **result.to_dict()}

    return run_async(_process())


@dramatiq.actor(
    queue_name=Queues.RANKINGS,
    max_retries=1,
    time_limit=120000,  # 2 minutes
    priority=Priority.NORMAL,
)
def refresh_learner_rankings(learner_id: str, scopes: list[str]) -> dict[str, Any]:
    """Recompute rankings of a learner off the event path.

    Args:
        learner_id: Learner whose rankings changed.
        scopes: Scopes in ``unit:<id>`` / ``subject:<id>`` form.

    Returns:
        Side-channel results per scope.
    """

    async def _refresh() -> dict[str, Any]:
        service = get_worker_service()
        results = await service.updater.refresh_rankings(
            learner_id, [RankingScope.parse(scope) for scope in scopes]
        )
        return {
            "learner_id": learner_id,
            "results": [result.to_dict() for result in results],
        }

    return run_async(_refresh())


@dramatiq.actor(
    queue_name=Queues.SCHEDULED,
    max_retries=1,
    time_limit=600000,  # 10 minutes
    priority=Priority.LOW,
)
def recompute_institution_rankings(institution_id: str | None = None) -> dict[str, Any]:
    """Recompute every ranking of an institution.

    Called by the scheduler without arguments to cover every institution.

    Args:
        institution_id: Institution to recompute; None recomputes all.

    Returns:
        Recompute results.
    """
    logger.info("Institution ranking recompute triggered (%s)", institution_id or "all")

    async def _recompute() -> dict[str, Any]:
        service = get_worker_service()
        if institution_id is not None:
            results = [await service.recompute_institution(institution_id)]
        else:
            results = await service.recompute_all_institutions()
        return {
            "institutions": len(results),
            "failed": sum(1 for result in results if not result.success),
            "results": [result.to_dict() for result in results],
        }

    try:
        return run_async(_recompute())
    except (KPIError, DatabaseError) as e:
        logger.error("Institution ranking recompute failed: %s", e, exc_info=True)
        return {"status": "failed", "error": str(e)}


def get_ranking_actors() -> list:
    """Get all KPI actors.

    Returns:
        List of actor functions.
    """
    return [
        process_study_event,
        refresh_learner_rankings,
        recompute_institution_rankings,
    ]
