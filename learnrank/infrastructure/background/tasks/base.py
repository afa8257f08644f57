# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Base utilities for Dramatiq tasks.

Thread-Local Event Loop Management:
    Dramatiq workers use multiple threads (--threads N) to process tasks
    concurrently. SQLAlchemy async engines and their connections are bound
    to the event loop they were created on and cannot be shared across
    loops.

    This module keeps one persistent event loop per worker thread and one
    KPIService (with its own engine) per loop, so database connections stay
    bound to the correct loop across task executions.

Worker Directory:
    Actors need the unit, roster and catalog directory of the deployment.
    Register it with set_directory_factory() in the worker boot module, or
    point WORKER_DIRECTORY_FACTORY at a ``module:callable`` import path.
"""

import asyncio
import importlib
import logging
import threading
from typing import Any, Callable, Coroutine, TypeVar

from learnrank.core.config import get_settings
from learnrank.domains.kpi.service import KPIService, build_kpi_service
from learnrank.infrastructure.database.connection import create_engine, create_sessionmaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Thread-local storage for event loops and services
_thread_local = threading.local()

_directory_factory: Callable[[], Any] | None = None


def set_directory_factory(factory: Callable[[], Any] | None) -> None:
    """Register the factory building the directory used by workers.

    The factory returns an object implementing UnitDirectory,
    RosterDirectory and Catalog. Passing None clears the registration.
    """
    global _directory_factory
    _directory_factory = factory
    _clear_thread_service()


def _resolve_directory_factory() -> Callable[[], Any]:
    if _directory_factory is not None:
        return _directory_factory

    path = get_settings().worker.directory_factory
    if not path:
        raise RuntimeError(
            "No directory configured for workers. Call set_directory_factory() "
            "or set WORKER_DIRECTORY_FACTORY=module:callable."
        )
    module_name, _, attribute = path.partition(":")
    return getattr(importlib.import_module(module_name), attribute)


def _clear_thread_service() -> None:
    """Drop the service cached for the current thread."""
    _thread_local.service = None


def _get_thread_event_loop() -> asyncio.AbstractEventLoop:
    """Get or create a persistent event loop for the current thread.

    When a new loop is created (first task in thread or after loop closure),
    the cached service is dropped, since its engine belongs to the old loop.

    Returns:
        Event loop for current thread.
    """
    loop = getattr(_thread_local, "event_loop", None)

    if loop is None or loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        _thread_local.event_loop = loop
        _clear_thread_service()

        logger.debug(
            "Created new event loop for thread %s",
            threading.current_thread().name,
        )

    return loop


def get_worker_service() -> KPIService:
    """KPIService of the current worker thread.

    Built on first use from settings. Rankings always run inline in
    workers; deferring them would leave tasks pending on an idle loop.
    """
    service = getattr(_thread_local, "service", None)
    if service is None:
        settings = get_settings()
        engine = create_engine(settings.db)
        directory = _resolve_directory_factory()()
        service = build_kpi_service(
            create_sessionmaker(engine),
            directory,
            settings.kpi.model_copy(update={"defer_ranking": False}),
        )
        _thread_local.service = service
        logger.debug("Built KPI service for thread %s", threading.current_thread().name)
    return service


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run async coroutine in sync Dramatiq worker context.

    Uses thread-local persistent event loops so SQLAlchemy async engines
    remain bound to the loop they were created on.

    Args:
        coro: Coroutine to run.

    Returns:
        Result of coroutine.

    Example:
        @dramatiq.actor
        def my_task(learner_id: str):
            async def _process():
                service = get_worker_service()
                return await service.get_learner_aggregate(learner_id)
            return run_async(_process())
    """
    loop = _get_thread_event_loop()
    return loop.run_until_complete(coro)
