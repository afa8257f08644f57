# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dramatiq broker for the LearnRank workers.

Study events, ranking refreshes and scheduled recomputes travel over Redis.
With ``DRAMATIQ_TEST_MODE=true`` an in-memory StubBroker is used instead,
so actors can be declared and enqueued without a Redis server.

The broker has to exist before any actor module is imported:

    from learnrank.infrastructure.background.broker import setup_dramatiq

    setup_dramatiq()
    from learnrank.infrastructure.background.tasks import process_study_event
"""

import logging
import os

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.results import Results
from dramatiq.results.backends.redis import RedisBackend

from learnrank.core.config import get_settings

logger = logging.getLogger(__name__)


class Queues:
    """Queue names; workers can be started per queue."""

    STUDY_EVENTS = "study_events"
    RANKINGS = "rankings"
    SCHEDULED = "scheduled"


class Priority:
    """Actor priorities (lower runs first).

    Study events outrank ranking refreshes, which outrank the periodic
    institution recompute.
    """

    HIGH = 1
    NORMAL = 3
    LOW = 5


def test_mode_enabled() -> bool:
    """Whether DRAMATIQ_TEST_MODE selects the StubBroker."""
    return os.getenv("DRAMATIQ_TEST_MODE", "false").lower() == "true"


class BrokerManager:
    """Owns the process-wide Dramatiq broker."""

    def __init__(self) -> None:
        self._broker: dramatiq.Broker | None = None

    @property
    def broker(self) -> dramatiq.Broker:
        """The configured broker.

        Raises:
            RuntimeError: If setup() was not called.
        """
        if self._broker is None:
            raise RuntimeError("Broker not initialized. Call setup() first.")
        return self._broker

    @property
    def is_initialized(self) -> bool:
        return self._broker is not None

    def setup(self) -> dramatiq.Broker:
        """Create the broker once and register it with Dramatiq."""
        if self._broker is not None:
            return self._broker

        if test_mode_enabled():
            broker: dramatiq.Broker = StubBroker()
            broker.emit_after("process_boot")
            logger.info("Using StubBroker (DRAMATIQ_TEST_MODE)")
        else:
            redis_url = get_settings().redis.url
            broker = RedisBroker(url=redis_url)
            broker.add_middleware(Results(backend=RedisBackend(url=redis_url)))
            # Credentials stay out of the log.
            logger.info("Using Redis broker at %s", redis_url.split("@")[-1])

        dramatiq.set_broker(broker)
        self._broker = broker
        return broker

    def shutdown(self) -> None:
        if self._broker is None:
            return
        self._broker.close()
        self._broker = None
        logger.info("Broker closed")


_broker_manager: BrokerManager | None = None


def get_broker_manager() -> BrokerManager:
    """Get the process-wide broker manager."""
    global _broker_manager
    if _broker_manager is None:
        _broker_manager = BrokerManager()
    return _broker_manager


def setup_dramatiq() -> dramatiq.Broker:
    """Set up the broker; call before actors are declared."""
    return get_broker_manager().setup()


def get_broker() -> dramatiq.Broker:
    """Current broker.

    Raises:
        RuntimeError: If the broker was not set up.
    """
    return get_broker_manager().broker


def shutdown_dramatiq() -> None:
    """Close the broker and forget the manager."""
    global _broker_manager
    if _broker_manager is not None:
        _broker_manager.shutdown()
        _broker_manager = None
