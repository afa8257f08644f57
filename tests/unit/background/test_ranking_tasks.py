# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for KPI Dramatiq actors."""

import pytest
from dramatiq.brokers.stub import StubBroker

from learnrank.core.config import clear_settings_cache
from learnrank.infrastructure.background.broker import Queues, get_broker
from learnrank.infrastructure.background.tasks import (
    get_all_actors,
    process_study_event,
    set_directory_factory,
)
from learnrank.infrastructure.background.tasks.base import get_worker_service


class TestActors:
    """Tests for actor registration and payload handling."""

    def test_stub_broker_in_test_mode(self):
        assert isinstance(get_broker(), StubBroker)

    def test_actor_queues(self):
        queues = {actor.actor_name: actor.queue_name for actor in get_all_actors()}

        assert queues == {
            "process_study_event": Queues.STUDY_EVENTS,
            "refresh_learner_rankings": Queues.RANKINGS,
            "recompute_institution_rankings": Queues.SCHEDULED,
        }

    def test_malformed_event_is_discarded(self):
        result = process_study_event({"kind": "quiz", "unit_id": "nb-1"})

        assert result["processed"] is False
        assert "error" in result

    def test_worker_service_requires_directory(self, monkeypatch):
        monkeypatch.delenv("WORKER_DIRECTORY_FACTORY", raising=False)
        clear_settings_cache()
        set_directory_factory(None)

        with pytest.raises(RuntimeError):
            get_worker_service()

        clear_settings_cache()
