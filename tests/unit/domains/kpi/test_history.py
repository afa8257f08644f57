# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for weekly position history."""

from datetime import date, timedelta

import pytest

from learnrank.domains.kpi.history import PositionHistoryMaintainer, fold_position
from learnrank.domains.kpi.models import LearnerAggregate, LearnerType

WEEK_7 = date(2025, 2, 12)  # Wednesday of 2025-W07


class TestFoldPosition:
    """Tests for fold_position."""

    def test_first_entry(self):
        ledger = fold_position([], position=4, score_at_time=120.0, total_peers=10, week_of=WEEK_7)

        assert len(ledger) == 1
        entry = ledger[0]
        assert entry.week_key == "2025-W07"
        assert entry.window_start == date(2025, 2, 10)
        assert entry.window_end == date(2025, 2, 16)
        assert entry.delta_from_previous_week == 0
        assert entry.total_peers_at_time == 10

    def test_same_week_is_replaced(self):
        ledger = fold_position([], 4, 120.0, 10, WEEK_7)

        ledger = fold_position(ledger, 2, 200.0, 10, WEEK_7 + timedelta(days=2))

        assert len(ledger) == 1
        assert ledger[0].position == 2
        assert ledger[0].score_at_time == 200.0

    def test_folding_twice_is_idempotent(self):
        once = fold_position([], 4, 120.0, 10, WEEK_7)

        twice = fold_position(once, 4, 120.0, 10, WEEK_7)

        assert twice == once

    def test_delta_against_previous_week(self):
        ledger = fold_position([], 5, 100.0, 10, WEEK_7)

        ledger = fold_position(ledger, 3, 150.0, 10, WEEK_7 + timedelta(weeks=1))

        assert [entry.week_key for entry in ledger] == ["2025-W07", "2025-W08"]
        assert ledger[1].delta_from_previous_week == -2

    def test_replaced_entry_keeps_delta_to_week_before(self):
        ledger = fold_position([], 5, 100.0, 10, WEEK_7)
        ledger = fold_position(ledger, 3, 150.0, 10, WEEK_7 + timedelta(weeks=1))

        ledger = fold_position(ledger, 7, 90.0, 10, WEEK_7 + timedelta(weeks=1, days=1))

        assert len(ledger) == 2
        assert ledger[1].delta_from_previous_week == 2

    def test_window_is_capped(self):
        ledger = []
        for week in range(13):
            ledger = fold_position(ledger, week + 1, 10.0 * week, 20, WEEK_7 + timedelta(weeks=week))

        assert len(ledger) == 12
        assert ledger[0].position == 2
        assert ledger[-1].position == 13

    def test_earlier_week_is_placed_in_order(self):
        ledger = fold_position([], 3, 100.0, 10, WEEK_7)
        ledger = fold_position(ledger, 1, 180.0, 10, WEEK_7 + timedelta(weeks=2))

        ledger = fold_position(ledger, 2, 140.0, 10, WEEK_7 + timedelta(weeks=1))

        assert [entry.week_key for entry in ledger] == ["2025-W07", "2025-W08", "2025-W09"]
        assert [entry.delta_from_previous_week for entry in ledger] == [0, -1, -1]

    def test_later_week_measures_against_chronological_predecessor(self):
        ledger = fold_position([], 3, 100.0, 10, WEEK_7 + timedelta(weeks=1))
        ledger = fold_position(ledger, 5, 60.0, 10, WEEK_7)

        ledger = fold_position(ledger, 4, 90.0, 10, WEEK_7 + timedelta(weeks=2))

        assert [entry.week_key for entry in ledger] == ["2025-W07", "2025-W08", "2025-W09"]
        assert ledger[1].delta_from_previous_week == -2
        assert ledger[2].delta_from_previous_week == 1

    def test_week_older_than_full_window_is_evicted(self):
        ledger = []
        for week in range(1, 13):
            ledger = fold_position(ledger, week, 10.0, 20, WEEK_7 + timedelta(weeks=week))
        keys = [entry.week_key for entry in ledger]

        folded = fold_position(ledger, 9, 10.0, 20, WEEK_7)

        assert [entry.week_key for entry in folded] == keys
        assert folded == ledger

    def test_input_is_not_modified(self):
        ledger = fold_position([], 5, 100.0, 10, WEEK_7)

        fold_position(ledger, 3, 150.0, 10, WEEK_7 + timedelta(weeks=1))

        assert len(ledger) == 1


class TestPositionHistoryMaintainer:
    """Tests for PositionHistoryMaintainer."""

    @pytest.mark.asyncio
    async def test_record_position_persists_ledger(self, repository, locks):
        await repository.save(LearnerAggregate.new("ana", LearnerType.SCHOOL_STUDENT))
        maintainer = PositionHistoryMaintainer(repository, locks)

        ledger = await maintainer.record_position("ana", "math", 3, 150.0, 12, week_of=WEEK_7)

        assert [entry.position for entry in ledger] == [3]
        stored = await repository.load("ana")
        assert stored.position_history["math"][0].week_key == "2025-W07"

    @pytest.mark.asyncio
    async def test_free_learner_keeps_no_history(self, repository, locks):
        await repository.save(LearnerAggregate.new("solo"))
        maintainer = PositionHistoryMaintainer(repository, locks)

        assert await maintainer.record_position("solo", "math", 1, 10.0, 1) == []
        assert (await repository.load("solo")).position_history is None

    @pytest.mark.asyncio
    async def test_missing_learner(self, repository, locks):
        maintainer = PositionHistoryMaintainer(repository, locks)

        assert await maintainer.record_position("ghost", "math", 1, 10.0, 1) == []

    @pytest.mark.asyncio
    async def test_custom_window(self, repository, locks):
        await repository.save(LearnerAggregate.new("ana", LearnerType.SCHOOL_STUDENT))
        maintainer = PositionHistoryMaintainer(repository, locks, max_weeks=2)

        for week in range(3):
            ledger = await maintainer.record_position(
                "ana", "math", week + 1, 1.0, 5, week_of=WEEK_7 + timedelta(weeks=week)
            )

        assert [entry.position for entry in ledger] == [2, 3]
