# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the KPI service facade."""

from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from learnrank.domains.kpi.events import QuizCompleted
from learnrank.domains.kpi.exceptions import RankingTimeoutError
from learnrank.domains.kpi.models import LearnerType, RankingScope
from learnrank.infrastructure.database.bulk import WriteOperation
from learnrank.infrastructure.database.models import UnitKPIRow

MATH = RankingScope.subject("math")


def quiz(unit_id: str, score: float, timestamp: datetime) -> QuizCompleted:
    return QuizCompleted(unit_id=unit_id, duration_minutes=10, score=score, timestamp=timestamp)


def learner_ids(entries) -> list[str]:
    return [entry.learner_id for entry in entries]


class TestInitializeLearner:
    """Tests for KPIService.initialize_learner."""

    @pytest.mark.asyncio
    async def test_creates_zeroed_aggregate(self, service):
        aggregate = await service.initialize_learner("ana", LearnerType.SCHOOL_STUDENT)

        assert aggregate.version == 1
        assert aggregate.subjects == {}
        assert aggregate.global_kpis.score_global == 0

    @pytest.mark.asyncio
    async def test_is_idempotent(self, service, monday_morning):
        await service.initialize_learner("ana", "school-student")
        await service.apply_event(quiz("nb-ana", 40, monday_morning))

        aggregate = await service.initialize_learner("ana", "school-student")

        assert aggregate.units["nb-ana"].score == 40
        assert aggregate.version > 1

    @pytest.mark.asyncio
    async def test_unknown_type_is_rejected(self, service):
        with pytest.raises(ValueError):
            await service.initialize_learner("ana", "guest")


class TestPositionHistory:
    """Tests for KPIService.get_position_history."""

    @pytest.mark.asyncio
    async def test_pads_front_with_latest_position(self, service):
        await service.initialize_learner("ana", LearnerType.SCHOOL_STUDENT)
        await service.history.record_position("ana", "math", 5, 100.0, 10, week_of=date(2025, 2, 5))
        await service.history.record_position("ana", "math", 3, 150.0, 10, week_of=date(2025, 2, 12))

        series = await service.get_position_history("ana", "math", weeks=4)

        assert [entry.week_key for entry in series] == ["2025-W04", "2025-W05", "2025-W06", "2025-W07"]
        assert [entry.position for entry in series] == [3, 3, 5, 3]
        assert [entry.score_at_time for entry in series] == [0.0, 0.0, 100.0, 150.0]
        assert series[0].window_start == date(2025, 1, 20)

    @pytest.mark.asyncio
    async def test_truncates_to_most_recent_weeks(self, service):
        await service.initialize_learner("ana", LearnerType.SCHOOL_STUDENT)
        start = date(2025, 1, 6)
        for week in range(5):
            await service.history.record_position(
                "ana", "math", week + 1, 10.0, 10, week_of=start + timedelta(weeks=week)
            )

        series = await service.get_position_history("ana", "math", weeks=3)

        assert [entry.position for entry in series] == [3, 4, 5]

    @pytest.mark.asyncio
    async def test_empty_without_entries(self, service):
        await service.initialize_learner("ana", LearnerType.SCHOOL_STUDENT)

        assert await service.get_position_history("ana", "math") == []
        assert await service.get_position_history("ghost", "math") == []


class TestRankingTables:
    """Tests for ranking table reads and the institution recompute."""

    @pytest.mark.asyncio
    async def test_live_table_without_persisted_one(self, service, monday_morning):
        await service.apply_event(quiz("nb-ana", 100, monday_morning))
        await service.apply_event(quiz("nb-ben", 150, monday_morning))

        entries = await service.get_ranking_table(MATH, institution_id="school-1")

        assert learner_ids(entries) == ["ben", "ana"]
        assert [entry.display_name for entry in entries] == ["Ben", "Ana"]

    @pytest.mark.asyncio
    async def test_limit(self, service, monday_morning):
        await service.apply_event(quiz("nb-ana", 100, monday_morning))
        await service.apply_event(quiz("nb-ben", 150, monday_morning))

        entries = await service.get_ranking_table(MATH, limit=1, institution_id="school-1")

        assert learner_ids(entries) == ["ben"]

    @pytest.mark.asyncio
    async def test_fresh_persisted_table_is_served(self, service, monday_morning):
        await service.apply_event(quiz("nb-ana", 100, monday_morning))
        await service.apply_event(quiz("nb-ben", 150, monday_morning))
        await service.recompute_institution("school-1")
        await service.apply_event(quiz("nb-ana", 100, monday_morning))

        cached = await service.get_ranking_table(MATH, institution_id="school-1")
        service.staleness_minutes = 0
        live = await service.get_ranking_table(MATH, institution_id="school-1")

        assert learner_ids(cached) == ["ben", "ana"]
        assert learner_ids(live) == ["ana", "ben"]

    @pytest.mark.asyncio
    async def test_stale_table_served_when_recompute_fails(self, service, monday_morning):
        await service.apply_event(quiz("nb-ana", 100, monday_morning))
        await service.apply_event(quiz("nb-ben", 150, monday_morning))
        await service.recompute_institution("school-1")
        service.staleness_minutes = 0
        service.ranking.build_snapshot = AsyncMock(side_effect=RankingTimeoutError("scan too slow"))

        entries = await service.get_ranking_table(MATH, institution_id="school-1")

        assert learner_ids(entries) == ["ben", "ana"]

    @pytest.mark.asyncio
    async def test_recompute_failure_without_table_raises(self, service):
        service.ranking.build_snapshot = AsyncMock(side_effect=RankingTimeoutError("scan too slow"))

        with pytest.raises(RankingTimeoutError):
            await service.get_ranking_table(MATH)

    @pytest.mark.asyncio
    async def test_recompute_institution_updates_every_member(self, service, monday_morning):
        await service.apply_event(quiz("nb-ana", 100, monday_morning))
        await service.apply_event(quiz("nb-ben", 150, monday_morning))

        # Ben's event only re-ranked Ben.
        assert (await service.get_learner_aggregate("ana")).subjects["math"].rank_position == 1

        result = await service.recompute_institution("school-1")

        assert result.success is True
        assert result.learners_processed == 2
        assert result.scopes_ranked == 3

        ana = await service.get_learner_aggregate("ana")
        assert ana.subjects["math"].rank_position == 2
        assert ana.subjects["math"].total_peers == 2
        assert ana.subjects["math"].percentile == 50.0
        assert ana.global_kpis.average_percentile_global == 100.0
        ben = await service.get_learner_aggregate("ben")
        assert ben.subjects["math"].rank_position == 1

        table = await service.repository.load_ranking_table("school-1", MATH)
        assert table.scope_name == "Mathematics"
        assert table.total_peers == 2
        assert learner_ids(table.entries) == ["ben", "ana"]
        unit_table = await service.repository.load_ranking_table("school-1", RankingScope.unit("nb-ana"))
        assert unit_table.scope_name == "Algebra"

    @pytest.mark.asyncio
    async def test_recompute_institution_survives_concurrent_event(self, service, monday_morning, monkeypatch):
        await service.apply_event(quiz("nb-ana", 100, monday_morning))
        await service.apply_event(quiz("nb-ben", 150, monday_morning))
        load_many = service.repository.load_many
        raced = False

        async def load_then_apply_event(learner_ids):
            nonlocal raced
            loaded = await load_many(learner_ids)
            if not raced:
                raced = True
                await service.apply_event(quiz("nb-ana", 10, monday_morning))
            return loaded

        monkeypatch.setattr(service.repository, "load_many", load_then_apply_event)

        result = await service.recompute_institution("school-1")

        assert result.write.has_conflicts is True
        assert "ana" in result.repaired_learners
        assert result.failed_learners == []
        assert result.success is True

        ana = await service.get_learner_aggregate("ana")
        assert ana.subjects["math"].score == 110
        assert ana.subjects["math"].rank_position == 2
        ben = await service.get_learner_aggregate("ben")
        assert ben.subjects["math"].rank_position == 1
        assert ben.units["nb-ben"].rank_position == 1

        table = await service.repository.load_ranking_table("school-1", MATH)
        assert table is not None
        assert learner_ids(table.entries) == ["ben", "ana"]

    @pytest.mark.asyncio
    async def test_recompute_institution_without_members(self, service):
        result = await service.recompute_institution("school-9")

        assert result.success is True
        assert result.learners_processed == 0

    @pytest.mark.asyncio
    async def test_recompute_all_institutions(self, service, monday_morning):
        await service.apply_event(quiz("nb-ana", 100, monday_morning))
        await service.apply_event(quiz("nb-solo", 100, monday_morning))

        results = await service.recompute_all_institutions()

        assert [result.institution_id for result in results] == ["school-1"]
        assert results[0].to_dict()["success"] is True


class TestExecuteBulk:
    """Tests for KPIService.execute_bulk."""

    @pytest.mark.asyncio
    async def test_reports_progress(self, service):
        progress: list[tuple[int, int]] = []
        operations = [
            WriteOperation.set(UnitKPIRow, {"learner_id": f"l{i}", "unit_id": "nb-1"}, {"score": 1.0})
            for i in range(3)
        ]

        result = await service.execute_bulk(operations, on_progress=lambda done, total: progress.append((done, total)))

        assert result.success is True
        assert progress == [(3, 3)]
