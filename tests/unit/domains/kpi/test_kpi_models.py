# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for KPI aggregate models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from learnrank.domains.kpi.models import (
    DEFAULT_PERCENTILE,
    ActivityKind,
    DayBucket,
    LearnerAggregate,
    LearnerType,
    RankingEntry,
    RankingScope,
    RankingSnapshot,
    RankingTable,
    ScopeKind,
    UnitKPIs,
    empty_histogram,
    percentile_for,
    ratio_percent,
)


class TestRatios:
    """Tests for rate computations."""

    def test_ratio_percent_zero_denominator(self):
        assert ratio_percent(5, 0) == 0.0

    def test_ratio_percent_is_clamped(self):
        assert ratio_percent(3, 2) == 100.0

    def test_unit_rates(self):
        unit = UnitKPIs(
            unit_id="nb-1",
            intelligent_sessions_total=4,
            intelligent_sessions_successful=3,
            mastered_count=2,
            reviewing_count=6,
        )

        unit.recompute_rates()

        assert unit.success_rate == 75.0
        assert unit.mastery_rate == 25.0

    def test_unit_rates_without_sessions(self):
        unit = UnitKPIs(unit_id="nb-1")

        unit.recompute_rates()

        assert unit.success_rate == 0.0
        assert unit.mastery_rate == 0.0


class TestPercentile:
    """Tests for percentile_for."""

    @pytest.mark.parametrize(
        "position,total,expected",
        [(1, 1, 100.0), (1, 4, 100.0), (2, 4, 75.0), (4, 4, 25.0), (3, 5, 60.0)],
    )
    def test_formula(self, position, total, expected):
        assert percentile_for(position, total) == pytest.approx(expected)

    def test_empty_ranking_defaults(self):
        assert percentile_for(1, 0) == DEFAULT_PERCENTILE


class TestLearnerAggregate:
    """Tests for LearnerAggregate."""

    def test_new_free_learner_has_no_subjects(self):
        aggregate = LearnerAggregate.new("solo")

        assert aggregate.subjects is None
        assert aggregate.position_history is None
        assert aggregate.is_persisted is False
        assert len(aggregate.weekly_histogram) == 7

    def test_new_school_learner_has_subject_maps(self):
        aggregate = LearnerAggregate.new("ana", LearnerType.SCHOOL_STUDENT)

        assert aggregate.subjects == {}
        assert aggregate.position_history == {}

    def test_histogram_must_have_seven_buckets(self):
        with pytest.raises(ValidationError):
            LearnerAggregate(learner_id="ana", weekly_histogram=empty_histogram()[:6])

    def test_bucket_for_uses_weekday(self):
        aggregate = LearnerAggregate.new("ana")
        wednesday = datetime(2025, 2, 12, 23, 0, tzinfo=timezone.utc)

        assert aggregate.bucket_for(wednesday).day == "wednesday"

    def test_average_percentile_of_units(self):
        aggregate = LearnerAggregate.new("ana")
        aggregate.units["a"] = UnitKPIs(unit_id="a", percentile=100.0)
        aggregate.units["b"] = UnitKPIs(unit_id="b", percentile=50.0)

        assert aggregate.recompute_average_percentile() == 75.0

    def test_average_percentile_without_units(self):
        aggregate = LearnerAggregate.new("ana")
        aggregate.global_kpis.average_percentile_global = 10.0

        assert aggregate.recompute_average_percentile() == DEFAULT_PERCENTILE

    def test_refresh_totals(self):
        aggregate = LearnerAggregate.new("ana", LearnerType.SCHOOL_TEACHER)
        aggregate.units["a"] = UnitKPIs(unit_id="a")
        stamp = datetime(2025, 2, 10, tzinfo=timezone.utc)

        aggregate.refresh_totals(stamp)

        assert aggregate.global_kpis.total_units == 1
        assert aggregate.global_kpis.total_subjects == 0
        assert aggregate.global_kpis.last_updated == stamp

    def test_scores_flattens_every_level(self):
        aggregate = LearnerAggregate.new("ana")
        aggregate.units["a"] = UnitKPIs(unit_id="a", score=3.0)

        assert aggregate.scores() == {"global": 0.0, "unit:a": 3.0}


class TestDayBucket:
    """Tests for DayBucket."""

    def test_add_counts_by_kind(self):
        bucket = DayBucket(day="monday")

        bucket.add(10, ActivityKind.QUIZ)
        bucket.add(5, ActivityKind.FREE_STUDY)

        assert bucket.total_minutes == 15
        assert bucket.quiz_sessions == 1
        assert bucket.free_study_sessions == 1
        assert bucket.guided_study_sessions == 0


class TestRankingScope:
    """Tests for RankingScope."""

    def test_str_and_parse(self):
        scope = RankingScope.subject("math")

        assert str(scope) == "subject:math"
        assert RankingScope.parse("subject:math") == scope

    def test_parse_keeps_colons_in_id(self):
        assert RankingScope.parse("unit:a:b").scope_id == "a:b"

    @pytest.mark.parametrize("text", ["unit", "unit:", "course:x"])
    def test_parse_rejects_malformed(self, text):
        with pytest.raises(ValueError):
            RankingScope.parse(text)


class TestRankingTables:
    """Tests for RankingSnapshot and RankingTable."""

    def test_snapshot_lookup(self):
        snapshot = RankingSnapshot(
            scope_kind=ScopeKind.UNIT,
            scope_id="nb-1",
            entries=[
                RankingEntry(learner_id="a", score=9, position=1),
                RankingEntry(learner_id="b", score=5, position=2),
            ],
        )

        assert snapshot.total_peers == 2
        assert snapshot.position_of("b") == 2
        assert snapshot.position_of("z") is None
        assert snapshot.percentile_of(2) == 50.0

    def test_table_freshness(self):
        now = datetime(2025, 2, 10, 12, 0, tzinfo=timezone.utc)
        table = RankingTable(
            institution_id="school-1",
            scope_kind=ScopeKind.SUBJECT,
            scope_id="math",
            last_updated=now - timedelta(minutes=9),
        )

        assert table.needs_update(now) is False
        assert table.needs_update(now + timedelta(minutes=2)) is True
        assert table.needs_update(now, staleness_minutes=5) is True
