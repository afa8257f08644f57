# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for ranking computation."""

import asyncio

import pytest
import pytest_asyncio

from learnrank.domains.kpi.directory import InMemoryDirectory
from learnrank.domains.kpi.exceptions import RankingTimeoutError
from learnrank.domains.kpi.models import (
    LearnerAggregate,
    LearnerType,
    RankingScope,
    SubjectKPIs,
    UnitKPIs,
)
from learnrank.domains.kpi.ranking import (
    RankingEngine,
    RankingOutcome,
    RankingStatus,
    apply_outcome,
    order_scores,
)

UNIT = RankingScope.unit("nb-shared")


async def seed_unit(repository, learner_id: str, score: float, unit_id: str = "nb-shared") -> None:
    aggregate = LearnerAggregate.new(learner_id)
    aggregate.units[unit_id] = UnitKPIs(unit_id=unit_id, score=score)
    await repository.save(aggregate)


async def seed_subject(repository, learner_id: str, score: float, institution_id: str) -> None:
    aggregate = LearnerAggregate.new(learner_id, LearnerType.SCHOOL_STUDENT)
    aggregate.subjects["math"] = SubjectKPIs(subject_id="math", score=score)
    await repository.save(aggregate, institution_id=institution_id)


@pytest.fixture
def open_directory() -> InMemoryDirectory:
    """Independent learners A..E, ranked against every holder of a scope."""
    directory = InMemoryDirectory()
    for learner_id in "ABCDE":
        directory.add_learner(learner_id, name=f"Learner {learner_id}")
    return directory


@pytest.fixture
def ranking_engine(repository, open_directory, locks) -> RankingEngine:
    return RankingEngine(repository, open_directory, locks)


@pytest_asyncio.fixture
async def five_learners(repository) -> None:
    for learner_id, score in zip("BDACE", [80, 60, 90, 60, 40]):
        await seed_unit(repository, learner_id, score)


class TestOrderScores:
    """Tests for deterministic ordering."""

    def test_ties_break_on_learner_id(self):
        ordered = order_scores({"B": 80, "D": 60, "A": 90, "C": 60, "E": 40})

        assert [learner_id for learner_id, _ in ordered] == ["A", "B", "C", "D", "E"]

    def test_empty(self):
        assert order_scores({}) == []


class TestComputeRanking:
    """Tests for RankingEngine.compute_ranking."""

    @pytest.mark.asyncio
    async def test_position_and_percentile(self, ranking_engine, repository, five_learners):
        outcome = await ranking_engine.compute_ranking(UNIT, "C")

        assert outcome.status is RankingStatus.APPLIED
        assert outcome.position == 3
        assert outcome.total_peers == 5
        assert outcome.percentile == pytest.approx(60.0)
        assert outcome.score == 60

        stored = await repository.load("C")
        assert stored.units["nb-shared"].rank_position == 3
        assert stored.units["nb-shared"].total_peers == 5
        assert stored.units["nb-shared"].percentile == pytest.approx(60.0)
        assert stored.global_kpis.average_percentile_global == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_only_the_triggering_learner_is_written(self, ranking_engine, repository, five_learners):
        await ranking_engine.compute_ranking(UNIT, "C")

        for learner_id in "ABDE":
            assert (await repository.load(learner_id)).units["nb-shared"].rank_position is None

    @pytest.mark.asyncio
    async def test_single_peer(self, ranking_engine, repository):
        await seed_unit(repository, "A", 10)

        outcome = await ranking_engine.compute_ranking(UNIT, "A")

        assert outcome.position == 1
        assert outcome.percentile == 100.0

    @pytest.mark.asyncio
    async def test_empty_scope_is_skipped(self, ranking_engine):
        outcome = await ranking_engine.compute_ranking(RankingScope.unit("nb-empty"), "A")

        assert outcome.status is RankingStatus.SKIPPED
        assert outcome.position is None

    @pytest.mark.asyncio
    async def test_institution_roster_bounds_the_peers(self, repository, locks):
        directory = InMemoryDirectory()
        directory.add_learner("ana", institution_id="school-1")
        directory.add_learner("ben", institution_id="school-1")
        directory.add_learner("zed", institution_id="school-2")
        await seed_subject(repository, "ana", 50, "school-1")
        await seed_subject(repository, "ben", 70, "school-1")
        await seed_subject(repository, "zed", 99, "school-2")
        engine = RankingEngine(repository, directory, locks)

        outcome = await engine.compute_ranking(RankingScope.subject("math"), "ana")

        assert outcome.position == 2
        assert outcome.total_peers == 2
        assert (await repository.load("ana")).subjects["math"].percentile == 50.0

    @pytest.mark.asyncio
    async def test_older_result_is_discarded(self, ranking_engine, repository, five_learners):
        gate = asyncio.Event()
        real_scan = repository.scope_scores
        scans = 0

        async def slow_first_scan(scope, learner_ids=None):
            nonlocal scans
            scans += 1
            if scans == 1:
                await gate.wait()
            return await real_scan(scope, learner_ids)

        repository.scope_scores = slow_first_scan

        first = asyncio.create_task(ranking_engine.compute_ranking(UNIT, "C"))
        await asyncio.sleep(0)
        second = await ranking_engine.compute_ranking(UNIT, "C")
        gate.set()
        older = await first

        assert second.status is RankingStatus.APPLIED
        assert older.status is RankingStatus.STALE
        assert older.sequence < second.sequence
        assert ranking_engine.tracked_pairs == 0

    @pytest.mark.asyncio
    async def test_scan_timeout(self, repository, open_directory, locks):
        async def hanging_scan(scope, learner_ids=None):
            await asyncio.sleep(5)
            return {}

        repository.scope_scores = hanging_scan
        engine = RankingEngine(repository, open_directory, locks, timeout_seconds=0.01)

        with pytest.raises(RankingTimeoutError):
            await engine.compute_ranking(UNIT, "A")

        assert engine.tracked_pairs == 0

    @pytest.mark.asyncio
    async def test_sequence_state_is_dropped_when_idle(self, ranking_engine, five_learners):
        for learner_id in "ABCDE":
            await ranking_engine.compute_ranking(UNIT, learner_id)
        outcome = await ranking_engine.compute_ranking(UNIT, "C")

        assert outcome.status is RankingStatus.APPLIED
        assert outcome.sequence == 1
        assert ranking_engine.tracked_pairs == 0


class TestBuildSnapshot:
    """Tests for RankingEngine.build_snapshot."""

    @pytest.mark.asyncio
    async def test_snapshot_is_ordered_with_names(self, ranking_engine, five_learners):
        snapshot = await ranking_engine.build_snapshot(UNIT)

        assert [entry.learner_id for entry in snapshot.entries] == ["A", "B", "C", "D", "E"]
        assert [entry.position for entry in snapshot.entries] == [1, 2, 3, 4, 5]
        assert snapshot.entries[0].display_name == "Learner A"
        assert snapshot.percentile_of(snapshot.position_of("E")) == pytest.approx(20.0)


class TestApplyOutcome:
    """Tests for apply_outcome."""

    def test_missing_scope_is_not_applied(self):
        aggregate = LearnerAggregate.new("A")
        outcome = RankingOutcome(
            scope=UNIT, learner_id="A", status=RankingStatus.APPLIED, position=1, total_peers=1, percentile=100.0
        )

        assert apply_outcome(aggregate, outcome) is False

    def test_average_covers_every_unit(self):
        aggregate = LearnerAggregate.new("A")
        aggregate.units["nb-shared"] = UnitKPIs(unit_id="nb-shared")
        aggregate.units["nb-other"] = UnitKPIs(unit_id="nb-other", percentile=20.0)
        outcome = RankingOutcome(
            scope=UNIT, learner_id="A", status=RankingStatus.APPLIED, position=1, total_peers=4, percentile=100.0
        )

        assert apply_outcome(aggregate, outcome) is True
        assert aggregate.global_kpis.average_percentile_global == 60.0
