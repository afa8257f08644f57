# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""KPI aggregate domain models.

One LearnerAggregate exists per learner. It embeds:
- GlobalKPIs: learner-wide totals and the average percentile
- UnitKPIs per learning unit (notebook)
- SubjectKPIs per subject (roster-bound learners only)
- A fixed seven-bucket weekly study-time histogram (Monday..Sunday)
- A capped weekly position-history ledger per subject

Rates and percentiles are expressed as percentages in [0, 100].
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from learnrank.utils.datetime import ensure_utc, utc_now

DEFAULT_PERCENTILE = 50.0

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


class ActivityKind(str, Enum):
    """Kind of learning activity behind a study event."""

    QUIZ = "quiz"
    GUIDED_STUDY = "guided_study"
    FREE_STUDY = "free_study"


class LearnerType(str, Enum):
    """Account type; school types are roster-bound."""

    FREE = "free"
    PRO = "pro"
    SCHOOL_STUDENT = "school-student"
    SCHOOL_TEACHER = "school-teacher"

    @property
    def is_roster_bound(self) -> bool:
        """Whether learners of this type belong to an institution roster."""
        return self in (LearnerType.SCHOOL_STUDENT, LearnerType.SCHOOL_TEACHER)


def ratio_percent(numerator: float, denominator: float) -> float:
    """Percentage of numerator over denominator, 0 when denominator is 0."""
    if denominator <= 0:
        return 0.0
    return min(100.0, max(0.0, numerator / denominator * 100))


class GlobalKPIs(BaseModel):
    """Learner-wide KPI summary."""

    score_global: float = 0.0
    average_percentile_global: float = DEFAULT_PERCENTILE
    total_study_minutes: float = 0.0
    intelligent_sessions_global: int = 0
    total_units: int = 0
    total_subjects: int = 0
    last_updated: datetime = Field(default_factory=utc_now)


class UnitKPIs(BaseModel):
    """KPIs of one learner within one learning unit."""

    unit_id: str
    unit_title: str = ""
    subject_id: str | None = None
    score: float = 0.0
    rank_position: int | None = None
    total_peers: int = 0
    percentile: float = DEFAULT_PERCENTILE
    concept_count: int = 0
    local_study_minutes: float = 0.0
    intelligent_sessions_total: int = 0
    intelligent_sessions_successful: int = 0
    intelligent_sessions_local: int = 0
    free_sessions_local: int = 0
    success_rate: float = 0.0
    mastered_count: int = 0
    reviewing_count: int = 0
    mastery_rate: float = 0.0
    quiz_minutes: float = 0.0
    guided_study_minutes: float = 0.0
    free_study_minutes: float = 0.0

    def recompute_rates(self) -> None:
        """Refresh success and mastery rates from the raw counters."""
        self.success_rate = ratio_percent(
            self.intelligent_sessions_successful, self.intelligent_sessions_total
        )
        self.mastery_rate = ratio_percent(
            self.mastered_count, self.mastered_count + self.reviewing_count
        )


class SubjectKPIs(BaseModel):
    """KPIs of one learner within one subject."""

    subject_id: str
    subject_name: str = ""
    score: float = 0.0
    rank_position: int | None = None
    total_peers: int = 0
    percentile: float = DEFAULT_PERCENTILE
    study_minutes: float = 0.0
    intelligent_sessions: int = 0
    child_unit_ids: set[str] = Field(default_factory=set)


class DayBucket(BaseModel):
    """Accumulated study time of one weekday."""

    day: str
    total_minutes: float = 0.0
    quiz_sessions: int = 0
    guided_study_sessions: int = 0
    free_study_sessions: int = 0

    def add(self, minutes: float, kind: ActivityKind) -> None:
        """Add one session of the given kind."""
        self.total_minutes += minutes
        if kind is ActivityKind.QUIZ:
            self.quiz_sessions += 1
        elif kind is ActivityKind.GUIDED_STUDY:
            self.guided_study_sessions += 1
        else:
            self.free_study_sessions += 1


def empty_histogram() -> list[DayBucket]:
    """Seven zeroed buckets, Monday first."""
    return [DayBucket(day=day) for day in WEEKDAYS]


class WeeklyPositionEntry(BaseModel):
    """Ranking position of a learner in a subject for one ISO week.

    A positive delta_from_previous_week means the position number grew,
    i.e. the learner dropped in the ranking.
    """

    week_key: str
    window_start: date
    window_end: date
    position: int
    score_at_time: float
    total_peers_at_time: int
    delta_from_previous_week: int = 0


class LearnerAggregate(BaseModel):
    """Complete KPI aggregate of one learner.

    Attributes:
        learner_id: Learner identifier.
        learner_type: Account type.
        global_kpis: Learner-wide summary.
        units: UnitKPIs keyed by unit id.
        subjects: SubjectKPIs keyed by subject id, None when the learner
            is not roster-bound.
        weekly_histogram: Exactly seven day buckets, Monday first.
        position_history: Weekly ledgers keyed by subject id, None when
            the learner is not roster-bound.
        version: Optimistic concurrency token; 0 means never persisted.
    """

    learner_id: str
    learner_type: LearnerType = LearnerType.FREE
    global_kpis: GlobalKPIs = Field(default_factory=GlobalKPIs)
    units: dict[str, UnitKPIs] = Field(default_factory=dict)
    subjects: dict[str, SubjectKPIs] | None = None
    weekly_histogram: list[DayBucket] = Field(default_factory=empty_histogram)
    position_history: dict[str, list[WeeklyPositionEntry]] | None = None
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("weekly_histogram")
    @classmethod
    def _seven_buckets(cls, value: list[DayBucket]) -> list[DayBucket]:
        if len(value) != len(WEEKDAYS):
            raise ValueError(f"weekly histogram must have 7 buckets, got {len(value)}")
        return value

    @classmethod
    def new(cls, learner_id: str, learner_type: LearnerType = LearnerType.FREE) -> "LearnerAggregate":
        """Create a zeroed aggregate; roster-bound types get subject maps."""
        aggregate = cls(learner_id=learner_id, learner_type=learner_type)
        if learner_type.is_roster_bound:
            aggregate.subjects = {}
            aggregate.position_history = {}
        return aggregate

    @property
    def is_persisted(self) -> bool:
        """Whether the aggregate has been written at least once."""
        return self.version > 0

    def bucket_for(self, moment: datetime) -> DayBucket:
        """Histogram bucket of the weekday of a moment."""
        return self.weekly_histogram[moment.weekday()]

    def refresh_totals(self, moment: datetime | None = None) -> None:
        """Recompute unit/subject counts and touch timestamps."""
        stamp = moment or utc_now()
        self.global_kpis.total_units = len(self.units)
        self.global_kpis.total_subjects = len(self.subjects or {})
        self.global_kpis.last_updated = stamp
        self.updated_at = stamp

    def recompute_average_percentile(self) -> float:
        """Set the global average to the mean of per-unit percentiles."""
        percentiles = [unit.percentile for unit in self.units.values()]
        if percentiles:
            self.global_kpis.average_percentile_global = sum(percentiles) / len(percentiles)
        else:
            self.global_kpis.average_percentile_global = DEFAULT_PERCENTILE
        return self.global_kpis.average_percentile_global

    def scores(self) -> dict[str, float]:
        """Flat map of every score, used to detect regressions."""
        flat = {"global": self.global_kpis.score_global}
        flat.update({f"unit:{uid}": unit.score for uid, unit in self.units.items()})
        flat.update(
            {f"subject:{sid}": subject.score for sid, subject in (self.subjects or {}).items()}
        )
        return flat

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        return self.model_dump(mode="json")


class ScopeKind(str, Enum):
    """Granularity a ranking is computed over."""

    UNIT = "unit"
    SUBJECT = "subject"


@dataclass(frozen=True)
class RankingScope:
    """A unit or subject that learners are ranked within."""

    kind: ScopeKind
    scope_id: str

    @classmethod
    def unit(cls, unit_id: str) -> "RankingScope":
        return cls(ScopeKind.UNIT, unit_id)

    @classmethod
    def subject(cls, subject_id: str) -> "RankingScope":
        return cls(ScopeKind.SUBJECT, subject_id)

    @classmethod
    def parse(cls, text: str) -> "RankingScope":
        """Parse the ``kind:scope_id`` form produced by str()."""
        kind, separator, scope_id = text.partition(":")
        if not separator or not scope_id:
            raise ValueError(f"Invalid ranking scope: {text!r}")
        return cls(ScopeKind(kind), scope_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.scope_id}"


class RankingEntry(BaseModel):
    """One row of a ranking."""

    learner_id: str
    display_name: str = ""
    score: float
    position: int


class RankingSnapshot(BaseModel):
    """Ordered ranking of one scope at one instant; never cached."""

    scope_kind: ScopeKind
    scope_id: str
    entries: list[RankingEntry] = Field(default_factory=list)
    computed_at: datetime = Field(default_factory=utc_now)

    @property
    def total_peers(self) -> int:
        return len(self.entries)

    def position_of(self, learner_id: str) -> int | None:
        """1-based position of a learner, None when absent."""
        for entry in self.entries:
            if entry.learner_id == learner_id:
                return entry.position
        return None

    def percentile_of(self, position: int) -> float:
        """Percentile of a position within this snapshot."""
        return percentile_for(position, self.total_peers)


class RankingTable(BaseModel):
    """Persisted top-N ranking of one scope within an institution."""

    institution_id: str
    scope_kind: ScopeKind
    scope_id: str
    scope_name: str = ""
    entries: list[RankingEntry] = Field(default_factory=list)
    total_peers: int = 0
    last_updated: datetime = Field(default_factory=utc_now)

    def needs_update(self, now: datetime | None = None, staleness_minutes: int = 10) -> bool:
        """Whether the table is older than the staleness window."""
        reference = ensure_utc(now) or utc_now()
        return reference - ensure_utc(self.last_updated) >= timedelta(minutes=staleness_minutes)


def percentile_for(position: int, total: int) -> float:
    """Share of peers at or below a position, as a percentage.

    The best position gets 100; with no peers the default 50 is returned.
    """
    if total <= 0:
        return DEFAULT_PERCENTILE
    return (total - position + 1) / total * 100
