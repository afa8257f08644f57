# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Study events consumed by the KPI updater.

Three event kinds are produced by the study and quiz flows:
- GuidedStudyCompleted: an intelligent (guided) study session finished
- FreeStudyCompleted: a free study session finished
- QuizCompleted: a quiz finished with a score

Events are validated at construction; a malformed event (missing field,
negative duration or count) raises pydantic.ValidationError, which is a
contract violation of the producer and is not caught by the engine.

Example:
    event = parse_study_event({
        "kind": "quiz",
        "unit_id": "nb-1",
        "duration_minutes": 12,
        "score": 340,
        "accuracy": 85.0,
        "timestamp": "2025-02-10T09:30:00Z",
    })
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from learnrank.domains.kpi.models import ActivityKind
from learnrank.utils.datetime import ensure_utc


class StudyEvent(BaseModel):
    """Fields shared by every study event."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    unit_id: str = Field(min_length=1)
    subject_id: str | None = None
    duration_minutes: float = Field(ge=0)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        # Naive timestamps are taken as UTC; aware ones keep their offset
        # so the weekday matches the learner's local day.
        if value.tzinfo is None:
            return ensure_utc(value)
        return value

    @property
    def activity(self) -> ActivityKind:
        """Activity kind used for histogram and minute splits."""
        raise NotImplementedError


class GuidedStudyCompleted(StudyEvent):
    """An intelligent study session was completed."""

    kind: Literal["guided_study"] = "guided_study"
    succeeded: bool
    concepts_seen: int = Field(default=0, ge=0)
    concepts_mastered: int = Field(default=0, ge=0)
    concepts_reviewing: int = Field(default=0, ge=0)

    @property
    def activity(self) -> ActivityKind:
        return ActivityKind.GUIDED_STUDY


class FreeStudyCompleted(StudyEvent):
    """A free study session was completed."""

    kind: Literal["free_study"] = "free_study"
    concepts_reviewed: int = Field(default=0, ge=0)

    @property
    def activity(self) -> ActivityKind:
        return ActivityKind.FREE_STUDY


class QuizCompleted(StudyEvent):
    """A quiz was completed; its score is added to unit and global scores."""

    kind: Literal["quiz"] = "quiz"
    score: float = Field(ge=0)
    accuracy: float = Field(default=0.0, ge=0, le=100)

    @property
    def activity(self) -> ActivityKind:
        return ActivityKind.QUIZ


AnyStudyEvent = Annotated[
    Union[GuidedStudyCompleted, FreeStudyCompleted, QuizCompleted],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter[AnyStudyEvent] = TypeAdapter(AnyStudyEvent)


def parse_study_event(payload: dict[str, Any]) -> StudyEvent:
    """Build a typed study event from a tagged dictionary.

    Args:
        payload: Event fields plus a ``kind`` discriminator
            (``guided_study``, ``free_study`` or ``quiz``).

    Returns:
        The matching StudyEvent subclass.

    Raises:
        pydantic.ValidationError: If the payload is malformed.
    """
    return _event_adapter.validate_python(payload)
