# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""KPI aggregate tables.

The learner aggregate is normalized into one parent row plus one child row
per unit and per subject, so ranking scans read a single indexed column
per scope instead of whole documents:

- learner_aggregates: global KPIs, histogram, position history, version
- unit_kpis: (learner_id, unit_id), indexed on (unit_id, score)
- subject_kpis: (learner_id, subject_id), indexed on (subject_id, score)
- ranking_tables: persisted top-N tables per institution and scope
"""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from learnrank.infrastructure.database.models.base import Base, TimestampMixin
from learnrank.utils.datetime import utc_now


class LearnerAggregateRow(TimestampMixin, Base):
    """Parent row of a learner aggregate."""

    __tablename__ = "learner_aggregates"

    learner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    learner_type: Mapped[str] = mapped_column(String(32), default="free", nullable=False)
    institution_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    roster_bound: Mapped[bool] = mapped_column(default=False, nullable=False)

    score_global: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    average_percentile_global: Mapped[float] = mapped_column(Float, default=50.0, nullable=False)
    total_study_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    intelligent_sessions_global: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_units: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_subjects: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    weekly_histogram: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    position_history: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)


class UnitKPIRow(Base):
    """KPIs of one learner in one unit."""

    __tablename__ = "unit_kpis"
    __table_args__ = (Index("ix_unit_kpis_unit_score", "unit_id", "score"),)

    learner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    unit_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    unit_title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rank_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_peers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    percentile: Mapped[float] = mapped_column(Float, default=50.0, nullable=False)
    concept_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    local_study_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    intelligent_sessions_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    intelligent_sessions_successful: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    intelligent_sessions_local: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    free_sessions_local: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    mastered_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reviewing_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mastery_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    quiz_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    guided_study_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    free_study_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)


class SubjectKPIRow(Base):
    """KPIs of one learner in one subject."""

    __tablename__ = "subject_kpis"
    __table_args__ = (Index("ix_subject_kpis_subject_score", "subject_id", "score"),)

    learner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    subject_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rank_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_peers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    percentile: Mapped[float] = mapped_column(Float, default=50.0, nullable=False)
    study_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    intelligent_sessions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    child_unit_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)


class RankingTableRow(Base):
    """Persisted ranking table of one scope within one institution."""

    __tablename__ = "ranking_tables"

    institution_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    scope_kind: Mapped[str] = mapped_column(String(16), primary_key=True)
    scope_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    scope_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    entries: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    total_peers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
