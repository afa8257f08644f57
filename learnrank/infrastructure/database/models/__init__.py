# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy models of the aggregate store."""

from learnrank.infrastructure.database.models.base import Base, TimestampMixin
from learnrank.infrastructure.database.models.kpi import (
    LearnerAggregateRow,
    RankingTableRow,
    SubjectKPIRow,
    UnitKPIRow,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "LearnerAggregateRow",
    "UnitKPIRow",
    "SubjectKPIRow",
    "RankingTableRow",
]
