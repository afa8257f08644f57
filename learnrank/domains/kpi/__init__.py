# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""KPI aggregation domain.

This package maintains per-learner KPI aggregates and rankings:
- Incremental updates from study events (updater)
- Unit and subject rankings with percentiles (ranking)
- Weekly position history per subject (history)
- The outward-facing KPIService facade (service)

Only the value types are re-exported here. Import the components from
their modules, since they depend on the database layer:

    from learnrank.domains.kpi.service import build_kpi_service
    from learnrank.domains.kpi import QuizCompleted, RankingScope

    service = build_kpi_service(sessionmaker, directory, settings.kpi)
    await service.apply_event(QuizCompleted(...))
"""

from learnrank.domains.kpi.directory import (
    Catalog,
    InMemoryDirectory,
    RosterDirectory,
    UnitDirectory,
    UnitInfo,
    UnitOwner,
)
from learnrank.domains.kpi.events import (
    FreeStudyCompleted,
    GuidedStudyCompleted,
    QuizCompleted,
    StudyEvent,
    parse_study_event,
)
from learnrank.domains.kpi.exceptions import (
    ComputationError,
    ConcurrencyConflictError,
    KPIError,
    PersistenceError,
    RankingTimeoutError,
    ResolutionError,
)
from learnrank.domains.kpi.locks import LearnerLocks
from learnrank.domains.kpi.models import (
    ActivityKind,
    DayBucket,
    GlobalKPIs,
    LearnerAggregate,
    LearnerType,
    RankingEntry,
    RankingScope,
    RankingSnapshot,
    RankingTable,
    ScopeKind,
    SubjectKPIs,
    UnitKPIs,
    WeeklyPositionEntry,
)

__all__ = [
    # Models
    "ActivityKind",
    "DayBucket",
    "GlobalKPIs",
    "LearnerAggregate",
    "LearnerType",
    "RankingEntry",
    "RankingScope",
    "RankingSnapshot",
    "RankingTable",
    "ScopeKind",
    "SubjectKPIs",
    "UnitKPIs",
    "WeeklyPositionEntry",
    # Events
    "StudyEvent",
    "GuidedStudyCompleted",
    "FreeStudyCompleted",
    "QuizCompleted",
    "parse_study_event",
    # Directory
    "Catalog",
    "InMemoryDirectory",
    "RosterDirectory",
    "UnitDirectory",
    "UnitInfo",
    "UnitOwner",
    # Exceptions
    "KPIError",
    "ResolutionError",
    "ComputationError",
    "PersistenceError",
    "ConcurrencyConflictError",
    "RankingTimeoutError",
    "LearnerLocks",
]
