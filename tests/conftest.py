# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

Store-backed fixtures run against a file-based SQLite database created
per test, so every test starts from an empty aggregate store.
"""

import os
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Dramatiq actors bind to a broker at import time.
os.environ.setdefault("DRAMATIQ_TEST_MODE", "true")

from learnrank.core.config.settings import DatabaseSettings, KPISettings  # noqa: E402
from learnrank.domains.kpi.directory import InMemoryDirectory  # noqa: E402
from learnrank.domains.kpi.locks import LearnerLocks  # noqa: E402
from learnrank.domains.kpi.service import KPIService, build_kpi_service  # noqa: E402
from learnrank.infrastructure.database.bulk import BulkWriteExecutor  # noqa: E402
from learnrank.infrastructure.database.connection import (  # noqa: E402
    create_engine,
    create_sessionmaker,
    create_tables,
)
from learnrank.infrastructure.database.repository import AggregateRepository  # noqa: E402


# =============================================================================
# Store Fixtures
# =============================================================================


async def _no_sleep(seconds: float) -> None:
    return None


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Engine over a fresh SQLite file with every table created."""
    db_settings = DatabaseSettings(url_override=f"sqlite+aiosqlite:///{tmp_path / 'learnrank.db'}")
    engine = create_engine(db_settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_sessionmaker(engine)


@pytest.fixture
def kpi_settings() -> KPISettings:
    """KPI settings with retry backoff disabled."""
    return KPISettings(bulk_retry_delay_seconds=0.0)


@pytest.fixture
def executor(sessionmaker: async_sessionmaker[AsyncSession]) -> BulkWriteExecutor:
    return BulkWriteExecutor(sessionmaker, sleep=_no_sleep)


@pytest.fixture
def repository(
    sessionmaker: async_sessionmaker[AsyncSession], executor: BulkWriteExecutor
) -> AggregateRepository:
    return AggregateRepository(sessionmaker, executor)


@pytest.fixture
def locks() -> LearnerLocks:
    return LearnerLocks()


# =============================================================================
# Domain Fixtures
# =============================================================================


@pytest.fixture
def directory() -> InMemoryDirectory:
    """Two-learner school with one math unit each, plus an independent learner."""
    directory = InMemoryDirectory()
    directory.add_subject("math", "Mathematics")
    directory.add_learner("ana", institution_id="school-1", name="Ana")
    directory.add_learner("ben", institution_id="school-1", name="Ben")
    directory.add_learner("solo", name="Solo")
    directory.add_unit("nb-ana", owner="ana", subject_id="math", title="Algebra", concept_count=12)
    directory.add_unit("nb-ben", owner="ben", subject_id="math", title="Geometry", concept_count=8)
    directory.add_unit("nb-solo", owner="solo", title="Notes")
    return directory


@pytest.fixture
def service(
    sessionmaker: async_sessionmaker[AsyncSession],
    directory: InMemoryDirectory,
    kpi_settings: KPISettings,
) -> KPIService:
    return build_kpi_service(sessionmaker, directory, kpi_settings)


@pytest.fixture
def monday_morning() -> datetime:
    """2025-02-10 is a Monday (ISO week 2025-W07)."""
    return datetime(2025, 2, 10, 9, 30, tzinfo=timezone.utc)


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
