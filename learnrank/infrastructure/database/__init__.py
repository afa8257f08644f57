# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Aggregate store infrastructure.

- connection: engine, sessions and DatabaseError
- models: SQLAlchemy tables
- bulk: chunked writes under the per-transaction operation ceiling
- repository: mapping between aggregates and rows
"""

from learnrank.infrastructure.database.bulk import (
    BulkWriteExecutor,
    BulkWriteResult,
    WriteKind,
    WriteOperation,
)
from learnrank.infrastructure.database.connection import (
    DatabaseError,
    check_database_connection,
    close_database,
    create_tables,
    get_session,
    get_sessionmaker,
    init_database,
)

__all__ = [
    "BulkWriteExecutor",
    "BulkWriteResult",
    "WriteKind",
    "WriteOperation",
    "DatabaseError",
    "check_database_connection",
    "close_database",
    "create_tables",
    "get_session",
    "get_sessionmaker",
    "init_database",
]
