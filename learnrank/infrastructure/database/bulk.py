# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Chunked bulk writes under the store's per-transaction operation ceiling.

The store accepts at most 500 operations per atomic transaction. The
BulkWriteExecutor splits an arbitrary list of writes into contiguous
chunks, commits each chunk in its own transaction and retries a failed
chunk with linear backoff before recording it as failed and moving on.

Chunks are independent: a failed chunk never rolls back chunks that were
already committed, and later chunks are still attempted.

Usage:
    executor = BulkWriteExecutor(sessionmaker)
    result = await executor.execute([
        WriteOperation.set(UnitKPIRow, {"learner_id": "u1", "unit_id": "n1"}, {"score": 10}),
        WriteOperation.delete(UnitKPIRow, {"learner_id": "u2", "unit_id": "n1"}),
    ])
    if not result.success:
        logger.warning("Bulk write incomplete: %s", result.errors)
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from learnrank.core.config.settings import STORE_OPERATION_LIMIT
from learnrank.infrastructure.database.models import Base
from learnrank.utils.logging import get_logger

if TYPE_CHECKING:
    from learnrank.core.config.settings import KPISettings

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], Awaitable[None] | None]
SleepFunc = Callable[[float], Awaitable[None]]


class WriteKind(str, Enum):
    """Kind of a single write operation."""

    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class WriteOperation:
    """One row-level write.

    Attributes:
        kind: SET inserts or replaces the row, UPDATE changes fields of an
            existing row, DELETE removes it.
        model: Mapped table class.
        key: Primary key columns and values.
        payload: Column values to write (SET and UPDATE).
        guard: Extra equality predicates an UPDATE must match; a guarded
            update that matches no row is a conflict.
        create_only: Turn SET into a strict insert; an existing row is a
            conflict.
    """

    kind: WriteKind
    model: type[Base]
    key: dict[str, Any]
    payload: dict[str, Any] = field(default_factory=dict)
    guard: dict[str, Any] = field(default_factory=dict)
    create_only: bool = False

    @classmethod
    def set(
        cls,
        model: type[Base],
        key: dict[str, Any],
        payload: dict[str, Any] | None = None,
        create_only: bool = False,
    ) -> "WriteOperation":
        return cls(WriteKind.SET, model, key, payload or {}, create_only=create_only)

    @classmethod
    def update(
        cls,
        model: type[Base],
        key: dict[str, Any],
        payload: dict[str, Any],
        guard: dict[str, Any] | None = None,
    ) -> "WriteOperation":
        return cls(WriteKind.UPDATE, model, key, payload, guard or {})

    @classmethod
    def delete(cls, model: type[Base], key: dict[str, Any]) -> "WriteOperation":
        return cls(WriteKind.DELETE, model, key)

    def describe(self) -> str:
        """Short human readable form used in error messages."""
        key = ", ".join(f"{name}={value}" for name, value in self.key.items())
        return f"{self.kind.value} {self.model.__tablename__}({key})"


class WriteConflict(Exception):
    """A guarded write found the row changed or already present."""

    def __init__(self, operation: WriteOperation) -> None:
        super().__init__(f"Conflict on {operation.describe()}")
        self.operation = operation


class InvalidWriteOperation(Exception):
    """An operation names columns its table does not have."""

    def __init__(self, operation: WriteOperation, columns: list[str]) -> None:
        super().__init__(f"Unknown columns {', '.join(columns)} in {operation.describe()}")
        self.operation = operation
        self.columns = columns


class BulkWriteResult:
    """Result of a bulk write execution.

    Attributes:
        success: True when every chunk was committed.
        total_operations: Number of operations submitted.
        succeeded_operations: Operations in committed chunks.
        chunks_executed: Number of committed chunks.
        errors: One message per failed chunk, in chunk order.
        conflicts: Number of chunks that failed on a concurrency conflict.
        failed_operations: Operations that were not committed, in order.
        elapsed_seconds: Wall time of the execution.
    """

    def __init__(
        self,
        success: bool,
        total_operations: int = 0,
        succeeded_operations: int = 0,
        chunks_executed: int = 0,
        errors: list[str] | None = None,
        conflicts: int = 0,
        failed_operations: list[WriteOperation] | None = None,
        elapsed_seconds: float = 0.0,
    ) -> None:
        self.success = success
        self.total_operations = total_operations
        self.succeeded_operations = succeeded_operations
        self.chunks_executed = chunks_executed
        self.errors = errors or []
        self.conflicts = conflicts
        self.failed_operations = failed_operations or []
        self.elapsed_seconds = elapsed_seconds

    @property
    def has_conflicts(self) -> bool:
        return self.conflicts > 0

    @property
    def summary(self) -> str:
        """One-line description such as ``"998 of 1001 succeeded"``."""
        return f"{self.succeeded_operations} of {self.total_operations} succeeded"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "total_operations": self.total_operations,
            "succeeded_operations": self.succeeded_operations,
            "chunks_executed": self.chunks_executed,
            "errors": list(self.errors),
            "conflicts": self.conflicts,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "summary": self.summary,
        }


class BulkWriteExecutor:
    """Commits write operations in chunks of bounded size.

    Attributes:
        chunk_size: Maximum operations per transaction.
        max_retries: Additional attempts for a failed chunk.
        retry_delay_seconds: Base backoff; attempt N waits N times this.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        chunk_size: int = STORE_OPERATION_LIMIT,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        if not 1 <= chunk_size <= STORE_OPERATION_LIMIT:
            raise ValueError(
                f"chunk_size must be between 1 and {STORE_OPERATION_LIMIT}, got {chunk_size}"
            )
        self._sessionmaker = sessionmaker
        self.chunk_size = chunk_size
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        sessionmaker: async_sessionmaker[AsyncSession],
        kpi_settings: "KPISettings",
    ) -> "BulkWriteExecutor":
        """Build an executor from KPI settings."""
        return cls(
            sessionmaker,
            chunk_size=kpi_settings.bulk_chunk_size,
            max_retries=kpi_settings.bulk_max_retries,
            retry_delay_seconds=kpi_settings.bulk_retry_delay_seconds,
        )

    def partition(self, operations: Sequence[WriteOperation]) -> list[Sequence[WriteOperation]]:
        """Split operations into contiguous chunks of at most chunk_size."""
        return [
            operations[start : start + self.chunk_size]
            for start in range(0, len(operations), self.chunk_size)
        ]

    async def execute(
        self,
        operations: Sequence[WriteOperation],
        on_progress: ProgressCallback | None = None,
        halt_on_failure: bool = False,
    ) -> BulkWriteResult:
        """Execute operations chunk by chunk.

        Store failures and operations naming unknown columns never propagate;
        they are reported in the result.

        Args:
            operations: Writes to perform, in order.
            on_progress: Called with (succeeded_operations, total_operations)
                after every chunk, committed or not.
            halt_on_failure: Stop after the first failed chunk instead of
                continuing with the next one. Used when later chunks depend
                on a guard written in an earlier one.

        Returns:
            BulkWriteResult describing what was committed.
        """
        total = len(operations)
        if total == 0:
            return BulkWriteResult(success=True)

        started = time.monotonic()
        chunks = self.partition(operations)
        succeeded = 0
        chunks_executed = 0
        conflicts = 0
        errors: list[str] = []
        failed: list[WriteOperation] = []

        logger.debug("bulk_write_started", total_operations=total, chunks=len(chunks))

        for number, chunk in enumerate(chunks, start=1):
            error = await self._run_chunk(number, chunk)
            if error is None:
                succeeded += len(chunk)
                chunks_executed += 1
            else:
                message, conflict = error
                errors.append(message)
                failed.extend(chunk)
                if conflict:
                    conflicts += 1

            await self._report_progress(on_progress, succeeded, total)
            if error is not None and halt_on_failure:
                failed.extend(operations[number * self.chunk_size :])
                break

        result = BulkWriteResult(
            success=not errors,
            total_operations=total,
            succeeded_operations=succeeded,
            chunks_executed=chunks_executed,
            errors=errors,
            conflicts=conflicts,
            failed_operations=failed,
            elapsed_seconds=time.monotonic() - started,
        )

        if result.success:
            logger.debug("bulk_write_completed", summary=result.summary, chunks=chunks_executed)
        else:
            logger.warning(
                "bulk_write_incomplete",
                summary=result.summary,
                failed_chunks=len(errors),
                conflicts=conflicts,
            )
        return result

    async def _run_chunk(
        self, number: int, chunk: Sequence[WriteOperation]
    ) -> tuple[str, bool] | None:
        """Commit one chunk with retries.

        Returns:
            None on success, otherwise (error message, is_conflict).
        """
        attempt = 0
        while True:
            try:
                await self._commit_chunk(chunk)
                return None
            except WriteConflict as e:
                logger.info("bulk_chunk_conflict", chunk=number, error=str(e))
                return f"Chunk {number} conflict: {e}", True
            except InvalidWriteOperation as e:
                logger.error("bulk_chunk_invalid", chunk=number, error=str(e))
                return f"Chunk {number} rejected: {e}", False
            except (SQLAlchemyError, OSError) as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "bulk_chunk_failed",
                        chunk=number,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    return f"Chunk {number} failed after {attempt + 1} attempts: {e}", False

                attempt += 1
                delay = self.retry_delay_seconds * attempt
                logger.warning(
                    "bulk_chunk_retry",
                    chunk=number,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(e),
                )
                await self._sleep(delay)

    async def _commit_chunk(self, chunk: Sequence[WriteOperation]) -> None:
        """Apply every operation of a chunk in a single transaction."""
        async with self._sessionmaker() as session:
            async with session.begin():
                for operation in chunk:
                    await self._apply(session, operation)

    async def _apply(self, session: AsyncSession, operation: WriteOperation) -> None:
        model = operation.model
        known = set(model.__mapper__.column_attrs.keys())
        unknown = sorted({*operation.key, *operation.payload, *operation.guard} - known)
        if unknown:
            raise InvalidWriteOperation(operation, unknown)

        if operation.kind is WriteKind.SET:
            row = model(**operation.key, **operation.payload)
            if not operation.create_only:
                await session.merge(row)
                return
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as e:
                raise WriteConflict(operation) from e
            return

        predicates = [getattr(model, name) == value for name, value in operation.key.items()]

        if operation.kind is WriteKind.UPDATE:
            predicates.extend(
                getattr(model, name) == value for name, value in operation.guard.items()
            )
            result = await session.execute(
                update(model)
                .where(*predicates)
                .values(**operation.payload)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise WriteConflict(operation)
            return

        await session.execute(
            delete(model).where(*predicates).execution_options(synchronize_session=False)
        )

    async def _report_progress(
        self, on_progress: ProgressCallback | None, succeeded: int, total: int
    ) -> None:
        if on_progress is None:
            return
        try:
            outcome = on_progress(succeeded, total)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning("bulk_progress_callback_failed", error=str(e))
