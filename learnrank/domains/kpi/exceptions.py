# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""KPI domain exceptions."""


class KPIError(Exception):
    """Base exception for KPI aggregation errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ResolutionError(KPIError):
    """An event references a unit or learner that cannot be resolved."""

    def __init__(self, unit_id: str) -> None:
        super().__init__(f"Unit {unit_id} has no resolvable owner")
        self.unit_id = unit_id


class ComputationError(KPIError):
    """An aggregate would end up in an inconsistent state."""


class PersistenceError(KPIError):
    """Writing an aggregate failed after the bounded retry policy.

    Attributes:
        errors: Chunk-level error descriptions from the bulk writer.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ConcurrencyConflictError(KPIError):
    """The stored aggregate version advanced since it was read."""

    def __init__(self, learner_id: str, expected_version: int) -> None:
        super().__init__(
            f"Aggregate of learner {learner_id} changed since version {expected_version}"
        )
        self.learner_id = learner_id
        self.expected_version = expected_version


class RankingTimeoutError(KPIError):
    """A ranking scan exceeded its time budget."""
