# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Utility functions and helpers for LearnRank.

This package contains cross-cutting utilities:
- logging: Structured logging with structlog
- datetime: Timezone-aware datetime and ISO week operations
"""

from learnrank.utils.datetime import (
    ensure_utc,
    iso_week_key,
    minutes_since,
    now,
    utc_now,
    week_bounds,
)
from learnrank.utils.logging import bind_context, clear_context, get_logger, setup_logging

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    # Datetime
    "utc_now",
    "now",
    "ensure_utc",
    "iso_week_key",
    "week_bounds",
    "minutes_since",
]
