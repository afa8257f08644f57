# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for LearnRank.

Example:
    >>> from learnrank.core.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.environment)
    'development'
"""

from learnrank.core.config.settings import (
    STORE_OPERATION_LIMIT,
    DatabaseSettings,
    KPISettings,
    RedisSettings,
    Settings,
    WorkerSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "Settings",
    "get_settings",
    "clear_settings_cache",
    "DatabaseSettings",
    "RedisSettings",
    "KPISettings",
    "WorkerSettings",
    "STORE_OPERATION_LIMIT",
]
