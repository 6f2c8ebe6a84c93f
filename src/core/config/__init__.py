# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for the analytics client.

Example:
    >>> from src.core.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.environment)
    'development'
"""

from src.core.config.settings import (
    MAX_COPPA_RETENTION_DAYS,
    AnalyticsSettings,
    ComplianceSettings,
    LocalDatabaseSettings,
    Settings,
    SyncPolicySettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "MAX_COPPA_RETENTION_DAYS",
    "Settings",
    "LocalDatabaseSettings",
    "AnalyticsSettings",
    "SyncPolicySettings",
    "ComplianceSettings",
    "get_settings",
    "clear_settings_cache",
]
