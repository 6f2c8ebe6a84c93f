# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for the on-device analytics store.

Example:
    from src.infrastructure.database import LocalDatabase

    database = LocalDatabase(settings.local_db)
    await database.init()
"""

from src.infrastructure.database.connection import DatabaseError, LocalDatabase
from src.infrastructure.database.tables import (
    analytics_events,
    analytics_sync_batches,
    metadata,
)

__all__ = [
    "DatabaseError",
    "LocalDatabase",
    "metadata",
    "analytics_events",
    "analytics_sync_batches",
]
