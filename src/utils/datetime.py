# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""UTC time helpers for the analytics client.

Events, batches and backoff timers are all stamped in UTC. The local
SQLite store keeps datetimes without an offset, so anything read back
from it is normalized with ensure_utc() before it is compared against
utc_now() or sent over the wire.

Usage:
    from src.utils.datetime import utc_now

    created_at = utc_now()
"""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Normalize a datetime read from storage to aware UTC.

    Naive values are taken to be UTC already (that is how the store
    writes them); aware values are converted.

    Args:
        dt: Datetime to normalize, or None.

    Returns:
        Aware UTC datetime, or None if dt is None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def days_ago(days: int) -> datetime:
    """Retention cutoff ``days`` before now."""
    return utc_now() - timedelta(days=days)


def format_iso(dt: datetime | None) -> str | None:
    """Render a datetime as ISO 8601 UTC for the ingest payload."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()
