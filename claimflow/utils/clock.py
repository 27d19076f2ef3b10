"""Timestamp helpers shared by models and services."""
from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, the way SQLite stores it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
