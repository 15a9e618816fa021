"""Time helpers shared by models and services."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime (database convention)."""
    return datetime.now(UTC).replace(tzinfo=None)
