"""Datetime helpers.

Provides UTC timestamp helpers without using deprecated ``datetime.utcnow()``.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime.

    Every timestamp column is declared ``sa_type=DateTime`` (no timezone),
    so naive UTC values are stored and read back unchanged.
    """
    return datetime.now(UTC).replace(tzinfo=None)

