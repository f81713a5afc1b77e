"""Utility functions for date manipulation."""

import uuid
from datetime import date, datetime

import pytz


def utc_now() -> datetime:
    """Returns the current time as a timezone-aware UTC datetime."""
    return datetime.now(pytz.utc)


def parse_datetime(value: object) -> datetime | None:
    """
    Parses an occurrence date coming from a payload.

    Accepts datetime objects, date objects and ISO strings (with 'Z' or an offset,
    or a bare 'YYYY-MM-DD'). Naive values are taken as UTC. Returns None when the
    value is empty or cannot be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else pytz.utc.localize(value)
    if isinstance(value, date):
        return pytz.utc.localize(datetime(value.year, value.month, value.day))
    if not isinstance(value, str):
        return None
    try:
        dt_obj = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt_obj if dt_obj.tzinfo else pytz.utc.localize(dt_obj)


def to_db_datetime(dt: datetime | None) -> datetime | None:
    """Converts an aware datetime to the naive UTC value stored in MySQL DATETIME columns."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(pytz.utc).replace(tzinfo=None)


def from_db_datetime(dt: datetime | None) -> datetime | None:
    """Marks a naive MySQL DATETIME value as UTC."""
    if dt is None:
        return None
    return dt if dt.tzinfo else pytz.utc.localize(dt)


def generate_fallback_sku(now: datetime | None = None) -> str:
    """Builds a timestamp-derived SKU for products created without one."""
    now = now or utc_now()
    return f"AUTO-{now.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6].upper()}"
