"""
Shared utility functions.
"""

import logging
import uuid as uuid_mod
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException

logger = logging.getLogger(__name__)


def parse_uuid(value: str, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a 400 HTTPException on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    try:
        return uuid_mod.UUID(value)
    except (ValueError, AttributeError):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid UUID for '{field_name}': {value!r}",
        )


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=True)
    return fallback


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def date_key(d: date) -> str:
    """Metric rows are keyed by day as YYYYMMDD."""
    return d.strftime("%Y%m%d")


def normalize_metric_date(value) -> str:
    """Accept YYYY-MM-DD, YYYYMMDD or a date and return YYYYMMDD."""
    if isinstance(value, date):
        return date_key(value)
    return str(value).replace("-", "")[:8]


def get_date_range(days: int, today: Optional[date] = None) -> tuple[str, str]:
    """
    Report window for the trailing `days`: today - days through yesterday
    (today's data is not final yet). Returns ISO dates (YYYY-MM-DD).
    """
    today = today or utcnow().date()
    start = today - timedelta(days=days)
    end = today - timedelta(days=1)
    return start.isoformat(), end.isoformat()


def metric_window_start(days: int, today: Optional[date] = None) -> str:
    """YYYYMMDD lower bound for a trailing metric window."""
    today = today or utcnow().date()
    return date_key(today - timedelta(days=days))
