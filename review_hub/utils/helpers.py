"""Shared date/time and JSON helpers.

utcnow:        timezone-aware "now" used for every stamp written by the services
as_utc:        normalises naive datetimes read back from SQLite to UTC
parse_iso_ts:  strict timestamp parser for ACC payloads (raises ValueError)
load_json:     parse a JSON text column with a fallback
"""

import json
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_ts(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    A trailing ``Z`` is accepted; naive values are treated as UTC.

    Raises:
        ValueError: If the value is not a valid ISO-8601 timestamp.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def load_json(raw: str | None, default=None):
    """Deserialise a JSON text column, returning *default* on empty/invalid input."""
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Ignoring unparsable JSON column value")
        return default
