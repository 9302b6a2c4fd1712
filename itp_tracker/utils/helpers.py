"""Shared utility functions for blueprints and services.

parse_datetime:  ISO string → aware datetime (None on empty input)
parse_bool:      query-string / JSON flag → bool
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def parse_datetime(value):
    """Parse an ISO-8601 timestamp to a timezone-aware datetime.

    Offline clients send ``recorded_at`` in UTC, sometimes with a trailing
    ``Z``; naive values are assumed to be UTC.

    Raises ValueError on a non-empty value that is not ISO-8601, so callers
    can turn it into a 422.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_bool(value, default=False):
    """Interpret ``?subcontractor_view=true`` style flags."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES
