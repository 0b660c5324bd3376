"""
Value validators used by the merge rule table.

Each validator answers one question about a single field value and never raises
for bad input; a value of the wrong type simply fails validation.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import re

logger = logging.getLogger(__name__)

_CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
_URL_SCHEMES = {"http", "https"}


def is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def is_valid_url(value: Any) -> bool:
    """
    Check that a value is an absolute http(s) URL with a host.

    Args:
        value: Candidate URL

    Returns:
        True when the value parses as ``http://host/...`` or ``https://host/...``
    """
    if not is_non_empty_string(value):
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in _URL_SCHEMES and bool(parsed.netloc)


def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a meaningful coordinate or price
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_valid_latitude(value: Any) -> bool:
    return _is_number(value) and -90.0 <= value <= 90.0


def is_valid_longitude(value: Any) -> bool:
    return _is_number(value) and -180.0 <= value <= 180.0


def is_non_negative_number(value: Any) -> bool:
    return _is_number(value) and value >= 0


def is_valid_currency(value: Any) -> bool:
    """ISO 4217 style code: exactly three upper-case letters."""
    return isinstance(value, str) and bool(_CURRENCY_PATTERN.match(value))


def is_valid_timezone(value: Any) -> bool:
    if not is_non_empty_string(value):
        return False
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug(f"Unknown timezone name '{value}'")
        return False
    return True


def is_boolean(value: Any) -> bool:
    return isinstance(value, bool)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to an aware UTC value.

    Naive datetimes are assumed to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
