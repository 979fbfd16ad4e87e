"""Buddhist Era expiry string codec.

Licence expiries are persisted as ``DD/MM/YYYY HH:mm`` strings where the year
is the Gregorian year + 543, rendered in the licence timezone. Everything that
reads or writes ``expires_at`` goes through this module.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo

from config import settings
from services.errors import ExpiryParseError

logger = logging.getLogger(__name__)

BUDDHIST_ERA_OFFSET = 543
# Years above this are Buddhist Era; anything else is already Gregorian.
BUDDHIST_ERA_THRESHOLD = 2500

_SLASH_PATTERN = re.compile(
    r"^(?P<day>\d{1,2})[/-](?P<month>\d{1,2})[/-](?P<year>\d{4})"
    r"(?:[ T](?P<hour>\d{1,2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?)?$"
)


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def licence_zone() -> ZoneInfo:
    return _zone(settings.LICENCE_TIMEZONE)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_expiry(instant: datetime) -> str:
    """Render an instant as ``DD/MM/YYYY HH:mm`` with a Buddhist Era year."""
    local = as_utc(instant).astimezone(licence_zone())
    return (
        f"{local.day:02d}/{local.month:02d}/{local.year + BUDDHIST_ERA_OFFSET:04d} "
        f"{local.hour:02d}:{local.minute:02d}"
    )


def _gregorian_year(year: int, raw: str) -> int:
    if year > BUDDHIST_ERA_THRESHOLD:
        return year - BUDDHIST_ERA_OFFSET
    logger.debug("Expiry %r carries a Gregorian year; accepting as-is", raw)
    return year


def parse_expiry(value: Optional[str]) -> datetime:
    """Parse a stored expiry string into an aware UTC datetime.

    Accepts the canonical Buddhist Era format, date-only strings (end of day),
    dash-separated dates, Gregorian years mislabelled as Buddhist Era, and ISO
    8601 timestamps written by older order rows. Raises ``ExpiryParseError``
    for anything else.
    """
    text = str(value or "").strip()
    if not text:
        raise ExpiryParseError(value)

    match = _SLASH_PATTERN.match(text)
    if match:
        parts = match.groupdict()
        has_time = parts["hour"] is not None
        try:
            local = datetime(
                _gregorian_year(int(parts["year"]), text),
                int(parts["month"]),
                int(parts["day"]),
                int(parts["hour"]) if has_time else 23,
                int(parts["minute"]) if has_time else 59,
                int(parts["second"] or 0),
                tzinfo=licence_zone(),
            )
        except ValueError as exc:
            raise ExpiryParseError(value) from exc
        return local.astimezone(timezone.utc)

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ExpiryParseError(value) from exc
    try:
        parsed = parsed.replace(year=_gregorian_year(parsed.year, text))
    except ValueError as exc:
        raise ExpiryParseError(value) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=licence_zone())
    return parsed.astimezone(timezone.utc)


def add_days(instant: datetime, days: int) -> datetime:
    return as_utc(instant) + timedelta(days=int(days))


def truncate_to_minute(instant: datetime) -> datetime:
    return as_utc(instant).replace(second=0, microsecond=0)
