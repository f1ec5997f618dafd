from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
import logging
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from autosolve.observability import log_warning_event


LOGGER = logging.getLogger("autosolve.reset_time")


_EPOCH_PATTERN = re.compile(r"usage limit reached\|(\d{9,11})", re.IGNORECASE)
_DATED_PATTERN = re.compile(
    r"resets\s+(?:on\s+)?([A-Za-z]{3,9})\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+at\s+"
    r"(\d{1,2}(?::\d{2})?\s*[ap]m)(?:\s*\(([^)]+)\))?",
    re.IGNORECASE,
)
_CLOCK_PATTERN = re.compile(
    r"resets\s+(?:at\s+)?(\d{1,2}(?::\d{2})?\s*[ap]m)(?:\s*\(([^)]+)\))?",
    re.IGNORECASE,
)
_TIME_PATTERN = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([ap]m)$", re.IGNORECASE)

_MONTHS: dict[str, int] = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}


def parse_reset_time(text: str, *, now: datetime | None = None) -> datetime | None:
    """Extract the provider's limit reset time from a rate-limit message.

    Understands ``usage limit reached|<epoch>``, ``resets Feb 9 at 6pm (America/Toronto)``
    and ``resets 5:30am``. Clock-only forms resolve to their next occurrence after ``now``.
    Returns ``None`` when no reset time is present or the one found is not a real time.
    """
    current = now if now is not None else datetime.now().astimezone()
    if current.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    try:
        return _parse_reset_time(text, current)
    except (ValueError, OverflowError, OSError) as exc:
        log_warning_event(LOGGER, "reset_time_unparseable", text=text, error=str(exc))
        return None


def _parse_reset_time(text: str, current: datetime) -> datetime | None:
    epoch_match = _EPOCH_PATTERN.search(text)
    if epoch_match is not None:
        return datetime.fromtimestamp(int(epoch_match.group(1)), tz=timezone.utc)

    dated_match = _DATED_PATTERN.search(text)
    if dated_match is not None:
        month = _MONTHS.get(dated_match.group(1)[:3].lower())
        if month is not None:
            tz = _zone_or_default(dated_match.group(4), current.tzinfo)
            hour, minute = parse_clock_time(dated_match.group(3))
            local_now = current.astimezone(tz)
            candidate = local_now.replace(
                month=month,
                day=int(dated_match.group(2)),
                hour=hour,
                minute=minute,
                second=0,
                microsecond=0,
            )
            if candidate < local_now - timedelta(hours=1):
                candidate = candidate.replace(year=local_now.year + 1)
            return candidate

    clock_match = _CLOCK_PATTERN.search(text)
    if clock_match is not None:
        tz = _zone_or_default(clock_match.group(2), current.tzinfo)
        hour, minute = parse_clock_time(clock_match.group(1))
        return next_occurrence(hour, minute, now=current.astimezone(tz))

    return None


def parse_clock_time(value: str) -> tuple[int, int]:
    match = _TIME_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid time format: {value}")
    hour = int(match.group(1))
    minute = int(match.group(2) or "0")
    meridiem = match.group(3).lower()
    if hour < 1 or hour > 12 or minute > 59:
        raise ValueError(f"Invalid time format: {value}")
    if meridiem == "pm" and hour != 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    return hour, minute


def next_occurrence(hour: int, minute: int, *, now: datetime) -> datetime:
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _zone_or_default(name: str | None, default: tzinfo | None) -> tzinfo:
    if name:
        try:
            return ZoneInfo(name.strip())
        except (ZoneInfoNotFoundError, ValueError):
            log_warning_event(LOGGER, "reset_timezone_unknown", timezone=name)
    if default is None:
        return timezone.utc
    return default
