from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "Asia/Singapore"

WEEKDAYS = {
    "monday": 0,
    "mon": 0,
    "tuesday": 1,
    "tue": 1,
    "tues": 1,
    "wednesday": 2,
    "wed": 2,
    "thursday": 3,
    "thu": 3,
    "thur": 3,
    "thurs": 3,
    "friday": 4,
    "fri": 4,
    "saturday": 5,
    "sat": 5,
    "sunday": 6,
    "sun": 6,
}

MONTHS = {
    "jan": "january",
    "feb": "february",
    "mar": "march",
    "apr": "april",
    "may": "may",
    "jun": "june",
    "jul": "july",
    "aug": "august",
    "sep": "september",
    "oct": "october",
    "nov": "november",
    "dec": "december",
}
MONTH_NUMBERS = {key: index for index, key in enumerate(MONTHS, start=1)}

DAY_PERIODS = {
    "morning": "10:00",
    "afternoon": "14:00",
    "evening": "18:00",
}

_WORD_RE = re.compile(r"[a-z]+")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_DAY_MONTH_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\s*(?:of\s+)?([a-z]{3,9})\b")
_MONTH_DAY_RE = re.compile(r"\b([a-z]{3,9})\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b")
_MERIDIEM_TIME_RE = re.compile(r"\b(\d{1,2})(?:[:.](\d{2}))?\s*([ap])\.?m\.?(?![a-z])")
_CLOCK_TIME_RE = re.compile(r"\b(\d{1,2})[:.](\d{2})\b")
_BARE_HOUR_RE = re.compile(r"^(?:at\s+|around\s+)?(\d{1,2})(?:\s*(?:o'?clock|h))?$")


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_today(now: Optional[datetime] = None, tz: Optional[str] = None) -> date:
    """Return the calendar date at the display timezone anchor.

    A naive ``now`` is interpreted as wall-clock time in that timezone; an aware
    one is converted first, so a UTC instant just after 16:00 already counts as
    the next day in Singapore.
    """
    zone = resolve_timezone(tz)
    if now is None:
        return datetime.now(zone).date()
    if now.tzinfo is None:
        return now.date()
    return now.astimezone(zone).date()


def _month_number(token: str) -> Optional[int]:
    key = token[:3]
    full_name = MONTHS.get(key)
    if full_name is None:
        return None
    if full_name.startswith(token) or token == "sept":
        return MONTH_NUMBERS[key]
    return None


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _roll_forward(today: date, month: int, day: int) -> Optional[date]:
    candidate = _safe_date(today.year, month, day)
    if candidate is None:
        # 29 Feb outside a leap year, 31 Apr and similar.
        return _safe_date(today.year + 1, month, day) if month == 2 and day == 29 else None
    if candidate < today:
        return _safe_date(today.year + 1, month, day)
    return candidate


def _parse_day_month(lowered: str, today: date) -> Optional[date]:
    for match in _DAY_MONTH_RE.finditer(lowered):
        month = _month_number(match.group(2))
        if month is not None:
            return _roll_forward(today, month, int(match.group(1)))
    for match in _MONTH_DAY_RE.finditer(lowered):
        month = _month_number(match.group(1))
        if month is not None:
            return _roll_forward(today, month, int(match.group(2)))
    return None


def _next_weekday(today: date, weekday: int) -> date:
    delta = (weekday - today.weekday()) % 7
    return today + timedelta(days=delta or 7)


def parse_date(text: Optional[str], now: Optional[datetime] = None, tz: Optional[str] = None) -> Optional[date]:
    """Parse a loosely formatted date.

    Weekday names always resolve to the next occurrence 1-7 days ahead, never
    today. ``D MON`` and ``MON D`` dates already in the past roll to next year.
    Returns ``None`` for anything unrecognized.
    """
    if not isinstance(text, str):
        return None
    lowered = text.strip().lower()
    if not lowered:
        return None

    today = local_today(now, tz)
    words = _WORD_RE.findall(lowered)

    if "today" in words or "tonight" in words:
        return today
    if "tomorrow" in words or "tmr" in words or "tmrw" in words:
        return today + timedelta(days=1)

    iso_match = _ISO_DATE_RE.search(lowered)
    if iso_match:
        return _safe_date(int(iso_match.group(1)), int(iso_match.group(2)), int(iso_match.group(3)))

    if re.search(r"\d", lowered):
        explicit = _parse_day_month(lowered, today)
        if explicit is not None:
            return explicit

    for word in words:
        if word in WEEKDAYS:
            return _next_weekday(today, WEEKDAYS[word])
    return None


def _format_clock(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


def parse_time(text: Optional[str]) -> Optional[str]:
    if not isinstance(text, str):
        return None
    lowered = text.strip().lower()
    if not lowered:
        return None

    meridiem_match = _MERIDIEM_TIME_RE.search(lowered)
    if meridiem_match:
        hour = int(meridiem_match.group(1))
        minute = int(meridiem_match.group(2) or 0)
        if not 1 <= hour <= 12 or not 0 <= minute <= 59:
            return None
        if meridiem_match.group(3) == "a":
            hour = 0 if hour == 12 else hour
        else:
            hour = 12 if hour == 12 else hour + 12
        return _format_clock(hour, minute)

    clock_match = _CLOCK_TIME_RE.search(lowered)
    if clock_match:
        hour = int(clock_match.group(1))
        minute = int(clock_match.group(2))
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return _format_clock(hour, minute)
        return None

    bare_match = _BARE_HOUR_RE.match(lowered)
    if bare_match:
        hour = int(bare_match.group(1))
        return _format_clock(hour, 0) if 0 <= hour <= 23 else None

    for word in _WORD_RE.findall(lowered):
        if word in DAY_PERIODS:
            return DAY_PERIODS[word]
    return None


def format_display_date(value: date) -> str:
    return f"{value.strftime('%a')}, {value.day} {value.strftime('%b %Y')}"


def format_display_time(value: str) -> str:
    try:
        parsed = datetime.strptime(value, "%H:%M")
    except (TypeError, ValueError):
        return str(value)
    hour = parsed.hour % 12 or 12
    suffix = "am" if parsed.hour < 12 else "pm"
    if parsed.minute:
        return f"{hour}:{parsed.minute:02d}{suffix}"
    return f"{hour}{suffix}"
