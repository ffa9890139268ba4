from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo


CLOCK_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp]\.?[Mm]\.?)?\s*$")
MINUTES_PER_DAY = 24 * 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def resolve_timezone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def parse_instant(value: str | datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_tz(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_tz(datetime.fromisoformat(text))


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_tz(value).isoformat()


def parse_clock_time(text: str | None) -> int | None:
    """Return the minute-of-day for ``"2:30 PM"``, ``"14:30"`` or ``"12:05 am"``."""
    if not text:
        return None
    match = CLOCK_PATTERN.match(str(text))
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2))
    period = (match.group(3) or "").replace(".", "").upper()
    if minutes > 59:
        return None
    if period:
        if hours < 1 or hours > 12:
            return None
        if period == "PM" and hours < 12:
            hours += 12
        if period == "AM" and hours == 12:
            hours = 0
    elif hours > 23:
        return None
    return hours * 60 + minutes


def format_clock_time(value: datetime | None) -> str:
    if value is None:
        return "TBD"
    hour = value.hour % 12 or 12
    suffix = "PM" if value.hour >= 12 else "AM"
    return f"{hour}:{value.minute:02d} {suffix}"


def minute_of_day(value: datetime) -> int:
    return value.hour * 60 + value.minute


def intervals_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and b_start < a_end


def resolve_window(
    start: str | datetime | date | None,
    end: str | datetime | date | None = None,
    time_label: str | None = None,
    *,
    default_minutes: int = 60,
    tz: tzinfo = timezone.utc,
) -> tuple[date, int, int] | None:
    """Effective ``(day, start_minute, end_minute)`` window of a calendar item.

    A parseable ``time_label`` overrides the time-of-day carried by ``start``.
    Without a usable explicit end the window is ``default_minutes`` long; the
    default only exists for overlap purposes. Returns ``None`` when no start
    can be resolved. Raises ``ValueError`` for malformed timestamps.
    """
    start_dt = parse_instant(start)
    if start_dt is None:
        return None
    local_start = start_dt.astimezone(tz)
    day = local_start.date()
    start_minute = minute_of_day(local_start)
    label_minute = parse_clock_time(time_label)
    if label_minute is not None:
        start_minute = label_minute

    end_minute = start_minute + max(1, int(default_minutes))
    end_dt = parse_instant(end)
    if end_dt is not None:
        local_end = end_dt.astimezone(tz)
        midnight = datetime.combine(day, time.min, tzinfo=local_start.tzinfo)
        explicit_end = int((local_end - midnight) / timedelta(minutes=1))
        if explicit_end > start_minute:
            end_minute = explicit_end
    return day, start_minute, end_minute
