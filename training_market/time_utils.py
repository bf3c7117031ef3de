from __future__ import annotations

import re
from datetime import date as date_type
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

_HM_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_YMD_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_ymd(value: str) -> date_type:
    if not _YMD_RE.match(value or ""):
        raise ValueError(f"invalid date: {value!r}")
    return datetime.strptime(value, "%Y-%m-%d").date()


def hm_to_minute(value: str) -> int:
    """Parse ``H:MM``, ``HH:MM`` or ``HH:MM:SS`` into minutes after midnight.

    Seconds are accepted for compatibility with stored ``TIME`` values and
    discarded. Raises ``ValueError`` for anything else.
    """
    match = _HM_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"invalid time: {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"invalid time: {value!r}")
    return hour * 60 + minute


def minute_to_hm(value: int) -> str:
    hour = value // 60
    minute = value % 60
    return f"{hour:02d}:{minute:02d}"


def minute_to_display(value: int) -> str:
    hour = value // 60
    minute = value % 60
    suffix = "AM" if hour < 12 else "PM"
    hour12 = hour % 12 or 12
    return f"{hour12}:{minute:02d} {suffix}"


def day_of_week(day: date_type) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (day.weekday() + 1) % 7


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_now(tz_name: str, now: Optional[datetime] = None) -> datetime:
    """Wall-clock time in the marketplace time zone, without tzinfo."""
    if now is not None:
        return now
    return datetime.now(ZoneInfo(tz_name)).replace(tzinfo=None)
