"""Canonical calendar dates pinned to the application's civil timezone.

Every date comparison in the project goes through this module. A canonical
date is a zero-padded ``YYYY-MM-DD`` string, so ordering is plain string
ordering and never depends on the timezone of the host process.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import date, datetime, timedelta, timezone
from typing import Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import get_settings


logger = logging.getLogger("taskbridge.dates")

_CANONICAL_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_LOOSE_YMD_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")

DateLike = date | datetime | str | int | float | None


def get_app_tz() -> ZoneInfo:
    s = get_settings()
    try:
        return ZoneInfo(s.app.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def now_ms() -> int:
    return int(time.time() * 1000)


def is_canonical(value: object) -> bool:
    return isinstance(value, str) and bool(_CANONICAL_RE.match(value))


def _parse_iso_datetime(text: str) -> datetime:
    raw = text.strip()
    # fromisoformat() only learned the trailing 'Z' in Python 3.11.
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


def parse_canonical_date(value: DateLike, *, tz: ZoneInfo | None = None) -> str:
    """Strictly convert `value` to a canonical date, raising ValueError otherwise."""
    zone = tz or get_app_tz()

    if value is None:
        raise ValueError("Date is required")

    if isinstance(value, datetime):
        if value.tzinfo is None:
            # Naive datetimes are civil wall-clock time already.
            return value.date().isoformat()
        return value.astimezone(zone).date().isoformat()

    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, bool):
        raise ValueError(f"Invalid date value: {value!r}")

    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc).astimezone(zone).date().isoformat()

    if isinstance(value, str):
        text = value.strip()
        if _CANONICAL_RE.match(text):
            # Round-trip to reject impossible days like 2026-02-30.
            return date.fromisoformat(text).isoformat()
        if not text:
            raise ValueError("Date is required")
        loose = _LOOSE_YMD_RE.match(text)
        if loose:
            y, m, d = (int(p) for p in loose.groups())
            try:
                return date(y, m, d).isoformat()
            except ValueError:
                raise ValueError(f"Invalid date value: {value!r}") from None
        try:
            return parse_canonical_date(_parse_iso_datetime(text), tz=zone)
        except ValueError:
            raise ValueError(f"Invalid date value: {value!r}") from None

    raise ValueError(f"Unsupported date type: {type(value).__name__}")


def to_canonical_date(value: DateLike = None, *, tz: ZoneInfo | None = None) -> str:
    """Return `value` as ``YYYY-MM-DD`` in the civil timezone.

    ``None`` means today. Canonical strings pass through unchanged. Input that
    cannot be parsed falls back to today, matching how the board treats
    garbage cells coming from the store.
    """
    zone = tz or get_app_tz()
    if value is None:
        return today_canonical(tz=zone)
    if isinstance(value, str) and _CANONICAL_RE.match(value):
        return value
    try:
        return parse_canonical_date(value, tz=zone)
    except ValueError:
        logger.debug("Unparseable date %r; using today", value)
        return today_canonical(tz=zone)


def today_canonical(now: datetime | None = None, *, tz: ZoneInfo | None = None) -> str:
    zone = tz or get_app_tz()
    instant = now or datetime.now(timezone.utc)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(zone).date().isoformat()


def compare_canonical_dates(a: str, b: str) -> int:
    """Three-way compare two canonical dates (lexicographic)."""
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def is_within(day: str, start: str, end: str) -> bool:
    return start <= day <= end


def is_overdue(due: str | None, today: str | None = None) -> bool:
    if not due:
        return False
    return due < (today or today_canonical())


def _as_date(day: str) -> date:
    if not _CANONICAL_RE.match(day or ""):
        raise ValueError(f"Not a canonical date: {day!r}")
    return date.fromisoformat(day)


def weekday_of(day: str) -> int:
    """Weekday of a canonical date, 0=Sunday .. 6=Saturday."""
    return _as_date(day).isoweekday() % 7


def day_of_month(day: str) -> int:
    return _as_date(day).day


def add_days(day: str, n: int) -> str:
    return (_as_date(day) + timedelta(days=int(n))).isoformat()


def days_between(start: str, end: str) -> int:
    """Whole days from `start` to `end` (negative when `end` is earlier)."""
    return (_as_date(end) - _as_date(start)).days


def months_between(start: str, end: str) -> int:
    """Calendar months from `start`'s month to `end`'s month."""
    a, b = _as_date(start), _as_date(end)
    return (b.year - a.year) * 12 + (b.month - a.month)


def iter_days(start: str, end: str) -> Iterator[str]:
    cur = _as_date(start)
    last = _as_date(end)
    while cur <= last:
        yield cur.isoformat()
        cur += timedelta(days=1)


def format_display_date(day: str | None) -> str:
    """Render a canonical date as D/M/YYYY without any Date arithmetic."""
    if not day:
        return ""
    part = str(day).split("T")[0]
    try:
        year, month, dd = part.split("-")
        return f"{int(dd)}/{int(month)}/{year}"
    except ValueError:
        return str(day)
