from __future__ import annotations

import datetime as dt
import re
from typing import Any, Callable, Optional

# Standard trailing windows, in days
WEEK = 7
MONTH = 30
FOLLOWUP = 60

# fromisoformat before 3.11 only takes 3 or 6 fraction digits
_FRACTION = re.compile(r'(\d{2}:\d{2}:\d{2})\.(\d+)')


def _pad_fraction(match: re.Match) -> str:
    return f"{match.group(1)}.{match.group(2)[:6].ljust(6, '0')}"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """Coerce a store timestamp into an aware UTC datetime.

    Accepts datetime/date objects and ISO-8601 strings (``Z`` suffix and
    date-only forms included). Naive values are taken as UTC. Returns None for
    anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, dt.date):
        parsed = dt.datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.endswith('Z') or s.endswith('z'):
            s = s[:-1] + '+00:00'
        s = _FRACTION.sub(_pad_fraction, s)
        try:
            parsed = dt.datetime.fromisoformat(s)
        except ValueError:
            try:
                parsed = dt.datetime.combine(dt.date.fromisoformat(s[:10]), dt.time())
            except ValueError:
                return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def is_within(timestamp: Any, window_days: int, now: Optional[dt.datetime] = None) -> bool:
    """True when ``timestamp >= now - window_days``."""
    ts = parse_timestamp(timestamp)
    if ts is None:
        return False
    ref = parse_timestamp(now) if now is not None else utcnow()
    return ts >= ref - dt.timedelta(days=window_days)


def within(accessor: Callable[[Any], Any], window_days: int,
           now: Optional[dt.datetime] = None) -> Callable[[Any], bool]:
    """Row predicate: the accessor's timestamp falls in the trailing window."""
    ref = now if now is not None else utcnow()
    return lambda row: is_within(accessor(row), window_days, ref)
