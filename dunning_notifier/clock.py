"""
Dunning Notifier -- Calendar Clock

Whole-calendar-day arithmetic in one fixed civil timezone.  Elapsed days
are computed by projecting both instants into the configured zone, taking
their (year, month, day) and subtracting, so a charge created at 23:50
local time is already "1 day old" ten minutes later.  The process's own
local timezone is never consulted.

Accepted origin formats:
    - timezone-aware ``datetime`` (naive values are treated as UTC)
    - ISO 8601 strings ("2026-10-12T14:30:00Z", "2026-10-12 14:30:00+00:00")
    - legacy import strings "DD-MM-YYYY" (optionally followed by a time,
      which is ignored); these are read as UTC midnight of that day
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import InvalidTimestamp

DEFAULT_TIMEZONE = "America/Sao_Paulo"

_LEGACY_DMY = re.compile(r"^(\d{2})-(\d{2})-(\d{4})")


def parse_timestamp(value: datetime | str) -> datetime:
    """Parse an obligation origin into an aware UTC-comparable datetime.

    Raises:
        InvalidTimestamp: For empty, malformed or non-string/datetime input.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    if not isinstance(value, str) or not value.strip():
        raise InvalidTimestamp(f"Empty or non-string timestamp: {value!r}")

    raw = value.strip()

    legacy = _LEGACY_DMY.match(raw)
    if legacy:
        dd, mm, yyyy = (int(g) for g in legacy.groups())
        try:
            return datetime(yyyy, mm, dd, tzinfo=timezone.utc)
        except ValueError as exc:
            raise InvalidTimestamp(f"Invalid legacy date {raw!r}: {exc}") from exc

    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidTimestamp(f"Unparseable timestamp {value!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_zone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for ``name`` or raise ValueError."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name!r}") from exc


class CalendarClock:
    """Fixed-timezone clock used for elapsed-day and scheduling math.

    Args:
        tz_name: IANA timezone name all day boundaries are taken in.
        now: Optional zero-argument callable returning the current instant.
            Tests inject a fixed value here.
    """

    def __init__(
        self,
        tz_name: str = DEFAULT_TIMEZONE,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.tz_name = tz_name
        self.tz = resolve_zone(tz_name)
        self._now = now

    def now(self) -> datetime:
        """Current instant, expressed in the clock's timezone."""
        current = self._now() if self._now else datetime.now(timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current.astimezone(self.tz)

    def local_date(self, instant: datetime) -> date:
        """Calendar date of ``instant`` in the clock's timezone."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz).date()

    def elapsed_days(self, origin: datetime | str) -> int:
        """Whole calendar days between ``origin`` and now, never negative.

        Raises:
            InvalidTimestamp: If ``origin`` cannot be parsed.
        """
        created = parse_timestamp(origin)
        days = (self.local_date(self.now()) - self.local_date(created)).days
        return max(0, days)
