"""
Time windows in the canonical timezone.

Responsibility:
    Turns caller-supplied date filters (``date``, ``datetime`` or ISO text)
    into UTC bounds for queries against UTC-stored timestamps.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Rules:
    - A date-only bound covers the whole calendar day in the canonical
      timezone: ``date_from=2024-03-01`` starts at 00:00 local, and
      ``date_to=2024-03-01`` ends just before 00:00 local on 2024-03-02.
    - A datetime bound is exact and inclusive.  A naive datetime is read as
      canonical-timezone local time.
    - ``start > end`` raises InvalidDateRangeError.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from supply_kernel.exceptions import InvalidDateRangeError

DEFAULT_TIMEZONE = "UTC"


def get_zone(tz_name: str | None) -> ZoneInfo:
    """Resolve a zone name; raises ValueError for unknown names."""
    try:
        return ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {tz_name!r}") from exc


@dataclass(frozen=True)
class TimeWindow:
    """
    Half-open or closed UTC window.

    ``start`` is inclusive.  ``end`` is exclusive when ``end_inclusive`` is
    False (date-only upper bounds) and inclusive otherwise.
    """

    start: datetime | None = None
    end: datetime | None = None
    end_inclusive: bool = False

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, moment: datetime) -> bool:
        moment = to_utc(moment)
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None:
            if self.end_inclusive:
                return moment <= self.end
            return moment < self.end
        return True

    def apply(self, column):
        """SQLAlchemy filter clauses restricting ``column`` to the window."""
        clauses = []
        if self.start is not None:
            clauses.append(column >= self.start)
        if self.end is not None:
            clauses.append(column <= self.end if self.end_inclusive else column < self.end)
        return clauses


def to_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC [start, next_day_start) of ``day`` in ``tz``."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def _parse(value: object, date_from: object, date_to: object) -> date | datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (date, datetime)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            pass
    raise InvalidDateRangeError(date_from, date_to, f"cannot parse {value!r}")


def _localize(moment: datetime, tz: ZoneInfo) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=tz)
    return moment.astimezone(timezone.utc)


def localize(moment: datetime, tz_name: str | None = None) -> datetime:
    """UTC instant of ``moment``; a naive value is canonical-timezone local time."""
    return _localize(moment, get_zone(tz_name))


def resolve_window(
    date_from: object = None,
    date_to: object = None,
    tz_name: str | None = None,
) -> TimeWindow:
    """
    Build a UTC TimeWindow from caller-supplied bounds.

    Raises:
        InvalidDateRangeError: a bound cannot be parsed or start > end.
    """
    tz = get_zone(tz_name)
    parsed_from = _parse(date_from, date_from, date_to)
    parsed_to = _parse(date_to, date_from, date_to)

    start = None
    if isinstance(parsed_from, datetime):
        start = _localize(parsed_from, tz)
    elif isinstance(parsed_from, date):
        start = day_bounds(parsed_from, tz)[0]

    end = None
    end_inclusive = False
    if isinstance(parsed_to, datetime):
        end = _localize(parsed_to, tz)
        end_inclusive = True
    elif isinstance(parsed_to, date):
        end = day_bounds(parsed_to, tz)[1]

    if start is not None and end is not None:
        if start > end or (start == end and not end_inclusive):
            raise InvalidDateRangeError(date_from, date_to)

    return TimeWindow(start=start, end=end, end_inclusive=end_inclusive)


def local_date(moment: datetime, tz_name: str | None = None) -> date:
    """Calendar date of ``moment`` in the canonical timezone."""
    return to_utc(moment).astimezone(get_zone(tz_name)).date()
