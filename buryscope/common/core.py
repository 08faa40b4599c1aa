"""
Shared pure helpers for calendar-day handling and result folding.
NEVER include I/O operations in this module.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Sequence, Tuple, Union
from zoneinfo import ZoneInfo

from .contracts import DateRange, Failure, Result, Success


DateLike = Union[date, datetime, str]


def to_date(value: DateLike) -> date:
    """
    Normalise a date-like value to a calendar day.

    Accepts ``date``, ``datetime`` (time part dropped) or an ISO
    ``YYYY-MM-DD`` string.

    Raises:
        ValueError: if a string is not an ISO calendar date
        TypeError: for any other type
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise TypeError(f"Cannot interpret {type(value).__name__} as a date")


def days_in_range(start: DateLike, end: DateLike) -> List[date]:
    """
    Every calendar day of an inclusive range, in ascending order.

    An inverted range is an error rather than an empty list so that a
    swapped date picker never silently scans nothing.
    """
    first = to_date(start)
    last = to_date(end)
    if first > last:
        raise ValueError(f"Date range is inverted: {first} > {last}")

    span = (last - first).days
    return [first + timedelta(days=offset) for offset in range(span + 1)]


def make_range(start: DateLike, end: DateLike) -> DateRange:
    """Build a validated DateRange; an inverted range raises ValueError."""
    first = to_date(start)
    last = to_date(end)
    if first > last:
        raise ValueError(f"Date range is inverted: {first} > {last}")
    return DateRange(start=first, end=last)


def range_days(date_range: DateRange) -> List[date]:
    return days_in_range(date_range.start, date_range.end)


def trailing_window(today: date, window_days: int) -> DateRange:
    """Range of the last ``window_days`` days ending today."""
    if window_days < 1:
        raise ValueError("window_days must be at least 1")
    return DateRange(start=today - timedelta(days=window_days - 1), end=today)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_today(now: datetime, tz_name: str = "UTC") -> date:
    """
    Calendar day of ``now`` as seen in ``tz_name``.

    Trailing windows end on the user's day, not the UTC day. Naive
    datetimes are taken as UTC.
    """
    return ensure_utc(now).astimezone(ZoneInfo(tz_name)).date()


def ensure_utc(moment: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def partition_results(results: Iterable[Result]) -> Tuple[list, list]:
    """Split results into (success values, failure errors), keeping order."""
    successes = []
    failures = []
    for result in results:
        if isinstance(result, Success):
            successes.append(result.value)
        elif isinstance(result, Failure):
            failures.append(result.error)
        else:
            raise TypeError(f"Not a Result: {result!r}")
    return successes, failures


def pluralize(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def format_range(days: Sequence[date]) -> str:
    if not days:
        return "(empty range)"
    if len(days) == 1:
        return days[0].isoformat()
    return f"{days[0].isoformat()}..{days[-1].isoformat()}"
