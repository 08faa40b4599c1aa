"""
Preload/Fetch Orchestrator - Core Functions

Pure functions for day filtering, pagination decisions and folding
per-day results into a report.
NEVER include I/O operations in this module.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..common.contracts import Result
from ..common.core import partition_results, pluralize
from .contracts import DayFetch, PreloadReport


def record_day(record: Dict[str, Any]) -> Optional[date]:
    """
    Calendar day of a record's ``createdAt``.

    Accepts ``YYYY-MM-DD HH:MM:SS`` and ISO strings (day taken as written)
    or epoch milliseconds (UTC). Returns None when absent or unparseable.
    """
    raw = record.get("createdAt")
    if raw is None or raw == "":
        return None

    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            return datetime.fromtimestamp(raw / 1000, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw.strip().replace("Z", "+00:00")).date()
        except ValueError:
            try:
                return date.fromisoformat(raw.strip()[:10])
            except ValueError:
                return None

    return None


def filter_records_by_day(records: Iterable[Dict[str, Any]], day: date) -> List[Dict[str, Any]]:
    """
    Keep only records created on ``day``.

    The vendor's day windows overlap at the edges, and records with no
    usable ``createdAt`` cannot be placed, so both are dropped.

    MUST be deterministic.
    """
    return [record for record in records if record_day(record) == day]


def should_fetch_next_page(last_page_size: int, page_size: int, pages_fetched: int, max_pages: int) -> bool:
    """A full page means more data may follow, unless the page cap is hit."""
    return last_page_size >= page_size and pages_fetched < max_pages


def page_cap_reached(last_page_size: int, page_size: int, pages_fetched: int, max_pages: int) -> bool:
    """Stopped at the cap with a full last page: the day may be incomplete."""
    return pages_fetched >= max_pages and last_page_size >= page_size


def merge_day_records(days: Sequence[DayFetch]) -> List[Dict[str, Any]]:
    """
    Concatenate records of resolved days in ascending date order.

    MUST be deterministic.
    """
    merged: List[Dict[str, Any]] = []
    for day in sorted(days, key=lambda d: d.key.date):
        merged.extend(day.entry.records)
    return merged


def build_report(
    results: Iterable[Result],
    started_at: datetime,
    finished_at: datetime,
    days_requested: int
) -> PreloadReport:
    """Fold per-day Results into a PreloadReport."""
    fetched, failures = partition_results(results)
    return PreloadReport(
        started_at=started_at,
        finished_at=finished_at,
        days_requested=days_requested,
        fetched=tuple(fetched),
        failures=tuple(failures),
    )


def skipped_report(at: datetime) -> PreloadReport:
    return PreloadReport(started_at=at, finished_at=at, days_requested=0, skipped=True)


def summarize_report(report: PreloadReport) -> str:
    """User-visible one-line summary."""
    if report.skipped:
        return "Preload already running, skipped"
    return (
        f"{pluralize(report.days_requested, 'day')} requested: "
        f"{report.from_source_count} fetched, {report.from_cache_count} from cache, "
        f"{report.failed_count} failed"
    )
