"""
Preload/Fetch Orchestrator - Type Definitions and Contracts

Defines per-day fetch outcomes and the batch report produced when a
date range is resolved through the tiered cache.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from ..cache.tiers.contracts import CacheEntry, CacheKey, WriteOutcome


@dataclass(frozen=True)
class FetchedPages:
    """Records gathered by paginating one day at the source."""

    records: List[Dict[str, Any]]
    pages: int
    page_cap_reached: bool
    dropped_cross_day: int = 0


@dataclass(frozen=True)
class DayFetch:
    """A day that was resolved, from cache or from the source."""

    key: CacheKey
    entry: CacheEntry
    from_cache: bool
    pages: int = 0
    write: Optional[WriteOutcome] = None


@dataclass(frozen=True)
class DayFetchFailure:
    """A day that could not be resolved. Skipped, never fatal to the range."""

    key: CacheKey
    error_type: str
    reason: str


@dataclass(frozen=True)
class PreloadReport:
    """Fold of per-day results over one request or preload run."""

    started_at: datetime
    finished_at: datetime
    days_requested: int
    fetched: Tuple[DayFetch, ...] = ()
    failures: Tuple[DayFetchFailure, ...] = ()
    skipped: bool = False

    @property
    def from_cache_count(self) -> int:
        return sum(1 for day in self.fetched if day.from_cache)

    @property
    def from_source_count(self) -> int:
        return sum(1 for day in self.fetched if not day.from_cache)

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def record_count(self) -> int:
        return sum(day.entry.record_count for day in self.fetched)


@dataclass
class PreloadProgress:
    """Mutable progress of the preload currently in flight."""

    current: int = 0
    total: int = 0


@dataclass(frozen=True)
class PreloadStatus:
    is_preloading: bool
    progress: PreloadProgress = field(default_factory=PreloadProgress)
    last_preload_date: Optional[date] = None
    last_report: Optional[PreloadReport] = None
