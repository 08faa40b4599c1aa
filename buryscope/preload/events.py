"""
Preload/Fetch Orchestrator - Domain Events
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class DayFetchFailed:
    """
    Event emitted when one day of a range cannot be resolved.

    The day is skipped and the rest of the range continues.
    """

    event_id: str
    timestamp: datetime
    fingerprint: str
    error_type: str
    reason: str


@dataclass(frozen=True)
class DayRefreshed:
    """Event emitted when a day was fetched from the source, bypassing the cache."""

    event_id: str
    timestamp: datetime
    fingerprint: str
    record_count: int
    pages: int
    quality: str


@dataclass(frozen=True)
class PreloadStarted:
    event_id: str
    timestamp: datetime
    days: int
    tracking_points: int


@dataclass(frozen=True)
class PreloadCompleted:
    event_id: str
    timestamp: datetime
    summary: str
    failed_days: int
    duration_ms: int
    error: Optional[str] = None
