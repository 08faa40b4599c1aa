"""
Consistency Diagnostic Engine - Domain Events
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from .contracts import HealthStatus


@dataclass(frozen=True)
class DiagnosticStarted:
    event_id: str
    timestamp: datetime
    days: int
    tracking_points: int


@dataclass(frozen=True)
class DiagnosticCompleted:
    """
    Event emitted when a full diagnostic produced a report.

    Cancelled runs are reported too, with ``cancelled`` set.
    """

    event_id: str
    timestamp: datetime
    issue_counts: Dict[str, int]
    keys_scanned: int
    keys_unreadable: int
    duration_ms: int
    cancelled: bool = False


@dataclass(frozen=True)
class DiagnosticFailed:
    event_id: str
    timestamp: datetime
    error: str


@dataclass(frozen=True)
class QuickCheckCompleted:
    event_id: str
    timestamp: datetime
    status: HealthStatus
    issue_count: int
    reason: Optional[str] = None
