"""
Health Monitor - Type Definitions and Contracts
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Sequence

from ..diagnostics.contracts import HealthStatus


class HealthSource(Enum):
    """What produced a health snapshot."""
    QUICK_CHECK = "quick_check"
    FULL_DIAGNOSTIC = "full_diagnostic"
    CHECK_ERROR = "check_error"


@dataclass(frozen=True)
class HealthSnapshot:
    """Aggregate cache health at one point in time."""

    status: HealthStatus
    checked_at: datetime
    source: HealthSource
    issue_count: int = 0
    reason: Optional[str] = None


TrackingPointProvider = Callable[[], Sequence[int]]
