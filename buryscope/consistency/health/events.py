"""
Health Monitor - Domain Events
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..diagnostics.contracts import HealthStatus


@dataclass(frozen=True)
class HealthStatusChanged:
    """Event emitted when the aggregate cache health moves to a new status."""

    event_id: str
    timestamp: datetime
    previous: HealthStatus
    current: HealthStatus
    source: str
    reason: Optional[str] = None
