"""
Health Monitor

Aggregates quick checks and full diagnostics into one cache health status.
"""

from .contracts import HealthSnapshot, HealthSource
from .core import status_changed
from .events import HealthStatusChanged
from .shell import HealthMonitor

__all__ = [
    "HealthSnapshot",
    "HealthSource",
    "HealthStatusChanged",
    "HealthMonitor",
    "status_changed",
]
