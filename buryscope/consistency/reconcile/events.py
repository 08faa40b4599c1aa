"""
Auto-Fix Reconciler - Domain Events
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class RepairAttempted:
    """Event emitted once per repaired fingerprint."""

    event_id: str
    timestamp: datetime
    fingerprint: str
    issue_kinds: str
    fixed: bool
    detail: str


@dataclass(frozen=True)
class RepairBatchCompleted:
    """
    Event emitted after a repair batch.

    Backend writes are eventually consistent: a batch reported here may
    not be visible on the backend tier until after the settle delay.
    """

    event_id: str
    timestamp: datetime
    fixed: int
    failed: int
    message: str
    aborted_reason: Optional[str] = None
