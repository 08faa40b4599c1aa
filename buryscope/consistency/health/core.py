"""
Health Monitor - Core Functions

NEVER include I/O operations in this module.
"""

from datetime import datetime
from typing import Optional, Sequence

from ..diagnostics.contracts import DiagnosticIssue, HealthStatus, QuickCheckResult
from ..diagnostics.core import health_from_issues
from .contracts import HealthSnapshot, HealthSource


def snapshot_from_quick_check(result: QuickCheckResult) -> HealthSnapshot:
    return HealthSnapshot(
        status=result.status,
        checked_at=result.checked_at,
        source=HealthSource.QUICK_CHECK,
        issue_count=len(result.issues),
        reason=result.reason,
    )


def snapshot_from_issues(issues: Sequence[DiagnosticIssue], checked_at: datetime) -> HealthSnapshot:
    """
    Health implied by a completed full diagnostic.

    MUST be deterministic.
    """
    return HealthSnapshot(
        status=health_from_issues(issues),
        checked_at=checked_at,
        source=HealthSource.FULL_DIAGNOSTIC,
        issue_count=len(issues),
    )


def failed_snapshot(checked_at: datetime, error: BaseException) -> HealthSnapshot:
    return HealthSnapshot(
        status=HealthStatus.UNKNOWN,
        checked_at=checked_at,
        source=HealthSource.CHECK_ERROR,
        reason=f"{type(error).__name__}: {error}",
    )


def status_changed(previous: Optional[HealthSnapshot], current: HealthSnapshot) -> bool:
    """A first snapshot counts as a change only when it is not UNKNOWN."""
    if previous is None:
        return current.status != HealthStatus.UNKNOWN
    return previous.status != current.status
