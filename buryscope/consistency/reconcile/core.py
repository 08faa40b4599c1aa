"""
Auto-Fix Reconciler - Core Functions

Pure grouping of issues into repair tasks and folding of outcomes.
NEVER include I/O operations in this module.
"""

from typing import Dict, Iterable, List, Optional, Sequence

from ...cache.tiers.contracts import WriteOutcome
from ...common.contracts import Failure, Result, Success
from ..diagnostics.contracts import DiagnosticIssue
from .contracts import RepairResult, RepairStatus, RepairSummary, RepairTask


OUT_OF_SCOPE = "out of scope"
AUTH_ABORTED = "auth failure"


def group_by_fingerprint(issues: Iterable[DiagnosticIssue]) -> List[RepairTask]:
    """
    One task per fingerprint, in first-seen order.

    Several issues on the same key are closed by the same refresh, so
    they must never be repaired twice in parallel.

    MUST be deterministic.
    """
    grouped: Dict[str, List[DiagnosticIssue]] = {}
    for issue in issues:
        grouped.setdefault(issue.fingerprint, []).append(issue)
    return [RepairTask(key=group[0].key, issues=tuple(group)) for group in grouped.values()]


def in_scope(task: RepairTask, tracking_point_ids: Optional[Iterable[int]]) -> bool:
    if tracking_point_ids is None:
        return True
    return task.key.tracking_point_id in set(tracking_point_ids)


def task_results(task: RepairTask, status: RepairStatus, detail: str, record_count: Optional[int] = None) -> List[RepairResult]:
    return [
        RepairResult(issue=issue, status=status, detail=detail, record_count=record_count)
        for issue in task.issues
    ]


def incomplete_write_detail(outcome: Optional[WriteOutcome]) -> Optional[str]:
    """
    Failure detail for a refetch whose write-through missed a tier, or None.

    A gap is closed only once every tier holds the refetched entry.
    """
    if outcome is None or outcome.complete:
        return None
    return f"write-through incomplete: failed tiers {[tier.value for tier in outcome.failed]}"


def fold_task_outcome(task: RepairTask, outcome: Result) -> List[RepairResult]:
    """Expand one task's Result into a RepairResult per issue."""
    if isinstance(outcome, Success):
        count = outcome.value
        return task_results(task, RepairStatus.FIXED, f"refetched {count} records", record_count=count)
    if isinstance(outcome, Failure):
        return task_results(task, RepairStatus.FAILED, str(outcome.error))
    raise TypeError(f"Not a Result: {outcome!r}")


def summarize_repairs(results: Sequence[RepairResult]) -> RepairSummary:
    """User-visible "M fixed, K failed" summary."""
    fixed = sum(1 for r in results if r.fixed)
    failed = len(results) - fixed
    return RepairSummary(fixed=fixed, failed=failed, message=f"{fixed} fixed, {failed} failed")
