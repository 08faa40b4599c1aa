"""
Tests for Auto-Fix Reconciler Core Functions
"""

from datetime import date, datetime, timezone

from buryscope.cache.tiers.contracts import CacheKey, TierName, WriteOutcome
from buryscope.common.contracts import Failure, Success
from buryscope.consistency.diagnostics.contracts import DiagnosticIssue, IssueKind, Severity
from buryscope.consistency.reconcile.contracts import RepairStatus
from buryscope.consistency.reconcile.core import (
    fold_task_outcome,
    group_by_fingerprint,
    in_scope,
    incomplete_write_detail,
    summarize_repairs,
)


NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)


def make_issue(point=42, day=date(2024, 3, 5), kind=IssueKind.MISSING_IN_BACKEND):
    return DiagnosticIssue(
        key=CacheKey(date=day, tracking_point_id=point, project_id="event1021"),
        severity=Severity.HIGH,
        kind=kind,
        detected_at=NOW,
    )


class TestGrouping:
    """Test grouping issues into repair tasks."""

    def test_same_fingerprint_becomes_one_task(self):
        issues = [
            make_issue(kind=IssueKind.MISSING_IN_BACKEND),
            make_issue(point=7),
            make_issue(kind=IssueKind.COUNT_MISMATCH),
        ]

        tasks = group_by_fingerprint(issues)

        assert len(tasks) == 2
        assert tasks[0].key.tracking_point_id == 42
        assert len(tasks[0].issues) == 2
        assert tasks[1].key.tracking_point_id == 7

    def test_scope_filter(self):
        [task] = group_by_fingerprint([make_issue(point=7)])
        assert in_scope(task, None)
        assert in_scope(task, [7, 8])
        assert not in_scope(task, [42])


class TestFolding:
    """Test folding outcomes into per-issue results."""

    def test_success_fixes_every_issue_of_the_task(self):
        [task] = group_by_fingerprint([make_issue(), make_issue(kind=IssueKind.COUNT_MISMATCH)])

        results = fold_task_outcome(task, Success(12))

        assert [r.status for r in results] == [RepairStatus.FIXED, RepairStatus.FIXED]
        assert results[0].record_count == 12

    def test_failure_carries_detail(self):
        [task] = group_by_fingerprint([make_issue()])

        [result] = fold_task_outcome(task, Failure("timed out after 30.0s"))

        assert result.status == RepairStatus.FAILED
        assert result.detail == "timed out after 30.0s"

    def test_summary_message(self):
        [fixed_task, failed_task] = group_by_fingerprint([make_issue(), make_issue(point=7)])
        results = fold_task_outcome(fixed_task, Success(3)) + fold_task_outcome(failed_task, Failure("down"))

        summary = summarize_repairs(results)

        assert (summary.fixed, summary.failed) == (1, 1)
        assert summary.message == "1 fixed, 1 failed"


class TestWriteOutcome:
    """Test incomplete_write_detail."""

    def test_complete_write_has_no_detail(self):
        outcome = WriteOutcome(fingerprint="raw:event1021:42:2024-03-05", written=(TierName.BACKEND, TierName.MEMORY))

        assert incomplete_write_detail(outcome) is None

    def test_missing_outcome_has_no_detail(self):
        assert incomplete_write_detail(None) is None

    def test_failed_tiers_are_named(self):
        outcome = WriteOutcome(
            fingerprint="raw:event1021:42:2024-03-05",
            written=(TierName.MEMORY,),
            failed=(TierName.BACKEND,),
        )

        assert incomplete_write_detail(outcome) == "write-through incomplete: failed tiers ['backend']"
