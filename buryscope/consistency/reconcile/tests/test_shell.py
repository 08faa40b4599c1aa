"""
Tests for Auto-Fix Reconciler Shell Functions

Repair isolation, bounded parallelism, same-fingerprint serialization,
auth abort and the settle-then-verify flow.
"""

import asyncio
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest

from buryscope.cache.tiers.contracts import CacheKey, TierError, TierName, WriteOutcome
from buryscope.cache.tiers.core import build_entry
from buryscope.cache.tiers.shell import MemoryTier, TieredCacheStore
from buryscope.common.core import make_range
from buryscope.config.contracts import Settings
from buryscope.consistency.diagnostics.contracts import (
    DiagnosticIssue,
    DiagnosticReport,
    IssueKind,
    Severity,
)
from buryscope.consistency.reconcile.contracts import RepairStatus
from buryscope.consistency.reconcile.events import RepairBatchCompleted
from buryscope.consistency.reconcile.shell import AutoFixReconciler
from buryscope.preload.contracts import DayFetch
from buryscope.preload.shell import PreloadOrchestrator
from buryscope.source.contracts import AuthFailure, NetworkFailure, SearchPage


NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)


def make_issue(point=42, day=date(2024, 3, 5), kind=IssueKind.MISSING_IN_BACKEND):
    return DiagnosticIssue(
        key=CacheKey(date=day, tracking_point_id=point, project_id="event1021"),
        severity=Severity.HIGH,
        kind=kind,
        detected_at=NOW,
    )


class FakeOrchestrator:
    """Records refreshes and tracks how many run at once."""

    def __init__(self, failures=None, delay=0.01):
        self.failures = failures or {}
        self.delay = delay
        self.refreshed = []
        self.active = 0
        self.peak = 0

    async def refresh_day(self, key):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            self.refreshed.append(key)
            failure = self.failures.get(key.tracking_point_id)
            if failure is not None:
                raise failure
            entry = build_entry(key, [{"id": 1}, {"id": 2}], NOW, TierName.MEMORY)
            write = WriteOutcome(fingerprint=key.fingerprint(), written=(TierName.BACKEND, TierName.MEMORY))
            return DayFetch(key=key, entry=entry, from_cache=False, pages=1, write=write)
        finally:
            self.active -= 1


class UnwritableBackend:
    """Backend tier that can be read but rejects every write."""

    name = TierName.BACKEND

    async def get(self, fingerprint):
        return None

    async def set(self, fingerprint, entry):
        raise TierError("write rejected", self.name, fingerprint)

    async def has(self, fingerprint):
        return False

    async def clear(self, scope=None):
        return 0


class TwoRecordSource:
    async def search_page(self, request, timeout=None):
        records = [
            {"id": i, "createdAt": f"{request.day.isoformat()} 10:00:00"} for i in range(2)
        ] if request.page == 1 else []
        return SearchPage(request=request, records=records, total=2)


@pytest.fixture
def settings():
    return Settings(max_parallel_repairs=3, bulk_fetch_timeout_seconds=1.0, settle_delay_seconds=3.0)


@pytest.fixture
def mock_event_publisher():
    return AsyncMock()


def make_reconciler(orchestrator, settings, publisher, engine=None, sleep=None):
    return AutoFixReconciler(
        orchestrator,
        engine or AsyncMock(),
        settings,
        event_publisher=publisher,
        clock=lambda: NOW,
        sleep=sleep or AsyncMock(),
    )


class TestAutoFixIssues:
    """Test auto_fix_issues."""

    @pytest.mark.asyncio
    async def test_every_issue_gets_a_result(self, settings, mock_event_publisher):
        orchestrator = FakeOrchestrator()
        reconciler = make_reconciler(orchestrator, settings, mock_event_publisher)

        results = await reconciler.auto_fix_issues([make_issue(), make_issue(point=7)])

        assert [r.status for r in results] == [RepairStatus.FIXED, RepairStatus.FIXED]
        assert results[0].record_count == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, settings, mock_event_publisher):
        orchestrator = FakeOrchestrator(failures={7: NetworkFailure("connection reset")})
        reconciler = make_reconciler(orchestrator, settings, mock_event_publisher)

        results = await reconciler.auto_fix_issues([make_issue(point=7), make_issue(point=42), make_issue(point=9)])

        by_point = {r.issue.key.tracking_point_id: r for r in results}
        assert by_point[7].status == RepairStatus.FAILED
        assert "connection reset" in by_point[7].detail
        assert by_point[42].fixed
        assert by_point[9].fixed
        batch = [c.args[0] for c in mock_event_publisher.call_args_list if isinstance(c.args[0], RepairBatchCompleted)]
        assert batch[0].message == "2 fixed, 1 failed"

    @pytest.mark.asyncio
    async def test_same_fingerprint_is_refreshed_once(self, settings, mock_event_publisher):
        orchestrator = FakeOrchestrator()
        reconciler = make_reconciler(orchestrator, settings, mock_event_publisher)

        results = await reconciler.auto_fix_issues([
            make_issue(kind=IssueKind.MISSING_IN_BACKEND),
            make_issue(kind=IssueKind.STALE_MEMORY_COPY),
        ])

        assert len(orchestrator.refreshed) == 1
        assert len(results) == 2
        assert all(r.fixed for r in results)

    @pytest.mark.asyncio
    async def test_parallelism_is_bounded(self, settings, mock_event_publisher):
        orchestrator = FakeOrchestrator(delay=0.02)
        reconciler = make_reconciler(orchestrator, settings, mock_event_publisher)

        await reconciler.auto_fix_issues([make_issue(point=p) for p in range(10)])

        assert len(orchestrator.refreshed) == 10
        assert 1 < orchestrator.peak <= 3

    @pytest.mark.asyncio
    async def test_out_of_scope_issue_fails_without_refresh(self, settings, mock_event_publisher):
        orchestrator = FakeOrchestrator()
        reconciler = make_reconciler(orchestrator, settings, mock_event_publisher)

        [result] = await reconciler.auto_fix_issues([make_issue(point=7)], tracking_point_ids=[42])

        assert result.status == RepairStatus.FAILED
        assert result.detail == "out of scope"
        assert orchestrator.refreshed == []

    @pytest.mark.asyncio
    async def test_timeout_is_a_repair_failure(self, mock_event_publisher):
        orchestrator = FakeOrchestrator(delay=1.0)
        reconciler = make_reconciler(orchestrator, Settings(bulk_fetch_timeout_seconds=0.05), mock_event_publisher)

        [result] = await reconciler.auto_fix_issues([make_issue()])

        assert result.status == RepairStatus.FAILED
        assert result.detail.startswith("timed out")

    @pytest.mark.asyncio
    async def test_auth_failure_aborts_pending_and_is_raised(self, mock_event_publisher):
        orchestrator = FakeOrchestrator(failures={0: AuthFailure("token expired")})
        reconciler = make_reconciler(orchestrator, Settings(max_parallel_repairs=1), mock_event_publisher)

        with pytest.raises(AuthFailure):
            await reconciler.auto_fix_issues([make_issue(point=p) for p in range(4)])

        assert len(orchestrator.refreshed) == 1
        batch = [c.args[0] for c in mock_event_publisher.call_args_list if isinstance(c.args[0], RepairBatchCompleted)]
        assert batch[0].failed == 4
        assert batch[0].aborted_reason == "token expired"

    @pytest.mark.asyncio
    async def test_refetch_that_misses_backend_stays_failed(self, settings, mock_event_publisher):
        memory = MemoryTier(max_entries=10)
        store = TieredCacheStore([memory, UnwritableBackend()], event_publisher=AsyncMock())
        orchestrator = PreloadOrchestrator(store, TwoRecordSource(), settings, event_publisher=AsyncMock())
        reconciler = make_reconciler(orchestrator, settings, mock_event_publisher)
        issue = make_issue(day=date(2024, 3, 5))

        [result] = await reconciler.auto_fix_issues([issue], [42])

        assert result.status == RepairStatus.FAILED
        assert result.detail == "write-through incomplete: failed tiers ['backend']"
        assert (await memory.get(issue.fingerprint)).record_count == 2
        batch = [c.args[0] for c in mock_event_publisher.call_args_list if isinstance(c.args[0], RepairBatchCompleted)]
        assert batch[0].message == "0 fixed, 1 failed"


class TestRepairAndVerify:
    """Test the settle-then-verify flow."""

    @pytest.mark.asyncio
    async def test_waits_settle_delay_then_rechecks(self, settings, mock_event_publisher):
        engine = AsyncMock()
        verification = DiagnosticReport(issues=(), success=True, started_at=NOW, finished_at=NOW)
        engine.run_full_diagnostic.return_value = verification
        sleep = AsyncMock()
        reconciler = make_reconciler(FakeOrchestrator(), settings, mock_event_publisher, engine=engine, sleep=sleep)
        date_range = make_range("2024-03-05", "2024-03-05")

        outcome = await reconciler.repair_and_verify([make_issue()], date_range, [42])

        sleep.assert_awaited_once_with(3.0)
        engine.run_full_diagnostic.assert_awaited_once_with(date_range, [42])
        assert outcome.summary.message == "1 fixed, 0 failed"
        assert outcome.verification is verification
        assert outcome.remaining_issues == 0

    @pytest.mark.asyncio
    async def test_zero_settle_delay_skips_sleep(self, mock_event_publisher):
        engine = AsyncMock()
        engine.run_full_diagnostic.return_value = DiagnosticReport(
            issues=(), success=True, started_at=NOW, finished_at=NOW
        )
        sleep = AsyncMock()
        reconciler = make_reconciler(
            FakeOrchestrator(), Settings(settle_delay_seconds=0), mock_event_publisher, engine=engine, sleep=sleep
        )

        await reconciler.repair_and_verify([make_issue()], make_range("2024-03-05", "2024-03-05"), [42])

        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recheck_is_applied_to_health_monitor(self, settings, mock_event_publisher):
        engine = AsyncMock()
        remaining = make_issue(kind=IssueKind.COUNT_MISMATCH)
        verification = DiagnosticReport(issues=(remaining,), success=True, started_at=NOW, finished_at=NOW)
        engine.run_full_diagnostic.return_value = verification
        monitor = AsyncMock()
        reconciler = AutoFixReconciler(
            FakeOrchestrator(), engine, settings,
            event_publisher=mock_event_publisher, clock=lambda: NOW, sleep=AsyncMock(), health_monitor=monitor,
        )

        await reconciler.repair_and_verify([make_issue()], make_range("2024-03-05", "2024-03-05"), [42])

        monitor.apply_issues.assert_awaited_once_with((remaining,))

    @pytest.mark.asyncio
    async def test_failed_recheck_leaves_health_untouched(self, settings, mock_event_publisher):
        engine = AsyncMock()
        engine.run_full_diagnostic.return_value = DiagnosticReport(
            issues=(), success=False, started_at=NOW, finished_at=NOW, error="backend unreachable"
        )
        monitor = AsyncMock()
        reconciler = AutoFixReconciler(
            FakeOrchestrator(), engine, settings,
            event_publisher=mock_event_publisher, clock=lambda: NOW, sleep=AsyncMock(), health_monitor=monitor,
        )

        await reconciler.repair_and_verify([make_issue()], make_range("2024-03-05", "2024-03-05"), [42])

        monitor.apply_issues.assert_not_awaited()
