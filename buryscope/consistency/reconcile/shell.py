"""
Auto-Fix Reconciler - I/O Operations

Closes diagnosed gaps by refetching affected days past the cache and
writing them through every tier.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence

from opentelemetry import metrics, trace

from ...common.contracts import DateRange, Failure, Result, Success
from ...common.core import utc_now
from ...config.contracts import Settings
from ...preload.shell import PreloadOrchestrator
from ...source.contracts import AuthFailure
from ..diagnostics.contracts import DiagnosticIssue
from ..diagnostics.shell import DiagnosticEngine
from ..health.shell import HealthMonitor
from .contracts import RepairResult, RepairStatus, RepairTask, VerifiedRepair
from .core import (
    AUTH_ABORTED,
    OUT_OF_SCOPE,
    fold_task_outcome,
    group_by_fingerprint,
    in_scope,
    incomplete_write_detail,
    summarize_repairs,
    task_results,
)
from .events import RepairAttempted, RepairBatchCompleted

logger = logging.getLogger(__name__)

meter = metrics.get_meter("buryscope.reconcile")
tracer = trace.get_tracer("buryscope.reconcile")

repairs_counter = meter.create_counter(
    "reconcile.repairs",
    description="Repaired issues by outcome",
)


class AutoFixReconciler:
    """
    Repairs diagnostic issues by cache-bypassing refetch.

    Issues on the same fingerprint are repaired once; distinct
    fingerprints run concurrently up to ``max_parallel_repairs``. A failed
    repair is recorded and never blocks the others. An ``AuthFailure``
    stops dispatch of the repairs still waiting and is raised once the
    batch has settled.
    """

    def __init__(
        self,
        orchestrator: PreloadOrchestrator,
        engine: DiagnosticEngine,
        settings: Settings,
        event_publisher: Optional[Callable] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        health_monitor: Optional[HealthMonitor] = None
    ):
        self.orchestrator = orchestrator
        self.engine = engine
        self.settings = settings
        self.event_publisher = event_publisher or self._default_event_publisher
        self.clock = clock
        self._sleep = sleep
        self.health_monitor = health_monitor

    async def auto_fix_issues(
        self,
        issues: Sequence[DiagnosticIssue],
        tracking_point_ids: Optional[Sequence[int]] = None
    ) -> List[RepairResult]:
        """
        Repair every issue; one RepairResult per issue, in input order
        of fingerprints.

        Raises:
            AuthFailure: after the batch, when the source rejected the token
        """
        tasks = group_by_fingerprint(issues)
        semaphore = asyncio.Semaphore(self.settings.max_parallel_repairs)
        auth_errors: List[AuthFailure] = []

        async def run(task: RepairTask) -> List[RepairResult]:
            if not in_scope(task, tracking_point_ids):
                logger.info(f"Skipping {task.key.fingerprint()}: tracking point not selected")
                return task_results(task, RepairStatus.FAILED, OUT_OF_SCOPE)

            async with semaphore:
                if auth_errors:
                    return task_results(task, RepairStatus.FAILED, AUTH_ABORTED)
                outcome = await self._repair(task, auth_errors)

            results = fold_task_outcome(task, outcome)
            await self.event_publisher(RepairAttempted(
                event_id=str(uuid.uuid4()),
                timestamp=self.clock(),
                fingerprint=task.key.fingerprint(),
                issue_kinds=",".join(sorted({i.kind.value for i in task.issues})),
                fixed=isinstance(outcome, Success),
                detail=results[0].detail,
            ))
            return results

        with tracer.start_as_current_span("reconcile.batch") as span:
            span.set_attributes({"issues": len(issues), "fingerprints": len(tasks)})
            batches = await asyncio.gather(*(run(task) for task in tasks))

        results = [result for batch in batches for result in batch]
        summary = summarize_repairs(results)
        for status in RepairStatus:
            count = sum(1 for r in results if r.status == status)
            if count:
                repairs_counter.add(count, {"status": status.value})

        aborted_reason = str(auth_errors[0]) if auth_errors else None
        logger.info(
            f"Repair batch finished: {summary.message}",
            extra={"fixed": summary.fixed, "failed": summary.failed, "aborted": aborted_reason},
        )
        await self.event_publisher(RepairBatchCompleted(
            event_id=str(uuid.uuid4()),
            timestamp=self.clock(),
            fixed=summary.fixed,
            failed=summary.failed,
            message=summary.message,
            aborted_reason=aborted_reason,
        ))

        if auth_errors:
            raise auth_errors[0]
        return results

    async def repair_and_verify(
        self,
        issues: Sequence[DiagnosticIssue],
        date_range: DateRange,
        tracking_point_ids: Sequence[int]
    ) -> VerifiedRepair:
        """
        Repair, wait the settle delay, then re-run the full diagnostic.
        The re-check is folded into the health monitor when one is attached.

        The backend tier is treated as eventually consistent; the delay
        gives its writes time to become visible before re-checking.

        Raises:
            AuthFailure: the source rejected the token during repair
            DiagnosticRunConflict: a full diagnostic was already running
        """
        results = await self.auto_fix_issues(issues, tracking_point_ids)

        delay = self.settings.settle_delay_seconds
        if delay > 0:
            logger.debug(f"Waiting {delay}s for backend writes to settle")
            await self._sleep(delay)

        verification = await self.engine.run_full_diagnostic(date_range, tracking_point_ids)
        if self.health_monitor is not None and verification.success and not verification.cancelled:
            await self.health_monitor.apply_issues(verification.issues)

        return VerifiedRepair(
            results=tuple(results),
            summary=summarize_repairs(results),
            verification=verification,
        )

    async def _repair(self, task: RepairTask, auth_errors: List[AuthFailure]) -> Result:
        fingerprint = task.key.fingerprint()
        timeout = self.settings.bulk_fetch_timeout_seconds

        with tracer.start_as_current_span("reconcile.repair") as span:
            span.set_attribute("fingerprint", fingerprint)
            try:
                day = await asyncio.wait_for(self.orchestrator.refresh_day(task.key), timeout=timeout)
            except AuthFailure as e:
                logger.error(f"Repair of {fingerprint} rejected by source: {e}")
                auth_errors.append(e)
                return Failure(f"{AUTH_ABORTED}: {e}")
            except asyncio.TimeoutError:
                logger.warning(f"Repair of {fingerprint} timed out after {timeout}s")
                return Failure(f"timed out after {timeout}s")
            except Exception as e:
                logger.warning(f"Repair of {fingerprint} failed: {e}", exc_info=True)
                return Failure(f"{type(e).__name__}: {e}")

            span.set_attribute("records", day.entry.record_count)
            incomplete = incomplete_write_detail(day.write)
            if incomplete is not None:
                span.set_attribute("write_incomplete", True)
                logger.warning(f"Repair of {fingerprint} left a gap: {incomplete}")
                return Failure(incomplete)

        logger.info(f"Repaired {fingerprint} with {day.entry.record_count} records")
        return Success(day.entry.record_count)

    async def _default_event_publisher(self, event) -> None:
        """Default event publisher that logs events."""
        logger.info(f"Reconcile Event: {type(event).__name__} - {event}")
