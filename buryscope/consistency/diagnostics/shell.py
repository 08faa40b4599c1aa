"""
Consistency Diagnostic Engine - I/O Operations

Scans date ranges across every cache tier, classifies divergences and
keeps the single-run state machine.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

import httpx
from opentelemetry import metrics, trace

from ...cache.tiers.contracts import CacheKey
from ...cache.tiers.shell import TieredCacheStore
from ...common.contracts import DateRange
from ...common.core import local_today, range_days, trailing_window, utc_now
from ...config.contracts import Settings
from .contracts import (
    BackendProbe,
    ClassificationThresholds,
    DiagnosticIssue,
    DiagnosticReport,
    DiagnosticRunConflict,
    DiagnosticState,
    DiagnosticStatus,
    HealthStatus,
    QuickCheckResult,
    ScanOutcome,
)
from .core import (
    classify_snapshot,
    escalate_recent_absence,
    generate_suggestions,
    health_from_issues,
    severity_counts,
    sort_issues,
    summarize_issues,
)
from .events import (
    DiagnosticCompleted,
    DiagnosticFailed,
    DiagnosticStarted,
    QuickCheckCompleted,
)

logger = logging.getLogger(__name__)

meter = metrics.get_meter("buryscope.diagnostics")
tracer = trace.get_tracer("buryscope.diagnostics")

diagnostic_duration = meter.create_histogram(
    "diagnostics.run.duration_ms",
    description="Time taken by a full diagnostic run",
    unit="milliseconds",
)


class BackendHealthProbe:
    """Liveness probe against the backend's ``GET /api/health``."""

    def __init__(self, base_url: str, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def __call__(self) -> bool:
        try:
            response = await self.http_client.get(f"{self.base_url}/api/health", timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning(f"Backend health probe failed: {e}")
            return False
        return response.status_code == 200

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()


class DiagnosticEngine:
    """
    Compares tier contents for days x tracking points.

    Only one full run may be in flight per engine; a second request is
    rejected with ``DiagnosticRunConflict``. The quick health check is
    read-only and bounded by a time budget, so it does not take the
    running flag.
    """

    def __init__(
        self,
        store: TieredCacheStore,
        settings: Settings,
        backend_probe: Optional[BackendProbe] = None,
        event_publisher: Optional[Callable] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.settings = settings
        self.backend_probe = backend_probe
        self.event_publisher = event_publisher or self._default_event_publisher
        self.clock = clock
        self.thresholds = ClassificationThresholds(
            count_mismatch_high_ratio=settings.count_mismatch_high_ratio,
            max_entry_age_hours=settings.max_entry_age_hours,
            recent_days=settings.quick_check_window_days,
            timezone=settings.timezone,
        )

        self._state = DiagnosticState.IDLE
        self._running_since: Optional[datetime] = None
        self._cancel_event: Optional[asyncio.Event] = None
        self._last_report: Optional[DiagnosticReport] = None

    @property
    def state(self) -> DiagnosticState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == DiagnosticState.RUNNING

    def _keys(self, days, tracking_point_ids: Iterable[int], project_id: Optional[str]) -> List[CacheKey]:
        project = project_id or self.settings.project_id
        return [
            CacheKey(date=day, tracking_point_id=point, project_id=project)
            for day in days
            for point in tracking_point_ids
        ]

    async def run_full_diagnostic(
        self,
        date_range: DateRange,
        tracking_point_ids: Sequence[int],
        cancel: Optional[asyncio.Event] = None,
        project_id: Optional[str] = None
    ) -> DiagnosticReport:
        """
        Scan every (day, tracking point) in the range.

        Cancellation is checked between days; a cancelled run returns the
        issues gathered so far with ``cancelled=True``.

        Raises:
            DiagnosticRunConflict: another full run is in flight
        """
        if self._state == DiagnosticState.RUNNING:
            raise DiagnosticRunConflict(
                "A diagnostic run is already in progress",
                running_since=self._running_since,
            )

        # flag is set before the first await
        self._state = DiagnosticState.RUNNING
        self._running_since = started_at = self.clock()
        self._cancel_event = cancel or asyncio.Event()
        points = list(tracking_point_ids)

        try:
            days = range_days(date_range)
            await self.event_publisher(DiagnosticStarted(
                event_id=str(uuid.uuid4()),
                timestamp=started_at,
                days=len(days),
                tracking_points=len(points),
            ))

            with tracer.start_as_current_span("diagnostics.full_run") as span:
                span.set_attributes({"days": len(days), "tracking_points": len(points)})

                outcome = await self._scan(days, points, project_id, self._cancel_event)

                span.set_attributes({
                    "issues": len(outcome.issues),
                    "keys_unreadable": outcome.keys_unreadable,
                    "cancelled": outcome.cancelled,
                })

            issues = sort_issues(outcome.issues)
            report = DiagnosticReport(
                issues=issues,
                success=True,
                started_at=started_at,
                finished_at=self.clock(),
                cancelled=outcome.cancelled,
                keys_scanned=outcome.keys_scanned,
                keys_unreadable=outcome.keys_unreadable,
                suggestions=generate_suggestions(issues),
            )
            self._state = DiagnosticState.REPORTED

        except Exception as e:
            logger.error(f"Diagnostic run failed: {e}", exc_info=True)
            report = DiagnosticReport(
                issues=(),
                success=False,
                started_at=started_at,
                finished_at=self.clock(),
                error=str(e),
            )
            self._state = DiagnosticState.FAILED
            self._last_report = report
            await self.event_publisher(DiagnosticFailed(
                event_id=str(uuid.uuid4()),
                timestamp=self.clock(),
                error=str(e),
            ))
            return report

        finally:
            if self._state == DiagnosticState.RUNNING:
                self._state = DiagnosticState.FAILED
            self._cancel_event = None
            self._running_since = None

        self._last_report = report
        diagnostic_duration.record(report.duration_ms, {"cancelled": report.cancelled})

        logger.info(
            f"Diagnostic {'cancelled' if report.cancelled else 'finished'}: "
            f"{summarize_issues(report.issues, report.keys_unreadable)}",
            extra={
                "keys_scanned": report.keys_scanned,
                "keys_unreadable": report.keys_unreadable,
                "duration_ms": report.duration_ms,
            },
        )
        await self.event_publisher(DiagnosticCompleted(
            event_id=str(uuid.uuid4()),
            timestamp=report.finished_at,
            issue_counts={s.value: n for s, n in severity_counts(report.issues).items()},
            keys_scanned=report.keys_scanned,
            keys_unreadable=report.keys_unreadable,
            duration_ms=report.duration_ms,
            cancelled=report.cancelled,
        ))
        return report

    def cancel(self) -> bool:
        """Request cancellation of the current full run. Returns False when idle."""
        if self._cancel_event is None:
            return False
        self._cancel_event.set()
        logger.info("Diagnostic cancellation requested")
        return True

    async def quick_health_check(
        self,
        tracking_point_ids: Sequence[int],
        project_id: Optional[str] = None
    ) -> QuickCheckResult:
        """
        Cheap scan of the trailing quick-check window.

        Always returns within the configured budget; an unreachable
        backend, an unreadable tier or an exhausted budget yield
        ``HealthStatus.UNKNOWN``.
        """
        budget = self.settings.quick_check_budget_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget
        checked_at = self.clock()

        with tracer.start_as_current_span("diagnostics.quick_check") as span:
            if self.backend_probe is not None:
                try:
                    alive = await asyncio.wait_for(self.backend_probe(), timeout=budget)
                except Exception as e:
                    logger.warning(f"Backend probe did not answer: {e!r}")
                    alive = False
                if not alive:
                    return await self._quick_result(HealthStatus.UNKNOWN, checked_at, reason="backend unreachable")

            today = local_today(checked_at, self.settings.timezone)
            window = trailing_window(today, self.settings.quick_check_window_days)
            remaining = max(0.0, deadline - loop.time())
            try:
                outcome = await asyncio.wait_for(
                    self._scan(range_days(window), list(tracking_point_ids), project_id, None),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                return await self._quick_result(
                    HealthStatus.UNKNOWN, checked_at, reason=f"check exceeded {budget}s budget"
                )

            span.set_attribute("issues", len(outcome.issues))

        issues = sort_issues(escalate_recent_absence(outcome.issues))
        if outcome.keys_unreadable:
            return await self._quick_result(
                HealthStatus.UNKNOWN,
                checked_at,
                issues=issues,
                keys_scanned=outcome.keys_scanned,
                reason=f"{outcome.keys_unreadable} keys unreadable",
            )
        return await self._quick_result(
            health_from_issues(issues), checked_at, issues=issues, keys_scanned=outcome.keys_scanned
        )

    def get_status(self) -> DiagnosticStatus:
        return DiagnosticStatus(
            state=self._state,
            last_report=self._last_report,
            issue_count=len(self._last_report.issues) if self._last_report else 0,
        )

    async def _scan(
        self,
        days,
        tracking_point_ids: List[int],
        project_id: Optional[str],
        cancel: Optional[asyncio.Event]
    ) -> ScanOutcome:
        issues: List[DiagnosticIssue] = []
        scanned = 0
        unreadable = 0

        for day in days:
            if cancel is not None and cancel.is_set():
                logger.info(f"Diagnostic cancelled before {day}")
                return ScanOutcome(tuple(issues), scanned, unreadable, cancelled=True)

            for key in self._keys([day], tracking_point_ids, project_id):
                try:
                    snapshot = await asyncio.wait_for(
                        self.store.peek(key),
                        timeout=self.settings.diagnostic_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"Timed out reading tiers for {key.fingerprint()}")
                    unreadable += 1
                    continue

                if snapshot.has_errors:
                    unreadable += 1
                    continue

                scanned += 1
                issues.extend(classify_snapshot(snapshot, self.clock(), self.thresholds))

        return ScanOutcome(tuple(issues), scanned, unreadable, cancelled=False)

    async def _quick_result(
        self,
        status: HealthStatus,
        checked_at: datetime,
        issues=(),
        keys_scanned: int = 0,
        reason: Optional[str] = None
    ) -> QuickCheckResult:
        result = QuickCheckResult(
            status=status,
            checked_at=checked_at,
            issues=tuple(issues),
            keys_scanned=keys_scanned,
            reason=reason,
        )
        if reason:
            logger.warning(f"Quick health check is {status.value}: {reason}")
        else:
            logger.info(f"Quick health check is {status.value}: {summarize_issues(result.issues)}")

        await self.event_publisher(QuickCheckCompleted(
            event_id=str(uuid.uuid4()),
            timestamp=self.clock(),
            status=status,
            issue_count=len(result.issues),
            reason=reason,
        ))
        return result

    async def _default_event_publisher(self, event) -> None:
        """Default event publisher that logs events."""
        logger.info(f"Diagnostic Event: {type(event).__name__} - {event}")
