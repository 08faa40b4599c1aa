"""
Health Monitor - I/O Operations

Background loop that runs the quick health check on an interval and
keeps the aggregate status shown by the dashboard.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence

from opentelemetry import metrics

from ...common.core import utc_now
from ...config.contracts import Settings
from ..diagnostics.contracts import DiagnosticIssue, HealthStatus, QuickCheckResult
from ..diagnostics.shell import DiagnosticEngine
from .contracts import HealthSnapshot, TrackingPointProvider
from .core import (
    failed_snapshot,
    snapshot_from_issues,
    snapshot_from_quick_check,
    status_changed,
)
from .events import HealthStatusChanged

logger = logging.getLogger(__name__)

meter = metrics.get_meter("buryscope.health")

health_checks = meter.create_counter(
    "health.checks",
    description="Health checks by resulting status",
)


class HealthMonitor:
    """
    Periodic cache health aggregation.

    ``start()`` schedules one background task: after the initial delay it
    runs a quick check, then repeats every ``health_interval_seconds``. A
    check that raises leaves the status UNKNOWN and the loop keeps going.
    """

    def __init__(
        self,
        engine: DiagnosticEngine,
        tracking_point_ids_provider: Optional[TrackingPointProvider],
        settings: Settings,
        event_publisher: Optional[Callable] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.engine = engine
        self.tracking_point_ids_provider = tracking_point_ids_provider or (lambda: settings.tracking_point_ids)
        self.settings = settings
        self.event_publisher = event_publisher or self._default_event_publisher
        self.clock = clock
        self._sleep = sleep

        self._task: Optional[asyncio.Task] = None
        self._snapshot: Optional[HealthSnapshot] = None
        self._last_result: Optional[QuickCheckResult] = None

    @property
    def status(self) -> HealthStatus:
        return self._snapshot.status if self._snapshot else HealthStatus.UNKNOWN

    @property
    def last_checked_at(self) -> Optional[datetime]:
        return self._snapshot.checked_at if self._snapshot else None

    @property
    def last_result(self) -> Optional[QuickCheckResult]:
        return self._last_result

    @property
    def snapshot(self) -> Optional[HealthSnapshot]:
        return self._snapshot

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.debug("Health monitor already running")
            return
        logger.info(
            f"Starting health monitor (first check in {self.settings.health_initial_delay_seconds}s, "
            f"every {self.settings.health_interval_seconds}s)"
        )
        self._task = asyncio.create_task(self._monitor(), name="buryscope_health_monitor")

    async def stop(self) -> None:
        if self._task is None:
            return
        logger.info("Stopping health monitor")
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def check_now(self) -> HealthSnapshot:
        """Run one quick check and fold it into the aggregate status."""
        try:
            points: Sequence[int] = list(self.tracking_point_ids_provider())
            result = await self.engine.quick_health_check(points)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            snapshot = failed_snapshot(self.clock(), e)
        else:
            self._last_result = result
            snapshot = snapshot_from_quick_check(result)

        health_checks.add(1, {"status": snapshot.status.value})
        await self._apply(snapshot)
        return snapshot

    async def apply_issues(self, issues: Sequence[DiagnosticIssue]) -> HealthSnapshot:
        """Update the status from a completed full diagnostic."""
        snapshot = snapshot_from_issues(issues, self.clock())
        await self._apply(snapshot)
        return snapshot

    async def _apply(self, snapshot: HealthSnapshot) -> None:
        previous = self._snapshot
        self._snapshot = snapshot
        if not status_changed(previous, snapshot):
            return

        before = previous.status if previous else HealthStatus.UNKNOWN
        logger.info(
            f"Cache health changed: {before.value} -> {snapshot.status.value}",
            extra={"source": snapshot.source.value, "issues": snapshot.issue_count, "reason": snapshot.reason},
        )
        await self.event_publisher(HealthStatusChanged(
            event_id=str(uuid.uuid4()),
            timestamp=self.clock(),
            previous=before,
            current=snapshot.status,
            source=snapshot.source.value,
            reason=snapshot.reason,
        ))

    async def _monitor(self) -> None:
        try:
            await self._sleep(self.settings.health_initial_delay_seconds)
            while True:
                await self.check_now()
                await self._sleep(self.settings.health_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Health monitoring cancelled")
            raise

    async def _default_event_publisher(self, event) -> None:
        """Default event publisher that logs events."""
        logger.info(f"Health Event: {type(event).__name__} - {event}")
