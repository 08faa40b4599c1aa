"""
Preload/Fetch Orchestrator - I/O Operations

Resolves date-range requests day by day through the tiered cache, fetching
misses from the remote analytics source and writing them through.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from opentelemetry import trace

from ..cache.tiers.contracts import CacheKey, TierName
from ..cache.tiers.core import build_entry
from ..cache.tiers.shell import TieredCacheStore
from ..common.contracts import DateRange, Failure, Result, Success
from ..common.core import format_range, local_today, range_days, trailing_window, utc_now
from ..config.contracts import Settings
from ..source.contracts import AnalyticsSource, AuthFailure, SearchRequest, SourceError
from .contracts import (
    DayFetch,
    DayFetchFailure,
    FetchedPages,
    PreloadProgress,
    PreloadReport,
    PreloadStatus,
)
from .core import (
    build_report,
    filter_records_by_day,
    merge_day_records,
    page_cap_reached,
    should_fetch_next_page,
    skipped_report,
    summarize_report,
)
from .events import DayFetchFailed, DayRefreshed, PreloadCompleted, PreloadStarted

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("buryscope.preload")


class PreloadOrchestrator:
    """
    Turns (date range, tracking point) requests into per-day cache lookups
    and source fetches.

    Per-day failures are folded into the report and never abort the range;
    an ``AuthFailure`` is the exception and propagates immediately since no
    other day can succeed with the same token.
    """

    def __init__(
        self,
        store: TieredCacheStore,
        source: AnalyticsSource,
        settings: Settings,
        event_publisher: Optional[Callable] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.source = source
        self.settings = settings
        self.event_publisher = event_publisher or self._default_event_publisher
        self.clock = clock

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._preloading = False
        self._progress = PreloadProgress()
        self._last_preload_at: Optional[datetime] = None
        self._last_report: Optional[PreloadReport] = None

    def key_for(self, day, tracking_point_id: int, project_id: Optional[str] = None) -> CacheKey:
        return CacheKey(
            date=day,
            tracking_point_id=tracking_point_id,
            project_id=project_id or self.settings.project_id,
        )

    async def get_multi_day_cached_data(
        self,
        date_range: DateRange,
        tracking_point_id: int,
        project_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Records for every resolvable day of the range, merged in date order.

        Best effort: failed days are logged and left out.

        Raises:
            AuthFailure: the source rejected the access token
        """
        report = await self.fetch_days(date_range, tracking_point_id, project_id)
        return merge_day_records(report.fetched)

    async def fetch_days(
        self,
        date_range: DateRange,
        tracking_point_id: int,
        project_id: Optional[str] = None
    ) -> PreloadReport:
        days = range_days(date_range)
        started_at = self.clock()

        with tracer.start_as_current_span("preload.fetch_days") as span:
            span.set_attributes({
                "tracking_point_id": tracking_point_id,
                "days": len(days),
            })

            results: List[Result] = []
            for day in days:
                key = self.key_for(day, tracking_point_id, project_id)
                results.append(await self._load_day(key))

            report = build_report(results, started_at, self.clock(), len(days))
            span.set_attribute("failed_days", report.failed_count)

        logger.info(
            f"Resolved point {tracking_point_id} over {format_range(days)}: {summarize_report(report)}",
            extra={"tracking_point_id": tracking_point_id, "failed_days": report.failed_count},
        )
        return report

    async def refresh_day(self, key: CacheKey) -> DayFetch:
        """
        Fetch one day from the source ignoring every cache tier, then write
        it through.

        Same-fingerprint refreshes are serialized. The returned DayFetch
        carries the write outcome; callers decide what an incomplete
        write-through means for them.

        Raises:
            SourceError: any source failure, AuthFailure included
        """
        async with self._fingerprint_lock(key.fingerprint()):
            return await self._fetch_and_store(key)

    async def trigger_manual_preload(self, tracking_point_ids: Optional[Iterable[int]] = None) -> PreloadReport:
        """
        Warm the cache for the trailing preload window of every tracking point.

        A second call while a preload is running returns a skipped report
        instead of starting another run.
        """
        if self._preloading:
            logger.info("Preload requested while one is running; skipping")
            return skipped_report(self.clock())

        self._preloading = True
        if tracking_point_ids is None:
            tracking_point_ids = self.settings.tracking_point_ids
        points = list(tracking_point_ids)
        today = local_today(self.clock(), self.settings.timezone)
        window = trailing_window(today, self.settings.preload_window_days)
        days = range_days(window)
        started_at = self.clock()
        self._progress = PreloadProgress(current=0, total=len(days) * len(points))

        results: List[Result] = []
        error: Optional[str] = None
        try:
            await self.event_publisher(PreloadStarted(
                event_id=str(uuid.uuid4()),
                timestamp=started_at,
                days=len(days),
                tracking_points=len(points),
            ))
            with tracer.start_as_current_span("preload.manual"):
                for point in points:
                    for day in days:
                        results.append(await self._load_day(self.key_for(day, point)))
                        self._progress.current += 1
        except AuthFailure as e:
            error = str(e)
            raise
        finally:
            finished_at = self.clock()
            report = build_report(results, started_at, finished_at, self._progress.total)
            self._last_report = report
            self._last_preload_at = finished_at
            self._preloading = False

            await self.event_publisher(PreloadCompleted(
                event_id=str(uuid.uuid4()),
                timestamp=finished_at,
                summary=summarize_report(report),
                failed_days=report.failed_count,
                duration_ms=int((finished_at - started_at).total_seconds() * 1000),
                error=error,
            ))

        logger.info(f"Manual preload finished: {summarize_report(report)}")
        return report

    def get_status(self) -> PreloadStatus:
        return PreloadStatus(
            is_preloading=self._preloading,
            progress=PreloadProgress(current=self._progress.current, total=self._progress.total),
            last_preload_date=self._last_preload_at.date() if self._last_preload_at else None,
            last_report=self._last_report,
        )

    async def _load_day(self, key: CacheKey) -> Result:
        """Cache first, source on miss. Folds every non-auth failure into a Failure."""
        fingerprint = key.fingerprint()

        async with self._fingerprint_lock(fingerprint):
            cached = await self.store.get(key)
            if cached is not None and cached.is_authoritative:
                logger.debug(f"Cache hit for {fingerprint} from {cached.source_tier.value}")
                return Success(DayFetch(key=key, entry=cached, from_cache=True))

            if cached is not None:
                logger.info(f"Cached {fingerprint} is {cached.quality.value}; refetching")

            try:
                day = await asyncio.wait_for(
                    self._fetch_and_store(key),
                    timeout=self.settings.bulk_fetch_timeout_seconds,
                )
            except AuthFailure:
                raise
            except asyncio.TimeoutError:
                return await self._day_failed(
                    key, "timeout", f"no result within {self.settings.bulk_fetch_timeout_seconds}s"
                )
            except SourceError as e:
                return await self._day_failed(key, type(e).__name__, str(e))

            return Success(day)

    async def _fetch_and_store(self, key: CacheKey) -> DayFetch:
        with tracer.start_as_current_span("preload.fetch_day") as span:
            span.set_attribute("fingerprint", key.fingerprint())

            fetched = await self._fetch_all_pages(key)
            entry = build_entry(
                key,
                fetched.records,
                self.clock(),
                TierName.MEMORY,
                page_cap_reached=fetched.page_cap_reached,
            )
            outcome = await self.store.set(entry)
            if not outcome.complete:
                logger.warning(
                    f"Write-through for {key.fingerprint()} incomplete: "
                    f"failed tiers {[tier.value for tier in outcome.failed]}"
                )

            span.set_attributes({"records": entry.record_count, "pages": fetched.pages})

        await self.event_publisher(DayRefreshed(
            event_id=str(uuid.uuid4()),
            timestamp=self.clock(),
            fingerprint=key.fingerprint(),
            record_count=entry.record_count,
            pages=fetched.pages,
            quality=entry.quality.value,
        ))
        return DayFetch(key=key, entry=entry, from_cache=False, pages=fetched.pages, write=outcome)

    async def _fetch_all_pages(self, key: CacheKey) -> FetchedPages:
        page_size = self.settings.page_size
        max_pages = self.settings.max_pages
        collected: List[Dict[str, Any]] = []
        page_number = 0
        last_size = 0

        while True:
            page_number += 1
            page = await self.source.search_page(
                SearchRequest(
                    project_id=key.project_id,
                    tracking_point_id=key.tracking_point_id,
                    day=key.date,
                    page=page_number,
                    page_size=page_size,
                ),
                timeout=self.settings.bulk_fetch_timeout_seconds,
            )
            collected.extend(page.records)
            last_size = len(page.records)
            if not should_fetch_next_page(last_size, page_size, page_number, max_pages):
                break

        capped = page_cap_reached(last_size, page_size, page_number, max_pages)
        if capped:
            logger.warning(f"Page cap {max_pages} reached for {key.fingerprint()}; data may be partial")

        records = filter_records_by_day(collected, key.date)
        dropped = len(collected) - len(records)
        if dropped:
            logger.debug(f"Dropped {dropped} records outside {key.date} for {key.fingerprint()}")

        return FetchedPages(records=records, pages=page_number, page_cap_reached=capped, dropped_cross_day=dropped)

    async def _day_failed(self, key: CacheKey, error_type: str, reason: str) -> Failure:
        logger.warning(f"Day {key.fingerprint()} failed ({error_type}): {reason}; skipping")
        await self.event_publisher(DayFetchFailed(
            event_id=str(uuid.uuid4()),
            timestamp=self.clock(),
            fingerprint=key.fingerprint(),
            error_type=error_type,
            reason=reason,
        ))
        return Failure(DayFetchFailure(key=key, error_type=error_type, reason=reason))

    @asynccontextmanager
    async def _fingerprint_lock(self, fingerprint: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(fingerprint, asyncio.Lock())
        self._lock_users[fingerprint] = self._lock_users.get(fingerprint, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[fingerprint] -= 1
            if self._lock_users[fingerprint] == 0:
                del self._lock_users[fingerprint]
                del self._locks[fingerprint]

    async def _default_event_publisher(self, event) -> None:
        """Default event publisher that logs events."""
        logger.info(f"Preload Event: {type(event).__name__} - {event}")
