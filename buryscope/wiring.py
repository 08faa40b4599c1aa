"""
Stack wiring

Builds one cache consistency stack per process from Settings.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import httpx
import redis.asyncio as redis
from fastapi import FastAPI

from .cache.tiers.shell import BackendTier, MemoryTier, RedisTier, TieredCacheStore
from .config.contracts import Settings
from .consistency.diagnostics.shell import BackendHealthProbe, DiagnosticEngine
from .consistency.health.shell import HealthMonitor
from .consistency.reconcile.shell import AutoFixReconciler
from .preload.shell import PreloadOrchestrator
from .server.app import create_app
from .server.store import SqlCacheStore, StoreTier
from .source.contracts import AnalyticsSource
from .source.shell import BuryPointSourceClient

logger = logging.getLogger(__name__)


@dataclass
class CacheStack:
    """Every component of one dashboard process, sharing one tiered store."""

    settings: Settings
    store: TieredCacheStore
    orchestrator: PreloadOrchestrator
    engine: DiagnosticEngine
    reconciler: AutoFixReconciler
    monitor: HealthMonitor
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    def start(self) -> None:
        if self.settings.health_monitor_enabled:
            self.monitor.start()

    async def close(self) -> None:
        await self.monitor.stop()
        for close in reversed(self.closers):
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error while closing stack resource: {e}")
        self.closers.clear()


def build_stack(
    settings: Settings,
    event_publisher: Optional[Callable] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client: Optional["redis.Redis"] = None,
    source: Optional[AnalyticsSource] = None
) -> CacheStack:
    """
    Wire memory, Redis and backend tiers with the orchestrator, diagnostic
    engine, reconciler and health monitor.

    Clients passed in are shared, not owned; the stack closes only what it
    created.
    """
    closers: List[Callable[[], Awaitable[None]]] = []

    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.bulk_fetch_timeout_seconds)
        closers.append(http_client.aclose)
    if redis_client is None:
        redis_client = redis.from_url(settings.redis_url)
        closers.append(redis_client.aclose)
    if source is None:
        source = BuryPointSourceClient(
            settings.source_base_url,
            settings.access_token,
            http_client=http_client,
            default_timeout=settings.bulk_fetch_timeout_seconds,
        )

    store = TieredCacheStore(
        [
            MemoryTier(max_entries=settings.memory_max_entries, event_publisher=event_publisher),
            RedisTier(redis_client, key_prefix=settings.durable_key_prefix, ttl_days=settings.durable_ttl_days),
            BackendTier(settings.backend_base_url, http_client=http_client, timeout=settings.diagnostic_timeout_seconds),
        ],
        event_publisher=event_publisher,
    )
    orchestrator = PreloadOrchestrator(store, source, settings, event_publisher=event_publisher)
    engine = DiagnosticEngine(
        store,
        settings,
        backend_probe=BackendHealthProbe(settings.backend_base_url, http_client=http_client),
        event_publisher=event_publisher,
    )
    monitor = HealthMonitor(engine, None, settings, event_publisher=event_publisher)
    reconciler = AutoFixReconciler(
        orchestrator, engine, settings, event_publisher=event_publisher, health_monitor=monitor
    )

    logger.info("Cache stack built", extra={"settings": settings.describe()})
    return CacheStack(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        engine=engine,
        reconciler=reconciler,
        monitor=monitor,
        closers=closers,
    )


def build_server_app(settings: Settings, source: Optional[AnalyticsSource] = None) -> FastAPI:
    """Backend API over the SQL store, with a server-side preload writing straight into it."""
    sql_store = SqlCacheStore(settings.database_url)
    closers: List[Callable[[], Awaitable[None]]] = []

    if source is None:
        client = BuryPointSourceClient(
            settings.source_base_url,
            settings.access_token,
            default_timeout=settings.bulk_fetch_timeout_seconds,
        )
        closers.append(client.aclose)
        source = client

    orchestrator = PreloadOrchestrator(TieredCacheStore([StoreTier(sql_store)]), source, settings)
    return create_app(
        sql_store,
        orchestrator=orchestrator,
        default_project_id=settings.project_id,
        closers=closers,
    )
