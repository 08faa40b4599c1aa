"""
Tiered Cache Store - I/O Operations

Memory, durable-local (Redis) and backend tiers, and the store that reads
through them fastest first and writes through all of them.
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import httpx
import redis.asyncio as redis
from opentelemetry import metrics, trace

from ...common.core import utc_now
from .contracts import (
    CacheEntry,
    CacheKey,
    CacheTier,
    ClearScope,
    ReadStatus,
    TierError,
    TierName,
    TierRead,
    TierSnapshot,
    WriteOutcome,
)
from .core import (
    deserialize_entry,
    entry_from_dict,
    entry_to_dict,
    fingerprint_in_scope,
    parse_fingerprint,
    promotion_targets,
    scope_to_payload,
    serialize_entry,
    write_order,
)
from .events import (
    CacheEntryEvicted,
    CacheEntryPromoted,
    CacheEntryWritten,
    CacheScopeCleared,
    CacheTierFailure,
)

logger = logging.getLogger(__name__)

meter = metrics.get_meter("buryscope.cache")
tracer = trace.get_tracer("buryscope.cache")

tier_reads = meter.create_counter(
    "cache.tier.reads",
    description="Tier reads by tier and outcome",
)

SCAN_BATCH_SIZE = 500


class MemoryTier:
    """
    In-process LRU tier.

    Holds at most ``max_entries`` entries; the least recently read or
    written entry is evicted first.
    """

    name = TierName.MEMORY

    def __init__(self, max_entries: int = 2000, event_publisher: Optional[Callable] = None):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.event_publisher = event_publisher or self._default_event_publisher
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        self._entries.move_to_end(fingerprint)
        return entry.with_tier(self.name)

    async def set(self, fingerprint: str, entry: CacheEntry) -> None:
        self._entries[fingerprint] = entry.with_tier(self.name)
        self._entries.move_to_end(fingerprint)

        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted {evicted} from memory tier")
            await self.event_publisher(CacheEntryEvicted(
                event_id=str(uuid.uuid4()),
                timestamp=utc_now(),
                fingerprint=evicted,
                max_entries=self.max_entries,
            ))

    async def has(self, fingerprint: str) -> bool:
        return fingerprint in self._entries

    async def clear(self, scope: Optional[ClearScope] = None) -> int:
        if scope is None:
            removed = len(self._entries)
            self._entries.clear()
            return removed

        doomed = [fp for fp in self._entries if fingerprint_in_scope(fp, scope)]
        for fingerprint in doomed:
            del self._entries[fingerprint]
        return len(doomed)

    async def _default_event_publisher(self, event) -> None:
        logger.debug(f"Memory Tier Event: {type(event).__name__} - {event}")


class RedisTier:
    """
    Durable-local tier backed by Redis.

    Keys are ``{key_prefix}{fingerprint}``; values are serialized entries
    with a TTL. Clearing only ever touches keys under the prefix.
    """

    name = TierName.DURABLE_LOCAL

    def __init__(self, redis_client: "redis.Redis", key_prefix: str = "buryscope:", ttl_days: int = 30):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.ttl_seconds = int(ttl_days * 24 * 3600)

    def _key(self, fingerprint: str) -> str:
        return f"{self.key_prefix}{fingerprint}"

    def _fingerprint(self, redis_key) -> str:
        text = redis_key.decode("utf-8") if isinstance(redis_key, bytes) else redis_key
        return text[len(self.key_prefix):]

    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        try:
            data = await self.redis.get(self._key(fingerprint))
        except Exception as e:
            raise TierError(f"Redis read failed: {e}", self.name, fingerprint, e) from e

        if data is None:
            return None

        try:
            return deserialize_entry(data, self.name)
        except ValueError as e:
            raise TierError(f"Corrupted entry in Redis: {e}", self.name, fingerprint, e) from e

    async def set(self, fingerprint: str, entry: CacheEntry) -> None:
        payload = serialize_entry(entry)
        try:
            await self.redis.set(self._key(fingerprint), payload, ex=self.ttl_seconds)
        except Exception as e:
            raise TierError(f"Redis write failed: {e}", self.name, fingerprint, e) from e

    async def has(self, fingerprint: str) -> bool:
        try:
            return bool(await self.redis.exists(self._key(fingerprint)))
        except Exception as e:
            raise TierError(f"Redis exists failed: {e}", self.name, fingerprint, e) from e

    async def clear(self, scope: Optional[ClearScope] = None) -> int:
        removed = 0
        batch: List = []
        try:
            async for redis_key in self.redis.scan_iter(match=f"{self.key_prefix}*", count=SCAN_BATCH_SIZE):
                if scope is not None and not fingerprint_in_scope(self._fingerprint(redis_key), scope):
                    continue
                batch.append(redis_key)
                if len(batch) >= SCAN_BATCH_SIZE:
                    removed += await self.redis.delete(*batch)
                    batch = []
            if batch:
                removed += await self.redis.delete(*batch)
        except Exception as e:
            raise TierError(f"Redis clear failed: {e}", self.name, None, e) from e
        return removed


class BackendTier:
    """
    Authoritative tier served by the cache backend over HTTP.

    A 404 means the entry is absent; anything else unexpected is a tier
    failure.
    """

    name = TierName.BACKEND

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    def _entry_url(self, fingerprint: str) -> str:
        key = parse_fingerprint(fingerprint)
        return f"{self.base_url}/api/cache/raw-data/{key.tracking_point_id}/{key.date.isoformat()}"

    def _params(self, fingerprint: str) -> Dict[str, str]:
        return {"projectId": parse_fingerprint(fingerprint).project_id}

    async def _request(self, method: str, url: str, fingerprint: Optional[str] = None, **kwargs) -> httpx.Response:
        try:
            return await self.http_client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.HTTPError as e:
            raise TierError(f"Backend unreachable: {e}", self.name, fingerprint, e) from e

    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        response = await self._request(
            "GET", self._entry_url(fingerprint), fingerprint, params=self._params(fingerprint)
        )
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise TierError(f"Backend read returned http {response.status_code}", self.name, fingerprint)

        try:
            body = response.json()
            return entry_from_dict(body["data"], self.name)
        except (ValueError, KeyError, TypeError) as e:
            raise TierError(f"Malformed backend entry: {e}", self.name, fingerprint, e) from e

    async def set(self, fingerprint: str, entry: CacheEntry) -> None:
        response = await self._request(
            "POST",
            self._entry_url(fingerprint),
            fingerprint,
            params=self._params(fingerprint),
            json=entry_to_dict(entry),
        )
        if response.status_code not in (200, 201):
            raise TierError(f"Backend write returned http {response.status_code}", self.name, fingerprint)

    async def has(self, fingerprint: str) -> bool:
        """Existence via HEAD; the entry body is never transferred."""
        response = await self._request(
            "HEAD", self._entry_url(fingerprint), fingerprint, params=self._params(fingerprint)
        )
        if response.status_code == 404:
            return False
        if response.status_code != 200:
            raise TierError(f"Backend lookup returned http {response.status_code}", self.name, fingerprint)
        return True

    async def clear(self, scope: Optional[ClearScope] = None) -> int:
        response = await self._request(
            "POST", f"{self.base_url}/api/cache/clear", json=scope_to_payload(scope)
        )
        if response.status_code != 200:
            raise TierError(f"Backend clear returned http {response.status_code}", self.name)
        try:
            return int(response.json().get("deleted", 0))
        except (ValueError, AttributeError):
            return 0


class TieredCacheStore:
    """
    Read-through, write-through store over an ordered set of tiers.

    Reads go memory, durable-local, backend and stop at the first hit;
    the hit is promoted into the faster tiers that missed. Writes go to
    every tier, backend first. A failing tier is logged, reported as an
    event and skipped; it never fails the store call.
    """

    def __init__(
        self,
        tiers: Sequence[CacheTier],
        event_publisher: Optional[Callable] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        if not tiers:
            raise ValueError("TieredCacheStore needs at least one tier")
        self._tiers: Dict[TierName, CacheTier] = {tier.name: tier for tier in tiers}
        self.event_publisher = event_publisher or self._default_event_publisher
        self.clock = clock

    @property
    def tier_names(self) -> List[TierName]:
        return [name for name in TierName if name in self._tiers]

    def tier(self, name: TierName) -> Optional[CacheTier]:
        return self._tiers.get(name)

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """First hit in tier order, promoted into faster tiers; None on a full miss."""
        fingerprint = key.fingerprint()

        with tracer.start_as_current_span("cache.get") as span:
            span.set_attribute("fingerprint", fingerprint)

            for name in self.tier_names:
                try:
                    entry = await self._tiers[name].get(fingerprint)
                except Exception as e:
                    tier_reads.add(1, {"tier": name.value, "outcome": "error"})
                    await self._report_failure(name, "get", e, fingerprint)
                    continue

                if entry is None:
                    tier_reads.add(1, {"tier": name.value, "outcome": "miss"})
                    continue

                tier_reads.add(1, {"tier": name.value, "outcome": "hit"})
                span.set_attribute("hit_tier", name.value)
                await self._promote(fingerprint, entry, name)
                return entry

            span.set_attribute("hit_tier", "none")
            return None

    async def set(self, entry: CacheEntry) -> WriteOutcome:
        """
        Write-through to every tier.

        The entry is stamped with a fresh ``updated_at`` shared by all
        tiers so later reads can tell which copies came from the same write.
        """
        fingerprint = entry.key.fingerprint()
        stamped = replace(entry, updated_at=self.clock())

        written: List[TierName] = []
        failed: List[TierName] = []
        for name in write_order(self.tier_names):
            try:
                await self._tiers[name].set(fingerprint, stamped)
                written.append(name)
            except Exception as e:
                failed.append(name)
                await self._report_failure(name, "set", e, fingerprint)

        outcome = WriteOutcome(fingerprint=fingerprint, written=tuple(written), failed=tuple(failed))
        await self.event_publisher(CacheEntryWritten(
            event_id=str(uuid.uuid4()),
            timestamp=self.clock(),
            fingerprint=fingerprint,
            record_count=entry.record_count,
            written=outcome.written,
            failed=outcome.failed,
        ))
        return outcome

    async def has(self, key: CacheKey) -> bool:
        fingerprint = key.fingerprint()
        for name in self.tier_names:
            try:
                if await self._tiers[name].has(fingerprint):
                    return True
            except Exception as e:
                await self._report_failure(name, "has", e, fingerprint)
        return False

    async def clear(self, scope: Optional[ClearScope] = None) -> Dict[TierName, int]:
        """Remove matching entries from every tier; returns removed count per tier."""
        removed: Dict[TierName, int] = {}
        for name in self.tier_names:
            try:
                removed[name] = await self._tiers[name].clear(scope)
            except Exception as e:
                await self._report_failure(name, "clear", e)

        logger.info(
            f"Cleared cache scope {scope_to_payload(scope) or 'ALL'}: "
            + ", ".join(f"{name.value}={count}" for name, count in removed.items())
        )
        await self.event_publisher(CacheScopeCleared(
            event_id=str(uuid.uuid4()),
            timestamp=self.clock(),
            removed=removed,
            scope=scope_to_payload(scope) or None,
        ))
        return removed

    async def peek(self, key: CacheKey) -> TierSnapshot:
        """
        Read every tier independently, without promotion.

        Used by diagnostics, which must see each tier as it is and must
        tell a miss apart from an unreadable tier.
        """
        fingerprint = key.fingerprint()
        reads: Dict[TierName, TierRead] = {}
        for name in self.tier_names:
            try:
                entry = await self._tiers[name].get(fingerprint)
            except Exception as e:
                logger.warning(f"Tier {name.value} unreadable for {fingerprint}: {e}")
                reads[name] = TierRead(tier=name, status=ReadStatus.ERROR, error=str(e))
                continue
            if entry is None:
                reads[name] = TierRead(tier=name, status=ReadStatus.MISS)
            else:
                reads[name] = TierRead(tier=name, status=ReadStatus.HIT, entry=entry)
        return TierSnapshot(key=key, reads=reads)

    async def _promote(self, fingerprint: str, entry: CacheEntry, hit_tier: TierName) -> None:
        targets = promotion_targets(hit_tier, self.tier_names)
        if not targets:
            return

        promoted: List[TierName] = []
        for name in targets:
            try:
                await self._tiers[name].set(fingerprint, entry)
                promoted.append(name)
            except Exception as e:
                await self._report_failure(name, "promote", e, fingerprint)

        if promoted:
            await self.event_publisher(CacheEntryPromoted(
                event_id=str(uuid.uuid4()),
                timestamp=self.clock(),
                fingerprint=fingerprint,
                hit_tier=hit_tier,
                promoted_to=tuple(promoted),
            ))

    async def _report_failure(
        self,
        tier: TierName,
        operation: str,
        error: Exception,
        fingerprint: Optional[str] = None
    ) -> None:
        logger.warning(
            f"Cache tier {tier.value} failed on {operation}: {error}",
            extra={"tier": tier.value, "operation": operation, "fingerprint": fingerprint},
        )
        await self.event_publisher(CacheTierFailure(
            event_id=str(uuid.uuid4()),
            timestamp=self.clock(),
            tier=tier,
            operation=operation,
            error=str(error),
            fingerprint=fingerprint,
        ))

    async def _default_event_publisher(self, event) -> None:
        """Default event publisher that logs events."""
        logger.info(f"Cache Event: {type(event).__name__} - {event}")
