"""
Tiered Cache Store - Type Definitions and Contracts

Defines the cache key, cache entry and tier protocol shared by the memory,
durable-local and backend tiers.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Protocol, Tuple

from ...common.contracts import BuryscopeError


FINGERPRINT_PREFIX = "raw"


class TierName(Enum):
    """Storage tiers, fastest first."""
    MEMORY = "memory"
    DURABLE_LOCAL = "durable_local"
    BACKEND = "backend"


TIER_READ_ORDER: Tuple[TierName, ...] = (
    TierName.MEMORY,
    TierName.DURABLE_LOCAL,
    TierName.BACKEND,
)


class DataQuality(Enum):
    """Quality tag of a cached day."""
    GOOD = "good"
    NO_DATA = "no_data"    # cached empty result, not a miss
    PARTIAL = "partial"    # page cap reached before end of data


AUTHORITATIVE_QUALITIES = frozenset({DataQuality.GOOD, DataQuality.NO_DATA})


@dataclass(frozen=True)
class CacheKey:
    """One day of raw records for one tracking point of one project."""

    date: date
    tracking_point_id: int
    project_id: str

    def fingerprint(self) -> str:
        """Deterministic lookup key used by every tier."""
        return f"{FINGERPRINT_PREFIX}:{self.project_id}:{self.tracking_point_id}:{self.date.isoformat()}"

    def __str__(self) -> str:
        return self.fingerprint()


@dataclass(frozen=True)
class CacheEntry:
    """
    Cached raw records for one key plus metadata.

    ``updated_at`` is the version stamp given by the last write-through;
    every tier written by the same write carries the same stamp.
    """

    key: CacheKey
    records: Tuple[Dict[str, Any], ...]
    fetched_at: datetime
    source_tier: TierName
    quality: DataQuality
    updated_at: Optional[datetime] = None

    @property
    def record_count(self) -> int:
        return len(self.records)

    @property
    def is_authoritative(self) -> bool:
        return self.quality in AUTHORITATIVE_QUALITIES

    def with_tier(self, tier: TierName) -> "CacheEntry":
        return replace(self, source_tier=tier)


class ReadStatus(Enum):
    HIT = "hit"
    MISS = "miss"
    ERROR = "error"


@dataclass(frozen=True)
class TierRead:
    """Outcome of reading one fingerprint from one tier."""

    tier: TierName
    status: ReadStatus
    entry: Optional[CacheEntry] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TierSnapshot:
    """Independent reads of one fingerprint from every configured tier."""

    key: CacheKey
    reads: Dict[TierName, TierRead] = field(default_factory=dict)

    def entry(self, tier: TierName) -> Optional[CacheEntry]:
        read = self.reads.get(tier)
        return read.entry if read and read.status == ReadStatus.HIT else None

    def errored(self, tier: TierName) -> bool:
        read = self.reads.get(tier)
        return read is not None and read.status == ReadStatus.ERROR

    @property
    def has_errors(self) -> bool:
        return any(read.status == ReadStatus.ERROR for read in self.reads.values())


@dataclass(frozen=True)
class ClearScope:
    """
    Selection of keys for a scoped clear.

    ``None`` on a field means "any". Dates are inclusive.
    """

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    tracking_point_ids: Optional[FrozenSet[int]] = None
    project_id: Optional[str] = None


@dataclass(frozen=True)
class WriteOutcome:
    """Result of a write-through across tiers."""

    fingerprint: str
    written: Tuple[TierName, ...]
    failed: Tuple[TierName, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.failed


class CacheTier(Protocol):
    """Uniform interface implemented by every storage tier."""

    name: TierName

    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        """Entry for the fingerprint, or None when absent."""
        ...

    async def set(self, fingerprint: str, entry: CacheEntry) -> None:
        """Fully replace the entry for the fingerprint."""
        ...

    async def has(self, fingerprint: str) -> bool:
        ...

    async def clear(self, scope: Optional[ClearScope] = None) -> int:
        """Remove matching entries (all when scope is None); returns count removed."""
        ...


class TierError(BuryscopeError):
    """Raised by a tier when its storage cannot be read or written."""

    def __init__(
        self,
        message: str,
        tier: TierName,
        fingerprint: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        self.tier = tier
        self.fingerprint = fingerprint
        self.original_error = original_error
        super().__init__(message)
