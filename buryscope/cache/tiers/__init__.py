"""
Tiered Cache Store

Memory, durable-local and backend tiers behind a single read-through,
write-through store keyed by fingerprint.
"""

from .contracts import (
    CacheEntry,
    CacheKey,
    CacheTier,
    ClearScope,
    DataQuality,
    ReadStatus,
    TierError,
    TierName,
    TierRead,
    TierSnapshot,
    WriteOutcome,
)
from .core import parse_fingerprint
from .shell import BackendTier, MemoryTier, RedisTier, TieredCacheStore

__all__ = [
    "CacheEntry",
    "CacheKey",
    "CacheTier",
    "ClearScope",
    "DataQuality",
    "ReadStatus",
    "TierError",
    "TierName",
    "TierRead",
    "TierSnapshot",
    "WriteOutcome",
    "parse_fingerprint",
    "BackendTier",
    "MemoryTier",
    "RedisTier",
    "TieredCacheStore",
]
