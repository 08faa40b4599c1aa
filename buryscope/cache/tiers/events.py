"""
Tiered Cache Store - Domain Events

Events emitted by the tiered store for monitoring and diagnostics.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .contracts import TierName


@dataclass(frozen=True)
class CacheEntryPromoted:
    """
    Event emitted when a hit in a slower tier is copied into faster tiers.
    """

    event_id: str
    timestamp: datetime
    fingerprint: str
    hit_tier: TierName
    promoted_to: Tuple[TierName, ...]


@dataclass(frozen=True)
class CacheEntryWritten:
    """Event emitted after a write-through, including partial ones."""

    event_id: str
    timestamp: datetime
    fingerprint: str
    record_count: int
    written: Tuple[TierName, ...]
    failed: Tuple[TierName, ...] = ()


@dataclass(frozen=True)
class CacheTierFailure:
    """
    Event emitted when a tier cannot serve a read or accept a write.

    Tier failures never fail the store call; they are recorded here and
    the store moves on to the next tier.
    """

    event_id: str
    timestamp: datetime
    tier: TierName
    operation: str
    error: str
    fingerprint: Optional[str] = None


@dataclass(frozen=True)
class CacheEntryEvicted:
    """Event emitted when the memory tier drops its least recently used entry."""

    event_id: str
    timestamp: datetime
    fingerprint: str
    max_entries: int


@dataclass(frozen=True)
class CacheScopeCleared:
    """Event emitted after a scoped clear across tiers."""

    event_id: str
    timestamp: datetime
    removed: Dict[TierName, int]
    scope: Optional[Dict[str, Any]] = None
