"""
Tiered Cache Store - Core Functions

Pure functions for fingerprints, entry serialization, quality tagging and
scope matching. Every tier serializes through these so writer and reader
never drift apart.
"""

import json
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ...common.core import ensure_utc
from .contracts import (
    FINGERPRINT_PREFIX,
    TIER_READ_ORDER,
    CacheEntry,
    CacheKey,
    ClearScope,
    DataQuality,
    TierName,
)


def parse_fingerprint(fingerprint: str) -> CacheKey:
    """
    Inverse of ``CacheKey.fingerprint``.

    Raises:
        ValueError: if the fingerprint is malformed

    MUST be deterministic.
    """
    parts = fingerprint.split(":")
    if len(parts) != 4 or parts[0] != FINGERPRINT_PREFIX:
        raise ValueError(f"Malformed fingerprint: {fingerprint!r}")

    _, project_id, point_text, day_text = parts
    if not project_id:
        raise ValueError(f"Fingerprint has empty project id: {fingerprint!r}")
    try:
        tracking_point_id = int(point_text)
        day = date.fromisoformat(day_text)
    except ValueError as e:
        raise ValueError(f"Malformed fingerprint: {fingerprint!r}") from e

    return CacheKey(date=day, tracking_point_id=tracking_point_id, project_id=project_id)


def classify_quality(records: Sequence[Dict[str, Any]], page_cap_reached: bool) -> DataQuality:
    """
    Quality tag for a freshly fetched day.

    MUST be deterministic.
    """
    if page_cap_reached:
        return DataQuality.PARTIAL
    if not records:
        return DataQuality.NO_DATA
    return DataQuality.GOOD


def build_entry(
    key: CacheKey,
    records: Iterable[Dict[str, Any]],
    fetched_at: datetime,
    tier: TierName,
    page_cap_reached: bool = False
) -> CacheEntry:
    record_tuple = tuple(records)
    return CacheEntry(
        key=key,
        records=record_tuple,
        fetched_at=ensure_utc(fetched_at),
        source_tier=tier,
        quality=classify_quality(record_tuple, page_cap_reached),
    )


def entry_to_dict(entry: CacheEntry) -> Dict[str, Any]:
    """JSON-ready representation shared by the durable and backend tiers."""
    return {
        "fingerprint": entry.key.fingerprint(),
        "projectId": entry.key.project_id,
        "trackingPointId": entry.key.tracking_point_id,
        "date": entry.key.date.isoformat(),
        "records": list(entry.records),
        "recordCount": entry.record_count,
        "fetchedAt": entry.fetched_at.isoformat(),
        "quality": entry.quality.value,
        "updatedAt": entry.updated_at.isoformat() if entry.updated_at else None,
    }


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return ensure_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))


def entry_from_dict(payload: Dict[str, Any], tier: TierName) -> CacheEntry:
    """
    Rebuild an entry read from ``tier``.

    Raises:
        ValueError: on missing fields or a record count that does not
            match the records (a torn or corrupted value)
    """
    try:
        key = CacheKey(
            date=date.fromisoformat(payload["date"]),
            tracking_point_id=int(payload["trackingPointId"]),
            project_id=str(payload["projectId"]),
        )
        records = tuple(payload.get("records") or ())
        fetched_at = _parse_timestamp(payload["fetchedAt"])
        quality = DataQuality(payload["quality"])
    except (KeyError, TypeError) as e:
        raise ValueError(f"Incomplete cache entry payload: {e}") from e

    declared = payload.get("recordCount")
    if declared is not None and int(declared) != len(records):
        raise ValueError(
            f"Record count mismatch in stored entry {key.fingerprint()}: "
            f"declared {declared}, found {len(records)}"
        )

    return CacheEntry(
        key=key,
        records=records,
        fetched_at=fetched_at,
        source_tier=tier,
        quality=quality,
        updated_at=_parse_timestamp(payload.get("updatedAt")),
    )


def serialize_entry(entry: CacheEntry) -> str:
    """
    Serialize entry for key/value storage.

    MUST be deterministic.
    """
    try:
        return json.dumps(entry_to_dict(entry), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Cannot serialize cache entry {entry.key.fingerprint()}: {e}")


def deserialize_entry(data: Union[str, bytes], tier: TierName) -> CacheEntry:
    try:
        text = data.decode("utf-8") if isinstance(data, bytes) else data
        payload = json.loads(text)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"Cannot deserialize cache entry: {e}")
    if not isinstance(payload, dict):
        raise ValueError("Cache entry payload is not an object")
    return entry_from_dict(payload, tier)


def scope_matches(key: CacheKey, scope: Optional[ClearScope]) -> bool:
    """
    Whether a key falls inside a clear scope.

    MUST be deterministic.
    """
    if scope is None:
        return True
    if scope.project_id is not None and key.project_id != scope.project_id:
        return False
    if scope.start_date is not None and key.date < scope.start_date:
        return False
    if scope.end_date is not None and key.date > scope.end_date:
        return False
    if scope.tracking_point_ids is not None and key.tracking_point_id not in scope.tracking_point_ids:
        return False
    return True


def fingerprint_in_scope(fingerprint: str, scope: Optional[ClearScope]) -> bool:
    """Scope match on a raw fingerprint; foreign keys never match."""
    try:
        key = parse_fingerprint(fingerprint)
    except ValueError:
        return False
    return scope_matches(key, scope)


def scope_to_payload(scope: Optional[ClearScope]) -> Dict[str, Any]:
    if scope is None:
        return {}
    payload: Dict[str, Any] = {}
    if scope.start_date is not None:
        payload["startDate"] = scope.start_date.isoformat()
    if scope.end_date is not None:
        payload["endDate"] = scope.end_date.isoformat()
    if scope.tracking_point_ids is not None:
        payload["trackingPointIds"] = sorted(scope.tracking_point_ids)
    if scope.project_id is not None:
        payload["projectId"] = scope.project_id
    return payload


def scope_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[ClearScope]:
    if not payload:
        return None
    ids = payload.get("trackingPointIds")
    return ClearScope(
        start_date=date.fromisoformat(payload["startDate"]) if payload.get("startDate") else None,
        end_date=date.fromisoformat(payload["endDate"]) if payload.get("endDate") else None,
        tracking_point_ids=frozenset(int(i) for i in ids) if ids is not None else None,
        project_id=payload.get("projectId"),
    )


def promotion_targets(hit_tier: TierName, configured: Sequence[TierName]) -> List[TierName]:
    """Configured tiers faster than the tier that produced a hit."""
    order = [tier for tier in TIER_READ_ORDER if tier in configured]
    if hit_tier not in order:
        return []
    return order[:order.index(hit_tier)]


def write_order(configured: Sequence[TierName]) -> Tuple[TierName, ...]:
    """
    Tiers in write-through order: authoritative first.

    A write interrupted half-way then leaves faster tiers behind the
    backend, never ahead of it.
    """
    return tuple(tier for tier in reversed(TIER_READ_ORDER) if tier in configured)
