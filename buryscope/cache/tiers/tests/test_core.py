"""
Tests for Tiered Cache Store Core Functions

Fingerprints, serialization, quality tagging and scope matching.
"""

import json
from datetime import date, datetime, timezone

import pytest

from buryscope.cache.tiers.contracts import (
    CacheKey,
    ClearScope,
    DataQuality,
    TierName,
)
from buryscope.cache.tiers.core import (
    build_entry,
    classify_quality,
    deserialize_entry,
    entry_to_dict,
    fingerprint_in_scope,
    parse_fingerprint,
    promotion_targets,
    scope_from_payload,
    scope_matches,
    scope_to_payload,
    serialize_entry,
    write_order,
)


FETCHED = datetime(2024, 3, 5, 8, 30, tzinfo=timezone.utc)


def make_key(day=date(2024, 3, 5), point=42, project="event1021"):
    return CacheKey(date=day, tracking_point_id=point, project_id=project)


class TestFingerprint:
    """Test fingerprint formatting and parsing."""

    def test_fingerprint_format(self):
        assert make_key().fingerprint() == "raw:event1021:42:2024-03-05"

    def test_fingerprint_is_stable_across_instances(self):
        assert make_key().fingerprint() == make_key().fingerprint()

    def test_distinct_keys_have_distinct_fingerprints(self):
        fingerprints = {
            make_key().fingerprint(),
            make_key(point=43).fingerprint(),
            make_key(day=date(2024, 3, 6)).fingerprint(),
            make_key(project="other").fingerprint(),
        }
        assert len(fingerprints) == 4

    def test_parse_is_inverse(self):
        key = make_key(point=7, day=date(2023, 12, 31))
        assert parse_fingerprint(key.fingerprint()) == key

    @pytest.mark.parametrize("bad", [
        "",
        "raw:event1021:42",
        "cooked:event1021:42:2024-03-05",
        "raw:event1021:abc:2024-03-05",
        "raw:event1021:42:2024-13-05",
        "raw::42:2024-03-05",
    ])
    def test_parse_rejects_malformed(self, bad):
        with pytest.raises(ValueError):
            parse_fingerprint(bad)


class TestQuality:
    """Test quality tagging of fetched days."""

    def test_records_are_good(self):
        assert classify_quality([{"id": 1}], page_cap_reached=False) == DataQuality.GOOD

    def test_empty_day_is_no_data(self):
        assert classify_quality([], page_cap_reached=False) == DataQuality.NO_DATA

    def test_page_cap_marks_partial(self):
        assert classify_quality([{"id": 1}], page_cap_reached=True) == DataQuality.PARTIAL

    def test_build_entry_counts_records(self):
        entry = build_entry(make_key(), [{"id": 1}, {"id": 2}], FETCHED, TierName.MEMORY)
        assert entry.record_count == 2
        assert entry.quality == DataQuality.GOOD
        assert entry.is_authoritative

    def test_build_entry_normalizes_naive_timestamp(self):
        entry = build_entry(make_key(), [], datetime(2024, 3, 5, 8, 30), TierName.MEMORY)
        assert entry.fetched_at.tzinfo is not None
        assert entry.quality == DataQuality.NO_DATA

    def test_partial_entry_is_not_authoritative(self):
        entry = build_entry(make_key(), [{"id": 1}], FETCHED, TierName.MEMORY, page_cap_reached=True)
        assert not entry.is_authoritative


class TestSerialization:
    """Test entry serialization shared by durable and backend tiers."""

    def test_serialized_entry_reads_back_with_reading_tier(self):
        entry = build_entry(make_key(), [{"id": 1, "createdAt": "2024-03-05 10:00:00"}], FETCHED, TierName.MEMORY)

        restored = deserialize_entry(serialize_entry(entry), TierName.DURABLE_LOCAL)

        assert restored.key == entry.key
        assert restored.records == entry.records
        assert restored.fetched_at == entry.fetched_at
        assert restored.source_tier == TierName.DURABLE_LOCAL

    def test_serialization_is_deterministic(self):
        entry = build_entry(make_key(), [{"b": 2, "a": 1}], FETCHED, TierName.MEMORY)
        assert serialize_entry(entry) == serialize_entry(entry)

    def test_bytes_are_accepted(self):
        entry = build_entry(make_key(), [], FETCHED, TierName.MEMORY)
        restored = deserialize_entry(serialize_entry(entry).encode("utf-8"), TierName.DURABLE_LOCAL)
        assert restored.quality == DataQuality.NO_DATA

    def test_torn_record_count_is_rejected(self):
        payload = entry_to_dict(build_entry(make_key(), [{"id": 1}], FETCHED, TierName.MEMORY))
        payload["recordCount"] = 5

        with pytest.raises(ValueError, match="Record count mismatch"):
            deserialize_entry(json.dumps(payload), TierName.DURABLE_LOCAL)

    def test_garbage_is_rejected(self):
        with pytest.raises(ValueError):
            deserialize_entry("{not json", TierName.DURABLE_LOCAL)
        with pytest.raises(ValueError):
            deserialize_entry("[1, 2]", TierName.DURABLE_LOCAL)

    def test_missing_fields_are_rejected(self):
        with pytest.raises(ValueError, match="Incomplete"):
            deserialize_entry(json.dumps({"date": "2024-03-05"}), TierName.BACKEND)


class TestScope:
    """Test clear scope matching."""

    def test_none_scope_matches_everything(self):
        assert scope_matches(make_key(), None)

    def test_date_bounds_are_inclusive(self):
        scope = ClearScope(start_date=date(2024, 3, 5), end_date=date(2024, 3, 6))
        assert scope_matches(make_key(day=date(2024, 3, 5)), scope)
        assert scope_matches(make_key(day=date(2024, 3, 6)), scope)
        assert not scope_matches(make_key(day=date(2024, 3, 4)), scope)
        assert not scope_matches(make_key(day=date(2024, 3, 7)), scope)

    def test_point_and_project_filters(self):
        scope = ClearScope(tracking_point_ids=frozenset({42}), project_id="event1021")
        assert scope_matches(make_key(), scope)
        assert not scope_matches(make_key(point=43), scope)
        assert not scope_matches(make_key(project="other"), scope)

    def test_foreign_fingerprint_never_matches(self):
        assert not fingerprint_in_scope("session:abc", ClearScope())

    def test_payload_conversion(self):
        scope = ClearScope(
            start_date=date(2024, 3, 1),
            end_date=date(2024, 3, 7),
            tracking_point_ids=frozenset({3, 1}),
            project_id="event1021",
        )
        payload = scope_to_payload(scope)

        assert payload["trackingPointIds"] == [1, 3]
        assert scope_from_payload(payload) == scope
        assert scope_to_payload(None) == {}
        assert scope_from_payload({}) is None


class TestTierOrdering:
    """Test promotion and write ordering."""

    def test_backend_hit_promotes_into_faster_tiers(self):
        configured = [TierName.MEMORY, TierName.DURABLE_LOCAL, TierName.BACKEND]
        assert promotion_targets(TierName.BACKEND, configured) == [TierName.MEMORY, TierName.DURABLE_LOCAL]
        assert promotion_targets(TierName.MEMORY, configured) == []

    def test_promotion_skips_unconfigured_tiers(self):
        assert promotion_targets(TierName.BACKEND, [TierName.MEMORY, TierName.BACKEND]) == [TierName.MEMORY]

    def test_writes_go_backend_first(self):
        configured = [TierName.MEMORY, TierName.DURABLE_LOCAL, TierName.BACKEND]
        assert write_order(configured) == (TierName.BACKEND, TierName.DURABLE_LOCAL, TierName.MEMORY)
