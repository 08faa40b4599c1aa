"""
Tests for the Backend Store API
"""

import asyncio
import time
from datetime import date, datetime, timezone

from fastapi.testclient import TestClient

from buryscope.cache.tiers.contracts import CacheKey, TierName
from buryscope.cache.tiers.core import build_entry, entry_to_dict
from buryscope.cache.tiers.shell import TieredCacheStore
from buryscope.config.contracts import Settings
from buryscope.preload.shell import PreloadOrchestrator
from buryscope.server.app import create_app
from buryscope.server.store import SqlCacheStore, StoreTier
from buryscope.source.contracts import SearchPage


NOW = datetime(2024, 3, 7, 12, 0, tzinfo=timezone.utc)


def entry_payload(point=42, day=date(2024, 3, 5), count=2, updated_at=None):
    key = CacheKey(date=day, tracking_point_id=point, project_id="event1021")
    records = [{"id": i, "createdAt": f"{day.isoformat()} 10:00:00"} for i in range(count)]
    payload = entry_to_dict(build_entry(key, records, NOW, TierName.MEMORY))
    payload["updatedAt"] = updated_at
    return payload


class DaySource:
    """Three records for every requested day."""

    def __init__(self, delay=0.0):
        self.delay = delay

    async def search_page(self, request, timeout=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        records = [
            {"id": f"{request.day}-{i}", "createdAt": f"{request.day.isoformat()} 09:00:00"}
            for i in range(3)
        ] if request.page == 1 else []
        return SearchPage(request=request, records=records, total=3)


def build_client(tmp_path, source=None):
    settings = Settings(tracking_point_ids=(42,), preload_window_days=2, page_size=10, bulk_fetch_timeout_seconds=10.0)
    sql_store = SqlCacheStore(f"sqlite+aiosqlite:///{tmp_path / 'backend.db'}")
    orchestrator = None
    if source is not None:
        orchestrator = PreloadOrchestrator(TieredCacheStore([StoreTier(sql_store)]), source, settings)
    return TestClient(create_app(sql_store, orchestrator=orchestrator))


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestCacheEndpoints:
    """Test the raw-data and clear endpoints."""

    def test_health(self, tmp_path):
        with build_client(tmp_path) as client:
            response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_missing_entry_is_404(self, tmp_path):
        with build_client(tmp_path) as client:
            response = client.get("/api/cache/raw-data/42/2024-03-05", params={"projectId": "event1021"})

        assert response.status_code == 404

    def test_write_then_read_stamps_version(self, tmp_path):
        with build_client(tmp_path) as client:
            written = client.post(
                "/api/cache/raw-data/42/2024-03-05",
                params={"projectId": "event1021"},
                json=entry_payload(),
            )
            read = client.get("/api/cache/raw-data/42/2024-03-05", params={"projectId": "event1021"})

        assert written.status_code == 200
        assert written.json()["data"]["updatedAt"] is not None
        body = read.json()
        assert body["success"] is True
        assert body["data"]["recordCount"] == 2
        assert body["data"]["updatedAt"] == written.json()["data"]["updatedAt"]

    def test_write_keeps_caller_version(self, tmp_path):
        version = "2024-03-07T11:00:00+00:00"
        with build_client(tmp_path) as client:
            client.post("/api/cache/raw-data/42/2024-03-05", json=entry_payload(updated_at=version))
            read = client.get("/api/cache/raw-data/42/2024-03-05")

        assert read.json()["data"]["updatedAt"] == version

    def test_head_reports_existence(self, tmp_path):
        with build_client(tmp_path) as client:
            client.post("/api/cache/raw-data/42/2024-03-05", json=entry_payload())
            present = client.head("/api/cache/raw-data/42/2024-03-05")
            absent = client.head("/api/cache/raw-data/42/2024-03-06")

        assert present.status_code == 200
        assert present.content == b""
        assert absent.status_code == 404

    def test_torn_payload_is_rejected(self, tmp_path):
        payload = entry_payload()
        payload["recordCount"] = 5

        with build_client(tmp_path) as client:
            response = client.post("/api/cache/raw-data/42/2024-03-05", json=payload)
            read = client.get("/api/cache/raw-data/42/2024-03-05")

        assert response.status_code == 400
        assert read.status_code == 404

    def test_path_and_payload_must_agree(self, tmp_path):
        with build_client(tmp_path) as client:
            response = client.post("/api/cache/raw-data/7/2024-03-05", json=entry_payload(point=42))

        assert response.status_code == 400

    def test_scoped_clear(self, tmp_path):
        with build_client(tmp_path) as client:
            for point in (1, 2):
                for day in ("2024-03-01", "2024-03-02"):
                    client.post(
                        f"/api/cache/raw-data/{point}/{day}",
                        json=entry_payload(point=point, day=date.fromisoformat(day)),
                    )

            response = client.post("/api/cache/clear", json={"trackingPointIds": [1], "startDate": "2024-03-02"})
            kept = client.get("/api/cache/raw-data/1/2024-03-01")
            removed = client.get("/api/cache/raw-data/1/2024-03-02")
            other = client.get("/api/cache/raw-data/2/2024-03-02")

        assert response.json()["deleted"] == 1
        assert kept.status_code == 200
        assert removed.status_code == 404
        assert other.status_code == 200


class TestPreloadEndpoints:
    """Test server-side preload status and trigger."""

    def test_preload_not_configured(self, tmp_path):
        with build_client(tmp_path) as client:
            assert client.get("/api/preload/status").status_code == 503

    def test_trigger_runs_preload_into_store(self, tmp_path):
        with build_client(tmp_path, source=DaySource()) as client:
            triggered = client.post("/api/preload/trigger")
            finished = wait_until(lambda: not client.get("/api/preload/status").json()["data"]["isTaskRunning"])
            status = client.get("/api/preload/status").json()
            today = datetime.now(timezone.utc).date().isoformat()
            stored = client.get(f"/api/cache/raw-data/42/{today}")

        assert triggered.status_code == 202
        assert finished
        assert status["success"] is True
        assert status["data"]["isRunning"] is False
        assert status["data"]["lastSummary"] == "2 days requested: 2 fetched, 0 from cache, 0 failed"
        assert stored.status_code == 200
        assert stored.json()["data"]["recordCount"] == 3

    def test_second_trigger_while_running_is_409(self, tmp_path):
        with build_client(tmp_path, source=DaySource(delay=2.0)) as client:
            first = client.post("/api/preload/trigger")
            second = client.post("/api/preload/trigger")

        assert first.status_code == 202
        assert second.status_code == 409
