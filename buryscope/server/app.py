"""
Backend Store API

FastAPI application serving the authoritative cache tier and the
server-side preload.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from fastapi import Body, FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..cache.tiers.contracts import CacheKey, TierName
from ..cache.tiers.core import entry_from_dict, entry_to_dict, scope_from_payload
from ..common.core import utc_now
from ..preload.core import summarize_report
from ..preload.shell import PreloadOrchestrator
from .store import SqlCacheStore

logger = logging.getLogger(__name__)


def create_app(
    store: SqlCacheStore,
    orchestrator: Optional[PreloadOrchestrator] = None,
    default_project_id: str = "event1021",
    closers: Sequence[Callable[[], Awaitable[None]]] = (),
    allowed_origins: Sequence[str] = ("http://localhost:3000",)
) -> FastAPI:
    """Build the backend app around a store and an optional server-side orchestrator."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.create_schema()
        logger.info("Backend store API started")
        yield
        task = app.state.preload_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        for close in closers:
            await close()
        await store.aclose()
        logger.info("Backend store API stopped")

    app = FastAPI(
        title="Buryscope Cache Backend",
        description="Authoritative cache tier for bury-point analytics data",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.orchestrator = orchestrator
    app.state.preload_task = None

    def cache_key(tracking_point_id: int, day: date, project_id: Optional[str]) -> CacheKey:
        return CacheKey(date=day, tracking_point_id=tracking_point_id, project_id=project_id or default_project_id)

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "timestamp": utc_now().isoformat()}

    @app.head("/api/cache/raw-data/{tracking_point_id}/{day}")
    async def has_raw_data(tracking_point_id: int, day: date, projectId: Optional[str] = Query(default=None)):
        key = cache_key(tracking_point_id, day, projectId)
        if not await store.exists(key):
            return Response(status_code=404)
        return Response(status_code=200)

    @app.get("/api/cache/raw-data/{tracking_point_id}/{day}")
    async def get_raw_data(tracking_point_id: int, day: date, projectId: Optional[str] = Query(default=None)):
        key = cache_key(tracking_point_id, day, projectId)
        try:
            entry = await store.get(key)
        except ValueError as e:
            logger.error(f"Stored entry {key.fingerprint()} is corrupted: {e}")
            raise HTTPException(status_code=500, detail="Stored entry is corrupted")

        if entry is None:
            raise HTTPException(status_code=404, detail=f"No cached data for {key.fingerprint()}")
        return {"success": True, "data": entry_to_dict(entry)}

    @app.post("/api/cache/raw-data/{tracking_point_id}/{day}")
    async def put_raw_data(
        tracking_point_id: int,
        day: date,
        payload: Dict[str, Any] = Body(...),
        projectId: Optional[str] = Query(default=None)
    ):
        key = cache_key(tracking_point_id, day, projectId or payload.get("projectId"))
        try:
            entry = entry_from_dict({**payload, "projectId": key.project_id}, TierName.BACKEND)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if entry.key != key:
            raise HTTPException(
                status_code=400,
                detail=f"Entry {entry.key.fingerprint()} does not match path {key.fingerprint()}",
            )

        stored = await store.upsert(entry)
        return {"success": True, "data": {"fingerprint": key.fingerprint(), "updatedAt": stored.updated_at.isoformat()}}

    @app.post("/api/cache/clear")
    async def clear_cache(payload: Optional[Dict[str, Any]] = Body(default=None)):
        try:
            scope = scope_from_payload(payload)
        except (ValueError, TypeError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid clear scope: {e}")
        deleted = await store.delete(scope)
        return {"success": True, "deleted": deleted}

    @app.get("/api/preload/status")
    async def preload_status():
        if orchestrator is None:
            raise HTTPException(status_code=503, detail="Server-side preload is not configured")

        status = orchestrator.get_status()
        task = app.state.preload_task
        return {
            "success": True,
            "data": {
                "isRunning": status.is_preloading,
                "isTaskRunning": task is not None and not task.done(),
                "progress": {"current": status.progress.current, "total": status.progress.total},
                "lastRunAt": status.last_preload_date.isoformat() if status.last_preload_date else None,
                "lastSummary": summarize_report(status.last_report) if status.last_report else None,
            },
            "timestamp": utc_now().isoformat(),
        }

    @app.post("/api/preload/trigger")
    async def trigger_preload(payload: Optional[Dict[str, Any]] = Body(default=None)):
        if orchestrator is None:
            raise HTTPException(status_code=503, detail="Server-side preload is not configured")

        task = app.state.preload_task
        if orchestrator.get_status().is_preloading or (task is not None and not task.done()):
            raise HTTPException(status_code=409, detail="Preload already running")

        ids = (payload or {}).get("trackingPointIds")
        tracking_point_ids = [int(i) for i in ids] if ids else None
        app.state.preload_task = asyncio.create_task(
            _run_preload(orchestrator, tracking_point_ids),
            name="buryscope_server_preload",
        )
        return JSONResponse(status_code=202, content={"success": True, "message": "Preload started"})

    return app


async def _run_preload(orchestrator: PreloadOrchestrator, tracking_point_ids) -> None:
    try:
        report = await orchestrator.trigger_manual_preload(tracking_point_ids)
    except asyncio.CancelledError:
        logger.info("Server-side preload cancelled")
        raise
    except Exception as e:
        logger.error(f"Server-side preload failed: {e}", exc_info=True)
        return
    logger.info(f"Server-side preload finished: {summarize_report(report)}")
