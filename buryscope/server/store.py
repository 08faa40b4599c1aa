"""
Backend Store - SQL persistence for the authoritative cache tier

Rows live in ``raw_data_cache`` keyed by (project_id, tracking_point_id,
date). Each write is a single-statement upsert in its own transaction, so
a reader sees either the old entry or the new one, never a mix.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from ..cache.tiers.contracts import CacheEntry, CacheKey, ClearScope, TierError, TierName
from ..cache.tiers.core import deserialize_entry, parse_fingerprint, serialize_entry
from ..common.core import utc_now

logger = logging.getLogger(__name__)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS raw_data_cache (
        project_id VARCHAR(64) NOT NULL,
        tracking_point_id INTEGER NOT NULL,
        date VARCHAR(10) NOT NULL,
        payload TEXT NOT NULL,
        updated_at VARCHAR(40) NOT NULL,
        PRIMARY KEY (project_id, tracking_point_id, date)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_raw_data_cache_date ON raw_data_cache (date)",
)


class SqlCacheStore:
    """Async SQL store for cache entries."""

    def __init__(
        self,
        database_url: str,
        engine: Optional[AsyncEngine] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.engine = engine or create_async_engine(database_url)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        self.clock = clock

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            for statement in SCHEMA:
                await conn.execute(text(statement))
        logger.info("raw_data_cache schema ready")

    async def aclose(self) -> None:
        await self.engine.dispose()

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        query = text("""
            SELECT payload FROM raw_data_cache
            WHERE project_id = :project_id
              AND tracking_point_id = :tracking_point_id
              AND date = :date
        """)
        async with self.session_factory() as session:
            result = await session.execute(query, self._key_params(key))
            payload = result.scalar_one_or_none()

        if payload is None:
            return None
        return deserialize_entry(payload, TierName.BACKEND)

    async def exists(self, key: CacheKey) -> bool:
        query = text("""
            SELECT 1 FROM raw_data_cache
            WHERE project_id = :project_id
              AND tracking_point_id = :tracking_point_id
              AND date = :date
            LIMIT 1
        """)
        async with self.session_factory() as session:
            result = await session.execute(query, self._key_params(key))
            return result.first() is not None

    async def upsert(self, entry: CacheEntry) -> CacheEntry:
        """Replace the stored entry; stamps ``updated_at`` when the caller did not."""
        if entry.updated_at is None:
            entry = replace(entry, updated_at=self.clock())
        entry = entry.with_tier(TierName.BACKEND)

        query = text("""
            INSERT INTO raw_data_cache (project_id, tracking_point_id, date, payload, updated_at)
            VALUES (:project_id, :tracking_point_id, :date, :payload, :updated_at)
            ON CONFLICT (project_id, tracking_point_id, date)
            DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
        """)
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(query, {
                    **self._key_params(entry.key),
                    "payload": serialize_entry(entry),
                    "updated_at": entry.updated_at.isoformat(),
                })

        logger.debug(f"Stored {entry.key.fingerprint()} ({entry.record_count} records)")
        return entry

    async def delete(self, scope: Optional[ClearScope] = None) -> int:
        """Delete rows inside the scope (all rows when None); returns rows deleted."""
        clauses = []
        params: Dict[str, object] = {}
        expanding = False

        if scope is not None:
            if scope.project_id is not None:
                clauses.append("project_id = :project_id")
                params["project_id"] = scope.project_id
            if scope.start_date is not None:
                clauses.append("date >= :start_date")
                params["start_date"] = scope.start_date.isoformat()
            if scope.end_date is not None:
                clauses.append("date <= :end_date")
                params["end_date"] = scope.end_date.isoformat()
            if scope.tracking_point_ids is not None:
                if not scope.tracking_point_ids:
                    return 0
                clauses.append("tracking_point_id IN :tracking_point_ids")
                params["tracking_point_ids"] = sorted(scope.tracking_point_ids)
                expanding = True

        sql = "DELETE FROM raw_data_cache"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        query = text(sql)
        if expanding:
            query = query.bindparams(bindparam("tracking_point_ids", expanding=True))

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(query, params)
                deleted = result.rowcount or 0

        logger.info(f"Deleted {deleted} cache rows", extra={"scope": str(scope)})
        return deleted

    async def count(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(text("SELECT COUNT(*) FROM raw_data_cache"))
            return int(result.scalar_one())

    @staticmethod
    def _key_params(key: CacheKey) -> Dict[str, object]:
        return {
            "project_id": key.project_id,
            "tracking_point_id": key.tracking_point_id,
            "date": key.date.isoformat(),
        }


class StoreTier:
    """Backend tier that talks to the SQL store directly, for in-process use."""

    name = TierName.BACKEND

    def __init__(self, store: SqlCacheStore):
        self.store = store

    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        try:
            return await self.store.get(parse_fingerprint(fingerprint))
        except SQLAlchemyError as e:
            raise TierError(f"Store read failed: {e}", self.name, fingerprint, e) from e
        except ValueError as e:
            raise TierError(f"Corrupted stored entry: {e}", self.name, fingerprint, e) from e

    async def set(self, fingerprint: str, entry: CacheEntry) -> None:
        try:
            await self.store.upsert(entry)
        except SQLAlchemyError as e:
            raise TierError(f"Store write failed: {e}", self.name, fingerprint, e) from e

    async def has(self, fingerprint: str) -> bool:
        try:
            return await self.store.exists(parse_fingerprint(fingerprint))
        except SQLAlchemyError as e:
            raise TierError(f"Store read failed: {e}", self.name, fingerprint, e) from e

    async def clear(self, scope: Optional[ClearScope] = None) -> int:
        try:
            return await self.store.delete(scope)
        except SQLAlchemyError as e:
            raise TierError(f"Store clear failed: {e}", self.name, original_error=e) from e
