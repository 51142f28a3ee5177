"""
Track Persistence

Two layers:
  - Current cache (Redis, always written):
      tracking:current:{entity_id}   hash, latest fused record
      tracking:active:{entity_class} set of tracked entity ids
      tracking:snapshot:{entity_id}  hash, last persisted record
  - Durable history (PostgreSQL via asyncpg, persist decisions only):
      track_history table, one row per persisted update
"""

import logging
from typing import Any, Dict, List, Optional

import asyncpg
import redis.asyncio as redis

from ..schema import EntityClass, FusedTrackRecord

logger = logging.getLogger(__name__)

CURRENT_PREFIX = "tracking:current:"
SNAPSHOT_PREFIX = "tracking:snapshot:"
ACTIVE_PREFIX = "tracking:active:"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS track_history (
    id BIGSERIAL PRIMARY KEY,
    entity_id TEXT NOT NULL,
    entity_class TEXT NOT NULL,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    altitude DOUBLE PRECISION,
    speed DOUBLE PRECISION,
    course DOUBLE PRECISION,
    heading DOUBLE PRECISION,
    vertical_rate DOUBLE PRECISION,
    status_code TEXT,
    callsign TEXT,
    name TEXT,
    registration TEXT,
    entity_type TEXT,
    imo TEXT,
    flag TEXT,
    destination TEXT,
    on_ground BOOLEAN,
    emergency BOOLEAN,
    quality DOUBLE PRECISION NOT NULL,
    sources TEXT[] NOT NULL,
    record_count INTEGER NOT NULL,
    fused_at TIMESTAMPTZ NOT NULL,
    persisted_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_track_history_entity_time
    ON track_history (entity_id, fused_at DESC);
"""

HISTORY_COLUMNS = (
    "entity_id", "entity_class", "latitude", "longitude", "altitude", "speed",
    "course", "heading", "vertical_rate", "status_code", "callsign", "name",
    "registration", "entity_type", "imo", "flag", "destination", "on_ground",
    "emergency", "quality", "sources", "record_count", "fused_at",
)

INSERT_SQL = (
    f"INSERT INTO track_history ({', '.join(HISTORY_COLUMNS)}) "
    f"VALUES ({', '.join(f'${i}' for i in range(1, len(HISTORY_COLUMNS) + 1))})"
)

LAST_SNAPSHOT_SQL = (
    f"SELECT {', '.join(HISTORY_COLUMNS)} FROM track_history "
    "WHERE entity_id = $1 ORDER BY fused_at DESC LIMIT 1"
)


def _history_row(record: FusedTrackRecord) -> tuple:
    """Row tuple in HISTORY_COLUMNS order"""
    values = []
    for column in HISTORY_COLUMNS:
        value = getattr(record, column)
        if column == "entity_class":
            value = record.entity_class.value
        elif column == "sources":
            value = list(record.sources)
        values.append(value)
    return tuple(values)


class TrackStore:
    """Redis current cache + PostgreSQL durable history"""

    def __init__(self, redis_client: redis.Redis, pg_pool: Optional[asyncpg.Pool] = None):
        self.redis = redis_client
        self.pg_pool = pg_pool
        self.stats = {
            "current_writes": 0,
            "durable_writes": 0,
            "snapshot_lookups": 0,
            "errors": 0,
        }

    async def ensure_schema(self):
        """Create the history table if it does not exist"""
        if self.pg_pool is None:
            return
        async with self.pg_pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("track_history schema ready")

    async def upsert_current(self, entity_id: str, record: FusedTrackRecord):
        """Overwrite the current entry and mark the entity active"""
        pipeline = self.redis.pipeline()
        pipeline.hset(f"{CURRENT_PREFIX}{entity_id}", mapping=record.to_redis_dict())
        pipeline.sadd(f"{ACTIVE_PREFIX}{record.entity_class.value}", entity_id)
        await pipeline.execute()
        self.stats["current_writes"] += 1

    async def append_durable(self, entity_id: str, record: FusedTrackRecord):
        """Append one history row and remember it as the last snapshot"""
        if self.pg_pool is not None:
            async with self.pg_pool.acquire() as conn:
                await conn.execute(INSERT_SQL, *_history_row(record))

        await self.redis.hset(f"{SNAPSHOT_PREFIX}{entity_id}", mapping=record.to_redis_dict())
        self.stats["durable_writes"] += 1

    async def get_last_snapshot(self, entity_id: str) -> Optional[FusedTrackRecord]:
        """Last persisted record: Redis first, history table as fallback"""
        self.stats["snapshot_lookups"] += 1

        data = await self.redis.hgetall(f"{SNAPSHOT_PREFIX}{entity_id}")
        if data:
            return FusedTrackRecord.from_redis_dict(data)

        if self.pg_pool is None:
            return None

        async with self.pg_pool.acquire() as conn:
            row = await conn.fetchrow(LAST_SNAPSHOT_SQL, entity_id)
        if row is None:
            return None

        values: Dict[str, Any] = {k: v for k, v in dict(row).items() if v is not None}
        values["sources"] = tuple(values.get("sources") or ())
        return FusedTrackRecord(**values)

    async def get_current(self, entity_id: str) -> Optional[FusedTrackRecord]:
        data = await self.redis.hgetall(f"{CURRENT_PREFIX}{entity_id}")
        return FusedTrackRecord.from_redis_dict(data) if data else None

    async def evict(self, entity_id: str, entity_class: EntityClass):
        """Drop an inactive entity from the current cache"""
        pipeline = self.redis.pipeline()
        pipeline.delete(f"{CURRENT_PREFIX}{entity_id}")
        pipeline.delete(f"{SNAPSHOT_PREFIX}{entity_id}")
        pipeline.srem(f"{ACTIVE_PREFIX}{EntityClass(entity_class).value}", entity_id)
        await pipeline.execute()

    def get_stats(self) -> dict:
        return dict(self.stats)


class InMemoryTrackStore:
    """Process-local stand-in for TrackStore (--dry-run)"""

    def __init__(self):
        self.current: Dict[str, FusedTrackRecord] = {}
        self.snapshots: Dict[str, FusedTrackRecord] = {}
        self.history: List[FusedTrackRecord] = []
        self.stats = {
            "current_writes": 0,
            "durable_writes": 0,
            "snapshot_lookups": 0,
            "errors": 0,
        }

    async def ensure_schema(self):
        return None

    async def upsert_current(self, entity_id: str, record: FusedTrackRecord):
        self.current[entity_id] = record
        self.stats["current_writes"] += 1

    async def append_durable(self, entity_id: str, record: FusedTrackRecord):
        self.history.append(record)
        self.snapshots[entity_id] = record
        self.stats["durable_writes"] += 1

    async def get_last_snapshot(self, entity_id: str) -> Optional[FusedTrackRecord]:
        self.stats["snapshot_lookups"] += 1
        return self.snapshots.get(entity_id)

    async def get_current(self, entity_id: str) -> Optional[FusedTrackRecord]:
        return self.current.get(entity_id)

    async def evict(self, entity_id: str, entity_class: EntityClass):
        self.current.pop(entity_id, None)
        self.snapshots.pop(entity_id, None)

    def get_stats(self) -> dict:
        return dict(self.stats)
