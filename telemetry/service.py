"""
Tracking Service

Wires the pipeline together and owns every scheduled task:

    ingesters (one task each)  -> raw channel
    raw channel consumers (one per entity class) -> aggregators
    aggregators (timer per class) -> pipeline (dedup/gate/persist/notify)
    cleanup loop -> inactive entities, dedup entries, idle sessions, status
    area batch loop (batch mode only)

Usage:
    python -m telemetry.service
    python -m telemetry.service --dry-run          # no Redis/PostgreSQL
    python -m telemetry.service --batch-mode
"""

import argparse
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg
import httpx
import redis.asyncio as redis
from dotenv import load_dotenv

from .channel import LocalRawChannel, RedisRawChannel
from .config import TrackingSettings, get_postgres_url, get_redis_url
from .fusion import (
    DedupConfig,
    Deduplicator,
    FusionAggregator,
    FusionConfig,
    FusionEngine,
    GateThresholds,
)
from .ingesters import ProviderIngester, build_ingesters
from .keyed_lock import KeyedLock
from .notify import GeoNotifier, LoggingDelivery, RedisPubSubDelivery
from .pipeline import TrackingPipeline
from .schema import EntityClass
from .storage import EntityStateStore, InMemoryTrackStore, StorageDecisionGate, TrackStore

logger = logging.getLogger(__name__)


class TrackingService:
    """
    Multi-source tracking pipeline.

    Writes to:
        - raw:{entity_class}:{source} (streams)
        - tracking:current:{entity_id} (hashes)
        - tracking:active:{entity_class} (sets)
        - tracking:status (hash)
        - ingester:{source}:status (hashes)
        - track_history (PostgreSQL)
    """

    STATUS_KEY = "tracking:status"

    def __init__(
        self,
        settings: TrackingSettings,
        redis_client=None,
        pg_pool=None,
        http_client: Optional[httpx.AsyncClient] = None,
        delivery=None,
        ingesters: Optional[List[ProviderIngester]] = None,
    ):
        self.settings = settings
        self.redis = redis_client
        self.http = http_client
        self.dry_run = redis_client is None

        self.store = TrackStore(redis_client, pg_pool) if redis_client is not None else InMemoryTrackStore()
        self.state = EntityStateStore()

        if delivery is None:
            delivery = RedisPubSubDelivery(redis_client) if redis_client is not None else LoggingDelivery()
        self.notifier = GeoNotifier(
            delivery,
            batch_mode=settings.notify_batch_mode,
            batch_interval_s=settings.notify_batch_interval_s,
            session_idle_timeout_s=settings.session_idle_timeout_s,
            current_records=self.state.current,
        )

        self.pipeline = TrackingPipeline(
            store=self.store,
            notifier=self.notifier,
            deduplicator=Deduplicator(DedupConfig.from_settings(settings)),
            gate=StorageDecisionGate(GateThresholds.from_settings(settings)),
            state=self.state,
            locks=KeyedLock(),
            inactivity_timeouts={
                EntityClass.AIRCRAFT: settings.aircraft_inactivity_timeout_s,
                EntityClass.VESSEL: settings.vessel_inactivity_timeout_s,
            },
        )

        self.aggregators: Dict[EntityClass, FusionAggregator] = {
            entity_class: FusionAggregator(
                FusionEngine(FusionConfig.from_settings(settings, entity_class)),
                sink=self.pipeline.process_batch,
            )
            for entity_class in EntityClass
        }

        if ingesters is None:
            ingesters = build_ingesters(settings, http_client, redis_client) if http_client is not None else []
        self.ingesters = ingesters

        if redis_client is not None:
            self.channel = RedisRawChannel(
                redis_client,
                sources={i.SOURCE: i.ENTITY_CLASS for i in self.ingesters},
                maxlen=settings.channel_maxlen,
                read_count=settings.channel_read_count,
                block_ms=settings.channel_block_ms,
                claim_idle_ms=settings.channel_claim_idle_ms,
            )
        else:
            self.channel = LocalRawChannel()
            for entity_class, aggregator in self.aggregators.items():
                self.channel.register(entity_class, aggregator.add)

        self.running = False
        self.start_time: Optional[datetime] = None
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Create schema and launch every scheduled task"""
        if self.running:
            return
        self.running = True
        self.start_time = datetime.now(timezone.utc)

        try:
            await self.store.ensure_schema()
        except Exception as e:
            logger.error(f"Could not prepare track_history schema: {e}")

        for ingester in self.ingesters:
            self._spawn(ingester.run(self.channel), f"ingester-{ingester.SOURCE}")

        if isinstance(self.channel, RedisRawChannel):
            for entity_class, aggregator in self.aggregators.items():
                self._spawn(self.channel.consume(entity_class, aggregator.add), f"consume-{entity_class.value}")

        for entity_class, aggregator in self.aggregators.items():
            self._spawn(aggregator.run(), f"fusion-{entity_class.value}")

        self._spawn(self.run_cleanup_loop(), "cleanup")
        if self.notifier.batch_mode:
            self._spawn(self.notifier.run_batch_loop(), "area-batches")

        logger.info(
            f"Tracking service started ({len(self.ingesters)} sources, "
            f"{'dry run' if self.dry_run else 'redis'}, "
            f"fusion {'on' if self.settings.fusion_enabled else 'off'})"
        )

    def _spawn(self, coro, name: str):
        self._tasks.append(asyncio.create_task(coro, name=name))

    async def stop(self):
        """Stop loops, fuse what is still buffered, wait for notifications"""
        if not self.running:
            return
        self.running = False

        for ingester in self.ingesters:
            ingester.stop()
        if isinstance(self.channel, RedisRawChannel):
            self.channel.stop()
        for aggregator in self.aggregators.values():
            aggregator.stop()
        self.notifier.stop()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for aggregator in self.aggregators.values():
            await aggregator.drain()
            try:
                await aggregator.flush()
            except Exception as e:
                logger.error(f"Final {aggregator.entity_class.value} fusion pass failed: {e}")
        await self.pipeline.drain()

        await self._update_status()
        logger.info("Tracking service stopped")

    async def wait(self):
        """Block until every task finishes (normally: until cancelled)"""
        if self._tasks:
            await asyncio.gather(*self._tasks)

    # ------------------------------------------------------------------
    # Cleanup + status
    # ------------------------------------------------------------------

    async def run_cleanup_loop(self):
        cycle_count = 0
        try:
            while self.running:
                await asyncio.sleep(self.settings.cleanup_interval_s)
                try:
                    result = await self.pipeline.cleanup()
                    await self._update_status()
                except Exception as e:
                    logger.error(f"Cleanup cycle failed: {e}")
                    continue

                cycle_count += 1
                stats = self.pipeline.stats
                logger.info(
                    f"Stats: tracked={len(self.state)}, processed={stats['processed']}, "
                    f"persisted={stats['persisted']}, cached={stats['cached']}, "
                    f"duplicates={stats['duplicates']}, evicted={result['evicted']}, "
                    f"healthy_sources={sum(i.is_healthy() for i in self.ingesters)}/{len(self.ingesters)}"
                )
        except asyncio.CancelledError:
            logger.info("Cleanup loop cancelled")
            raise

    def sources_status(self) -> List[Dict[str, Any]]:
        return [ingester.status() for ingester in self.ingesters]

    def get_stats(self) -> Dict[str, Any]:
        uptime = (datetime.now(timezone.utc) - self.start_time).total_seconds() if self.start_time else 0
        return {
            "running": self.running,
            "dry_run": self.dry_run,
            "uptime_seconds": int(uptime),
            "aggregators": {cls.value: agg.get_stats() for cls, agg in self.aggregators.items()},
            "pipeline": self.pipeline.get_stats(),
            "store": self.store.get_stats(),
            "channel": self.channel.get_stats(),
            "sources": self.sources_status(),
        }

    async def _update_status(self):
        """Update service status hash"""
        if self.redis is None:
            return

        now = datetime.now(timezone.utc)
        uptime = (now - self.start_time).total_seconds() if self.start_time else 0
        pipeline_stats = self.pipeline.stats
        counts = self.state.count_by_class()

        status = {
            "running": str(self.running),
            "tracked_aircraft": str(counts[EntityClass.AIRCRAFT.value]),
            "tracked_vessels": str(counts[EntityClass.VESSEL.value]),
            "processed": str(pipeline_stats["processed"]),
            "persisted": str(pipeline_stats["persisted"]),
            "cached": str(pipeline_stats["cached"]),
            "duplicates": str(pipeline_stats["duplicates"]),
            "persistence_errors": str(pipeline_stats["persistence_errors"]),
            "healthy_sources": str(sum(i.is_healthy() for i in self.ingesters)),
            "total_sources": str(len(self.ingesters)),
            "uptime_seconds": str(int(uptime)),
            "last_update": now.isoformat(),
        }

        try:
            await self.redis.hset(self.STATUS_KEY, mapping=status)
        except Exception as e:
            logger.error(f"Error updating tracking status: {e}")


async def connect(redis_url: str, postgres_url: str):
    """Open Redis and PostgreSQL; PostgreSQL is optional"""
    redis_client = redis.from_url(redis_url, decode_responses=True)
    await redis_client.ping()
    logger.info(f"Connected to Redis at {redis_url}")

    pg_pool = None
    try:
        pg_pool = await asyncpg.create_pool(postgres_url, min_size=2, max_size=10)
        logger.info("Connected to PostgreSQL")
    except Exception as e:
        logger.warning(f"PostgreSQL unavailable, durable history disabled: {e}")

    return redis_client, pg_pool


async def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - TRACKING - %(levelname)s - %(message)s"
    )
    load_dotenv()

    parser = argparse.ArgumentParser(description="Multi-source Tracking Service")
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Run without Redis/PostgreSQL (in-memory persistence, logged deliveries)"
    )
    parser.add_argument("--redis-url", default=None, help="Redis URL")
    parser.add_argument("--postgres-url", default=None, help="PostgreSQL URL")
    parser.add_argument(
        "--batch-mode", action="store_true",
        help="Coalesce area updates into one message per box per interval"
    )
    parser.add_argument(
        "--no-fusion", action="store_true",
        help="Pass raw records through without fusing"
    )
    args = parser.parse_args()

    settings = TrackingSettings()
    if args.batch_mode:
        settings.notify_batch_mode = True
    if args.no_fusion:
        settings.fusion_enabled = False

    redis_client = None
    pg_pool = None
    if not args.dry_run:
        try:
            redis_client, pg_pool = await connect(
                args.redis_url or get_redis_url(),
                args.postgres_url or get_postgres_url(),
            )
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return

    async with httpx.AsyncClient() as http_client:
        service = TrackingService(
            settings,
            redis_client=redis_client,
            pg_pool=pg_pool,
            http_client=http_client,
        )
        try:
            await service.start()
            await service.wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Interrupted")
        finally:
            await service.stop()
            if redis_client is not None:
                await redis_client.close()
            if pg_pool is not None:
                await pg_pool.close()


if __name__ == "__main__":
    asyncio.run(main())
