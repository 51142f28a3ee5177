"""
Raw Channel

Redis Streams conduit between the provider ingesters and the fusion
aggregators. One stream per (entity class, source):

    raw:aircraft:flightradar24
    raw:vessel:marinetraffic
    ...

Each entry carries every RawTrackRecord field; entity_id is the routing key.
Ordering is preserved per stream only. A consumer group per entity class
reads all streams of that class and acknowledges an entry only after the
handler has buffered it. Entries that fail validation are acknowledged and
dropped. Entries a handler failed on stay pending and are claimed (XAUTOCLAIM)
when a consumer starts. A failed read backs off before retrying.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .schema import EntityClass, RawTrackRecord

logger = logging.getLogger(__name__)

RecordHandler = Callable[[RawTrackRecord], Awaitable[None]]


def stream_key(entity_class: EntityClass, source: str) -> str:
    return f"raw:{EntityClass(entity_class).value}:{source.lower()}"


class RedisRawChannel:
    """Publish/consume raw track records over Redis Streams"""

    def __init__(
        self,
        redis_client,
        sources: Dict[str, EntityClass],
        maxlen: int = 10000,
        read_count: int = 100,
        block_ms: int = 1000,
        group_prefix: str = "fusion",
        claim_idle_ms: int = 60000,
    ):
        self.redis = redis_client
        self.sources = {name.lower(): EntityClass(cls) for name, cls in sources.items()}
        self.maxlen = maxlen
        self.read_count = read_count
        self.block_ms = block_ms
        self.group_prefix = group_prefix
        self.claim_idle_ms = claim_idle_ms
        self.consumer_name = f"{group_prefix}-{int(time.time())}"
        self.running = False

        self.stats = {
            "published": 0,
            "consumed": 0,
            "invalid": 0,
            "errors": 0,
            "reclaimed": 0,
        }

    def group_name(self, entity_class: EntityClass) -> str:
        return f"{self.group_prefix}-{EntityClass(entity_class).value}"

    def streams_for(self, entity_class: EntityClass) -> List[str]:
        return [
            stream_key(cls, name)
            for name, cls in sorted(self.sources.items())
            if cls == entity_class
        ]

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, records: Iterable[RawTrackRecord]) -> int:
        """Append records to their streams; returns the number written"""
        pipeline = self.redis.pipeline()
        count = 0
        for record in records:
            pipeline.xadd(
                stream_key(record.entity_class, record.source),
                record.to_redis_dict(),
                maxlen=self.maxlen,
                approximate=True,
            )
            count += 1

        if count:
            await pipeline.execute()
            self.stats["published"] += count
        return count

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    async def setup_consumer_group(self, entity_class: EntityClass):
        """Create the class's consumer group on every stream"""
        group = self.group_name(entity_class)
        for stream in self.streams_for(entity_class):
            try:
                await self.redis.xgroup_create(stream, group, id="0", mkstream=True)
                logger.info(f"Created consumer group {group} for {stream}")
            except Exception as e:
                if "BUSYGROUP" not in str(e):
                    logger.warning(f"Consumer group setup for {stream}: {e}")

    async def read(self, entity_class: EntityClass) -> List[Tuple[str, str, dict]]:
        """Read new entries for one class: [(stream, message_id, data)]"""
        streams = {stream: ">" for stream in self.streams_for(entity_class)}
        if not streams:
            return []

        messages = []
        try:
            result = await self.redis.xreadgroup(
                self.group_name(entity_class),
                self.consumer_name,
                streams,
                count=self.read_count,
                block=self.block_ms,
            )
            for stream_name, stream_messages in result or []:
                for msg_id, msg_data in stream_messages:
                    messages.append((stream_name, msg_id, msg_data))

        except Exception as e:
            if "NOGROUP" in str(e):
                await self.setup_consumer_group(entity_class)
            else:
                logger.error(f"Error reading {entity_class.value} streams: {e}")
                self.stats["errors"] += 1
                await asyncio.sleep(max(self.block_ms, 100) / 1000.0)

        return messages

    async def process(
        self,
        entity_class: EntityClass,
        messages: List[Tuple[str, str, dict]],
        handler: RecordHandler,
    ) -> int:
        """Hand entries to handler, acknowledging each once buffered"""
        group = self.group_name(entity_class)
        handled = 0

        for stream, msg_id, data in messages:
            try:
                record = RawTrackRecord.from_redis_dict(data)
            except (ValidationError, ValueError, TypeError) as e:
                self.stats["invalid"] += 1
                logger.warning(f"Dropping invalid entry {msg_id} on {stream}: {e}")
                await self._ack(stream, group, msg_id)
                continue

            try:
                await handler(record)
            except Exception as e:
                # Left pending; reclaimed by reclaim_pending() on the next consumer start
                self.stats["errors"] += 1
                logger.error(f"Failed to buffer {record.entity_id} from {stream}: {e}")
                continue

            await self._ack(stream, group, msg_id)
            handled += 1

        self.stats["consumed"] += handled
        return handled

    async def reclaim_pending(self, entity_class: EntityClass, handler: RecordHandler) -> int:
        """Claim entries idle in the group's pending list and process them"""
        group = self.group_name(entity_class)
        reclaimed = 0

        for stream in self.streams_for(entity_class):
            start_id = "0-0"
            while True:
                try:
                    result = await self.redis.xautoclaim(
                        stream, group, self.consumer_name,
                        min_idle_time=self.claim_idle_ms,
                        start_id=start_id,
                        count=self.read_count,
                    )
                except Exception as e:
                    logger.warning(f"Could not reclaim pending entries on {stream}: {e}")
                    break

                next_id, claimed = result[0], result[1]
                messages = [(stream, msg_id, data) for msg_id, data in claimed if data]
                if messages:
                    reclaimed += await self.process(entity_class, messages, handler)
                if not claimed or next_id in ("0-0", b"0-0"):
                    break
                start_id = next_id

        if reclaimed:
            self.stats["reclaimed"] += reclaimed
            logger.info(f"Reclaimed {reclaimed} pending {entity_class.value} entries")
        return reclaimed

    async def _ack(self, stream: str, group: str, msg_id: str):
        try:
            await self.redis.xack(stream, group, msg_id)
        except Exception as e:
            logger.warning(f"Failed to ack {msg_id} on {stream}: {e}")

    async def consume(self, entity_class: EntityClass, handler: RecordHandler):
        """Consume loop for one entity class"""
        self.running = True
        await self.setup_consumer_group(entity_class)
        await self.reclaim_pending(entity_class, handler)
        logger.info(f"Consuming {self.streams_for(entity_class)} as {self.group_name(entity_class)}")

        try:
            while self.running:
                messages = await self.read(entity_class)
                if messages:
                    await self.process(entity_class, messages, handler)
                elif not self.streams_for(entity_class):
                    await asyncio.sleep(self.block_ms / 1000.0)
        except asyncio.CancelledError:
            logger.info(f"{entity_class.value} consumer cancelled")
            raise

    def stop(self):
        self.running = False

    def get_stats(self) -> dict:
        return dict(self.stats)


class LocalRawChannel:
    """
    In-process channel for --dry-run: publish() hands records straight to
    the registered per-class handler.
    """

    def __init__(self):
        self.handlers: Dict[EntityClass, RecordHandler] = {}
        self.stats = {"published": 0, "consumed": 0, "invalid": 0, "errors": 0}

    def register(self, entity_class: EntityClass, handler: RecordHandler):
        self.handlers[EntityClass(entity_class)] = handler

    async def publish(self, records: Iterable[RawTrackRecord]) -> int:
        count = 0
        for record in records:
            handler: Optional[RecordHandler] = self.handlers.get(record.entity_class)
            if handler is None:
                continue
            await handler(record)
            count += 1
        self.stats["published"] += count
        self.stats["consumed"] += count
        return count

    def get_stats(self) -> dict:
        return dict(self.stats)
