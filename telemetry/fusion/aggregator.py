"""
Fusion Aggregator

Buffers raw records per entity for one entity class and runs a fusion pass
on a fixed timer or as soon as the buffer reaches max_batch_size.

The trigger swaps the live buffer for an empty one before any await, so on
the event loop the swap is atomic: every record lands in exactly one
generation and is fused exactly once.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..schema import EntityClass, FusedTrackRecord, RawTrackRecord
from .engine import FusionEngine, FusionResult

logger = logging.getLogger(__name__)

FusedSink = Callable[[List[FusedTrackRecord]], Awaitable[None]]


class FusionAggregator:
    """Windowed buffer feeding the fusion engine for one entity class"""

    def __init__(self, engine: FusionEngine, sink: Optional[FusedSink] = None):
        self.engine = engine
        self.config = engine.config
        self.sink = sink

        self._buffer: Dict[str, List[RawTrackRecord]] = defaultdict(list)
        self._buffered = 0
        self.generation = 0

        self.running = False
        self._tasks: Set[asyncio.Task] = set()

        self.stats = {
            "records_buffered": 0,
            "records_rejected": 0,
            "passes": 0,
            "size_triggers": 0,
            "fused": 0,
            "filtered": 0,
            "failed": 0,
            "sink_errors": 0,
        }

    @property
    def entity_class(self) -> EntityClass:
        return self.config.entity_class

    @property
    def buffered(self) -> int:
        """Records waiting for the next pass"""
        return self._buffered

    def _swap(self) -> Tuple[int, Dict[str, List[RawTrackRecord]]]:
        # No await in here
        snapshot = self._buffer
        self._buffer = defaultdict(list)
        self._buffered = 0
        self.generation += 1
        return self.generation, dict(snapshot)

    async def add(self, record: RawTrackRecord):
        """Buffer one record; a full buffer triggers an immediate pass"""
        if record.entity_class != self.entity_class:
            self.stats["records_rejected"] += 1
            logger.warning(
                f"Rejected {record.entity_class.value} record {record.entity_id} "
                f"in {self.entity_class.value} aggregator"
            )
            return

        self._buffer[record.entity_id].append(record)
        self._buffered += 1
        self.stats["records_buffered"] += 1

        if self._buffered >= self.config.max_batch_size:
            self.stats["size_triggers"] += 1
            generation, snapshot = self._swap()
            logger.info(
                f"{self.entity_class.value} buffer reached {self.config.max_batch_size}, "
                f"fusing generation {generation}"
            )
            task = asyncio.create_task(self._process(generation, snapshot))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def flush(self, now: Optional[datetime] = None) -> FusionResult:
        """Swap the buffer out and fuse it"""
        generation, snapshot = self._swap()
        return await self._process(generation, snapshot, now)

    async def _process(
        self,
        generation: int,
        snapshot: Dict[str, List[RawTrackRecord]],
        now: Optional[datetime] = None,
    ) -> FusionResult:
        if not snapshot:
            return FusionResult()

        result = self.engine.fuse_batch(snapshot, now=now)

        self.stats["passes"] += 1
        self.stats["fused"] += len(result.fused)
        self.stats["filtered"] += len(result.filtered)
        self.stats["failed"] += len(result.failed)

        logger.debug(
            f"{self.entity_class.value} generation {generation}: "
            f"{len(snapshot)} entities -> {len(result.fused)} fused, "
            f"{len(result.filtered)} filtered, {len(result.failed)} failed"
        )

        if self.sink is not None and result.fused:
            try:
                await self.sink(result.fused)
            except Exception as e:
                self.stats["sink_errors"] += 1
                logger.error(f"Error handing off {self.entity_class.value} generation {generation}: {e}")

        return result

    async def run(self):
        """Timer loop: one pass every interval_s"""
        self.running = True
        logger.info(
            f"Starting {self.entity_class.value} aggregator "
            f"(every {self.config.interval_s}s or {self.config.max_batch_size} records)"
        )

        try:
            while self.running:
                await asyncio.sleep(self.config.interval_s)
                try:
                    await self.flush()
                except Exception as e:
                    logger.error(f"{self.entity_class.value} fusion pass failed: {e}")
        except asyncio.CancelledError:
            logger.info(f"{self.entity_class.value} aggregator cancelled")
            raise
        finally:
            self.running = False

    async def drain(self):
        """Wait for size-triggered passes still in flight"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stop(self):
        self.running = False

    def get_stats(self) -> dict:
        return {
            **self.stats,
            "buffered": self._buffered,
            "generation": self.generation,
        }
