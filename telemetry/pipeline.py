"""
Tracking Pipeline

Per fused update, under the entity's lock:

    dedup (emergencies always pass) -> gate -> { notify (own task) , upsert_current [+ append_durable] } -> state

The notify branch is spawned as a task and never awaited by the persistence
branch. A gate or persistence failure is logged and counted; the gate itself
falls back to persisting.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from .fusion.dedup import Deduplicator
from .keyed_lock import KeyedLock
from .notify.notifier import GeoNotifier
from .schema import EntityClass, FusedTrackRecord, utcnow
from .storage.gate import GateDecision, StorageDecisionGate
from .storage.state import EntityStateStore

logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_TIMEOUTS = {
    EntityClass.AIRCRAFT: 300.0,
    EntityClass.VESSEL: 600.0,
}


class TrackingPipeline:
    def __init__(
        self,
        store,
        notifier: GeoNotifier,
        deduplicator: Optional[Deduplicator] = None,
        gate: Optional[StorageDecisionGate] = None,
        state: Optional[EntityStateStore] = None,
        locks: Optional[KeyedLock] = None,
        inactivity_timeouts: Optional[Dict[EntityClass, float]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.dedup = deduplicator or Deduplicator()
        self.gate = gate or StorageDecisionGate()
        self.state = state or EntityStateStore()
        self.locks = locks or KeyedLock()
        self.inactivity_timeouts = {**DEFAULT_INACTIVITY_TIMEOUTS, **(inactivity_timeouts or {})}

        self._notify_tasks: Set[asyncio.Task] = set()

        self.stats = {
            "processed": 0,
            "duplicates": 0,
            "persisted": 0,
            "cached": 0,
            "snapshot_errors": 0,
            "persistence_errors": 0,
            "evicted": 0,
        }

    async def process(
        self,
        record: FusedTrackRecord,
        now: Optional[datetime] = None,
    ) -> Optional[GateDecision]:
        """Run one fused update through the pipeline; None if deduplicated"""
        now = now or utcnow()
        entity_id = record.entity_id

        async with self.locks.lock(entity_id):
            self.stats["processed"] += 1

            if not self.dedup.accept(record, now, force=self.gate.is_emergency(record)):
                self.stats["duplicates"] += 1
                return None

            snapshot, persisted_at = await self._last_snapshot(entity_id)
            decision = self.gate.decide(record, snapshot, persisted_at, now)

            self._spawn_notify(record)

            persisted = await self._write(record, decision)
            self.state.update(record, persisted=persisted, now=now)

        return decision

    async def process_batch(self, records: Iterable[FusedTrackRecord]):
        """Aggregator sink: process a fusion pass's output"""
        records = list(records)
        if not records:
            return
        results = await asyncio.gather(
            *(self.process(record) for record in records),
            return_exceptions=True,
        )
        for record, result in zip(records, results):
            if isinstance(result, Exception):
                logger.error(f"Pipeline failed for {record.entity_id}: {result}")

    async def _last_snapshot(self, entity_id: str):
        state = self.state.get(entity_id)
        if state is not None and state.last_persisted is not None:
            return state.last_persisted, state.last_persisted_at

        try:
            return await self.store.get_last_snapshot(entity_id), None
        except Exception as e:
            self.stats["snapshot_errors"] += 1
            logger.error(f"Snapshot lookup failed for {entity_id}: {e}")
            return None, None

    async def _write(self, record: FusedTrackRecord, decision: GateDecision) -> bool:
        """Cache write always, durable write on persist; True if durably written"""
        try:
            await self.store.upsert_current(record.entity_id, record)
        except Exception as e:
            self.stats["persistence_errors"] += 1
            logger.error(f"Current cache write failed for {record.entity_id}: {e}")

        if not decision.persist:
            self.stats["cached"] += 1
            return False

        try:
            await self.store.append_durable(record.entity_id, record)
        except Exception as e:
            self.stats["persistence_errors"] += 1
            logger.error(f"Durable write failed for {record.entity_id} ({decision.reason}): {e}")
            return False

        self.stats["persisted"] += 1
        return True

    def _spawn_notify(self, record: FusedTrackRecord):
        task = asyncio.create_task(self.notifier.notify(record))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_done)

    def _notify_done(self, task: asyncio.Task):
        self._notify_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Notification task failed: {error}")

    async def drain(self):
        """Wait for in-flight notification tasks"""
        while self._notify_tasks:
            await asyncio.gather(*list(self._notify_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _timeout_for(self, entity_class: EntityClass) -> float:
        return self.inactivity_timeouts.get(EntityClass(entity_class), DEFAULT_INACTIVITY_TIMEOUTS[EntityClass.AIRCRAFT])

    async def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Purge inactive entities, expired dedup entries and idle sessions"""
        now = now or utcnow()
        evicted: List[str] = []

        for entity_id in self.state.inactive(self._timeout_for, now):
            async with self.locks.lock(entity_id):
                state = self.state.get(entity_id)
                if state is None:
                    continue
                if (now - state.last_seen).total_seconds() <= self._timeout_for(state.entity_class):
                    continue
                self.state.remove(entity_id)
                self.dedup.forget(entity_id)
                try:
                    await self.store.evict(entity_id, state.entity_class)
                except Exception as e:
                    logger.warning(f"Failed to evict {entity_id} from current cache: {e}")
                evicted.append(entity_id)

        purged = 0
        for entity_id in self.dedup.expired(now):
            async with self.locks.lock(entity_id):
                purged += self.dedup.discard_expired(entity_id, now)

        expired_sessions = self.notifier.expire_idle_sessions(now)

        self.stats["evicted"] += len(evicted)
        if evicted:
            logger.info(f"Evicted {len(evicted)} inactive entities")

        return {
            "evicted": len(evicted),
            "dedup_purged": purged,
            "sessions_expired": expired_sessions,
        }

    def get_stats(self) -> dict:
        return {
            **self.stats,
            "tracked": len(self.state),
            "by_class": self.state.count_by_class(),
            "notify_in_flight": len(self._notify_tasks),
            "dedup": self.dedup.get_stats(),
            "gate": self.gate.get_stats(),
            "notifier": self.notifier.get_stats(),
        }
