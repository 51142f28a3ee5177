"""
Geo Fan-out Notifier

Delivers every gate-accepted update to:
  (a) sessions subscribed to the entity id
  (b) sessions subscribed to any active bounding box containing the position

In batch mode (b) is replaced by one message per box per interval listing
every current entity inside the box. Delivery is fire-and-forget: failures
are logged and counted, never raised.

Message shapes:
  {"type": "update", "key": <entity id | area key>, "data": {...}}
  {"type": "batch", "key": <area key>, "count": n, "data": [{...}, ...]}
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

from pydantic import ValidationError

from ..exceptions import SubscriptionError
from ..schema import BoundingBox, FusedTrackRecord, utcnow
from .delivery import Delivery
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)

CurrentRecords = Callable[[], Iterable[FusedTrackRecord]]


class GeoNotifier:
    def __init__(
        self,
        delivery: Delivery,
        registry: Optional[SubscriptionRegistry] = None,
        batch_mode: bool = False,
        batch_interval_s: float = 5.0,
        session_idle_timeout_s: float = 3600.0,
        current_records: Optional[CurrentRecords] = None,
    ):
        self.delivery = delivery
        self.registry = registry or SubscriptionRegistry()
        self.batch_mode = batch_mode
        self.batch_interval_s = batch_interval_s
        self.session_idle_timeout_s = session_idle_timeout_s
        self.current_records = current_records or (lambda: ())
        self.running = False

        self.stats = {
            "updates": 0,
            "delivered": 0,
            "failed": 0,
            "batches": 0,
            "sessions_expired": 0,
        }

    # ------------------------------------------------------------------
    # Subscription API
    # ------------------------------------------------------------------

    def subscribe_entity(self, session_id: str, entity_id: str) -> Dict[str, str]:
        session_id, entity_id = _require(session_id, "session id"), _require(entity_id, "entity id")
        self.registry.add_entity(session_id, entity_id)
        logger.debug(f"{session_id} subscribed to entity {entity_id}")
        return {"type": "entity", "status": "subscribed", "key": entity_id}

    def unsubscribe_entity(self, session_id: str, entity_id: str) -> Dict[str, str]:
        session_id, entity_id = _require(session_id, "session id"), _require(entity_id, "entity id")
        self.registry.remove_entity(session_id, entity_id)
        return {"type": "entity", "status": "unsubscribed", "key": entity_id}

    def subscribe_area(
        self,
        session_id: str,
        min_lat: float,
        max_lat: float,
        min_lon: float,
        max_lon: float,
    ) -> Dict[str, str]:
        session_id = _require(session_id, "session id")
        box = _box(min_lat, max_lat, min_lon, max_lon)
        self.registry.add_area(session_id, box)
        logger.debug(f"{session_id} subscribed to {box.key}")
        return {"type": "area", "status": "subscribed", "key": box.key}

    def unsubscribe_area(
        self,
        session_id: str,
        min_lat: float,
        max_lat: float,
        min_lon: float,
        max_lon: float,
    ) -> Dict[str, str]:
        session_id = _require(session_id, "session id")
        box = _box(min_lat, max_lat, min_lon, max_lon)
        self.registry.remove_area(session_id, box.key)
        return {"type": "area", "status": "unsubscribed", "key": box.key}

    def disconnect(self, session_id: str) -> Dict[str, str]:
        """Drop every subscription held by a session"""
        removed = self.registry.remove_session(session_id)
        logger.info(f"Session {session_id} disconnected ({removed} subscriptions removed)")
        return {"type": "session", "status": "disconnected", "key": session_id}

    def expire_idle_sessions(self, now: Optional[datetime] = None) -> int:
        """Disconnect sessions idle longer than session_idle_timeout_s"""
        idle = self.registry.idle_sessions(self.session_idle_timeout_s, now)
        for session_id in idle:
            self.registry.remove_session(session_id)
        if idle:
            self.stats["sessions_expired"] += len(idle)
            logger.info(f"Expired {len(idle)} idle sessions")
        return len(idle)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def notify(self, record: FusedTrackRecord) -> int:
        """Deliver one update to matching sessions; returns deliveries attempted"""
        self.stats["updates"] += 1
        data = record.to_message()
        sends = []

        for session_id in self.registry.sessions_for_entity(record.entity_id):
            sends.append(self._deliver(session_id, {"type": "update", "key": record.entity_id, "data": data}))

        if not self.batch_mode and record.has_position:
            for box, sessions in self.registry.matching_areas(record.latitude, record.longitude):
                for session_id in sessions:
                    sends.append(self._deliver(session_id, {"type": "update", "key": box.key, "data": data}))

        if sends:
            await asyncio.gather(*sends)
        return len(sends)

    async def send_batch_updates(self) -> int:
        """One message per active box listing every current entity inside it"""
        records = [r for r in self.current_records() if r.has_position]
        sends = []

        for box, sessions in self.registry.active_areas():
            inside = [r.to_message() for r in records if box.contains(r.latitude, r.longitude)]
            if not inside or not sessions:
                continue
            message = {"type": "batch", "key": box.key, "count": len(inside), "data": inside}
            for session_id in sessions:
                sends.append(self._deliver(session_id, message))

        if sends:
            await asyncio.gather(*sends)
            self.stats["batches"] += 1
        return len(sends)

    async def _deliver(self, session_id: str, message: Dict[str, Any]):
        try:
            await self.delivery.send(session_id, message)
            self.stats["delivered"] += 1
            # A listening session is active even if it never sends an action
            if session_id in self.registry.last_active:
                self.registry.touch(session_id)
        except Exception as e:
            self.stats["failed"] += 1
            logger.warning(f"Delivery to {session_id} failed: {e}")

    async def run_batch_loop(self):
        """Periodic area batches (batch mode only)"""
        self.running = True
        logger.info(f"Starting area batch updates every {self.batch_interval_s}s")
        try:
            while self.running:
                await asyncio.sleep(self.batch_interval_s)
                try:
                    await self.send_batch_updates()
                except Exception as e:
                    logger.error(f"Batch update failed: {e}")
        except asyncio.CancelledError:
            logger.info("Batch update loop cancelled")
            raise
        finally:
            self.running = False

    def stop(self):
        self.running = False

    def get_stats(self) -> dict:
        return {**self.stats, **self.registry.counts(), "batch_mode": self.batch_mode}


def _require(value: str, what: str) -> str:
    value = (value or "").strip()
    if not value:
        raise SubscriptionError(f"{what} must not be empty")
    return value


def _box(min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> BoundingBox:
    try:
        return BoundingBox(min_lat=min_lat, max_lat=max_lat, min_lon=min_lon, max_lon=max_lon)
    except ValidationError as e:
        raise SubscriptionError(f"invalid bounding box: {e}") from e
