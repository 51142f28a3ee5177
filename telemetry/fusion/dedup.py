"""
Deduplicator

Suppresses a fused update that sits within a tiny distance of the entity's
last accepted update inside the dedup window. Missing positions on either
side fail open (accepted). A duplicate leaves the cache entry untouched.
Callers force emergency updates through.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from ..geo import haversine_km
from ..schema import FusedTrackRecord, utcnow
from .config import DedupConfig

logger = logging.getLogger(__name__)


@dataclass
class DedupEntry:
    record: FusedTrackRecord
    cached_at: datetime


class Deduplicator:
    def __init__(self, config: Optional[DedupConfig] = None):
        self.config = config or DedupConfig()
        self._cache: Dict[str, DedupEntry] = {}
        self.stats = {
            "accepted": 0,
            "duplicates": 0,
            "purged": 0,
        }

    def accept(self, record: FusedTrackRecord, now: Optional[datetime] = None, force: bool = False) -> bool:
        """True if the update should go downstream; force accepts and refreshes the entry"""
        now = now or utcnow()

        if not self.config.enabled:
            self.stats["accepted"] += 1
            return True

        entry = self._cache.get(record.entity_id)
        if not force and entry is not None and self._is_duplicate(entry, record, now):
            self.stats["duplicates"] += 1
            logger.debug(f"Duplicate update for {record.entity_id} suppressed")
            return False

        self._cache[record.entity_id] = DedupEntry(record=record, cached_at=now)
        self.stats["accepted"] += 1
        return True

    def _is_duplicate(self, entry: DedupEntry, record: FusedTrackRecord, now: datetime) -> bool:
        if (now - entry.cached_at).total_seconds() > self.config.window_s:
            return False
        if not entry.record.has_position or not record.has_position:
            return False

        distance_km = haversine_km(
            entry.record.latitude, entry.record.longitude,
            record.latitude, record.longitude,
        )
        return distance_km < self.config.distance_km

    def forget(self, entity_id: str):
        self._cache.pop(entity_id, None)

    def expired(self, now: Optional[datetime] = None) -> List[str]:
        """Entity ids whose entries are past the dedup window"""
        now = now or utcnow()
        return [
            entity_id for entity_id, entry in self._cache.items()
            if (now - entry.cached_at).total_seconds() > self.config.window_s
        ]

    def discard_expired(self, entity_id: str, now: Optional[datetime] = None) -> bool:
        """Drop one entry if it is past the dedup window"""
        entry = self._cache.get(entity_id)
        if entry is None:
            return False
        if ((now or utcnow()) - entry.cached_at).total_seconds() <= self.config.window_s:
            return False
        del self._cache[entity_id]
        self.stats["purged"] += 1
        return True

    def purge(self, now: Optional[datetime] = None) -> int:
        """Drop entries past the dedup window"""
        now = now or utcnow()
        return sum(self.discard_expired(entity_id, now) for entity_id in self.expired(now))

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._cache

    def get_stats(self) -> dict:
        return {**self.stats, "cached": len(self._cache)}
