"""
Storage-Decision Gate

Decides, per accepted fused update, between a durable write and a
cache-only update by comparing it with the entity's last persisted snapshot.
Rules are checked in order; the first match persists:

    no snapshot          -> persist (first_sighting)
    emergency code/flag  -> persist (emergency)
    force-save elapsed   -> persist (force_save)
    moved > position_m   -> persist (position)
    altitude/speed/course over threshold -> persist
    otherwise            -> cache only (unchanged)

Any error while evaluating persists.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..fusion.config import GateThresholds
from ..geo import course_difference, haversine_m
from ..schema import FusedTrackRecord, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    persist: bool
    reason: str


class StorageDecisionGate:
    def __init__(self, thresholds: Optional[GateThresholds] = None):
        self.thresholds = thresholds or GateThresholds()
        self.stats = {
            "persist": 0,
            "cache_only": 0,
            "errors": 0,
            "reasons": {},
        }

    def is_emergency(self, record: FusedTrackRecord) -> bool:
        if record.emergency:
            return True
        return record.status_code is not None and record.status_code in self.thresholds.emergency_codes

    def decide(
        self,
        record: FusedTrackRecord,
        snapshot: Optional[FusedTrackRecord],
        last_persisted_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> GateDecision:
        try:
            decision = self._evaluate(record, snapshot, last_persisted_at, now or utcnow())
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Gate evaluation failed for {record.entity_id}, persisting: {e}")
            decision = GateDecision(True, "error")

        self.stats["persist" if decision.persist else "cache_only"] += 1
        self.stats["reasons"][decision.reason] = self.stats["reasons"].get(decision.reason, 0) + 1
        return decision

    def _evaluate(
        self,
        record: FusedTrackRecord,
        snapshot: Optional[FusedTrackRecord],
        last_persisted_at: Optional[datetime],
        now: datetime,
    ) -> GateDecision:
        t = self.thresholds

        if snapshot is None:
            return GateDecision(True, "first_sighting")

        if self.is_emergency(record):
            return GateDecision(True, "emergency")

        persisted_at = last_persisted_at or snapshot.fused_at
        if (now - persisted_at).total_seconds() >= t.force_save_interval_s:
            return GateDecision(True, "force_save")

        if record.has_position:
            if not snapshot.has_position:
                return GateDecision(True, "position")
            moved_m = haversine_m(
                snapshot.latitude, snapshot.longitude,
                record.latitude, record.longitude,
            )
            if moved_m > t.position_m:
                return GateDecision(True, "position")

        if _delta(record.altitude, snapshot.altitude) > t.altitude_ft:
            return GateDecision(True, "altitude")

        if _delta(record.speed, snapshot.speed) > t.speed_knots:
            return GateDecision(True, "speed")

        if record.course is not None and snapshot.course is not None:
            if course_difference(record.course, snapshot.course) > t.course_deg:
                return GateDecision(True, "course")

        return GateDecision(False, "unchanged")

    def get_stats(self) -> dict:
        return {**self.stats, "reasons": dict(self.stats["reasons"])}


def _delta(a: Optional[float], b: Optional[float]) -> float:
    if a is None or b is None:
        return 0.0
    return abs(a - b)
