"""
Fusion Engine

Merges every buffered raw report about one entity into a single fused track:

1. Rank by source priority (lower wins), then most recent receipt first
2. Top record is the base; null fields are filled from the first ranked
   record that has them (never overwriting the base)
3. If more than one record carries a fresh position, use their mean
4. Quality = base quality + agreement bonus, x staleness penalty, clamped
5. Drop the entity for this pass when quality < threshold
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..schema import DIMENSION_FIELDS, FusedTrackRecord, RawTrackRecord, utcnow
from .config import FusionConfig

logger = logging.getLogger(__name__)


@dataclass
class FusionResult:
    """Outcome of one fusion pass"""
    fused: List[FusedTrackRecord] = field(default_factory=list)
    filtered: List[str] = field(default_factory=list)   # below quality threshold
    failed: List[str] = field(default_factory=list)     # exception while fusing


class FusionEngine:
    """Priority/quality merge of raw records per entity"""

    def __init__(self, config: FusionConfig):
        self.config = config

    def rank(self, records: Sequence[RawTrackRecord]) -> List[RawTrackRecord]:
        """Sort by (priority asc, received_at desc); source name breaks exact ties"""
        return sorted(
            records,
            key=lambda r: (self.config.priority(r.source), -r.received_at.timestamp(), r.source),
        )

    def compute_quality(
        self,
        base: RawTrackRecord,
        source_count: int,
        now: datetime,
    ) -> float:
        quality = base.quality

        if source_count > 1:
            quality += min(
                self.config.agreement_bonus_cap,
                self.config.agreement_bonus_per_source * source_count,
            )

        age_s = (now - base.received_at).total_seconds()
        if age_s > self.config.staleness_s:
            quality *= self.config.staleness_penalty

        return min(1.0, max(0.0, quality))

    def fused_position(self, ranked: List[RawTrackRecord], now: datetime):
        """(lat, lon) from the fresh-position mean, the base, or complementary fill"""
        fresh = [
            r for r in ranked
            if r.has_position
            and (now - r.received_at).total_seconds() <= self.config.freshness_window_s
        ]
        if len(fresh) > 1:
            lat = sum(r.latitude for r in fresh) / len(fresh)
            lon = sum(r.longitude for r in fresh) / len(fresh)
            return lat, lon

        for record in ranked:
            if record.has_position:
                return record.latitude, record.longitude
        return None, None

    def fuse_entity(
        self,
        entity_id: str,
        records: Sequence[RawTrackRecord],
        now: Optional[datetime] = None,
        fused_at: Optional[datetime] = None,
    ) -> Optional[FusedTrackRecord]:
        """Fuse one entity's records; None when filtered by quality"""
        if not records:
            return None
        now = now or utcnow()

        ranked = self.rank(records)
        base = ranked[0]

        # Complementary fill
        values = base.dimension_values()
        for name in DIMENSION_FIELDS:
            if values[name] is not None:
                continue
            for record in ranked[1:]:
                value = getattr(record, name)
                if value is not None:
                    values[name] = value
                    break

        latitude, longitude = self.fused_position(ranked, now)
        sources = tuple(sorted({r.source for r in ranked}))
        quality = self.compute_quality(base, len(sources), now)

        if quality < self.config.quality_threshold:
            logger.debug(f"Filtered {entity_id}: quality {quality:.2f} < {self.config.quality_threshold}")
            return None

        return FusedTrackRecord(
            entity_id=entity_id,
            entity_class=base.entity_class,
            latitude=latitude,
            longitude=longitude,
            **values,
            quality=quality,
            sources=sources,
            record_count=len(ranked),
            fused_at=fused_at or utcnow(),
        )

    def fuse_batch(
        self,
        buffer: Dict[str, List[RawTrackRecord]],
        now: Optional[datetime] = None,
    ) -> FusionResult:
        """Fuse a swapped-out buffer snapshot"""
        now = now or utcnow()
        result = FusionResult()

        if not self.config.enabled:
            for records in buffer.values():
                result.fused.extend(FusedTrackRecord.from_raw(r) for r in records)
            return result

        for entity_id, records in buffer.items():
            if not records:
                continue
            try:
                fused = self.fuse_entity(entity_id, records, now=now)
            except Exception as e:
                logger.error(f"Fusion failed for {entity_id}: {e}")
                result.failed.append(entity_id)
                continue

            if fused is None:
                result.filtered.append(entity_id)
            else:
                result.fused.append(fused)

        return result
