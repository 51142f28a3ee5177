"""
Fusion Configuration

Per-class fusion timings, quality scoring, source priorities, dedup envelope
and storage-gate thresholds. Built once from TrackingSettings at startup.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional

from ..schema import EntityClass

UNKNOWN_SOURCE_PRIORITY = 999


@dataclass(frozen=True)
class FusionConfig:
    """Fusion engine and aggregator parameters for one entity class"""
    entity_class: EntityClass
    enabled: bool = True
    interval_s: float = 5.0               # Timer trigger
    max_batch_size: int = 1000            # Size trigger (buffered records)
    freshness_window_s: float = 30.0      # Positions eligible for averaging
    staleness_s: float = 60.0             # Base record age that costs quality
    staleness_penalty: float = 0.8
    agreement_bonus_per_source: float = 0.05
    agreement_bonus_cap: float = 0.2
    quality_threshold: float = 0.5
    source_priority: Dict[str, int] = field(default_factory=dict)

    def priority(self, source: str) -> int:
        """Rank for a source (lower = more trusted), case-insensitive"""
        return self.source_priority.get(source.lower(), UNKNOWN_SOURCE_PRIORITY)

    @classmethod
    def from_settings(cls, settings, entity_class: EntityClass) -> "FusionConfig":
        aircraft = EntityClass(entity_class) == EntityClass.AIRCRAFT
        return cls(
            entity_class=EntityClass(entity_class),
            enabled=settings.fusion_enabled,
            interval_s=settings.aircraft_fusion_interval_s if aircraft else settings.vessel_fusion_interval_s,
            max_batch_size=settings.max_batch_size,
            freshness_window_s=settings.aircraft_freshness_window_s if aircraft else settings.vessel_freshness_window_s,
            staleness_s=settings.aircraft_staleness_s if aircraft else settings.vessel_staleness_s,
            staleness_penalty=settings.staleness_penalty,
            agreement_bonus_per_source=settings.agreement_bonus_per_source,
            agreement_bonus_cap=settings.agreement_bonus_cap,
            quality_threshold=settings.quality_threshold,
            source_priority={k.lower(): v for k, v in settings.source_priority.items()},
        )


@dataclass(frozen=True)
class DedupConfig:
    """Duplicate suppression envelope"""
    enabled: bool = True
    window_s: float = 30.0
    distance_km: float = 0.001

    @classmethod
    def from_settings(cls, settings) -> "DedupConfig":
        return cls(
            enabled=settings.dedup_enabled,
            window_s=settings.dedup_window_s,
            distance_km=settings.dedup_distance_km,
        )


@dataclass(frozen=True)
class GateThresholds:
    """Change magnitudes that make an update worth a durable write"""
    force_save_interval_s: float = 60.0
    position_m: float = 100.0
    altitude_ft: float = 500.0
    speed_knots: float = 10.0
    course_deg: float = 30.0
    emergency_codes: FrozenSet[str] = frozenset({"7500", "7600", "7700"})

    @classmethod
    def from_settings(cls, settings) -> "GateThresholds":
        return cls(
            force_save_interval_s=settings.force_save_interval_s,
            position_m=settings.position_threshold_m,
            altitude_ft=settings.altitude_threshold_ft,
            speed_knots=settings.speed_threshold_knots,
            course_deg=settings.course_threshold_deg,
            emergency_codes=frozenset(settings.emergency_codes),
        )


def inactivity_timeout_s(settings, entity_class: Optional[EntityClass]) -> float:
    """Entity state retention for a class"""
    if entity_class is not None and EntityClass(entity_class) == EntityClass.VESSEL:
        return settings.vessel_inactivity_timeout_s
    return settings.aircraft_inactivity_timeout_s
