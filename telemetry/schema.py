"""
Unified Schema for Track Telemetry

Normalizes reports from every provider (aircraft and vessel) into one raw
record shape, and defines the fused record produced by a fusion pass.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

# Dimension fields carried by both raw and fused records, in wire order.
DIMENSION_FIELDS: Tuple[str, ...] = (
    "altitude",
    "speed",
    "course",
    "heading",
    "vertical_rate",
    "status_code",
    "callsign",
    "name",
    "registration",
    "entity_type",
    "imo",
    "flag",
    "destination",
    "on_ground",
    "emergency",
)

_FLOAT_FIELDS = {"latitude", "longitude", "altitude", "speed", "course", "heading",
                 "vertical_rate", "quality", "response_latency_ms"}
_BOOL_FIELDS = {"on_ground", "emergency"}


class EntityClass(str, Enum):
    AIRCRAFT = "aircraft"
    VESSEL = "vessel"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrackFields(BaseModel):
    """Position and dimension values shared by raw and fused records."""

    entity_id: str
    entity_class: EntityClass

    # Position (either both or neither are meaningful)
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    # Kinematics
    altitude: Optional[float] = None        # feet
    speed: Optional[float] = None           # knots
    course: Optional[float] = None          # degrees true
    heading: Optional[float] = None
    vertical_rate: Optional[float] = None   # feet/minute

    # Identity and status
    status_code: Optional[str] = None       # squawk or AIS navigation status
    callsign: Optional[str] = None
    name: Optional[str] = None
    registration: Optional[str] = None
    entity_type: Optional[str] = None
    imo: Optional[str] = None
    flag: Optional[str] = None
    destination: Optional[str] = None
    on_ground: Optional[bool] = None
    emergency: Optional[bool] = None

    class Config:
        frozen = True

    @field_validator("entity_id")
    @classmethod
    def _entity_id_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("entity_id must not be empty")
        return value

    @field_validator("latitude")
    @classmethod
    def _latitude_in_range(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not -90.0 <= value <= 90.0:
            raise ValueError(f"latitude out of range: {value}")
        return value

    @field_validator("longitude")
    @classmethod
    def _longitude_in_range(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not -180.0 <= value <= 180.0:
            raise ValueError(f"longitude out of range: {value}")
        return value

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def position(self) -> Optional[Tuple[float, float]]:
        if not self.has_position:
            return None
        return (self.latitude, self.longitude)


class RawTrackRecord(TrackFields):
    """One provider's report about one entity, as received."""

    source: str
    quality: float = 0.5
    provider_timestamp: Optional[datetime] = None
    received_at: datetime = Field(default_factory=utcnow)
    response_latency_ms: Optional[float] = None

    @field_validator("source")
    @classmethod
    def _normalize_source(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("source must not be empty")
        return value

    @field_validator("quality")
    @classmethod
    def _clamp_quality(cls, value: float) -> float:
        return min(1.0, max(0.0, value))

    def dimension_values(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in DIMENSION_FIELDS}

    def to_redis_dict(self) -> Dict[str, str]:
        """Convert to stream entry format (all string values, "" for null)"""
        data = self.model_dump(mode="json")
        return {key: _to_redis_value(value) for key, value in data.items()}

    @classmethod
    def from_redis_dict(cls, data: Dict[str, str]) -> "RawTrackRecord":
        """Create RawTrackRecord from a stream entry; raises ValidationError on bad input"""
        values: Dict[str, Any] = {}
        for key, raw in data.items():
            if raw == "" or raw is None:
                continue
            if key in _BOOL_FIELDS:
                values[key] = str(raw).lower() in ("true", "1", "yes")
            elif key in _FLOAT_FIELDS:
                values[key] = float(raw)
            else:
                values[key] = raw
        return cls(**values)


class FusedTrackRecord(TrackFields):
    """Authoritative track for one entity after one fusion pass."""

    quality: float
    sources: Tuple[str, ...]
    record_count: int = 1
    fused_at: datetime = Field(default_factory=utcnow)

    @field_validator("quality")
    @classmethod
    def _clamp_quality(cls, value: float) -> float:
        return min(1.0, max(0.0, value))

    @field_validator("sources")
    @classmethod
    def _at_least_one_source(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        if not value:
            raise ValueError("a fused record derives from at least one source")
        return tuple(sorted(set(value)))

    @classmethod
    def from_raw(cls, raw: RawTrackRecord, fused_at: Optional[datetime] = None) -> "FusedTrackRecord":
        """Pass a raw record through unchanged (fusion disabled)"""
        return cls(
            entity_id=raw.entity_id,
            entity_class=raw.entity_class,
            latitude=raw.latitude,
            longitude=raw.longitude,
            **raw.dimension_values(),
            quality=raw.quality,
            sources=(raw.source,),
            record_count=1,
            fused_at=fused_at or utcnow(),
        )

    def to_message(self) -> Dict[str, Any]:
        """JSON-ready dict for notification payloads"""
        return self.model_dump(mode="json")

    def to_redis_dict(self) -> Dict[str, str]:
        """Convert to Redis hash format (all string values)"""
        data = self.model_dump(mode="json")
        data["sources"] = ",".join(self.sources)
        return {key: _to_redis_value(value) for key, value in data.items()}

    @classmethod
    def from_redis_dict(cls, data: Dict[str, str]) -> "FusedTrackRecord":
        values: Dict[str, Any] = {}
        for key, raw in data.items():
            if raw == "" or raw is None:
                continue
            if key in _BOOL_FIELDS:
                values[key] = str(raw).lower() in ("true", "1", "yes")
            elif key in _FLOAT_FIELDS:
                values[key] = float(raw)
            elif key == "sources":
                values[key] = tuple(s for s in raw.split(",") if s)
            elif key == "record_count":
                values[key] = int(raw)
            else:
                values[key] = raw
        return cls(**values)


class BoundingBox(BaseModel):
    """Rectangular geographic region (inclusive on both axes)."""

    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    class Config:
        frozen = True

    @model_validator(mode="after")
    def _check_bounds(self) -> "BoundingBox":
        if not (-90.0 <= self.min_lat <= self.max_lat <= 90.0):
            raise ValueError(f"invalid latitude range: {self.min_lat}..{self.max_lat}")
        if not (-180.0 <= self.min_lon <= self.max_lon <= 180.0):
            raise ValueError(f"invalid longitude range: {self.min_lon}..{self.max_lon}")
        return self

    @property
    def key(self) -> str:
        return f"area_{self.min_lat:.6f}_{self.max_lat:.6f}_{self.min_lon:.6f}_{self.max_lon:.6f}"

    def contains(self, latitude: float, longitude: float) -> bool:
        return (
            self.min_lat <= latitude <= self.max_lat
            and self.min_lon <= longitude <= self.max_lon
        )


def _to_redis_value(value: Any) -> str:
    return "" if value is None else str(value)
