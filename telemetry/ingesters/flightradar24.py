"""
FlightRadar24 Ingester

The zone feed is a JSON object keyed by aircraft hex ident; each value is a
positional array:
    [1] lat  [2] lon  [3] track  [4] altitude  [5] ground speed  [6] squawk
    [8] aircraft type  [9] registration  [14] on ground  [15] vertical rate
    [16] callsign
Non-aircraft keys (full_count, version, stats) are skipped.
"""

from typing import Any, Dict, Iterable, Optional

from ..schema import EntityClass
from .base import EMERGENCY_SQUAWKS, ProviderIngester, safe_float, safe_str

META_KEYS = {"full_count", "version", "stats"}


def _at(values: list, index: int) -> Any:
    return values[index] if len(values) > index else None


class FlightRadar24Ingester(ProviderIngester):
    SOURCE = "flightradar24"
    ENTITY_CLASS = EntityClass.AIRCRAFT

    def build_request(self) -> Dict[str, Any]:
        b = self.bounds
        bounds = ""
        if b:
            bounds = f"{b['max_latitude']},{b['min_latitude']},{b['min_longitude']},{b['max_longitude']}"
        return {
            "url": f"{self.settings.base_url}/zones/fcgi/feed.js",
            "params": {"bounds": bounds, "adsb": 1, "mlat": 1, "air": 1, "gnd": 1, "maxage": 14400},
            "headers": self.headers(),
        }

    def extract_items(self, payload: Any) -> Iterable[Any]:
        if not isinstance(payload, dict):
            raise ValueError("FlightRadar24 feed must be a JSON object")
        for key, value in payload.items():
            if key in META_KEYS or not isinstance(value, list):
                continue
            yield key, value

    def parse_item(self, item: Any) -> Optional[Dict[str, Any]]:
        hexident, values = item
        squawk = safe_str(_at(values, 6))
        on_ground = _at(values, 14)
        return {
            "entity_id": hexident,
            "latitude": safe_float(_at(values, 1)),
            "longitude": safe_float(_at(values, 2)),
            "course": safe_float(_at(values, 3)),
            "altitude": safe_float(_at(values, 4)),
            "speed": safe_float(_at(values, 5)),
            "status_code": squawk,
            "entity_type": safe_str(_at(values, 8)),
            "registration": safe_str(_at(values, 9)),
            "on_ground": bool(on_ground) if on_ground is not None else None,
            "vertical_rate": safe_float(_at(values, 15)),
            "callsign": safe_str(_at(values, 16)),
            "emergency": squawk in EMERGENCY_SQUAWKS,
        }
