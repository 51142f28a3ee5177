"""
ADS-B Exchange Ingester

Response carries an "aircraft" (or "ac") array of objects. Field names vary
between API versions, so each value is read from its known aliases.
"""

import json
from typing import Any, Dict, Iterable, Optional

from ..schema import EntityClass
from .base import EMERGENCY_SQUAWKS, ProviderIngester, first_present, safe_float, safe_str


class AdsbExchangeIngester(ProviderIngester):
    SOURCE = "adsbexchange"
    ENTITY_CLASS = EntityClass.AIRCRAFT

    def build_request(self) -> Dict[str, Any]:
        params = {}
        if self.bounds:
            params["bounds"] = json.dumps({
                "minLat": self.bounds["min_latitude"],
                "maxLat": self.bounds["max_latitude"],
                "minLon": self.bounds["min_longitude"],
                "maxLon": self.bounds["max_longitude"],
            })
        return {"url": self.settings.base_url, "params": params, "headers": self.headers()}

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        if "X-API-Key" in headers:
            headers["Authorization"] = f"Bearer {headers['X-API-Key']}"
        return headers

    def extract_items(self, payload: Any) -> Iterable[Any]:
        if not isinstance(payload, dict):
            raise ValueError("ADS-B Exchange response must be a JSON object")
        aircraft = payload.get("aircraft")
        if not isinstance(aircraft, list):
            aircraft = payload.get("ac")
        if not isinstance(aircraft, list):
            return []
        return aircraft

    def parse_item(self, item: Any) -> Optional[Dict[str, Any]]:
        altitude = first_present(item, "alt_baro", "altitude")
        on_ground = altitude == "ground" or altitude == 0
        squawk = safe_str(item.get("squawk"))
        return {
            "entity_id": safe_str(first_present(item, "hex", "icao")) or "",
            "latitude": safe_float(item.get("lat")),
            "longitude": safe_float(item.get("lon")),
            "altitude": 0.0 if altitude == "ground" else safe_float(altitude),
            "speed": safe_float(first_present(item, "gs", "speed")),
            "course": safe_float(first_present(item, "track", "heading")),
            "heading": safe_float(item.get("mag_heading")),
            "vertical_rate": safe_float(first_present(item, "baro_rate", "vert_rate", "vr")),
            "status_code": squawk,
            "entity_type": safe_str(first_present(item, "t", "type")),
            "registration": safe_str(first_present(item, "r", "reg")),
            "callsign": safe_str(first_present(item, "flight", "callsign")),
            "on_ground": on_ground,
            "emergency": squawk in EMERGENCY_SQUAWKS,
        }
