"""
Chinaports Ingester

Response: {"vessels": [...]} with camelCase keys. Flag defaults to CN.
"""

from typing import Any, Dict, Iterable, Optional

from ..schema import EntityClass
from .base import ProviderIngester, safe_float, safe_str


class ChinaportsIngester(ProviderIngester):
    SOURCE = "chinaports"
    ENTITY_CLASS = EntityClass.VESSEL

    def build_request(self) -> Dict[str, Any]:
        params = {}
        if self.bounds:
            params = {
                "minLat": self.bounds["min_latitude"],
                "maxLat": self.bounds["max_latitude"],
                "minLon": self.bounds["min_longitude"],
                "maxLon": self.bounds["max_longitude"],
            }
        return {"url": self.settings.base_url, "params": params, "headers": self.headers()}

    def extract_items(self, payload: Any) -> Iterable[Any]:
        if not isinstance(payload, dict):
            raise ValueError("Chinaports response must be a JSON object")
        vessels = payload.get("vessels")
        return vessels if isinstance(vessels, list) else []

    def parse_item(self, item: Any) -> Optional[Dict[str, Any]]:
        return {
            "entity_id": safe_str(item.get("mmsi")) or "",
            "latitude": safe_float(item.get("lat")),
            "longitude": safe_float(item.get("lon")),
            "speed": safe_float(item.get("speed")),
            "course": safe_float(item.get("course")),
            "heading": safe_float(item.get("heading")),
            "status_code": safe_str(item.get("navStatus")),
            "name": safe_str(item.get("vesselName")),
            "entity_type": safe_str(item.get("vesselType")),
            "imo": safe_str(item.get("imo")),
            "callsign": safe_str(item.get("callsign")),
            "flag": safe_str(item.get("flag")) or "CN",
            "destination": safe_str(item.get("destination")),
        }
