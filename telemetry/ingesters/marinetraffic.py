"""
MarineTraffic Ingester

Export endpoint returns {"data": [...]} with upper-case keys
(MMSI, LAT, LON, SPEED, COURSE, HEADING, NAVSTAT, SHIPNAME, ...).
"""

from typing import Any, Dict, Iterable, Optional

from ..schema import EntityClass
from .base import ProviderIngester, safe_float, safe_str


class MarineTrafficIngester(ProviderIngester):
    SOURCE = "marinetraffic"
    ENTITY_CLASS = EntityClass.VESSEL

    def build_request(self) -> Dict[str, Any]:
        params = {"timespan": 60, "protocol": "json"}
        if self.bounds:
            params.update({
                "minlat": self.bounds["min_latitude"],
                "maxlat": self.bounds["max_latitude"],
                "minlon": self.bounds["min_longitude"],
                "maxlon": self.bounds["max_longitude"],
            })
        return {
            "url": f"{self.settings.base_url}/exportvessels",
            "params": params,
            "headers": self.headers(),
        }

    def extract_items(self, payload: Any) -> Iterable[Any]:
        if not isinstance(payload, dict):
            raise ValueError("MarineTraffic response must be a JSON object")
        vessels = payload.get("data")
        return vessels if isinstance(vessels, list) else []

    def parse_item(self, item: Any) -> Optional[Dict[str, Any]]:
        return {
            "entity_id": safe_str(item.get("MMSI")) or "",
            "latitude": safe_float(item.get("LAT")),
            "longitude": safe_float(item.get("LON")),
            "speed": safe_float(item.get("SPEED")),
            "course": safe_float(item.get("COURSE")),
            "heading": safe_float(item.get("HEADING")),
            "status_code": safe_str(item.get("NAVSTAT")),
            "name": safe_str(item.get("SHIPNAME")),
            "entity_type": safe_str(item.get("SHIPTYPE")),
            "imo": safe_str(item.get("IMO")),
            "callsign": safe_str(item.get("CALLSIGN")),
            "flag": safe_str(item.get("FLAG")),
            "destination": safe_str(item.get("DESTINATION")),
        }
