"""
VesselFinder Ingester

Response array lives under "vessels", "data" or "results" depending on the
endpoint version; keys come in long and short forms (latitude/lat, sog/speed).
"""

from typing import Any, Dict, Iterable, Optional

from ..schema import EntityClass
from .base import ProviderIngester, first_present, safe_float, safe_str


class VesselFinderIngester(ProviderIngester):
    SOURCE = "vesselfinder"
    ENTITY_CLASS = EntityClass.VESSEL

    def build_request(self) -> Dict[str, Any]:
        params = {}
        if self.bounds:
            params["bbox"] = ",".join(str(v) for v in (
                self.bounds["min_longitude"],
                self.bounds["min_latitude"],
                self.bounds["max_longitude"],
                self.bounds["max_latitude"],
            ))
        return {"url": self.settings.base_url, "params": params, "headers": self.headers()}

    def extract_items(self, payload: Any) -> Iterable[Any]:
        if isinstance(payload, list):
            return payload
        if not isinstance(payload, dict):
            raise ValueError("VesselFinder response must be a JSON object or array")
        for key in ("vessels", "data", "results"):
            vessels = payload.get(key)
            if isinstance(vessels, list):
                return vessels
        return []

    def parse_item(self, item: Any) -> Optional[Dict[str, Any]]:
        return {
            "entity_id": safe_str(first_present(item, "mmsi", "MMSI")) or "",
            "latitude": safe_float(first_present(item, "latitude", "lat")),
            "longitude": safe_float(first_present(item, "longitude", "lon")),
            "speed": safe_float(first_present(item, "speed", "sog")),
            "course": safe_float(first_present(item, "course", "cog")),
            "heading": safe_float(first_present(item, "heading", "hdg")),
            "status_code": safe_str(first_present(item, "navStatus", "status")),
            "name": safe_str(first_present(item, "vesselName", "name")),
            "entity_type": safe_str(first_present(item, "vesselType", "type")),
            "imo": safe_str(first_present(item, "imo", "IMO")),
            "callsign": safe_str(first_present(item, "callsign", "call")),
            "flag": safe_str(first_present(item, "flag", "country")),
            "destination": safe_str(first_present(item, "destination", "dest")),
        }
