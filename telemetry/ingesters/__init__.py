"""
Provider Ingesters

One polling adapter per external telemetry provider. Each runs as an
independent task and publishes normalized records to its raw channel.
"""

from typing import Dict, List, Optional

import httpx

from ..config import TrackingSettings
from .adsbexchange import AdsbExchangeIngester
from .base import ProviderIngester
from .chinaports import ChinaportsIngester
from .flightradar24 import FlightRadar24Ingester
from .marinetraffic import MarineTrafficIngester
from .vesselfinder import VesselFinderIngester

INGESTERS: Dict[str, type] = {
    cls.SOURCE: cls
    for cls in (
        FlightRadar24Ingester,
        AdsbExchangeIngester,
        MarineTrafficIngester,
        VesselFinderIngester,
        ChinaportsIngester,
    )
}


def build_ingesters(
    settings: TrackingSettings,
    http_client: httpx.AsyncClient,
    redis_client=None,
) -> List[ProviderIngester]:
    """Instantiate one ingester per configured source"""
    bounds = {
        "min_latitude": settings.min_latitude,
        "max_latitude": settings.max_latitude,
        "min_longitude": settings.min_longitude,
        "max_longitude": settings.max_longitude,
    }
    ingesters = []
    for name, source_settings in settings.sources.items():
        cls: Optional[type] = INGESTERS.get(name)
        if cls is None:
            continue
        ingesters.append(cls(
            settings=source_settings,
            http_client=http_client,
            bounds=bounds,
            failure_threshold=settings.failure_threshold,
            redis_client=redis_client,
        ))
    return ingesters


__all__ = [
    "INGESTERS",
    "ProviderIngester",
    "FlightRadar24Ingester",
    "AdsbExchangeIngester",
    "MarineTrafficIngester",
    "VesselFinderIngester",
    "ChinaportsIngester",
    "build_ingesters",
]
