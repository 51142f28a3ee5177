"""
Geodesy helpers shared by deduplication, the storage gate and the notifier.
"""

import math

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres between two points"""
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres between two points"""
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


def course_difference(a: float, b: float) -> float:
    """Smallest angle between two bearings, handling wrap-around (350 vs 10 -> 20)"""
    diff = abs(a - b) % 360.0
    return min(diff, 360.0 - diff)
