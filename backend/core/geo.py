"""
Géographie : distance haversine, délai de visibilité des courses, test point-dans-polygone.
"""
import math
from typing import Optional, Sequence

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance en km entre deux coordonnées GPS."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = math.sin(dlat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(a))


def distance_between(origin: Optional[dict], target: Optional[dict]) -> Optional[float]:
    """Distance en km entre deux points {lat, lng} ; None si l'un des deux est incomplet."""
    if not origin or not target:
        return None
    if None in (origin.get("lat"), origin.get("lng"), target.get("lat"), target.get("lng")):
        return None
    return haversine_km(origin["lat"], origin["lng"], target["lat"], target["lng"])


def visibility_delay_seconds(distance_km: Optional[float]) -> int:
    """
    Délai indicatif (côté client) avant d'afficher une course à un livreur :
      distance inconnue → 60 s
      ≤ 100 m           → 1 s
      ≤ 1 km            → 10 s
      au-delà           → 10 + ceil((km − 1) × 10)
    """
    if distance_km is None:
        return 60
    if distance_km <= 0.1:
        return 1
    if distance_km <= 1.0:
        return 10
    return 10 + math.ceil(round((distance_km - 1) * 10, 9))


def point_in_polygon(lat: float, lng: float, polygon: Sequence[Sequence[float]]) -> bool:
    """
    Ray casting sur un anneau de coordonnées GeoJSON [lng, lat].
    L'anneau peut être fermé ou non.
    """
    inside = False
    n = len(polygon)
    if n < 3:
        return False
    j = n - 1
    for i in range(n):
        xi, yi = polygon[i][0], polygon[i][1]
        xj, yj = polygon[j][0], polygon[j][1]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside
