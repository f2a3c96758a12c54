import math
from dataclasses import dataclass
from typing import Optional, Protocol

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float
    country: Optional[str] = None
    city: Optional[str] = None


class GeoLocator(Protocol):
    async def locate(self, ip_address: str) -> Optional[GeoPoint]:
        ...


class NullGeoLocator:
    """No IP geolocation configured: the location checks are skipped."""

    async def locate(self, ip_address: str) -> Optional[GeoPoint]:
        return None


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat_from, lon_from = math.radians(lat1), math.radians(lon1)
    lat_to, lon_to = math.radians(lat2), math.radians(lon2)
    a = (
        math.sin((lat_to - lat_from) / 2) ** 2
        + math.cos(lat_from) * math.cos(lat_to) * math.sin((lon_to - lon_from) / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
