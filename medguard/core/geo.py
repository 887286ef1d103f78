from __future__ import annotations

import math
from typing import Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field


UNKNOWN = "Unknown"
EARTH_RADIUS_KM = 6371.0


class Origin(BaseModel):
    """
    Coarse location descriptor derived from a network address.

    Coordinates are optional; without them the origin is treated as unknown
    for travel checks even if city/region/country are filled in.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    city: str = UNKNOWN
    region: str = UNKNOWN
    country: str = UNKNOWN
    latitude: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(default=None, ge=-180.0, le=180.0)

    @classmethod
    def unknown(cls) -> "Origin":
        return cls()

    @property
    def is_known(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def label(self) -> str:
        return f"{self.city}, {self.region}, {self.country}"


class OriginSighting(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    origin: Origin
    seen_at: float


def haversine_km(a: Origin, b: Origin) -> float:
    if not (a.is_known and b.is_known):
        raise ValueError("both origins need coordinates")
    lat1, lon1 = math.radians(float(a.latitude)), math.radians(float(a.longitude))
    lat2, lon2 = math.radians(float(b.latitude)), math.radians(float(b.longitude))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


class GeoLocator(Protocol):
    def lookup(self, address: str) -> Origin: ...


class StaticGeoLocator:
    """Table-backed locator; misses resolve to the unknown origin."""

    def __init__(self, table: Optional[Dict[str, Origin]] = None):
        self._table: Dict[str, Origin] = dict(table or {})

    def add(self, address: str, origin: Origin) -> None:
        self._table[str(address)] = origin

    def lookup(self, address: str) -> Origin:
        # X-Forwarded-For style lists: first hop is the client.
        first = str(address or "").split(",")[0].strip()
        return self._table.get(first) or Origin.unknown()
