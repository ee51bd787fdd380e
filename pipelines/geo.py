"""Distance helpers, a latitude-band index and coordinate bounds validation."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

import pandas as pd

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000
METERS_PER_DEGREE_LAT = 111_320.0

T = TypeVar("T")


@dataclass(frozen=True)
class Bounds:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng

    @classmethod
    def parse(cls, text: str) -> "Bounds":
        """Parse ``"minLat,maxLat,minLng,maxLng"``."""
        parts = [part.strip() for part in text.split(",")]
        if len(parts) != 4:
            raise ValueError(f"Bounds need four comma-separated numbers, got: {text!r}")
        min_lat, max_lat, min_lng, max_lng = (float(part) for part in parts)
        if min_lat > max_lat or min_lng > max_lng:
            raise ValueError(f"Bounds minimum exceeds maximum: {text!r}")
        return cls(min_lat, max_lat, min_lng, max_lng)


DUBLIN_BOUNDS = Bounds(min_lat=53.10, max_lat=53.65, min_lng=-6.60, max_lng=-5.95)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return haversine distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def coordinate(value) -> Optional[float]:
    if value is None or value is pd.NA:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


class LatitudeBandIndex(Generic[T]):
    """Points bucketed by group and latitude band for radius queries.

    A band is as tall as the search radius, so every point within the radius
    lies in the query band or one of its two neighbours, at any longitude.
    """

    def __init__(self, radius_m: float) -> None:
        if radius_m <= 0:
            raise ValueError("radius_m must be positive")
        self.radius_m = float(radius_m)
        self.band_deg = self.radius_m / METERS_PER_DEGREE_LAT
        self._bands: Dict[Tuple[Hashable, int], List[Tuple[float, float, T]]] = defaultdict(list)

    def _band(self, lat: float) -> int:
        return int(math.floor(lat / self.band_deg))

    def add(self, group: Hashable, lat: float, lng: float, item: T) -> None:
        self._bands[(group, self._band(lat))].append((lat, lng, item))

    def within(self, group: Hashable, lat: float, lng: float) -> List[Tuple[float, T]]:
        """Return ``(distance_m, item)`` for items within the radius, in insertion order per band."""
        band = self._band(lat)
        found: List[Tuple[float, T]] = []
        for offset in (-1, 0, 1):
            for lat_b, lng_b, item in self._bands.get((group, band + offset), []):
                distance = haversine_m(lat, lng, lat_b, lng_b)
                if distance <= self.radius_m:
                    found.append((distance, item))
        return found


def validate_coordinates(df: pd.DataFrame, bounds: Optional[Bounds], label: str = "records") -> pd.DataFrame:
    """Null coordinates outside ``bounds`` or with only one half present.

    Rejected rows get ``geocodeStatus`` set to ``out_of_bounds`` or
    ``incomplete``; other rows keep whatever status the snapshot carried.
    """
    working = df.copy()
    if working.empty or "latitude" not in working.columns or "longitude" not in working.columns:
        return working
    if "geocodeStatus" not in working.columns:
        working["geocodeStatus"] = None
    working["geocodeStatus"] = working["geocodeStatus"].astype(object)

    lat = working["latitude"]
    lng = working["longitude"]
    incomplete = lat.notna() ^ lng.notna()
    both = lat.notna() & lng.notna()
    if bounds is not None:
        inside = lat.between(bounds.min_lat, bounds.max_lat) & lng.between(bounds.min_lng, bounds.max_lng)
        out_of_bounds = both & ~inside
    else:
        out_of_bounds = pd.Series(False, index=working.index)

    rejected = incomplete | out_of_bounds
    working.loc[rejected, ["latitude", "longitude"]] = float("nan")
    working.loc[out_of_bounds, "geocodeStatus"] = "out_of_bounds"
    working.loc[incomplete, "geocodeStatus"] = "incomplete"

    if rejected.any():
        logger.warning(
            "Rejected coordinates on %s %s (%s out of bounds, %s incomplete).",
            int(rejected.sum()),
            label,
            int(out_of_bounds.sum()),
            int(incomplete.sum()),
        )
    return working


def count_geocoded(df: pd.DataFrame) -> int:
    if df.empty or "latitude" not in df.columns or "longitude" not in df.columns:
        return 0
    return int((df["latitude"].notna() & df["longitude"].notna()).sum())
