"""Derived fields: price per area unit, over/under asking and yield estimates."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from rapidfuzz import fuzz

from pipelines.geo import LatitudeBandIndex, coordinate
from pipelines.identity import normalize_address
from snapshot_schema import PRICE_COLUMN, RENTALS, SOLD, clean_string

logger = logging.getLogger(__name__)

DEFAULT_YIELD_RADIUS_M = 200.0


@dataclass
class RentalCandidate:
    position: int
    monthly_rent: float
    address: str
    source_url: Optional[str]


@dataclass
class YieldMatch:
    monthly_rent: float
    method: str
    distance_m: Optional[float]
    source_url: Optional[str]


def price_per_area(price: pd.Series, area: pd.Series) -> pd.Series:
    """Divide price by area, leaving NaN wherever the area is missing or not positive."""
    price = pd.to_numeric(price, errors="coerce").astype(float)
    area = pd.to_numeric(area, errors="coerce").astype(float)
    valid = price.notna() & area.notna() & (area > 0)
    result = pd.Series(np.nan, index=price.index, dtype=float)
    result[valid] = (price[valid] / area[valid]).round(2)
    return result


def over_under_asking(sold_price: pd.Series, asking_price: pd.Series) -> pd.Series:
    sold_price = pd.to_numeric(sold_price, errors="coerce").astype(float)
    asking_price = pd.to_numeric(asking_price, errors="coerce").astype(float)
    valid = sold_price.notna() & asking_price.notna() & (asking_price > 0)
    result = pd.Series(np.nan, index=sold_price.index, dtype=float)
    result[valid] = ((sold_price[valid] - asking_price[valid]) / asking_price[valid] * 100).round(1)
    return result


def estimated_yield(monthly_rent: float, price: float) -> Optional[float]:
    if price is None or price <= 0 or monthly_rent is None:
        return None
    return round(monthly_rent * 12 / price * 100, 2)


def normalize_property_type(value: Any) -> str:
    return clean_string(value).lower()


def _positive(value: Any) -> Optional[float]:
    number = coordinate(value)
    if number is None or number <= 0:
        return None
    return number


def _beds(value: Any) -> Optional[int]:
    number = coordinate(value)
    if number is None:
        return None
    return int(round(number))


class RentalMatcher:
    """Find the comparable rental for a sale or listing.

    A comparable has the same property type and bed count. An exact
    normalised-address match is preferred; otherwise the nearest rental within
    ``radius_m`` is used when both sides carry coordinates.
    """

    def __init__(self, rentals: pd.DataFrame, radius_m: float = DEFAULT_YIELD_RADIUS_M) -> None:
        self.radius_m = radius_m
        self.by_address: Dict[Tuple[str, str, int], RentalCandidate] = {}
        self.nearby: LatitudeBandIndex[RentalCandidate] = LatitudeBandIndex(radius_m)
        self.indexed = 0

        if rentals is None or rentals.empty:
            return
        for position, row in enumerate(rentals.to_dict("records")):
            rent = _positive(row.get("monthlyRent"))
            property_type = normalize_property_type(row.get("propertyType"))
            beds = _beds(row.get("beds"))
            if rent is None or not property_type or beds is None:
                continue
            candidate = RentalCandidate(
                position=position,
                monthly_rent=rent,
                address=normalize_address(row.get("address")),
                source_url=row.get("sourceUrl"),
            )
            if candidate.address:
                self.by_address.setdefault((candidate.address, property_type, beds), candidate)
            lat = coordinate(row.get("latitude"))
            lng = coordinate(row.get("longitude"))
            if lat is not None and lng is not None:
                self.nearby.add((property_type, beds), lat, lng, candidate)
            self.indexed += 1

    def match(
        self,
        address: Any,
        property_type: Any,
        beds: Any,
        latitude: Any = None,
        longitude: Any = None,
    ) -> Optional[YieldMatch]:
        kind = normalize_property_type(property_type)
        bed_count = _beds(beds)
        if not kind or bed_count is None:
            return None

        address_norm = normalize_address(address)
        if address_norm:
            exact = self.by_address.get((address_norm, kind, bed_count))
            if exact is not None:
                return YieldMatch(exact.monthly_rent, "address", None, exact.source_url)

        lat = coordinate(latitude)
        lng = coordinate(longitude)
        if lat is None or lng is None:
            return None
        found = self.nearby.within((kind, bed_count), lat, lng)
        if not found:
            return None

        def rank(entry: Tuple[float, RentalCandidate]) -> Tuple[float, float, int]:
            distance, candidate = entry
            similarity = fuzz.ratio(address_norm, candidate.address) if address_norm else 0.0
            return (round(distance, 3), -similarity, candidate.position)

        distance, best = min(found, key=rank)
        return YieldMatch(best.monthly_rent, "nearby", round(distance, 1), best.source_url)


def _yield_columns(df: pd.DataFrame, price_column: str, matcher: RentalMatcher) -> Tuple[pd.DataFrame, int]:
    yields: List[Optional[float]] = []
    rents: List[Optional[float]] = []
    methods: List[Optional[str]] = []
    distances: List[Optional[float]] = []
    matched = 0
    for row in df.to_dict("records"):
        price = _positive(row.get(price_column))
        found = None
        if price is not None:
            found = matcher.match(
                row.get("address"),
                row.get("propertyType"),
                row.get("beds"),
                row.get("latitude"),
                row.get("longitude"),
            )
        if found is None:
            yields.append(None)
            rents.append(None)
            methods.append(None)
            distances.append(None)
            continue
        matched += 1
        yields.append(estimated_yield(found.monthly_rent, price))
        rents.append(found.monthly_rent)
        methods.append(found.method)
        distances.append(found.distance_m)

    working = df.copy()
    working["estimatedYield"] = pd.Series(yields, index=df.index, dtype=float)
    working["yieldMonthlyRent"] = pd.Series(rents, index=df.index, dtype=float)
    working["yieldMatchMethod"] = pd.Series(methods, index=df.index, dtype=object)
    working["yieldMatchDistanceM"] = pd.Series(distances, index=df.index, dtype=float)
    return working, matched


def compute_derived_fields(df: pd.DataFrame, category: str, matcher: Optional[RentalMatcher] = None) -> Tuple[pd.DataFrame, int]:
    """Return a copy of ``df`` with derived columns and the number of yield matches."""
    price_column = PRICE_COLUMN[category]
    working = df.copy()
    if category == RENTALS:
        working["rentPerSqm"] = price_per_area(working[price_column], working["areaSqm"])
        return working, 0
    working["pricePerAreaUnit"] = price_per_area(working[price_column], working["areaSqm"])
    if category == SOLD:
        working["overUnderAskingPercent"] = over_under_asking(working["soldPrice"], working["askingPrice"])

    if matcher is None:
        matcher = RentalMatcher(pd.DataFrame())
    working, matched = _yield_columns(working, price_column, matcher)
    total = int(working.shape[0])
    coverage = (matched / total * 100) if total else 0.0
    logger.info("%s %s records with yield estimates (%.1f%%).", f"{matched:,}", category, coverage)
    return working, matched


def yield_coverage(matched: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(math.floor(matched / total * 100 + 0.5))

