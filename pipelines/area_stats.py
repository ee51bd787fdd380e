"""Postal district tagging and per-district rental and sale statistics."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import pandas as pd

from snapshot_schema import clean_string

_POSTCODE_RE = re.compile(r"Dublin\s*(\d{1,2}W?)\b|\bD(\d{1,2}W?)\b", flags=re.IGNORECASE)

MIN_SALES_PER_AREA = 5


def extract_postcode(address: Any) -> Optional[str]:
    """Return the Dublin postal district of an address, e.g. ``D6W``."""
    text = clean_string(address)
    if not text:
        return None
    match = _POSTCODE_RE.search(text)
    if not match:
        return None
    code = match.group(1) or match.group(2)
    return f"D{code.upper()}"


def tag_postcodes(df: pd.DataFrame) -> pd.DataFrame:
    working = df.copy()
    if working.empty:
        working["dublinPostcode"] = pd.Series(dtype=object)
        return working
    working["dublinPostcode"] = working["address"].map(extract_postcode).astype(object)
    return working


def _number(value: Any) -> Any:
    number = float(value)
    return int(number) if number.is_integer() else round(number, 2)


def rental_area_stats(rentals: pd.DataFrame) -> Dict[str, Dict[str, Any]]:
    """Per postcode: total rentals and count/median/min/max rent per bed count."""
    if rentals.empty or "dublinPostcode" not in rentals.columns:
        return {}
    current = rentals[rentals["dublinPostcode"].notna() & (rentals["monthlyRent"] > 0)]
    stats: Dict[str, Dict[str, Any]] = {}
    for postcode, group in current.groupby("dublinPostcode", sort=True):
        bedrooms: Dict[str, Dict[str, Any]] = {}
        with_beds = group[group["beds"].notna() & (group["beds"] > 0)]
        for beds, bed_group in with_beds.groupby("beds", sort=True):
            rents = bed_group["monthlyRent"]
            bedrooms[str(int(beds))] = {
                "count": int(rents.shape[0]),
                "medianRent": _number(round(rents.median())),
                "minRent": _number(rents.min()),
                "maxRent": _number(rents.max()),
            }
        stats[str(postcode)] = {"totalRentals": int(group.shape[0]), "bedrooms": bedrooms}
    return stats


def sold_area_stats(properties: pd.DataFrame, min_sales: int = MIN_SALES_PER_AREA) -> List[Dict[str, Any]]:
    """Per postcode with at least ``min_sales`` sales, sorted by sales count descending."""
    if properties.empty or "dublinPostcode" not in properties.columns:
        return []
    current = properties[properties["dublinPostcode"].notna() & properties["soldPrice"].notna()]
    rows: List[Dict[str, Any]] = []
    for postcode, group in current.groupby("dublinPostcode", sort=True):
        count = int(group.shape[0])
        if count < min_sales:
            continue
        per_sqm = group["pricePerAreaUnit"].dropna() if "pricePerAreaUnit" in group.columns else pd.Series(dtype=float)
        over_under = group["overUnderAskingPercent"].dropna() if "overUnderAskingPercent" in group.columns else pd.Series(dtype=float)
        rows.append(
            {
                "name": str(postcode),
                "count": count,
                "medianPrice": _number(group["soldPrice"].median()),
                "avgPricePerSqm": _number(round(per_sqm.mean())) if not per_sqm.empty else None,
                "pctOverAsking": int(round((over_under > 0).sum() / count * 100)),
            }
        )
    rows.sort(key=lambda row: (-row["count"], row["name"]))
    return rows
