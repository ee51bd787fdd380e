from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional
import re

import numpy as np
import pandas as pd


SOLD = "sold"
LISTINGS = "listings"
RENTALS = "rentals"
CATEGORIES = (SOLD, LISTINGS, RENTALS)


@dataclass
class SoldRecord:
    address: Optional[str]
    sold_date: Optional[str]
    sold_price: Optional[float]
    asking_price: Optional[float] = None
    property_type: Optional[str] = None
    beds: Optional[int] = None
    baths: Optional[int] = None
    area_sqm: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    ber_rating: Optional[str] = None
    eircode: Optional[str] = None
    source_url: Optional[str] = None
    scraped_at: Optional[str] = None


@dataclass
class ListingRecord:
    address: Optional[str]
    asking_price: Optional[float]
    property_type: Optional[str] = None
    beds: Optional[int] = None
    baths: Optional[int] = None
    area_sqm: Optional[float] = None
    ber_rating: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    eircode: Optional[str] = None
    source_url: Optional[str] = None
    scraped_at: Optional[str] = None


@dataclass
class RentalRecord:
    address: Optional[str]
    monthly_rent: Optional[float]
    property_type: Optional[str] = None
    beds: Optional[int] = None
    baths: Optional[int] = None
    area_sqm: Optional[float] = None
    ber_rating: Optional[str] = None
    furnishing: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    eircode: Optional[str] = None
    source_url: Optional[str] = None
    scraped_at: Optional[str] = None


COLUMN_RENAMES = {
    "address": "address",
    "sold_date": "soldDate",
    "sold_price": "soldPrice",
    "asking_price": "askingPrice",
    "monthly_rent": "monthlyRent",
    "property_type": "propertyType",
    "beds": "beds",
    "baths": "baths",
    "area_sqm": "areaSqm",
    "latitude": "latitude",
    "longitude": "longitude",
    "ber_rating": "berRating",
    "eircode": "eircode",
    "furnishing": "furnishing",
    "source_url": "sourceUrl",
    "scraped_at": "scrapedAt",
}

COLUMN_ORDER = {
    SOLD: [
        "address",
        "soldDate",
        "soldPrice",
        "askingPrice",
        "propertyType",
        "beds",
        "baths",
        "areaSqm",
        "latitude",
        "longitude",
        "berRating",
        "eircode",
        "sourceUrl",
        "scrapedAt",
    ],
    LISTINGS: [
        "address",
        "askingPrice",
        "propertyType",
        "beds",
        "baths",
        "areaSqm",
        "berRating",
        "latitude",
        "longitude",
        "eircode",
        "sourceUrl",
        "scrapedAt",
    ],
    RENTALS: [
        "address",
        "monthlyRent",
        "propertyType",
        "beds",
        "baths",
        "areaSqm",
        "berRating",
        "furnishing",
        "latitude",
        "longitude",
        "eircode",
        "sourceUrl",
        "scrapedAt",
    ],
}

# Names used by older scraper generations.
FIELD_ALIASES = {
    "bedrooms": "beds",
    "bathrooms": "baths",
    "floorArea": "areaSqm",
    "daftUrl": "sourceUrl",
    "lat": "latitude",
    "lng": "longitude",
    "lon": "longitude",
}

PRICE_COLUMN = {SOLD: "soldPrice", LISTINGS: "askingPrice", RENTALS: "monthlyRent"}
DATE_COLUMN = {SOLD: "soldDate", LISTINGS: "scrapedAt", RENTALS: "scrapedAt"}

FLOAT_COLUMNS = ["soldPrice", "askingPrice", "monthlyRent", "areaSqm", "latitude", "longitude"]
INTEGER_COLUMNS = ["beds", "baths"]
TEXT_COLUMNS = [
    "address",
    "soldDate",
    "propertyType",
    "berRating",
    "eircode",
    "furnishing",
    "sourceUrl",
    "scrapedAt",
]

# Fields counted when choosing the most complete of two duplicate records.
OPTIONAL_COLUMNS = {
    SOLD: [
        "askingPrice",
        "propertyType",
        "beds",
        "baths",
        "areaSqm",
        "latitude",
        "longitude",
        "berRating",
        "eircode",
        "sourceUrl",
    ],
    LISTINGS: ["propertyType", "beds", "baths", "areaSqm", "berRating", "latitude", "longitude", "eircode"],
    RENTALS: ["propertyType", "beds", "baths", "areaSqm", "berRating", "latitude", "longitude", "eircode"],
}

DERIVED_COLUMNS = [
    "identityKey",
    "unmatched",
    "dublinPostcode",
    "pricePerAreaUnit",
    "overUnderAskingPercent",
    "estimatedYield",
    "yieldMonthlyRent",
    "yieldMatchMethod",
    "yieldMatchDistanceM",
    # Computed by older consolidation scripts.
    "pricePerSqm",
    "rentPerSqm",
    "yieldEstimate",
]


def to_payload(record: Any) -> Dict[str, Any]:
    """Return the camelCase snapshot payload for a record dataclass."""
    return {COLUMN_RENAMES[key]: value for key, value in asdict(record).items()}


def clean_string(value: Any) -> str:
    if value is None or value is pd.NA:
        return ""
    if isinstance(value, float) and np.isnan(value):
        return ""
    text = str(value)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def optional_text(value: Any) -> Optional[str]:
    if isinstance(value, (list, dict)):
        return None
    cleaned = clean_string(value)
    return cleaned or None


def normalise_numeric_series(series: pd.Series) -> pd.Series:
    if series.empty:
        return series
    cleaned = series.astype(str).str.replace("[€£$\\s\xa0\u202f,]", "", regex=True)
    cleaned = cleaned.replace({"": np.nan, "None": np.nan, "nan": np.nan, "null": np.nan, "<NA>": np.nan})
    return cleaned.infer_objects()


def to_float(series: pd.Series) -> pd.Series:
    normalised = normalise_numeric_series(series)
    coerced = pd.to_numeric(normalised, errors="coerce")
    return coerced.astype(float)


def to_int(series: pd.Series) -> pd.Series:
    normalised = normalise_numeric_series(series)
    coerced = pd.to_numeric(normalised, errors="coerce").round()
    return coerced.astype("Int64")


def apply_aliases(df: pd.DataFrame) -> pd.DataFrame:
    working = df
    for alias, canonical in FIELD_ALIASES.items():
        if alias not in working.columns:
            continue
        if canonical in working.columns:
            working[canonical] = working[canonical].where(working[canonical].notna(), working[alias])
        else:
            working[canonical] = working[alias]
        working = working.drop(columns=[alias])
    return working


def records_to_frame(records: Iterable[Dict[str, Any]], category: str) -> pd.DataFrame:
    """Coerce raw snapshot objects of one category into a uniformly typed frame.

    Canonical columns come first in schema order; unknown fields are kept after
    them in order of first appearance. Derived columns written by earlier runs
    are dropped so they are always recomputed.
    """
    if category not in COLUMN_ORDER:
        raise ValueError(f"Unknown snapshot category: {category}")
    working = pd.DataFrame(list(records))
    working = apply_aliases(working)
    working = working.drop(columns=[col for col in DERIVED_COLUMNS if col in working.columns])

    canonical = COLUMN_ORDER[category]
    for column in canonical:
        if column not in working.columns:
            working[column] = None

    for column in FLOAT_COLUMNS:
        if column in working.columns:
            working[column] = to_float(working[column])
    for column in INTEGER_COLUMNS:
        if column in working.columns:
            working[column] = to_int(working[column])
    for column in TEXT_COLUMNS:
        if column in working.columns:
            working[column] = working[column].map(optional_text).astype(object)

    extras: List[str] = [col for col in working.columns if col not in canonical]
    return working[canonical + extras].reset_index(drop=True)
