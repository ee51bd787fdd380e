"""Identity keys used to recognise the same transaction across snapshots."""

from __future__ import annotations

import math
import re
from typing import Any, Optional

import pandas as pd

from snapshot_schema import DATE_COLUMN, PRICE_COLUMN, SOLD, clean_string

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_ISO_DAY_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})")


def normalize_address(value: Any) -> str:
    """Lowercase, drop punctuation and collapse whitespace.

    ``"12, Main St.,  Dublin 4"`` and ``"12 main st dublin 4"`` both normalise
    to ``"12 main st dublin 4"``.
    """
    text = clean_string(value).lower()
    if not text:
        return ""
    text = _PUNCTUATION_RE.sub(" ", text).replace("_", " ")
    return _WHITESPACE_RE.sub(" ", text).strip()


def day_component(value: Any) -> str:
    """Return the value truncated to an ISO day, or '' when it cannot be parsed."""
    text = clean_string(value)
    if not text:
        return ""
    match = _ISO_DAY_RE.match(text)
    if match:
        return match.group(1)
    parsed = pd.to_datetime(text, errors="coerce", dayfirst=True)
    if pd.isna(parsed):
        return text.lower()
    return parsed.date().isoformat()


def price_component(value: Any) -> str:
    """Round a price half-up to the nearest currency unit."""
    if value is None or value is pd.NA:
        return ""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return ""
    if math.isnan(number) or math.isinf(number):
        return ""
    return str(int(math.floor(number + 0.5)))


def identity_key(record: Any, category: str = SOLD) -> Optional[str]:
    """Return the identity key of a record, or None when it has no address."""
    address = normalize_address(record.get("address"))
    if not address:
        return None
    parts = [
        address,
        day_component(record.get(DATE_COLUMN[category])),
        price_component(record.get(PRICE_COLUMN[category])),
    ]
    return "|".join(parts)


def assign_identity_keys(df: pd.DataFrame, category: str = SOLD) -> pd.DataFrame:
    """Tag every row with ``identityKey`` and ``unmatched``."""
    working = df.copy()
    if working.empty:
        working["identityKey"] = pd.Series(dtype=object)
        working["unmatched"] = pd.Series(dtype=bool)
        return working
    keys = [identity_key(row, category) for row in working.to_dict("records")]
    working["identityKey"] = pd.Series(keys, index=working.index, dtype=object)
    working["unmatched"] = working["identityKey"].isna()
    return working
