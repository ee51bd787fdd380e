"""Merge snapshot rows per category: accumulate-and-dedupe or latest-wins."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import pandas as pd

from pipelines.identity import assign_identity_keys
from snapshot_schema import DATE_COLUMN, LISTINGS, OPTIONAL_COLUMNS, RENTALS, SOLD

logger = logging.getLogger(__name__)


@dataclass
class MergeStats:
    rows_in: int = 0
    rows_out: int = 0
    duplicates_dropped: int = 0
    unmatched_kept: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "rows_in": self.rows_in,
            "rows_out": self.rows_out,
            "duplicates_dropped": self.duplicates_dropped,
            "unmatched_kept": self.unmatched_kept,
        }


def completeness_score(df: pd.DataFrame, category: str) -> pd.Series:
    """Count non-null optional fields per row."""
    columns = [col for col in OPTIONAL_COLUMNS[category] if col in df.columns]
    if not columns:
        return pd.Series(0, index=df.index, dtype="int64")
    return df[columns].notna().sum(axis=1).astype("int64")


def parse_timestamps(series: pd.Series) -> pd.Series:
    """ISO dates first; anything else is read day-first (``15/01/2024``)."""
    parsed = pd.to_datetime(series, errors="coerce", utc=True, format="ISO8601")
    rest = parsed.isna() & series.notna()
    if not rest.any():
        return parsed
    fallback = pd.to_datetime(series[rest], errors="coerce", utc=True, format="mixed", dayfirst=True)
    return parsed.combine_first(fallback)


def accumulate_and_dedupe(df: pd.DataFrame, category: str = SOLD) -> Tuple[pd.DataFrame, MergeStats]:
    """Collapse rows sharing an identity key into their most complete version.

    Rows without an identity key are never deduplicated. Among colliding rows
    the one with the most non-null optional fields wins, then the latest
    ``scrapedAt``, then the earliest loaded row. The result is ordered by the
    category date ascending (undated rows last), then identity key.
    """
    stats = MergeStats(rows_in=int(df.shape[0]))
    working = assign_identity_keys(df, category)
    if working.empty:
        return working.reset_index(drop=True), stats

    working["_load_order"] = range(len(working))
    working["_completeness"] = completeness_score(working, category)
    working["_scraped_ts"] = parse_timestamps(working["scrapedAt"])

    matched = working[~working["unmatched"]]
    unmatched = working[working["unmatched"]]

    ranked = matched.sort_values(
        ["identityKey", "_completeness", "_scraped_ts", "_load_order"],
        ascending=[True, False, False, True],
        na_position="last",
        kind="mergesort",
    )
    deduped = ranked.drop_duplicates(subset=["identityKey"], keep="first")

    stats.duplicates_dropped = int(matched.shape[0] - deduped.shape[0])
    stats.unmatched_kept = int(unmatched.shape[0])

    merged = pd.concat([deduped, unmatched], sort=False)
    merged["_date_sort"] = parse_timestamps(merged[DATE_COLUMN[category]])
    merged["_key_sort"] = merged["identityKey"].fillna("")
    merged = merged.sort_values(
        ["_date_sort", "_key_sort", "_load_order"],
        ascending=[True, True, True],
        na_position="last",
        kind="mergesort",
    )
    merged = merged.drop(columns=["_completeness", "_scraped_ts", "_date_sort", "_key_sort", "_load_order"])
    merged = merged.reset_index(drop=True)

    stats.rows_out = int(merged.shape[0])
    logger.info(
        "Merged %s %s rows into %s unique records (%s duplicates dropped, %s without identity kept).",
        f"{stats.rows_in:,}",
        category,
        f"{stats.rows_out:,}",
        f"{stats.duplicates_dropped:,}",
        f"{stats.unmatched_kept:,}",
    )
    return merged, stats


def latest_wins(df: pd.DataFrame, category: str) -> Tuple[pd.DataFrame, MergeStats]:
    """Keep the latest snapshot as loaded, in source file order."""
    working = assign_identity_keys(df, category)
    # Point-in-time records are not deduplicated, so the flag carries no meaning.
    working = working.drop(columns=["unmatched"])
    working = working.reset_index(drop=True)
    stats = MergeStats(rows_in=int(df.shape[0]), rows_out=int(working.shape[0]))
    logger.info("Kept %s %s records from the latest snapshot.", f"{stats.rows_out:,}", category)
    return working, stats


MERGE_STRATEGIES: Dict[str, Callable[[pd.DataFrame, str], Tuple[pd.DataFrame, MergeStats]]] = {
    SOLD: accumulate_and_dedupe,
    LISTINGS: latest_wins,
    RENTALS: latest_wins,
}


def merge_category(
    df: pd.DataFrame,
    category: str,
    strategies: Optional[Dict[str, Callable[[pd.DataFrame, str], Tuple[pd.DataFrame, MergeStats]]]] = None,
) -> Tuple[pd.DataFrame, MergeStats]:
    strategy = (strategies or MERGE_STRATEGIES)[category]
    return strategy(df, category)
