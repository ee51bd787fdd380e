"""Consolidate sold, listing and rental snapshots into one dashboard dataset.

Sold snapshots accumulate: every dated file is read and records describing the
same transaction are collapsed by identity key. Listings and rentals are
point-in-time, so only the newest snapshot is used. Derived fields are computed
fresh on every run and the result replaces the output file atomically.
"""

import argparse
import copy
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from pipelines.area_stats import rental_area_stats, sold_area_stats, tag_postcodes
from pipelines.derived_fields import DEFAULT_YIELD_RADIUS_M, RentalMatcher, compute_derived_fields, yield_coverage
from pipelines.errors import ConsolidationError, MonotonicityError, NoSnapshotsError
from pipelines.geo import DUBLIN_BOUNDS, Bounds, count_geocoded, validate_coordinates
from pipelines.merger import merge_category
from pipelines.snapshot_reader import FileSnapshotRepository, SnapshotRepository, load_category
from pipelines.writer import (
    build_document,
    read_previous_identity_keys,
    write_unified_dataset,
)
from snapshot_schema import CATEGORIES, LISTINGS, RENTALS, SOLD

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "data_dir": "data",
    "dirs": {SOLD: None, LISTINGS: None, RENTALS: None},
    "output": None,
    "dated_copy": False,
    "run_date": None,
    "parquet_dir": None,
    "allow_empty": False,
    "strict_monotonic": False,
    "yield_radius_m": DEFAULT_YIELD_RADIUS_M,
    "bounds": DUBLIN_BOUNDS,
}


@dataclass
class ConsolidationResult:
    properties: pd.DataFrame
    listings: pd.DataFrame
    rentals: pd.DataFrame
    stats: Dict[str, Any]
    summary: Dict[str, Any] = field(default_factory=dict)

    def document(self) -> Dict[str, Any]:
        return build_document(self.properties, self.listings, self.rentals, self.stats)

    def identity_keys(self) -> set:
        if self.properties.empty:
            return set()
        return set(self.properties["identityKey"].dropna())


def consolidate(
    repo: SnapshotRepository,
    yield_radius_m: float = DEFAULT_YIELD_RADIUS_M,
    bounds: Optional[Bounds] = DUBLIN_BOUNDS,
    allow_empty: bool = False,
    generated: Optional[str] = None,
) -> ConsolidationResult:
    """Run the full pipeline against ``repo`` without writing anything."""
    loads = {category: load_category(repo, category) for category in CATEGORIES}
    missing = [category for category in CATEGORIES if not loads[category].files_read]
    if missing:
        if not allow_empty:
            raise NoSnapshotsError(missing)
        logger.warning("Proceeding without snapshots for: %s", ", ".join(missing))

    merged = {}
    merge_stats = {}
    for category in CATEGORIES:
        merged[category], merge_stats[category] = merge_category(loads[category].frame, category)

    labels = {SOLD: "sold records", LISTINGS: "listings", RENTALS: "rentals"}
    for category in CATEGORIES:
        frame = validate_coordinates(merged[category], bounds, labels[category])
        merged[category] = tag_postcodes(frame)

    matcher = RentalMatcher(merged[RENTALS], radius_m=yield_radius_m)
    logger.info("Indexed %s rentals for yield matching (radius %.0fm).", f"{matcher.indexed:,}", yield_radius_m)
    properties, properties_with_yield = compute_derived_fields(merged[SOLD], SOLD, matcher)
    listings, listings_with_yield = compute_derived_fields(merged[LISTINGS], LISTINGS, matcher)
    rentals, _ = compute_derived_fields(merged[RENTALS], RENTALS)

    stats = {
        "generated": generated or datetime.now(timezone.utc).isoformat(),
        "propertiesCount": int(properties.shape[0]),
        "listingsCount": int(listings.shape[0]),
        "rentalsCount": int(rentals.shape[0]),
        "duplicatesDropped": merge_stats[SOLD].duplicates_dropped,
        "unmatchedProperties": merge_stats[SOLD].unmatched_kept,
        "geocodedProperties": count_geocoded(properties),
        "geocodedListings": count_geocoded(listings),
        "yieldCoverage": {
            "properties": yield_coverage(properties_with_yield, int(properties.shape[0])),
            "listings": yield_coverage(listings_with_yield, int(listings.shape[0])),
        },
        "snapshots": {
            category: {"read": loads[category].files_read, "skipped": loads[category].files_skipped}
            for category in CATEGORIES
        },
        "areaStats": rental_area_stats(rentals),
        "propertyAreaStats": sold_area_stats(properties),
    }
    summary = {
        "snapshots": {category: loads[category].summary() for category in CATEGORIES},
        "merge": {category: merge_stats[category].as_dict() for category in CATEGORIES},
        "listings": int(listings.shape[0]),
        "rentals": int(rentals.shape[0]),
        "properties_with_yield": properties_with_yield,
        "listings_with_yield": listings_with_yield,
    }
    return ConsolidationResult(properties, listings, rentals, stats, summary)


def check_monotonic(previous_keys: Optional[set], result: ConsolidationResult, strict: bool) -> int:
    """Compare sold identity keys with the previous output; return how many went missing."""
    if not previous_keys:
        return 0
    missing = previous_keys - result.identity_keys()
    if not missing:
        return 0
    if strict:
        raise MonotonicityError(missing)
    logger.warning(
        "%s sold records from the previous output are not in this run; was a sold snapshot removed?",
        len(missing),
    )
    return len(missing)


def resolve_output(config: Dict[str, Any]) -> Path:
    if config.get("output"):
        return Path(config["output"])
    return Path(config["data_dir"]) / "consolidated" / "data.json"


def run_consolidation(config: Dict[str, Any], repo: Optional[SnapshotRepository] = None) -> Dict[str, Any]:
    """Consolidate and write according to ``config``; return the run summary."""
    if repo is None:
        dirs = {category: path for category, path in (config.get("dirs") or {}).items() if path}
        repo = FileSnapshotRepository(Path(config["data_dir"]), dirs)
    output_path = resolve_output(config)

    result = consolidate(
        repo,
        yield_radius_m=config["yield_radius_m"],
        bounds=config["bounds"],
        allow_empty=config["allow_empty"],
    )
    missing = check_monotonic(read_previous_identity_keys(output_path), result, config["strict_monotonic"])

    dated_copy = None
    if config.get("dated_copy"):
        run_date = config.get("run_date") or datetime.now(timezone.utc).date().isoformat()
        dated_copy = output_path.parent / f"data-{run_date}.json"
    parquet_dir = Path(config["parquet_dir"]) if config.get("parquet_dir") else None
    frames = {"properties": result.properties, "listings": result.listings, "rentals": result.rentals}
    written: List[Path] = write_unified_dataset(result.document(), output_path, dated_copy, frames, parquet_dir)

    summary = dict(result.summary)
    summary["previous_records_missing"] = missing
    summary["written"] = [str(path) for path in written]
    return summary


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Consolidate property snapshots into one dataset.")
    parser.add_argument("--data-dir", help="Root containing sold/, listings/ and rentals/ (default: data).")
    parser.add_argument("--sold-dir", help="Override the sold snapshot directory.")
    parser.add_argument("--listings-dir", help="Override the listings snapshot directory.")
    parser.add_argument("--rentals-dir", help="Override the rentals snapshot directory.")
    parser.add_argument("--output", help="Output JSON path (default: <data-dir>/consolidated/data.json).")
    parser.add_argument("--dated-copy", action="store_true", help="Also write data-<run-date>.json next to the output.")
    parser.add_argument("--run-date", help="Run date (YYYY-MM-DD) used for the dated copy.")
    parser.add_argument("--parquet-dir", help="Also write one Parquet file per partition to this directory.")
    parser.add_argument(
        "--allow-empty",
        action="store_true",
        help="Write output even when a category has no readable snapshot.",
    )
    parser.add_argument(
        "--strict-monotonic",
        action="store_true",
        help="Fail instead of warning when sold records of the previous output would disappear.",
    )
    parser.add_argument("--yield-radius", type=float, help=f"Rental search radius in meters (default: {DEFAULT_YIELD_RADIUS_M:.0f}).")
    parser.add_argument("--bounds", type=Bounds.parse, help="Coordinate bounds as minLat,maxLat,minLng,maxLng.")
    parser.add_argument("--no-bounds", action="store_true", help="Disable coordinate bounds validation.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    config = copy.deepcopy(DEFAULT_CONFIG)
    if args.data_dir:
        config["data_dir"] = args.data_dir
    for category, value in ((SOLD, args.sold_dir), (LISTINGS, args.listings_dir), (RENTALS, args.rentals_dir)):
        if value:
            config["dirs"][category] = value
    if args.output:
        config["output"] = args.output
    if args.dated_copy:
        config["dated_copy"] = True
    if args.run_date:
        config["run_date"] = args.run_date
    if args.parquet_dir:
        config["parquet_dir"] = args.parquet_dir
    if args.allow_empty:
        config["allow_empty"] = True
    if args.strict_monotonic:
        config["strict_monotonic"] = True
    if args.yield_radius is not None:
        config["yield_radius_m"] = args.yield_radius
    if args.bounds is not None:
        config["bounds"] = args.bounds
    if args.no_bounds:
        config["bounds"] = None
    return config


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    config = build_config(args)
    if config["yield_radius_m"] <= 0:
        logger.error("--yield-radius must be positive.")
        return 2
    try:
        summary = run_consolidation(config)
    except ConsolidationError as exc:
        logger.error("Consolidation failed: %s", exc)
        return 1
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
