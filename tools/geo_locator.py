"""Geocode snapshot records that lack coordinates using Nominatim."""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests import Response
from tqdm import tqdm

from pipelines.geo import DUBLIN_BOUNDS, Bounds, coordinate
from pipelines.snapshot_reader import parse_snapshot_payload
from pipelines.writer import atomic_write_json

logger = logging.getLogger(__name__)

DEFAULT_NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
_EIRCODE_RE = re.compile(r"\b[A-Z]\d{2}\s?[A-Z0-9]{4}\b", flags=re.IGNORECASE)


class RateLimiter:
    """Spaces out requests; Nominatim's usage policy allows one per second."""

    def __init__(self, min_interval_sec: float = 1.0) -> None:
        self.min_interval = max(0.0, float(min_interval_sec))
        self._next_allowed = 0.0

    def wait(self) -> None:
        if self.min_interval <= 0:
            return
        delay = self._next_allowed - time.monotonic()
        if delay > 0:
            time.sleep(delay)
        self._next_allowed = time.monotonic() + self.min_interval


def clean_address(address: str) -> str:
    """Strip unit prefixes and repeated county suffixes that confuse the geocoder."""
    text = address or ""
    text = re.sub(r",?\s*Dublin,\s*Dublin$", ", Dublin", text, flags=re.IGNORECASE)
    text = re.sub(r",?\s*Dublin\s*\d+,\s*Dublin\s*\d+", ", Dublin", text, flags=re.IGNORECASE)
    text = re.sub(r",?\s*Dublin\s*\d+,\s*Dublin$", ", Dublin", text, flags=re.IGNORECASE)
    text = re.sub(r"^(Apt|Apartment|Unit|No)\.?\s*\d+[\s,\-]*", "", text, flags=re.IGNORECASE)
    text = re.sub(r",\s*,", ",", text)
    return text.strip()


def address_variations(address: str, country: str) -> List[str]:
    """Queries from most to least specific, without duplicates."""
    cleaned = clean_address(address)
    parts = [part.strip() for part in cleaned.split(",") if part.strip()]
    if not parts:
        return []
    suffix = f", {country}" if country else ""
    variations = [f"{cleaned}{suffix}"]
    if len(parts) >= 4:
        variations.append(f"{parts[0]}, {', '.join(parts[-2:])}{suffix}")
    if len(parts) >= 3:
        variations.append(f"{parts[0]}, {parts[-2]}{suffix}")
    variations.append(f"{parts[0]}{suffix}")
    without_number = re.sub(r"^\d+[a-z]?\s+", "", parts[0], flags=re.IGNORECASE)
    if without_number != parts[0] and len(parts) >= 2:
        variations.append(f"{without_number}, {parts[-2]}{suffix}")
        if len(parts) >= 3:
            variations.append(f"{without_number}, {', '.join(parts[-2:])}{suffix}")
    if len(parts) >= 2:
        variations.append(f"{', '.join(parts[-2:])}{suffix}")
    return list(dict.fromkeys(variations))


def cache_key(address: Optional[str], country: str) -> str:
    return f"{(address or '').strip().lower()}|{(country or '').strip().lower()}"


def cache_load(path: str) -> Dict[str, Dict[str, object]]:
    """Read the geocode cache; a missing or unreadable file gives an empty cache."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return {}
    except (ValueError, OSError) as exc:
        logger.warning("Ignoring unreadable geocode cache %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring geocode cache %s: expected a JSON object.", path)
        return {}
    return {key: entry for key, entry in data.items() if isinstance(entry, dict)}


def cache_save(path: str, cache: Dict[str, Dict[str, object]]) -> None:
    atomic_write_json(Path(path), cache)


def extract_eircode(display_name: str) -> Optional[str]:
    match = _EIRCODE_RE.search(display_name or "")
    return match.group(0).upper() if match else None


def _parse_response(resp: Response) -> Optional[Tuple[float, float, str]]:
    try:
        resp.raise_for_status()
        data = resp.json()
    except (ValueError, requests.HTTPError):
        return None
    if not isinstance(data, list) or not data:
        return None
    first = data[0]
    try:
        lat = float(first["lat"])
        lon = float(first["lon"])
    except (KeyError, ValueError, TypeError):
        return None
    return lat, lon, str(first.get("display_name") or "")


def geocode_nominatim(
    query: str,
    user_agent: str,
    rl: RateLimiter,
    url: str = DEFAULT_NOMINATIM_URL,
) -> Optional[Tuple[float, float, str]]:
    """Call Nominatim to geocode a query."""
    rl.wait()
    params = {"format": "json", "limit": 1, "q": query}
    headers = {
        "User-Agent": user_agent,
        "Accept": "application/json",
    }
    try:
        response = requests.get(url, params=params, headers=headers, timeout=20)
    except requests.RequestException:
        return None
    return _parse_response(response)


def _needs_geocoding(record: Dict[str, Any], retry_not_found: bool) -> bool:
    if coordinate(record.get("latitude")) is not None and coordinate(record.get("longitude")) is not None:
        return False
    status = record.get("geocodeStatus")
    if status == "not_found" and not retry_not_found:
        return False
    return bool((record.get("address") or "").strip())


def fill_coordinates(
    records: List[Dict[str, Any]],
    country: str,
    user_agent: str,
    cache_path: str,
    bounds: Optional[Bounds] = DUBLIN_BOUNDS,
    max_new: Optional[int] = None,
    retry_not_found: bool = False,
    url: str = DEFAULT_NOMINATIM_URL,
    min_interval_sec: float = 1.0,
) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """
    Fills missing latitude/longitude using cache + Nominatim, respecting max_new.
    Results outside ``bounds`` are rejected and the next address variation is tried.
    Returns (records, stats dict).
    Stats keys: total, with_coords, missing_coords, cache_hits, geocoded_now, failures, out_of_bounds, capped.
    """
    working = [dict(record) for record in records]
    cache = cache_load(cache_path)
    rl = RateLimiter(min_interval_sec)

    stats: Dict[str, Any] = {
        "total": len(working),
        "with_coords": 0,
        "missing_coords": 0,
        "cache_hits": 0,
        "geocoded_now": 0,
        "failures": 0,
        "out_of_bounds": 0,
        "capped": False,
    }

    new_calls = 0
    pending = [record for record in working if _needs_geocoding(record, retry_not_found)]

    for record in tqdm(pending, total=len(pending), desc="Geocoding", unit="record"):
        address = record["address"]
        key = cache_key(address, country)
        cached = cache.get(key)
        if cached is not None:
            try:
                record["latitude"] = float(cached["lat"])
                record["longitude"] = float(cached["lng"])
                record["nominatimAddress"] = cached.get("display_name")
                record["eircode"] = record.get("eircode") or extract_eircode(str(cached.get("display_name") or ""))
                record["geocodeStatus"] = "success"
                stats["cache_hits"] += 1
                continue
            except (KeyError, ValueError, TypeError):
                pass

        if max_new is not None and new_calls >= max_new:
            stats["capped"] = True
            stats["failures"] += 1
            continue

        found = None
        for query in address_variations(address, country):
            if max_new is not None and new_calls >= max_new:
                stats["capped"] = True
                break
            result = geocode_nominatim(query, user_agent, rl, url=url)
            new_calls += 1
            if result is None:
                continue
            lat, lng, display_name = result
            if bounds is not None and not bounds.contains(lat, lng):
                stats["out_of_bounds"] += 1
                logger.debug("Rejected out-of-bounds result for %r: %s, %s", query, lat, lng)
                continue
            found = result
            break

        if found is None:
            record["geocodeStatus"] = "not_found"
            stats["failures"] += 1
            continue

        lat, lng, display_name = found
        record["latitude"] = lat
        record["longitude"] = lng
        record["nominatimAddress"] = display_name
        record["eircode"] = record.get("eircode") or extract_eircode(display_name)
        record["geocodeStatus"] = "success"
        cache[key] = {
            "lat": lat,
            "lng": lng,
            "display_name": display_name,
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        stats["geocoded_now"] += 1

    stats["with_coords"] = sum(
        1
        for record in working
        if coordinate(record.get("latitude")) is not None and coordinate(record.get("longitude")) is not None
    )
    stats["missing_coords"] = stats["total"] - stats["with_coords"]

    cache_save(cache_path, cache)
    return working, stats


def _parse_bool(value: str) -> bool:
    return value.lower() in {"1", "true", "yes", "y", "on"}


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s", stream=sys.stdout)
    parser = argparse.ArgumentParser(description="Geocode missing coordinates in a snapshot file.")
    parser.add_argument("--snapshot", required=True, help="Input snapshot JSON path.")
    parser.add_argument("--out", help="Output snapshot path (required unless --in-place).")
    parser.add_argument("--in-place", action="store_true", help="Overwrite the input snapshot.")
    parser.add_argument("--cache", default="data/geocode_cache.json", help="Cache JSON path.")
    parser.add_argument("--country", default="Ireland", help="Country appended to queries.")
    parser.add_argument("--user-agent", required=True, help="User-Agent header for Nominatim requests.")
    parser.add_argument("--nominatim-url", default=DEFAULT_NOMINATIM_URL, help="Nominatim search endpoint.")
    parser.add_argument("--max-new", type=int, default=None, help="Maximum number of new geocode API calls.")
    parser.add_argument("--retry-not-found", action="store_true", help="Retry records previously marked not_found.")
    parser.add_argument("--bounds", type=Bounds.parse, help="Accepted bounds as minLat,maxLat,minLng,maxLng.")
    parser.add_argument("--no-bounds", action="store_true", help="Accept results anywhere.")
    parser.add_argument("--dry-run", default="false", help="If true, do not write output.")
    args = parser.parse_args(argv)

    dry_run = _parse_bool(str(args.dry_run))
    if not args.in_place and not args.out:
        parser.error("--out is required unless --in-place is specified.")

    input_path = Path(args.snapshot)
    output_path = input_path if args.in_place else Path(args.out)
    bounds = None if args.no_bounds else (args.bounds or DUBLIN_BOUNDS)

    try:
        with input_path.open("r", encoding="utf-8") as handle:
            records = parse_snapshot_payload(json.load(handle), input_path.name)
    except (OSError, ValueError) as exc:
        logger.error("Cannot read snapshot %s: %s", input_path, exc)
        return 1

    records, stats = fill_coordinates(
        records,
        country=args.country,
        user_agent=args.user_agent,
        cache_path=args.cache,
        bounds=bounds,
        max_new=args.max_new,
        retry_not_found=args.retry_not_found,
        url=args.nominatim_url,
    )

    report = (
        f"Rows: {stats['total']}  | With coords: {stats['with_coords']}  | Missing: {stats['missing_coords']}\n"
        f"Cache hits: {stats['cache_hits']}  | Geocoded now: {stats['geocoded_now']}  | Failures: {stats['failures']}"
        f"  | Out of bounds: {stats['out_of_bounds']}  | Capped: {str(stats['capped']).lower()}"
    )
    print(report)

    if dry_run:
        print("Dry-run mode enabled; not writing output snapshot.")
        return 0

    atomic_write_json(output_path, records)
    print(f"Wrote {output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
