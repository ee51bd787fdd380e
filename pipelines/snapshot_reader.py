"""Load scrape snapshots per category from a repository of JSON files."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from snapshot_schema import CATEGORIES, LISTINGS, RENTALS, SOLD, records_to_frame

logger = logging.getLogger(__name__)

_FILENAME_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})")

DEFAULT_DIRS = {
    SOLD: "sold",
    LISTINGS: "listings",
    RENTALS: "rentals",
}


class SnapshotFormatError(ValueError):
    """A snapshot file is not a JSON array of objects."""


@dataclass
class SnapshotRef:
    """One snapshot as seen by a repository."""

    category: str
    name: str
    modified_at: float = 0.0

    @property
    def snapshot_date(self) -> Optional[date]:
        return filename_date(self.name)


@dataclass
class CategoryLoad:
    category: str
    frame: pd.DataFrame
    files_found: int = 0
    files_read: List[str] = field(default_factory=list)
    files_skipped: List[str] = field(default_factory=list)

    @property
    def records(self) -> int:
        return int(self.frame.shape[0])

    def summary(self) -> Dict[str, Any]:
        return {
            "files_found": self.files_found,
            "files_read": len(self.files_read),
            "files_skipped": len(self.files_skipped),
            "records": self.records,
        }


def filename_date(name: str) -> Optional[date]:
    match = _FILENAME_DATE_RE.search(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_snapshot_payload(payload: Any, name: str) -> List[Dict[str, Any]]:
    if not isinstance(payload, list):
        raise SnapshotFormatError(f"{name}: expected a JSON array, got {type(payload).__name__}")
    records = [item for item in payload if isinstance(item, dict)]
    dropped = len(payload) - len(records)
    if dropped:
        logger.warning("%s: dropped %s array elements that are not objects.", name, dropped)
    return records


class SnapshotRepository:
    """Read access to the raw snapshots of every category."""

    def list_snapshots(self, category: str) -> List[SnapshotRef]:
        raise NotImplementedError

    def load_snapshot(self, ref: SnapshotRef) -> List[Dict[str, Any]]:
        """Return the records of one snapshot; raise ValueError when it is malformed."""
        raise NotImplementedError


class FileSnapshotRepository(SnapshotRepository):
    """Snapshots stored as ``<root>/<category dir>/*.json``."""

    def __init__(self, root: Path, dirs: Optional[Dict[str, Path]] = None) -> None:
        self.root = Path(root)
        self.dirs: Dict[str, Path] = {}
        for category in CATEGORIES:
            configured = (dirs or {}).get(category)
            self.dirs[category] = Path(configured) if configured else self.root / DEFAULT_DIRS[category]

    def list_snapshots(self, category: str) -> List[SnapshotRef]:
        directory = self.dirs[category]
        if not directory.is_dir():
            logger.info("Directory not found: %s", directory)
            return []
        refs = [
            SnapshotRef(category=category, name=path.name, modified_at=path.stat().st_mtime)
            for path in directory.glob("*.json")
            if path.is_file()
        ]
        return sorted(refs, key=lambda ref: ref.name)

    def load_snapshot(self, ref: SnapshotRef) -> List[Dict[str, Any]]:
        path = self.dirs[ref.category] / ref.name
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        return parse_snapshot_payload(payload, ref.name)


class InMemorySnapshotRepository(SnapshotRepository):
    """Repository over in-memory payloads, keyed by category then snapshot name.

    A payload given as ``str`` is parsed as JSON on load, so corrupt files can be
    simulated with invalid text.
    """

    def __init__(self, snapshots: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.snapshots: Dict[str, Dict[str, Any]] = {category: {} for category in CATEGORIES}
        self._mtimes: Dict[Tuple[str, str], float] = {}
        for category, named in (snapshots or {}).items():
            for name, payload in named.items():
                self.add(category, name, payload)

    def add(self, category: str, name: str, payload: Any, modified_at: Optional[float] = None) -> None:
        self.snapshots[category][name] = payload
        self._mtimes[(category, name)] = (
            modified_at if modified_at is not None else float(len(self._mtimes))
        )

    def list_snapshots(self, category: str) -> List[SnapshotRef]:
        return [
            SnapshotRef(category=category, name=name, modified_at=self._mtimes[(category, name)])
            for name in sorted(self.snapshots.get(category, {}))
        ]

    def load_snapshot(self, ref: SnapshotRef) -> List[Dict[str, Any]]:
        payload = self.snapshots[ref.category][ref.name]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return parse_snapshot_payload(payload, ref.name)


def newest_first(refs: Iterable[SnapshotRef]) -> List[SnapshotRef]:
    """Order snapshots newest first.

    Filename dates win whenever any snapshot carries one; undated snapshots are
    then considered only after every dated one. With no dated snapshot at all,
    modification time decides.
    """
    refs = list(refs)
    dated = [ref for ref in refs if ref.snapshot_date is not None]
    undated = [ref for ref in refs if ref.snapshot_date is None]
    if dated:
        dated.sort(key=lambda ref: (ref.snapshot_date, ref.name), reverse=True)
        undated.sort(key=lambda ref: (ref.modified_at, ref.name), reverse=True)
        return dated + undated
    return sorted(refs, key=lambda ref: (ref.modified_at, ref.name), reverse=True)


def _try_load(repo: SnapshotRepository, ref: SnapshotRef) -> Optional[List[Dict[str, Any]]]:
    try:
        return repo.load_snapshot(ref)
    except (OSError, ValueError) as exc:
        # json.JSONDecodeError and SnapshotFormatError are both ValueErrors.
        logger.warning("Skipping unreadable %s snapshot %s: %s", ref.category, ref.name, exc)
        return None


def _tag(frame: pd.DataFrame, ref: SnapshotRef) -> pd.DataFrame:
    frame["_snapshot"] = ref.name
    return frame


def load_all(repo: SnapshotRepository, category: str) -> CategoryLoad:
    """Read every snapshot of a category (historical accumulation)."""
    refs = repo.list_snapshots(category)
    result = CategoryLoad(category=category, frame=records_to_frame([], category), files_found=len(refs))
    if not refs:
        logger.warning("No %s snapshots found.", category)
        return result
    logger.info("Found %s %s snapshot file(s).", len(refs), category)

    frames: List[pd.DataFrame] = []
    for ref in refs:
        records = _try_load(repo, ref)
        if records is None:
            result.files_skipped.append(ref.name)
            continue
        logger.info("  %s: %s records", ref.name, f"{len(records):,}")
        frames.append(_tag(records_to_frame(records, category), ref))
        result.files_read.append(ref.name)

    if frames:
        result.frame = pd.concat(frames, ignore_index=True, sort=False)
    return result


def load_latest(repo: SnapshotRepository, category: str) -> CategoryLoad:
    """Read only the newest snapshot of a category (latest-wins).

    Older snapshots are never consulted, so an unreadable newest file leaves
    the category empty.
    """
    refs = repo.list_snapshots(category)
    result = CategoryLoad(category=category, frame=records_to_frame([], category), files_found=len(refs))
    if not refs:
        logger.warning("No %s snapshots found.", category)
        return result

    ref = newest_first(refs)[0]
    records = _try_load(repo, ref)
    if records is None:
        result.files_skipped.append(ref.name)
        return result
    logger.info(
        "Using latest %s snapshot %s of %s file(s): %s records",
        category,
        ref.name,
        len(refs),
        f"{len(records):,}",
    )
    result.frame = _tag(records_to_frame(records, category), ref)
    result.files_read.append(ref.name)
    return result


def load_category(repo: SnapshotRepository, category: str) -> CategoryLoad:
    if category == SOLD:
        return load_all(repo, category)
    return load_latest(repo, category)
