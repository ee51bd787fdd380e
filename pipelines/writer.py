"""Serialize the unified dataset and replace output files atomically."""

from __future__ import annotations

import json
import logging
import math
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from pipelines.errors import OutputWriteError

logger = logging.getLogger(__name__)

PARTITIONS = ("properties", "listings", "rentals")


def to_serialisable(value: Any) -> Any:
    """Convert numpy/pandas scalars to JSON values; NaN, NA and infinities become None."""
    if value is None or value is pd.NA or value is pd.NaT:
        return None
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, np.ndarray):
        return [to_serialisable(elem) for elem in value.tolist()]
    if isinstance(value, (list, tuple)):
        return [to_serialisable(elem) for elem in value]
    if isinstance(value, dict):
        return {key: to_serialisable(val) for key, val in value.items()}
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    return value


def public_columns(df: pd.DataFrame) -> List[str]:
    return [column for column in df.columns if not str(column).startswith("_")]


def frame_to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    columns = public_columns(df)
    return [
        {column: to_serialisable(value) for column, value in zip(columns, row)}
        for row in df[columns].itertuples(index=False, name=None)
    ]


def build_document(
    properties: pd.DataFrame,
    listings: pd.DataFrame,
    rentals: pd.DataFrame,
    stats: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "properties": frame_to_records(properties),
        "listings": frame_to_records(listings),
        "rentals": frame_to_records(rentals),
    }
    if stats is not None:
        document["stats"] = to_serialisable(stats)
    return document


def dumps_document(document: Dict[str, Any]) -> str:
    return json.dumps(document, ensure_ascii=False, indent=2, allow_nan=False) + "\n"


def stage_file(path: Path, write: Callable[[Path], None]) -> Path:
    """Run ``write`` against a temporary sibling of ``path`` and return the sibling.

    The data has reached disk when this returns. On any failure the temporary
    file is removed and ``path`` is left as it was.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as exc:
        raise OutputWriteError(f"Cannot prepare output location {path.parent}: {exc}") from exc
    os.close(handle)
    tmp_path = Path(tmp_name)
    try:
        write(tmp_path)
        with open(tmp_path, "rb") as written:
            os.fsync(written.fileno())
    except Exception as exc:
        discard_staged([(tmp_path, path)])
        if isinstance(exc, OutputWriteError):
            raise
        raise OutputWriteError(f"Failed to write {path}: {exc}") from exc
    return tmp_path


def discard_staged(staged: Sequence[Tuple[Path, Path]]) -> None:
    for tmp_path, _ in staged:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass


def commit_staged(staged: Sequence[Tuple[Path, Path]]) -> List[Path]:
    """Move staged files over their targets in order and return the targets."""
    written: List[Path] = []
    for position, (tmp_path, target) in enumerate(staged):
        try:
            os.replace(tmp_path, target)
        except OSError as exc:
            discard_staged(staged[position:])
            updated = ", ".join(str(path) for path in written) or "none"
            raise OutputWriteError(f"Failed to replace {target}: {exc} (already updated: {updated})") from exc
        logger.info("Written to: %s", target)
        written.append(Path(target))
    return written


def atomic_write(path: Path, write: Callable[[Path], None]) -> None:
    commit_staged([(stage_file(path, write), Path(path))])


def _text_writer(text: str) -> Callable[[Path], None]:
    def _write(tmp_path: Path) -> None:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(text)

    return _write


def _parquet_writer(df: pd.DataFrame) -> Callable[[Path], None]:
    columns = public_columns(df)

    def _write(tmp_path: Path) -> None:
        df[columns].to_parquet(tmp_path, index=False, compression="zstd")

    return _write


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write(path, _text_writer(text))


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(to_serialisable(payload), ensure_ascii=False, indent=2) + "\n")


def write_unified_dataset(
    document: Dict[str, Any],
    output_path: Path,
    dated_copy: Optional[Path] = None,
    parquet_frames: Optional[Dict[str, pd.DataFrame]] = None,
    parquet_dir: Optional[Path] = None,
) -> List[Path]:
    """Write the JSON output, its dated copy and the Parquet mirror as one batch.

    Every artifact is staged next to its target first. Targets are replaced
    only after all of them were staged, so a failed Parquet export leaves the
    previous JSON output untouched.
    """
    text = dumps_document(document)
    plan: List[Tuple[Path, Callable[[Path], None]]] = [(Path(output_path), _text_writer(text))]
    if dated_copy:
        plan.append((Path(dated_copy), _text_writer(text)))
    if parquet_dir is not None:
        frames = parquet_frames or {}
        for name in PARTITIONS:
            frame = frames.get(name, pd.DataFrame())
            plan.append((Path(parquet_dir) / f"{name}.parquet", _parquet_writer(frame)))

    staged: List[Tuple[Path, Path]] = []
    try:
        for target, write in plan:
            staged.append((stage_file(target, write), target))
    except OutputWriteError:
        discard_staged(staged)
        raise
    return commit_staged(staged)


def read_previous_identity_keys(path: Path) -> Optional[set]:
    """Return identity keys of sold records in a previous output, or None if unavailable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as handle:
            document = json.load(handle)
    except (OSError, ValueError) as exc:
        logger.warning("Previous output %s is unreadable; skipping monotonicity check: %s", path, exc)
        return None
    properties = document.get("properties") if isinstance(document, dict) else None
    if not isinstance(properties, list):
        return None
    return {
        record["identityKey"]
        for record in properties
        if isinstance(record, dict) and record.get("identityKey")
    }
