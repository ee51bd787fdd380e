import argparse
import copy
import logging
import os
import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from pipelines.snapshot_reader import FileSnapshotRepository, newest_first
from snapshot_schema import LISTINGS, RENTALS, SOLD


DEFAULT_CONFIG = {
    "migrate": {
        "enabled": True,
        "data_dir": "data",
    },
    "geocode": {
        "enabled": False,
        "user_agent": None,
        "categories": [LISTINGS, RENTALS],
        "cache": "data/geocode_cache.json",
        "max_new": None,
    },
    "consolidate": {
        "enabled": True,
        "data_dir": "data",
        "output": None,
        "dated_copy": True,
        "parquet_dir": None,
        "allow_empty": False,
        "strict_monotonic": False,
        "verbose": False,
    },
    "lock_file": None,
}


class LockHeldError(RuntimeError):
    """Another consolidation holds the lock for the same output."""


def lock_owner(path: Path) -> Optional[int]:
    """PID recorded in a lock file, or None when it cannot be read."""
    try:
        text = path.read_text(encoding="ascii").strip()
    except (OSError, ValueError):
        return None
    return int(text) if text.isdigit() else None


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _create_lock(path: Path) -> int:
    try:
        return os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        pass
    owner = lock_owner(path)
    if owner is None or process_alive(owner):
        holder = f"process {owner}" if owner is not None else "an unknown process"
        raise LockHeldError(
            f"Lock file {path} is held by {holder}; remove it manually if no consolidation is running."
        )
    logging.warning("Removing stale lock file %s left by process %s", path, owner)
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    try:
        return os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError as exc:
        raise LockHeldError(f"Lock file {path} was taken by another run.") from exc


@contextmanager
def exclusive_lock(path: Path) -> Iterator[Path]:
    """Hold ``path`` as a PID lock file; locks of dead processes are reclaimed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = _create_lock(path)
    try:
        os.write(handle, f"{os.getpid()}\n".encode("ascii"))
        os.close(handle)
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def build_migrate_command(config: Dict[str, object]) -> List[str]:
    return [sys.executable, "-m", "tools.migrate_data", "--data-dir", str(config["data_dir"])]


def build_geocode_command(config: Dict[str, object], snapshot: Path) -> List[str]:
    cmd = [
        sys.executable,
        "-m",
        "tools.geo_locator",
        "--snapshot",
        str(snapshot),
        "--in-place",
        "--user-agent",
        str(config["user_agent"]),
        "--cache",
        str(config["cache"]),
    ]
    if config.get("max_new") is not None:
        cmd.extend(["--max-new", str(config["max_new"])])
    return cmd


def build_consolidate_command(config: Dict[str, object]) -> List[str]:
    cmd = [
        sys.executable,
        "consolidate.py",
        "--data-dir",
        str(config["data_dir"]),
    ]
    if config.get("output"):
        cmd.extend(["--output", str(config["output"])])
    if config.get("parquet_dir"):
        cmd.extend(["--parquet-dir", str(config["parquet_dir"])])
    if config.get("dated_copy"):
        cmd.append("--dated-copy")
    if config.get("allow_empty"):
        cmd.append("--allow-empty")
    if config.get("strict_monotonic"):
        cmd.append("--strict-monotonic")
    if config.get("verbose"):
        cmd.append("--verbose")
    return cmd


def latest_snapshot_paths(data_dir: Path, categories: Sequence[str]) -> List[Path]:
    """Newest snapshot file per category, in the order consolidation would pick them."""
    repo = FileSnapshotRepository(data_dir)
    paths: List[Path] = []
    for category in categories:
        refs = newest_first(repo.list_snapshots(category))
        if refs:
            paths.append(repo.dirs[category] / refs[0].name)
    return paths


def resolve_lock_file(config: Dict[str, object]) -> Path:
    if config.get("lock_file"):
        return Path(config["lock_file"])
    output = config["consolidate"].get("output")
    if output:
        output_path = Path(output)
        return output_path.parent / f".{output_path.name}.lock"
    return Path(config["consolidate"]["data_dir"]) / "consolidated" / ".data.json.lock"


def run_command(label: str, command: List[str], cwd: Path) -> None:
    logging.info("Running %s command: %s", label, " ".join(command))
    result = subprocess.run(command, cwd=cwd, check=False)
    if result.returncode != 0:
        raise RuntimeError(f"{label} command failed with exit code {result.returncode}")


def load_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Runner for the migrate, geocode and consolidate pipeline.")
    parser.add_argument("--data-dir", help="Override the data root for every step.")
    parser.add_argument("--skip-migrate", action="store_true", help="Skip the legacy data migration.")
    parser.add_argument("--skip-consolidate", action="store_true", help="Skip consolidation.")
    parser.add_argument("--geocode-user-agent", help="Geocode the newest snapshots first, using this User-Agent.")
    parser.add_argument(
        "--geocode-categories",
        help=f"Comma-separated categories to geocode (default: {LISTINGS},{RENTALS}; {SOLD} also accepted).",
    )
    parser.add_argument("--geocode-max-new", type=int, help="Cap on new geocoding API calls per snapshot.")
    parser.add_argument("--output", help="Override the consolidated output path.")
    parser.add_argument("--parquet-dir", help="Also write Parquet partitions to this directory.")
    parser.add_argument("--no-dated-copy", action="store_true", help="Do not write the dated output copy.")
    parser.add_argument("--allow-empty", action="store_true", help="Pass --allow-empty to consolidation.")
    parser.add_argument("--strict-monotonic", action="store_true", help="Pass --strict-monotonic to consolidation.")
    parser.add_argument("--lock-file", help="Override the lock file path.")
    parser.add_argument("--verbose", action="store_true", help="Enable consolidation debug logging.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Dict[str, Dict[str, object]]:
    config = copy.deepcopy(DEFAULT_CONFIG)
    migrate_cfg = config["migrate"]
    geocode_cfg = config["geocode"]
    consolidate_cfg = config["consolidate"]

    if args.data_dir:
        migrate_cfg["data_dir"] = args.data_dir
        consolidate_cfg["data_dir"] = args.data_dir
        geocode_cfg["cache"] = str(Path(args.data_dir) / "geocode_cache.json")
    if args.skip_migrate:
        migrate_cfg["enabled"] = False
    if args.skip_consolidate:
        consolidate_cfg["enabled"] = False

    if args.geocode_user_agent:
        geocode_cfg["enabled"] = True
        geocode_cfg["user_agent"] = args.geocode_user_agent
    if args.geocode_categories:
        geocode_cfg["categories"] = [item.strip() for item in args.geocode_categories.split(",") if item.strip()]
    if args.geocode_max_new is not None:
        geocode_cfg["max_new"] = args.geocode_max_new

    if args.output:
        consolidate_cfg["output"] = args.output
    if args.parquet_dir:
        consolidate_cfg["parquet_dir"] = args.parquet_dir
    if args.no_dated_copy:
        consolidate_cfg["dated_copy"] = False
    if args.allow_empty:
        consolidate_cfg["allow_empty"] = True
    if args.strict_monotonic:
        consolidate_cfg["strict_monotonic"] = True
    if args.verbose:
        consolidate_cfg["verbose"] = True
    if args.lock_file:
        config["lock_file"] = args.lock_file
    return config


def run_pipeline(config: Dict[str, Dict[str, object]], project_root: Path) -> None:
    migrate_cfg = config["migrate"]
    geocode_cfg = config["geocode"]
    consolidate_cfg = config["consolidate"]

    unknown = [category for category in geocode_cfg["categories"] if category not in (SOLD, LISTINGS, RENTALS)]
    if geocode_cfg["enabled"] and unknown:
        raise ValueError(f"Unknown geocode categories: {', '.join(unknown)}")

    if migrate_cfg["enabled"]:
        run_command("migrate", build_migrate_command(migrate_cfg), project_root)

    if geocode_cfg["enabled"]:
        data_dir = Path(consolidate_cfg["data_dir"])
        if not data_dir.is_absolute():
            data_dir = project_root / data_dir
        snapshots = latest_snapshot_paths(data_dir, geocode_cfg["categories"])
        if not snapshots:
            logging.warning("No snapshots to geocode under %s", data_dir)
        for snapshot in snapshots:
            run_command(f"geocode ({snapshot.name})", build_geocode_command(geocode_cfg, snapshot), project_root)

    if consolidate_cfg["enabled"]:
        lock_path = resolve_lock_file(config)
        if not lock_path.is_absolute():
            lock_path = project_root / lock_path
        with exclusive_lock(lock_path):
            run_command("consolidate", build_consolidate_command(consolidate_cfg), project_root)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    args = load_arguments(argv)
    config = build_config(args)
    project_root = Path(__file__).resolve().parent
    try:
        run_pipeline(config, project_root)
    except (RuntimeError, ValueError) as exc:
        logging.error("%s", exc)
        return 1
    logging.info("Runner completed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
