"""Copy legacy flat data files into the per-category snapshot directories.

    data/properties.json -> data/sold/sold-initial.json
    data/listings.json   -> data/listings/listings-latest.json
    data/rentals.json    -> data/rentals/rentals-latest.json

Existing targets are never overwritten and originals are kept, so the script is
safe to run repeatedly.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    source: str
    target: str
    description: str


MIGRATIONS = [
    Migration("properties.json", "sold/sold-initial.json", "Sold properties -> sold/"),
    Migration("listings.json", "listings/listings-latest.json", "For-sale listings -> listings/"),
    Migration("rentals.json", "rentals/rentals-latest.json", "Rental listings -> rentals/"),
]


def migrate(data_dir: Path, migrations: Sequence[Migration] = MIGRATIONS) -> Dict[str, List[str]]:
    """Copy each legacy file that exists and whose target does not; verify sizes."""
    data_dir = Path(data_dir)
    result: Dict[str, List[str]] = {"migrated": [], "skipped": [], "failed": []}
    for migration in migrations:
        source = data_dir / migration.source
        target = data_dir / migration.target
        logger.info("%s", migration.description)

        if not source.exists():
            logger.info("  Source not found: %s", source)
            result["skipped"].append(str(source))
            continue
        if target.exists():
            logger.info("  Target already exists: %s", target)
            result["skipped"].append(str(source))
            continue

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        if source.stat().st_size != target.stat().st_size:
            logger.error("  Copy verification failed for %s; removing %s", source, target)
            target.unlink()
            result["failed"].append(str(source))
            continue
        logger.info("  Copied: %s -> %s", source, target)
        result["migrated"].append(str(source))

    logger.info(
        "Migrated: %s file(s), skipped: %s, failed: %s",
        len(result["migrated"]),
        len(result["skipped"]),
        len(result["failed"]),
    )
    if result["migrated"]:
        logger.info("Originals were copied, not moved; delete them once the consolidated output looks right.")
    return result


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s", stream=sys.stdout)
    parser = argparse.ArgumentParser(description="Move legacy data files into snapshot directories.")
    parser.add_argument("--data-dir", default="data", help="Data root (default: %(default)s).")
    args = parser.parse_args(argv)
    try:
        result = migrate(Path(args.data_dir))
    except OSError as exc:
        logger.error("Migration failed: %s", exc)
        return 1
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
