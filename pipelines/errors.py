"""Exceptions raised by the consolidation pipeline."""

from __future__ import annotations


class ConsolidationError(RuntimeError):
    """Unrecoverable failure of a consolidation run."""


class NoSnapshotsError(ConsolidationError):
    """A category produced no readable snapshot at all."""

    def __init__(self, categories) -> None:
        self.categories = list(categories)
        joined = ", ".join(self.categories)
        super().__init__(
            f"No readable snapshots for: {joined}. "
            "Refusing to write an output that would wipe the dataset (use --allow-empty to override)."
        )


class OutputWriteError(ConsolidationError):
    """The unified dataset could not be written; the previous output is untouched."""


class MonotonicityError(ConsolidationError):
    """Sold records present in the previous output are missing from this run."""

    def __init__(self, missing_keys) -> None:
        self.missing_keys = sorted(missing_keys)
        preview = ", ".join(self.missing_keys[:5])
        super().__init__(
            f"{len(self.missing_keys)} previously consolidated sold records would be dropped (e.g. {preview})."
        )
