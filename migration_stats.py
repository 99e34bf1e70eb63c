"""
migration_stats.py - Counters for one migration run
"""

from dataclasses import dataclass, replace
from datetime import datetime

RECORD_KINDS = ("migrated", "skipped", "error", "reclassified")


@dataclass
class MigrationStats:
    total: int = 0
    migrated: int = 0
    skipped: int = 0
    errors: int = 0
    reclassified: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration(self) -> float | None:
        """Seconds between start and completion, if completed."""
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


class StatsTracker:
    """Accumulates per-pair outcomes. Each record() bumps total and one counter."""

    def __init__(self, clock=datetime.now):
        self._clock = clock
        self._stats = MigrationStats(start_time=clock())

    def record(self, kind: str) -> None:
        if kind not in RECORD_KINDS:
            raise ValueError(f"Unknown record kind: {kind}")
        self._stats.total += 1
        if kind == "error":
            self._stats.errors += 1
        else:
            setattr(self._stats, kind, getattr(self._stats, kind) + 1)

    def complete(self) -> None:
        self._stats.end_time = self._clock()

    @property
    def stats(self) -> MigrationStats:
        return replace(self._stats)

    def summary(self) -> str:
        stats = self._stats
        lines = [
            "=" * 42,
            "Migration Summary",
            "=" * 42,
            f"Total files: {stats.total}",
            f"Migrated: {stats.migrated}",
            f"Skipped: {stats.skipped}",
            f"Errors: {stats.errors}",
        ]
        if stats.reclassified > 0:
            lines.append(f"Reclassified: {stats.reclassified}")
        if stats.duration is not None:
            lines.append(f"Duration: {stats.duration:.2f}s")
        lines.append("=" * 42)
        return "\n".join(lines)
