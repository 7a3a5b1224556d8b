from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from report_jobs.core.errors import FatalIOError, TransientStoreError
from report_jobs.tables.base import TableStore
from report_jobs.utils.logging import get_logger
from report_jobs.utils.retry import RetryPolicy, with_backoff
from report_jobs.utils.time import iso_date, parse_date

T = TypeVar("T")

SNAPSHOT_HEADER = ["date", "key", "impressions", "clicks"]


@dataclass(frozen=True)
class Snapshot:
    """Cumulative values of one entity as seen on one day."""

    day: date
    key: str
    value_a: float
    value_b: float


class SnapshotHistory:
    """
    Append-only daily snapshots of cumulative metrics per entity, kept in a table.

    At most one snapshot is stored per entity and day; re-running a job on the
    same day does not add rows. compact() drops snapshots older than keep_days.
    Lookups only consider days strictly before the day being evaluated, so a
    job that already recorded today's snapshots compares against the same
    baseline when it runs again.
    """

    def __init__(
        self,
        tables: TableStore,
        table_name: str = "_Perf Alert Cache",
        keep_days: int = 35,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tables = tables
        self.table_name = table_name
        self.keep_days = keep_days
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self.snapshots: List[Snapshot] = []
        self._loaded = False
        self.log = get_logger("report_jobs.cache.snapshots")

    def provision(self) -> None:
        """Create the table, or rewrite a wrong header while keeping the rows."""
        name = self.table_name
        if not self._retry(f"exists {name}", lambda: self.tables.exists(name)):
            self._retry(f"create {name}", lambda: self.tables.overwrite(name, list(SNAPSHOT_HEADER), []))
            self.log.info("Snapshot table provisioned: %s", name)
            return

        table = self._retry(f"read {name}", lambda: self.tables.read_all(name))
        if [str(h).strip().lower() for h in table.header[:4]] != SNAPSHOT_HEADER:
            self._retry(f"repair {name}", lambda: self.tables.overwrite(name, list(SNAPSHOT_HEADER), table.rows))
            self.log.warning("Snapshot table header repaired: %s", name)

    def load(self) -> int:
        self.provision()
        table = self._retry(f"read {self.table_name}", lambda: self.tables.read_all(self.table_name))
        out: List[Snapshot] = []
        for row in table.rows:
            cells = list(row) + [""] * (4 - len(row))
            day = parse_date(cells[0])
            key = str(cells[1] or "").strip()
            if day is None or not key:
                continue
            out.append(Snapshot(day, key, _number(cells[2]), _number(cells[3])))
        self.snapshots = out
        self._loaded = True
        return len(out)

    def history(self, before: date) -> Dict[str, List[Snapshot]]:
        """Snapshots per key dated before `before`, most recent first."""
        self._ensure_loaded()
        grouped: Dict[str, List[Snapshot]] = {}
        for snap in self.snapshots:
            if snap.day < before:
                grouped.setdefault(snap.key, []).append(snap)
        for snaps in grouped.values():
            snaps.sort(key=lambda s: s.day, reverse=True)
        return grouped

    def latest(self, before: date) -> Dict[str, Snapshot]:
        return {key: snaps[0] for key, snaps in self.history(before).items()}

    def record(self, day: date, values: Iterable[Tuple[str, float, float]]) -> int:
        """Append one snapshot per key for `day`, skipping keys already recorded that day."""
        self._ensure_loaded()
        seen = {s.key for s in self.snapshots if s.day == day}
        fresh: List[Snapshot] = []
        for key, value_a, value_b in values:
            if key in seen:
                continue
            seen.add(key)
            fresh.append(Snapshot(day, key, float(value_a), float(value_b)))
        if not fresh:
            return 0

        rows = [[iso_date(s.day), s.key, _cell(s.value_a), _cell(s.value_b)] for s in fresh]
        self._retry(f"append {self.table_name}", lambda: self.tables.append(self.table_name, rows))
        self.snapshots.extend(fresh)
        return len(fresh)

    def compact(self, today: date) -> int:
        """Drop snapshots older than keep_days; returns the number removed."""
        self._ensure_loaded()
        cutoff = today - timedelta(days=self.keep_days)
        keep = [s for s in self.snapshots if s.day >= cutoff]
        removed = len(self.snapshots) - len(keep)
        if removed == 0:
            return 0

        rows = [[iso_date(s.day), s.key, _cell(s.value_a), _cell(s.value_b)] for s in keep]
        self._retry(f"compact {self.table_name}", lambda: self.tables.overwrite(self.table_name, list(SNAPSHOT_HEADER), rows))
        self.snapshots = keep
        self.log.info("Snapshot history compacted: removed=%d kept=%d cutoff=%s", removed, len(keep), cutoff)
        return removed

    def reset(self) -> None:
        """Drop every stored snapshot."""
        self._retry(f"reset {self.table_name}", lambda: self.tables.overwrite(self.table_name, list(SNAPSHOT_HEADER), []))
        self.snapshots = []
        self._loaded = True
        self.log.info("Snapshot history reset: %s", self.table_name)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _retry(self, label: str, op: Callable[[], T]) -> T:
        try:
            return with_backoff(op, label=label, policy=self.retry, retry_on=(TransientStoreError, OSError), sleep=self.sleep)
        except (TransientStoreError, OSError) as e:
            self.log.error("Snapshot history operation failed after retries (%s): %s", label, e)
            raise FatalIOError(f"Snapshot history operation failed after retries: {label}") from e


def _number(value) -> float:
    try:
        return float(str(value).replace(",", "")) if value not in (None, "") else 0.0
    except ValueError:
        return 0.0


def _cell(value: float):
    return int(value) if float(value).is_integer() else value
