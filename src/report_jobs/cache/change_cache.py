from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, TypeVar

from report_jobs.core.errors import FatalIOError, TransientStoreError
from report_jobs.core.models import CacheRecord, ChangeDates
from report_jobs.state.base import KeyValueStore
from report_jobs.tables.base import TableStore
from report_jobs.utils.logging import get_logger
from report_jobs.utils.retry import RetryPolicy, with_backoff
from report_jobs.utils.time import iso_date, parse_date

T = TypeVar("T")

MAX_RECORDS = 150_000
ACTIVE_TABLE_KEY = "change_cache.active"
CACHE_HEADER = ["key", "expiry", "last_observed", "value_a", "value_b", "last_change_a", "last_change_b"]


@dataclass(frozen=True)
class CacheSettings:
    """Capacity, retention and write-back tuning for the change-tracking cache."""

    max_records: int = MAX_RECORDS
    retention_days: int = 90
    expiry_grace_days: int = 1
    write_batch_size: int = 10_000
    batch_pause_s: float = 0.05
    table_prefix: str = "_Change Cache"


def days_since(last_change: Optional[date], observed: Optional[date]) -> Optional[int]:
    """Whole days from last_change to observed; None when either is missing or the gap is negative."""
    if last_change is None or observed is None:
        return None
    delta = (observed - last_change).days
    return delta if delta >= 0 else None


def _to_number(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(str(value).replace(",", ""))
    except ValueError:
        return 0.0


def _cell_number(value: float) -> Any:
    return int(value) if float(value).is_integer() else value


class ChangeTrackingCache:
    """
    Durable per-entity record of last observed values and when each last changed.

    Upserts mutate an in-memory map; save() writes the whole map back to the
    inactive one of two tables in bounded batches and then flips the active-table
    pointer, so an interrupted write-back never damages the last complete snapshot.
    """

    def __init__(
        self,
        tables: TableStore,
        store: KeyValueStore,
        settings: Optional[CacheSettings] = None,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tables = tables
        self.store = store
        self.settings = settings or CacheSettings()
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self.records: Dict[str, CacheRecord] = {}
        self._active: Optional[str] = None
        self.log = get_logger("report_jobs.cache")

    @property
    def table_names(self) -> tuple:
        prefix = self.settings.table_prefix
        return (f"{prefix} A", f"{prefix} B")

    def __len__(self) -> int:
        return len(self.records)

    def get(self, key: str) -> Optional[CacheRecord]:
        return self.records.get(key)

    def provision(self) -> str:
        """Get-or-create the active cache table once; later calls reuse the cached name."""
        if self._active:
            return self._active

        active = self.store.get(ACTIVE_TABLE_KEY)
        if active not in self.table_names:
            active = self.table_names[0]
        if not self._retry(f"exists {active}", lambda: self.tables.exists(active)):
            self._retry(f"create {active}", lambda: self.tables.overwrite(active, list(CACHE_HEADER), []))
            self.log.info("Change cache table provisioned: %s", active)
        self.store.set(ACTIVE_TABLE_KEY, active)
        self._active = active
        return active

    def load(self) -> int:
        """Replace the in-memory map with the active table's contents."""
        active = self.provision()
        table = self._retry(f"read {active}", lambda: self.tables.read_all(active))
        idx = {name: i for i, name in enumerate(CACHE_HEADER)}
        hmap = table.header_map()
        if all(name in hmap for name in CACHE_HEADER):
            idx = {name: hmap[name] for name in CACHE_HEADER}

        records: Dict[str, CacheRecord] = {}
        for row in table.rows:
            cells = list(row) + [""] * (len(CACHE_HEADER) - len(row))
            key = str(cells[idx["key"]] or "").strip()
            if not key:
                continue
            records[key] = CacheRecord(
                key=key,
                expiry=parse_date(cells[idx["expiry"]]),
                last_observed=parse_date(cells[idx["last_observed"]]),
                value_a=_to_number(cells[idx["value_a"]]),
                value_b=_to_number(cells[idx["value_b"]]),
                last_change_a=parse_date(cells[idx["last_change_a"]]),
                last_change_b=parse_date(cells[idx["last_change_b"]]),
            )

        self.records = records
        self.log.info("Change cache loaded: table=%s records=%d", active, len(records))
        return len(records)

    def upsert(
        self,
        key: str,
        observed: Optional[date],
        value_a: float,
        value_b: float,
        expiry: Optional[date] = None,
    ) -> ChangeDates:
        """Record an observation and return both last-change dates after the update."""
        k = str(key or "").strip()
        if not k:
            raise ValueError("Change cache key cannot be empty")

        a = float(value_a or 0)
        b = float(value_b or 0)
        rec = self.records.get(k)
        if rec is None:
            rec = CacheRecord(
                key=k,
                expiry=expiry,
                last_observed=observed,
                value_a=a,
                value_b=b,
                last_change_a=observed,
                last_change_b=observed,
            )
            self.records[k] = rec
            return ChangeDates(rec.last_change_a, rec.last_change_b)

        if expiry and expiry != rec.expiry:
            rec.expiry = expiry
        if observed and (rec.last_observed is None or observed > rec.last_observed):
            rec.last_observed = observed
        if a != rec.value_a:
            rec.value_a = a
            rec.last_change_a = observed
        if b != rec.value_b:
            rec.value_b = b
            rec.last_change_b = observed
        return ChangeDates(rec.last_change_a, rec.last_change_b)

    def cleanup(self, today: date) -> Dict[str, int]:
        """Apply the expiry, retention and capacity eviction phases in order."""
        removed = {"expired_stable": 0, "not_observed": 0, "over_capacity": 0}
        grace = timedelta(days=max(0, self.settings.expiry_grace_days))

        for key in list(self.records):
            rec = self.records[key]
            if rec.expiry is None or today <= rec.expiry:
                continue
            settled_by = rec.expiry + grace
            a_stable = rec.last_change_a is None or rec.last_change_a <= settled_by
            b_stable = rec.last_change_b is None or rec.last_change_b <= settled_by
            if a_stable and b_stable:
                del self.records[key]
                removed["expired_stable"] += 1

        cutoff = today - timedelta(days=self.settings.retention_days)
        for key in list(self.records):
            last_observed = self.records[key].last_observed
            if last_observed is not None and last_observed < cutoff:
                del self.records[key]
                removed["not_observed"] += 1

        limit = max(0, self.settings.max_records)
        if len(self.records) > limit:
            ranked = sorted(
                self.records.values(),
                key=lambda r: (-(r.last_observed or date.min).toordinal(), r.key),
            )
            for rec in ranked[limit:]:
                del self.records[rec.key]
            removed["over_capacity"] = len(ranked) - limit

        self.log.info(
            "Change cache cleanup: expired_stable=%s not_observed=%s over_capacity=%s remaining=%s",
            removed["expired_stable"],
            removed["not_observed"],
            removed["over_capacity"],
            len(self.records),
        )
        return removed

    def save(self) -> int:
        """Write the full map to the inactive table in batches, then make it active."""
        active = self.provision()
        target = self.table_names[1] if active == self.table_names[0] else self.table_names[0]
        rows = [self._to_row(self.records[k]) for k in sorted(self.records)]
        batch = max(1, self.settings.write_batch_size)

        first = rows[:batch]
        self._retry(f"write {target} batch 1", lambda: self.tables.overwrite(target, list(CACHE_HEADER), first))
        for start in range(batch, len(rows), batch):
            chunk = rows[start : start + batch]
            if self.settings.batch_pause_s > 0:
                self.sleep(self.settings.batch_pause_s)
            label = f"write {target} batch {start // batch + 1}"
            self._retry(label, lambda chunk=chunk: self.tables.append(target, chunk))

        self.store.set(ACTIVE_TABLE_KEY, target)
        self._active = target
        self.log.info("Change cache saved: table=%s records=%d", target, len(rows))
        return len(rows)

    def reset(self) -> None:
        """Drop every record from memory and from both tables."""
        self.records = {}
        for name in self.table_names:
            self._retry(f"reset {name}", lambda name=name: self.tables.overwrite(name, list(CACHE_HEADER), []))
        self.store.set(ACTIVE_TABLE_KEY, self.table_names[0])
        self._active = self.table_names[0]
        self.log.info("Change cache reset")

    def _to_row(self, rec: CacheRecord) -> List[Any]:
        return [
            rec.key,
            iso_date(rec.expiry),
            iso_date(rec.last_observed),
            _cell_number(rec.value_a),
            _cell_number(rec.value_b),
            iso_date(rec.last_change_a),
            iso_date(rec.last_change_b),
        ]

    def _retry(self, label: str, op: Callable[[], T]) -> T:
        try:
            return with_backoff(op, label=label, policy=self.retry, retry_on=(TransientStoreError, OSError))
        except (TransientStoreError, OSError) as e:
            self.log.error("Change cache operation failed after retries (%s): %s", label, e)
            raise FatalIOError(f"Change cache operation failed after retries: {label}") from e
