from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from report_jobs.cache.change_cache import ChangeTrackingCache, days_since
from report_jobs.core.errors import FatalConfigError, FatalIOError, TransientStoreError
from report_jobs.core.models import Checkpoint, ChunkSettings
from report_jobs.jobs.rules import OwnerDirectory, RowEvaluator, to_float
from report_jobs.tables.base import TableNotFound, TableStore
from report_jobs.utils.logging import get_logger
from report_jobs.utils.retry import RetryPolicy, with_backoff
from report_jobs.utils.time import parse_date

T = TypeVar("T")

QA_JOB_NAME = "qa_scan"


@dataclass(frozen=True)
class QaColumns:
    """Input column names the QA scan reads."""

    value_a: str = "Impressions"
    value_b: str = "Clicks"
    observed_date: str = "Report Date"
    expiry: str = "Placement End Date"
    entity_id: str = "Placement ID"
    fallback_key: Tuple[str, ...] = ("Network ID", "Campaign", "Placement")
    passthrough: Tuple[str, ...] = (
        "Network ID",
        "Report Date",
        "Advertiser",
        "Campaign",
        "Placement ID",
        "Placement",
        "Placement End Date",
    )

    def required(self) -> List[str]:
        cols = [self.value_a, self.value_b, self.observed_date]
        return cols + [c for c in self.passthrough if c not in cols]


def entity_key(row: Dict[str, Any], columns: QaColumns) -> str:
    """Stable key of a reported entity: its id when present, else the fallback columns."""
    pid = str(row.get(columns.entity_id) or "").strip()
    if pid:
        return f"pid:{pid}"
    return "k:" + "|".join(str(row.get(c) or "").strip() for c in columns.fallback_key)


@dataclass
class QaScanJob:
    """
    Chunked QA scan over the rows of an input table.

    Rows with rule hits are tracked in the change cache under a stable entity
    key and written to the output table with days since each metric last changed.
    """

    tables: TableStore
    cache: ChangeTrackingCache
    evaluator: RowEvaluator
    settings: ChunkSettings = field(default_factory=ChunkSettings)
    columns: QaColumns = field(default_factory=QaColumns)
    input_table: str = "Raw Data"
    output_table: str = "Violations"
    owners_factory: Optional[Callable[[], OwnerDirectory]] = None
    today: Callable[[], date] = date.today
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Callable[[float], None] = time.sleep
    name: str = QA_JOB_NAME

    def __post_init__(self):
        self.owners = OwnerDirectory()
        self.log = get_logger("report_jobs.jobs.qa_scan")

    @property
    def output_header(self) -> List[str]:
        c = self.columns
        return list(c.passthrough) + [
            c.value_a,
            c.value_b,
            "Issue Types",
            "Details",
            f"Days Since {c.value_a} Change",
            f"Days Since {c.value_b} Change",
            "Owner",
        ]

    def load_units(self) -> Sequence[Dict[str, Any]]:
        try:
            table = self._io(f"read {self.input_table}", lambda: self.tables.read_all(self.input_table))
        except TableNotFound:
            raise FatalConfigError(f"Input table '{self.input_table}' is missing")

        if not table.header:
            return []
        missing = table.missing_columns(self.columns.required())
        if missing:
            raise FatalConfigError(f"Input table '{self.input_table}' is missing columns: {missing}")
        return table.records()

    def reset_output(self) -> None:
        self._io(f"reset {self.output_table}", lambda: self.tables.overwrite(self.output_table, self.output_header, []))

    def begin(self, checkpoint: Checkpoint) -> None:
        self.cache.provision()
        self.cache.load()
        if self.owners_factory is not None:
            self.owners = self.owners_factory()

    def entity_key(self, row: Dict[str, Any]) -> str:
        return entity_key(row, self.columns)

    def process_unit(self, index: int, unit: Dict[str, Any]) -> Optional[List[Any]]:
        issues = self.evaluator.evaluate(unit)
        if not issues:
            return None

        c = self.columns
        value_a = to_float(unit.get(c.value_a))
        value_b = to_float(unit.get(c.value_b))
        observed = parse_date(unit.get(c.observed_date))
        changes = self.cache.upsert(
            self.entity_key(unit),
            observed,
            value_a,
            value_b,
            expiry=parse_date(unit.get(c.expiry)),
        )

        since_a = days_since(changes.last_change_a, observed)
        since_b = days_since(changes.last_change_b, observed)
        return [unit.get(col, "") for col in c.passthrough] + [
            unit.get(c.value_a, ""),
            unit.get(c.value_b, ""),
            ", ".join(i.label for i in issues),
            " | ".join(i.detail for i in issues if i.detail),
            "" if since_a is None else since_a,
            "" if since_b is None else since_b,
            self.owners.resolve(unit),
        ]

    def flush(self, rows: List[List[Any]]) -> None:
        if not self._io(f"exists {self.output_table}", lambda: self.tables.exists(self.output_table)):
            self._io(f"create {self.output_table}", lambda: self.tables.overwrite(self.output_table, self.output_header, rows))
            return
        self._io(f"append {self.output_table}", lambda: self.tables.append(self.output_table, rows))

    def commit(self, complete: bool) -> None:
        if complete:
            self.cache.cleanup(self.today())
        self.cache.save()

    def _io(self, label: str, op: Callable[[], T]) -> T:
        try:
            return with_backoff(op, label=label, policy=self.retry, retry_on=(TransientStoreError, OSError), sleep=self.sleep)
        except (TransientStoreError, OSError) as e:
            self.log.error("QA scan table operation failed after retries (%s): %s", label, e)
            raise FatalIOError(f"QA scan table operation failed after retries: {label}") from e
