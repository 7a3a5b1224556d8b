from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from report_jobs.tables.base import TableNotFound, TableStore
from report_jobs.utils.logging import get_logger
from report_jobs.utils.time import format_duration, utc_now_iso

AUDIT_HEADER = ["timestamp", "job", "status", "stage", "duration", "units_processed", "rows_produced", "error"]


@dataclass(frozen=True)
class AuditEntry:
    """Structured record of one finished or failed invocation."""

    job: str
    status: str
    stage: str = ""
    duration_s: Optional[float] = None
    units_processed: Optional[int] = None
    rows_produced: Optional[int] = None
    error: str = ""

    def to_row(self, timestamp: str) -> List[str]:
        return [
            timestamp,
            self.job,
            self.status,
            self.stage or "",
            format_duration(self.duration_s) if self.duration_s is not None else "",
            "" if self.units_processed is None else str(self.units_processed),
            "" if self.rows_produced is None else str(self.rows_produced),
            (self.error or "")[:500],
        ]


class AuditLog:
    """Append-only execution log kept in a table, trimmed to the newest entries."""

    def __init__(self, tables: TableStore, table_name: str = "_Execution Log", max_entries: int = 1000):
        self.tables = tables
        self.table_name = table_name
        self.max_entries = max_entries
        self.log = get_logger("report_jobs.audit")

    def record(self, entry: AuditEntry) -> None:
        """Append an entry. Audit failures are logged and never mask the job outcome."""
        try:
            self._append(entry.to_row(utc_now_iso()))
        except Exception as e:
            self.log.warning("Failed to write audit entry for %s: %s", entry.job, e)

    def recent(self, limit: int = 3) -> List[List[str]]:
        try:
            table = self.tables.read_all(self.table_name)
        except TableNotFound:
            return []
        return [list(r) for r in table.rows[-limit:]]

    def _append(self, row: List[str]) -> None:
        if not self.tables.exists(self.table_name):
            self.tables.overwrite(self.table_name, list(AUDIT_HEADER), [row])
            return

        table = self.tables.read_all(self.table_name)
        if len(table.rows) + 1 > self.max_entries:
            keep = table.rows[-(self.max_entries - 1):] if self.max_entries > 1 else []
            self.tables.overwrite(self.table_name, list(AUDIT_HEADER), [list(r) for r in keep] + [row])
        else:
            self.tables.append(self.table_name, [row])
