from __future__ import annotations

import html
import os
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from report_jobs.core.errors import FatalConfigError, FatalIOError, PartialDeliveryFailure
from report_jobs.core.models import ChunkSettings
from report_jobs.core.staged import KeyChunkedStage, Precheck, StageResult, stage_outputs
from report_jobs.jobs import summary_html
from report_jobs.jobs.qa_scan import QA_JOB_NAME
from report_jobs.notify.mailer import Attachment, MailSender, send_batch
from report_jobs.notify.operator import FailureContext, OperatorNotifier
from report_jobs.state.checkpoints import CheckpointStore
from report_jobs.tables.base import Table, TableNotFound, TableStore
from report_jobs.tables.export import BlobExporter
from report_jobs.utils.logging import get_logger

EMAIL_JOB_NAME = "email_summary"
XLSX_SUBTYPE = "vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass(frozen=True)
class EmailSummarySettings:
    violations_table: str = "Violations"
    recipients_table: str = "EMAIL LIST"
    network_column: str = "Network ID"
    issue_column: str = "Issue Types"
    owner_column: str = "Owner"
    owner_section_columns: Tuple[str, ...] = ("Network ID", "Campaign", "Placement", "Issue Types")
    stale_columns: Tuple[str, ...] = ("Days Since Impressions Change", "Days Since Clicks Change")
    stale_days: int = 30
    owners_per_chunk: int = 5
    report_day_of_month: int = 15
    defer_minutes: int = 5
    upstream_job: str = QA_JOB_NAME
    subject_prefix: str = "QA Violations Summary"
    export_dir: str = "output/exports"
    export_prefix: str = "QA_Violations"
    max_html_chars: int = 90_000
    send_pause_s: float = 0.3


class _JobStage:
    name = ""

    def __init__(self, job: "EmailSummaryJob"):
        self.job = job

    def applies(self, data: Dict[str, Any]) -> bool:
        return True

    def done(self, data: Dict[str, Any]) -> bool:
        return self.name in stage_outputs(data)


class NetworkSummaryStage(_JobStage):
    name = "network_summary"

    def run(self, data: Dict[str, Any]) -> StageResult:
        if self.done(data):
            return StageResult(detail="already computed")
        s = self.job.config
        stage_outputs(data)[self.name] = summary_html.network_summary(self.job.violations().records(), s.network_column)
        return StageResult()


class GroupedSummaryStage(_JobStage):
    name = "grouped_summary"

    def run(self, data: Dict[str, Any]) -> StageResult:
        if self.done(data):
            return StageResult(detail="already computed")
        s = self.job.config
        records = self.job.violations().records()
        body = summary_html.grouped_summary(records, s.issue_column)
        table = self.job.violations()
        if s.stale_columns and not table.missing_columns(s.stale_columns):
            body += summary_html.stale_summary(records, s.stale_columns, s.stale_days)
        stage_outputs(data)[self.name] = body
        return StageResult()


class OwnerSectionsStage(KeyChunkedStage):
    name = "owner_sections"

    def __init__(self, job: "EmailSummaryJob"):
        self.job = job
        self.max_keys_per_chunk = job.config.owners_per_chunk

    def applies(self, data: Dict[str, Any]) -> bool:
        return self.job.config.owner_column in self.job.violations().header_map()

    def compute_keys(self, data: Dict[str, Any]) -> Tuple[List[str], Dict[str, Any]]:
        s = self.job.config
        grouped = summary_html.group_by(self.job.violations().records(), s.owner_column)
        payload = {
            owner: [[r.get(c, "") for c in s.owner_section_columns] for r in rows] for owner, rows in grouped.items()
        }
        return sorted(payload), payload

    def render_keys(self, keys: List[str], payload: Dict[str, Any], data: Dict[str, Any]) -> str:
        cols = self.job.config.owner_section_columns
        return "".join(summary_html.owner_section(k, payload[k], cols) for k in keys)

    def finish(self, output: str, data: Dict[str, Any]) -> Any:
        return f"<h3>Violations by owner</h3>{output}" if output else ""


class ExportStage(_JobStage):
    name = "create_export"

    def run(self, data: Dict[str, Any]) -> StageResult:
        existing = data.get("export") or {}
        if self.done(data) and existing.get("path") and os.path.exists(existing["path"]):
            return StageResult(detail=existing.get("filename", ""))
        s = self.job.config
        today = self.job.today()
        filename = f"{s.export_prefix}_{today.month}.{today.day}.{today:%y}.xlsx"
        path = os.path.join(s.export_dir, filename)

        try:
            content = self.job.exporter.export(s.violations_table)
            os.makedirs(s.export_dir, exist_ok=True)
            with open(path, "wb") as f:
                f.write(content)
        except OSError as e:
            raise FatalIOError(f"Failed to write export {path}: {e}") from e

        data["export"] = {"path": path, "filename": filename}
        stage_outputs(data)[self.name] = filename
        self.job.log.info("Export written: %s (%s bytes)", path, len(content))
        return StageResult(detail=filename)


class SendStage(_JobStage):
    name = "send"

    def run(self, data: Dict[str, Any]) -> StageResult:
        job = self.job
        s = job.config
        recipients = job.recipients()
        export = data.get("export") or {}

        if not recipients:
            job.log.warning("No recipients in %s; summary not sent", s.recipients_table)
            self._remove_export(export)
            data["delivery"] = {"sent": 0, "failed": []}
            return StageResult(detail="no recipients")

        attachments = []
        path = export.get("path")
        if path and os.path.exists(path):
            with open(path, "rb") as f:
                attachments.append(Attachment(export.get("filename") or os.path.basename(path), f.read(), XLSX_SUBTYPE))

        body = summary_html.trim_html(job.compose_body(data), s.max_html_chars)
        subject = f"{s.subject_prefix} - {job.today():%m/%d/%y}"
        result = send_batch(job.mailer, recipients, subject, body, attachments, pause_s=s.send_pause_s, sleep=job.sleep)
        self._remove_export(export)

        data["delivery"] = {"sent": len(result.sent), "failed": list(result.failed)}
        if result.failed:
            err = PartialDeliveryFailure(result.failed, result.total)
            job.log.warning("%s", err)
            if job.notifier is not None:
                job.notifier.notify_failure(job.name, err, FailureContext(stage=self.name))
        return StageResult(detail=f"sent {len(result.sent)}/{result.total}")

    def _remove_export(self, export: Dict[str, Any]) -> None:
        path = export.get("path")
        if not path:
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


class EmailSummaryJob:
    """
    Staged summary of the violations table, mailed to the recipient list with an
    .xlsx export attached.

    Table reads are memoized per job instance; build one instance per invocation.
    """

    name = EMAIL_JOB_NAME

    def __init__(
        self,
        tables: TableStore,
        checkpoints: CheckpointStore,
        mailer: MailSender,
        exporter: BlobExporter,
        notifier: Optional[OperatorNotifier] = None,
        config: Optional[EmailSummarySettings] = None,
        settings: Optional[ChunkSettings] = None,
        today: Callable[[], date] = date.today,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tables = tables
        self.checkpoints = checkpoints
        self.mailer = mailer
        self.exporter = exporter
        self.notifier = notifier
        self.config = config or EmailSummarySettings()
        self.settings = settings or ChunkSettings()
        self.today = today
        self.sleep = sleep
        self.log = get_logger("report_jobs.jobs.email_summary")
        self._violations: Optional[Table] = None

        self.stages = [
            NetworkSummaryStage(self),
            GroupedSummaryStage(self),
            OwnerSectionsStage(self),
            ExportStage(self),
            SendStage(self),
        ]

    def violations(self) -> Table:
        if self._violations is None:
            self._violations = self.tables.read_all(self.config.violations_table)
        return self._violations

    def recipients(self) -> List[str]:
        try:
            table = self.tables.read_all(self.config.recipients_table)
        except TableNotFound:
            raise FatalConfigError(f"Recipients table '{self.config.recipients_table}' is missing")
        # addresses live in the first column
        return [str(row[0]).strip() for row in table.rows if row and str(row[0]).strip()]

    def precheck(self) -> Precheck:
        s = self.config
        if self.checkpoints.load(s.upstream_job) is not None:
            return Precheck.defer(s.defer_minutes, f"{s.upstream_job} still in progress")

        today = self.today()
        if today.day < s.report_day_of_month:
            return Precheck.skip(f"Summary runs from day {s.report_day_of_month} of the month; today is day {today.day}")

        if not self.tables.exists(s.recipients_table):
            raise FatalConfigError(f"Recipients table '{s.recipients_table}' is missing")

        try:
            table = self.violations()
        except TableNotFound:
            return Precheck.skip(f"Table '{s.violations_table}' not found")
        if not table.rows:
            return Precheck.skip("No violations to report")
        return Precheck.proceed()

    def compose_body(self, data: Dict[str, Any]) -> str:
        outputs = stage_outputs(data)
        parts = [outputs.get(stage.name, "") for stage in self.stages if stage.name not in {"create_export", "send"}]
        return (
            '<html><body style="font-family: Arial, sans-serif;">'
            f"<h2>{html.escape(self.config.subject_prefix)}</h2>"
            f"<p>{len(self.violations().rows)} flagged rows as of {self.today():%b %d, %Y}.</p>"
            + "".join(p for p in parts if p)
            + "</body></html>"
        )
