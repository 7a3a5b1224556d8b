from __future__ import annotations

import html
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from report_jobs.cache.snapshot_history import Snapshot, SnapshotHistory
from report_jobs.core.errors import PartialDeliveryFailure
from report_jobs.core.models import ChunkSettings
from report_jobs.core.staged import Precheck, StageResult, stage_outputs
from report_jobs.jobs import summary_html
from report_jobs.jobs.qa_scan import QA_JOB_NAME, QaColumns, entity_key
from report_jobs.jobs.rules import to_float
from report_jobs.notify.mailer import MailSender, send_batch, unique_recipients
from report_jobs.notify.operator import FailureContext, OperatorNotifier
from report_jobs.state.checkpoints import CheckpointStore
from report_jobs.tables.base import Table, TableStore
from report_jobs.utils.logging import get_logger
from report_jobs.utils.time import parse_date

PERFORMANCE_ALERT_JOB = "performance_alert"
DROP_ALERT_JOB = "drop_alert"

Snap = Tuple[str, float, float]


@dataclass(frozen=True)
class PerformanceAlertSettings:
    violations_table: str = "Violations"
    recipients_table: str = "EMAIL LIST"
    issue_column: str = "Issue Types"
    details_column: str = "Details"
    match_label: str = "PERFORMANCE"
    display_columns: Tuple[str, ...] = ("Network ID", "Advertiser", "Campaign", "Placement ID", "Placement")
    shorten_columns: Tuple[str, ...] = ("Campaign", "Placement")
    shorten_to: int = 20
    cutoff_day: int = 15
    defer_minutes: int = 5
    upstream_job: Optional[str] = QA_JOB_NAME
    send_pause_s: float = 0.3


@dataclass(frozen=True)
class DropAlertSettings:
    input_table: str = "Raw Data"
    recipients_table: str = "EMAIL LIST"
    start_column: str = "Placement Start Date"
    end_column: str = "Placement End Date"
    display_columns: Tuple[str, ...] = ("Network ID", "Advertiser", "Campaign", "Placement ID", "Placement")
    shorten_columns: Tuple[str, ...] = ("Campaign", "Placement")
    shorten_to: int = 30
    drop_threshold: float = 0.75
    baseline_days: int = 3
    click_rate: float = 0.008
    impression_rate: float = 0.034
    min_cost: float = 10.0
    cutoff_day: int = 15
    defer_minutes: int = 5
    upstream_job: Optional[str] = None
    send_pause_s: float = 0.5


@dataclass(frozen=True)
class DropStats:
    """Daily delivery of one entity against its recent average."""

    avg_a: int
    today_a: int
    drop_a_pct: int
    avg_b: int
    today_b: int
    drop_b_pct: int


def detect_drop(
    history: Sequence[Snapshot],
    value_a: float,
    value_b: float,
    threshold: float,
    baseline_days: int = 3,
) -> Optional[DropStats]:
    """
    Compare today's increment of two cumulative metrics with their average daily
    increment over the last `baseline_days` days.

    `history` holds earlier snapshots of one entity, most recent first. At least
    baseline_days + 1 snapshots are needed. Days whose first metric went backwards
    (a restated report) are left out of the baseline. Returns None when neither
    metric dropped by `threshold` (a fraction) or more.
    """
    if len(history) < baseline_days + 1:
        return None

    increments = []
    for i in range(1, baseline_days + 1):
        inc_a = history[i - 1].value_a - history[i].value_a
        inc_b = history[i - 1].value_b - history[i].value_b
        if inc_a >= 0:
            increments.append((inc_a, inc_b))
    if not increments:
        return None

    avg_a = sum(a for a, _ in increments) / len(increments)
    avg_b = sum(b for _, b in increments) / len(increments)
    today_a = value_a - history[0].value_a
    today_b = value_b - history[0].value_b

    drop_a = (avg_a - today_a) / avg_a if avg_a > 0 else 0.0
    drop_b = (avg_b - today_b) / avg_b if avg_b > 0 else 0.0
    if drop_a < threshold and drop_b < threshold:
        return None
    return DropStats(
        avg_a=round(avg_a),
        today_a=round(today_a),
        drop_a_pct=round(drop_a * 100),
        avg_b=round(avg_b),
        today_b=round(today_b),
        drop_b_pct=round(drop_b * 100),
    )


def shorten(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def short_date(d: date) -> str:
    return f"{d.month}/{d.day}/{d:%y}"


class DetectStage:
    """Evaluates the source rows, records today's snapshots and compacts the history."""

    name = "detect"

    def __init__(self, job: "AlertJob"):
        self.job = job

    def applies(self, data: Dict[str, Any]) -> bool:
        return True

    def run(self, data: Dict[str, Any]) -> StageResult:
        if self.name in stage_outputs(data):
            return StageResult(detail="already evaluated")

        job = self.job
        today = job.today()
        job.history.load()
        rows, snapshots = job.evaluate(job.source().records(), today)
        recorded = job.history.record(today, snapshots)
        job.history.compact(today)

        data["alerts"] = rows
        stage_outputs(data)[self.name] = len(rows)
        job.log.info("%s: %d alert rows, %d snapshots recorded", job.name, len(rows), recorded)
        return StageResult(detail=f"{len(rows)} alert rows")


class AlertSendStage:
    name = "send"

    def __init__(self, job: "AlertJob"):
        self.job = job

    def applies(self, data: Dict[str, Any]) -> bool:
        return bool(data.get("alerts"))

    def run(self, data: Dict[str, Any]) -> StageResult:
        job = self.job
        rows = data["alerts"]
        recipients = job.recipients()
        if not recipients:
            job.log.warning("No recipients in %s; %s not sent", job.config.recipients_table, job.name)
            data["delivery"] = {"sent": 0, "failed": []}
            return StageResult(detail="no recipients")

        result = send_batch(
            job.mailer,
            recipients,
            job.subject(len(rows)),
            job.render(rows),
            pause_s=job.config.send_pause_s,
            sleep=job.sleep,
        )
        data["delivery"] = {"sent": len(result.sent), "failed": list(result.failed)}
        if result.failed:
            err = PartialDeliveryFailure(result.failed, result.total)
            job.log.warning("%s", err)
            if job.notifier is not None:
                job.notifier.notify_failure(job.name, err, FailureContext(stage=self.name))
        return StageResult(detail=f"sent {len(result.sent)}/{result.total}")


class AlertJob:
    """
    Two-stage alert mailed before the monthly summary window opens.

    Subclasses name the source table and turn its records into alert rows plus
    the snapshots to record for today.
    """

    name = ""

    def __init__(
        self,
        tables: TableStore,
        checkpoints: CheckpointStore,
        mailer: MailSender,
        history: SnapshotHistory,
        notifier: Optional[OperatorNotifier] = None,
        config: Any = None,
        settings: Optional[ChunkSettings] = None,
        columns: Optional[QaColumns] = None,
        today: Callable[[], date] = date.today,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tables = tables
        self.checkpoints = checkpoints
        self.mailer = mailer
        self.history = history
        self.notifier = notifier
        self.config = config if config is not None else self.default_config()
        self.settings = settings or ChunkSettings()
        self.columns = columns or QaColumns()
        self.today = today
        self.sleep = sleep
        self.log = get_logger(f"report_jobs.jobs.{self.name}")
        self._source: Optional[Table] = None
        self.stages = [DetectStage(self), AlertSendStage(self)]

    def default_config(self) -> Any:
        raise NotImplementedError

    @property
    def source_table(self) -> str:
        raise NotImplementedError

    def required_columns(self) -> List[str]:
        raise NotImplementedError

    def evaluate(self, records: List[Dict[str, Any]], today: date) -> Tuple[List[List[Any]], List[Snap]]:
        raise NotImplementedError

    def header(self) -> List[str]:
        raise NotImplementedError

    def subject(self, count: int) -> str:
        raise NotImplementedError

    def intro(self, count: int) -> str:
        return ""

    def source(self) -> Table:
        if self._source is None:
            self._source = self.tables.read_all(self.source_table)
        return self._source

    def recipients(self) -> List[str]:
        table = self.tables.read_all(self.config.recipients_table)
        return unique_recipients([row[0] for row in table.rows if row])

    def precheck(self) -> Precheck:
        s = self.config
        today = self.today()
        if today.day >= s.cutoff_day:
            return Precheck.skip(f"Alerts run before day {s.cutoff_day} of the month; today is day {today.day}")
        if s.upstream_job and self.checkpoints.load(s.upstream_job) is not None:
            return Precheck.defer(s.defer_minutes, f"{s.upstream_job} still in progress")
        for table in (self.source_table, s.recipients_table):
            if not self.tables.exists(table):
                return Precheck.skip(f"Table '{table}' not found")

        source = self.source()
        if not source.rows:
            return Precheck.skip(f"Table '{self.source_table}' is empty")
        missing = source.missing_columns(self.required_columns())
        if missing:
            return Precheck.skip(f"Table '{self.source_table}' is missing columns: {missing}")
        return Precheck.proceed()

    def render(self, rows: List[List[Any]]) -> str:
        return (
            '<html><body style="font-family: Arial, sans-serif;">'
            + self.intro(len(rows))
            + summary_html.html_table(self.header(), rows)
            + "</body></html>"
        )

    def display(self, row: Dict[str, Any], limit: int) -> List[Any]:
        s = self.config
        out = []
        for col in s.display_columns:
            text = str(row.get(col) or "").strip()
            out.append(shorten(text, limit) if col in s.shorten_columns else text)
        return out


class PerformanceAlertJob(AlertJob):
    """Flags violations rows carrying the performance label that are new or changed since the last snapshot."""

    name = PERFORMANCE_ALERT_JOB

    def default_config(self) -> PerformanceAlertSettings:
        return PerformanceAlertSettings()

    @property
    def source_table(self) -> str:
        return self.config.violations_table

    def required_columns(self) -> List[str]:
        s, c = self.config, self.columns
        cols = list(s.display_columns) + [c.observed_date, c.value_a, c.value_b, s.issue_column, s.details_column]
        return list(dict.fromkeys(cols))

    def evaluate(self, records: List[Dict[str, Any]], today: date) -> Tuple[List[List[Any]], List[Snap]]:
        s, c = self.config, self.columns
        month_start = today.replace(day=1)
        latest = self.history.latest(before=today)
        rows: List[List[Any]] = []
        snapshots: List[Snap] = []

        for r in records:
            if s.match_label not in str(r.get(s.issue_column) or ""):
                continue
            reported = parse_date(r.get(c.observed_date))
            if reported is None or reported < month_start or reported > today:
                continue

            key = entity_key(r, c)
            value_a = to_float(r.get(c.value_a))
            value_b = to_float(r.get(c.value_b))
            snapshots.append((key, value_a, value_b))

            prev = latest.get(key)
            if prev is not None and prev.value_a == value_a and prev.value_b == value_b:
                continue
            rows.append(self.display(r, s.shorten_to) + [r.get(c.value_a, ""), r.get(c.value_b, ""), r.get(s.details_column, "")])
        return rows, snapshots

    def header(self) -> List[str]:
        c = self.columns
        return list(self.config.display_columns) + [c.value_a, c.value_b, self.config.details_column]

    def subject(self, count: int) -> str:
        return f"ALERT - PERFORMANCE (pre-monthly-summary) - {short_date(self.today())} - {count} changed/new row(s)"

    def intro(self, count: int) -> str:
        return (
            f"<p><b>ALERT:</b> {html.escape(self.config.match_label)}</p>"
            "<p>Placements that still meet the performance-alert criteria and are new or changed "
            "since the last report. Rows drop off once metrics are corrected or fall below the thresholds.</p>"
        )


class DropAlertJob(AlertJob):
    """Flags mid-flight, high-cost entities whose daily delivery fell well below their recent average."""

    name = DROP_ALERT_JOB

    def default_config(self) -> DropAlertSettings:
        return DropAlertSettings()

    @property
    def source_table(self) -> str:
        return self.config.input_table

    def required_columns(self) -> List[str]:
        s, c = self.config, self.columns
        return list(dict.fromkeys(list(s.display_columns) + [s.start_column, s.end_column, c.value_a, c.value_b]))

    def evaluate(self, records: List[Dict[str, Any]], today: date) -> Tuple[List[List[Any]], List[Snap]]:
        s, c = self.config, self.columns
        history = self.history.history(before=today)
        rows: List[List[Any]] = []
        snapshots: List[Snap] = []

        for r in records:
            start = parse_date(r.get(s.start_column))
            end = parse_date(r.get(s.end_column))
            if start is None or end is None or not (start <= today <= end):
                continue

            value_a = to_float(r.get(c.value_a))
            value_b = to_float(r.get(c.value_b))
            cost_b = value_b * s.click_rate
            cost_a = value_a * s.impression_rate
            if cost_b < s.min_cost and cost_a < s.min_cost:
                continue

            key = entity_key(r, c)
            snapshots.append((key, value_a, value_b))
            stats = detect_drop(history.get(key, []), value_a, value_b, s.drop_threshold, s.baseline_days)
            if stats is None:
                continue
            rows.append(
                self.display(r, s.shorten_to)
                + [
                    stats.avg_a,
                    stats.today_a,
                    f"-{stats.drop_a_pct}%",
                    stats.avg_b,
                    stats.today_b,
                    f"-{stats.drop_b_pct}%",
                    f"${cost_b:.2f}",
                    f"${cost_a:.2f}",
                ]
            )
        return rows, snapshots

    def header(self) -> List[str]:
        c, n = self.columns, self.config.baseline_days
        return list(self.config.display_columns) + [
            f"{n}-Day Avg {c.value_a}",
            f"Today's {c.value_a}",
            f"{c.value_a} Drop",
            f"{n}-Day Avg {c.value_b}",
            f"Today's {c.value_b}",
            f"{c.value_b} Drop",
            "CPC",
            "CPM",
        ]

    def threshold_pct(self) -> int:
        return round(self.config.drop_threshold * 100)

    def subject(self, count: int) -> str:
        return f"MID-FLIGHT DROP ALERT ({self.threshold_pct()}%) - {short_date(self.today())}"

    def intro(self, count: int) -> str:
        s = self.config
        return (
            '<h2 style="color:#d9534f;">Mid-flight performance drop</h2>'
            f"<p>{count} mid-flight placement(s) with a {self.threshold_pct()}%+ drop in daily delivery "
            f"vs the {s.baseline_days}-day average.</p>"
            f"<p>Only placements with CPM or CPC of at least ${s.min_cost:.0f} are checked.</p>"
        )
