from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

from report_jobs.cache.change_cache import CacheSettings, ChangeTrackingCache
from report_jobs.cache.snapshot_history import SnapshotHistory
from report_jobs.config_models import ChunkConfig, GoogleSheetsTablesConfig, ReportJobsConfig
from report_jobs.core.chunked import ChunkedJobRunner
from report_jobs.core.dispatch import JobDispatcher
from report_jobs.core.models import ChunkSettings
from report_jobs.core.staged import StagedJobRunner
from report_jobs.jobs.alerts import (
    DROP_ALERT_JOB,
    PERFORMANCE_ALERT_JOB,
    DropAlertJob,
    DropAlertSettings,
    PerformanceAlertJob,
    PerformanceAlertSettings,
)
from report_jobs.jobs.email_summary import EmailSummaryJob, EmailSummarySettings
from report_jobs.jobs.qa_scan import QaColumns, QaScanJob
from report_jobs.jobs.rules import ConfiguredRuleEvaluator, OwnerDirectory, SkipFilter, ThresholdRule
from report_jobs.notify.audit import AuditLog
from report_jobs.notify.mailer import MailSender, SmtpMailSender
from report_jobs.notify.operator import OperatorNotifier
from report_jobs.scheduling.apscheduler_backend import ApschedulerScheduler
from report_jobs.scheduling.rescheduler import SelfRescheduler
from report_jobs.state.checkpoints import CheckpointStore
from report_jobs.state.sqlite_store import SQLiteKeyValueStore
from report_jobs.tables.base import TableStore
from report_jobs.tables.csv_store import CsvTableStore
from report_jobs.tables.export import XlsxExporter


@dataclass(frozen=True)
class BuiltComponents:
    store: SQLiteKeyValueStore
    tables: TableStore
    checkpoints: CheckpointStore
    cache: ChangeTrackingCache
    snapshots: SnapshotHistory
    scheduler: ApschedulerScheduler
    rescheduler: SelfRescheduler
    mailer: Optional[MailSender]
    audit: AuditLog
    notifier: OperatorNotifier
    chunked_runner: ChunkedJobRunner
    staged_runner: StagedJobRunner
    dispatcher: JobDispatcher


class ComponentFactory:
    """
    Factory responsible for wiring dependencies.
    Keeps main.py clean; jobs are rebuilt for every invocation so no per-run
    state survives a suspension outside the durable store.
    """

    def __init__(
        self,
        config: ReportJobsConfig,
        scheduler: Optional[ApschedulerScheduler] = None,
        tables: Optional[TableStore] = None,
        mailer: Optional[MailSender] = None,
        today: Callable[[], date] = date.today,
    ):
        self.config = config
        self._scheduler = scheduler
        self._tables = tables
        self._mailer = mailer
        self.today = today

    def build(self) -> BuiltComponents:
        """
        Build all components and register every enabled job with the dispatcher.

        Returns:
            A container with all built components.
        """
        cfg = self.config
        store = self._store()
        tables = self._tables or self._table_store()
        checkpoints = CheckpointStore(store)
        cache = ChangeTrackingCache(tables, store, self._cache_settings())
        snapshots = SnapshotHistory(tables, cfg.snapshots.table, cfg.snapshots.keep_days)
        scheduler = self._scheduler or ApschedulerScheduler(timezone_name=cfg.schedule.timezone)
        rescheduler = SelfRescheduler(scheduler, store)
        mailer = self._mailer or self._smtp()
        audit = AuditLog(tables, cfg.operator.audit_table, cfg.operator.audit_max_entries)
        notifier = OperatorNotifier(mailer, cfg.operator.admin_email, audit, cfg.operator.product_name)

        lease = float(cfg.state.lock_lease_s)
        chunked_runner = ChunkedJobRunner(store, rescheduler, checkpoints, lock_lease_s=lease)
        staged_runner = StagedJobRunner(store, rescheduler, checkpoints, lock_lease_s=lease)

        dispatcher = JobDispatcher(
            checkpoints,
            rescheduler,
            audit,
            notifier,
            cache=cache,
            snapshots=snapshots,
            notify_manual=cfg.operator.notify_manual,
        )
        scheduler.bind(dispatcher.dispatch)

        built = BuiltComponents(
            store=store,
            tables=tables,
            checkpoints=checkpoints,
            cache=cache,
            snapshots=snapshots,
            scheduler=scheduler,
            rescheduler=rescheduler,
            mailer=mailer,
            audit=audit,
            notifier=notifier,
            chunked_runner=chunked_runner,
            staged_runner=staged_runner,
            dispatcher=dispatcher,
        )

        if cfg.qa_scan.enabled:
            dispatcher.register("qa_scan", lambda: chunked_runner.run(self.qa_scan_job(built)))
        if cfg.performance_alert.enabled:
            dispatcher.register(PERFORMANCE_ALERT_JOB, lambda: staged_runner.run(self.performance_alert_job(built)))
        if cfg.drop_alert.enabled:
            dispatcher.register(DROP_ALERT_JOB, lambda: staged_runner.run(self.drop_alert_job(built)))
        if cfg.email_summary.enabled:
            dispatcher.register("email_summary", lambda: staged_runner.run(self.email_summary_job(built)))
        return built

    def qa_scan_job(self, built: BuiltComponents) -> QaScanJob:
        q = self.config.qa_scan
        evaluator = ConfiguredRuleEvaluator(
            rules=[ThresholdRule(**r.model_dump()) for r in q.rules],
            skip_filters=[SkipFilter(column=f.column, contains=tuple(f.contains)) for f in q.skip_filters],
            activity_columns=q.activity_columns,
        )
        owners = q.owners

        def load_owners() -> OwnerDirectory:
            return OwnerDirectory.from_table(built.tables, owners.table, owners.key_column, owners.owner_column, owners.default)

        return QaScanJob(
            tables=built.tables,
            cache=built.cache,
            evaluator=evaluator,
            settings=self._chunk_settings(q.chunk),
            columns=self._qa_columns(),
            input_table=q.input_table,
            output_table=q.output_table,
            owners_factory=load_owners if owners is not None else None,
            today=self.today,
        )

    def email_summary_job(self, built: BuiltComponents) -> EmailSummaryJob:
        e = self.config.email_summary
        summary = EmailSummarySettings(
            violations_table=e.violations_table,
            recipients_table=e.recipients_table,
            network_column=e.network_column,
            issue_column=e.issue_column,
            owner_column=e.owner_column,
            owner_section_columns=tuple(e.owner_section_columns),
            stale_columns=tuple(e.stale_columns),
            stale_days=e.stale_days,
            owners_per_chunk=e.owners_per_chunk,
            report_day_of_month=e.report_day_of_month,
            defer_minutes=e.defer_minutes,
            subject_prefix=e.subject_prefix,
            export_dir=e.export_dir,
            export_prefix=e.export_prefix,
            max_html_chars=e.max_html_chars,
            send_pause_s=e.send_pause_s,
        )
        return EmailSummaryJob(
            tables=built.tables,
            checkpoints=built.checkpoints,
            mailer=built.mailer,
            exporter=XlsxExporter(built.tables, sheet_title=e.violations_table),
            notifier=built.notifier,
            config=summary,
            settings=self._chunk_settings(e.chunk),
            today=self.today,
        )

    def performance_alert_job(self, built: BuiltComponents) -> PerformanceAlertJob:
        p = self.config.performance_alert
        alert = PerformanceAlertSettings(
            violations_table=p.violations_table,
            recipients_table=p.recipients_table,
            issue_column=p.issue_column,
            details_column=p.details_column,
            match_label=p.match_label,
            display_columns=tuple(p.display_columns),
            shorten_columns=tuple(p.shorten_columns),
            shorten_to=p.shorten_to,
            cutoff_day=p.cutoff_day,
            defer_minutes=p.defer_minutes,
            upstream_job="qa_scan" if self.config.qa_scan.enabled else None,
            send_pause_s=p.send_pause_s,
        )
        return PerformanceAlertJob(
            tables=built.tables,
            checkpoints=built.checkpoints,
            mailer=built.mailer,
            history=built.snapshots,
            notifier=built.notifier,
            config=alert,
            settings=self._chunk_settings(p.chunk),
            columns=self._qa_columns(),
            today=self.today,
        )

    def drop_alert_job(self, built: BuiltComponents) -> DropAlertJob:
        d = self.config.drop_alert
        alert = DropAlertSettings(
            input_table=d.input_table,
            recipients_table=d.recipients_table,
            start_column=d.start_column,
            end_column=d.end_column,
            display_columns=tuple(d.display_columns),
            shorten_columns=tuple(d.shorten_columns),
            shorten_to=d.shorten_to,
            drop_threshold=d.drop_threshold,
            baseline_days=d.baseline_days,
            click_rate=d.click_rate,
            impression_rate=d.impression_rate,
            min_cost=d.min_cost,
            cutoff_day=d.cutoff_day,
            defer_minutes=d.defer_minutes,
            send_pause_s=d.send_pause_s,
        )
        return DropAlertJob(
            tables=built.tables,
            checkpoints=built.checkpoints,
            mailer=built.mailer,
            history=built.snapshots,
            notifier=built.notifier,
            config=alert,
            settings=self._chunk_settings(d.chunk),
            columns=self._qa_columns(),
            today=self.today,
        )

    # ---------- Builders (private) ----------

    def _store(self) -> SQLiteKeyValueStore:
        """Create the durable key-value store."""
        return SQLiteKeyValueStore(self.config.state.sqlite_path, busy_timeout_s=self.config.state.busy_timeout_s)

    def _table_store(self) -> TableStore:
        """Create the table store based on the tables config type."""
        tables = self.config.tables
        if isinstance(tables, GoogleSheetsTablesConfig):
            # Import locally to avoid requiring gspread unless used.
            from report_jobs.tables.gsheet_store import GoogleSheetsTableStore

            return GoogleSheetsTableStore(tables.sheet_id, tables.credentials_path)
        return CsvTableStore(tables.directory)

    def _smtp(self) -> Optional[SmtpMailSender]:
        """Create the SMTP sender, or None when mail is disabled."""
        m = self.config.mail
        if not m.enabled:
            return None
        return SmtpMailSender(
            host=m.host,
            port=m.port,
            sender=m.sender,
            username=m.username,
            password=m.password(),
            use_tls=m.use_tls,
        )

    def _cache_settings(self) -> CacheSettings:
        c = self.config.cache
        return CacheSettings(
            max_records=c.max_records,
            retention_days=c.retention_days,
            expiry_grace_days=c.expiry_grace_days,
            write_batch_size=c.write_batch_size,
            table_prefix=c.table_prefix,
        )

    def _qa_columns(self) -> QaColumns:
        q = self.config.qa_scan
        return QaColumns(
            value_a=q.value_a_column,
            value_b=q.value_b_column,
            observed_date=q.observed_date_column,
            expiry=q.expiry_column,
            entity_id=q.entity_id_column,
            fallback_key=tuple(q.fallback_key_columns),
            passthrough=tuple(q.passthrough_columns),
        )

    @staticmethod
    def _chunk_settings(chunk: ChunkConfig) -> ChunkSettings:
        return ChunkSettings(
            chunk_limit=chunk.chunk_limit,
            time_budget_s=chunk.time_budget_s,
            reschedule_minutes=chunk.reschedule_minutes,
            busy_reschedule_minutes=chunk.busy_reschedule_minutes,
        )
