"""
Pydantic models for YAML configuration validation.
Provides schema validation with clear error messages for report job configurations.
"""

from __future__ import annotations
import os
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from report_jobs.cache.change_cache import MAX_RECORDS


class StateConfig(BaseModel):
    """Durable store and execution lock settings."""
    sqlite_path: str = Field("output/state/report_jobs.db", description="SQLite file backing the key-value store")
    busy_timeout_s: float = Field(1.0, ge=0, le=60, description="SQLite busy timeout per attempt")
    lock_lease_s: int = Field(900, ge=60, le=86400, description="Lock lease; an older lock counts as abandoned")


class CsvTablesConfig(BaseModel):
    """Tables kept as CSV files in one directory."""
    type: Literal["csv"]
    directory: str = Field(..., description="Directory holding one CSV per table")


class GoogleSheetsTablesConfig(BaseModel):
    """Tables kept as worksheets of one spreadsheet."""
    type: Literal["google_sheets"]
    sheet_id: str = Field(..., description="Google Sheets ID")
    credentials_path: str = Field("service_account.json", description="Path to service account credentials")


class MailConfig(BaseModel):
    """Outgoing SMTP relay."""
    enabled: bool = Field(True, description="Whether mail is sent at all")
    host: str = Field("localhost", description="SMTP host")
    port: int = Field(587, ge=1, le=65535, description="SMTP port")
    sender: str = Field("reports@example.com", description="From address")
    username: Optional[str] = Field(None, description="SMTP login")
    password_env: str = Field("REPORT_JOBS_SMTP_PASSWORD", description="Environment variable holding the password")
    use_tls: bool = Field(True, description="Issue STARTTLS after connecting")

    @field_validator('sender')
    @classmethod
    def validate_sender(cls, v):
        if '@' not in v:
            raise ValueError('sender must be an email address')
        return v

    def password(self) -> Optional[str]:
        return os.environ.get(self.password_env) or None


class OperatorConfig(BaseModel):
    """Operator failure channel."""
    admin_email: str = Field("", description="Address receiving failure notices")
    product_name: str = Field("Report Jobs", description="Name used in notice subjects")
    notify_manual: bool = Field(False, description="Also mail failures of manual runs")
    audit_table: str = Field("_Execution Log", description="Audit log table name")
    audit_max_entries: int = Field(1000, ge=10, le=100000, description="Audit rows kept")


class CacheConfig(BaseModel):
    """Change-tracking cache settings."""
    max_records: int = Field(MAX_RECORDS, ge=1, le=MAX_RECORDS, description="Capacity cap after eviction")
    retention_days: int = Field(90, ge=1, description="Drop records not observed for this many days")
    expiry_grace_days: int = Field(1, ge=0, le=31, description="Changes this close after expiry do not count")
    write_batch_size: int = Field(10_000, ge=1, description="Rows per write-back batch")
    table_prefix: str = Field("_Change Cache", description="Prefix of the two buffer tables")


class ChunkConfig(BaseModel):
    """Per-invocation limits shared by chunked and staged jobs."""
    chunk_limit: int = Field(3500, ge=1, description="Rows produced per invocation before pausing")
    time_budget_s: float = Field(252.0, gt=0, le=3600, description="Wall-clock budget per invocation")
    reschedule_minutes: int = Field(2, ge=1, le=10, description="Delay before resuming")
    busy_reschedule_minutes: int = Field(2, ge=1, le=10, description="Delay after losing the lock race")


class RuleConfig(BaseModel):
    """One threshold rule."""
    label: str = Field(..., description="Issue label written to the output row")
    column: str = Field(..., description="Numeric column to test")
    op: Literal["gt", "ge", "lt", "le", "eq", "ne"] = Field("gt", description="Comparison operator")
    threshold: float = Field(0.0, description="Constant right-hand side")
    other_column: Optional[str] = Field(None, description="Compare against this column instead of threshold")


class SkipFilterConfig(BaseModel):
    """Rows whose column contains any fragment are dropped."""
    column: str
    contains: List[str] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_fragments(self):
        if not [f for f in self.contains if f.strip()]:
            raise ValueError(f'skip filter on "{self.column}" needs at least one fragment')
        return self


class OwnersConfig(BaseModel):
    """Lookup table resolving row owners."""
    table: str = Field("Networks", description="Owner lookup table")
    key_column: str = Field("Network ID", description="Column shared by input rows and the lookup table")
    owner_column: str = Field("Owner", description="Owner column in the lookup table")
    default: str = Field("Unassigned", description="Owner for rows without a match")


class QaScanConfig(BaseModel):
    """QA scan job."""
    enabled: bool = True
    input_table: str = "Raw Data"
    output_table: str = "Violations"
    value_a_column: str = "Impressions"
    value_b_column: str = "Clicks"
    observed_date_column: str = "Report Date"
    expiry_column: str = "Placement End Date"
    entity_id_column: str = "Placement ID"
    fallback_key_columns: List[str] = Field(default_factory=lambda: ["Network ID", "Campaign", "Placement"])
    passthrough_columns: List[str] = Field(
        default_factory=lambda: [
            "Network ID",
            "Report Date",
            "Advertiser",
            "Campaign",
            "Placement ID",
            "Placement",
            "Placement End Date",
        ]
    )
    rules: List[RuleConfig] = Field(default_factory=list)
    skip_filters: List[SkipFilterConfig] = Field(default_factory=list)
    activity_columns: List[str] = Field(default_factory=lambda: ["Impressions", "Clicks"])
    owners: Optional[OwnersConfig] = None
    chunk: ChunkConfig = Field(default_factory=ChunkConfig)

    @field_validator('fallback_key_columns')
    @classmethod
    def validate_fallback_key(cls, v):
        if not v:
            raise ValueError('fallback_key_columns cannot be empty')
        return v

    @model_validator(mode='after')
    def validate_rules(self):
        if self.enabled and not self.rules:
            raise ValueError('qa_scan.rules cannot be empty when qa_scan.enabled is True')
        return self


class EmailSummaryConfig(BaseModel):
    """Email summary job."""
    enabled: bool = True
    violations_table: str = "Violations"
    recipients_table: str = "EMAIL LIST"
    network_column: str = "Network ID"
    issue_column: str = "Issue Types"
    owner_column: str = "Owner"
    owner_section_columns: List[str] = Field(
        default_factory=lambda: ["Network ID", "Campaign", "Placement", "Issue Types"]
    )
    stale_columns: List[str] = Field(
        default_factory=lambda: ["Days Since Impressions Change", "Days Since Clicks Change"]
    )
    stale_days: int = Field(30, ge=1)
    owners_per_chunk: int = Field(5, ge=1, le=100)
    report_day_of_month: int = Field(15, ge=1, le=28)
    defer_minutes: int = Field(5, ge=1, le=10)
    subject_prefix: str = "QA Violations Summary"
    export_dir: str = "output/exports"
    export_prefix: str = "QA_Violations"
    max_html_chars: int = Field(90_000, ge=1000)
    send_pause_s: float = Field(0.3, ge=0, le=10)
    chunk: ChunkConfig = Field(default_factory=ChunkConfig)


class SnapshotConfig(BaseModel):
    """Daily snapshot history shared by the alert jobs."""
    table: str = Field("_Perf Alert Cache", description="Snapshot history table")
    keep_days: int = Field(35, ge=5, le=366, description="Drop snapshots older than this many days")


class PerformanceAlertConfig(BaseModel):
    """Pre-summary alert on new or changed performance violations."""
    enabled: bool = True
    violations_table: str = "Violations"
    recipients_table: str = "EMAIL LIST"
    issue_column: str = "Issue Types"
    details_column: str = "Details"
    match_label: str = "PERFORMANCE"
    display_columns: List[str] = Field(
        default_factory=lambda: ["Network ID", "Advertiser", "Campaign", "Placement ID", "Placement"]
    )
    shorten_columns: List[str] = Field(default_factory=lambda: ["Campaign", "Placement"])
    shorten_to: int = Field(20, ge=4)
    cutoff_day: int = Field(15, ge=2, le=28, description="Alerts only run before this day of the month")
    defer_minutes: int = Field(5, ge=1, le=10)
    send_pause_s: float = Field(0.3, ge=0, le=10)
    chunk: ChunkConfig = Field(default_factory=ChunkConfig)


class DropAlertConfig(BaseModel):
    """Pre-summary alert on mid-flight delivery drops."""
    enabled: bool = True
    input_table: str = "Raw Data"
    recipients_table: str = "EMAIL LIST"
    start_column: str = "Placement Start Date"
    end_column: str = "Placement End Date"
    display_columns: List[str] = Field(
        default_factory=lambda: ["Network ID", "Advertiser", "Campaign", "Placement ID", "Placement"]
    )
    shorten_columns: List[str] = Field(default_factory=lambda: ["Campaign", "Placement"])
    shorten_to: int = Field(30, ge=4)
    drop_threshold: float = Field(0.75, description="Fraction, or percentage such as 75 or '75%'")
    baseline_days: int = Field(3, ge=1, le=14)
    click_rate: float = Field(0.008, ge=0, description="Cost per click used by the spend filter")
    impression_rate: float = Field(0.034, ge=0, description="Cost per impression used by the spend filter")
    min_cost: float = Field(10.0, ge=0, description="Entities below this cost on both metrics are ignored")
    cutoff_day: int = Field(15, ge=2, le=28, description="Alerts only run before this day of the month")
    defer_minutes: int = Field(5, ge=1, le=10)
    send_pause_s: float = Field(0.5, ge=0, le=10)
    chunk: ChunkConfig = Field(default_factory=ChunkConfig)

    @field_validator('drop_threshold', mode='before')
    @classmethod
    def validate_threshold(cls, v):
        text = str(v).strip()
        pct = text.endswith('%')
        try:
            value = float(text.rstrip('%'))
        except ValueError:
            raise ValueError(f'drop_threshold must be a number or percentage, got "{v}"')
        if pct or value > 1:
            value /= 100
        if not 0 < value <= 1:
            raise ValueError('drop_threshold must be within (0, 100%]')
        return value


class DailyEntryConfig(BaseModel):
    """Daily entry point of one job."""
    job: str
    hour: int = Field(..., ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)


class ScheduleConfig(BaseModel):
    """Scheduler settings for serve mode."""
    timezone: Optional[str] = Field(None, description="IANA timezone for daily entry points")
    daily: List[DailyEntryConfig] = Field(default_factory=list)
    sequence: List[str] = Field(default_factory=list, description="Jobs run by the sequence command; empty means every enabled job")
    quota_s: int = Field(360, ge=60, description="Execution quota for a sequence run")
    handoff_threshold_s: int = Field(120, ge=0, description="Hand off remaining jobs below this much quota")

    @model_validator(mode='after')
    def validate_handoff(self):
        if self.handoff_threshold_s >= self.quota_s:
            raise ValueError('handoff_threshold_s must be smaller than quota_s')
        return self


class ReportJobsConfig(BaseModel):
    """Root configuration model for report jobs."""
    state: StateConfig = Field(default_factory=StateConfig)
    tables: Dict[str, Any] = Field(..., description="Table store configuration")
    mail: MailConfig = Field(default_factory=MailConfig)
    operator: OperatorConfig = Field(default_factory=OperatorConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    qa_scan: QaScanConfig = Field(default_factory=lambda: QaScanConfig(enabled=False))
    email_summary: EmailSummaryConfig = Field(default_factory=lambda: EmailSummaryConfig(enabled=False))
    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    performance_alert: PerformanceAlertConfig = Field(default_factory=lambda: PerformanceAlertConfig(enabled=False))
    drop_alert: DropAlertConfig = Field(default_factory=lambda: DropAlertConfig(enabled=False))
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    @model_validator(mode='after')
    def validate_tables_config(self):
        """Validate and convert table store configuration."""
        tables = self.tables
        kind = tables.get('type')

        if kind == 'csv':
            if 'directory' not in tables:
                raise ValueError('CSV tables require "directory" field')
            self.tables = CsvTablesConfig(**tables)
        elif kind == 'google_sheets':
            if 'sheet_id' not in tables:
                raise ValueError('Google Sheets tables require "sheet_id" field')
            self.tables = GoogleSheetsTablesConfig(**tables)
        else:
            raise ValueError(f'Unknown tables type: {kind}. Must be "csv" or "google_sheets"')

        return self

    @model_validator(mode='after')
    def validate_config_consistency(self):
        """Validate that scheduled jobs exist and are enabled."""
        enabled = set(self.enabled_jobs())
        for entry in self.schedule.daily:
            if entry.job not in enabled and entry.job != 'sequence':
                raise ValueError(f'schedule.daily references unknown or disabled job "{entry.job}"')
        unknown = [j for j in self.schedule.sequence if j not in enabled]
        if unknown:
            raise ValueError(f'schedule.sequence references unknown or disabled jobs: {unknown}')
        if not self.mail.enabled:
            for name in ('performance_alert', 'drop_alert', 'email_summary'):
                if getattr(self, name).enabled:
                    raise ValueError(f'{name} requires mail.enabled')
        return self

    def enabled_jobs(self) -> List[str]:
        jobs = []
        if self.qa_scan.enabled:
            jobs.append('qa_scan')
        if self.performance_alert.enabled:
            jobs.append('performance_alert')
        if self.drop_alert.enabled:
            jobs.append('drop_alert')
        if self.email_summary.enabled:
            jobs.append('email_summary')
        return jobs


def load_and_validate_config(config_path: str) -> ReportJobsConfig:
    """
    Load and validate a report jobs configuration from YAML file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Validated ReportJobsConfig object

    Raises:
        ValueError: If configuration is invalid or YAML is malformed
        FileNotFoundError: If config file doesn't exist
    """
    import yaml

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw_config = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}")

    try:
        return ReportJobsConfig(**(raw_config or {}))
    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            field_path = '.'.join(str(loc) for loc in error['loc'])
            error_messages.append(f"  {field_path}: {error['msg']}")

        raise ValueError(
            f"Configuration validation failed for {config_path}:\n" +
            '\n'.join(error_messages)
        ) from e
