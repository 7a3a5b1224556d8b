from __future__ import annotations

import html
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from report_jobs.core.errors import PartialDeliveryFailure
from report_jobs.notify.audit import AuditEntry, AuditLog
from report_jobs.notify.mailer import MailSender
from report_jobs.utils.logging import get_logger
from report_jobs.utils.time import format_duration


@dataclass(frozen=True)
class FailureContext:
    """Details attached to an operator failure notice."""

    stage: str = ""
    duration_s: Optional[float] = None
    units_processed: Optional[int] = None
    rows_produced: Optional[int] = None


class OperatorNotifier:
    """Records failures in the audit log and mails them to the operator channel."""

    def __init__(self, mailer: Optional[MailSender], admin_email: str, audit: AuditLog, product_name: str = "Report Jobs"):
        self.mailer = mailer
        self.admin_email = admin_email
        self.audit = audit
        self.product_name = product_name
        self.log = get_logger("report_jobs.operator")

    def notify_failure(self, job_name: str, error: BaseException, context: Optional[FailureContext] = None) -> None:
        ctx = context or FailureContext()
        status = "PARTIAL_DELIVERY" if isinstance(error, PartialDeliveryFailure) else "FAILED"
        self.audit.record(
            AuditEntry(
                job=job_name,
                status=status,
                stage=ctx.stage,
                duration_s=ctx.duration_s,
                units_processed=ctx.units_processed,
                rows_produced=ctx.rows_produced,
                error=f"{type(error).__name__}: {error}",
            )
        )

        if not self.mailer or not self.admin_email:
            self.log.warning("No operator channel configured; failure of %s only logged", job_name)
            return

        stamp = datetime.now().strftime("%b %d, %Y %I:%M %p")
        subject = f"{self.product_name} FAILURE - {job_name} - {stamp}"
        try:
            self.mailer.send(self.admin_email, subject, self._render(job_name, error, ctx, stamp))
        except Exception as e:
            self.log.error("Failed to send failure notification for %s: %s", job_name, e)

    def _render(self, job_name: str, error: BaseException, ctx: FailureContext, stamp: str) -> str:
        rows = [("Job", job_name), ("Timestamp", stamp), ("Error", f"{type(error).__name__}: {error}")]
        if ctx.stage:
            rows.append(("Stage", ctx.stage))
        if ctx.duration_s is not None:
            rows.append(("Duration", format_duration(ctx.duration_s)))
        if ctx.units_processed is not None:
            rows.append(("Units processed", str(ctx.units_processed)))
        if ctx.rows_produced is not None:
            rows.append(("Rows produced", str(ctx.rows_produced)))

        cells = "".join(
            f'<tr><td style="font-weight:bold;background:#f5f5f5;">{html.escape(k)}</td><td>{html.escape(v)}</td></tr>'
            for k, v in rows
        )
        trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return (
            '<html><body style="font-family: Arial, sans-serif;">'
            f'<h2 style="color:#d9534f;">{html.escape(self.product_name)} failure</h2>'
            f'<table border="1" cellpadding="8" cellspacing="0" style="border-collapse:collapse;">{cells}</table>'
            f"<h3>Stack trace</h3><pre>{html.escape(trace)}</pre>"
            "</body></html>"
        )
