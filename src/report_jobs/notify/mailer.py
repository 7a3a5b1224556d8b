from __future__ import annotations

import smtplib
import ssl
import time
from dataclasses import dataclass, field
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, List, Optional, Protocol, Sequence

from report_jobs.utils.logging import get_logger


@dataclass(frozen=True)
class Attachment:
    """A binary file attached to an outgoing message."""

    filename: str
    content: bytes
    subtype: str = "octet-stream"


@dataclass
class DeliveryResult:
    """Per-recipient outcome of a batch send."""

    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.sent) + len(self.failed)


class MailSender(Protocol):
    """Protocol for outgoing mail transports."""

    def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> None: ...


class SmtpMailSender:
    """Sends HTML mail through an SMTP relay."""

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout_s: int = 30,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout_s = timeout_s
        self.log = get_logger("report_jobs.notify.smtp")

    def build_message(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> MIMEMultipart:
        msg = MIMEMultipart("mixed")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        for att in attachments or []:
            part = MIMEApplication(att.content, _subtype=att.subtype)
            part.add_header("Content-Disposition", "attachment", filename=att.filename)
            msg.attach(part)
        return msg

    def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> None:
        msg = self.build_message(to, subject, html_body, attachments)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_s) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.username and self.password:
                server.login(self.username, self.password)
            server.sendmail(self.sender, [to], msg.as_string())
        self.log.info("Email sent: to=%s subject=%s", to, subject)


def unique_recipients(addresses: Sequence[str]) -> List[str]:
    """Trim, drop blanks and de-duplicate addresses, keeping first-seen order."""
    seen = set()
    out: List[str] = []
    for addr in addresses:
        a = str(addr or "").strip()
        if a and a.lower() not in seen:
            seen.add(a.lower())
            out.append(a)
    return out


def send_batch(
    sender: MailSender,
    recipients: Sequence[str],
    subject: str,
    html_body: str,
    attachments: Optional[Sequence[Attachment]] = None,
    pause_s: float = 0.3,
    sleep: Callable[[float], None] = time.sleep,
) -> DeliveryResult:
    """Send one message per recipient; a failed recipient does not stop the batch."""
    log = get_logger("report_jobs.notify")
    result = DeliveryResult()

    for addr in unique_recipients(recipients):
        try:
            sender.send(addr, subject, html_body, attachments)
            result.sent.append(addr)
        except Exception as e:
            log.error("Failed to email %s: %s", addr, e)
            result.failed.append(addr)
            continue
        if pause_s > 0:
            sleep(pause_s)

    return result
