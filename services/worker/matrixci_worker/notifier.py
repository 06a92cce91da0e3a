import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Callable, List, Optional, Sequence, Tuple

import requests

from matrixci_common.config import Notifications
from matrixci_common.errors import NotificationError
from matrixci_common.models import PipelineReport, StageOutcome

logger = logging.getLogger(__name__)

SMTP_HOST = os.environ.get("MATRIXCI_SMTP_HOST", "localhost")
SMTP_PORT = int(os.environ.get("MATRIXCI_SMTP_PORT", "25"))
SMTP_FROM = os.environ.get("MATRIXCI_SMTP_FROM", "matrixci@localhost")

Transport = Callable[[str, str], None]


def should_notify(ok: bool, on_success: str, previous_ok: Optional[bool] = None) -> bool:
    if not ok or on_success == "always":
        return True
    if on_success == "never":
        return False
    # change: the first finished invocation counts as a change
    return previous_ok is None or previous_ok != ok


def render(report: PipelineReport, name: str) -> Tuple[str, str]:
    verdict = "passed" if report.ok else "failed"
    subject = f"[matrixci] {name} {verdict} ({report.invocation_id})"
    lines = [f"Pipeline {name} {verdict}.", ""]
    for run in report.runs:
        failed = [s.stage for s in run.stages if s.outcome is StageOutcome.FAILURE]
        line = f"- {run.config.channel}: {run.state.value}"
        if failed:
            line += f" (failed: {', '.join(failed)})"
        lines.append(line)
        for p in run.publish:
            lines.append(f"  - publish {p.action}: {'ok' if p.ok else 'failed'}")
    return subject, "\n".join(lines) + "\n"


def email_transport(recipients: Sequence[str]) -> Transport:
    def _send(subject: str, body: str):
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = SMTP_FROM
        msg["To"] = ", ".join(recipients)
        msg.set_content(body)
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=30) as smtp:
            smtp.send_message(msg)
    _send.__name__ = "email"
    return _send


def webhook_transport(url: str) -> Transport:
    def _post(subject: str, body: str):
        r = requests.post(url, json={"subject": subject, "text": body}, timeout=30)
        if r.status_code >= 400:
            raise NotificationError(f"webhook -> {r.status_code}")
    _post.__name__ = "webhook"
    return _post


class Notifier:
    def __init__(self, settings: Notifications, transports: Optional[List[Transport]] = None):
        self.settings = settings
        if transports is None:
            transports = []
            if settings.email:
                transports.append(email_transport(settings.email))
            transports.extend(webhook_transport(u) for u in settings.webhooks)
        self.transports = transports

    def notify(self, report: PipelineReport, name: str, previous_ok: Optional[bool] = None) -> bool:
        """Dispatch if the policy asks for it. Returns True when any transport delivered."""
        s = self.settings
        if not should_notify(report.ok, s.on_success, previous_ok):
            logger.info("Notification suppressed (ok=%s on_success=%s)", report.ok, s.on_success)
            return False
        subject, body = render(report, name)
        delivered = False
        for send in self.transports:
            try:
                send(subject, body)
                delivered = True
            except Exception as e:
                # Delivery failures are never escalated.
                logger.warning("Notification via %s failed: %s", getattr(send, "__name__", "transport"), e)
        if not self.transports:
            logger.info("Notification due but no recipients configured")
        return delivered
