from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Protocol

from jobengine.config.load_config import EmailConfig
from jobengine.utils.template import render_template


logger = logging.getLogger(__name__)


TEMPLATES: dict[str, tuple[str, str]] = {
    "job_failed": (
        "Background job {{kind}} failed",
        "Job {{job_id}} ({{kind}}) failed permanently.\n\nError: {{error}}\n",
    ),
    "job_abandoned_items": (
        "Background job {{kind}} gave up on {{count}} item(s)",
        "Job {{job_id}} ({{kind}}) stopped retrying after repeated rate limiting.\n"
        "{{count}} item(s) were not processed.\n",
    ),
}


class EmailSender(Protocol):
    def send(self, *, template: str, recipient: str, variables: dict[str, Any]) -> None: ...


def render_email(template: str, variables: dict[str, Any]) -> tuple[str, str]:
    if template not in TEMPLATES:
        raise KeyError(f"Unknown email template: {template!r}")
    subject_t, body_t = TEMPLATES[template]
    return render_template(subject_t, variables), render_template(body_t, variables)


@dataclass
class LoggingEmailSender:
    """Keeps rendered messages in memory (disabled email, local runs, tests)."""

    sent: list[dict[str, str]] = field(default_factory=list)

    def send(self, *, template: str, recipient: str, variables: dict[str, Any]) -> None:
        subject, body = render_email(template, variables)
        self.sent.append({"template": template, "recipient": recipient, "subject": subject, "body": body})
        logger.info("email queued locally: template=%s recipient=%s", template, recipient)


class SMTPEmailSender:
    def __init__(self, config: EmailConfig, *, timeout_s: float = 10.0) -> None:
        self._config = config
        self._timeout_s = timeout_s

    def send(self, *, template: str, recipient: str, variables: dict[str, Any]) -> None:
        subject, body = render_email(template, variables)
        msg = EmailMessage()
        msg["From"] = self._config.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(body)
        with smtplib.SMTP(self._config.smtp_host, self._config.smtp_port, timeout=self._timeout_s) as smtp:
            smtp.send_message(msg)


def build_email_sender(config: EmailConfig) -> EmailSender:
    if config.enabled:
        return SMTPEmailSender(config)
    return LoggingEmailSender()


def send_safely(sender: EmailSender | None, *, template: str, recipient: str | None, variables: dict[str, Any]) -> bool:
    """Fire-and-forget: failures are logged, never raised to the triggering operation."""
    if sender is None or not recipient:
        return False
    try:
        sender.send(template=template, recipient=recipient, variables=variables)
        return True
    except Exception:
        logger.exception("email send failed: template=%s recipient=%s", template, recipient)
        return False
