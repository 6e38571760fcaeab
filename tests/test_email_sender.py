from __future__ import annotations

import pytest

import jobengine.tools.email_sender as email_sender
from jobengine.config.load_config import EmailConfig
from jobengine.tools.email_sender import (
    LoggingEmailSender,
    SMTPEmailSender,
    build_email_sender,
    render_email,
    send_safely,
)


CFG = EmailConfig(
    enabled=True,
    sender="jobs@example.com",
    smtp_host="smtp.example.com",
    smtp_port=2525,
    notify_on_permanent_failure=True,
)


def test_render_email_fills_template() -> None:
    subject, body = render_email("job_failed", {"job_id": "job_1", "kind": "image_enrichment", "error": "boom"})
    assert subject == "Background job image_enrichment failed"
    assert "Job job_1 (image_enrichment) failed permanently." in body
    assert "Error: boom" in body

    with pytest.raises(KeyError):
        render_email("welcome", {})


def test_build_email_sender_follows_config() -> None:
    assert isinstance(build_email_sender(CFG), SMTPEmailSender)
    disabled = EmailConfig(**{**CFG.__dict__, "enabled": False})
    assert isinstance(build_email_sender(disabled), LoggingEmailSender)


def test_smtp_sender_sends_rendered_message(monkeypatch: pytest.MonkeyPatch) -> None:
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout):  # noqa: ANN001
            self.target = (host, port)

        def __enter__(self):  # noqa: ANN204
            return self

        def __exit__(self, *exc):  # noqa: ANN002, ANN204
            return False

        def send_message(self, msg):  # noqa: ANN001, ANN201
            sent.append((self.target, msg))

    monkeypatch.setattr(email_sender.smtplib, "SMTP", FakeSMTP)
    SMTPEmailSender(CFG).send(
        template="job_abandoned_items",
        recipient="ops@example.com",
        variables={"job_id": "job_1", "kind": "image_enrichment_retry", "count": 3},
    )

    [(target, msg)] = sent
    assert target == ("smtp.example.com", 2525)
    assert msg["To"] == "ops@example.com"
    assert msg["From"] == "jobs@example.com"
    assert msg["Subject"] == "Background job image_enrichment_retry gave up on 3 item(s)"


def test_send_safely_never_raises() -> None:
    class Broken:
        def send(self, *, template, recipient, variables):  # noqa: ANN001, ANN201
            raise OSError("connection refused")

    assert send_safely(Broken(), template="job_failed", recipient="a@b.c", variables={}) is False
    assert send_safely(None, template="job_failed", recipient="a@b.c", variables={}) is False

    local = LoggingEmailSender()
    assert send_safely(local, template="job_failed", recipient=None, variables={}) is False
    assert send_safely(local, template="job_failed", recipient="a@b.c", variables={"kind": "x"}) is True
    assert local.sent[0]["subject"] == "Background job x failed"
