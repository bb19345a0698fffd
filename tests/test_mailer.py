"""Unit tests for auth/mailer.py -- link building and the log-only fallback."""

from __future__ import annotations

import email
import logging
import smtplib

import pytest

from auth.errors import InternalServerError
from auth.mailer import Mailer, _redact_email
from core.config import Settings


class _RecordingSMTP:
    instances: list["_RecordingSMTP"] = []

    def __init__(self, host: str, port: int, timeout: int) -> None:
        self.host = host
        self.port = port
        self.messages: list[tuple[str, list[str], str]] = []
        _RecordingSMTP.instances.append(self)

    def __enter__(self) -> "_RecordingSMTP":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def starttls(self, context) -> None:
        self.tls = True

    def login(self, user: str, password: str) -> None:
        self.credentials = (user, password)

    def sendmail(self, sender: str, recipients: list[str], message: str) -> None:
        self.messages.append((sender, recipients, message))


class _FailingSMTP(_RecordingSMTP):
    def login(self, user: str, password: str) -> None:
        raise smtplib.SMTPAuthenticationError(535, b"bad credentials")


def test_redact_email() -> None:
    assert _redact_email("jane.doe@example.com") == "ja***@example.com"
    assert _redact_email("broken") == "redacted"


def test_unconfigured_mailer_only_logs(settings: Settings, caplog: pytest.LogCaptureFixture) -> None:
    mailer = Mailer(settings)
    assert mailer.is_configured is False
    with caplog.at_level(logging.INFO, logger="authgate.mailer"):
        mailer.send_access_email("jane.doe@example.com", "Jane Doe", "123456")
    assert "ja***@example.com" in caplog.text
    assert "jane.doe@example.com" not in caplog.text


def test_smtp_delivery_builds_frontend_links(settings: Settings, monkeypatch) -> None:
    configured = settings.model_copy(
        update={"email_host": "smtp.example.com", "email_user": "noreply@example.com", "email_password": "pw"}
    )
    _RecordingSMTP.instances = []
    monkeypatch.setattr("auth.mailer.smtplib.SMTP", _RecordingSMTP)

    Mailer(configured).send_password_reset_email("jane.doe@example.com", "Jane Doe", "tok.en.value")

    smtp = _RecordingSMTP.instances[-1]
    assert smtp.host == "smtp.example.com"
    assert smtp.credentials == ("noreply@example.com", "pw")
    sender, recipients, message = smtp.messages[-1]
    assert recipients == ["jane.doe@example.com"]
    body = email.message_from_string(message).get_payload(decode=True).decode("utf-8")
    assert "http://localhost:3000/reset-password/tok.en.value" in body


def test_smtp_failure_is_internal_error(settings: Settings, monkeypatch) -> None:
    configured = settings.model_copy(update={"email_host": "smtp.example.com", "email_user": "noreply@example.com"})
    monkeypatch.setattr("auth.mailer.smtplib.SMTP", _FailingSMTP)
    with pytest.raises(InternalServerError):
        Mailer(configured).send_confirmation_email("jane.doe@example.com", "Jane Doe", "tok.en.value")
