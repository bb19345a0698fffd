"""
auth/mailer.py -- Outbound mail for confirmation links, reset links and access codes.

Transport is deliberately minimal: SMTP with STARTTLS when EMAIL_HOST is set,
otherwise the message is logged (development). Templates are plain HTML
strings; the wording is not part of the auth core.

The logged form redacts the recipient. Tokens and codes are never logged in
production mode; in debug mode the body is logged so a developer can follow
the link locally.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import TYPE_CHECKING

from auth.errors import InternalServerError

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authgate.mailer")


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer:
    def __init__(self, settings: Settings) -> None:
        self._host = settings.email_host
        self._port = settings.email_port
        self._user = settings.email_user
        self._password = settings.email_password
        self._frontend_url = settings.frontend_url.rstrip("/")
        self._debug = settings.debug
        self._confirmation_hours = max(settings.confirmation_expiration // 3600, 1)
        self._reset_minutes = max(settings.reset_expiration // 60, 1)

    @property
    def is_configured(self) -> bool:
        return bool(self._host and self._user)

    def send_confirmation_email(self, email: str, full_name: str, token: str) -> None:
        link = f"{self._frontend_url}/confirmation/{token}"
        self._send(
            email,
            f"Email confirmation, {full_name}",
            f"""
            <body>
              <p>Hello {full_name},</p>
              <p>Click <b><a href='{link}' target='_blank'>here</a></b> to activate your account
              or go to this link: {link}</p>
              <p><small>This link will expire in {self._confirmation_hours} hour(s).</small></p>
            </body>
            """,
        )

    def send_access_email(self, email: str, full_name: str, code: str) -> None:
        self._send(
            email,
            f"Your access code, {full_name}",
            f"""
            <body>
              <p>Hello {full_name},</p>
              <p>Your access code is <b>{code}</b></p>
              <p><small>Do not share this code with anyone.</small></p>
            </body>
            """,
        )

    def send_password_reset_email(self, email: str, full_name: str, token: str) -> None:
        link = f"{self._frontend_url}/reset-password/{token}"
        self._send(
            email,
            f"Password reset, {full_name}",
            f"""
            <body>
              <p>Hello {full_name},</p>
              <p>Your password reset link: <b><a href='{link}' target='_blank'>here</a></b></p>
              <p>Or go to this link: {link}</p>
              <p><small>This link will expire in {self._reset_minutes} minutes.</small></p>
            </body>
            """,
        )

    def _send(self, to: str, subject: str, html_body: str) -> None:
        if not self.is_configured:
            logger.info("Mail to %s not sent (no EMAIL_HOST): %s", _redact_email(to), subject)
            if self._debug:
                logger.debug("Mail body for %s:%s", _redact_email(to), html_body)
            return

        message = MIMEText(html_body, "html", "utf-8")
        message["Subject"] = subject
        message["From"] = self._user
        message["To"] = to
        try:
            with smtplib.SMTP(self._host, self._port, timeout=10) as server:
                server.starttls(context=ssl.create_default_context())
                server.login(self._user, self._password)
                server.sendmail(self._user, [to], message.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send mail to %s: %s", _redact_email(to), exc)
            raise InternalServerError("Mail delivery failed") from exc
        logger.info("Mail sent to %s: %s", _redact_email(to), subject)
