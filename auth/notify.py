"""
auth/notify.py -- Notification collaborator (outbound account email).

The service calls Notifier.notify(kind, email, payload) and never waits on
or rolls back for the outcome: a delivery failure is logged and the state
change that triggered it stands.

LogNotifier writes the action link, token included, to the log instead of
sending mail. It is only ever selected with DEBUG=true. Outside debug an
SMTP host is mandatory; Settings refuses to load without one.
SmtpNotifier sends a plain-text message through smtplib.
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from enum import Enum

from core.config import ConfigurationError, Settings

logger = logging.getLogger("accountcore.notify")


class NotificationKind(str, Enum):
    verification = "verification"
    password_reset = "password_reset"
    password_changed = "password_changed"
    welcome = "welcome"


_SUBJECTS = {
    NotificationKind.verification: "Confirm your email address",
    NotificationKind.password_reset: "Reset your password",
    NotificationKind.password_changed: "Your password was changed",
    NotificationKind.welcome: "Welcome",
}


def render(kind: NotificationKind, payload: dict) -> tuple[str, str]:
    """Return (subject, plain-text body) for a notification."""
    subject = _SUBJECTS[kind]
    if kind is NotificationKind.verification:
        body = (
            "Thanks for signing up.\n\n"
            f"Confirm your email address by opening this link:\n{payload['url']}\n\n"
            "The link is valid for 24 hours. If you did not sign up, ignore this message."
        )
    elif kind is NotificationKind.password_reset:
        body = (
            "A password reset was requested for your account.\n\n"
            f"Choose a new password here:\n{payload['url']}\n\n"
            "The link is valid for 1 hour. If you did not ask for this, ignore this message."
        )
    elif kind is NotificationKind.password_changed:
        body = (
            "The password for your account was just changed and every session was signed out.\n\n"
            "If this was not you, reset your password immediately."
        )
    else:
        body = f"Hello {payload.get('username', '')}, your email address is confirmed. Welcome aboard."
    return subject, body


class Notifier:
    def notify(self, kind: NotificationKind, email: str, payload: dict) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Development notifier: logs what would have been sent."""

    def notify(self, kind: NotificationKind, email: str, payload: dict) -> None:
        subject, _body = render(kind, payload)
        logger.info("[EMAIL] %s -> %s: %s %s", kind.value, email, subject, payload.get("url", ""))


class SmtpNotifier(Notifier):
    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.username = settings.smtp_username
        self.password = settings.smtp_password
        self.use_tls = settings.smtp_use_tls
        self.from_email = settings.email_from

    def notify(self, kind: NotificationKind, email: str, payload: dict) -> None:
        subject, body = render(kind, payload)
        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = self.from_email
        message["To"] = email

        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.send_message(message)
        logger.info("Sent %s email", kind.value)


def build_notifier(settings: Settings) -> Notifier:
    if settings.smtp_host:
        return SmtpNotifier(settings)
    if settings.debug:
        return LogNotifier()
    # Reset and verification tokens must never reach production logs.
    raise ConfigurationError("SMTP_HOST is required when DEBUG is false.")
