"""Operator notifications for stalled and broken jobs."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, subject: str, body: str) -> None: ...


class LoggingNotifier:
    """Writes notifications to the application log."""

    def notify(self, subject: str, body: str) -> None:
        logger.warning("%s: %s", subject, body)


class SmtpNotifier:
    """Sends notifications by e-mail to the configured operator address."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        host: str,
        recipient: str,
        sender: str | None = None,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.host = host
        self.recipient = recipient
        self.sender = sender or recipient
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout_seconds = timeout_seconds

    def build_message(self, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = self.recipient
        message.set_content(body)
        return message

    def notify(self, subject: str, body: str) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(self.build_message(subject, body))


def deliver_safely(notifier: Notifier, subject: str, body: str) -> bool:
    """Send a notification; delivery problems are logged, never raised."""

    try:
        notifier.notify(subject, body)
    except Exception:  # noqa: BLE001
        logger.exception("Notification %r was not delivered", subject)
        return False
    return True
