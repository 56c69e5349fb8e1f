from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol, Sequence

from .errors import NotificationError


logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, subject: str, body: str) -> None: ...


class LogNotifier:
    """Writes notifications to the log only (email disabled or dry runs)."""

    async def notify(self, subject: str, body: str) -> None:
        logger.info("Notification: %s - %s", subject, body)


class EmailNotifier:
    """
    Sends notifications over SMTP with STARTTLS (SendGrid by default: user "apikey", password = API key).
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        user: str,
        password: str,
        sender: str,
        recipients: Sequence[str],
        subject_prefix: str = "",
        timeout_s: float = 30.0,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._sender = sender
        self._recipients = list(recipients)
        self._subject_prefix = subject_prefix
        self._timeout_s = timeout_s

    async def notify(self, subject: str, body: str) -> None:
        full_subject = f"{self._subject_prefix} {subject}".strip() if self._subject_prefix else subject
        try:
            await asyncio.to_thread(self._send_sync, full_subject, body)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP delivery of {subject!r} failed: {e}") from e
        logger.info("Notification sent: %s", subject)

    def _send_sync(self, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._sender
        msg["To"] = ", ".join(self._recipients)
        msg.set_content(body)

        context = ssl.create_default_context()
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout_s) as smtp:
            # The API key is the password: never send it over an unencrypted channel.
            smtp.starttls(context=context)
            if self._user and self._password:
                smtp.login(self._user, self._password)
            smtp.send_message(msg)


class SafeNotifier:
    """
    Wraps a notifier so delivery problems are logged and never reach the caller.
    """

    def __init__(self, inner: Notifier) -> None:
        self._inner = inner

    async def notify(self, subject: str, body: str) -> None:
        try:
            await self._inner.notify(subject, body)
        except NotificationError as e:
            logger.warning("Notification not delivered (%s)", e)
        except Exception:
            logger.warning("Notification not delivered (subject=%r)", subject, exc_info=True)
