"""Outbound email for circulation events.

The circulation service never talks to SMTP directly. It builds a
``Notification`` and hands it to an ``Outbox``; the outbox delivers on a
worker thread and only ever logs failures.
"""

import logging
import smtplib
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from html import escape
from typing import Optional, Protocol

from .config import Settings

logger = logging.getLogger(__name__)

SIGNATURE = "<p>Best regards,<br>The Virtual Library Team</p>"


@dataclass(frozen=True)
class Notification:
    to: str
    subject: str
    html: str


class Outbox(Protocol):
    def submit(self, notification: Notification) -> None: ...


class Mailer:
    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        sender: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.sender = sender or user
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mailer":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender=settings.mail_from,
            timeout=settings.http_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.sender)

    def send(self, to: str, subject: str, html: str) -> bool:
        if not self.configured:
            logger.error("mail.not_configured", extra={"to": to, "subject": subject})
            return False

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("mail.auth_failed", extra={"to": to, "subject": subject, "error": str(exc)})
            return False
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("mail.send_failed", extra={"to": to, "subject": subject, "error": str(exc)})
            return False
        logger.info("mail.sent", extra={"to": to, "subject": subject})
        return True


class ThreadedOutbox:
    def __init__(self, mailer: Mailer, max_workers: int = 2):
        self.mailer = mailer
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="outbox")

    def submit(self, notification: Notification) -> None:
        future = self._executor.submit(self.mailer.send, notification.to, notification.subject, notification.html)
        future.add_done_callback(lambda done: _log_outcome(notification, done))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _log_outcome(notification: Notification, future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.warning(
            "notification.failed",
            extra={"to": notification.to, "subject": notification.subject, "error": repr(exc)},
        )
    elif future.result() is False:
        logger.warning("notification.undelivered", extra={"to": notification.to, "subject": notification.subject})


def _format_date(moment: datetime) -> str:
    return f"{moment:%B} {moment.day}, {moment.year}"


def checked_out(to: str, title: str, author: Optional[str], due_date: datetime) -> Notification:
    html = (
        "<p>Hi there,</p>"
        f"<p>You have successfully checked out the book: <strong>{escape(title)}</strong>"
        f" by <strong>{escape(author or 'Unknown Author')}</strong>.</p>"
        f"<p>Your return date is <strong>{_format_date(due_date)}</strong>.</p>"
        "<p>Enjoy your reading!</p>" + SIGNATURE
    )
    return Notification(to=to, subject=f"Book Checked Out: {title}", html=html)


def checked_in(to: str, title: str, author: Optional[str]) -> Notification:
    html = (
        "<p>Hi there,</p>"
        f"<p>You have successfully checked in the book: <strong>{escape(title)}</strong>"
        f" by {escape(author or 'Unknown Author')}.</p>"
        "<p>Thank you for using our library!</p>" + SIGNATURE
    )
    return Notification(to=to, subject=f"Book Checked In: {title}", html=html)


def purchased(to: str, title: str, author: Optional[str]) -> Notification:
    html = (
        "<p>Hi there,</p>"
        "<p>Thank you for your purchase! You have successfully bought:"
        f" <strong>{escape(title)}</strong> by {escape(author or 'Unknown Author')}.</p>"
        "<p>Enjoy your new book!</p>" + SIGNATURE
    )
    return Notification(to=to, subject=f"Book Purchased: {title}", html=html)


def due_reminder(to: str, title: str, author: Optional[str], due_date: datetime) -> Notification:
    html = (
        "<p>Hi there,</p>"
        f"<p>This is a friendly reminder that the book <strong>{escape(title)}</strong>"
        f" by {escape(author or 'Unknown Author')} is due on <strong>{_format_date(due_date)}</strong>.</p>"
        "<p>Please return it on time to avoid any late fees.</p>" + SIGNATURE
    )
    return Notification(to=to, subject=f"Reminder: Book Due Soon - {title}", html=html)
