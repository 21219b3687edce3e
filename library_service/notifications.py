"""
Outbound reminder channels.

A notifier answers ``send_single_reminder(loan, borrower, book, now=None)`` and
``send_batch_reminder(borrower, loans)`` with a NotificationResult. Transport
problems are reported through the result, never raised, so the reminder
job can carry on with the next borrower.
"""

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional

import requests

from .ledger import days_until_due

logger = logging.getLogger(__name__)

DATE_FORMAT = "%m/%d/%Y"


@dataclass
class NotificationResult:
    success: bool
    error: Optional[str] = None


class Notifier:
    def send_single_reminder(self, loan, borrower, book, now=None) -> NotificationResult:
        raise NotImplementedError

    def send_batch_reminder(self, borrower, loans) -> NotificationResult:
        raise NotImplementedError


# ----------------- message bodies -----------------

def _book_line(book):
    return f"{book.title} - {book.author}" if book.author else book.title


def single_reminder_message(loan, borrower, book, now=None):
    """Return (subject, text) for one loan, worded for due-soon or overdue."""
    days = days_until_due(loan, now)
    overdue = days is not None and days < 0

    if overdue:
        subject = f"Book Return Overdue - {book.title}"
        opening = f'The book "{book.title}" was due {abs(days)} days ago.'
    else:
        subject = f'Reminder: Return Book "{book.title}"'
        opening = (
            f'This is a reminder that you need to return the book "{book.title}" '
            f"in {days} days."
        )

    lines = [
        f"Hello {borrower.full_name},",
        "",
        opening,
        "",
        "Book Details:",
        f"- Title: {book.title}",
    ]
    if book.author:
        lines.append(f"- Author: {book.author}")
    lines += [
        f"- Borrowed on: {loan.borrowed_at.strftime(DATE_FORMAT)}",
        f"- Due date: {loan.due_at.strftime(DATE_FORMAT)}",
        "",
        "Please return the book to the library as soon as possible.",
        "",
        "Thank you!",
        "Library Management System",
    ]
    return subject, "\n".join(lines)


def batch_reminder_message(borrower, loans):
    subject = f"Reminder: Return {len(loans)} Books"
    books = [
        f"- {_book_line(loan.book)} (Due: {loan.due_at.strftime(DATE_FORMAT)})"
        for loan in loans
    ]
    lines = [
        f"Hello {borrower.full_name},",
        "",
        f"You have {len(loans)} books that need to be returned soon:",
        "",
        *books,
        "",
        "Please return the books to the library during opening hours.",
        "",
        "Thank you!",
        "Library Management System",
    ]
    return subject, "\n".join(lines)


# ----------------- email -----------------

class EmailNotifier(Notifier):
    def __init__(
        self,
        enabled=False,
        host="smtp.gmail.com",
        port=587,
        use_tls=True,
        user=None,
        password=None,
        sender="Library System <noreply@library.com>",
        timeout=10,
    ):
        self.enabled = enabled
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            enabled=config.get("EMAIL_ENABLED", False),
            host=config.get("EMAIL_HOST", "smtp.gmail.com"),
            port=config.get("EMAIL_PORT", 587),
            use_tls=config.get("EMAIL_USE_TLS", True),
            user=config.get("EMAIL_USER"),
            password=config.get("EMAIL_PASSWORD"),
            sender=config.get("EMAIL_FROM", "Library System <noreply@library.com>"),
        )

    @property
    def configured(self):
        return bool(self.enabled and self.user and self.password)

    def send(self, to, subject, text):
        if not self.configured:
            logger.info("Email not sent to %s - transport not configured", to)
            return NotificationResult(False, "Email service not configured")

        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Failed to send email to %s (subject=%s): %s", to, subject, e)
            return NotificationResult(False, str(e))

        logger.info("Email sent to %s subject=%s", to, subject)
        return NotificationResult(True)

    def send_single_reminder(self, loan, borrower, book, now=None):
        subject, text = single_reminder_message(loan, borrower, book, now)
        return self.send(borrower.email, subject, text)

    def send_batch_reminder(self, borrower, loans):
        subject, text = batch_reminder_message(borrower, loans)
        return self.send(borrower.email, subject, text)


# ----------------- messaging gateway -----------------

class WebhookNotifier(Notifier):
    """Posts reminder text to a WhatsApp-style messaging API."""

    def __init__(self, api_url, api_key=None, timeout=5):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout

    def send(self, borrower, text):
        if not borrower.phone:
            return NotificationResult(False, "Borrower has no phone number")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = requests.post(
                self.api_url,
                json={"to": borrower.phone, "message": text},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("Messaging API unreachable for user %s: %s", borrower.id, e)
            return NotificationResult(False, str(e))

        if not resp.ok:
            logger.warning(
                "Messaging API returned %s for user %s", resp.status_code, borrower.id
            )
            return NotificationResult(False, f"Messaging API returned {resp.status_code}")
        return NotificationResult(True)

    def send_single_reminder(self, loan, borrower, book, now=None):
        _, text = single_reminder_message(loan, borrower, book, now)
        return self.send(borrower, text)

    def send_batch_reminder(self, borrower, loans):
        _, text = batch_reminder_message(borrower, loans)
        return self.send(borrower, text)


class FanoutNotifier(Notifier):
    """Delivers through every channel; succeeds if at least one channel did."""

    def __init__(self, channels):
        self.channels = list(channels)

    def _combine(self, results):
        if any(r.success for r in results):
            return NotificationResult(True)
        errors = "; ".join(r.error for r in results if r.error)
        return NotificationResult(False, errors or "No notification channel configured")

    def send_single_reminder(self, loan, borrower, book, now=None):
        return self._combine(
            [c.send_single_reminder(loan, borrower, book, now) for c in self.channels]
        )

    def send_batch_reminder(self, borrower, loans):
        return self._combine([c.send_batch_reminder(borrower, loans) for c in self.channels])


def build_notifier(config):
    email = EmailNotifier.from_config(config)
    if config.get("WHATSAPP_ENABLED") and config.get("WHATSAPP_API_URL"):
        webhook = WebhookNotifier(config["WHATSAPP_API_URL"], config.get("WHATSAPP_API_KEY"))
        return FanoutNotifier([email, webhook])
    return email
