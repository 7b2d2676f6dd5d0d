"""Transports for billing mail."""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Dict, List, Optional

from .config import EmailConfig, SMTPSettings

logger = logging.getLogger(__name__)


class EmailProvider:
    """Base provider for outbound email delivery.

    Subclasses raise on delivery failure; retrying is left to the caller.
    """

    name = "base"

    def __init__(self, *, from_email: str) -> None:
        self.from_email = from_email

    def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        reply_to: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    def describe(self) -> Dict[str, str]:
        return {"email_provider": self.name, "email_sender": self.from_email}


class DevPrintProvider(EmailProvider):
    """Keeps messages in memory and logs them instead of sending."""

    name = "dev"

    def __init__(self, *, from_email: str) -> None:
        super().__init__(from_email=from_email)
        self.outbox: List[Dict[str, Optional[str]]] = []

    def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        reply_to: Optional[str] = None,
    ) -> None:
        self.outbox.append({"to": to, "subject": subject, "text": text_body, "reply_to": reply_to})
        logger.info(
            "Dev email dispatch",
            extra={"email_recipient": to, "email_subject": subject, "email_sender": self.from_email},
        )


class SMTPProvider(EmailProvider):
    name = "smtp"

    def __init__(self, *, from_email: str, settings: SMTPSettings) -> None:
        super().__init__(from_email=from_email)
        self.settings = settings

    def build_message(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        reply_to: Optional[str] = None,
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.from_email
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=self.from_email.rpartition("@")[2] or None)
        if reply_to and reply_to != self.from_email:
            message["Reply-To"] = reply_to
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return message

    def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        reply_to: Optional[str] = None,
    ) -> None:
        message = self.build_message(to, subject, html_body, text_body, reply_to=reply_to)
        settings = self.settings
        with smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout) as client:
            if settings.use_tls:
                client.starttls()
            if settings.authenticated:
                client.login(settings.username, settings.password)
            client.send_message(message)

    def describe(self) -> Dict[str, str]:
        details = super().describe()
        details["smtp_host"] = f"{self.settings.host}:{self.settings.port}"
        return details


def create_email_provider(config: EmailConfig) -> EmailProvider:
    if config.provider_name == "smtp":
        return SMTPProvider(from_email=config.from_email, settings=config.smtp)
    if config.provider_name != "dev":
        logger.warning("Unknown email provider %r, falling back to dev", config.provider_name)
    return DevPrintProvider(from_email=config.from_email)


__all__ = ["DevPrintProvider", "EmailProvider", "SMTPProvider", "create_email_provider"]
