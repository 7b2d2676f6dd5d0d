"""Outbound mail settings."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from ..settings import env_bool, env_float, env_int, env_str

DEFAULT_SENDER = "billing@bookflow.local"


@dataclass(frozen=True)
class SMTPSettings:
    host: str
    port: int
    username: Optional[str]
    password: Optional[str]
    use_tls: bool
    timeout: float

    @property
    def authenticated(self) -> bool:
        return bool(self.username and self.password)


@dataclass(frozen=True)
class EmailConfig:
    """Sender identity, transport and retry settings for billing mail."""

    provider_name: str
    from_email: str
    support_email: str
    app_base_url: str
    smtp: SMTPSettings
    max_attempts: int
    backoff_seconds: float

    @property
    def billing_url(self) -> str:
        return f"{self.app_base_url}/settings/billing"


def load_smtp_settings(env: Mapping[str, str]) -> SMTPSettings:
    return SMTPSettings(
        host=env_str(env, "SMTP_HOST", "localhost"),
        port=env_int(env, "SMTP_PORT", default=587),
        username=env_str(env, "SMTP_USER"),
        password=env_str(env, "SMTP_PASS"),
        use_tls=env_bool(env, "SMTP_USE_TLS", default=True),
        timeout=max(1.0, env_float(env, "SMTP_TIMEOUT", default=30.0)),
    )


def load_email_config(env: Optional[Mapping[str, str]] = None) -> EmailConfig:
    """Load :class:`EmailConfig` from environment variables.

    ``SUPPORT_EMAIL`` falls back to the sender address; it is used as the
    Reply-To of every billing message.
    """

    env_mapping = os.environ if env is None else env

    from_email = env_str(env_mapping, "FROM_EMAIL", DEFAULT_SENDER)
    return EmailConfig(
        provider_name=(env_str(env_mapping, "EMAIL_PROVIDER", "dev")).lower(),
        from_email=from_email,
        support_email=env_str(env_mapping, "SUPPORT_EMAIL", from_email),
        app_base_url=env_str(env_mapping, "APP_BASE_URL", "http://localhost:5173").rstrip("/"),
        smtp=load_smtp_settings(env_mapping),
        max_attempts=max(1, env_int(env_mapping, "EMAIL_MAX_ATTEMPTS", default=3)),
        backoff_seconds=max(0.0, env_float(env_mapping, "EMAIL_RETRY_BACKOFF", default=2.0)),
    )


__all__ = ["DEFAULT_SENDER", "EmailConfig", "SMTPSettings", "load_email_config", "load_smtp_settings"]
