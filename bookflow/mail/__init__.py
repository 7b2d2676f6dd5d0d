"""Outbound mail: configuration, providers and billing templates."""

from .config import EmailConfig, load_email_config
from .providers import DevPrintProvider, EmailProvider, SMTPProvider, create_email_provider
from .renderer import render_alert_email, render_billing_notification

__all__ = [
    "DevPrintProvider",
    "EmailConfig",
    "EmailProvider",
    "SMTPProvider",
    "create_email_provider",
    "load_email_config",
    "render_alert_email",
    "render_billing_notification",
]
