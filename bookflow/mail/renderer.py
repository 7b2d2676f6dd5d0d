"""Rendering helpers for billing emails."""
from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..app.billing.models import (
    Alert,
    BillingNotification,
    NotificationKind,
    PaymentFailedNotification,
    PaymentSucceededNotification,
    SubscriptionCanceledNotification,
    TrialEndingNotification,
)

_TEMPLATE_PATH = Path(__file__).resolve().parent / "templates"
_PLACEHOLDER_PATTERN = re.compile(r"{{\s*(\w+)\s*}}")

_TEMPLATES: Dict[NotificationKind, str] = {
    NotificationKind.TRIAL_ENDING: "trial_ending",
    NotificationKind.PAYMENT_SUCCESS: "payment_success",
    NotificationKind.PAYMENT_FAILED: "payment_failed",
    NotificationKind.SUBSCRIPTION_CANCELED: "subscription_canceled",
}

# Currencies billed without minor units.
_ZERO_DECIMAL_CURRENCIES = frozenset({"CLP", "JPY", "KRW"})


def _load_template(template: str) -> str:
    path = _TEMPLATE_PATH / template
    return path.read_text(encoding="utf-8")


def _render_template(template: str, context: Dict[str, Any], *, escape: bool = False) -> str:
    source = _load_template(template)

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = context.get(key, "")
        text = "" if value is None else str(value)
        return html.escape(text) if escape else text

    return _PLACEHOLDER_PATTERN.sub(_replace, source)


def _render_subject_body(base_template: str, context: Dict[str, Any]) -> Tuple[str, str, str]:
    subject = _render_template(f"{base_template}_subject.txt.j2", context)
    text_body = _render_template(f"{base_template}_body.txt.j2", context)
    html_body = _render_template(f"{base_template}_body.html.j2", context, escape=True)
    return subject.strip(), text_body.strip(), html_body.strip()


def format_amount(amount: int, currency: str) -> str:
    """Format an amount stored in the currency's smallest unit."""

    currency = currency.upper()
    if currency in _ZERO_DECIMAL_CURRENCIES:
        return f"${amount:,} {currency}".replace(",", ".")
    return f"${amount / 100:,.2f} {currency}"


def format_date(timestamp: Optional[int]) -> str:
    if timestamp is None:
        return ""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%d %b %Y")


def _notification_context(notification: BillingNotification) -> Dict[str, Any]:
    data = notification.data
    context: Dict[str, Any] = {
        "plan_name": data.plan_name,
        "amount": format_amount(data.amount, data.currency),
        "organization_id": notification.organization_id,
    }
    if isinstance(notification, TrialEndingNotification):
        context["trial_end_date"] = format_date(data.trial_end_date)
        context["next_billing_date"] = format_date(data.next_billing_date)
        context["payment_method_note"] = (
            "Your registered card will be charged automatically."
            if data.payment_method_registered
            else "No payment method is registered yet. Add a card to keep your account active."
        )
    elif isinstance(notification, PaymentSucceededNotification):
        context["transaction_id"] = data.transaction_id or "-"
        context["next_billing_date"] = format_date(data.next_billing_date)
        context["retry_note"] = "Your account is back in good standing. " if data.retry_attempt else ""
    elif isinstance(notification, PaymentFailedNotification):
        context["attempt_number"] = data.attempt_number
        context["error_message"] = data.error_message or "The payment was declined."
        context["retry_date"] = format_date(data.retry_payment_at)
    elif isinstance(notification, SubscriptionCanceledNotification):
        context["attempt_number"] = data.attempt_number
        context["error_message"] = data.error_message or "The payment was declined."
        context["canceled_date"] = format_date(data.canceled_at)
    return context


def render_billing_notification(
    notification: BillingNotification,
    *,
    app_base_url: str,
    support_email: str,
) -> Tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for a customer billing email."""

    context = _notification_context(notification)
    context["billing_url"] = f"{app_base_url.rstrip('/')}/settings/billing"
    context["support_email"] = support_email
    return _render_subject_body(_TEMPLATES[notification.kind], context)


def render_alert_email(alert: Alert) -> Tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for an operator alert."""

    context = {
        "severity": alert.severity.value.upper(),
        "alert_type": alert.type.value,
        "title": alert.title,
        "message": alert.message,
        "organization_id": alert.organization_id or "-",
        "raised_at": datetime.fromtimestamp(alert.timestamp, tz=timezone.utc).isoformat(),
        "details": alert.data.model_dump_json(indent=2),
    }
    return _render_subject_body("billing_alert", context)


__all__ = ["format_amount", "format_date", "render_alert_email", "render_billing_notification"]
