from __future__ import annotations

from typing import List, Optional

from bookflow.app.billing import AlertSeverity
from bookflow.app.billing.models import (
    FailureRateData,
    HighFailureRateAlert,
    PaymentFailedData,
    PaymentFailedNotification,
    PaymentSucceededData,
    PaymentSucceededNotification,
    SubscriptionCanceledData,
    SubscriptionCanceledNotification,
    TrialEndingData,
    TrialEndingNotification,
)
from bookflow.app.services.billing import EmailAlertSink, EmailBillingNotificationSink
from bookflow.mail import DevPrintProvider, EmailProvider, load_email_config, render_billing_notification
from bookflow.mail.renderer import format_amount, format_date, render_alert_email

from billing_fakes import DAY, NOW, epoch

EMAIL_CONFIG = load_email_config(
    env={
        "APP_BASE_URL": "https://app.example.com/",
        "FROM_EMAIL": "billing@example.com",
        "SUPPORT_EMAIL": "help@example.com",
        "EMAIL_MAX_ATTEMPTS": "2",
        "EMAIL_RETRY_BACKOFF": "0",
    }
)

_BASE = dict(
    subscription_id="sub_1",
    organization_id="org-1",
    customer_email="owner1@example.com",
    timestamp=epoch(NOW),
)


class _FailingProvider(EmailProvider):
    name = "failing"

    def __init__(self) -> None:
        super().__init__(from_email="billing@example.com")
        self.calls: List[str] = []

    def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        reply_to: Optional[str] = None,
    ) -> None:
        self.calls.append(to)
        raise RuntimeError("smtp unavailable")


def _failed_notification(error_message: str = "insufficient_funds") -> PaymentFailedNotification:
    return PaymentFailedNotification(
        **_BASE,
        data=PaymentFailedData(
            plan_name="Plan Básico",
            amount=12990,
            currency="CLP",
            error_message=error_message,
            attempt_number=1,
            retry_payment_at=epoch(NOW) + 2 * DAY,
        ),
    )


def _alert() -> HighFailureRateAlert:
    return HighFailureRateAlert(
        severity=AlertSeverity.HIGH,
        title="High payment failure rate",
        message="40.0% of charges failed",
        timestamp=epoch(NOW),
        data=FailureRateData(failure_rate=0.4, processed=10, failed=4, threshold=0.2, billing_pass="charge"),
    )


def test_format_amount_uses_currency_units():
    assert format_amount(12990, "CLP") == "$12.990 CLP"
    assert format_amount(1999, "usd") == "$19.99 USD"


def test_format_date_is_utc_day():
    assert format_date(epoch(NOW)) == "10 Mar 2025"
    assert format_date(None) == ""


def test_trial_ending_email_mentions_missing_card():
    notification = TrialEndingNotification(
        **_BASE,
        data=TrialEndingData(
            plan_name="Plan Básico",
            amount=12990,
            currency="CLP",
            trial_end_date=epoch(NOW) + DAY,
            next_billing_date=epoch(NOW) + DAY,
            payment_method_registered=False,
        ),
    )

    subject, text_body, html_body = render_billing_notification(
        notification, app_base_url="https://app.example.com/", support_email="help@example.com"
    )

    assert subject == "Your Plan Básico trial ends on 11 Mar 2025"
    assert "$12.990 CLP" in text_body
    assert "No payment method is registered yet" in text_body
    assert "https://app.example.com/settings/billing" in text_body
    assert "help@example.com" in html_body


def test_payment_success_email_notes_recovery():
    notification = PaymentSucceededNotification(
        **_BASE,
        data=PaymentSucceededData(
            plan_name="Plan Profesional",
            amount=24990,
            currency="CLP",
            transaction_id="AUTH123",
            attempt_number=2,
            next_billing_date=epoch(NOW) + 30 * DAY,
            retry_attempt=True,
        ),
    )

    subject, text_body, _ = render_billing_notification(
        notification, app_base_url="https://app.example.com", support_email="help@example.com"
    )

    assert subject == "Payment received for Plan Profesional"
    assert "Your account is back in good standing." in text_body
    assert "Transaction: AUTH123" in text_body


def test_payment_failed_email_escapes_html_only():
    notification = _failed_notification("<b>card blocked</b>")

    subject, text_body, html_body = render_billing_notification(
        notification, app_base_url="https://app.example.com", support_email="help@example.com"
    )

    assert subject == "Payment failed for Plan Básico"
    assert "Reason: <b>card blocked</b>" in text_body
    assert "&lt;b&gt;card blocked&lt;/b&gt;" in html_body
    assert "12 Mar 2025" in text_body


def test_canceled_email_reports_attempts():
    notification = SubscriptionCanceledNotification(
        **_BASE,
        data=SubscriptionCanceledData(
            plan_name="Plan Empresa",
            amount=49990,
            currency="CLP",
            error_message="card_expired",
            attempt_number=3,
            canceled_at=epoch(NOW),
        ),
    )

    subject, text_body, _ = render_billing_notification(
        notification, app_base_url="https://app.example.com", support_email="help@example.com"
    )

    assert subject == "Your Plan Empresa subscription was canceled"
    assert "After 3 unsuccessful payment attempts" in text_body
    assert "Last error: card_expired" in text_body


def test_alert_email_includes_details():
    subject, text_body, _ = render_alert_email(_alert())

    assert subject == "[HIGH] Billing alert: High payment failure rate"
    assert "Type: high_failure_rate" in text_body
    assert "Organization: -" in text_body
    assert '"failure_rate": 0.4' in text_body


def test_notification_sink_sends_to_customer():
    provider = DevPrintProvider(from_email="billing@example.com")
    sink = EmailBillingNotificationSink(provider, EMAIL_CONFIG)

    receipt = sink.deliver(_failed_notification())

    assert receipt.sent is True
    assert len(provider.outbox) == 1
    assert provider.outbox[0]["to"] == "owner1@example.com"
    assert provider.outbox[0]["subject"] == "Payment failed for Plan Básico"
    assert provider.outbox[0]["reply_to"] == "help@example.com"
    assert "https://app.example.com/settings/billing" in provider.outbox[0]["text"]


def test_notification_sink_reports_failure_after_retries():
    provider = _FailingProvider()
    sink = EmailBillingNotificationSink(provider, EMAIL_CONFIG)

    receipt = sink.deliver(_failed_notification())

    assert receipt.sent is False
    assert receipt.error == "smtp unavailable"
    assert provider.calls == ["owner1@example.com", "owner1@example.com"]


def test_alert_sink_without_recipients_only_logs(caplog):
    provider = DevPrintProvider(from_email="billing@example.com")
    sink = EmailAlertSink(provider, EMAIL_CONFIG, ())

    with caplog.at_level("WARNING"):
        receipt = sink.deliver(_alert())

    assert receipt.sent is True
    assert provider.outbox == []
    assert any("High payment failure rate" in record.getMessage() for record in caplog.records)


def test_alert_sink_emails_every_recipient():
    provider = DevPrintProvider(from_email="billing@example.com")
    sink = EmailAlertSink(provider, EMAIL_CONFIG, ("ops@example.com", "cto@example.com"))

    receipt = sink.deliver(_alert())

    assert receipt.sent is True
    assert [message["to"] for message in provider.outbox] == ["ops@example.com", "cto@example.com"]


def test_alert_sink_collects_recipient_failures():
    provider = _FailingProvider()
    sink = EmailAlertSink(provider, EMAIL_CONFIG, ("ops@example.com",))

    receipt = sink.deliver(_alert())

    assert receipt.sent is False
    assert receipt.error == "ops@example.com: smtp unavailable"
