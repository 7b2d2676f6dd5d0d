from __future__ import annotations

from typing import List

import pytest

from bookflow.app.billing import AlertAnalyzer, AlertSeverity, AlertType, LoggingAlertSink, PassCounts, deliver_alerts
from bookflow.app.billing.models import (
    PaymentFailedData,
    PaymentFailedNotification,
    SubscriptionCanceledData,
    SubscriptionCanceledNotification,
)

from billing_fakes import NOW, RecordingSink, epoch


def _analyzer() -> AlertAnalyzer:
    return AlertAnalyzer(clock=lambda: NOW)


def _counts(processed: int, failed: int) -> PassCounts:
    return PassCounts(processed=processed, successful=processed - failed, failed=failed)


def _failed(organization_id: str, message: str = "declined") -> PaymentFailedNotification:
    return PaymentFailedNotification(
        subscription_id=f"sub_{organization_id}",
        organization_id=organization_id,
        customer_email="owner@example.com",
        timestamp=epoch(NOW),
        data=PaymentFailedData(
            plan_name="Plan Básico",
            amount=12990,
            currency="CLP",
            error_message=message,
            attempt_number=1,
            retry_payment_at=epoch(NOW) + 2 * 86400,
        ),
    )


def _canceled(organization_id: str) -> SubscriptionCanceledNotification:
    return SubscriptionCanceledNotification(
        subscription_id=f"sub_{organization_id}",
        organization_id=organization_id,
        customer_email="owner@example.com",
        timestamp=epoch(NOW),
        data=SubscriptionCanceledData(
            plan_name="Plan Básico",
            amount=12990,
            currency="CLP",
            attempt_number=3,
            canceled_at=epoch(NOW),
        ),
    )


def _types(alerts) -> List[AlertType]:
    return [alert.type for alert in alerts]


def test_clean_run_produces_no_alerts():
    alerts = _analyzer().analyze(_counts(10, 0), _counts(4, 0), [], [])

    assert alerts == []


def test_empty_passes_do_not_divide_by_zero():
    alerts = _analyzer().analyze(PassCounts(), PassCounts(), [], [])

    assert alerts == []


def test_failure_rate_at_threshold_does_not_alert():
    alerts = _analyzer().analyze(_counts(10, 2), PassCounts(), [], [])

    assert alerts == []


def test_failure_rate_just_above_threshold_alerts_high():
    [alert] = _analyzer().analyze(_counts(10000, 2001), PassCounts(), [], [])

    assert alert.type == AlertType.HIGH_FAILURE_RATE
    assert alert.severity == AlertSeverity.HIGH
    assert alert.data.billing_pass == "charge"
    assert alert.data.failure_rate == pytest.approx(20.01)
    assert alert.data.threshold == 20.0


def test_failure_rate_of_exactly_half_stays_high():
    [alert] = _analyzer().analyze(_counts(10, 5), PassCounts(), [], [])

    assert alert.severity == AlertSeverity.HIGH


def test_failure_rate_above_half_is_critical():
    [alert] = _analyzer().analyze(_counts(10000, 5001), PassCounts(), [], [])

    assert alert.severity == AlertSeverity.CRITICAL


def test_retry_failure_rate_alerts_high_even_when_severe():
    [alert] = _analyzer().analyze(PassCounts(), _counts(4, 4), [], [])

    assert alert.type == AlertType.HIGH_FAILURE_RATE
    assert alert.severity == AlertSeverity.HIGH
    assert alert.data.billing_pass == "retry"


def test_critical_error_patterns_are_matched_case_insensitively():
    errors = [
        "Payment failed for subscription sub_1: INSUFFICIENT_FUNDS",
        "Payment failed for subscription sub_2: timeout",
    ]

    [alert] = _analyzer().analyze(PassCounts(), PassCounts(), [], errors)

    assert alert.type == AlertType.BILLING_FAILURE
    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.data.critical_errors == [errors[0]]
    assert alert.data.total_errors == 2


def test_critical_error_sample_is_capped_at_five():
    errors = [f"Payment failed for subscription sub_{i}: card_expired" for i in range(8)]

    alerts = _analyzer().analyze(PassCounts(), PassCounts(), [], errors)

    [critical] = [alert for alert in alerts if alert.type == AlertType.BILLING_FAILURE]
    assert len(critical.data.critical_errors) == 5
    assert critical.data.total_errors == 8


def test_more_than_three_cancellations_raise_medium_alert():
    three = [_canceled(f"org-{i}") for i in range(3)]
    four = three + [_canceled("org-3")]

    assert _analyzer().analyze(PassCounts(), PassCounts(), three, []) == []
    [alert] = _analyzer().analyze(PassCounts(), PassCounts(), four, [])
    assert alert.type == AlertType.BILLING_FAILURE
    assert alert.severity == AlertSeverity.MEDIUM
    assert alert.data.canceled_count == 4
    assert alert.data.organization_ids == ["org-0", "org-1", "org-2", "org-3"]


def test_more_than_ten_errors_raise_system_alert():
    ten = [f"Error processing payment retry sub_{i}: boom" for i in range(10)]

    assert _analyzer().analyze(PassCounts(), PassCounts(), [], ten) == []
    [alert] = _analyzer().analyze(PassCounts(), PassCounts(), [], ten + ["one more"])
    assert alert.type == AlertType.SYSTEM_ERROR
    assert alert.severity == AlertSeverity.HIGH
    assert alert.data.error_count == 11
    assert alert.data.error_sample == ten[:3]


def test_rules_are_evaluated_independently():
    errors = [f"Payment failed for subscription sub_{i}: insufficient_funds" for i in range(11)]
    notifications = [_canceled(f"org-{i}") for i in range(4)]

    alerts = _analyzer().analyze(_counts(11, 11), _counts(4, 4), notifications, errors)

    assert sorted(t.value for t in _types(alerts)) == sorted(
        [
            AlertType.HIGH_FAILURE_RATE.value,
            AlertType.HIGH_FAILURE_RATE.value,
            AlertType.BILLING_FAILURE.value,
            AlertType.BILLING_FAILURE.value,
            AlertType.SYSTEM_ERROR.value,
        ]
    )


def test_analysis_failure_becomes_critical_system_alert(monkeypatch):
    analyzer = _analyzer()

    def explode(*args, **kwargs):
        raise RuntimeError("bad counts")

    monkeypatch.setattr(analyzer, "_evaluate", explode)

    [alert] = analyzer.analyze(PassCounts(), PassCounts(), [], [])

    assert alert.type == AlertType.SYSTEM_ERROR
    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.data.error == "bad counts"


def test_two_failures_for_one_organization_are_not_fraud():
    notifications = [_failed("org-1"), _failed("org-1"), _failed("org-2")]

    assert _analyzer().detect_fraud(notifications) == []


def test_three_failures_for_one_organization_flag_fraud():
    notifications = [_failed("org-1", f"declined {i}") for i in range(3)] + [_failed("org-2")]

    [alert] = _analyzer().detect_fraud(notifications)

    assert alert.type == AlertType.PAYMENT_FRAUD
    assert alert.severity == AlertSeverity.HIGH
    assert alert.organization_id == "org-1"
    assert alert.data.failure_count == 3
    assert [failure.error_message for failure in alert.data.failures] == ["declined 0", "declined 1", "declined 2"]


def test_fraud_detection_ignores_cancellations():
    notifications = [_canceled("org-1") for _ in range(3)]

    assert _analyzer().detect_fraud(notifications) == []


def test_deliver_alerts_counts_each_outcome():
    alerts = _analyzer().analyze(_counts(10, 10), PassCounts(), [], [])

    summary = deliver_alerts(RecordingSink(), alerts)
    failed = deliver_alerts(RecordingSink(fail=True), alerts)

    assert summary.sent == 1 and summary.failed == 0
    assert failed.sent == 0 and failed.failed == 1
    assert failed.errors == ["Failed to send high_failure_rate alert: sink unavailable"]


def test_logging_sink_logs_at_severity_level(caplog):
    [alert] = _analyzer().analyze(_counts(10, 10), PassCounts(), [], [])

    with caplog.at_level("INFO"):
        receipt = LoggingAlertSink().deliver(alert)

    assert receipt.sent is True
    assert any(record.levelname == "CRITICAL" for record in caplog.records)
