"""Operational alerting and fraud heuristics over billing run aggregates."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import (
    Alert,
    AlertSeverity,
    AnalysisFailureData,
    BillingFailureAlert,
    BillingNotification,
    CancellationSpikeData,
    CriticalErrorsData,
    DeliveryReceipt,
    DeliverySummary,
    ErrorVolumeData,
    FailureRateData,
    FraudFailure,
    FraudPatternData,
    HighFailureRateAlert,
    PassCounts,
    PaymentFailedNotification,
    PaymentFraudAlert,
    SubscriptionCanceledNotification,
    SystemErrorAlert,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertThresholds:
    """Tunable limits for the alert rules."""

    max_failure_rate: float = 20.0
    critical_failure_rate: float = 50.0
    critical_error_patterns: Tuple[str, ...] = (
        "insufficient_funds",
        "card_expired",
        "card_blocked",
        "fraud_suspected",
    )
    critical_error_sample: int = 5
    max_cancellations: int = 3
    max_errors: int = 10
    error_volume_sample: int = 3
    fraud_failure_threshold: int = 3
    canceled_organization_sample: int = 10


class AlertSink(Protocol):
    """Delivers operational alerts to operators."""

    def deliver(self, alert: Alert) -> DeliveryReceipt:
        ...


def _failure_rate(counts: PassCounts) -> Optional[float]:
    if counts.processed <= 0:
        return None
    return counts.failed / counts.processed * 100


@dataclass
class AlertAnalyzer:
    """Stateless evaluation of threshold rules over one billing run.

    Every rule is evaluated independently; none suppresses another.
    """

    thresholds: AlertThresholds = field(default_factory=AlertThresholds)
    clock: Optional[Callable[[], datetime]] = None

    def _timestamp(self) -> int:
        now = self.clock() if self.clock is not None else datetime.now(timezone.utc)
        return int(now.timestamp())

    def analyze(
        self,
        charge_counts: PassCounts,
        retry_counts: PassCounts,
        notifications: Sequence[BillingNotification],
        errors: Sequence[str],
    ) -> List[Alert]:
        """Return the alerts warranted by a run; never raises."""

        try:
            alerts = self._evaluate(charge_counts, retry_counts, notifications, errors)
        except Exception as exc:
            logger.exception("Billing alert analysis failed")
            return [
                SystemErrorAlert(
                    severity=AlertSeverity.CRITICAL,
                    title="Alert analysis failed",
                    message=f"Billing results could not be analyzed: {exc}",
                    data=AnalysisFailureData(error=str(exc)),
                    timestamp=self._timestamp(),
                )
            ]
        logger.info("Generated %d alerts from billing analysis", len(alerts))
        return alerts

    def _evaluate(
        self,
        charge_counts: PassCounts,
        retry_counts: PassCounts,
        notifications: Sequence[BillingNotification],
        errors: Sequence[str],
    ) -> List[Alert]:
        limits = self.thresholds
        timestamp = self._timestamp()
        alerts: List[Alert] = []

        charge_rate = _failure_rate(charge_counts)
        if charge_rate is not None and charge_rate > limits.max_failure_rate:
            severity = AlertSeverity.CRITICAL if charge_rate > limits.critical_failure_rate else AlertSeverity.HIGH
            alerts.append(
                HighFailureRateAlert(
                    severity=severity,
                    title="High charge failure rate",
                    message=(
                        f"Charge failure rate is {charge_rate:.1f}% "
                        f"({charge_counts.failed}/{charge_counts.processed})"
                    ),
                    data=FailureRateData(
                        failure_rate=charge_rate,
                        processed=charge_counts.processed,
                        failed=charge_counts.failed,
                        threshold=limits.max_failure_rate,
                        billing_pass="charge",
                    ),
                    timestamp=timestamp,
                )
            )

        retry_rate = _failure_rate(retry_counts)
        if retry_rate is not None and retry_rate > limits.max_failure_rate:
            alerts.append(
                HighFailureRateAlert(
                    severity=AlertSeverity.HIGH,
                    title="High retry failure rate",
                    message=(
                        f"Retry failure rate is {retry_rate:.1f}% "
                        f"({retry_counts.failed}/{retry_counts.processed})"
                    ),
                    data=FailureRateData(
                        failure_rate=retry_rate,
                        processed=retry_counts.processed,
                        failed=retry_counts.failed,
                        threshold=limits.max_failure_rate,
                        billing_pass="retry",
                    ),
                    timestamp=timestamp,
                )
            )

        patterns = [pattern.lower() for pattern in limits.critical_error_patterns]
        critical_errors = [error for error in errors if any(pattern in error.lower() for pattern in patterns)]
        if critical_errors:
            alerts.append(
                BillingFailureAlert(
                    severity=AlertSeverity.CRITICAL,
                    title="Critical billing errors detected",
                    message=f"{len(critical_errors)} critical errors detected during billing",
                    data=CriticalErrorsData(
                        critical_errors=critical_errors[: limits.critical_error_sample],
                        total_errors=len(errors),
                    ),
                    timestamp=timestamp,
                )
            )

        canceled = [n for n in notifications if isinstance(n, SubscriptionCanceledNotification)]
        if len(canceled) > limits.max_cancellations:
            alerts.append(
                BillingFailureAlert(
                    severity=AlertSeverity.MEDIUM,
                    title="Multiple subscriptions canceled",
                    message=f"{len(canceled)} subscriptions were canceled after failed payments",
                    data=CancellationSpikeData(
                        canceled_count=len(canceled),
                        organization_ids=[n.organization_id for n in canceled][
                            : limits.canceled_organization_sample
                        ],
                    ),
                    timestamp=timestamp,
                )
            )

        if len(errors) > limits.max_errors:
            alerts.append(
                SystemErrorAlert(
                    severity=AlertSeverity.HIGH,
                    title="High number of billing errors",
                    message=f"{len(errors)} errors were recorded during billing",
                    data=ErrorVolumeData(
                        error_count=len(errors),
                        error_sample=list(errors[: limits.error_volume_sample]),
                    ),
                    timestamp=timestamp,
                )
            )

        return alerts

    def detect_fraud(self, notifications: Sequence[BillingNotification]) -> List[Alert]:
        """Flag organizations with concentrated payment failures in one batch."""

        try:
            failures_by_org: Dict[str, List[PaymentFailedNotification]] = defaultdict(list)
            for notification in notifications:
                if isinstance(notification, PaymentFailedNotification):
                    failures_by_org[notification.organization_id].append(notification)

            timestamp = self._timestamp()
            alerts: List[Alert] = []
            for organization_id, failures in failures_by_org.items():
                if len(failures) < self.thresholds.fraud_failure_threshold:
                    continue
                alerts.append(
                    PaymentFraudAlert(
                        severity=AlertSeverity.HIGH,
                        title="Possible fraud pattern detected",
                        message=f"Organization {organization_id} has {len(failures)} payment failures in one run",
                        data=FraudPatternData(
                            organization_id=organization_id,
                            failure_count=len(failures),
                            failures=[
                                FraudFailure(timestamp=f.timestamp, error_message=f.data.error_message)
                                for f in failures
                            ],
                        ),
                        timestamp=timestamp,
                        organization_id=organization_id,
                    )
                )
            return alerts
        except Exception:
            logger.exception("Fraud pattern detection failed")
            return []


def deliver_alerts(sink: AlertSink, alerts: Sequence[Alert]) -> DeliverySummary:
    """Hand every alert to ``sink`` once; failures are counted, never retried."""

    sent = 0
    failed = 0
    errors: List[str] = []
    for alert in alerts:
        try:
            receipt = sink.deliver(alert)
        except Exception as exc:
            failed += 1
            errors.append(f"Failed to send {alert.type.value} alert: {exc}")
            logger.warning("Alert delivery raised", extra={"alert_type": alert.type.value, "error": str(exc)})
            continue
        if receipt.sent:
            sent += 1
        else:
            failed += 1
            errors.append(f"Failed to send {alert.type.value} alert: {receipt.error or 'not delivered'}")
    logger.info("Alerts sent: %d, failed: %d", sent, failed)
    return DeliverySummary(sent=sent, failed=failed, errors=errors)


_SEVERITY_LEVELS = {
    AlertSeverity.LOW: logging.INFO,
    AlertSeverity.MEDIUM: logging.WARNING,
    AlertSeverity.HIGH: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


class LoggingAlertSink(AlertSink):
    """Sink that records alerts to the application logger."""

    def deliver(self, alert: Alert) -> DeliveryReceipt:
        logger.log(
            _SEVERITY_LEVELS[alert.severity],
            "Billing alert %s: %s",
            alert.type.value,
            alert.title,
            extra={
                "alert_type": alert.type.value,
                "alert_severity": alert.severity.value,
                "alert_message": alert.message,
                "organization_id": alert.organization_id,
            },
        )
        return DeliveryReceipt(sent=True)


__all__ = [
    "AlertAnalyzer",
    "AlertSink",
    "AlertThresholds",
    "LoggingAlertSink",
    "deliver_alerts",
]
