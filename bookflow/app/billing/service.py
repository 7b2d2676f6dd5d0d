"""Daily billing orchestration and subscription lifecycle operations."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import reduce
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence
from uuid import uuid4

from .alerts import AlertAnalyzer, AlertSink, deliver_alerts
from .exceptions import (
    BillingPassError,
    BillingRunError,
    InvalidTransitionError,
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
)
from .executor import PaymentAttemptExecutor
from .models import (
    BillingInterval,
    BillingNotification,
    BillingPlan,
    BillingStats,
    DailyBillingReport,
    DeliveryReceipt,
    DeliverySummary,
    PassResult,
    PaymentAttempt,
    PaymentFailedData,
    PaymentFailedNotification,
    PaymentMethodKind,
    PaymentSucceededData,
    PaymentSucceededNotification,
    PaymentToken,
    Subscription,
    SubscriptionCanceledData,
    SubscriptionCanceledNotification,
    SubscriptionStatus,
    TrialEndingData,
    TrialEndingNotification,
)
from .policy import FailureDecision, RetryPolicy
from .repository import SubscriptionRepository

logger = logging.getLogger(__name__)

TRIAL_NOTICE_HORIZON_DAYS = 1
# The first charge is announced for the day after the trial ends.
FIRST_CHARGE_DELAY_SECONDS = 24 * 60 * 60
STATS_TRIAL_HORIZONS = (1, 7, 30)
DEFAULT_TRIAL_DAYS = 14

PLAN_CATALOG: Dict[str, BillingPlan] = {
    "basic": BillingPlan(plan_id="basic", name="Plan Básico", amount=12990),
    "professional": BillingPlan(plan_id="professional", name="Plan Profesional", amount=24990),
    "enterprise": BillingPlan(plan_id="enterprise", name="Plan Empresa", amount=49990),
}
BILLING_PERIOD = {BillingInterval.MONTH: timedelta(days=30), BillingInterval.YEAR: timedelta(days=365)}


def resolve_plan(plan_id: str) -> BillingPlan:
    try:
        return PLAN_CATALOG[plan_id]
    except KeyError:
        raise ValueError(f"Unknown plan {plan_id!r}") from None


class BillingNotificationSink(Protocol):
    """Delivers billing event notifications to customers."""

    def deliver(self, notification: BillingNotification) -> DeliveryReceipt:
        ...


def _current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    if clock is None:
        return datetime.now(timezone.utc)
    value = clock()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


def deliver_notifications(
    sink: BillingNotificationSink,
    notifications: Sequence[BillingNotification],
) -> DeliverySummary:
    """Send each notification once and tally the outcome."""

    sent = 0
    failed = 0
    errors: List[str] = []
    for notification in notifications:
        try:
            receipt = sink.deliver(notification)
        except Exception as exc:
            receipt = DeliveryReceipt(sent=False, error=str(exc))
        if receipt.sent:
            sent += 1
            continue
        failed += 1
        message = (
            f"Failed to send {notification.kind.value} to {notification.customer_email}: "
            f"{receipt.error or 'not delivered'}"
        )
        errors.append(message)
        logger.warning(message)
    return DeliverySummary(sent=sent, failed=failed, errors=errors)


@dataclass
class BillingOrchestrator:
    """Runs the daily billing passes and aggregates their outcome.

    Passes run sequentially (notices, expired-trial charges, retries) and
    subscriptions are charged one at a time. Per-subscription failures are
    isolated; a failing query aborts only its own pass.
    """

    repository: SubscriptionRepository
    executor: PaymentAttemptExecutor
    analyzer: AlertAnalyzer
    alert_sink: AlertSink
    notification_sink: Optional[BillingNotificationSink] = None
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        return _current_time(self.clock)

    # -- passes ---------------------------------------------------------

    def process_trial_notices(self) -> PassResult:
        """Build a ``trial_ending`` notice for every trial ending within a day."""

        now = self._now()
        try:
            subscriptions = self.repository.get_trials_expiring(
                TRIAL_NOTICE_HORIZON_DAYS, require_payment_active=False, now=now
            )
        except Exception as exc:
            raise BillingPassError("trial notices", exc) from exc

        logger.info("Found %d trials ending within %d day", len(subscriptions), TRIAL_NOTICE_HORIZON_DAYS)
        return self._fold(subscriptions, lambda subscription: self._trial_notice(subscription, now))

    def process_expired_trials(self) -> PassResult:
        """Charge trials that have ended and move them to ``active`` or ``past_due``."""

        now = self._now()
        try:
            subscriptions = self.repository.get_trials_expiring(0, require_payment_active=False, now=now)
        except Exception as exc:
            raise BillingPassError("expired trials", exc) from exc

        logger.info("Found %d expired trials to charge", len(subscriptions))
        return self._fold(subscriptions, lambda subscription: self._charge(subscription, now, label="expired trial"))

    def process_payment_retries(self) -> PassResult:
        """Retry past-due subscriptions whose backoff has elapsed."""

        now = self._now()
        try:
            subscriptions = self.repository.get_subscriptions_for_retry(self.policy.max_attempts, now=now)
        except Exception as exc:
            raise BillingPassError("payment retries", exc) from exc

        logger.info("Found %d subscriptions for payment retry", len(subscriptions))
        return self._fold(subscriptions, lambda subscription: self._charge(subscription, now, label="payment retry"))

    @staticmethod
    def _fold(
        subscriptions: Iterable[Subscription],
        handle: Callable[[Subscription], PassResult],
    ) -> PassResult:
        return reduce(lambda total, subscription: total.merge(handle(subscription)), subscriptions, PassResult())

    # -- per-subscription steps -----------------------------------------

    def _trial_notice(self, subscription: Subscription, now: datetime) -> PassResult:
        try:
            trial_end = subscription.trial_end if subscription.trial_end is not None else _epoch(now)
            notification = TrialEndingNotification(
                subscription_id=subscription.id,
                organization_id=subscription.organization_id,
                customer_email=subscription.customer_email,
                timestamp=_epoch(now),
                data=TrialEndingData(
                    plan_name=subscription.plan_name,
                    amount=subscription.amount,
                    currency=subscription.currency,
                    trial_end_date=trial_end,
                    next_billing_date=trial_end + FIRST_CHARGE_DELAY_SECONDS,
                    payment_method_registered=subscription.payment_active,
                ),
            )
        except Exception as exc:
            message = f"Error processing trial {subscription.id}: {exc}"
            logger.exception(message)
            return PassResult(errors=[message])
        return PassResult(processed=1, notifications=[notification])

    def _charge(self, subscription: Subscription, now: datetime, *, label: str) -> PassResult:
        if not subscription.payment_active:
            logger.warning(
                "Skipping subscription %s - no active payment token",
                subscription.id,
                extra={"organization_id": subscription.organization_id, "billing_pass": label},
            )
            return PassResult(processed=1, skipped=1)

        try:
            attempt = self.executor.execute(subscription)
            if attempt.success:
                return self._record_success(subscription, attempt, now)
            return self._record_failure(subscription, attempt, now)
        except Exception as exc:
            message = f"Error processing {label} {subscription.id}: {exc}"
            logger.exception(message)
            return PassResult(processed=1, failed=1, errors=[message])

    def _record_success(self, subscription: Subscription, attempt: PaymentAttempt, now: datetime) -> PassResult:
        decision = self.policy.decide_success(now, subscription.interval)
        fields: Dict[str, Any] = {
            "status": SubscriptionStatus.ACTIVE,
            "payment_attempts": 0,
            "last_payment_attempt": attempt.timestamp,
            "retry_payment_at": None,
            "last_payment_date": decision.last_payment_date,
            "next_billing_date": decision.next_billing_date,
        }
        if subscription.status == SubscriptionStatus.TRIALING:
            fields["current_period_start"] = decision.last_payment_date
            fields["current_period_end"] = decision.next_billing_date

        self.repository.update(
            subscription.id,
            fields,
            expected_attempts=subscription.payment_attempts,
            expected_status=subscription.status,
        )
        logger.info(
            "Charged subscription %s",
            subscription.id,
            extra={"attempt_number": attempt.attempt_number, "authorization_code": attempt.authorization_code},
        )
        notification = PaymentSucceededNotification(
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            customer_email=subscription.customer_email,
            timestamp=attempt.timestamp,
            data=PaymentSucceededData(
                plan_name=subscription.plan_name,
                amount=attempt.amount,
                currency=attempt.currency,
                transaction_id=attempt.authorization_code,
                attempt_number=attempt.attempt_number,
                next_billing_date=decision.next_billing_date,
                retry_attempt=subscription.status == SubscriptionStatus.PAST_DUE,
            ),
        )
        return PassResult(processed=1, successful=1, notifications=[notification])

    def _record_failure(self, subscription: Subscription, attempt: PaymentAttempt, now: datetime) -> PassResult:
        decision = self.policy.decide_failure(subscription.payment_attempts, now)
        self.repository.update(
            subscription.id,
            self._failure_fields(decision),
            expected_attempts=subscription.payment_attempts,
            expected_status=subscription.status,
        )

        header = dict(
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            customer_email=subscription.customer_email,
            timestamp=attempt.timestamp,
        )
        notification: BillingNotification
        if decision.exhausted:
            notification = SubscriptionCanceledNotification(
                data=SubscriptionCanceledData(
                    plan_name=subscription.plan_name,
                    amount=attempt.amount,
                    currency=attempt.currency,
                    error_message=attempt.error_message,
                    attempt_number=attempt.attempt_number,
                    canceled_at=decision.decided_at,
                ),
                **header,
            )
            logger.warning(
                "Canceled subscription %s after %d failed attempts", subscription.id, decision.attempts
            )
        else:
            notification = PaymentFailedNotification(
                data=PaymentFailedData(
                    plan_name=subscription.plan_name,
                    amount=attempt.amount,
                    currency=attempt.currency,
                    error_message=attempt.error_message,
                    attempt_number=attempt.attempt_number,
                    retry_payment_at=decision.retry_at,
                ),
                **header,
            )
            logger.warning(
                "Charge failed for subscription %s, retry scheduled",
                subscription.id,
                extra={"attempt_number": attempt.attempt_number, "retry_payment_at": decision.retry_at},
            )

        error = f"Payment failed for subscription {subscription.id}: {attempt.error_message}"
        return PassResult(processed=1, failed=1, notifications=[notification], errors=[error])

    @staticmethod
    def _failure_fields(decision: FailureDecision) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "payment_attempts": decision.attempts,
            "last_payment_attempt": decision.decided_at,
            "retry_payment_at": decision.retry_at,
        }
        if decision.exhausted:
            fields["status"] = SubscriptionStatus.CANCELED
            fields["canceled_at"] = decision.decided_at
        else:
            fields["status"] = SubscriptionStatus.PAST_DUE
        return fields

    # -- daily run ------------------------------------------------------

    def run_daily_billing(self) -> DailyBillingReport:
        """Execute all passes, analyze the outcome and deliver alerts."""

        started_at = self._now()
        started = time.monotonic()
        logger.info("Running daily billing", extra={"started_at": started_at.isoformat()})

        passes = (
            ("trial_notices", self.process_trial_notices),
            ("charges", self.process_expired_trials),
            ("retries", self.process_payment_retries),
        )
        results: Dict[str, PassResult] = {}
        errors: List[str] = []
        notifications: List[BillingNotification] = []
        pass_failures: List[str] = []
        for name, run_pass in passes:
            try:
                result = run_pass()
            except BillingPassError as exc:
                logger.error("Billing pass %s aborted: %s", name, exc.cause)
                pass_failures.append(str(exc))
                errors.append(str(exc))
                result = PassResult()
            results[name] = result
            notifications.extend(result.notifications)
            errors.extend(result.errors)

        if len(pass_failures) == len(passes):
            raise BillingRunError("Daily billing process failed: " + "; ".join(pass_failures))

        charges = results["charges"].counts
        retries = results["retries"].counts
        alerts = self.analyzer.analyze(charges, retries, notifications, errors)
        alerts.extend(self.analyzer.detect_fraud(notifications))
        alert_delivery = deliver_alerts(self.alert_sink, alerts)

        notification_delivery = DeliverySummary()
        if self.notification_sink is not None:
            notification_delivery = deliver_notifications(self.notification_sink, notifications)

        report = DailyBillingReport(
            trial_notices=results["trial_notices"].counts,
            charges=charges,
            retries=retries,
            notifications=notifications,
            errors=errors,
            alerts=alerts,
            alert_delivery=alert_delivery,
            notification_delivery=notification_delivery,
            started_at=started_at,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "Daily billing completed",
            extra={
                "trial_notices": report.trial_notices.processed,
                "charges_processed": charges.processed,
                "charges_successful": charges.successful,
                "charges_failed": charges.failed,
                "retries_processed": retries.processed,
                "retries_successful": retries.successful,
                "retries_failed": retries.failed,
                "notifications": report.total_notifications,
                "errors": len(errors),
                "alerts": report.total_alerts,
                "alerts_sent": alert_delivery.sent,
                "alerts_failed": alert_delivery.failed,
            },
        )
        return report


_CANCELABLE = frozenset({SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})


@dataclass
class SubscriptionService:
    """Explicit subscription lifecycle operations outside the billing run."""

    repository: SubscriptionRepository
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        return _current_time(self.clock)

    def get_for_organization(self, organization_id: str) -> Optional[Subscription]:
        return self.repository.get_by_organization(organization_id)

    def start_trial(
        self,
        *,
        organization_id: str,
        plan: BillingPlan,
        customer_email: str,
        trial_days: int = DEFAULT_TRIAL_DAYS,
    ) -> Subscription:
        if trial_days < 0:
            raise ValueError("trial_days must be >= 0")

        existing = self.repository.get_by_organization(organization_id)
        if existing is not None and not existing.is_terminal:
            raise SubscriptionAlreadyExistsError(existing.id)

        now = self._now()
        started = _epoch(now)
        trial_end = _epoch(now + timedelta(days=trial_days)) if trial_days else None
        subscription = Subscription(
            id=f"sub_{uuid4().hex}",
            organization_id=organization_id,
            customer_email=customer_email,
            plan_id=plan.plan_id,
            plan_name=plan.name,
            status=SubscriptionStatus.TRIALING if trial_days else SubscriptionStatus.ACTIVE,
            current_period_start=started,
            current_period_end=trial_end or _epoch(now + BILLING_PERIOD[plan.interval]),
            trial_start=started if trial_days else None,
            trial_end=trial_end,
            amount=plan.amount,
            currency=plan.currency,
            interval=plan.interval,
            payment_method=PaymentMethodKind.ONECLICK,
            next_billing_date=trial_end,
            created_at=now,
            updated_at=now,
        )
        created = self.repository.create(subscription)
        logger.info(
            "Started subscription %s",
            created.id,
            extra={"organization_id": organization_id, "trial_days": trial_days},
        )
        return created

    def register_payment_token(self, subscription_id: str, token: PaymentToken) -> Subscription:
        subscription = self.repository.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        if subscription.is_terminal:
            raise InvalidTransitionError("Cannot register a payment method on a canceled subscription")
        return self.repository.update(
            subscription_id,
            {"payment_token": token, "payment_method": PaymentMethodKind.ONECLICK},
        )

    def complete_inscription(
        self,
        organization_id: str,
        *,
        user_id: str,
        username: str,
        inscription_token: str,
    ) -> Subscription:
        """Register the card returned by a finished gateway inscription and enable charging."""

        subscription = self.repository.get_by_organization(organization_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"organization:{organization_id}")
        token = PaymentToken(
            user_id=user_id,
            username=username,
            inscription_token=inscription_token,
            inscription_date=_epoch(self._now()),
            active=True,
        )
        updated = self.register_payment_token(subscription.id, token)
        logger.info(
            "Payment method registered for subscription %s",
            updated.id,
            extra={"organization_id": organization_id},
        )
        return updated

    def cancel(self, organization_id: str) -> Subscription:
        subscription = self.repository.get_by_organization(organization_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"organization:{organization_id}")
        if subscription.status not in _CANCELABLE:
            raise InvalidTransitionError(
                f"Subscription {subscription.id} cannot be canceled from status {subscription.status.value}"
            )

        canceled = self.repository.update(
            subscription.id,
            {
                "status": SubscriptionStatus.CANCELED,
                "cancel_at_period_end": True,
                "canceled_at": _epoch(self._now()),
                "retry_payment_at": None,
            },
        )
        logger.info("Subscription %s canceled on request", canceled.id, extra={"organization_id": organization_id})
        return canceled

    def collect_stats(self) -> BillingStats:
        now = self._now()
        expiring = {
            days: len(self.repository.get_trials_expiring(days, require_payment_active=False, now=now))
            for days in STATS_TRIAL_HORIZONS
        }
        awaiting_retry = self.repository.get_subscriptions_for_retry(self.policy.max_attempts, now=now)
        return BillingStats(
            subscriptions=self.repository.get_stats(),
            trials_expiring_1d=expiring[1],
            trials_expiring_7d=expiring[7],
            trials_expiring_30d=expiring[30],
            awaiting_retry=len(awaiting_retry),
        )


__all__ = [
    "PLAN_CATALOG",
    "BillingNotificationSink",
    "BillingOrchestrator",
    "SubscriptionService",
    "deliver_notifications",
    "resolve_plan",
]
