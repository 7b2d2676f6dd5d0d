"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ..billing import BillingInterval, BillingStats, DailyBillingReport, PassCounts, Subscription, SubscriptionStatus

MAX_REPORTED_ERRORS = 10


class PassCountsResponse(BaseModel):
    processed: int
    successful: int
    failed: int
    skipped: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_counts(cls, counts: PassCounts) -> "PassCountsResponse":
        return cls(
            processed=counts.processed,
            successful=counts.successful,
            failed=counts.failed,
            skipped=counts.skipped,
        )


class DailyBillingResponse(BaseModel):
    trial_notices: PassCountsResponse = Field(alias="trialNotices")
    charges: PassCountsResponse
    retries: PassCountsResponse
    notifications_count: int = Field(alias="notificationsCount")
    notifications_sent: int = Field(alias="notificationsSent")
    alerts_count: int = Field(alias="alertsCount")
    alerts_sent: int = Field(alias="alertsSent")
    alerts_failed: int = Field(alias="alertsFailed")
    errors_count: int = Field(alias="errorsCount")
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(alias="startedAt")
    duration_ms: int = Field(alias="durationMs")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_report(cls, report: DailyBillingReport) -> "DailyBillingResponse":
        return cls(
            trial_notices=PassCountsResponse.from_counts(report.trial_notices),
            charges=PassCountsResponse.from_counts(report.charges),
            retries=PassCountsResponse.from_counts(report.retries),
            notifications_count=report.total_notifications,
            notifications_sent=report.notification_delivery.sent,
            alerts_count=report.total_alerts,
            alerts_sent=report.alert_delivery.sent,
            alerts_failed=report.alert_delivery.failed,
            errors_count=len(report.errors),
            errors=report.errors[:MAX_REPORTED_ERRORS],
            started_at=report.started_at,
            duration_ms=report.duration_ms,
        )


class BillingStatsResponse(BaseModel):
    total: int
    active: int
    trialing: int
    canceled: int
    past_due: int = Field(alias="pastDue")
    trials_expiring_1d: int = Field(alias="trialsExpiring1d")
    trials_expiring_7d: int = Field(alias="trialsExpiring7d")
    trials_expiring_30d: int = Field(alias="trialsExpiring30d")
    awaiting_retry: int = Field(alias="awaitingRetry")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_stats(cls, stats: BillingStats) -> "BillingStatsResponse":
        counts = stats.subscriptions
        return cls(
            total=counts.total,
            active=counts.active,
            trialing=counts.trialing,
            canceled=counts.canceled,
            past_due=counts.past_due,
            trials_expiring_1d=stats.trials_expiring_1d,
            trials_expiring_7d=stats.trials_expiring_7d,
            trials_expiring_30d=stats.trials_expiring_30d,
            awaiting_retry=stats.awaiting_retry,
        )


class PlanSummary(BaseModel):
    id: str
    name: str
    amount: int
    currency: str
    interval: BillingInterval


class SubscriptionResponse(BaseModel):
    id: str
    organization_id: str = Field(alias="organizationId")
    status: SubscriptionStatus
    current_period_end: int = Field(alias="currentPeriodEnd")
    trial_end: Optional[int] = Field(alias="trialEnd", default=None)
    next_billing_date: Optional[int] = Field(alias="nextBillingDate", default=None)
    retry_payment_at: Optional[int] = Field(alias="retryPaymentAt", default=None)
    payment_attempts: int = Field(alias="paymentAttempts")
    payment_method_registered: bool = Field(alias="paymentMethodRegistered")
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    plan: PlanSummary

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            organization_id=subscription.organization_id,
            status=subscription.status,
            current_period_end=subscription.current_period_end,
            trial_end=subscription.trial_end,
            next_billing_date=subscription.next_billing_date,
            retry_payment_at=subscription.retry_payment_at,
            payment_attempts=subscription.payment_attempts,
            payment_method_registered=subscription.payment_active,
            cancel_at_period_end=subscription.cancel_at_period_end,
            plan=PlanSummary(
                id=subscription.plan_id,
                name=subscription.plan_name,
                amount=subscription.amount,
                currency=subscription.currency,
                interval=subscription.interval,
            ),
        )


class CancelSubscriptionRequest(BaseModel):
    organization_id: str = Field(alias="organizationId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class StartTrialRequest(BaseModel):
    plan_id: str = Field(alias="planId", min_length=1)
    organization_id: str = Field(alias="organizationId", min_length=1)
    trial_days: int = Field(alias="trialDays", ge=0, le=90, default=14)
    customer_email: Optional[EmailStr] = Field(alias="customerEmail", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CompleteInscriptionRequest(BaseModel):
    organization_id: str = Field(alias="organizationId", min_length=1)
    tbk_user: str = Field(alias="tbkUser", min_length=1)
    username: str = Field(min_length=1)
    inscription_token: str = Field(alias="inscriptionToken", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PaymentMethodStatusResponse(BaseModel):
    registered: bool
    username: Optional[str] = None
    inscription_date: Optional[int] = Field(alias="inscriptionDate", default=None)
    status: Optional[SubscriptionStatus] = None
    trial_end: Optional[int] = Field(alias="trialEnd", default=None)
    next_billing_date: Optional[int] = Field(alias="nextBillingDate", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Optional[Subscription]) -> "PaymentMethodStatusResponse":
        if subscription is None:
            return cls(registered=False)
        token = subscription.payment_token
        return cls(
            registered=subscription.payment_active,
            username=token.username if token else None,
            inscription_date=token.inscription_date if token else None,
            status=subscription.status,
            trial_end=subscription.trial_end,
            next_billing_date=subscription.next_billing_date,
        )
