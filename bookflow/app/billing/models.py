"""Domain models for subscription billing and dunning."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SubscriptionStatus(str, Enum):
    """Lifecycle state for a tenant subscription."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"


class BillingInterval(str, Enum):
    """Supported billing frequencies."""

    MONTH = "month"
    YEAR = "year"


class PaymentMethodKind(str, Enum):
    """How a subscription is paid."""

    ONECLICK = "oneclick"
    MANUAL = "manual"


class NotificationKind(str, Enum):
    """Billing events surfaced to customers and to the alert analyzer."""

    TRIAL_ENDING = "trial_ending"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class AlertType(str, Enum):
    """Operational alert categories emitted by the analyzer."""

    HIGH_FAILURE_RATE = "high_failure_rate"
    BILLING_FAILURE = "billing_failure"
    SYSTEM_ERROR = "system_error"
    PAYMENT_FRAUD = "payment_fraud"


class AlertSeverity(str, Enum):
    """Alert urgency levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingPlan(BaseModel):
    """Sellable plan with its recurring price."""

    plan_id: str
    name: str
    amount: int = Field(ge=0)
    currency: str = "CLP"
    interval: BillingInterval = BillingInterval.MONTH

    model_config = ConfigDict(frozen=True)


class PaymentToken(BaseModel):
    """Reusable card registration used for tokenized charges."""

    user_id: str = Field(min_length=1, description="Gateway-side identifier of the registered card")
    username: str = Field(min_length=1, description="Customer username the card was registered under")
    inscription_token: str = Field(min_length=1)
    inscription_date: int
    active: bool = True

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Subscription(BaseModel):
    """One subscription record per tenant organization."""

    id: str
    organization_id: str
    customer_email: str
    plan_id: str
    plan_name: str
    status: SubscriptionStatus
    current_period_start: int
    current_period_end: int
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    amount: int = Field(ge=0)
    currency: str = Field(default="CLP", min_length=3, max_length=3)
    interval: BillingInterval = BillingInterval.MONTH
    payment_method: PaymentMethodKind = PaymentMethodKind.ONECLICK
    last_payment_date: Optional[int] = None
    next_billing_date: Optional[int] = None
    payment_token: Optional[PaymentToken] = None
    payment_attempts: int = Field(default=0, ge=0)
    last_payment_attempt: Optional[int] = None
    retry_payment_at: Optional[int] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _check_periods(self) -> "Subscription":
        if self.current_period_end < self.current_period_start:
            raise ValueError("current_period_end must not precede current_period_start")
        if self.trial_start is not None and self.trial_end is not None and self.trial_end < self.trial_start:
            raise ValueError("trial_end must not precede trial_start")
        return self

    @property
    def payment_active(self) -> bool:
        """Return ``True`` when a reusable charge token is registered and enabled."""
        return self.payment_token is not None and self.payment_token.active

    @property
    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED


class SubscriptionStats(BaseModel):
    """Status breakdown across all stored subscriptions."""

    total: int = 0
    active: int = 0
    trialing: int = 0
    canceled: int = 0
    past_due: int = 0

    model_config = ConfigDict(frozen=True)


class BillingStats(BaseModel):
    """Store stats plus the upcoming billing workload."""

    subscriptions: SubscriptionStats
    trials_expiring_1d: int = 0
    trials_expiring_7d: int = 0
    trials_expiring_30d: int = 0
    awaiting_retry: int = 0

    model_config = ConfigDict(frozen=True)


class PaymentAttempt(BaseModel):
    """Normalized outcome of a single tokenized charge."""

    subscription_id: str
    organization_id: str
    amount: int
    currency: str
    attempt_number: int = Field(ge=1)
    success: bool
    order_reference: str
    authorization_code: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: int

    model_config = ConfigDict(frozen=True)


# -- billing notifications ---------------------------------------------------


class TrialEndingData(BaseModel):
    plan_name: str
    amount: int
    currency: str
    trial_end_date: int
    next_billing_date: int
    payment_method_registered: bool

    model_config = ConfigDict(frozen=True)


class PaymentSucceededData(BaseModel):
    plan_name: str
    amount: int
    currency: str
    transaction_id: Optional[str] = None
    attempt_number: int
    next_billing_date: int
    retry_attempt: bool = False

    model_config = ConfigDict(frozen=True)


class PaymentFailedData(BaseModel):
    plan_name: str
    amount: int
    currency: str
    error_message: Optional[str] = None
    attempt_number: int
    retry_payment_at: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionCanceledData(BaseModel):
    plan_name: str
    amount: int
    currency: str
    error_message: Optional[str] = None
    attempt_number: int
    canceled_at: int

    model_config = ConfigDict(frozen=True)


class _NotificationBase(BaseModel):
    subscription_id: str
    organization_id: str
    customer_email: str
    timestamp: int

    model_config = ConfigDict(frozen=True)


class TrialEndingNotification(_NotificationBase):
    kind: Literal[NotificationKind.TRIAL_ENDING] = NotificationKind.TRIAL_ENDING
    data: TrialEndingData


class PaymentSucceededNotification(_NotificationBase):
    kind: Literal[NotificationKind.PAYMENT_SUCCESS] = NotificationKind.PAYMENT_SUCCESS
    data: PaymentSucceededData


class PaymentFailedNotification(_NotificationBase):
    kind: Literal[NotificationKind.PAYMENT_FAILED] = NotificationKind.PAYMENT_FAILED
    data: PaymentFailedData


class SubscriptionCanceledNotification(_NotificationBase):
    kind: Literal[NotificationKind.SUBSCRIPTION_CANCELED] = NotificationKind.SUBSCRIPTION_CANCELED
    data: SubscriptionCanceledData


BillingNotification = Annotated[
    Union[
        TrialEndingNotification,
        PaymentSucceededNotification,
        PaymentFailedNotification,
        SubscriptionCanceledNotification,
    ],
    Field(discriminator="kind"),
]


# -- alerts ------------------------------------------------------------------


class FailureRateData(BaseModel):
    failure_rate: float
    processed: int
    failed: int
    threshold: float
    billing_pass: Literal["charge", "retry"]

    model_config = ConfigDict(frozen=True)


class CriticalErrorsData(BaseModel):
    critical_errors: List[str]
    total_errors: int

    model_config = ConfigDict(frozen=True)


class CancellationSpikeData(BaseModel):
    canceled_count: int
    organization_ids: List[str]

    model_config = ConfigDict(frozen=True)


class ErrorVolumeData(BaseModel):
    error_count: int
    error_sample: List[str]

    model_config = ConfigDict(frozen=True)


class AnalysisFailureData(BaseModel):
    error: str

    model_config = ConfigDict(frozen=True)


class FraudFailure(BaseModel):
    timestamp: int
    error_message: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class FraudPatternData(BaseModel):
    organization_id: str
    failure_count: int
    failures: List[FraudFailure]

    model_config = ConfigDict(frozen=True)


class _AlertBase(BaseModel):
    severity: AlertSeverity
    title: str
    message: str
    timestamp: int
    organization_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class HighFailureRateAlert(_AlertBase):
    type: Literal[AlertType.HIGH_FAILURE_RATE] = AlertType.HIGH_FAILURE_RATE
    data: FailureRateData


class BillingFailureAlert(_AlertBase):
    type: Literal[AlertType.BILLING_FAILURE] = AlertType.BILLING_FAILURE
    data: Union[CriticalErrorsData, CancellationSpikeData]


class SystemErrorAlert(_AlertBase):
    type: Literal[AlertType.SYSTEM_ERROR] = AlertType.SYSTEM_ERROR
    data: Union[ErrorVolumeData, AnalysisFailureData]


class PaymentFraudAlert(_AlertBase):
    type: Literal[AlertType.PAYMENT_FRAUD] = AlertType.PAYMENT_FRAUD
    data: FraudPatternData


Alert = Annotated[
    Union[HighFailureRateAlert, BillingFailureAlert, SystemErrorAlert, PaymentFraudAlert],
    Field(discriminator="type"),
]


# -- pass and run results ----------------------------------------------------


class PassCounts(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0

    model_config = ConfigDict(frozen=True)


class PassResult(BaseModel):
    """Aggregate outcome of one billing pass."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    notifications: List[BillingNotification] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @property
    def counts(self) -> PassCounts:
        return PassCounts(
            processed=self.processed,
            successful=self.successful,
            failed=self.failed,
            skipped=self.skipped,
        )

    def merge(self, other: "PassResult") -> "PassResult":
        """Combine two partial results into one."""

        return PassResult(
            processed=self.processed + other.processed,
            successful=self.successful + other.successful,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
            notifications=[*self.notifications, *other.notifications],
            errors=[*self.errors, *other.errors],
        )


class DeliveryReceipt(BaseModel):
    """Result of handing one alert or notification to a sink."""

    sent: bool
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class DeliverySummary(BaseModel):
    """Outcome of a bulk delivery to a notification sink."""

    sent: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class DailyBillingReport(BaseModel):
    """Consolidated result of one daily billing run."""

    trial_notices: PassCounts
    charges: PassCounts
    retries: PassCounts
    notifications: List[BillingNotification] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    alerts: List[Alert] = Field(default_factory=list)
    alert_delivery: DeliverySummary = Field(default_factory=DeliverySummary)
    notification_delivery: DeliverySummary = Field(default_factory=DeliverySummary)
    started_at: datetime = Field(default_factory=_utcnow)
    duration_ms: int = 0

    model_config = ConfigDict(frozen=True)

    @property
    def total_notifications(self) -> int:
        return len(self.notifications)

    @property
    def total_alerts(self) -> int:
        return len(self.alerts)
