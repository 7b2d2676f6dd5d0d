"""Billing domain package providing subscription dunning and alerting."""

from .alerts import AlertAnalyzer, AlertSink, AlertThresholds, LoggingAlertSink, deliver_alerts
from .exceptions import (
    BillingError,
    BillingPassError,
    BillingRunError,
    ConditionalUpdateError,
    GatewayError,
    GatewayTimeoutError,
    InvalidTransitionError,
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
)
from .executor import PaymentAttemptExecutor
from .gateway import ChargeRequest, ChargeResult, OneclickHttpGateway, PaymentGateway, SandboxPaymentGateway
from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    BillingInterval,
    BillingNotification,
    BillingPlan,
    BillingStats,
    DailyBillingReport,
    NotificationKind,
    PassCounts,
    PassResult,
    PaymentAttempt,
    PaymentToken,
    Subscription,
    SubscriptionStats,
    SubscriptionStatus,
)
from .policy import RetryPolicy, backoff_delay
from .repository import PostgresSubscriptionRepository, SubscriptionRepository
from .service import PLAN_CATALOG, BillingNotificationSink, BillingOrchestrator, SubscriptionService, resolve_plan

__all__ = [
    "Alert",
    "AlertAnalyzer",
    "AlertSeverity",
    "AlertSink",
    "AlertThresholds",
    "AlertType",
    "BillingError",
    "BillingInterval",
    "BillingNotification",
    "BillingNotificationSink",
    "BillingPlan",
    "BillingOrchestrator",
    "BillingPassError",
    "BillingRunError",
    "BillingStats",
    "ChargeRequest",
    "ChargeResult",
    "ConditionalUpdateError",
    "DailyBillingReport",
    "GatewayError",
    "GatewayTimeoutError",
    "InvalidTransitionError",
    "LoggingAlertSink",
    "NotificationKind",
    "OneclickHttpGateway",
    "PLAN_CATALOG",
    "PassCounts",
    "PassResult",
    "PaymentAttempt",
    "PaymentAttemptExecutor",
    "PaymentGateway",
    "PaymentToken",
    "PostgresSubscriptionRepository",
    "RetryPolicy",
    "SandboxPaymentGateway",
    "Subscription",
    "SubscriptionAlreadyExistsError",
    "SubscriptionNotFoundError",
    "SubscriptionRepository",
    "SubscriptionService",
    "SubscriptionStats",
    "SubscriptionStatus",
    "backoff_delay",
    "deliver_alerts",
    "resolve_plan",
]
