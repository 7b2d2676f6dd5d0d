"""Application wiring for the billing engine."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Mapping, Optional, Tuple

from ...mail.config import EmailConfig, load_email_config
from ...mail.providers import EmailProvider, create_email_provider
from ...mail.renderer import render_alert_email, render_billing_notification
from ...settings import env_bool, env_float, env_int, env_list, env_str
from ..billing import (
    Alert,
    AlertAnalyzer,
    AlertSink,
    BillingNotification,
    BillingNotificationSink,
    BillingOrchestrator,
    LoggingAlertSink,
    OneclickHttpGateway,
    PaymentAttemptExecutor,
    PaymentGateway,
    PostgresSubscriptionRepository,
    RetryPolicy,
    SandboxPaymentGateway,
    SubscriptionService,
)
from ..billing.models import DeliveryReceipt


logger = logging.getLogger("billing")

SUPPORTED_GATEWAYS = frozenset({"sandbox", "oneclick"})
ONECLICK_INTEGRATION_URL = "https://webpay3gint.transbank.cl"


@dataclass(frozen=True)
class BillingConfig:
    """Runtime settings for the billing engine."""

    gateway: str
    oneclick_api_url: str
    oneclick_commerce_code: str
    oneclick_child_commerce_code: str
    oneclick_api_key: str
    gateway_timeout: float
    max_attempts: int
    scheduler_enabled: bool
    run_hour_utc: int
    alert_recipients: Tuple[str, ...]


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    gateway = env_str(env_mapping, "BILLING_GATEWAY", "sandbox").lower()
    if gateway not in SUPPORTED_GATEWAYS:
        raise ValueError(f"Unsupported BILLING_GATEWAY {gateway!r}")

    run_hour_utc = env_int(env_mapping, "BILLING_RUN_HOUR_UTC", default=9)
    if not 0 <= run_hour_utc <= 23:
        raise ValueError("BILLING_RUN_HOUR_UTC must be between 0 and 23")

    return BillingConfig(
        gateway=gateway,
        oneclick_api_url=env_str(env_mapping, "ONECLICK_API_URL", ONECLICK_INTEGRATION_URL).rstrip("/"),
        oneclick_commerce_code=env_str(env_mapping, "ONECLICK_COMMERCE_CODE", ""),
        oneclick_child_commerce_code=env_str(env_mapping, "ONECLICK_CHILD_COMMERCE_CODE", ""),
        oneclick_api_key=env_str(env_mapping, "ONECLICK_API_KEY", ""),
        gateway_timeout=max(1.0, env_float(env_mapping, "BILLING_GATEWAY_TIMEOUT", default=30.0)),
        max_attempts=max(1, env_int(env_mapping, "BILLING_MAX_ATTEMPTS", default=3)),
        scheduler_enabled=env_bool(env_mapping, "BILLING_SCHEDULER_ENABLED", default=False),
        run_hour_utc=run_hour_utc,
        alert_recipients=env_list(env_mapping, "BILLING_ALERT_RECIPIENTS"),
    )


def _send_with_retry(
    provider: EmailProvider,
    config: EmailConfig,
    recipient: str,
    subject: str,
    html_body: str,
    text_body: str,
    *,
    log_context: Mapping[str, object],
) -> DeliveryReceipt:
    attempts = max(1, config.max_attempts)
    backoff = max(0.0, config.backoff_seconds)
    last_error: Optional[str] = None

    for attempt in range(1, attempts + 1):
        try:
            provider.send_email(recipient, subject, html_body, text_body, reply_to=config.support_email)
        except Exception as exc:
            last_error = str(exc)
            logger.exception(
                "Failed to send billing email",
                extra={
                    **log_context,
                    "email_recipient": recipient,
                    "email_attempt": attempt,
                    "email_attempts": attempts,
                },
            )
            if attempt >= attempts:
                break
            if backoff > 0:
                time.sleep(backoff * attempt)
            continue

        logger.info(
            "Billing email dispatched",
            extra={**log_context, "email_recipient": recipient, "email_provider": provider.describe()},
        )
        return DeliveryReceipt(sent=True)

    return DeliveryReceipt(sent=False, error=last_error)


class EmailBillingNotificationSink(BillingNotificationSink):
    """Sends billing event emails to the subscription's customer address."""

    def __init__(self, provider: EmailProvider, config: EmailConfig) -> None:
        self.provider = provider
        self.config = config

    def deliver(self, notification: BillingNotification) -> DeliveryReceipt:
        subject, text_body, html_body = render_billing_notification(
            notification,
            app_base_url=self.config.app_base_url,
            support_email=self.config.support_email,
        )
        return _send_with_retry(
            self.provider,
            self.config,
            notification.customer_email,
            subject,
            html_body,
            text_body,
            log_context={
                "notification_kind": notification.kind.value,
                "subscription_id": notification.subscription_id,
            },
        )


class EmailAlertSink(AlertSink):
    """Emails operator alerts to every configured recipient.

    Alerts are also logged, so a run with no recipients still leaves a trace.
    """

    def __init__(
        self,
        provider: EmailProvider,
        config: EmailConfig,
        recipients: Tuple[str, ...],
    ) -> None:
        self.provider = provider
        self.config = config
        self.recipients = recipients
        self._log_sink = LoggingAlertSink()

    def deliver(self, alert: Alert) -> DeliveryReceipt:
        self._log_sink.deliver(alert)
        if not self.recipients:
            return DeliveryReceipt(sent=True)

        subject, text_body, html_body = render_alert_email(alert)
        failures = []
        for recipient in self.recipients:
            receipt = _send_with_retry(
                self.provider,
                self.config,
                recipient,
                subject,
                html_body,
                text_body,
                log_context={"alert_type": alert.type.value, "alert_severity": alert.severity.value},
            )
            if not receipt.sent:
                failures.append(f"{recipient}: {receipt.error}")
        if failures:
            return DeliveryReceipt(sent=False, error="; ".join(failures))
        return DeliveryReceipt(sent=True)


def build_payment_gateway(config: BillingConfig) -> PaymentGateway:
    if config.gateway == "oneclick":
        return OneclickHttpGateway(
            base_url=config.oneclick_api_url,
            commerce_code=config.oneclick_commerce_code,
            child_commerce_code=config.oneclick_child_commerce_code,
            api_key=config.oneclick_api_key,
            timeout=config.gateway_timeout,
        )
    return SandboxPaymentGateway()


_email_provider_factory: Optional[Callable[[], EmailProvider]] = None


def set_email_provider_factory(factory: Optional[Callable[[], EmailProvider]]) -> None:
    """Override how billing emails obtain their provider (used by ``main``)."""

    global _email_provider_factory
    _email_provider_factory = factory
    get_billing_orchestrator.cache_clear()


def _resolve_email_provider(config: EmailConfig) -> EmailProvider:
    if _email_provider_factory is not None:
        return _email_provider_factory()
    return create_email_provider(config)


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_subscription_repository() -> PostgresSubscriptionRepository:
    return PostgresSubscriptionRepository()


@lru_cache(maxsize=1)
def get_billing_orchestrator() -> BillingOrchestrator:
    billing_config = get_billing_config()
    email_config = load_email_config()
    provider = _resolve_email_provider(email_config)
    policy = RetryPolicy(max_attempts=billing_config.max_attempts)
    orchestrator = BillingOrchestrator(
        repository=get_subscription_repository(),
        executor=PaymentAttemptExecutor(gateway=build_payment_gateway(billing_config)),
        analyzer=AlertAnalyzer(),
        alert_sink=EmailAlertSink(provider, email_config, billing_config.alert_recipients),
        notification_sink=EmailBillingNotificationSink(provider, email_config),
        policy=policy,
    )
    logger.info(
        "Billing orchestrator configured",
        extra={"billing_gateway": billing_config.gateway, "max_attempts": policy.max_attempts},
    )
    return orchestrator


@lru_cache(maxsize=1)
def get_subscription_service() -> SubscriptionService:
    policy = RetryPolicy(max_attempts=get_billing_config().max_attempts)
    return SubscriptionService(repository=get_subscription_repository(), policy=policy)


__all__ = [
    "BillingConfig",
    "EmailAlertSink",
    "EmailBillingNotificationSink",
    "build_payment_gateway",
    "get_billing_config",
    "get_billing_orchestrator",
    "get_subscription_service",
    "load_billing_config",
    "set_email_provider_factory",
]
