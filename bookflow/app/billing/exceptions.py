"""Error taxonomy for the billing subsystem."""
from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for billing failures."""


class SubscriptionNotFoundError(BillingError, LookupError):
    """Raised when a subscription record does not exist."""

    def __init__(self, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} not found")


class SubscriptionAlreadyExistsError(BillingError):
    """Raised when creating a subscription whose identity is already taken."""

    def __init__(self, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} already exists")


class ConditionalUpdateError(BillingError):
    """A guarded write lost against a concurrent update."""

    def __init__(
        self,
        subscription_id: str,
        expected_attempts: Optional[int],
        expected_status: Optional[str] = None,
    ) -> None:
        self.subscription_id = subscription_id
        self.expected_attempts = expected_attempts
        self.expected_status = expected_status
        super().__init__(
            f"Subscription {subscription_id} changed concurrently "
            f"(expected status={expected_status} payment_attempts={expected_attempts})"
        )


class InvalidTransitionError(BillingError, ValueError):
    """Requested status change is not allowed by the subscription state machine."""


class GatewayError(BillingError):
    """Transport or protocol failure talking to the payment gateway."""


class GatewayTimeoutError(GatewayError):
    """The payment gateway did not answer within the configured timeout."""


class BillingPassError(BillingError):
    """A billing pass could not query its subscriptions and was aborted."""

    def __init__(self, pass_name: str, cause: BaseException) -> None:
        self.pass_name = pass_name
        self.cause = cause
        super().__init__(f"Failed to process {pass_name}: {cause}")


class BillingRunError(BillingError):
    """No billing pass could complete."""


__all__ = [
    "BillingError",
    "BillingPassError",
    "BillingRunError",
    "ConditionalUpdateError",
    "GatewayError",
    "GatewayTimeoutError",
    "InvalidTransitionError",
    "SubscriptionAlreadyExistsError",
    "SubscriptionNotFoundError",
]
