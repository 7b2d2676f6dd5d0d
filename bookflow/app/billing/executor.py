"""Single-charge executor that turns gateway calls into payment attempts."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from .exceptions import GatewayError, GatewayTimeoutError
from .gateway import ChargeRequest, PaymentGateway
from .models import PaymentAttempt, Subscription

logger = logging.getLogger(__name__)

DECLINED_MESSAGE = "Payment gateway rejected the charge"


def build_order_reference(organization_id: str, now: datetime) -> str:
    """Return a buy-order identifier that is unique per charge call."""

    millis = int(now.timestamp() * 1000)
    return f"charge_{organization_id}_{millis}_{uuid4().hex[:8]}"


@dataclass
class PaymentAttemptExecutor:
    """Issues one charge for one subscription.

    The executor performs no persistence. Declines, timeouts and transport
    errors all come back as ``PaymentAttempt(success=False)`` with distinct
    error text so the caller never has to handle gateway exceptions.
    """

    gateway: PaymentGateway
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        if self.clock is None:
            return datetime.now(timezone.utc)
        value = self.clock()
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def execute(self, subscription: Subscription) -> PaymentAttempt:
        token = subscription.payment_token
        if token is None or not token.active:
            raise ValueError(f"Subscription {subscription.id} has no active payment token")

        now = self._now()
        order_reference = build_order_reference(subscription.organization_id, now)
        attempt_fields = dict(
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            amount=subscription.amount,
            currency=subscription.currency,
            attempt_number=subscription.payment_attempts + 1,
            order_reference=order_reference,
            timestamp=int(now.timestamp()),
        )
        request = ChargeRequest(
            token_user=token.user_id,
            token_username=token.username,
            order_reference=order_reference,
            amount=subscription.amount,
        )

        started = time.monotonic()
        try:
            result = self.gateway.charge(request)
        except GatewayTimeoutError as exc:
            logger.warning(
                "Charge timed out for subscription %s",
                subscription.id,
                extra={"order_reference": order_reference},
            )
            return PaymentAttempt(success=False, error_message=f"Payment gateway timed out: {exc}", **attempt_fields)
        except GatewayError as exc:
            logger.warning(
                "Charge transport error for subscription %s: %s",
                subscription.id,
                exc,
                extra={"order_reference": order_reference},
            )
            return PaymentAttempt(success=False, error_message=f"Payment gateway error: {exc}", **attempt_fields)
        except Exception as exc:
            logger.exception(
                "Unexpected charge failure for subscription %s",
                subscription.id,
                extra={"order_reference": order_reference},
            )
            return PaymentAttempt(
                success=False,
                error_message=f"Unexpected error during charge: {exc}",
                **attempt_fields,
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if result.success:
            logger.info(
                "Charge approved for subscription %s",
                subscription.id,
                extra={"order_reference": order_reference, "elapsed_ms": elapsed_ms},
            )
            return PaymentAttempt(success=True, authorization_code=result.authorization_code, **attempt_fields)

        logger.warning(
            "Charge declined for subscription %s",
            subscription.id,
            extra={
                "order_reference": order_reference,
                "response_code": result.response_code,
                "elapsed_ms": elapsed_ms,
            },
        )
        return PaymentAttempt(
            success=False,
            authorization_code=result.authorization_code,
            error_message=result.error_message or DECLINED_MESSAGE,
            **attempt_fields,
        )


__all__ = ["DECLINED_MESSAGE", "PaymentAttemptExecutor", "build_order_reference"]
