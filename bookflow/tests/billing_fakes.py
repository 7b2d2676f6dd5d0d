"""In-memory fakes shared by the billing tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

from bookflow.app.billing import (
    ChargeRequest,
    ChargeResult,
    ConditionalUpdateError,
    PaymentToken,
    Subscription,
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
    SubscriptionStats,
    SubscriptionStatus,
)
from bookflow.app.billing.models import DeliveryReceipt

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
DAY = 24 * 60 * 60


def epoch(moment: datetime) -> int:
    return int(moment.timestamp())


class InMemorySubscriptionRepository:
    def __init__(self) -> None:
        self.subscriptions: Dict[str, Subscription] = {}
        self.failing_queries: Set[str] = set()
        self.failing_horizons: Set[int] = set()
        self.concurrent_writers: Set[str] = set()
        self.updates: List[Dict[str, Any]] = []

    def create(self, subscription: Subscription) -> Subscription:
        if subscription.id in self.subscriptions:
            raise SubscriptionAlreadyExistsError(subscription.id)
        self.subscriptions[subscription.id] = subscription
        return subscription

    def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(subscription_id)

    def get_by_organization(self, organization_id: str) -> Optional[Subscription]:
        matching = [s for s in self.subscriptions.values() if s.organization_id == organization_id]
        matching.sort(key=lambda s: s.created_at, reverse=True)
        return matching[0] if matching else None

    def update(
        self,
        subscription_id: str,
        fields: Mapping[str, Any],
        *,
        expected_attempts: Optional[int] = None,
        expected_status: Optional[SubscriptionStatus] = None,
    ) -> Subscription:
        current = self.subscriptions.get(subscription_id)
        if current is None:
            raise SubscriptionNotFoundError(subscription_id)
        if subscription_id in self.concurrent_writers:
            # Another worker bumped the counter between read and write.
            current = current.model_copy(update={"payment_attempts": current.payment_attempts + 1})
            self.subscriptions[subscription_id] = current
            self.concurrent_writers.discard(subscription_id)
        stale_attempts = expected_attempts is not None and current.payment_attempts != expected_attempts
        stale_status = expected_status is not None and current.status != expected_status
        if stale_attempts or stale_status:
            raise ConditionalUpdateError(
                subscription_id,
                expected_attempts,
                expected_status.value if expected_status is not None else None,
            )
        updated = current.model_copy(update={**fields, "updated_at": NOW})
        self.subscriptions[subscription_id] = updated
        self.updates.append({"id": subscription_id, **fields})
        return updated

    def _check(self, query: str) -> None:
        if query in self.failing_queries:
            raise RuntimeError(f"{query} query failed")

    def get_trials_expiring(
        self,
        days_from_now: int,
        *,
        require_payment_active: bool = True,
        now: Optional[datetime] = None,
    ) -> List[Subscription]:
        self._check("trials")
        if days_from_now in self.failing_horizons:
            raise RuntimeError(f"{days_from_now}-day trial query failed")
        current = epoch(now or NOW)
        target = current + days_from_now * DAY
        results = []
        for subscription in self.subscriptions.values():
            if subscription.status != SubscriptionStatus.TRIALING or subscription.trial_end is None:
                continue
            if require_payment_active and not subscription.payment_active:
                continue
            if days_from_now == 0:
                if subscription.trial_end <= current:
                    results.append(subscription)
            elif current < subscription.trial_end <= target:
                results.append(subscription)
        return results

    def get_subscriptions_for_retry(self, max_attempts: int, *, now: Optional[datetime] = None) -> List[Subscription]:
        self._check("retries")
        current = epoch(now or NOW)
        return [
            s
            for s in self.subscriptions.values()
            if s.status == SubscriptionStatus.PAST_DUE
            and s.retry_payment_at is not None
            and s.retry_payment_at <= current
            and s.payment_attempts < max_attempts
        ]

    def get_stats(self) -> SubscriptionStats:
        counts: Dict[SubscriptionStatus, int] = {}
        for subscription in self.subscriptions.values():
            counts[subscription.status] = counts.get(subscription.status, 0) + 1
        return SubscriptionStats(
            total=len(self.subscriptions),
            active=counts.get(SubscriptionStatus.ACTIVE, 0),
            trialing=counts.get(SubscriptionStatus.TRIALING, 0),
            canceled=counts.get(SubscriptionStatus.CANCELED, 0),
            past_due=counts.get(SubscriptionStatus.PAST_DUE, 0),
        )


Outcome = Union[ChargeResult, Exception]


class StubGateway:
    """Gateway returning scripted outcomes, then approving with ``AUTH123``."""

    def __init__(self, outcomes: Optional[Sequence[Outcome]] = None) -> None:
        self.outcomes: List[Outcome] = list(outcomes or [])
        self.by_user: Dict[str, Outcome] = {}
        self.requests: List[ChargeRequest] = []

    def charge(self, request: ChargeRequest) -> ChargeResult:
        self.requests.append(request)
        outcome: Outcome
        if request.token_user in self.by_user:
            outcome = self.by_user[request.token_user]
        elif self.outcomes:
            outcome = self.outcomes.pop(0)
        else:
            outcome = ChargeResult(success=True, authorization_code="AUTH123", response_code=0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.delivered: List[Any] = []
        self.fail = fail

    def deliver(self, item: Any) -> DeliveryReceipt:
        if self.fail:
            raise RuntimeError("sink unavailable")
        self.delivered.append(item)
        return DeliveryReceipt(sent=True)


def declined(message: str = "insufficient_funds") -> ChargeResult:
    return ChargeResult(success=False, error_message=message, response_code=-1)


def make_subscription(**overrides: Any) -> Subscription:
    index = overrides.pop("index", 1)
    token = overrides.pop(
        "payment_token",
        PaymentToken(
            user_id=f"tbk-user-{index}",
            username=f"org-{index}",
            inscription_token=f"insc-{index}",
            inscription_date=epoch(NOW - timedelta(days=20)),
        ),
    )
    values: Dict[str, Any] = dict(
        id=f"sub_{index}",
        organization_id=f"org-{index}",
        customer_email=f"owner{index}@example.com",
        plan_id="basic",
        plan_name="Plan Básico",
        status=SubscriptionStatus.TRIALING,
        current_period_start=epoch(NOW - timedelta(days=14)),
        current_period_end=epoch(NOW - timedelta(hours=1)),
        trial_start=epoch(NOW - timedelta(days=14)),
        trial_end=epoch(NOW - timedelta(hours=1)),
        amount=12990,
        currency="CLP",
        payment_token=token,
        created_at=NOW - timedelta(days=14),
        updated_at=NOW - timedelta(days=14),
    )
    values.update(overrides)
    return Subscription(**values)


