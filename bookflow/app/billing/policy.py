"""Retry and backoff rules for failed subscription charges."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .models import BillingInterval

MAX_PAYMENT_ATTEMPTS = 3
RETRY_BASE_DAYS = 2

_BILLING_PERIOD_DAYS = {
    BillingInterval.MONTH: 30,
    BillingInterval.YEAR: 365,
}


def backoff_delay(attempts: int, *, base_days: int = RETRY_BASE_DAYS) -> timedelta:
    """Return the wait before the next retry once ``attempts`` charges have failed.

    The delay doubles with every failure: 2, 4 and 8 days for the first three.
    """

    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    return timedelta(days=base_days ** attempts)


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


@dataclass(frozen=True)
class FailureDecision:
    """What a failed charge does to the subscription."""

    attempts: int
    exhausted: bool
    retry_at: Optional[int]
    decided_at: int


@dataclass(frozen=True)
class SuccessDecision:
    """What a successful charge does to the subscription."""

    last_payment_date: int
    next_billing_date: int


@dataclass(frozen=True)
class RetryPolicy:
    """Deterministic dunning policy shared by the charge and retry passes."""

    max_attempts: int = MAX_PAYMENT_ATTEMPTS
    base_days: int = RETRY_BASE_DAYS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_days < 1:
            raise ValueError("base_days must be >= 1")

    def decide_failure(self, previous_attempts: int, now: datetime) -> FailureDecision:
        attempts = previous_attempts + 1
        decided_at = _epoch(now)
        if attempts >= self.max_attempts:
            return FailureDecision(attempts=attempts, exhausted=True, retry_at=None, decided_at=decided_at)
        retry_at = _epoch(now + backoff_delay(attempts, base_days=self.base_days))
        return FailureDecision(attempts=attempts, exhausted=False, retry_at=retry_at, decided_at=decided_at)

    def decide_success(
        self,
        now: datetime,
        interval: BillingInterval = BillingInterval.MONTH,
    ) -> SuccessDecision:
        paid_at = _epoch(now)
        period = timedelta(days=_BILLING_PERIOD_DAYS[interval])
        return SuccessDecision(last_payment_date=paid_at, next_billing_date=_epoch(now + period))

    def allows_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts


__all__ = [
    "FailureDecision",
    "MAX_PAYMENT_ATTEMPTS",
    "RETRY_BASE_DAYS",
    "RetryPolicy",
    "SuccessDecision",
    "backoff_delay",
]
