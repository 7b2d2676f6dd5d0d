from __future__ import annotations

from datetime import datetime
from typing import Callable

import pytest

from bookflow.app.billing import AlertAnalyzer, BillingOrchestrator, PaymentAttemptExecutor, RetryPolicy

from billing_fakes import NOW, InMemorySubscriptionRepository, RecordingSink, StubGateway


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def alert_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notification_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def orchestrator(repository, gateway, alert_sink, notification_sink, clock) -> BillingOrchestrator:
    return BillingOrchestrator(
        repository=repository,
        executor=PaymentAttemptExecutor(gateway=gateway, clock=clock),
        analyzer=AlertAnalyzer(clock=clock),
        alert_sink=alert_sink,
        notification_sink=notification_sink,
        policy=RetryPolicy(),
        clock=clock,
    )
