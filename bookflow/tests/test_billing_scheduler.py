from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from bookflow import billing_scheduler
from bookflow.app.billing import BillingRunError, DailyBillingReport, PassCounts


def _report() -> DailyBillingReport:
    return DailyBillingReport(
        trial_notices=PassCounts(processed=2),
        charges=PassCounts(processed=5, successful=4, failed=1),
        retries=PassCounts(processed=3, successful=1, failed=2),
        errors=["Payment failed for subscription sub_1: declined"],
    )


def test_run_billing_job_updates_metrics(monkeypatch):
    billing_scheduler._reset_metrics_for_testing()
    report = _report()
    monkeypatch.setattr(
        billing_scheduler,
        "get_billing_orchestrator",
        lambda: SimpleNamespace(run_daily_billing=lambda: report),
    )

    run_time = datetime(2025, 3, 10, 9, tzinfo=timezone.utc)
    result = billing_scheduler.run_billing_job(now=run_time)

    assert result is report
    metrics = billing_scheduler.get_billing_metrics()
    assert metrics["runs"] == 1
    assert metrics["failures"] == 0
    assert metrics["last_run_at"] == run_time.isoformat()
    assert metrics["last_success_at"] is not None
    assert metrics["last_error"] is None
    assert metrics["last_charges_processed"] == 5
    assert metrics["last_charges_failed"] == 1
    assert metrics["last_retries_failed"] == 2
    assert metrics["last_errors"] == 1


def test_run_billing_job_records_failures(monkeypatch):
    billing_scheduler._reset_metrics_for_testing()

    def failing_run():
        raise BillingRunError("Daily billing process failed: db down")

    monkeypatch.setattr(
        billing_scheduler,
        "get_billing_orchestrator",
        lambda: SimpleNamespace(run_daily_billing=failing_run),
    )

    with pytest.raises(BillingRunError):
        billing_scheduler.run_billing_job()

    metrics = billing_scheduler.get_billing_metrics()
    assert metrics["runs"] == 1
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "BillingRunError: Daily billing process failed: db down"
    assert metrics["last_success_at"] is None


def test_seconds_until_next_run_hour():
    before = datetime(2025, 3, 10, 8, 30, tzinfo=timezone.utc)
    after = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)

    assert billing_scheduler.seconds_until(9, now=before) == 30 * 60
    assert billing_scheduler.seconds_until(9, now=after) == 24 * 60 * 60


def test_scheduler_start_is_idempotent(monkeypatch):
    started = []

    class _FakeWorker:
        def __init__(self, job, *, initial_delay, interval=billing_scheduler.DAY_SECONDS):
            self.initial_delay = initial_delay

        def start(self):
            started.append(self)

        def stop(self):
            pass

        def join(self, timeout=None):
            pass

    monkeypatch.setattr(billing_scheduler, "_BillingWorker", _FakeWorker)

    billing_scheduler.start_billing_scheduler(9)
    billing_scheduler.start_billing_scheduler(9)
    try:
        assert len(started) == 1
    finally:
        billing_scheduler.shutdown_billing_scheduler()
    assert billing_scheduler._worker is None
