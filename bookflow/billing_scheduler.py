"""Scheduler integration for the daily billing run."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional

from bookflow.app.billing import DailyBillingReport
from bookflow.app.services.billing import get_billing_orchestrator

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60

_scheduler_lock = Lock()
_worker: Optional["_BillingWorker"] = None


def _empty_metrics() -> Dict[str, object]:
    return {
        "runs": 0,
        "failures": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
        "last_charges_processed": 0,
        "last_charges_failed": 0,
        "last_retries_processed": 0,
        "last_retries_failed": 0,
        "last_notifications": 0,
        "last_alerts": 0,
        "last_errors": 0,
    }


_BILLING_METRICS: Dict[str, object] = _empty_metrics()
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _BILLING_METRICS["runs"] = int(_BILLING_METRICS.get("runs", 0)) + 1
        _BILLING_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, report: DailyBillingReport) -> None:
    with _metrics_lock:
        _BILLING_METRICS.update(
            {
                "last_success_at": completed_at,
                "last_error": None,
                "last_charges_processed": report.charges.processed,
                "last_charges_failed": report.charges.failed,
                "last_retries_processed": report.retries.processed,
                "last_retries_failed": report.retries.failed,
                "last_notifications": report.total_notifications,
                "last_alerts": report.total_alerts,
                "last_errors": len(report.errors),
            }
        )


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _BILLING_METRICS["failures"] = int(_BILLING_METRICS.get("failures", 0)) + 1
        _BILLING_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_billing_job(*, now: Optional[datetime] = None) -> DailyBillingReport:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(current_time)
    try:
        report = get_billing_orchestrator().run_daily_billing()
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Daily billing job failed")
        raise

    _record_run_success(datetime.now(timezone.utc), report)
    logger.info(
        "Daily billing job completed",
        extra={
            "charges_processed": report.charges.processed,
            "retries_processed": report.retries.processed,
            "notifications": report.total_notifications,
            "alerts": report.total_alerts,
            "errors": len(report.errors),
        },
    )
    return report


class _BillingWorker(Thread):
    def __init__(
        self,
        job: Callable[[], object],
        *,
        initial_delay: float,
        interval: float = DAY_SECONDS,
    ):
        super().__init__(daemon=True, name="billing-scheduler")
        self._job = job
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop.wait(self._initial_delay):
            return
        while not self._stop.is_set():
            try:
                self._job()
            except Exception:
                # run_billing_job already logged and recorded the failure.
                logger.debug("Billing job raised; waiting for next run")
            if self._stop.wait(self._interval):
                break


def seconds_until(hour: int, minute: int = 0, *, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until the next ``hour:minute`` UTC."""

    current = now or datetime.now(timezone.utc)
    target = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= current:
        target += timedelta(days=1)
    return max((target - current).total_seconds(), 0.0)


def start_billing_scheduler(run_hour_utc: int = 9) -> None:
    global _worker
    with _scheduler_lock:
        if _worker is not None:
            return
        delay = seconds_until(run_hour_utc)
        _worker = _BillingWorker(run_billing_job, initial_delay=delay)
        _worker.start()
        logger.info(
            "Billing scheduler started",
            extra={"run_hour_utc": run_hour_utc, "initial_delay_seconds": round(delay, 2)},
        )


def shutdown_billing_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        if _worker is None:
            return
        _worker.stop()
        _worker.join(timeout=1.0)
        _worker = None
        logger.info("Billing scheduler stopped")


def get_billing_metrics() -> Dict[str, object]:
    with _metrics_lock:
        snapshot = dict(_BILLING_METRICS)
    for key in ("last_run_at", "last_success_at"):
        value = snapshot.get(key)
        snapshot[key] = value.isoformat() if isinstance(value, datetime) else None
    return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _BILLING_METRICS.clear()
        _BILLING_METRICS.update(_empty_metrics())


__all__ = [
    "get_billing_metrics",
    "run_billing_job",
    "seconds_until",
    "shutdown_billing_scheduler",
    "start_billing_scheduler",
]
