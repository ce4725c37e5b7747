"""Periodic runner for the payment retry sweep and the stale-claim watchdog."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from .app.payments import ReclaimSummary, RetrySweepSummary
from .app.services.payments import PaymentEngine, get_payment_engine

logger = logging.getLogger(__name__)

RETRY_SWEEP = "retry_sweep"
RECLAIM_STALE = "reclaim_stale"

_scheduler_lock = Lock()
_workers: Dict[str, "_RetryWorker"] = {}


def _empty_metrics() -> Dict[str, object]:
    return {
        "runs": 0,
        "attempted": 0,
        "succeeded": 0,
        "failed": 0,
        "skipped": 0,
        "reclaimed": 0,
        "errors": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
    }


_JOB_METRICS: Dict[str, Dict[str, object]] = {
    RETRY_SWEEP: _empty_metrics(),
    RECLAIM_STALE: _empty_metrics(),
}
_metrics_lock = Lock()


def _record_run_start(job: str, started_at: datetime) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["last_run_at"] = started_at


def _record_run_failure(job: str, error: Exception) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["errors"] = int(metrics.get("errors", 0)) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def _record_sweep_success(completed_at: datetime, summary: RetrySweepSummary) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[RETRY_SWEEP]
        for key in ("attempted", "succeeded", "failed", "skipped"):
            metrics[key] = int(metrics.get(key, 0)) + getattr(summary, key)
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _record_reclaim_success(completed_at: datetime, summary: ReclaimSummary) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[RECLAIM_STALE]
        metrics["reclaimed"] = (
            int(metrics.get("reclaimed", 0)) + summary.retries_rescheduled + summary.batches_recovered
        )
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _current_time(now: Optional[datetime]) -> datetime:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)
    return current_time


def run_retry_sweep(*, engine: Optional[PaymentEngine] = None, now: Optional[datetime] = None) -> RetrySweepSummary:
    current_time = _current_time(now)
    _record_run_start(RETRY_SWEEP, current_time)
    try:
        summary = (engine or get_payment_engine()).retries.run_sweep(current_time)
    except Exception as exc:
        _record_run_failure(RETRY_SWEEP, exc)
        logger.exception("Payment retry sweep failed")
        raise
    _record_sweep_success(current_time, summary)
    logger.info("Payment retry sweep completed", extra=summary.model_dump())
    return summary


def run_reclaim_stale(*, engine: Optional[PaymentEngine] = None, now: Optional[datetime] = None) -> ReclaimSummary:
    current_time = _current_time(now)
    _record_run_start(RECLAIM_STALE, current_time)
    try:
        summary = (engine or get_payment_engine()).retries.reclaim_stale(current_time)
    except Exception as exc:
        _record_run_failure(RECLAIM_STALE, exc)
        logger.exception("Stale claim watchdog failed")
        raise
    _record_reclaim_success(current_time, summary)
    logger.info("Stale claim watchdog completed", extra=summary.model_dump())
    return summary


class _RetryWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="payment-retry-worker")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            for job in (run_reclaim_stale, run_retry_sweep):
                try:
                    job()
                except Exception:
                    logger.debug("Scheduled %s run failed; waiting for next interval", job.__name__)
            if self._stop_event.wait(self._interval):
                break


def start_retry_scheduler(*, initial_delay: float = 60.0) -> bool:
    """Start the background worker when ``RETRY_JOB_ENABLED`` is set."""

    config = get_payment_engine().config
    if not config.retry_job_enabled:
        logger.info("Payment retry scheduler disabled")
        return False
    with _scheduler_lock:
        if _workers:
            return True
        worker = _RetryWorker(initial_delay=initial_delay, interval=config.retry_job_interval_seconds)
        _workers[RETRY_SWEEP] = worker
        worker.start()
        logger.info(
            "Payment retry scheduler started",
            extra={"interval_seconds": config.retry_job_interval_seconds},
        )
        return True


def shutdown_retry_scheduler() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        logger.info("Payment retry scheduler stopped")


def get_retry_job_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        snapshot: Dict[str, Dict[str, object]] = {}
        for key, value in _JOB_METRICS.items():
            snapshot[key] = {
                **value,
                "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
            }
        return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        for metrics in _JOB_METRICS.values():
            metrics.update(_empty_metrics())


__all__ = [
    "get_retry_job_metrics",
    "run_reclaim_stale",
    "run_retry_sweep",
    "shutdown_retry_scheduler",
    "start_retry_scheduler",
]
