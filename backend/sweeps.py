"""Batch expiration of lapsed feature promotions and trials."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional

from backend.app.listings import SweepSummary
from backend.app.services.billing import get_listing_service

logger = logging.getLogger(__name__)

_SWEEP_METRICS: Dict[str, object] = {
    "runs": 0,
    "features_expired": 0,
    "trials_expired": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["runs"] = int(_SWEEP_METRICS.get("runs", 0)) + 1
        _SWEEP_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, summary: SweepSummary) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["features_expired"] = int(_SWEEP_METRICS.get("features_expired", 0)) + summary.features_expired
        _SWEEP_METRICS["trials_expired"] = int(_SWEEP_METRICS.get("trials_expired", 0)) + summary.trials_expired
        _SWEEP_METRICS["last_success_at"] = completed_at
        _SWEEP_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["failures"] = int(_SWEEP_METRICS.get("failures", 0)) + 1
        _SWEEP_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_expiration_sweep(*, now: Optional[datetime] = None) -> SweepSummary:
    """Persist the expirations readers already compute lazily.

    Visibility never depends on this job having run; it only keeps stored
    flags tidy for reporting and admin views.
    """

    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(current_time)
    try:
        summary = get_listing_service().expire_stale(current_time)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Expiration sweep failed")
        raise
    else:
        _record_run_success(current_time, summary)
        logger.info(
            "Expiration sweep completed",
            extra={
                "features_expired": summary.features_expired,
                "trials_expired": summary.trials_expired,
            },
        )
        return summary


def get_sweep_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_SWEEP_METRICS,
            "last_run_at": _SWEEP_METRICS["last_run_at"].isoformat() if _SWEEP_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _SWEEP_METRICS["last_success_at"].isoformat() if _SWEEP_METRICS.get("last_success_at") else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _SWEEP_METRICS.update(
            {
                "runs": 0,
                "features_expired": 0,
                "trials_expired": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = ["get_sweep_metrics", "run_expiration_sweep"]
