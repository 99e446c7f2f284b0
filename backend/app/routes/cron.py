"""Scheduler-triggered maintenance endpoints."""
from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, status

from ..schemas.listings import SweepResponse
from ..services.billing import get_billing_config

try:
    from backend.sweeps import run_expiration_sweep
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...sweeps import run_expiration_sweep  # type: ignore[no-redef]


logger = logging.getLogger("listings")

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _require_cron_token(authorization: Optional[str]) -> None:
    expected = get_billing_config().cron_secret_token
    if not expected:
        logger.error("CRON_SECRET_TOKEN is not configured; refusing cron request")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron endpoint is not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/expire-featured", response_model=SweepResponse)
def expire_featured(authorization: Optional[str] = Header(None)) -> SweepResponse:
    _require_cron_token(authorization)
    summary = run_expiration_sweep()
    return SweepResponse.from_summary(summary)
