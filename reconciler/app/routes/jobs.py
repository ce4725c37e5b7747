"""Scheduler-triggered job endpoints protected by the cron secret."""
from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ... import retry_jobs
from ..schemas.payments import ReclaimResponse, RetrySweepResponse
from ..services.payments import get_payment_engine


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    secret = get_payment_engine().config.cron_secret
    if not secret or not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not hmac.compare_digest(authorization.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_cron_secret)])


@router.post("/retry-failed-payments", response_model=RetrySweepResponse)
def retry_failed_payments() -> RetrySweepResponse:
    summary = retry_jobs.run_retry_sweep(engine=get_payment_engine())
    return RetrySweepResponse.from_summary(summary)


@router.post("/reclaim-stale", response_model=ReclaimResponse)
def reclaim_stale() -> ReclaimResponse:
    summary = retry_jobs.run_reclaim_stale(engine=get_payment_engine())
    return ReclaimResponse.from_summary(summary)


__all__ = ["router", "require_cron_secret"]
