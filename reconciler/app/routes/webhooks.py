"""Inbound payment processor webhooks."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ..payments import DuplicateEvent, SecurityViolation
from ..schemas.payments import WebhookAck
from ..services.payments import get_payment_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _received() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_200_OK, content=WebhookAck().model_dump())


@router.post("/payment-events")
async def receive_payment_event(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> JSONResponse:
    """Verify, deduplicate and apply one processor event.

    Anything but a 2xx makes the processor redeliver, so duplicates and
    unhandled kinds are acknowledged and only handler failures return 500.
    """

    body = await request.body()
    engine = get_payment_engine()
    try:
        event = await run_in_threadpool(
            engine.verifier.verify,
            body,
            stripe_signature,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except SecurityViolation:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "invalid signature"})
    except DuplicateEvent:
        return _received()

    try:
        await run_in_threadpool(engine.dispatcher.dispatch, event)
    except Exception:
        logger.exception("Processor event %s (%s) could not be applied", event.event_id, event.kind)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "handler failed"},
        )
    return _received()


__all__ = ["router"]
