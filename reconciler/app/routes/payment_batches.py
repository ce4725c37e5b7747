"""Administrator endpoints for outbound payout batches."""
from __future__ import annotations

import os
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Response, status

from ... import app_context
from ..payments import StateConflict
from ..schemas.payments import (
    BatchPaymentsRequest,
    CreateBatchRequest,
    PaymentBatchResponse,
    ProcessBatchRequest,
    ProcessBatchResponse,
)
from ..services.payments import get_payment_engine

ADMIN_ROLE = "admin"
_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def require_admin(current_user=Depends(_get_current_user)):
    if getattr(current_user, "role", None) != ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")
    return current_user


def _conflict(exc: StateConflict) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=dict(exc.payload))


router = APIRouter(prefix="/admin/payment-batches", tags=["payment-batches"])


@router.post("", response_model=PaymentBatchResponse, status_code=status.HTTP_201_CREATED)
def create_payment_batch(
    payload: CreateBatchRequest,
    *,
    current_user=Depends(require_admin),
) -> PaymentBatchResponse:
    processor = get_payment_engine().payouts
    try:
        batch, items = processor.create_batch(
            payload.name,
            str(current_user.id),
            description=payload.description,
            payout_ids=payload.payment_ids,
        )
    except StateConflict as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return PaymentBatchResponse.from_batch(batch, items)


@router.get("/{batch_id}", response_model=PaymentBatchResponse)
def get_payment_batch(
    batch_id: str,
    *,
    current_user=Depends(require_admin),
) -> PaymentBatchResponse:
    try:
        batch, items = get_payment_engine().payouts.get_batch(batch_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return PaymentBatchResponse.from_batch(batch, items)


@router.post("/{batch_id}/process", response_model=ProcessBatchResponse)
def process_payment_batch(
    batch_id: str,
    payload: ProcessBatchRequest,
    *,
    current_user=Depends(require_admin),
) -> ProcessBatchResponse:
    try:
        batch = get_payment_engine().payouts.process_batch(batch_id, payload.payout_method)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StateConflict as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ProcessBatchResponse.from_batch(batch)


@router.post("/{batch_id}/payments", response_model=PaymentBatchResponse)
def add_batch_payments(
    batch_id: str,
    payload: BatchPaymentsRequest,
    *,
    current_user=Depends(require_admin),
) -> PaymentBatchResponse:
    try:
        batch, items = get_payment_engine().payouts.add_to_batch(batch_id, payload.payment_ids)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StateConflict as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return PaymentBatchResponse.from_batch(batch, items)


@router.delete("/{batch_id}/payments", response_model=PaymentBatchResponse)
def remove_batch_payments(
    batch_id: str,
    payload: BatchPaymentsRequest,
    *,
    current_user=Depends(require_admin),
) -> PaymentBatchResponse:
    try:
        batch, items = get_payment_engine().payouts.remove_from_batch(batch_id, payload.payment_ids)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StateConflict as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return PaymentBatchResponse.from_batch(batch, items)


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_payment_batch(
    batch_id: str,
    *,
    current_user=Depends(require_admin),
) -> Response:
    try:
        get_payment_engine().payouts.delete_batch(batch_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StateConflict as exc:
        raise _conflict(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


__all__ = ["router", "require_admin"]
