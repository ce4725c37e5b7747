"""API schemas for webhook, job and payout batch endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..payments import (
    BatchPayment,
    BatchStatus,
    PaymentBatch,
    PayoutMethod,
    PayoutStatus,
    PayoutType,
    ReclaimSummary,
    RetrySweepSummary,
)


class WebhookAck(BaseModel):
    received: bool = True


class RetrySweepResponse(BaseModel):
    attempted: int
    succeeded: int
    failed: int
    skipped: int

    @classmethod
    def from_summary(cls, summary: RetrySweepSummary) -> "RetrySweepResponse":
        return cls(**summary.model_dump())


class ReclaimResponse(BaseModel):
    retries_rescheduled: int = Field(alias="retriesRescheduled")
    batches_recovered: int = Field(alias="batchesRecovered")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: ReclaimSummary) -> "ReclaimResponse":
        return cls(
            retries_rescheduled=summary.retries_rescheduled,
            batches_recovered=summary.batches_recovered,
        )


class CreateBatchRequest(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    payment_ids: List[str] = Field(alias="paymentIds", default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class BatchPaymentsRequest(BaseModel):
    payment_ids: List[str] = Field(alias="paymentIds", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class ProcessBatchRequest(BaseModel):
    payout_method: PayoutMethod = Field(alias="payoutMethod")

    model_config = ConfigDict(populate_by_name=True)


class ProcessBatchResponse(BaseModel):
    status: BatchStatus
    total_payments: int = Field(alias="totalPayments")
    success_count: int = Field(alias="successCount")
    failed_count: int = Field(alias="failedCount")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_batch(cls, batch: PaymentBatch) -> "ProcessBatchResponse":
        return cls(
            status=batch.status,
            total_payments=batch.summary.total_payments,
            success_count=batch.summary.success_count,
            failed_count=batch.summary.failed_count,
        )


class BatchPaymentOut(BaseModel):
    id: str
    type: PayoutType
    recipient_id: str = Field(alias="recipientId")
    amount: Decimal
    status: PayoutStatus
    reference: Optional[str] = None
    error_detail: Optional[str] = Field(alias="errorDetail", default=None)
    paid_at: Optional[datetime] = Field(alias="paidAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_payout(cls, payout: BatchPayment) -> "BatchPaymentOut":
        return cls(
            id=payout.payout_id,
            type=payout.type,
            recipient_id=payout.recipient_id,
            amount=payout.amount,
            status=payout.status,
            reference=payout.reference,
            error_detail=payout.error_detail,
            paid_at=payout.paid_at,
        )


class PaymentBatchResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    status: BatchStatus
    created_by: str = Field(alias="createdBy")
    payout_method: Optional[PayoutMethod] = Field(alias="payoutMethod", default=None)
    total_payments: int = Field(alias="totalPayments")
    success_count: int = Field(alias="successCount")
    failed_count: int = Field(alias="failedCount")
    notes: List[str] = Field(default_factory=list)
    created_at: datetime = Field(alias="createdAt")
    completed_at: Optional[datetime] = Field(alias="completedAt", default=None)
    payments: List[BatchPaymentOut] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_batch(cls, batch: PaymentBatch, items: List[BatchPayment]) -> "PaymentBatchResponse":
        return cls(
            id=batch.batch_id,
            name=batch.name,
            description=batch.description,
            status=batch.status,
            created_by=batch.created_by,
            payout_method=batch.payout_method,
            total_payments=batch.summary.total_payments,
            success_count=batch.summary.success_count,
            failed_count=batch.summary.failed_count,
            notes=list(batch.notes),
            created_at=batch.created_at,
            completed_at=batch.completed_at,
            payments=[BatchPaymentOut.from_payout(item) for item in items],
        )


__all__ = [
    "BatchPaymentOut",
    "BatchPaymentsRequest",
    "CreateBatchRequest",
    "PaymentBatchResponse",
    "ProcessBatchRequest",
    "ProcessBatchResponse",
    "ReclaimResponse",
    "RetrySweepResponse",
    "WebhookAck",
]
