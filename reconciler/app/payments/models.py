"""Domain models for the payment reconciliation ledger."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import PaymentEngineError, PermanentSettlementFailure, TransientProcessorError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a customer's recurring commitment."""

    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PENDING = "PENDING"


class PaymentType(str, Enum):
    SUBSCRIPTION_RENEWAL = "SUBSCRIPTION_RENEWAL"
    ONE_TIME_PAYMENT = "ONE_TIME_PAYMENT"


class RetryStatus(str, Enum):
    """Status of a single retry attempt for a failed payment."""

    SCHEDULED = "SCHEDULED"
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class BatchStatus(str, Enum):
    DRAFT = "DRAFT"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class PayoutType(str, Enum):
    EARNINGS = "EARNINGS"
    REFERRAL = "REFERRAL"
    REFUND = "REFUND"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class PayoutMethod(str, Enum):
    """Payout rails an operator can choose when processing a batch."""

    DIRECT_TRANSFER = "DIRECT_TRANSFER"
    PEER_APP = "PEER_APP"
    CASH = "CASH"
    CHECK = "CHECK"


class ServiceStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SettlementKind(str, Enum):
    """Tagged outcome of a processor settlement call."""

    SUCCESS = "SUCCESS"
    DECLINED = "DECLINED"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    TRANSIENT_ERROR = "TRANSIENT_ERROR"


class ProcessorEventKind(str, Enum):
    """Processor event kinds the dispatcher has a handler for."""

    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_ACTION_REQUIRED = "invoice.payment_action_required"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CUSTOMER_CREATED = "customer.created"


class NotificationKind(str, Enum):
    """Customer facing notifications emitted by the engine."""

    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    PAYMENT_ACTION_REQUIRED = "payment_action_required"
    ONE_TIME_PAYMENT_FAILED = "one_time_payment_failed"
    RETRIES_EXHAUSTED = "retries_exhausted"


class Customer(BaseModel):
    """Read-only view of a customer owned by the surrounding application."""

    customer_id: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    processor_customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    referrer_id: Optional[str] = None
    worker_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PayoutRecipient(BaseModel):
    """Worker or referrer receiving outbound payouts."""

    recipient_id: str
    display_name: Optional[str] = None
    processor_account_id: Optional[str] = None
    peer_app_handle: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Subscription(BaseModel):
    """Internal mirror of a processor subscription."""

    subscription_id: str
    customer_id: str
    external_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: date
    end_date: Optional[date] = None
    next_billing_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED


class Payment(BaseModel):
    """Append-only record of one settlement outcome."""

    payment_id: str
    customer_id: str
    subscription_id: Optional[str] = None
    amount: Decimal = Field(gt=0)
    status: PaymentStatus
    type: PaymentType
    external_invoice_id: Optional[str] = None
    external_payment_intent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentRetry(BaseModel):
    """Lifecycle of one retry of an originally failed payment."""

    retry_id: str
    payment_id: str
    status: RetryStatus = RetryStatus.SCHEDULED
    retry_count: int = Field(default=0, ge=0)
    next_retry_at: datetime
    external_payment_intent_id: Optional[str] = None
    error_message: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BatchSummary(BaseModel):
    total_payments: int = Field(default=0, alias="totalPayments")
    success_count: int = Field(default=0, alias="successCount")
    failed_count: int = Field(default=0, alias="failedCount")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentBatch(BaseModel):
    """Operator created group of outbound payouts processed in one run."""

    batch_id: str
    name: str
    description: Optional[str] = None
    status: BatchStatus = BatchStatus.DRAFT
    created_by: str
    payout_method: Optional[PayoutMethod] = None
    summary: BatchSummary = Field(default_factory=BatchSummary)
    notes: List[str] = Field(default_factory=list)
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_processable(self) -> bool:
        return self.status in {BatchStatus.DRAFT, BatchStatus.FAILED}


class BatchPayment(BaseModel):
    """One outbound payout, either waiting in the pool or assigned to a batch."""

    payout_id: str
    batch_id: Optional[str] = None
    type: PayoutType
    recipient_id: str
    amount: Decimal = Field(gt=0)
    status: PayoutStatus = PayoutStatus.PENDING
    reference: Optional[str] = None
    error_detail: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_settled(self) -> bool:
        return self.status == PayoutStatus.SUCCEEDED


class ScheduledService(BaseModel):
    service_id: str
    customer_id: str
    subscription_id: str
    scheduled_date: date
    status: ServiceStatus = ServiceStatus.SCHEDULED
    potential_earnings: Decimal = Field(default=Decimal("0.00"))
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessorEvent(BaseModel):
    """Verified processor event envelope handed to the dispatcher."""

    event_id: str
    kind: str
    payload: Dict[str, object]
    created_at: Optional[datetime] = None
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("event_id")
    @classmethod
    def _require_event_id(cls, value: str) -> str:
        if not value:
            raise ValueError("event_id must not be empty")
        return value


class SettlementResult(BaseModel):
    """Outcome of a charge, transfer or refund attempt at the processor."""

    kind: SettlementKind
    detail: Optional[str] = None
    reference: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def succeeded(self) -> bool:
        return self.kind == SettlementKind.SUCCESS

    def to_error(self) -> Optional[PaymentEngineError]:
        """Error describing a failed outcome, for callers that must surface one."""

        if self.kind == SettlementKind.SUCCESS:
            return None
        if self.kind == SettlementKind.TRANSIENT_ERROR:
            return TransientProcessorError(self.detail or "payment processor unavailable")
        return PermanentSettlementFailure(self.detail or self.kind.value)


class SecurityAuditRecord(BaseModel):
    """Security monitoring signal for rejected webhook deliveries."""

    reason: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class RetrySweepSummary(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    model_config = ConfigDict(populate_by_name=True)


class ReclaimSummary(BaseModel):
    retries_rescheduled: int = Field(default=0, alias="retriesRescheduled")
    batches_recovered: int = Field(default=0, alias="batchesRecovered")

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "BatchPayment",
    "BatchStatus",
    "BatchSummary",
    "Customer",
    "NotificationKind",
    "Payment",
    "PaymentBatch",
    "PaymentRetry",
    "PaymentStatus",
    "PaymentType",
    "PayoutMethod",
    "PayoutRecipient",
    "PayoutStatus",
    "PayoutType",
    "ProcessorEvent",
    "ProcessorEventKind",
    "ReclaimSummary",
    "RetryStatus",
    "RetrySweepSummary",
    "ScheduledService",
    "SecurityAuditRecord",
    "ServiceStatus",
    "SettlementKind",
    "SettlementResult",
    "Subscription",
    "SubscriptionStatus",
]
