"""Collaborator contracts consumed by the reconciliation components."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import ContextManager, Dict, Optional, Protocol, Sequence

from .models import (
    BatchPayment,
    Customer,
    NotificationKind,
    Payment,
    PaymentBatch,
    PaymentRetry,
    PayoutMethod,
    PayoutRecipient,
    ScheduledService,
    SecurityAuditRecord,
    SettlementResult,
    Subscription,
)


class LedgerRepository(Protocol):
    """Persistence operations required by the engine.

    ``transaction()`` yields a repository bound to a single database
    transaction; nested calls on a bound repository reuse the outer one.
    """

    def transaction(self) -> ContextManager["LedgerRepository"]:
        ...

    def claim_idempotency_key(self, scope: str, key: str) -> bool:
        """Insert ``(scope, key)``; ``False`` when it already exists."""

    def is_event_applied(self, event_id: str) -> bool:
        ...

    # customers and recipients
    def get_customer(self, customer_id: str) -> Optional[Customer]:
        ...

    def get_customer_by_processor_id(self, processor_customer_id: str) -> Optional[Customer]:
        ...

    def get_customer_by_email(self, email: str) -> Optional[Customer]:
        ...

    def link_processor_customer(self, customer_id: str, processor_customer_id: str) -> Optional[Customer]:
        ...

    def get_payout_recipient(self, recipient_id: str) -> Optional[PayoutRecipient]:
        ...

    # subscriptions
    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_external_id(self, external_id: str) -> Optional[Subscription]:
        ...

    def find_unlinked_subscription(self, customer_id: str) -> Optional[Subscription]:
        """Locally created subscription still waiting for its processor id."""

    def lock_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Load a subscription and hold its row lock until the transaction ends."""

    def save_subscription(self, subscription: Subscription) -> Subscription:
        ...

    # payments
    def append_payment(self, payment: Payment) -> Payment:
        ...

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    def find_payment_by_intent(self, payment_intent_id: str, *, status: str) -> Optional[Payment]:
        ...

    # retries
    def create_retry(self, retry: PaymentRetry) -> PaymentRetry:
        ...

    def list_due_retries(self, now: datetime) -> Sequence[PaymentRetry]:
        ...

    def claim_retry(self, retry_id: str, *, claimed_at: datetime) -> Optional[PaymentRetry]:
        """Move a retry SCHEDULED -> PENDING; ``None`` when another caller won."""

    def save_retry(self, retry: PaymentRetry) -> PaymentRetry:
        ...

    def reschedule_stale_retries(self, claimed_before: datetime) -> int:
        ...

    # scheduled services
    def find_service_in_week(self, subscription_id: str, week_start: date, week_end: date) -> Optional[ScheduledService]:
        ...

    def insert_scheduled_service(self, service: ScheduledService) -> ScheduledService:
        ...

    def cancel_scheduled_services(self, subscription_id: str) -> int:
        ...

    # payout batches
    def create_batch(self, batch: PaymentBatch) -> PaymentBatch:
        ...

    def get_batch(self, batch_id: str) -> Optional[PaymentBatch]:
        ...

    def lock_batch(self, batch_id: str) -> Optional[PaymentBatch]:
        """Load a batch and hold its row lock until the transaction ends."""

    def claim_batch(self, batch_id: str, *, payout_method: PayoutMethod, started_at: datetime) -> Optional[PaymentBatch]:
        """Move a DRAFT/FAILED batch to PROCESSING; ``None`` when not processable."""

    def save_batch(self, batch: PaymentBatch) -> PaymentBatch:
        ...

    def delete_batch(self, batch_id: str) -> bool:
        """Delete a DRAFT batch and return its items to the pending pool."""

    def list_stale_batches(self, started_before: datetime) -> Sequence[PaymentBatch]:
        ...

    def create_batch_payment(self, payout: BatchPayment) -> BatchPayment:
        ...

    def assign_to_batch(self, batch_id: str, payout_ids: Sequence[str]) -> int:
        ...

    def release_from_batch(self, batch_id: str, payout_ids: Sequence[str]) -> int:
        """Return the given items of a batch to the pending pool."""

    def list_batch_payments(self, batch_id: str) -> Sequence[BatchPayment]:
        ...

    def save_batch_payment(self, payout: BatchPayment) -> BatchPayment:
        ...


class SettlementClient(Protocol):
    """Charges customers through the payment processor."""

    def charge_off_session(
        self,
        *,
        customer: Customer,
        amount: Decimal,
        description: str,
        idempotency_key: str,
    ) -> SettlementResult:
        ...


class PayoutRail(Protocol):
    """Settles one outbound payout through a specific payout method."""

    method: PayoutMethod

    def settle(
        self,
        payout: BatchPayment,
        recipient: Optional[PayoutRecipient],
        *,
        idempotency_key: str,
    ) -> SettlementResult:
        """``idempotency_key`` is stable for one processing attempt of the payout."""


class NotificationGateway(Protocol):
    """One-way customer notifications. Implementations own their retry policy."""

    def notify(self, customer_id: str, kind: NotificationKind, metadata: Dict[str, str]) -> None:
        ...


class AuditLogger(Protocol):
    """Receives security and handler-failure audit records."""

    def security_violation(self, record: SecurityAuditRecord) -> None:
        ...

    def handler_failed(self, event_id: str, kind: str, error: BaseException) -> None:
        ...


__all__ = [
    "AuditLogger",
    "LedgerRepository",
    "NotificationGateway",
    "PayoutRail",
    "SettlementClient",
]
