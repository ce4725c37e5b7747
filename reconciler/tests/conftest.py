"""Shared in-memory fakes for the payment engine tests."""
from __future__ import annotations

import hashlib
import hmac
import json
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

import pytest

from reconciler.app.payments import (
    AuditLogger,
    BatchPayment,
    BatchStatus,
    Customer,
    LedgerRepository,
    NotificationGateway,
    NotificationKind,
    Payment,
    PaymentBatch,
    PaymentRetry,
    PayoutMethod,
    PayoutRail,
    PayoutRecipient,
    PayoutStatus,
    RetryStatus,
    ScheduledService,
    SecurityAuditRecord,
    ServiceStatus,
    SettlementClient,
    SettlementKind,
    SettlementResult,
    Subscription,
)
from reconciler.app.payments.idempotency import PROCESSOR_EVENT_SCOPE
from reconciler.app.services.payments import PaymentEngine, build_payment_engine
from reconciler.config import EngineConfig, load_engine_config

WEBHOOK_SECRET = "whsec_test_secret"
CRON_SECRET = "cron-test-secret"


@dataclass
class _LedgerState:
    lock: threading.RLock = field(default_factory=threading.RLock)
    customers: Dict[str, Customer] = field(default_factory=dict)
    recipients: Dict[str, PayoutRecipient] = field(default_factory=dict)
    idempotency_keys: Set[Tuple[str, str]] = field(default_factory=set)
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    payments: Dict[str, Payment] = field(default_factory=dict)
    retries: Dict[str, PaymentRetry] = field(default_factory=dict)
    services: Dict[str, ScheduledService] = field(default_factory=dict)
    batches: Dict[str, PaymentBatch] = field(default_factory=dict)
    batch_payments: Dict[str, BatchPayment] = field(default_factory=dict)

    _TABLES = (
        "customers",
        "recipients",
        "idempotency_keys",
        "subscriptions",
        "payments",
        "retries",
        "services",
        "batches",
        "batch_payments",
    )

    def snapshot(self) -> Dict[str, object]:
        return {name: getattr(self, name).copy() for name in self._TABLES}

    def restore(self, snapshot: Dict[str, object]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)


class InMemoryLedgerRepository(LedgerRepository):
    """Ledger fake; transactions are serialized and roll back on error."""

    def __init__(self, state: Optional[_LedgerState] = None, *, bound: bool = False) -> None:
        self.state = state or _LedgerState()
        self._bound = bound

    @contextmanager
    def transaction(self) -> Iterator["InMemoryLedgerRepository"]:
        if self._bound:
            yield self
            return
        with self.state.lock:
            snapshot = self.state.snapshot()
            try:
                yield InMemoryLedgerRepository(self.state, bound=True)
            except BaseException:
                self.state.restore(snapshot)
                raise

    # seeding and inspection helpers

    def add_customer(self, customer: Customer) -> Customer:
        self.state.customers[customer.customer_id] = customer
        return customer

    def add_recipient(self, recipient: PayoutRecipient) -> PayoutRecipient:
        self.state.recipients[recipient.recipient_id] = recipient
        return recipient

    def list_retries_for_payment(self, payment_id: str) -> List[PaymentRetry]:
        return sorted(
            (r for r in self.state.retries.values() if r.payment_id == payment_id),
            key=lambda r: r.retry_count,
        )

    def list_scheduled_services(self, subscription_id: str) -> List[ScheduledService]:
        return sorted(
            (s for s in self.state.services.values() if s.subscription_id == subscription_id),
            key=lambda s: s.scheduled_date,
        )

    # idempotency

    def claim_idempotency_key(self, scope: str, key: str) -> bool:
        with self.state.lock:
            if (scope, key) in self.state.idempotency_keys:
                return False
            self.state.idempotency_keys.add((scope, key))
            return True

    def is_event_applied(self, event_id: str) -> bool:
        return (PROCESSOR_EVENT_SCOPE, event_id) in self.state.idempotency_keys

    # customers and recipients

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        return self.state.customers.get(customer_id)

    def get_customer_by_processor_id(self, processor_customer_id: str) -> Optional[Customer]:
        return next(
            (c for c in self.state.customers.values() if c.processor_customer_id == processor_customer_id),
            None,
        )

    def get_customer_by_email(self, email: str) -> Optional[Customer]:
        return next(
            (c for c in self.state.customers.values() if (c.email or "").lower() == email.lower()),
            None,
        )

    def link_processor_customer(self, customer_id: str, processor_customer_id: str) -> Optional[Customer]:
        with self.state.lock:
            customer = self.state.customers.get(customer_id)
            if customer is None or customer.processor_customer_id is not None:
                return None
            updated = customer.model_copy(update={"processor_customer_id": processor_customer_id})
            self.state.customers[customer_id] = updated
            return updated

    def get_payout_recipient(self, recipient_id: str) -> Optional[PayoutRecipient]:
        return self.state.recipients.get(recipient_id)

    # subscriptions

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.state.subscriptions.get(subscription_id)

    def get_subscription_by_external_id(self, external_id: str) -> Optional[Subscription]:
        return next(
            (s for s in self.state.subscriptions.values() if s.external_id == external_id),
            None,
        )

    def find_unlinked_subscription(self, customer_id: str) -> Optional[Subscription]:
        candidates = [
            s
            for s in self.state.subscriptions.values()
            if s.customer_id == customer_id and s.external_id is None and not s.is_cancelled
        ]
        return max(candidates, key=lambda s: s.created_at) if candidates else None

    def lock_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.state.subscriptions.get(subscription_id)

    def save_subscription(self, subscription: Subscription) -> Subscription:
        with self.state.lock:
            existing = self.state.subscriptions.get(subscription.subscription_id)
            if existing is not None and existing.external_id and subscription.external_id != existing.external_id:
                subscription = subscription.model_copy(update={"external_id": existing.external_id})
            self.state.subscriptions[subscription.subscription_id] = subscription
            return subscription

    # payments

    def append_payment(self, payment: Payment) -> Payment:
        with self.state.lock:
            if payment.external_payment_intent_id and self.find_payment_by_intent(
                payment.external_payment_intent_id, status=payment.status.value
            ):
                raise ValueError("duplicate key value violates unique constraint on payments")
            self.state.payments[payment.payment_id] = payment
            return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.state.payments.get(payment_id)

    def find_payment_by_intent(self, payment_intent_id: str, *, status: str) -> Optional[Payment]:
        return next(
            (
                p
                for p in self.state.payments.values()
                if p.external_payment_intent_id == payment_intent_id and p.status.value == status
            ),
            None,
        )

    # retries

    def create_retry(self, retry: PaymentRetry) -> PaymentRetry:
        self.state.retries[retry.retry_id] = retry
        return retry

    def list_due_retries(self, now: datetime) -> List[PaymentRetry]:
        due = [r for r in self.state.retries.values() if r.status == RetryStatus.SCHEDULED and r.next_retry_at <= now]
        return sorted(due, key=lambda r: (r.next_retry_at, r.retry_id))

    def claim_retry(self, retry_id: str, *, claimed_at: datetime) -> Optional[PaymentRetry]:
        with self.state.lock:
            retry = self.state.retries.get(retry_id)
            if retry is None or retry.status != RetryStatus.SCHEDULED:
                return None
            claimed = retry.model_copy(
                update={"status": RetryStatus.PENDING, "claimed_at": claimed_at, "updated_at": claimed_at}
            )
            self.state.retries[retry_id] = claimed
            return claimed

    def save_retry(self, retry: PaymentRetry) -> PaymentRetry:
        if retry.retry_id not in self.state.retries:
            raise LookupError(retry.retry_id)
        self.state.retries[retry.retry_id] = retry
        return retry

    def reschedule_stale_retries(self, claimed_before: datetime) -> int:
        with self.state.lock:
            count = 0
            for retry in list(self.state.retries.values()):
                if retry.status == RetryStatus.PENDING and retry.claimed_at and retry.claimed_at < claimed_before:
                    self.state.retries[retry.retry_id] = retry.model_copy(
                        update={"status": RetryStatus.SCHEDULED, "claimed_at": None}
                    )
                    count += 1
            return count

    # scheduled services

    def find_service_in_week(self, subscription_id: str, week_start: date, week_end: date) -> Optional[ScheduledService]:
        return next(
            (
                s
                for s in self.state.services.values()
                if s.subscription_id == subscription_id and week_start <= s.scheduled_date < week_end
            ),
            None,
        )

    def insert_scheduled_service(self, service: ScheduledService) -> ScheduledService:
        self.state.services[service.service_id] = service
        return service

    def cancel_scheduled_services(self, subscription_id: str) -> int:
        count = 0
        for service in list(self.state.services.values()):
            if service.subscription_id == subscription_id and service.status == ServiceStatus.SCHEDULED:
                self.state.services[service.service_id] = service.model_copy(update={"status": ServiceStatus.CANCELLED})
                count += 1
        return count

    # payout batches

    def create_batch(self, batch: PaymentBatch) -> PaymentBatch:
        self.state.batches[batch.batch_id] = batch
        return batch

    def get_batch(self, batch_id: str) -> Optional[PaymentBatch]:
        return self.state.batches.get(batch_id)

    def lock_batch(self, batch_id: str) -> Optional[PaymentBatch]:
        return self.state.batches.get(batch_id)

    def claim_batch(self, batch_id: str, *, payout_method: PayoutMethod, started_at: datetime) -> Optional[PaymentBatch]:
        with self.state.lock:
            batch = self.state.batches.get(batch_id)
            if batch is None or not batch.is_processable:
                return None
            claimed = batch.model_copy(
                update={
                    "status": BatchStatus.PROCESSING,
                    "payout_method": payout_method,
                    "processing_started_at": started_at,
                    "completed_at": None,
                    "updated_at": started_at,
                }
            )
            self.state.batches[batch_id] = claimed
            return claimed

    def save_batch(self, batch: PaymentBatch) -> PaymentBatch:
        with self.state.lock:
            if batch.batch_id not in self.state.batches:
                raise LookupError(batch.batch_id)
            self.state.batches[batch.batch_id] = batch
            return batch

    def delete_batch(self, batch_id: str) -> bool:
        with self.state.lock:
            batch = self.state.batches.get(batch_id)
            if batch is None or batch.status != BatchStatus.DRAFT:
                return False
            del self.state.batches[batch_id]
            for payout in list(self.state.batch_payments.values()):
                if payout.batch_id == batch_id:
                    self.state.batch_payments[payout.payout_id] = payout.model_copy(update={"batch_id": None})
            return True

    def list_stale_batches(self, started_before: datetime) -> List[PaymentBatch]:
        return [
            b
            for b in self.state.batches.values()
            if b.status == BatchStatus.PROCESSING and b.processing_started_at and b.processing_started_at < started_before
        ]

    def create_batch_payment(self, payout: BatchPayment) -> BatchPayment:
        with self.state.lock:
            self.state.batch_payments[payout.payout_id] = payout
            return payout

    def assign_to_batch(self, batch_id: str, payout_ids: Sequence[str]) -> int:
        with self.state.lock:
            count = 0
            for payout_id in payout_ids:
                payout = self.state.batch_payments.get(payout_id)
                if payout is None or payout.batch_id is not None or payout.status != PayoutStatus.PENDING:
                    continue
                self.state.batch_payments[payout_id] = payout.model_copy(update={"batch_id": batch_id})
                count += 1
            return count

    def release_from_batch(self, batch_id: str, payout_ids: Sequence[str]) -> int:
        with self.state.lock:
            count = 0
            for payout_id in payout_ids:
                payout = self.state.batch_payments.get(payout_id)
                if payout is None or payout.batch_id != batch_id:
                    continue
                self.state.batch_payments[payout_id] = payout.model_copy(update={"batch_id": None})
                count += 1
            return count

    def list_batch_payments(self, batch_id: str) -> List[BatchPayment]:
        return sorted(
            (p for p in self.state.batch_payments.values() if p.batch_id == batch_id),
            key=lambda p: (p.created_at, p.payout_id),
        )

    def save_batch_payment(self, payout: BatchPayment) -> BatchPayment:
        with self.state.lock:
            if payout.payout_id not in self.state.batch_payments:
                raise LookupError(payout.payout_id)
            self.state.batch_payments[payout.payout_id] = payout
            return payout


class FakeSettlementClient(SettlementClient):
    """Returns queued results in order, then the default result."""

    def __init__(self, default: Optional[SettlementResult] = None) -> None:
        self.default = default or SettlementResult(kind=SettlementKind.SUCCESS, reference="pi_retry")
        self.queued: List[Union[SettlementResult, Exception]] = []
        self.calls: List[Dict[str, object]] = []

    def charge_off_session(
        self,
        *,
        customer: Customer,
        amount: Decimal,
        description: str,
        idempotency_key: str,
    ) -> SettlementResult:
        self.calls.append(
            {
                "customer_id": customer.customer_id,
                "amount": amount,
                "description": description,
                "idempotency_key": idempotency_key,
            }
        )
        outcome = self.queued.pop(0) if self.queued else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePayoutRail(PayoutRail):
    """Settles payouts successfully unless an outcome is registered for the recipient."""

    def __init__(self, method: PayoutMethod = PayoutMethod.CASH) -> None:
        self.method = method
        self.outcomes: Dict[str, Union[SettlementResult, Exception]] = {}
        self.settled: List[str] = []
        self.keys: List[str] = []
        self._lock = threading.Lock()

    def settle(
        self,
        payout: BatchPayment,
        recipient: Optional[PayoutRecipient],
        *,
        idempotency_key: str,
    ) -> SettlementResult:
        with self._lock:
            self.settled.append(payout.payout_id)
            self.keys.append(idempotency_key)
        outcome = self.outcomes.get(payout.recipient_id)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        return SettlementResult(kind=SettlementKind.SUCCESS, reference=f"tr_{payout.payout_id}")


class RecordingNotifier(NotificationGateway):
    def __init__(self) -> None:
        self.sent: List[Tuple[str, NotificationKind, Dict[str, str]]] = []

    def notify(self, customer_id: str, kind: NotificationKind, metadata: Dict[str, str]) -> None:
        self.sent.append((customer_id, kind, metadata))

    def kinds(self) -> List[NotificationKind]:
        return [kind for _, kind, _ in self.sent]


class RecordingAuditLogger(AuditLogger):
    def __init__(self) -> None:
        self.violations: List[SecurityAuditRecord] = []
        self.failures: List[Tuple[str, str, BaseException]] = []

    def security_violation(self, record: SecurityAuditRecord) -> None:
        self.violations.append(record)

    def handler_failed(self, event_id: str, kind: str, error: BaseException) -> None:
        self.failures.append((event_id, kind, error))


@dataclass
class EngineHarness:
    engine: PaymentEngine
    ledger: InMemoryLedgerRepository
    settlement: FakeSettlementClient
    rails: Dict[PayoutMethod, FakePayoutRail]
    notifier: RecordingNotifier
    audit: RecordingAuditLogger

    @property
    def config(self) -> EngineConfig:
        return self.engine.config


def make_config(**overrides: str) -> EngineConfig:
    env = {
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "CRON_SECRET": CRON_SECRET,
    }
    env.update(overrides)
    return load_engine_config(env)


def build_harness(config: Optional[EngineConfig] = None) -> EngineHarness:
    ledger = InMemoryLedgerRepository()
    settlement = FakeSettlementClient()
    rails = {method: FakePayoutRail(method) for method in PayoutMethod}
    notifier = RecordingNotifier()
    audit = RecordingAuditLogger()
    engine = build_payment_engine(
        config or make_config(),
        repository=ledger,
        settlement=settlement,
        rails=dict(rails),
        notifier=notifier,
        audit_logger=audit,
    )
    return EngineHarness(
        engine=engine,
        ledger=ledger,
        settlement=settlement,
        rails=rails,
        notifier=notifier,
        audit=audit,
    )


@pytest.fixture
def harness() -> EngineHarness:
    return build_harness()


@pytest.fixture
def customer(harness: EngineHarness) -> Customer:
    return harness.ledger.add_customer(
        Customer(
            customer_id="cust_1",
            user_id="7",
            email="pat@example.com",
            processor_customer_id="cus_1",
            payment_method_id="pm_1",
        )
    )


def event_body(event_id: str, kind: str, obj: Dict[str, object], *, created: Optional[int] = None) -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": kind,
            "created": created or int(time.time()),
            "data": {"object": obj},
        }
    )


def sign(body: str, secret: str = WEBHOOK_SECRET, *, timestamp: Optional[int] = None) -> str:
    ts = timestamp or int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"
