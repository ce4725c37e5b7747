"""PostgreSQL implementation of the ledger repository."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterable, Iterator, List, Optional, Sequence

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .idempotency import PROCESSOR_EVENT_SCOPE
from .models import (
    BatchPayment,
    BatchStatus,
    BatchSummary,
    Customer,
    Payment,
    PaymentBatch,
    PaymentRetry,
    PaymentStatus,
    PaymentType,
    PayoutMethod,
    PayoutRecipient,
    PayoutStatus,
    PayoutType,
    RetryStatus,
    ScheduledService,
    ServiceStatus,
    Subscription,
    SubscriptionStatus,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Yield ``(connection, managed)``; managed connections commit or roll back on exit."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_customer(row: dict) -> Customer:
    return Customer(
        customer_id=row["id"],
        user_id=str(row["user_id"]) if row.get("user_id") is not None else None,
        email=row.get("email"),
        processor_customer_id=row.get("processor_customer_id"),
        payment_method_id=row.get("payment_method_id"),
        referrer_id=row.get("referrer_id"),
        worker_id=row.get("worker_id"),
    )


def _row_to_recipient(row: dict) -> PayoutRecipient:
    return PayoutRecipient(
        recipient_id=row["id"],
        display_name=row.get("display_name"),
        processor_account_id=row.get("processor_account_id"),
        peer_app_handle=row.get("peer_app_handle"),
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        customer_id=row["customer_id"],
        external_id=row.get("external_id"),
        status=SubscriptionStatus(row["status"]),
        start_date=row["start_date"],
        end_date=row.get("end_date"),
        next_billing_at=row.get("next_billing_at"),
        last_payment_at=row.get("last_payment_at"),
        amount=row["amount"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_payment(row: dict) -> Payment:
    return Payment(
        payment_id=row["payment_id"],
        customer_id=row["customer_id"],
        subscription_id=row.get("subscription_id"),
        amount=row["amount"],
        status=PaymentStatus(row["status"]),
        type=PaymentType(row["type"]),
        external_invoice_id=row.get("external_invoice_id"),
        external_payment_intent_id=row.get("external_payment_intent_id"),
        created_at=row["created_at"],
    )


def _row_to_retry(row: dict) -> PaymentRetry:
    return PaymentRetry(
        retry_id=row["retry_id"],
        payment_id=row["payment_id"],
        status=RetryStatus(row["status"]),
        retry_count=int(row["retry_count"]),
        next_retry_at=row["next_retry_at"],
        external_payment_intent_id=row.get("external_payment_intent_id"),
        error_message=row.get("error_message"),
        claimed_at=row.get("claimed_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_service(row: dict) -> ScheduledService:
    return ScheduledService(
        service_id=row["service_id"],
        customer_id=row["customer_id"],
        subscription_id=row["subscription_id"],
        scheduled_date=row["scheduled_date"],
        status=ServiceStatus(row["status"]),
        potential_earnings=row["potential_earnings"],
        created_at=row["created_at"],
    )


def _row_to_batch(row: dict) -> PaymentBatch:
    method = row.get("payout_method")
    return PaymentBatch(
        batch_id=row["batch_id"],
        name=row["name"],
        description=row.get("description"),
        status=BatchStatus(row["status"]),
        created_by=row["created_by"],
        payout_method=PayoutMethod(method) if method else None,
        summary=BatchSummary(
            total_payments=int(row.get("total_payments") or 0),
            success_count=int(row.get("success_count") or 0),
            failed_count=int(row.get("failed_count") or 0),
        ),
        notes=list(row.get("notes") or []),
        processing_started_at=row.get("processing_started_at"),
        completed_at=row.get("completed_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_batch_payment(row: dict) -> BatchPayment:
    return BatchPayment(
        payout_id=row["payout_id"],
        batch_id=row.get("batch_id"),
        type=PayoutType(row["type"]),
        recipient_id=row["recipient_id"],
        amount=row["amount"],
        status=PayoutStatus(row["status"]),
        reference=row.get("reference"),
        error_detail=row.get("error_detail"),
        paid_at=row.get("paid_at"),
        created_at=row["created_at"],
    )


class PostgresLedgerRepository:
    """Ledger persistence in PostgreSQL.

    An unbound repository opens a short-lived connection per call. The
    repository yielded by :meth:`transaction` is bound to one connection and
    commits or rolls back as a unit.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresLedgerRepository"]:
        if self._conn is not None:
            yield self
            return
        with managed_connection() as (connection, _):
            yield PostgresLedgerRepository(conn=connection)

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, _):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def _fetch_one(self, query: str, params: Sequence[object]) -> Optional[dict]:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return cursor.fetchone()

    def _fetch_all(self, query: str, params: Sequence[object]) -> List[dict]:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return list(cursor.fetchall())

    def _execute(self, query: str, params: Sequence[object]) -> int:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return cursor.rowcount

    # idempotency

    def claim_idempotency_key(self, scope: str, key: str) -> bool:
        row = self._fetch_one(
            """
            INSERT INTO idempotency_keys (scope, key)
            VALUES (%s, %s)
            ON CONFLICT (scope, key) DO NOTHING
            RETURNING scope
            """,
            (scope, key),
        )
        return row is not None

    def is_event_applied(self, event_id: str) -> bool:
        row = self._fetch_one(
            "SELECT 1 AS applied FROM idempotency_keys WHERE scope = %s AND key = %s",
            (PROCESSOR_EVENT_SCOPE, event_id),
        )
        return row is not None

    # customers and recipients

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        row = self._fetch_one("SELECT * FROM customers WHERE id = %s", (customer_id,))
        return _row_to_customer(row) if row else None

    def get_customer_by_processor_id(self, processor_customer_id: str) -> Optional[Customer]:
        row = self._fetch_one(
            "SELECT * FROM customers WHERE processor_customer_id = %s",
            (processor_customer_id,),
        )
        return _row_to_customer(row) if row else None

    def get_customer_by_email(self, email: str) -> Optional[Customer]:
        row = self._fetch_one("SELECT * FROM customers WHERE lower(email) = lower(%s)", (email,))
        return _row_to_customer(row) if row else None

    def link_processor_customer(self, customer_id: str, processor_customer_id: str) -> Optional[Customer]:
        row = self._fetch_one(
            """
            UPDATE customers
            SET processor_customer_id = %s
            WHERE id = %s AND processor_customer_id IS NULL
            RETURNING *
            """,
            (processor_customer_id, customer_id),
        )
        return _row_to_customer(row) if row else None

    def get_payout_recipient(self, recipient_id: str) -> Optional[PayoutRecipient]:
        row = self._fetch_one("SELECT * FROM payout_recipients WHERE id = %s", (recipient_id,))
        return _row_to_recipient(row) if row else None

    # subscriptions

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        row = self._fetch_one(
            "SELECT * FROM payment_subscriptions WHERE subscription_id = %s",
            (subscription_id,),
        )
        return _row_to_subscription(row) if row else None

    def get_subscription_by_external_id(self, external_id: str) -> Optional[Subscription]:
        row = self._fetch_one(
            "SELECT * FROM payment_subscriptions WHERE external_id = %s",
            (external_id,),
        )
        return _row_to_subscription(row) if row else None

    def find_unlinked_subscription(self, customer_id: str) -> Optional[Subscription]:
        row = self._fetch_one(
            """
            SELECT * FROM payment_subscriptions
            WHERE customer_id = %s AND external_id IS NULL AND status <> 'CANCELLED'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (customer_id,),
        )
        return _row_to_subscription(row) if row else None

    def lock_subscription(self, subscription_id: str) -> Optional[Subscription]:
        row = self._fetch_one(
            "SELECT * FROM payment_subscriptions WHERE subscription_id = %s FOR UPDATE",
            (subscription_id,),
        )
        return _row_to_subscription(row) if row else None

    def save_subscription(self, subscription: Subscription) -> Subscription:
        row = self._fetch_one(
            """
            INSERT INTO payment_subscriptions (
                subscription_id,
                customer_id,
                external_id,
                status,
                start_date,
                end_date,
                next_billing_at,
                last_payment_at,
                amount,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (subscription_id) DO UPDATE SET
                external_id = COALESCE(payment_subscriptions.external_id, EXCLUDED.external_id),
                status = EXCLUDED.status,
                start_date = EXCLUDED.start_date,
                end_date = EXCLUDED.end_date,
                next_billing_at = EXCLUDED.next_billing_at,
                last_payment_at = EXCLUDED.last_payment_at,
                amount = EXCLUDED.amount,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            (
                subscription.subscription_id,
                subscription.customer_id,
                subscription.external_id,
                subscription.status.value,
                subscription.start_date,
                subscription.end_date,
                subscription.next_billing_at,
                subscription.last_payment_at,
                subscription.amount,
                subscription.created_at,
                subscription.updated_at,
            ),
        )
        return _row_to_subscription(row)

    # payments

    def append_payment(self, payment: Payment) -> Payment:
        row = self._fetch_one(
            """
            INSERT INTO payments (
                payment_id,
                customer_id,
                subscription_id,
                amount,
                status,
                type,
                external_invoice_id,
                external_payment_intent_id,
                created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                payment.payment_id,
                payment.customer_id,
                payment.subscription_id,
                payment.amount,
                payment.status.value,
                payment.type.value,
                payment.external_invoice_id,
                payment.external_payment_intent_id,
                payment.created_at,
            ),
        )
        return _row_to_payment(row)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        row = self._fetch_one("SELECT * FROM payments WHERE payment_id = %s", (payment_id,))
        return _row_to_payment(row) if row else None

    def find_payment_by_intent(self, payment_intent_id: str, *, status: str) -> Optional[Payment]:
        row = self._fetch_one(
            "SELECT * FROM payments WHERE external_payment_intent_id = %s AND status = %s",
            (payment_intent_id, status),
        )
        return _row_to_payment(row) if row else None

    # retries

    def create_retry(self, retry: PaymentRetry) -> PaymentRetry:
        row = self._fetch_one(
            """
            INSERT INTO payment_retries (
                retry_id,
                payment_id,
                status,
                retry_count,
                next_retry_at,
                external_payment_intent_id,
                error_message,
                claimed_at,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                retry.retry_id,
                retry.payment_id,
                retry.status.value,
                retry.retry_count,
                retry.next_retry_at,
                retry.external_payment_intent_id,
                retry.error_message,
                retry.claimed_at,
                retry.created_at,
                retry.updated_at,
            ),
        )
        return _row_to_retry(row)

    def list_due_retries(self, now: datetime) -> List[PaymentRetry]:
        rows = self._fetch_all(
            """
            SELECT * FROM payment_retries
            WHERE status = 'SCHEDULED' AND next_retry_at <= %s
            ORDER BY next_retry_at, retry_id
            """,
            (now,),
        )
        return [_row_to_retry(row) for row in rows]

    def claim_retry(self, retry_id: str, *, claimed_at: datetime) -> Optional[PaymentRetry]:
        row = self._fetch_one(
            """
            UPDATE payment_retries
            SET status = 'PENDING', claimed_at = %s, updated_at = %s
            WHERE retry_id = %s AND status = 'SCHEDULED'
            RETURNING *
            """,
            (claimed_at, claimed_at, retry_id),
        )
        return _row_to_retry(row) if row else None

    def save_retry(self, retry: PaymentRetry) -> PaymentRetry:
        row = self._fetch_one(
            """
            UPDATE payment_retries
            SET status = %s,
                external_payment_intent_id = %s,
                error_message = %s,
                claimed_at = %s,
                updated_at = %s
            WHERE retry_id = %s
            RETURNING *
            """,
            (
                retry.status.value,
                retry.external_payment_intent_id,
                retry.error_message,
                retry.claimed_at,
                retry.updated_at,
                retry.retry_id,
            ),
        )
        if row is None:
            raise LookupError(f"Payment retry {retry.retry_id} not found")
        return _row_to_retry(row)

    def reschedule_stale_retries(self, claimed_before: datetime) -> int:
        return self._execute(
            """
            UPDATE payment_retries
            SET status = 'SCHEDULED', claimed_at = NULL, updated_at = NOW()
            WHERE status = 'PENDING' AND claimed_at < %s
            """,
            (claimed_before,),
        )

    # scheduled services

    def find_service_in_week(self, subscription_id: str, week_start: date, week_end: date) -> Optional[ScheduledService]:
        row = self._fetch_one(
            """
            SELECT * FROM scheduled_services
            WHERE subscription_id = %s AND scheduled_date >= %s AND scheduled_date < %s
            ORDER BY scheduled_date
            LIMIT 1
            """,
            (subscription_id, week_start, week_end),
        )
        return _row_to_service(row) if row else None

    def insert_scheduled_service(self, service: ScheduledService) -> ScheduledService:
        row = self._fetch_one(
            """
            INSERT INTO scheduled_services (
                service_id,
                customer_id,
                subscription_id,
                scheduled_date,
                status,
                potential_earnings,
                created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                service.service_id,
                service.customer_id,
                service.subscription_id,
                service.scheduled_date,
                service.status.value,
                service.potential_earnings,
                service.created_at,
            ),
        )
        return _row_to_service(row)

    def cancel_scheduled_services(self, subscription_id: str) -> int:
        return self._execute(
            """
            UPDATE scheduled_services
            SET status = 'CANCELLED'
            WHERE subscription_id = %s AND status = 'SCHEDULED'
            """,
            (subscription_id,),
        )

    # payout batches

    def create_batch(self, batch: PaymentBatch) -> PaymentBatch:
        row = self._fetch_one(
            """
            INSERT INTO payment_batches (
                batch_id,
                name,
                description,
                status,
                created_by,
                payout_method,
                total_payments,
                success_count,
                failed_count,
                notes,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                batch.batch_id,
                batch.name,
                batch.description,
                batch.status.value,
                batch.created_by,
                batch.payout_method.value if batch.payout_method else None,
                batch.summary.total_payments,
                batch.summary.success_count,
                batch.summary.failed_count,
                list(batch.notes),
                batch.created_at,
                batch.updated_at,
            ),
        )
        return _row_to_batch(row)

    def get_batch(self, batch_id: str) -> Optional[PaymentBatch]:
        row = self._fetch_one("SELECT * FROM payment_batches WHERE batch_id = %s", (batch_id,))
        return _row_to_batch(row) if row else None

    def lock_batch(self, batch_id: str) -> Optional[PaymentBatch]:
        row = self._fetch_one("SELECT * FROM payment_batches WHERE batch_id = %s FOR UPDATE", (batch_id,))
        return _row_to_batch(row) if row else None

    def claim_batch(self, batch_id: str, *, payout_method: PayoutMethod, started_at: datetime) -> Optional[PaymentBatch]:
        row = self._fetch_one(
            """
            UPDATE payment_batches
            SET status = 'PROCESSING',
                payout_method = %s,
                processing_started_at = %s,
                completed_at = NULL,
                updated_at = %s
            WHERE batch_id = %s AND status IN ('DRAFT', 'FAILED')
            RETURNING *
            """,
            (payout_method.value, started_at, started_at, batch_id),
        )
        return _row_to_batch(row) if row else None

    def save_batch(self, batch: PaymentBatch) -> PaymentBatch:
        row = self._fetch_one(
            """
            UPDATE payment_batches
            SET status = %s,
                payout_method = %s,
                total_payments = %s,
                success_count = %s,
                failed_count = %s,
                notes = %s,
                processing_started_at = %s,
                completed_at = %s,
                updated_at = %s
            WHERE batch_id = %s
            RETURNING *
            """,
            (
                batch.status.value,
                batch.payout_method.value if batch.payout_method else None,
                batch.summary.total_payments,
                batch.summary.success_count,
                batch.summary.failed_count,
                list(batch.notes),
                batch.processing_started_at,
                batch.completed_at,
                batch.updated_at,
                batch.batch_id,
            ),
        )
        if row is None:
            raise LookupError(f"Payment batch {batch.batch_id} not found")
        return _row_to_batch(row)

    def delete_batch(self, batch_id: str) -> bool:
        # batch_payments.batch_id is ON DELETE SET NULL, which returns items to the pool
        deleted = self._fetch_one(
            "DELETE FROM payment_batches WHERE batch_id = %s AND status = 'DRAFT' RETURNING batch_id",
            (batch_id,),
        )
        return deleted is not None

    def list_stale_batches(self, started_before: datetime) -> List[PaymentBatch]:
        rows = self._fetch_all(
            """
            SELECT * FROM payment_batches
            WHERE status = 'PROCESSING' AND processing_started_at < %s
            ORDER BY processing_started_at
            """,
            (started_before,),
        )
        return [_row_to_batch(row) for row in rows]

    def create_batch_payment(self, payout: BatchPayment) -> BatchPayment:
        row = self._fetch_one(
            """
            INSERT INTO batch_payments (
                payout_id,
                batch_id,
                type,
                recipient_id,
                amount,
                status,
                reference,
                error_detail,
                paid_at,
                created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                payout.payout_id,
                payout.batch_id,
                payout.type.value,
                payout.recipient_id,
                payout.amount,
                payout.status.value,
                payout.reference,
                payout.error_detail,
                payout.paid_at,
                payout.created_at,
            ),
        )
        return _row_to_batch_payment(row)

    def assign_to_batch(self, batch_id: str, payout_ids: Sequence[str]) -> int:
        if not payout_ids:
            return 0
        return self._execute(
            """
            UPDATE batch_payments
            SET batch_id = %s
            WHERE payout_id = ANY(%s) AND batch_id IS NULL AND status = 'PENDING'
            """,
            (batch_id, list(payout_ids)),
        )

    def release_from_batch(self, batch_id: str, payout_ids: Sequence[str]) -> int:
        if not payout_ids:
            return 0
        return self._execute(
            "UPDATE batch_payments SET batch_id = NULL WHERE batch_id = %s AND payout_id = ANY(%s)",
            (batch_id, list(payout_ids)),
        )

    def list_batch_payments(self, batch_id: str) -> List[BatchPayment]:
        rows = self._fetch_all(
            "SELECT * FROM batch_payments WHERE batch_id = %s ORDER BY created_at, payout_id",
            (batch_id,),
        )
        return [_row_to_batch_payment(row) for row in rows]

    def save_batch_payment(self, payout: BatchPayment) -> BatchPayment:
        row = self._fetch_one(
            """
            UPDATE batch_payments
            SET status = %s,
                reference = %s,
                error_detail = %s,
                paid_at = %s
            WHERE payout_id = %s
            RETURNING *
            """,
            (
                payout.status.value,
                payout.reference,
                payout.error_detail,
                payout.paid_at,
                payout.payout_id,
            ),
        )
        if row is None:
            raise LookupError(f"Payout {payout.payout_id} not found")
        return _row_to_batch_payment(row)


__all__ = ["PostgresLedgerRepository", "managed_connection"]
