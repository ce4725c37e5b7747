"""Bounded retries of failed renewal charges and the stale-claim watchdog."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from .interfaces import LedgerRepository, NotificationGateway, SettlementClient
from .models import (
    Customer,
    NotificationKind,
    Payment,
    PaymentRetry,
    PaymentStatus,
    ReclaimSummary,
    RetryStatus,
    RetrySweepSummary,
    SettlementKind,
    SettlementResult,
    SubscriptionStatus,
)
from .notifications import notify_safely
from .payouts import BatchPayoutProcessor
from .scheduling import RecurringServiceGenerator

logger = logging.getLogger(__name__)


def retry_idempotency_key(retry_id: str) -> str:
    return f"retry-{retry_id}"


@dataclass
class RetryScheduler:
    """Charges due retries off-session and schedules the next attempt.

    A retry row is claimed (SCHEDULED -> PENDING) before the processor is
    called, so overlapping sweeps never charge the same retry twice. Counts
    run 0..max_retries; the failure of the attempt at ``max_retries`` ends the
    chain and leaves the subscription PAST_DUE.
    """

    repository: LedgerRepository
    settlement: SettlementClient
    generator: RecurringServiceGenerator
    notifier: NotificationGateway
    max_retries: int = 3
    retry_interval_days: int = 3
    pending_timeout_minutes: int = 30
    payouts: Optional[BatchPayoutProcessor] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def run_sweep(self, now: Optional[datetime] = None) -> RetrySweepSummary:
        now = now or self._now()
        summary = RetrySweepSummary()

        for due in self.repository.list_due_retries(now):
            retry = self.repository.claim_retry(due.retry_id, claimed_at=now)
            if retry is None:
                logger.info("Retry %s was claimed by another sweep", due.retry_id)
                summary.skipped += 1
                continue

            summary.attempted += 1
            try:
                succeeded = self._attempt(retry, now)
            except Exception as exc:
                logger.exception("Retry %s failed unexpectedly", retry.retry_id)
                self._record_crash(retry, exc, now)
                succeeded = False

            if succeeded:
                summary.succeeded += 1
            else:
                summary.failed += 1

        if summary.attempted or summary.skipped:
            logger.info(
                "Retry sweep finished: attempted=%s succeeded=%s failed=%s skipped=%s",
                summary.attempted,
                summary.succeeded,
                summary.failed,
                summary.skipped,
            )
        return summary

    def reclaim_stale(self, now: Optional[datetime] = None) -> ReclaimSummary:
        """Return work abandoned by a crashed sweep or batch run to a resumable state."""

        now = now or self._now()
        cutoff = now - timedelta(minutes=self.pending_timeout_minutes)
        rescheduled = self.repository.reschedule_stale_retries(cutoff)
        recovered = self.payouts.recover_stale_batches(cutoff) if self.payouts is not None else 0
        if rescheduled or recovered:
            logger.warning(
                "Reclaimed %s stale retries and %s stale payout batches",
                rescheduled,
                recovered,
            )
        return ReclaimSummary(retries_rescheduled=rescheduled, batches_recovered=recovered)

    def _attempt(self, retry: PaymentRetry, now: datetime) -> bool:
        payment = self.repository.get_payment(retry.payment_id)
        if payment is None:
            self._close(retry, RetryStatus.FAILED, now, error="Original payment not found")
            return False

        if payment.subscription_id is not None:
            subscription = self.repository.get_subscription(payment.subscription_id)
            if subscription is not None and subscription.is_cancelled:
                self._close(retry, RetryStatus.FAILED, now, error="subscription cancelled")
                return False

        customer = self.repository.get_customer(payment.customer_id)
        if customer is None or not customer.processor_customer_id or not customer.payment_method_id:
            self._close(retry, RetryStatus.FAILED, now, error="Customer has no payment method on file")
            return False

        result = self.settlement.charge_off_session(
            customer=customer,
            amount=payment.amount,
            description=f"Retry {retry.retry_count + 1} for payment {payment.payment_id}",
            idempotency_key=retry_idempotency_key(retry.retry_id),
        )

        if result.succeeded:
            self._record_success(retry, payment, result, now)
            return True
        if result.kind == SettlementKind.REQUIRES_ACTION:
            self._close(
                retry,
                RetryStatus.FAILED,
                now,
                error=result.detail or "Payment requires customer action",
                intent_id=result.reference,
            )
            notify_safely(
                self.notifier,
                customer.customer_id,
                NotificationKind.PAYMENT_ACTION_REQUIRED,
                {"payment_id": payment.payment_id, "payment_intent_id": result.reference or ""},
            )
            return False

        self._record_failure(retry, payment, customer, result, now)
        return False

    def _record_success(self, retry: PaymentRetry, payment: Payment, result: SettlementResult, now: datetime) -> None:
        with self.repository.transaction() as tx:
            tx.save_retry(
                retry.model_copy(
                    update={
                        "status": RetryStatus.SUCCESS,
                        "external_payment_intent_id": result.reference,
                        "error_message": None,
                        "updated_at": now,
                    }
                )
            )
            if result.reference and tx.find_payment_by_intent(result.reference, status=PaymentStatus.COMPLETED.value):
                logger.info("Payment for intent %s already recorded", result.reference)
            else:
                tx.append_payment(
                    Payment(
                        payment_id=f"pay_{uuid4().hex}",
                        customer_id=payment.customer_id,
                        subscription_id=payment.subscription_id,
                        amount=payment.amount,
                        status=PaymentStatus.COMPLETED,
                        type=payment.type,
                        external_invoice_id=payment.external_invoice_id,
                        external_payment_intent_id=result.reference,
                        created_at=now,
                    )
                )

            if payment.subscription_id is None:
                return
            subscription = tx.lock_subscription(payment.subscription_id)
            if subscription is None or subscription.is_cancelled:
                logger.info("Retry %s recovered payment for inactive subscription %s", retry.retry_id, payment.subscription_id)
                return
            tx.save_subscription(
                subscription.model_copy(
                    update={
                        "status": SubscriptionStatus.ACTIVE,
                        "last_payment_at": now,
                        "updated_at": now,
                    }
                )
            )
            self.generator.generate(subscription.subscription_id, period_start=now.date(), repository=tx)

        logger.info("Retry %s recovered payment %s", retry.retry_id, payment.payment_id)

    def _record_failure(
        self,
        retry: PaymentRetry,
        payment: Payment,
        customer: Customer,
        result: SettlementResult,
        now: datetime,
    ) -> None:
        error = result.detail or result.kind.value
        failure = result.to_error()
        exhausted = retry.retry_count >= self.max_retries
        with self.repository.transaction() as tx:
            tx.save_retry(
                retry.model_copy(
                    update={
                        "status": RetryStatus.FAILED,
                        "error_message": error,
                        "external_payment_intent_id": result.reference,
                        "updated_at": now,
                    }
                )
            )
            if not exhausted:
                tx.create_retry(
                    PaymentRetry(
                        retry_id=f"rty_{uuid4().hex}",
                        payment_id=payment.payment_id,
                        status=RetryStatus.SCHEDULED,
                        retry_count=retry.retry_count + 1,
                        next_retry_at=now + timedelta(days=self.retry_interval_days),
                        created_at=now,
                        updated_at=now,
                    )
                )
            elif payment.subscription_id is not None:
                subscription = tx.lock_subscription(payment.subscription_id)
                if subscription is not None and not subscription.is_cancelled:
                    tx.save_subscription(
                        subscription.model_copy(update={"status": SubscriptionStatus.PAST_DUE, "updated_at": now})
                    )

        if not exhausted:
            logger.info(
                "Retry %s for payment %s failed (%s: %s); attempt %s scheduled",
                retry.retry_id,
                payment.payment_id,
                failure.code if failure else result.kind.value,
                error,
                retry.retry_count + 1,
            )
            return

        logger.warning(
            "Retries exhausted for payment %s (%s): %s",
            payment.payment_id,
            failure.code if failure else result.kind.value,
            error,
        )
        notify_safely(
            self.notifier,
            customer.customer_id,
            NotificationKind.RETRIES_EXHAUSTED,
            {"payment_id": payment.payment_id, "amount": str(payment.amount), "reason": error},
        )

    def _close(
        self,
        retry: PaymentRetry,
        status: RetryStatus,
        now: datetime,
        *,
        error: Optional[str] = None,
        intent_id: Optional[str] = None,
    ) -> PaymentRetry:
        if error:
            logger.warning("Retry %s closed as %s: %s", retry.retry_id, status.value, error)
        return self.repository.save_retry(
            retry.model_copy(
                update={
                    "status": status,
                    "error_message": error,
                    "external_payment_intent_id": intent_id or retry.external_payment_intent_id,
                    "updated_at": now,
                }
            )
        )

    def _record_crash(self, retry: PaymentRetry, exc: Exception, now: datetime) -> None:
        try:
            self._close(retry, RetryStatus.FAILED, now, error=f"{type(exc).__name__}: {exc}")
        except Exception:
            logger.exception("Could not record failure of retry %s", retry.retry_id)


__all__ = ["RetryScheduler", "retry_idempotency_key"]
