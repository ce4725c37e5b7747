"""Applies processor subscription and invoice events to the ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4

from .exceptions import UnknownEntity
from .idempotency import REFERRAL_COMMISSION_SCOPE, ensure_once
from .interfaces import LedgerRepository, NotificationGateway
from .models import (
    NotificationKind,
    Payment,
    PaymentRetry,
    PaymentStatus,
    PaymentType,
    PayoutType,
    RetryStatus,
    Subscription,
    SubscriptionStatus,
)
from .money import potential_earnings, to_major_units
from .notifications import notify_safely
from .payloads import (
    day,
    invoice_next_billing,
    invoice_period,
    invoice_subscription_id,
    subscription_period,
    subscription_unit_amount,
    text,
)
from .payouts import BatchPayoutProcessor
from .scheduling import RecurringServiceGenerator

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]


def _drop(error: UnknownEntity, event_kind: str) -> None:
    logger.warning(
        "Dropping %s: %s",
        event_kind,
        error.message,
        extra={
            "error_code": error.code,
            "entity": error.payload.get("entity"),
            "reference": error.payload.get("reference"),
        },
    )


@dataclass
class SubscriptionStateMachine:
    """Transition table for subscription status driven by processor events.

    ACTIVE -> PAST_DUE on a failed renewal, back to ACTIVE on recovery, and
    CANCELLED when the processor deletes the subscription. CANCELLED is terminal:
    late events for it are recorded as payments but never move its status.
    Every handler takes the repository bound to the dispatcher's transaction.
    """

    generator: RecurringServiceGenerator
    notifier: NotificationGateway
    payouts: BatchPayoutProcessor
    retry_interval_days: int = 3
    referral_commission: Decimal = Decimal("5.00")

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def invoice_paid(self, tx: LedgerRepository, invoice: Payload) -> None:
        subscription = self._subscription_for_invoice(tx, invoice, "invoice.payment_succeeded")
        if subscription is None:
            return

        now = self._now()
        if subscription.is_cancelled:
            # CANCELLED is terminal; a late invoice only lands in the payment ledger.
            logger.info(
                "Invoice %s paid for cancelled subscription %s",
                text(invoice.get("id")),
                subscription.subscription_id,
            )
        else:
            subscription = tx.save_subscription(
                subscription.model_copy(
                    update={
                        "status": SubscriptionStatus.ACTIVE,
                        "next_billing_at": invoice_next_billing(invoice) or subscription.next_billing_at,
                        "last_payment_at": now,
                        "updated_at": now,
                    }
                )
            )

        intent_id = text(invoice.get("payment_intent"))
        amount = to_major_units(invoice.get("amount_paid"))
        if amount <= 0:
            logger.info("Invoice %s settled without a charge", text(invoice.get("id")))
        elif intent_id and tx.find_payment_by_intent(intent_id, status=PaymentStatus.COMPLETED.value):
            logger.info("Payment for intent %s already recorded", intent_id)
        else:
            payment = tx.append_payment(
                Payment(
                    payment_id=f"pay_{uuid4().hex}",
                    customer_id=subscription.customer_id,
                    subscription_id=subscription.subscription_id,
                    amount=amount,
                    status=PaymentStatus.COMPLETED,
                    type=PaymentType.SUBSCRIPTION_RENEWAL,
                    external_invoice_id=text(invoice.get("id")),
                    external_payment_intent_id=intent_id,
                    created_at=now,
                )
            )
            if not subscription.is_cancelled:
                self._credit_earnings(tx, payment)

        if subscription.is_cancelled:
            return
        period_start, _ = invoice_period(invoice)
        self.generator.generate(
            subscription.subscription_id,
            period_start=period_start.date() if period_start else None,
            repository=tx,
        )
        self._credit_referral(tx, subscription.customer_id)

    def invoice_failed(self, tx: LedgerRepository, invoice: Payload) -> None:
        subscription = self._subscription_for_invoice(tx, invoice, "invoice.payment_failed")
        if subscription is None:
            return
        intent_id = text(invoice.get("payment_intent"))
        if intent_id and tx.find_payment_by_intent(intent_id, status=PaymentStatus.COMPLETED.value):
            logger.info("Intent %s was already paid; ignoring late failure", intent_id)
            return

        now = self._now()
        if not subscription.is_cancelled:
            tx.save_subscription(
                subscription.model_copy(
                    update={
                        "status": SubscriptionStatus.PAST_DUE,
                        "next_billing_at": invoice_next_billing(invoice) or subscription.next_billing_at,
                        "updated_at": now,
                    }
                )
            )

        invoice_id = text(invoice.get("id"))
        amount = to_major_units(invoice.get("amount_due"))
        if amount <= 0:
            logger.warning("Failed invoice %s has no amount due; no retry scheduled", invoice_id)
        elif intent_id and tx.find_payment_by_intent(intent_id, status=PaymentStatus.FAILED.value):
            # The processor retries the same intent on its own; one retry chain per intent.
            logger.info("Failure for intent %s already recorded", intent_id)
        else:
            payment = tx.append_payment(
                Payment(
                    payment_id=f"pay_{uuid4().hex}",
                    customer_id=subscription.customer_id,
                    subscription_id=subscription.subscription_id,
                    amount=amount,
                    status=PaymentStatus.FAILED,
                    type=PaymentType.SUBSCRIPTION_RENEWAL,
                    external_invoice_id=invoice_id,
                    external_payment_intent_id=intent_id,
                    created_at=now,
                )
            )
            if not subscription.is_cancelled:
                tx.create_retry(
                    PaymentRetry(
                        retry_id=f"rty_{uuid4().hex}",
                        payment_id=payment.payment_id,
                        status=RetryStatus.SCHEDULED,
                        retry_count=0,
                        next_retry_at=now + timedelta(days=self.retry_interval_days),
                        created_at=now,
                        updated_at=now,
                    )
                )

        if subscription.is_cancelled:
            logger.info("Invoice %s failed for cancelled subscription %s", invoice_id, subscription.subscription_id)
            return
        notify_safely(
            self.notifier,
            subscription.customer_id,
            NotificationKind.INVOICE_PAYMENT_FAILED,
            {"invoice_id": invoice_id or "", "amount_due": str(amount)},
        )

    def invoice_action_required(self, tx: LedgerRepository, invoice: Payload) -> None:
        subscription = self._subscription_for_invoice(tx, invoice, "invoice.payment_action_required")
        if subscription is None:
            return
        notify_safely(
            self.notifier,
            subscription.customer_id,
            NotificationKind.PAYMENT_ACTION_REQUIRED,
            {"invoice_id": text(invoice.get("id")) or ""},
        )

    def subscription_created(self, tx: LedgerRepository, payload: Payload) -> None:
        external_id = text(payload.get("id"))
        processor_customer_id = text(payload.get("customer"))
        customer = tx.get_customer_by_processor_id(processor_customer_id) if processor_customer_id else None
        if customer is None:
            _drop(UnknownEntity("customer", processor_customer_id), "customer.subscription.created")
            return

        period_start, period_end = subscription_period(payload)
        started = day(payload.get("start_date")) or (period_start.date() if period_start else self._now().date())
        unit_amount = subscription_unit_amount(payload)
        now = self._now()
        changes = {
            "external_id": external_id,
            "status": SubscriptionStatus.ACTIVE,
            "start_date": period_start.date() if period_start else started,
            "end_date": period_end.date() if period_end else None,
            "next_billing_at": period_end,
            "updated_at": now,
        }
        if unit_amount is not None:
            changes["amount"] = to_major_units(unit_amount)

        existing = (
            tx.get_subscription_by_external_id(external_id) if external_id else None
        ) or tx.find_unlinked_subscription(customer.customer_id)
        if existing is not None and existing.is_cancelled:
            logger.info("Ignoring creation of cancelled subscription %s", existing.subscription_id)
            return
        if existing is not None:
            subscription = tx.save_subscription(existing.model_copy(update=changes))
            logger.info("Linked subscription %s to processor id %s", subscription.subscription_id, external_id)
        else:
            subscription = tx.save_subscription(
                Subscription(
                    subscription_id=f"sub_{uuid4().hex}",
                    customer_id=customer.customer_id,
                    created_at=now,
                    **changes,
                )
            )
            logger.info("Created subscription %s for customer %s", subscription.subscription_id, customer.customer_id)

        self.generator.generate(subscription.subscription_id, repository=tx)

    def subscription_updated(self, tx: LedgerRepository, payload: Payload) -> None:
        subscription = self._subscription_by_external_id(tx, payload, "customer.subscription.updated")
        if subscription is None:
            return
        if subscription.is_cancelled:
            logger.info("Ignoring update of cancelled subscription %s", subscription.subscription_id)
            return

        _, period_end = subscription_period(payload)
        processor_status = str(payload.get("status") or "")
        status = SubscriptionStatus.ACTIVE if processor_status == "active" else SubscriptionStatus.CANCELLED
        end_date = period_end.date() if payload.get("cancel_at_period_end") and period_end else None
        tx.save_subscription(
            subscription.model_copy(
                update={
                    "status": status,
                    "end_date": end_date,
                    "next_billing_at": period_end or subscription.next_billing_at,
                    "updated_at": self._now(),
                }
            )
        )
        logger.info(
            "Subscription %s is now %s (processor status %s)",
            subscription.subscription_id,
            status.value,
            processor_status,
        )

    def subscription_deleted(self, tx: LedgerRepository, payload: Payload) -> None:
        subscription = self._subscription_by_external_id(tx, payload, "customer.subscription.deleted")
        if subscription is None:
            return

        now = self._now()
        tx.save_subscription(
            subscription.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELLED,
                    "end_date": now.date(),
                    "updated_at": now,
                }
            )
        )
        cancelled = tx.cancel_scheduled_services(subscription.subscription_id)
        logger.info(
            "Cancelled subscription %s and %s scheduled services",
            subscription.subscription_id,
            cancelled,
        )

    def customer_created(self, tx: LedgerRepository, payload: Payload) -> None:
        processor_customer_id = text(payload.get("id"))
        email = payload.get("email")
        if not processor_customer_id or not email:
            logger.warning("Processor customer %s has no email address", processor_customer_id)
            return

        customer = tx.get_customer_by_email(str(email))
        if customer is None:
            _drop(UnknownEntity("customer", str(email)), "customer.created")
            return
        if customer.processor_customer_id and customer.processor_customer_id != processor_customer_id:
            logger.warning(
                "Customer %s already linked to %s, ignoring %s",
                customer.customer_id,
                customer.processor_customer_id,
                processor_customer_id,
            )
            return
        if customer.processor_customer_id is None:
            tx.link_processor_customer(customer.customer_id, processor_customer_id)

    def _subscription_for_invoice(
        self, tx: LedgerRepository, invoice: Payload, event_kind: str
    ) -> Optional[Subscription]:
        external_id = invoice_subscription_id(invoice)
        subscription = tx.get_subscription_by_external_id(external_id) if external_id else None
        if subscription is None:
            _drop(UnknownEntity("subscription", external_id), event_kind)
        return subscription

    def _subscription_by_external_id(
        self, tx: LedgerRepository, payload: Payload, event_kind: str
    ) -> Optional[Subscription]:
        external_id = text(payload.get("id"))
        subscription = tx.get_subscription_by_external_id(external_id) if external_id else None
        if subscription is None:
            _drop(UnknownEntity("subscription", external_id), event_kind)
        return subscription

    def _credit_earnings(self, tx: LedgerRepository, payment: Payment) -> None:
        customer = tx.get_customer(payment.customer_id)
        if customer is None or not customer.worker_id:
            return
        earnings = potential_earnings(
            payment.amount,
            fee_rate=self.generator.fee_rate,
            fixed_fee=self.generator.fixed_fee,
            revenue_share=self.generator.revenue_share,
        )
        if earnings <= 0:
            return
        self.payouts.create_payout(
            PayoutType.EARNINGS,
            customer.worker_id,
            earnings,
            reference=payment.payment_id,
            repository=tx,
        )

    def _credit_referral(self, tx: LedgerRepository, customer_id: str) -> None:
        if self.referral_commission <= 0:
            return
        customer = tx.get_customer(customer_id)
        if customer is None or not customer.referrer_id:
            return

        _, credited = ensure_once(
            tx,
            REFERRAL_COMMISSION_SCOPE,
            customer_id,
            lambda bound: self.payouts.create_payout(
                PayoutType.REFERRAL,
                customer.referrer_id,
                self.referral_commission,
                reference=customer_id,
                repository=bound,
            ),
        )
        if credited:
            logger.info("Credited referral commission to %s for customer %s", customer.referrer_id, customer_id)


__all__ = ["SubscriptionStateMachine"]
