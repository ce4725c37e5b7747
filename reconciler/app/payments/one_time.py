"""Handlers for payment intents that are not attached to an invoice."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from .exceptions import UnknownEntity
from .interfaces import LedgerRepository, NotificationGateway
from .models import Customer, NotificationKind, Payment, PaymentStatus, PaymentType
from .money import to_major_units
from .notifications import notify_safely
from .payloads import text

logger = logging.getLogger(__name__)


@dataclass
class OneTimePaymentHandler:
    """Records one-off charges. Invoice-backed intents belong to the invoice handlers."""

    notifier: NotificationGateway

    def intent_succeeded(self, tx: LedgerRepository, intent: Dict[str, Any]) -> None:
        self._record(tx, intent, PaymentStatus.COMPLETED, amount_field="amount_received")

    def intent_failed(self, tx: LedgerRepository, intent: Dict[str, Any]) -> None:
        payment = self._record(tx, intent, PaymentStatus.FAILED, amount_field="amount")
        if payment is None:
            return
        error = intent.get("last_payment_error")
        reason = error.get("message") if isinstance(error, dict) else None
        notify_safely(
            self.notifier,
            payment.customer_id,
            NotificationKind.ONE_TIME_PAYMENT_FAILED,
            {"payment_intent_id": payment.external_payment_intent_id or "", "reason": str(reason or "")},
        )

    def _record(
        self,
        tx: LedgerRepository,
        intent: Dict[str, Any],
        status: PaymentStatus,
        *,
        amount_field: str,
    ) -> Optional[Payment]:
        intent_id = text(intent.get("id"))
        if intent.get("invoice"):
            logger.debug("Payment intent %s belongs to an invoice; skipping", intent_id)
            return None
        if not intent_id:
            logger.warning("Payment intent event without an id")
            return None

        existing = tx.find_payment_by_intent(intent_id, status=status.value)
        if existing is not None:
            logger.info("Payment intent %s already recorded as %s", intent_id, status.value)
            return None

        customer = self._resolve_customer(tx, intent)
        if customer is None:
            return None

        amount = to_major_units(intent.get(amount_field) or intent.get("amount"))
        if amount <= 0:
            logger.warning("Payment intent %s has no amount; not recorded", intent_id)
            return None

        payment = tx.append_payment(
            Payment(
                payment_id=f"pay_{uuid4().hex}",
                customer_id=customer.customer_id,
                amount=amount,
                status=status,
                type=PaymentType.ONE_TIME_PAYMENT,
                external_payment_intent_id=intent_id,
                created_at=datetime.now(timezone.utc),
            )
        )
        logger.info("Recorded %s one-time payment %s", status.value, payment.payment_id)
        return payment

    def _resolve_customer(self, tx: LedgerRepository, intent: Dict[str, Any]) -> Optional[Customer]:
        processor_customer_id = text(intent.get("customer"))
        customer = tx.get_customer_by_processor_id(processor_customer_id) if processor_customer_id else None
        if customer is None:
            error = UnknownEntity("customer", processor_customer_id)
            logger.warning("Dropping payment intent %s: %s", text(intent.get("id")), error.message)
        return customer


__all__ = ["OneTimePaymentHandler"]
