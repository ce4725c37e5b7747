"""Routes verified processor events to exactly one handler."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .idempotency import PROCESSOR_EVENT_SCOPE, ensure_once
from .interfaces import AuditLogger, LedgerRepository
from .models import ProcessorEvent, ProcessorEventKind
from .one_time import OneTimePaymentHandler
from .subscriptions import SubscriptionStateMachine

logger = logging.getLogger(__name__)

Handler = Callable[[LedgerRepository, Dict[str, Any]], None]


class DispatchOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass
class EventDispatcher:
    """Applies an event and records it as applied in the same transaction.

    A handler exception rolls the transaction back, so the event stays
    unapplied and a redelivery from the processor can try again.
    """

    repository: LedgerRepository
    state_machine: SubscriptionStateMachine
    one_time_payments: OneTimePaymentHandler
    audit_logger: AuditLogger
    _handlers: Dict[str, Handler] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        machine = self.state_machine
        one_time = self.one_time_payments
        self._handlers = {
            ProcessorEventKind.INVOICE_PAYMENT_SUCCEEDED.value: machine.invoice_paid,
            ProcessorEventKind.INVOICE_PAYMENT_FAILED.value: machine.invoice_failed,
            ProcessorEventKind.INVOICE_PAYMENT_ACTION_REQUIRED.value: machine.invoice_action_required,
            ProcessorEventKind.SUBSCRIPTION_CREATED.value: machine.subscription_created,
            ProcessorEventKind.SUBSCRIPTION_UPDATED.value: machine.subscription_updated,
            ProcessorEventKind.SUBSCRIPTION_DELETED.value: machine.subscription_deleted,
            ProcessorEventKind.CUSTOMER_CREATED.value: machine.customer_created,
            ProcessorEventKind.PAYMENT_INTENT_SUCCEEDED.value: one_time.intent_succeeded,
            ProcessorEventKind.PAYMENT_INTENT_FAILED.value: one_time.intent_failed,
        }

    def handler_for(self, kind: str) -> Optional[Handler]:
        return self._handlers.get(kind)

    def dispatch(self, event: ProcessorEvent) -> DispatchOutcome:
        handler = self.handler_for(event.kind)

        def apply(tx: LedgerRepository) -> None:
            if handler is not None:
                handler(tx, event.payload)

        try:
            _, ran = ensure_once(self.repository, PROCESSOR_EVENT_SCOPE, event.event_id, apply)
        except Exception as exc:
            self.audit_logger.handler_failed(event.event_id, event.kind, exc)
            raise

        if not ran:
            logger.info("Processor event %s (%s) lost a concurrent delivery race", event.event_id, event.kind)
            return DispatchOutcome.DUPLICATE
        if handler is None:
            logger.info("Ignoring unhandled processor event kind %s (%s)", event.kind, event.event_id)
            return DispatchOutcome.IGNORED
        logger.info("Applied processor event %s (%s)", event.event_id, event.kind)
        return DispatchOutcome.APPLIED


__all__ = ["DispatchOutcome", "EventDispatcher"]
