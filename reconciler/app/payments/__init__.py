"""Payment reconciliation domain: processor events, retries and payout batches."""

from .dispatcher import DispatchOutcome, EventDispatcher
from .exceptions import (
    DuplicateEvent,
    PaymentEngineError,
    PermanentSettlementFailure,
    SecurityViolation,
    StateConflict,
    TransientProcessorError,
    UnknownEntity,
)
from .idempotency import ensure_once
from .interfaces import (
    AuditLogger,
    LedgerRepository,
    NotificationGateway,
    PayoutRail,
    SettlementClient,
)
from .models import (
    BatchPayment,
    BatchStatus,
    BatchSummary,
    Customer,
    NotificationKind,
    Payment,
    PaymentBatch,
    PaymentRetry,
    PaymentStatus,
    PaymentType,
    PayoutMethod,
    PayoutRecipient,
    PayoutStatus,
    PayoutType,
    ProcessorEvent,
    ProcessorEventKind,
    ReclaimSummary,
    RetryStatus,
    RetrySweepSummary,
    ScheduledService,
    SecurityAuditRecord,
    ServiceStatus,
    SettlementKind,
    SettlementResult,
    Subscription,
    SubscriptionStatus,
)
from .one_time import OneTimePaymentHandler
from .payouts import BatchPayoutProcessor, aggregate_batch_status
from .retries import RetryScheduler
from .scheduling import RecurringServiceGenerator
from .subscriptions import SubscriptionStateMachine
from .verifier import EventVerifier

__all__ = [
    "AuditLogger",
    "BatchPayment",
    "BatchPayoutProcessor",
    "BatchStatus",
    "BatchSummary",
    "Customer",
    "DispatchOutcome",
    "DuplicateEvent",
    "EventDispatcher",
    "EventVerifier",
    "LedgerRepository",
    "NotificationGateway",
    "NotificationKind",
    "OneTimePaymentHandler",
    "Payment",
    "PaymentBatch",
    "PaymentEngineError",
    "PaymentRetry",
    "PaymentStatus",
    "PaymentType",
    "PayoutMethod",
    "PayoutRail",
    "PayoutRecipient",
    "PayoutStatus",
    "PayoutType",
    "PermanentSettlementFailure",
    "ProcessorEvent",
    "ProcessorEventKind",
    "ReclaimSummary",
    "RecurringServiceGenerator",
    "RetryScheduler",
    "RetryStatus",
    "RetrySweepSummary",
    "ScheduledService",
    "SecurityAuditRecord",
    "SecurityViolation",
    "ServiceStatus",
    "SettlementClient",
    "SettlementKind",
    "SettlementResult",
    "StateConflict",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionStateMachine",
    "TransientProcessorError",
    "UnknownEntity",
    "aggregate_batch_status",
    "ensure_once",
]
