"""Application wiring for the payment reconciliation engine."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Optional

from ...app_context import get_conn
from ...config import EngineConfig, load_engine_config
from ..payments import (
    AuditLogger,
    BatchPayoutProcessor,
    Customer,
    EventDispatcher,
    EventVerifier,
    LedgerRepository,
    NotificationGateway,
    OneTimePaymentHandler,
    PayoutMethod,
    PayoutRail,
    RecurringServiceGenerator,
    RetryScheduler,
    SettlementClient,
    SettlementKind,
    SettlementResult,
    SubscriptionStateMachine,
)
from ..payments.notifications import (
    BackgroundNotificationGateway,
    LoggingAuditLogger,
    PostgresNotificationGateway,
)
from ..payments.processor import StripeSettlementClient, build_stripe_client, default_payout_rails
from ..payments.repository import PostgresLedgerRepository

logger = logging.getLogger("payments")


class UnconfiguredSettlementClient(SettlementClient):
    """Stand-in used when no processor key is configured; every charge fails transiently."""

    def charge_off_session(
        self,
        *,
        customer: Customer,
        amount: Decimal,
        description: str,
        idempotency_key: str,
    ) -> SettlementResult:
        logger.error("Cannot charge customer %s: STRIPE_SECRET_KEY is not configured", customer.customer_id)
        return SettlementResult(
            kind=SettlementKind.TRANSIENT_ERROR,
            detail="Payment processor is not configured",
        )


@dataclass
class PaymentEngine:
    """The components the HTTP routes and the periodic job talk to."""

    config: EngineConfig
    repository: LedgerRepository
    verifier: EventVerifier
    dispatcher: EventDispatcher
    retries: RetryScheduler
    payouts: BatchPayoutProcessor


def build_payment_engine(
    config: EngineConfig,
    *,
    repository: LedgerRepository,
    settlement: SettlementClient,
    rails: Dict[PayoutMethod, PayoutRail],
    notifier: NotificationGateway,
    audit_logger: AuditLogger,
) -> PaymentEngine:
    generator = RecurringServiceGenerator(
        repository=repository,
        weeks=config.service_weeks,
        fee_rate=config.processor_fee_rate,
        fixed_fee=config.processor_fixed_fee,
        revenue_share=config.worker_revenue_share,
    )
    payouts = BatchPayoutProcessor(
        repository=repository,
        rails=rails,
        max_workers=config.payout_max_workers,
    )
    state_machine = SubscriptionStateMachine(
        generator=generator,
        notifier=notifier,
        payouts=payouts,
        retry_interval_days=config.retry_interval_days,
        referral_commission=config.referral_commission,
    )
    dispatcher = EventDispatcher(
        repository=repository,
        state_machine=state_machine,
        one_time_payments=OneTimePaymentHandler(notifier=notifier),
        audit_logger=audit_logger,
    )
    verifier = EventVerifier(
        repository=repository,
        signing_secret=config.stripe_webhook_secret,
        audit_logger=audit_logger,
    )
    retries = RetryScheduler(
        repository=repository,
        settlement=settlement,
        generator=generator,
        notifier=notifier,
        max_retries=config.max_retries,
        retry_interval_days=config.retry_interval_days,
        pending_timeout_minutes=config.pending_timeout_minutes,
        payouts=payouts,
    )
    return PaymentEngine(
        config=config,
        repository=repository,
        verifier=verifier,
        dispatcher=dispatcher,
        retries=retries,
        payouts=payouts,
    )


@lru_cache(maxsize=1)
def get_payment_engine() -> PaymentEngine:
    config = load_engine_config()
    client = None
    settlement: Optional[SettlementClient] = None
    if config.stripe_secret_key:
        client = build_stripe_client(config.stripe_secret_key, timeout_seconds=config.processor_timeout_seconds)
        settlement = StripeSettlementClient(client, currency=config.currency)
    else:
        logger.warning("STRIPE_SECRET_KEY is not set; retries will fail and direct transfers are disabled")
    if not config.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; every webhook delivery will be rejected")

    return build_payment_engine(
        config,
        repository=PostgresLedgerRepository(),
        settlement=settlement or UnconfiguredSettlementClient(),
        rails=default_payout_rails(client, currency=config.currency),
        notifier=BackgroundNotificationGateway(PostgresNotificationGateway(get_conn)),
        audit_logger=LoggingAuditLogger(),
    )


__all__ = ["PaymentEngine", "UnconfiguredSettlementClient", "build_payment_engine", "get_payment_engine"]
