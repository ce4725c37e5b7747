"""Materializes weekly service appointments for active subscriptions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from .idempotency import SERVICE_WEEK_SCOPE, ensure_once
from .interfaces import LedgerRepository
from .models import ScheduledService, ServiceStatus, Subscription
from .money import DEFAULT_FEE_RATE, DEFAULT_FIXED_FEE, DEFAULT_REVENUE_SHARE, potential_earnings

logger = logging.getLogger(__name__)

WEEK = timedelta(days=7)


def week_start(day: date) -> date:
    """Monday of the ISO week containing ``day``."""

    return day - timedelta(days=day.weekday())


def weekly_slots(start: date, weeks: int) -> List[date]:
    return [week_start(start + WEEK * offset) for offset in range(weeks)]


@dataclass
class RecurringServiceGenerator:
    """Creates one SCHEDULED service per subscription week, never more.

    Every invocation runs in a single ledger transaction that first locks the
    subscription row, so concurrent invocations for the same subscription are
    serialized and the lookup-before-insert cannot race.
    """

    repository: LedgerRepository
    weeks: int = 4
    fee_rate: Decimal = DEFAULT_FEE_RATE
    fixed_fee: Decimal = DEFAULT_FIXED_FEE
    revenue_share: Decimal = DEFAULT_REVENUE_SHARE

    def generate(
        self,
        subscription_id: str,
        *,
        period_start: Optional[date] = None,
        repository: Optional[LedgerRepository] = None,
    ) -> List[ScheduledService]:
        """Ensure the services for one billing period exist; returns the new rows.

        Pass ``repository`` to join a transaction the caller already holds.
        """

        created: List[ScheduledService] = []
        with (repository or self.repository).transaction() as tx:
            subscription = tx.lock_subscription(subscription_id)
            if subscription is None:
                logger.warning("Cannot generate services for unknown subscription %s", subscription_id)
                return created
            if subscription.is_cancelled:
                logger.info("Skipping service generation for cancelled subscription %s", subscription_id)
                return created

            anchor = period_start or subscription.start_date
            for monday in weekly_slots(anchor, self.weeks):
                service = self._ensure_week(tx, subscription, monday)
                if service is not None:
                    created.append(service)

        if created:
            logger.info(
                "Generated %s scheduled services for subscription %s",
                len(created),
                subscription_id,
            )
        return created

    def _ensure_week(
        self,
        tx: LedgerRepository,
        subscription: Subscription,
        monday: date,
    ) -> Optional[ScheduledService]:
        existing = tx.find_service_in_week(subscription.subscription_id, monday, monday + WEEK)
        if existing is not None:
            return None

        service = ScheduledService(
            service_id=f"svc_{uuid4().hex}",
            customer_id=subscription.customer_id,
            subscription_id=subscription.subscription_id,
            scheduled_date=monday,
            status=ServiceStatus.SCHEDULED,
            potential_earnings=potential_earnings(
                subscription.amount,
                fee_rate=self.fee_rate,
                fixed_fee=self.fixed_fee,
                revenue_share=self.revenue_share,
            ),
        )
        inserted, _ = ensure_once(
            tx,
            SERVICE_WEEK_SCOPE,
            f"{subscription.subscription_id}:{monday.isoformat()}",
            lambda bound: bound.insert_scheduled_service(service),
        )
        return inserted


__all__ = ["RecurringServiceGenerator", "week_start", "weekly_slots"]
