"""Off-session retries of failed renewals."""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from reconciler.app.payments import (
    NotificationKind,
    Payment,
    PaymentRetry,
    PaymentStatus,
    PaymentType,
    RetryStatus,
    SettlementKind,
    SettlementResult,
    Subscription,
    SubscriptionStatus,
)
from reconciler.app.payments.retries import retry_idempotency_key

from conftest import event_body, sign

NOW = datetime(2024, 7, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def failed_renewal(harness, customer):
    harness.ledger.save_subscription(
        Subscription(
            subscription_id="sub_local_1",
            customer_id=customer.customer_id,
            external_id="sub_ext_1",
            status=SubscriptionStatus.PAST_DUE,
            start_date=date(2024, 7, 1),
            amount=Decimal("45.00"),
        )
    )
    return harness.ledger.append_payment(
        Payment(
            payment_id="pay_failed",
            customer_id=customer.customer_id,
            subscription_id="sub_local_1",
            amount=Decimal("45.00"),
            status=PaymentStatus.FAILED,
            type=PaymentType.SUBSCRIPTION_RENEWAL,
            external_invoice_id="in_1",
            external_payment_intent_id="pi_1",
        )
    )


def _due_retry(harness, payment, *, retry_id="rty_1", retry_count=0, due=NOW - timedelta(minutes=1)):
    return harness.ledger.create_retry(
        PaymentRetry(
            retry_id=retry_id,
            payment_id=payment.payment_id,
            retry_count=retry_count,
            next_retry_at=due,
        )
    )


def _declined(detail="card_declined"):
    return SettlementResult(kind=SettlementKind.DECLINED, detail=detail)


def test_declined_retry_schedules_next_attempt(harness, failed_renewal):
    _due_retry(harness, failed_renewal, retry_count=2)
    harness.settlement.queued.append(_declined())

    summary = harness.engine.retries.run_sweep(NOW)

    assert summary.attempted == 1
    assert summary.failed == 1
    retries = harness.ledger.list_retries_for_payment(failed_renewal.payment_id)
    assert [(r.retry_count, r.status) for r in retries] == [
        (2, RetryStatus.FAILED),
        (3, RetryStatus.SCHEDULED),
    ]
    assert retries[0].error_message == "card_declined"
    assert retries[1].next_retry_at == NOW + timedelta(days=3)
    assert harness.ledger.get_subscription("sub_local_1").status == SubscriptionStatus.PAST_DUE
    assert harness.notifier.sent == []


def test_final_failed_retry_exhausts_the_chain(harness, failed_renewal):
    _due_retry(harness, failed_renewal, retry_count=3)
    harness.settlement.queued.append(_declined("insufficient_funds"))

    harness.engine.retries.run_sweep(NOW)

    retries = harness.ledger.list_retries_for_payment(failed_renewal.payment_id)
    assert len(retries) == 1
    assert retries[0].status == RetryStatus.FAILED
    assert harness.ledger.get_subscription("sub_local_1").status == SubscriptionStatus.PAST_DUE
    assert harness.notifier.kinds() == [NotificationKind.RETRIES_EXHAUSTED]
    _, _, metadata = harness.notifier.sent[0]
    assert metadata["reason"] == "insufficient_funds"


def test_successful_retry_recovers_subscription(harness, failed_renewal):
    retry = _due_retry(harness, failed_renewal)

    summary = harness.engine.retries.run_sweep(NOW)

    assert summary.succeeded == 1
    saved = harness.ledger.state.retries[retry.retry_id]
    assert saved.status == RetryStatus.SUCCESS
    assert saved.external_payment_intent_id == "pi_retry"

    completed = harness.ledger.find_payment_by_intent("pi_retry", status=PaymentStatus.COMPLETED.value)
    assert completed is not None
    assert completed.amount == Decimal("45.00")
    assert completed.subscription_id == "sub_local_1"

    subscription = harness.ledger.get_subscription("sub_local_1")
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.last_payment_at == NOW

    services = harness.ledger.list_scheduled_services("sub_local_1")
    assert [s.scheduled_date for s in services] == [
        date(2024, 7, 8),
        date(2024, 7, 15),
        date(2024, 7, 22),
        date(2024, 7, 29),
    ]


def test_charge_uses_retry_scoped_idempotency_key(harness, failed_renewal):
    retry = _due_retry(harness, failed_renewal)

    harness.engine.retries.run_sweep(NOW)

    assert len(harness.settlement.calls) == 1
    call = harness.settlement.calls[0]
    assert call["idempotency_key"] == retry_idempotency_key(retry.retry_id) == "retry-rty_1"
    assert call["amount"] == Decimal("45.00")
    assert call["customer_id"] == "cust_1"


def test_retry_for_cancelled_subscription_is_closed_without_charging(harness, failed_renewal):
    subscription = harness.ledger.get_subscription("sub_local_1")
    harness.ledger.save_subscription(subscription.model_copy(update={"status": SubscriptionStatus.CANCELLED}))
    _due_retry(harness, failed_renewal)

    harness.engine.retries.run_sweep(NOW)

    assert harness.settlement.calls == []
    retries = harness.ledger.list_retries_for_payment(failed_renewal.payment_id)
    assert [(r.status, r.error_message) for r in retries] == [(RetryStatus.FAILED, "subscription cancelled")]
    assert harness.ledger.get_subscription("sub_local_1").status == SubscriptionStatus.CANCELLED
    assert harness.ledger.state.services == {}


def test_failed_invoice_retries_at_most_four_times_then_stays_past_due(harness, customer):
    harness.ledger.save_subscription(
        Subscription(
            subscription_id="sub_local_2",
            customer_id=customer.customer_id,
            external_id="sub_ext_2",
            status=SubscriptionStatus.ACTIVE,
            start_date=date(2024, 7, 1),
            amount=Decimal("45.00"),
        )
    )
    invoice = {
        "id": "in_2",
        "object": "invoice",
        "subscription": "sub_ext_2",
        "payment_intent": "pi_2",
        "amount_due": 4500,
        "amount_paid": 0,
    }
    body = event_body("evt_failed", "invoice.payment_failed", invoice)
    harness.engine.dispatcher.dispatch(harness.engine.verifier.verify(body, sign(body)))
    harness.settlement.default = _declined()
    base = datetime.now(timezone.utc)

    exhausted_after = []
    for sweep in range(1, 7):
        harness.engine.retries.run_sweep(base + timedelta(days=4 * sweep))
        if NotificationKind.RETRIES_EXHAUSTED in harness.notifier.kinds():
            exhausted_after.append(sweep)

    failed = harness.ledger.find_payment_by_intent("pi_2", status=PaymentStatus.FAILED.value)
    retries = harness.ledger.list_retries_for_payment(failed.payment_id)
    assert [(r.retry_count, r.status) for r in retries] == [(count, RetryStatus.FAILED) for count in range(4)]
    assert len(harness.settlement.calls) == 4
    assert exhausted_after[0] == 4
    assert harness.notifier.kinds().count(NotificationKind.RETRIES_EXHAUSTED) == 1
    assert harness.ledger.get_subscription("sub_local_2").status == SubscriptionStatus.PAST_DUE


def test_requires_action_closes_retry_and_asks_customer(harness, failed_renewal):
    _due_retry(harness, failed_renewal)
    harness.settlement.queued.append(
        SettlementResult(kind=SettlementKind.REQUIRES_ACTION, reference="pi_3ds", detail="authentication_required")
    )

    summary = harness.engine.retries.run_sweep(NOW)

    assert summary.failed == 1
    retries = harness.ledger.list_retries_for_payment(failed_renewal.payment_id)
    assert len(retries) == 1
    assert retries[0].status == RetryStatus.FAILED
    assert retries[0].external_payment_intent_id == "pi_3ds"
    assert harness.notifier.kinds() == [NotificationKind.PAYMENT_ACTION_REQUIRED]


def test_missing_payment_method_fails_without_charging(harness, failed_renewal):
    customer = harness.ledger.get_customer("cust_1")
    harness.ledger.add_customer(customer.model_copy(update={"payment_method_id": None}))
    _due_retry(harness, failed_renewal)

    harness.engine.retries.run_sweep(NOW)

    assert harness.settlement.calls == []
    retries = harness.ledger.list_retries_for_payment(failed_renewal.payment_id)
    assert [r.status for r in retries] == [RetryStatus.FAILED]
    assert retries[0].error_message == "Customer has no payment method on file"


def test_future_retries_are_not_due(harness, failed_renewal):
    _due_retry(harness, failed_renewal, due=NOW + timedelta(hours=1))

    summary = harness.engine.retries.run_sweep(NOW)

    assert summary.attempted == 0
    assert harness.settlement.calls == []


def test_retry_claimed_elsewhere_is_skipped(harness, failed_renewal, monkeypatch):
    _due_retry(harness, failed_renewal)
    snapshot = harness.ledger.list_due_retries(NOW)
    harness.ledger.claim_retry("rty_1", claimed_at=NOW)
    monkeypatch.setattr(harness.ledger, "list_due_retries", lambda now: snapshot)

    summary = harness.engine.retries.run_sweep(NOW)

    assert summary.skipped == 1
    assert summary.attempted == 0
    assert harness.settlement.calls == []


def test_crash_in_one_retry_does_not_stop_the_sweep(harness, failed_renewal):
    _due_retry(harness, failed_renewal, retry_id="rty_a", due=NOW - timedelta(hours=2))
    _due_retry(harness, failed_renewal, retry_id="rty_b", retry_count=1, due=NOW - timedelta(hours=1))
    harness.settlement.queued.append(RuntimeError("socket closed"))

    summary = harness.engine.retries.run_sweep(NOW)

    assert summary.attempted == 2
    assert summary.failed == 1
    assert summary.succeeded == 1
    crashed = harness.ledger.state.retries["rty_a"]
    assert crashed.status == RetryStatus.FAILED
    assert crashed.error_message == "RuntimeError: socket closed"
    assert harness.ledger.state.retries["rty_b"].status == RetryStatus.SUCCESS


def test_reclaim_stale_reschedules_abandoned_claims(harness, failed_renewal):
    _due_retry(harness, failed_renewal, retry_id="rty_old")
    _due_retry(harness, failed_renewal, retry_id="rty_fresh", retry_count=1)
    harness.ledger.claim_retry("rty_old", claimed_at=NOW - timedelta(hours=2))
    harness.ledger.claim_retry("rty_fresh", claimed_at=NOW - timedelta(minutes=5))

    summary = harness.engine.retries.reclaim_stale(NOW)

    assert summary.retries_rescheduled == 1
    assert harness.ledger.state.retries["rty_old"].status == RetryStatus.SCHEDULED
    assert harness.ledger.state.retries["rty_fresh"].status == RetryStatus.PENDING
