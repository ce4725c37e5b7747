from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest

from reconciler.app.payments import ServiceStatus, Subscription, SubscriptionStatus
from reconciler.app.payments.scheduling import week_start, weekly_slots


def _subscription(harness, **overrides):
    values = dict(
        subscription_id="sub_local_1",
        customer_id="cust_1",
        external_id="sub_ext_1",
        status=SubscriptionStatus.ACTIVE,
        start_date=date(2024, 7, 3),
        amount=Decimal("45.00"),
    )
    values.update(overrides)
    return harness.ledger.save_subscription(Subscription(**values))


def test_week_start_is_monday():
    assert week_start(date(2024, 7, 3)) == date(2024, 7, 1)
    assert week_start(date(2024, 7, 7)) == date(2024, 7, 1)
    assert week_start(date(2024, 7, 8)) == date(2024, 7, 8)


def test_weekly_slots_are_monday_aligned():
    assert weekly_slots(date(2024, 7, 3), 3) == [date(2024, 7, 1), date(2024, 7, 8), date(2024, 7, 15)]


def test_generate_is_idempotent(harness):
    subscription = _subscription(harness)
    generator = harness.engine.dispatcher.state_machine.generator

    first = generator.generate(subscription.subscription_id)
    second = generator.generate(subscription.subscription_id)

    assert len(first) == 4
    assert second == []
    assert len(harness.ledger.list_scheduled_services(subscription.subscription_id)) == 4


def test_concurrent_generation_creates_one_service_per_week(harness):
    subscription = _subscription(harness)
    generator = harness.engine.dispatcher.state_machine.generator

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(lambda _: generator.generate(subscription.subscription_id), range(16)))

    services = harness.ledger.list_scheduled_services(subscription.subscription_id)
    assert len(services) == 4
    assert sum(len(created) for created in results) == 4
    assert len({s.scheduled_date for s in services}) == 4


def test_existing_service_in_week_is_respected(harness):
    subscription = _subscription(harness)
    generator = harness.engine.dispatcher.state_machine.generator
    generator.generate(subscription.subscription_id, period_start=date(2024, 7, 10))

    created = generator.generate(subscription.subscription_id)

    assert [s.scheduled_date for s in created] == [date(2024, 7, 1)]
    assert len(harness.ledger.list_scheduled_services(subscription.subscription_id)) == 5


def test_cancelled_subscription_gets_no_services(harness):
    subscription = _subscription(harness, status=SubscriptionStatus.CANCELLED)
    generator = harness.engine.dispatcher.state_machine.generator

    assert generator.generate(subscription.subscription_id) == []
    assert harness.ledger.state.services == {}


def test_unknown_subscription_is_skipped(harness):
    generator = harness.engine.dispatcher.state_machine.generator

    assert generator.generate("sub_missing") == []


def test_services_snapshot_worker_earnings(harness):
    subscription = _subscription(harness, amount=Decimal("100.00"))
    generator = harness.engine.dispatcher.state_machine.generator

    created = generator.generate(subscription.subscription_id)

    # (100.00 - 3.20) * 0.75
    assert {s.potential_earnings for s in created} == {Decimal("72.60")}
    assert {s.status for s in created} == {ServiceStatus.SCHEDULED}


def test_failure_during_generation_rolls_back_the_period(harness, monkeypatch):
    subscription = _subscription(harness)
    generator = harness.engine.dispatcher.state_machine.generator
    original = harness.ledger.insert_scheduled_service
    inserted = []

    def flaky_insert(self, service):
        if len(inserted) == 2:
            raise RuntimeError("connection reset")
        inserted.append(service)
        return original(service)

    monkeypatch.setattr(type(harness.ledger), "insert_scheduled_service", flaky_insert)

    with pytest.raises(RuntimeError):
        generator.generate(subscription.subscription_id)

    assert harness.ledger.state.services == {}
    assert harness.ledger.state.idempotency_keys == set()
