"""Aggregator invariants against a real SQLite database."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest

from subtrack.subscriptions import aggregator
from subtrack.subscriptions.aggregator import ApplyOutcome, can_transition
from subtrack.subscriptions.ledger import ChargeRepository
from subtrack.subscriptions.models import ChargeCreate
from subtrack.subscriptions.repository import SubscriptionRepository

JUNE = datetime(2025, 6, 1, tzinfo=UTC)


def _event(message_id: str, amount: float = 15.49, charged_at: datetime = JUNE, **overrides) -> ChargeCreate:
    data = {
        "user_id": "u1",
        "service": "Netflix",
        "amount": amount,
        "billing_cycle": "monthly",
        "charged_at": charged_at,
        "category": "Streaming",
        "source_message_id": message_id,
    }
    data.update(overrides)
    return ChargeCreate(**data)


def test_first_charge_creates_active_subscription(temp_db):
    result = aggregator.apply_charge(_event("m1"))

    assert result.outcome == ApplyOutcome.CREATED
    subscription = result.subscription
    assert subscription.status == "active"
    assert subscription.service_normalized == "netflix"
    assert subscription.total_charges == 1
    assert subscription.total_amount == 15.49
    assert subscription.estimated_monthly_spend == 15.49
    assert subscription.next_renewal == datetime(2025, 7, 1, tzinfo=UTC)
    assert subscription.source_confidence == "email_only"


def test_same_message_is_idempotent(temp_db):
    aggregator.apply_charge(_event("m1"))
    again = aggregator.apply_charge(_event("m1"))

    assert again.outcome == ApplyOutcome.DUPLICATE
    [subscription] = SubscriptionRepository.list_by_user("u1")
    assert subscription.total_charges == 1
    assert len(ChargeRepository.list_by_user("u1")) == 1


def test_totals_grow_and_latest_charge_wins(temp_db):
    aggregator.apply_charge(_event("m2", amount=17.99, charged_at=JUNE))
    result = aggregator.apply_charge(_event("m1", amount=15.49, charged_at=JUNE - timedelta(days=30)))

    subscription = result.subscription
    assert result.outcome == ApplyOutcome.UPDATED
    assert subscription.total_charges == 2
    assert subscription.total_amount == pytest.approx(33.48)
    # An older charge never replaces the latest amount
    assert subscription.amount == 17.99
    assert subscription.last_charge_at == JUNE
    assert subscription.first_charge_at == JUNE - timedelta(days=30)


def test_service_names_are_normalized(temp_db):
    aggregator.apply_charge(_event("m1", service="Netflix"))
    aggregator.apply_charge(_event("m2", service="  NETFLIX ", charged_at=JUNE + timedelta(days=30)))

    [subscription] = SubscriptionRepository.list_by_user("u1")
    assert subscription.total_charges == 2
    assert subscription.display_service == "Netflix"


def test_one_time_charge_is_ledger_only(temp_db):
    result = aggregator.apply_charge(_event("m1", service="Steam", billing_cycle="one_time", amount=59.99))

    assert result.outcome == ApplyOutcome.RECORDED_ONLY
    assert SubscriptionRepository.list_by_user("u1") == []
    [charge] = ChargeRepository.list_by_user("u1")
    assert charge.kind == "one_time"
    assert charge.subscription_id is None


def test_status_event_without_subscription_is_dropped(temp_db):
    assert aggregator.apply_status_event("u1", "Netflix", "payment_failed") is None
    assert SubscriptionRepository.list_by_user("u1") == []


def test_status_events_follow_state_machine(temp_db):
    aggregator.apply_charge(_event("m1"))

    assert aggregator.apply_status_event("u1", "Netflix", "payment_failed").status == "past_due"
    assert aggregator.apply_status_event("u1", "netflix", "on_hold").status == "on_hold"
    assert aggregator.apply_status_event("u1", "Netflix", "canceled").status == "canceled"
    # A trial offer never downgrades a canceled subscription
    assert aggregator.apply_status_event("u1", "Netflix", "trial_offer").status == "canceled"
    assert aggregator.apply_status_event("u1", "Netflix", "reactivated").status == "active"


def test_trial_does_not_demote_active(temp_db):
    aggregator.apply_charge(_event("m1"))
    assert aggregator.apply_status_event("u1", "Netflix", "trial_started").status == "active"


def test_new_charge_revives_canceled_subscription(temp_db):
    aggregator.apply_charge(_event("m1"))
    aggregator.apply_status_event("u1", "Netflix", "canceled")

    result = aggregator.apply_charge(_event("m2", charged_at=JUNE + timedelta(days=31)))
    assert result.subscription.status == "active"
    assert result.subscription.auto_canceled is False


def test_transition_table():
    assert can_transition("active", "past_due")
    assert can_transition("canceled", "active")
    assert not can_transition("canceled", "trial")
    assert not can_transition("expired", "active")
    assert can_transition("unknown", "trial")
    assert can_transition("trial", "canceled")


def test_concurrent_charges_for_one_service_lose_nothing(temp_db):
    events = [
        _event(f"m{i}", amount=10.0, charged_at=JUNE + timedelta(days=i)) for i in range(12)
    ]
    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(aggregator.apply_charge, events))

    assert sum(1 for r in outcomes if r.outcome == ApplyOutcome.CREATED) == 1
    [subscription] = SubscriptionRepository.list_by_user("u1")
    assert subscription.total_charges == 12
    assert subscription.total_amount == pytest.approx(120.0)
    assert subscription.last_charge_at == JUNE + timedelta(days=11)


def test_soft_deleted_subscription_allows_a_new_one(temp_db):
    created = aggregator.apply_charge(_event("m1")).subscription
    assert SubscriptionRepository.soft_delete("u1", created.id)

    result = aggregator.apply_charge(_event("m2", charged_at=JUNE + timedelta(days=30)))
    assert result.outcome == ApplyOutcome.CREATED
    assert result.subscription.id != created.id
    assert len(SubscriptionRepository.list_by_user("u1", include_deleted=True)) == 2
