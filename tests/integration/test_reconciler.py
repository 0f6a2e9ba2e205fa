"""Card reconciliation against email-derived subscriptions."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import NOW

from subtrack.cards.cadence import CardTransaction
from subtrack.cards.reconciler import reconcile_card_transactions
from subtrack.subscriptions import aggregator
from subtrack.subscriptions.ledger import ChargeRepository
from subtrack.subscriptions.models import ChargeCreate
from subtrack.subscriptions.repository import SubscriptionRepository


def _email_charge(message_id: str, service: str, amount: float = 15.49, days_ago: int = 20) -> None:
    aggregator.apply_charge(
        ChargeCreate(
            user_id="u1",
            service=service,
            amount=amount,
            billing_cycle="monthly",
            charged_at=NOW - timedelta(days=days_ago),
            source_message_id=message_id,
        )
    )


def _tx(tx_id: str, merchant: str, amount: float, days_ago: int, pending: bool = False) -> CardTransaction:
    return CardTransaction(
        transaction_id=tx_id,
        merchant=merchant,
        amount=amount,
        date=NOW - timedelta(days=days_ago),
        pending=pending,
    )


def _by_service() -> dict:
    return {s.service_normalized: s for s in SubscriptionRepository.list_by_user("u1")}


def test_card_activity_corroborates_earliest_matching_subscription(temp_db):
    _email_charge("m1", "Netflix")
    _email_charge("m2", "Netflix Inc")
    txs = [_tx("t1", "NETFLIX.COM", 15.49, 35), _tx("t2", "NETFLIX.COM", 15.49, 5)]

    summary = reconcile_card_transactions("u1", txs, now=NOW)

    assert summary.matched == 1
    assert summary.created == 0
    subs = _by_service()
    netflix = subs["netflix"]
    assert netflix.source_confidence == "email+card"
    assert netflix.card_linked is True
    assert netflix.confirmed_amount == pytest.approx(15.49)
    assert netflix.confirmed_billing_cycle == "monthly"
    assert netflix.last_card_transaction_id == "t2"
    assert netflix.total_charges == 2
    assert netflix.last_charge_at == NOW - timedelta(days=5)
    assert subs["netflix inc"].source_confidence == "email_only"

    card_charges = [c for c in ChargeRepository.list_by_subscription("u1", netflix.id) if c.source_transaction_id]
    assert [c.source_transaction_id for c in card_charges] == ["t2"]


def test_rerun_does_not_grow_totals(temp_db):
    _email_charge("m1", "Netflix")
    txs = [_tx("t1", "NETFLIX.COM", 15.49, 35), _tx("t2", "NETFLIX.COM", 15.49, 5)]

    reconcile_card_transactions("u1", txs, now=NOW)
    again = reconcile_card_transactions("u1", txs, now=NOW)

    assert again.matched == 1
    netflix = _by_service()["netflix"]
    assert netflix.total_charges == 2
    assert netflix.total_amount == pytest.approx(30.98)


def test_amount_mismatch_does_not_match(temp_db):
    _email_charge("m1", "Netflix", amount=15.49)
    txs = [_tx("t1", "NETFLIX.COM", 22.99, 35), _tx("t2", "NETFLIX.COM", 22.99, 5)]

    summary = reconcile_card_transactions("u1", txs, now=NOW)

    assert summary.matched == 0
    # Recurring and unmatched, so it becomes its own card-only subscription
    assert summary.created == 1
    assert _by_service()["netflix"].source_confidence == "email_only"


def test_recurring_unmatched_merchant_creates_card_only_subscription(temp_db):
    txs = [_tx("d1", "DISNEY PLUS", 7.99, 31), _tx("d2", "DISNEY PLUS", 7.99, 1)]

    summary = reconcile_card_transactions("u1", txs, now=NOW)

    assert summary.created == 1
    [subscription] = SubscriptionRepository.list_by_user("u1")
    assert subscription.service_normalized == "disney plus"
    assert subscription.display_service == "DISNEY PLUS"
    assert subscription.source == "card"
    assert subscription.source_confidence == "card_only"
    assert subscription.category == "Other"
    assert subscription.billing_cycle == "monthly"
    assert subscription.total_charges == 2
    assert subscription.total_amount == pytest.approx(15.98)
    assert sorted(c.source_transaction_id for c in ChargeRepository.list_by_user("u1")) == ["d1", "d2"]


def test_card_only_subscription_is_matched_on_rerun(temp_db):
    txs = [_tx("d1", "DISNEY PLUS", 7.99, 31), _tx("d2", "DISNEY PLUS", 7.99, 1)]
    reconcile_card_transactions("u1", txs, now=NOW)

    again = reconcile_card_transactions("u1", txs, now=NOW)

    assert again.created == 0
    assert again.matched == 1
    [subscription] = SubscriptionRepository.list_by_user("u1")
    assert subscription.total_charges == 2


def test_span_longer_than_one_cycle_is_ignored(temp_db):
    txs = [_tx(f"h{i}", "HBO MAX", 9.99, 5 + 30 * i) for i in range(4)]

    summary = reconcile_card_transactions("u1", txs, now=NOW)

    assert summary.created == 0
    assert summary.ignored == 1
    assert SubscriptionRepository.list_by_user("u1") == []


def test_one_off_merchant_is_ignored(temp_db):
    txs = [_tx("u1", "UBER *TRIP", 12.0, 31), _tx("u2", "UBER *TRIP", 12.0, 1)]

    summary = reconcile_card_transactions("u1", txs, now=NOW)

    assert summary.ignored == 1
    assert SubscriptionRepository.list_by_user("u1") == []


def test_money_movement_and_pending_are_dropped(temp_db):
    txs = [
        _tx("p1", "CREDIT CARD PAYMENT", 500.0, 31),
        _tx("p2", "CREDIT CARD PAYMENT", 500.0, 1),
        _tx("s1", "SPOTIFY", 9.99, 31, pending=True),
        _tx("s2", "SPOTIFY", 9.99, 1, pending=True),
    ]

    summary = reconcile_card_transactions("u1", txs, now=NOW)

    assert (summary.matched, summary.created, summary.ignored) == (0, 0, 0)


def test_unstable_amounts_are_ignored(temp_db):
    txs = [_tx("a1", "ADOBE", 10.0, 31), _tx("a2", "ADOBE", 30.0, 1)]

    summary = reconcile_card_transactions("u1", txs, now=NOW)

    assert summary.ignored == 1
    assert summary.created == 0


def test_untouched_email_subscription_reverts_to_email_only(temp_db):
    _email_charge("m1", "Netflix")
    reconcile_card_transactions(
        "u1", [_tx("t1", "NETFLIX.COM", 15.49, 35), _tx("t2", "NETFLIX.COM", 15.49, 5)], now=NOW
    )
    assert _by_service()["netflix"].source_confidence == "email+card"

    reconcile_card_transactions(
        "u1", [_tx("d1", "DISNEY PLUS", 7.99, 31), _tx("d2", "DISNEY PLUS", 7.99, 1)], now=NOW
    )

    assert _by_service()["netflix"].source_confidence == "email_only"


def test_card_match_reactivates_canceled_subscription(temp_db):
    _email_charge("m1", "Netflix")
    aggregator.apply_status_event("u1", "Netflix", "canceled")

    reconcile_card_transactions(
        "u1", [_tx("t1", "NETFLIX.COM", 15.49, 35), _tx("t2", "NETFLIX.COM", 15.49, 5)], now=NOW
    )

    assert _by_service()["netflix"].status == "active"
