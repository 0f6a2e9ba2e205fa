from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from subtrack.errors import ReviewItemNotFoundError, ReviewValidationError
from subtrack.subscriptions import aggregator
from subtrack.subscriptions.ledger import ChargeRepository
from subtrack.subscriptions.models import PendingSuggestion
from subtrack.subscriptions.repository import (
    IgnoredSenderRepository,
    MerchantRuleRepository,
    PendingSuggestionRepository,
    SubscriptionRepository,
)
from subtrack.subscriptions.review import (
    ReviewEdits,
    decline_review_item,
    list_review_items,
    next_review_item,
    verify_review_item,
)

CHARGED = datetime(2025, 6, 3, tzinfo=UTC)


def _item(item_id: str = "r1", level: int = 3, **overrides) -> PendingSuggestion:
    data = {
        "id": item_id,
        "user_id": "u1",
        "source_message_id": f"msg-{item_id}",
        "sender": "billing@calm.com",
        "subject": "Your Calm payment",
        "charged_at": CHARGED,
        "service": "Calm",
        "amount": 14.99,
        "billing_cycle": "monthly",
        "category": "Health",
        "confidence": 0.45,
        "confidence_level": level,
    }
    data.update(overrides)
    suggestion = PendingSuggestion(**data)
    assert PendingSuggestionRepository.create(suggestion)
    return suggestion


def test_next_item_prefers_higher_confidence_level(temp_db):
    _item("low", level=2)
    _item("high", level=4)

    assert next_review_item("u1").id == "high"
    assert [i.id for i in list_review_items("u1")] == ["high", "low"]
    assert [i.id for i in list_review_items("u1", level=2)] == ["low"]


def test_duplicate_message_is_not_queued_twice(temp_db):
    _item("r1")
    assert not PendingSuggestionRepository.create(
        PendingSuggestion(id="r2", user_id="u1", source_message_id="msg-r1")
    )
    assert PendingSuggestionRepository.count_pending("u1") == 1


def test_verify_with_edits_creates_subscription(temp_db):
    _item("r1")

    edits = ReviewEdits(service="Calm Premium", amount=69.99, billing_cycle="yearly")
    subscription = verify_review_item("u1", "r1", edits)

    assert subscription.display_service == "Calm Premium"
    assert subscription.source == "review"
    assert subscription.billing_cycle == "yearly"
    assert subscription.estimated_monthly_spend == pytest.approx(69.99 / 12, abs=0.01)
    [charge] = ChargeRepository.list_by_user("u1")
    assert charge.source_message_id == "msg-r1"

    decided = PendingSuggestionRepository.get_by_id("u1", "r1")
    assert decided.decision == "verified"
    assert decided.edited_fields["service"] == "Calm Premium"

    rule = MerchantRuleRepository.get("u1", "calm.com")
    assert rule.verified_count == 1
    assert rule.default_service == "Calm Premium"


def test_verify_without_edits_uses_extracted_fields(temp_db):
    _item("r1")

    subscription = verify_review_item("u1", "r1")

    assert subscription.service_normalized == "calm"
    assert subscription.amount == pytest.approx(14.99)
    assert subscription.last_charge_at == CHARGED
    assert PendingSuggestionRepository.get_by_id("u1", "r1").edited_fields is None


def test_decided_item_cannot_be_decided_again(temp_db):
    _item("r1")
    verify_review_item("u1", "r1")

    with pytest.raises(ReviewItemNotFoundError):
        verify_review_item("u1", "r1")
    with pytest.raises(ReviewItemNotFoundError):
        decline_review_item("u1", "r1")


def test_unknown_item_or_other_user(temp_db):
    _item("r1")
    with pytest.raises(ReviewItemNotFoundError):
        verify_review_item("u1", "missing")
    with pytest.raises(ReviewItemNotFoundError):
        verify_review_item("someone-else", "r1")


def test_non_positive_amount_is_rejected(temp_db):
    _item("r1", amount=0.0)

    with pytest.raises(ReviewValidationError):
        verify_review_item("u1", "r1")
    with pytest.raises(ReviewValidationError):
        verify_review_item("u1", "r1", ReviewEdits(amount=0))

    # Still pending after a rejected verify
    assert PendingSuggestionRepository.get_by_id("u1", "r1").decision == "pending"
    assert SubscriptionRepository.list_by_user("u1") == []


def test_missing_service_is_rejected(temp_db):
    _item("r1", service=None)

    with pytest.raises(ReviewValidationError):
        verify_review_item("u1", "r1")
    assert verify_review_item("u1", "r1", ReviewEdits(service="Calm")).service_normalized == "calm"


def test_failed_charge_leaves_item_pending_for_retry(temp_db, monkeypatch):
    _item("r1")
    real_apply = aggregator.apply_charge

    def locked_out(event):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(aggregator, "apply_charge", locked_out)
    with pytest.raises(RuntimeError):
        verify_review_item("u1", "r1")

    assert PendingSuggestionRepository.get_by_id("u1", "r1").decision == "pending"
    assert ChargeRepository.list_by_user("u1") == []

    monkeypatch.setattr(aggregator, "apply_charge", real_apply)
    subscription = verify_review_item("u1", "r1")

    assert subscription.total_charges == 1
    assert PendingSuggestionRepository.get_by_id("u1", "r1").decision == "verified"


def test_negative_edit_amount_fails_validation():
    with pytest.raises(ValidationError):
        ReviewEdits(amount=-5)


def test_decline_records_rule_and_ignores_sender(temp_db):
    _item("r1")

    decline_review_item("u1", "r1", always_ignore_sender=True)

    assert PendingSuggestionRepository.get_by_id("u1", "r1").decision == "declined"
    assert PendingSuggestionRepository.count_pending("u1") == 0
    assert IgnoredSenderRepository.is_ignored("u1", "billing@calm.com")
    assert MerchantRuleRepository.get("u1", "calm.com").declined_count == 1
    assert SubscriptionRepository.list_by_user("u1") == []
