from __future__ import annotations

from datetime import UTC, datetime, timedelta

from conftest import NOW

from subtrack.config import AUTO_CANCEL_REASON
from subtrack.infrastructure.database import db_transaction
from subtrack.subscriptions import aggregator
from subtrack.subscriptions.lifecycle import renewal_deadline, sweep_subscriptions
from subtrack.subscriptions.models import ChargeCreate, Subscription
from subtrack.subscriptions.repository import SubscriptionRepository


def _charge(message_id: str, service: str, charged_at: datetime, cycle: str = "monthly") -> None:
    aggregator.apply_charge(
        ChargeCreate(
            user_id="u1",
            service=service,
            amount=12.0,
            billing_cycle=cycle,
            charged_at=charged_at,
            source_message_id=message_id,
        )
    )


def test_renewal_deadline():
    last = datetime(2025, 1, 1, tzinfo=UTC)
    assert renewal_deadline("weekly", last) == last + timedelta(days=21)
    assert renewal_deadline("monthly", last) == last + timedelta(days=60)
    assert renewal_deadline("yearly", last) == last + timedelta(days=455)
    assert renewal_deadline("unknown", last) is None


def test_lapsed_monthly_subscription_is_auto_canceled(temp_db):
    _charge("m1", "Hulu", NOW - timedelta(days=75))
    _charge("m2", "Spotify", NOW - timedelta(days=20))

    summary = sweep_subscriptions("u1", now=NOW)

    assert summary.canceled == 1
    by_service = {s.service_normalized: s for s in SubscriptionRepository.list_by_user("u1")}
    assert by_service["hulu"].status == "canceled"
    assert by_service["hulu"].auto_canceled is True
    assert by_service["hulu"].auto_canceled_reason == AUTO_CANCEL_REASON
    assert by_service["spotify"].status == "active"


def test_monthly_cancel_boundary(temp_db):
    _charge("m1", "Hulu", NOW - timedelta(days=100))
    _charge("m2", "Spotify", NOW - timedelta(days=40))

    assert sweep_subscriptions("u1", now=NOW).canceled == 1
    by_service = {s.service_normalized: s for s in SubscriptionRepository.list_by_user("u1")}
    assert by_service["hulu"].status == "canceled"
    assert by_service["spotify"].status == "active"
    assert by_service["spotify"].auto_canceled is False


def test_yearly_plan_survives_inside_grace(temp_db):
    _charge("m1", "Notion", NOW - timedelta(days=400), cycle="yearly")

    assert sweep_subscriptions("u1", now=NOW).canceled == 0
    [subscription] = SubscriptionRepository.list_by_user("u1")
    assert subscription.status == "active"


def test_sweep_is_idempotent(temp_db):
    _charge("m1", "Hulu", NOW - timedelta(days=75))

    assert sweep_subscriptions("u1", now=NOW).canceled == 1
    assert sweep_subscriptions("u1", now=NOW).canceled == 0


def test_new_charge_after_auto_cancel_reactivates(temp_db):
    _charge("m1", "Hulu", NOW - timedelta(days=75))
    sweep_subscriptions("u1", now=NOW)

    _charge("m2", "Hulu", NOW)

    [subscription] = SubscriptionRepository.list_by_user("u1")
    assert subscription.status == "active"
    assert subscription.auto_canceled is False
    assert subscription.auto_canceled_reason is None


def test_one_time_subscription_expires(temp_db):
    with db_transaction() as conn:
        SubscriptionRepository.insert(
            conn,
            Subscription(
                id="s-once",
                user_id="u1",
                service_normalized="course",
                display_service="Course",
                billing_cycle="one_time",
                amount=49.0,
                last_charge_at=NOW - timedelta(days=3),
            ),
        )

    summary = sweep_subscriptions("u1", now=NOW)

    assert summary.expired == 1
    assert SubscriptionRepository.get_by_id("u1", "s-once").status == "expired"
