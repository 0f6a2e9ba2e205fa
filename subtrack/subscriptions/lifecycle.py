"""
Lifecycle Sweeper.

Absence of an expected renewal is itself a cancellation signal: a recurring
subscription whose last charge is older than one cycle plus a grace window is
auto-canceled. One-time purchases are marked expired. Runs after each scan and
card sync; all writes go through the aggregator.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from subtrack.config import AUTO_CANCEL_REASON, LIFECYCLE_CYCLE_DAYS, LIFECYCLE_GRACE_DAYS
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import log_event
from subtrack.subscriptions import aggregator
from subtrack.subscriptions.models import BillingCycle, SubscriptionStatus, utc_now
from subtrack.subscriptions.repository import SubscriptionRepository

logger = get_logger(__name__)

PRESUMED_ACTIVE = frozenset(
    {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.TRIAL.value,
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.ON_HOLD.value,
        SubscriptionStatus.UNKNOWN.value,
    }
)


@dataclass
class SweepSummary:
    canceled: int = 0
    expired: int = 0


def renewal_deadline(cycle: str, last_charge_at: datetime) -> datetime | None:
    """last_charge_at + one cycle + grace, or None for non-recurring cycles."""
    if cycle not in LIFECYCLE_CYCLE_DAYS:
        return None
    return last_charge_at + timedelta(days=LIFECYCLE_CYCLE_DAYS[cycle] + LIFECYCLE_GRACE_DAYS[cycle])


def sweep_subscriptions(user_id: str, now: datetime | None = None) -> SweepSummary:
    """
    Auto-cancel lapsed recurring subscriptions and expire one-time ones.

    Args:
        user_id: Owner of the subscriptions to sweep
        now: Reference time (defaults to current UTC time)
    """
    now = now or utc_now()
    summary = SweepSummary()

    for subscription in SubscriptionRepository.list_by_user(user_id, limit=10_000):
        cycle = subscription.billing_cycle

        if cycle == BillingCycle.ONE_TIME.value:
            if subscription.status != SubscriptionStatus.EXPIRED.value:
                if aggregator.expire_one_time(user_id, subscription.id):
                    summary.expired += 1
            continue

        if subscription.status not in PRESUMED_ACTIVE or subscription.last_charge_at is None:
            continue

        deadline = renewal_deadline(cycle, subscription.last_charge_at)
        if deadline is None or deadline >= now:
            continue

        if aggregator.auto_cancel(user_id, subscription.id, AUTO_CANCEL_REASON):
            summary.canceled += 1
            logger.info(
                "Auto-canceled subscription %s (%s): last charge %s",
                subscription.id,
                cycle,
                subscription.last_charge_at.date(),
            )

    if summary.canceled or summary.expired:
        log_event("lifecycle.sweep", user=user_id, canceled=summary.canceled, expired=summary.expired)
    return summary
