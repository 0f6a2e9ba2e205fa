"""Spend normalization and renewal projection for recurring charges."""

from __future__ import annotations

from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from subtrack.config import WEEKS_PER_MONTH
from subtrack.subscriptions.models import BillingCycle


def compute_monthly_amount(cycle: str | None, amount: float | None) -> float:
    """
    Per-month equivalent of one charge.

    monthly -> amount, yearly -> amount / 12, weekly -> amount * 4.345.
    One-time and unknown cycles have no monthly equivalent (0.0).
    """
    if not amount or amount <= 0:
        return 0.0
    if cycle == BillingCycle.MONTHLY.value:
        return round(amount, 2)
    if cycle == BillingCycle.YEARLY.value:
        return round(amount / 12, 2)
    if cycle == BillingCycle.WEEKLY.value:
        return round(amount * WEEKS_PER_MONTH, 2)
    return 0.0


def compute_next_renewal(cycle: str | None, last_charge_at: datetime | None) -> datetime | None:
    """Projected next charge date from the latest charge, or None for non-recurring cycles."""
    if last_charge_at is None:
        return None
    if cycle == BillingCycle.MONTHLY.value:
        return last_charge_at + relativedelta(months=1)
    if cycle == BillingCycle.YEARLY.value:
        return last_charge_at + relativedelta(years=1)
    if cycle == BillingCycle.WEEKLY.value:
        return last_charge_at + timedelta(days=7)
    return None
