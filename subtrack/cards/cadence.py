"""
Amount bucketing and cadence inference for one merchant's card transactions.

Transactions are bucketed newest first by currency and a running-average
amount tolerance. A bucket never reopens: each transaction joins the first
bucket it fits, in creation order.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from subtrack.config import CARD_BUCKET_TOLERANCE, CARD_STABLE_AMOUNT_TOLERANCE
from subtrack.subscriptions.models import BillingCycle

# Inclusive ranges of average day gap
_CADENCE_RANGES: tuple[tuple[str, int, int], ...] = (
    (BillingCycle.WEEKLY.value, 5, 9),
    (BillingCycle.MONTHLY.value, 20, 40),
    (BillingCycle.YEARLY.value, 330, 400),
)


@dataclass(frozen=True)
class CardTransaction:
    """Stored, normalized card transaction."""

    transaction_id: str
    merchant: str
    amount: float
    date: datetime
    currency: str = "USD"
    pending: bool = False


@dataclass
class AmountBucket:
    currency: str
    ref_amount: float
    transactions: list[CardTransaction] = field(default_factory=list)

    def fits(self, tx: CardTransaction, tolerance: float) -> bool:
        if tx.currency != self.currency:
            return False
        return abs(self.ref_amount - tx.amount) <= max(self.ref_amount, tx.amount) * tolerance

    def add(self, tx: CardTransaction) -> None:
        self.transactions.append(tx)
        count = len(self.transactions)
        self.ref_amount = (self.ref_amount * (count - 1) + tx.amount) / count

    def newest_first(self) -> list[CardTransaction]:
        return sorted(self.transactions, key=lambda t: t.date, reverse=True)


def bucket_transactions(
    transactions: Sequence[CardTransaction],
    tolerance: float = CARD_BUCKET_TOLERANCE,
) -> list[AmountBucket]:
    buckets: list[AmountBucket] = []
    for tx in sorted(transactions, key=lambda t: t.date, reverse=True):
        for bucket in buckets:
            if bucket.fits(tx, tolerance):
                bucket.add(tx)
                break
        else:
            buckets.append(AmountBucket(currency=tx.currency, ref_amount=tx.amount, transactions=[tx]))
    return buckets


def _day_gaps(dates: Sequence[datetime]) -> list[int]:
    ordered = sorted(dates)
    gaps = []
    for prev, cur in zip(ordered, ordered[1:]):
        days = round((cur - prev).total_seconds() / 86400)
        if days > 0:
            gaps.append(days)
    return gaps


def infer_cadence(dates: Sequence[datetime]) -> str:
    """Billing cycle from the average positive day gap, or "unknown"."""
    if len(dates) < 2:
        return BillingCycle.UNKNOWN.value
    gaps = _day_gaps(dates)
    if not gaps:
        return BillingCycle.UNKNOWN.value
    average = sum(gaps) / len(gaps)
    for cycle, low, high in _CADENCE_RANGES:
        if low <= average <= high:
            return cycle
    return BillingCycle.UNKNOWN.value


def is_stable(amounts: Sequence[float], tolerance: float = CARD_STABLE_AMOUNT_TOLERANCE) -> bool:
    """At least two positive amounts, all within tolerance of their mean."""
    positive = [a for a in amounts if a > 0]
    if len(positive) < 2:
        return False
    mean = sum(positive) / len(positive)
    return all(abs(a - mean) <= mean * tolerance for a in positive)


def span_days(dates: Sequence[datetime]) -> float:
    if len(dates) < 2:
        return 0.0
    return abs((max(dates) - min(dates)).total_seconds()) / 86400


def span_covers_cycle(cycle: str, days: float) -> bool:
    """Whether the observed span is long enough to trust the inferred cycle."""
    if cycle == BillingCycle.WEEKLY.value:
        return days >= 5
    if cycle == BillingCycle.MONTHLY.value:
        return 25 <= days <= 40
    if cycle == BillingCycle.YEARLY.value:
        return 330 <= days <= 400
    return False
