"""
Card-Transaction Reconciler.

Merges recurring card activity into email-derived subscriptions and creates
card-only subscriptions where no email counterpart exists:

1. Normalize merchants; drop one-off and money-movement merchants,
   pending and non-positive transactions
2. Group by merchant; bucket by currency + running-average amount tolerance
3. Keep buckets with >= 2 transactions, a known cadence and stable amounts
4. Score the newest bucket against live subscriptions
   (text similarity + bonus, amount within tolerance)
5. Match -> aggregator.apply_card_match
6. No match, span covers one cycle -> aggregator.create_card_subscription
7. Otherwise ignored
8. Email-sourced subscriptions not touched in this pass -> email_only

The reconciler never writes subscription rows itself.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from subtrack.cards.cadence import (
    AmountBucket,
    CardTransaction,
    bucket_transactions,
    infer_cadence,
    is_stable,
    span_covers_cycle,
    span_days,
)
from subtrack.cards.merchant import (
    amounts_match,
    is_likely_subscription_merchant,
    is_one_off_merchant,
    normalize_merchant,
    text_similarity,
)
from subtrack.config import CARD_AMOUNT_MATCH_TOLERANCE, CARD_MATCH_BONUS, CARD_MIN_SIMILARITY
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, log_event
from subtrack.subscriptions import aggregator
from subtrack.subscriptions.aggregator import CardEvidence
from subtrack.subscriptions.models import RECURRING_CYCLES, Subscription, utc_now
from subtrack.subscriptions.repository import SubscriptionRepository

logger = get_logger(__name__)


@dataclass
class ReconcileSummary:
    matched: int = 0
    created: int = 0
    updated: int = 0
    ignored: int = 0


@dataclass
class CandidateBucket:
    merchant: str  # normalized
    display_merchant: str  # original string of the newest transaction
    cycle: str
    transactions: list[CardTransaction]  # newest first

    @property
    def latest(self) -> CardTransaction:
        return self.transactions[0]

    def to_evidence(self) -> CardEvidence:
        return CardEvidence(
            merchant=self.display_merchant,
            currency=self.latest.currency,
            billing_cycle=self.cycle,
            transactions=[(t.transaction_id, t.amount, t.date) for t in self.transactions],
        )


def group_by_merchant(transactions: Iterable[CardTransaction]) -> dict[str, list[CardTransaction]]:
    """Settled, positive transactions of plausible subscription merchants, keyed by normalized merchant."""
    groups: dict[str, list[CardTransaction]] = defaultdict(list)
    for tx in transactions:
        if tx.pending or tx.amount <= 0 or tx.date is None:
            continue
        merchant = normalize_merchant(tx.merchant)
        if not is_likely_subscription_merchant(merchant):
            continue
        groups[merchant].append(tx)
    return groups


def _qualifies(bucket: AmountBucket) -> tuple[str, list[CardTransaction]] | None:
    txs = bucket.newest_first()
    if len(txs) < 2:
        return None
    cycle = infer_cadence([t.date for t in txs])
    if cycle not in RECURRING_CYCLES:
        return None
    if not is_stable([t.amount for t in txs]):
        return None
    return cycle, txs


def select_candidate(merchant: str, transactions: list[CardTransaction]) -> CandidateBucket | None:
    """Most recent qualifying bucket for one merchant, or None."""
    candidates = []
    for bucket in bucket_transactions(transactions):
        qualified = _qualifies(bucket)
        if qualified:
            cycle, txs = qualified
            candidates.append(CandidateBucket(merchant, txs[0].merchant or merchant, cycle, txs))
    if not candidates:
        return None
    return max(candidates, key=lambda c: c.latest.date)


def best_match(candidate: CandidateBucket, subscriptions: list[Subscription]) -> tuple[Subscription, float] | None:
    """
    Highest-scoring eligible subscription.

    `subscriptions` must be ordered oldest first: only a strictly greater
    score replaces the current best, so ties go to the earlier-created one.
    """
    best: Subscription | None = None
    best_score = 0.0
    amount = candidate.latest.amount

    for subscription in subscriptions:
        similarity = text_similarity(candidate.merchant, normalize_merchant(subscription.service_normalized))
        if similarity < CARD_MIN_SIMILARITY:
            continue
        if not amounts_match(amount, subscription.best_known_amount(), CARD_AMOUNT_MATCH_TOLERANCE):
            continue
        score = similarity + CARD_MATCH_BONUS
        if score > best_score:
            best, best_score = subscription, score

    return (best, best_score) if best else None


def reconcile_card_transactions(
    user_id: str,
    transactions: Iterable[CardTransaction],
    now: datetime | None = None,
) -> ReconcileSummary:
    """
    Merge a user's card transactions into their subscriptions.

    Args:
        user_id: Owner of the transactions
        transactions: Stored card transactions (any order)
        now: Reference time for logging

    Returns:
        ReconcileSummary{matched, created, updated, ignored}
    """
    now = now or utc_now()
    summary = ReconcileSummary()
    touched: set[str] = set()

    groups = group_by_merchant(transactions)
    if not groups:
        return summary

    subscriptions = SubscriptionRepository.list_by_user(user_id, limit=10_000)

    for merchant, txs in groups.items():
        if is_one_off_merchant(merchant):
            logger.info("Card merchant rejected merchant=%s reason=one_off_pattern", merchant)
            counter("cards.reconcile.one_off")
            summary.ignored += 1
            continue

        candidate = select_candidate(merchant, txs)
        if candidate is None:
            logger.info("Card merchant rejected merchant=%s reason=no_cadence_or_amount_stability", merchant)
            summary.ignored += 1
            continue

        match = best_match(candidate, subscriptions)
        if match:
            subscription, score = match
            updated = aggregator.apply_card_match(user_id, subscription.id, candidate.to_evidence())
            if updated is not None:
                touched.add(updated.id)
                summary.matched += 1
                summary.updated += 1
                log_event(
                    "cards.reconcile.matched",
                    subscription=updated.id,
                    score=round(min(1.0, score), 3),
                    cycle=candidate.cycle,
                )
                continue

        dates = [t.date for t in candidate.transactions]
        if span_covers_cycle(candidate.cycle, span_days(dates)):
            created = aggregator.create_card_subscription(user_id, candidate.to_evidence())
            if created is not None:
                touched.add(created.id)
                subscriptions.append(created)
                summary.created += 1
                log_event(
                    "cards.reconcile.created",
                    subscription=created.id,
                    cycle=candidate.cycle,
                    occurrences=len(candidate.transactions),
                )
                continue

        summary.ignored += 1
        logger.debug("Card merchant %s ignored: no match and insufficient recurrence", merchant)

    aggregator.mark_email_only(user_id, touched)
    log_event(
        "cards.reconcile.complete",
        user=user_id,
        matched=summary.matched,
        created=summary.created,
        ignored=summary.ignored,
        at=now.date(),
    )
    return summary
