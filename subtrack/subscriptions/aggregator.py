"""
Subscription Aggregator - the only writer of Subscription rows.

Every entry point takes the per-key lock for (user_id, service_normalized)
and performs its whole read-modify-write inside one db_transaction(), so
concurrent ingestion workers, the card reconciler, review resolution and the
lifecycle sweeper never lose updates to totals or status.

Status transitions:
    active            -> past_due | on_hold | canceled | trial
    trial             -> active | past_due | on_hold | canceled
    past_due, on_hold -> active | canceled | past_due | on_hold
    canceled          -> active (new charge or reactivation)
    unknown           -> any
    expired           (terminal, one-time purchases)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from subtrack.config import AUTO_CANCEL_REASON, DEFAULT_CURRENCY
from subtrack.infrastructure.database import db_transaction, retry_on_db_lock
from subtrack.infrastructure.locks import subscription_locks
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, log_event
from subtrack.subscriptions.billing_dates import compute_monthly_amount, compute_next_renewal
from subtrack.subscriptions.ledger import ChargeRepository, new_charge
from subtrack.subscriptions.models import (
    RECURRING_CYCLES,
    BillingCycle,
    Charge,
    ChargeCreate,
    ChargeKind,
    SourceConfidence,
    Subscription,
    SubscriptionSource,
    SubscriptionStatus,
    normalize_service,
    utc_now,
)
from subtrack.subscriptions.repository import SubscriptionRepository
from subtrack.subscriptions.types import StatusEventType

logger = get_logger(__name__)

# Incoming charge events share the aggregator input model
ChargeEvent = ChargeCreate

_S = SubscriptionStatus

TRANSITIONS: dict[str, frozenset[str]] = {
    _S.ACTIVE.value: frozenset({_S.PAST_DUE.value, _S.ON_HOLD.value, _S.CANCELED.value, _S.TRIAL.value}),
    _S.TRIAL.value: frozenset({_S.ACTIVE.value, _S.PAST_DUE.value, _S.ON_HOLD.value, _S.CANCELED.value}),
    _S.PAST_DUE.value: frozenset({_S.ACTIVE.value, _S.CANCELED.value, _S.PAST_DUE.value, _S.ON_HOLD.value}),
    _S.ON_HOLD.value: frozenset({_S.ACTIVE.value, _S.CANCELED.value, _S.PAST_DUE.value, _S.ON_HOLD.value}),
    _S.CANCELED.value: frozenset({_S.ACTIVE.value}),
    _S.UNKNOWN.value: frozenset(s.value for s in SubscriptionStatus),
    _S.EXPIRED.value: frozenset(),
}

STATUS_EVENT_TARGETS: dict[str, str] = {
    StatusEventType.PAYMENT_FAILED.value: _S.PAST_DUE.value,
    StatusEventType.ON_HOLD.value: _S.ON_HOLD.value,
    StatusEventType.CANCELED.value: _S.CANCELED.value,
    StatusEventType.TRIAL_STARTED.value: _S.TRIAL.value,
    StatusEventType.TRIAL_OFFER.value: _S.TRIAL.value,
    StatusEventType.REACTIVATED.value: _S.ACTIVE.value,
}


def can_transition(from_status: str, to_status: str) -> bool:
    """Whether the state machine allows from_status -> to_status."""
    if from_status == _S.EXPIRED.value:
        return False
    if to_status == _S.CANCELED.value:
        return True
    return to_status in TRANSITIONS.get(from_status, frozenset())


class ApplyOutcome(str, Enum):
    CREATED = "created"  # New subscription
    UPDATED = "updated"
    RECORDED_ONLY = "recorded_only"  # Ledger only (one-time / unknown cycle)
    DUPLICATE = "duplicate"


@dataclass
class ChargeApplyResult:
    outcome: ApplyOutcome
    subscription: Subscription | None = None
    charge: Charge | None = None

    @property
    def recorded(self) -> bool:
        return self.outcome != ApplyOutcome.DUPLICATE


@dataclass
class CardEvidence:
    """Recurring card activity for one merchant bucket, newest transaction first."""

    merchant: str
    currency: str
    billing_cycle: str
    transactions: list[tuple[str, float, datetime]] = field(default_factory=list)  # (id, amount, date)

    @property
    def latest(self) -> tuple[str, float, datetime]:
        return self.transactions[0]


def _source_confidence(source: str) -> str:
    if source == SubscriptionSource.CARD.value:
        return SourceConfidence.CARD_ONLY.value
    if source == SubscriptionSource.EMAIL_AND_CARD.value:
        return SourceConfidence.EMAIL_AND_CARD.value
    return SourceConfidence.EMAIL_ONLY.value


def _move_to(subscription: Subscription, target: str) -> bool:
    if subscription.status == target:
        return False
    if not can_transition(subscription.status, target):
        logger.debug(
            "Transition %s -> %s not allowed for subscription %s",
            subscription.status,
            target,
            subscription.id,
        )
        return False
    subscription.status = target
    return True


def _accumulate(subscription: Subscription, amount: float, charged_at: datetime, cycle: str) -> None:
    """Fold one charge into totals and recompute latest-charge derived fields."""
    subscription.total_charges += 1
    subscription.total_amount = round(subscription.total_amount + amount, 2)

    if subscription.first_charge_at is None or charged_at < subscription.first_charge_at:
        subscription.first_charge_at = charged_at

    if subscription.last_charge_at is None or charged_at >= subscription.last_charge_at:
        subscription.last_charge_at = charged_at
        subscription.amount = amount
        if cycle in RECURRING_CYCLES:
            subscription.billing_cycle = cycle

    effective_cycle = subscription.billing_cycle
    subscription.monthly_amount = compute_monthly_amount(effective_cycle, subscription.amount)
    subscription.estimated_monthly_spend = subscription.monthly_amount
    subscription.next_renewal = compute_next_renewal(effective_cycle, subscription.last_charge_at)


def _revive(subscription: Subscription) -> None:
    """A confirmed charge moves status toward active and clears auto-cancel."""
    _move_to(subscription, _S.ACTIVE.value)
    subscription.auto_canceled = False
    subscription.auto_canceled_reason = None


# ---------------------------------------------------------------------------
# Charges
# ---------------------------------------------------------------------------


def apply_charge(event: ChargeEvent) -> ChargeApplyResult:
    """
    Record one confirmed charge and fold it into its subscription.

    Idempotent by source id: a second call for the same message or
    transaction returns DUPLICATE and changes nothing.
    """
    key = (event.user_id, normalize_service(event.service))
    with subscription_locks.hold(key):
        result = _apply_charge_locked(event, key[1])

    counter(f"aggregator.charge.{result.outcome.value}")
    return result


@retry_on_db_lock()
def _apply_charge_locked(event: ChargeEvent, service_normalized: str) -> ChargeApplyResult:
    cycle = event.billing_cycle
    monthly = compute_monthly_amount(cycle, event.amount)

    with db_transaction() as conn:
        if cycle not in RECURRING_CYCLES or monthly <= 0:
            charge = new_charge(event, kind=ChargeKind.ONE_TIME)
            if not ChargeRepository.record(conn, charge):
                return ChargeApplyResult(ApplyOutcome.DUPLICATE)
            return ChargeApplyResult(ApplyOutcome.RECORDED_ONLY, charge=charge)

        subscription = SubscriptionRepository.get_live_by_service(conn, event.user_id, service_normalized)
        subscription_id = subscription.id if subscription else str(uuid.uuid4())

        charge = new_charge(event, subscription_id=subscription_id)
        if not ChargeRepository.record(conn, charge):
            return ChargeApplyResult(ApplyOutcome.DUPLICATE, subscription=subscription)

        if subscription is None:
            now = utc_now()
            subscription = Subscription(
                id=subscription_id,
                user_id=event.user_id,
                service_normalized=service_normalized,
                display_service=event.service,
                category=event.category,
                currency=event.currency or DEFAULT_CURRENCY,
                billing_cycle=cycle,
                status=_S.ACTIVE,
                source=event.source,
                source_confidence=_source_confidence(event.source),
                card_linked=event.source in (SubscriptionSource.CARD.value, SubscriptionSource.EMAIL_AND_CARD.value),
                first_detected_at=now,
                created_at=now,
                updated_at=now,
            )
            _accumulate(subscription, event.amount, event.charged_at, cycle)
            SubscriptionRepository.insert(conn, subscription)
            outcome = ApplyOutcome.CREATED
        else:
            if subscription.category == "Other" and event.category != "Other":
                subscription.category = event.category
            _accumulate(subscription, event.amount, event.charged_at, cycle)
            _revive(subscription)
            SubscriptionRepository.update(conn, subscription)
            outcome = ApplyOutcome.UPDATED

    log_event(
        "aggregator.charge_applied",
        subscription=subscription.id,
        outcome=outcome.value,
        cycle=cycle,
    )
    return ChargeApplyResult(outcome, subscription=subscription, charge=charge)


# ---------------------------------------------------------------------------
# Status events
# ---------------------------------------------------------------------------


def apply_status_event(user_id: str, service: str, status_event_type: str) -> Subscription | None:
    """
    Apply a status-event extraction to an existing subscription.

    Returns:
        The subscription (changed or not), or None when no subscription exists
        for the service (the event is dropped, never creates one)
    """
    service_normalized = normalize_service(service)
    if not service_normalized:
        return None

    with subscription_locks.hold((user_id, service_normalized)):
        return _apply_status_locked(user_id, service_normalized, status_event_type)


@retry_on_db_lock()
def _apply_status_locked(user_id: str, service_normalized: str, status_event_type: str) -> Subscription | None:
    with db_transaction() as conn:
        subscription = SubscriptionRepository.get_live_by_service(conn, user_id, service_normalized)
        if subscription is None:
            counter("aggregator.status.dropped")
            logger.info("Status event %s dropped: no subscription for user %s", status_event_type, user_id)
            return None

        target = STATUS_EVENT_TARGETS.get(status_event_type)
        if target is None:
            counter("aggregator.status.noop")
            return subscription

        if target == _S.TRIAL.value and subscription.status == _S.ACTIVE.value:
            return subscription

        previous = subscription.status
        if not _move_to(subscription, target):
            return subscription

        if target == _S.ACTIVE.value:
            subscription.auto_canceled = False
            subscription.auto_canceled_reason = None
        SubscriptionRepository.update(conn, subscription)

    counter("aggregator.status.applied")
    log_event(
        "aggregator.status_applied",
        subscription=subscription.id,
        event=status_event_type,
        from_status=previous,
        to_status=target,
    )
    return subscription


# ---------------------------------------------------------------------------
# Card reconciliation
# ---------------------------------------------------------------------------


def apply_card_match(user_id: str, subscription_id: str, evidence: CardEvidence) -> Subscription | None:
    """
    Corroborate an existing subscription with recurring card activity.

    Totals only grow when the latest transaction was not applied before.
    """
    current = SubscriptionRepository.get_by_id(user_id, subscription_id)
    if current is None or current.deleted_at is not None:
        return None

    with subscription_locks.hold((user_id, current.service_normalized)):
        return _apply_card_match_locked(user_id, subscription_id, evidence)


@retry_on_db_lock()
def _apply_card_match_locked(user_id: str, subscription_id: str, evidence: CardEvidence) -> Subscription | None:
    tx_id, amount, tx_date = evidence.latest

    with db_transaction() as conn:
        subscription = SubscriptionRepository.get_by_id(user_id, subscription_id, conn=conn)
        if subscription is None or subscription.deleted_at is not None:
            return None

        subscription.confirmed_amount = amount
        if subscription.confirmed_billing_cycle in (None, BillingCycle.UNKNOWN.value):
            subscription.confirmed_billing_cycle = evidence.billing_cycle
        if subscription.billing_cycle == BillingCycle.UNKNOWN.value:
            subscription.billing_cycle = evidence.billing_cycle

        already_applied = subscription.last_card_transaction_id == tx_id or ChargeRepository.exists_for_transaction(
            conn, user_id, tx_id
        )
        if not already_applied:
            charge = new_charge(
                ChargeCreate(
                    user_id=user_id,
                    service=subscription.display_service,
                    amount=amount,
                    currency=evidence.currency,
                    billing_cycle=subscription.billing_cycle,
                    charged_at=tx_date,
                    category=subscription.category,
                    source_transaction_id=tx_id,
                    source=SubscriptionSource.CARD,
                ),
                subscription_id=subscription.id,
            )
            if ChargeRepository.record(conn, charge):
                _accumulate(subscription, amount, tx_date, subscription.billing_cycle)
        elif subscription.last_charge_at is None or tx_date > subscription.last_charge_at:
            subscription.last_charge_at = tx_date

        subscription.last_card_transaction_id = tx_id
        subscription.last_card_transaction_at = tx_date
        subscription.source_confidence = SourceConfidence.EMAIL_AND_CARD.value
        subscription.card_linked = True
        _revive(subscription)
        SubscriptionRepository.update(conn, subscription)

    counter("aggregator.card.matched")
    return subscription


def create_card_subscription(user_id: str, evidence: CardEvidence) -> Subscription | None:
    """
    Card-only subscription from a recurring bucket with no email counterpart.

    Every bucket transaction becomes a ledger Charge. Returns None when a live
    subscription for the merchant already exists.
    """
    service_normalized = normalize_service(evidence.merchant)
    with subscription_locks.hold((user_id, service_normalized)):
        return _create_card_locked(user_id, service_normalized, evidence)


@retry_on_db_lock()
def _create_card_locked(user_id: str, service_normalized: str, evidence: CardEvidence) -> Subscription | None:
    with db_transaction() as conn:
        if SubscriptionRepository.get_live_by_service(conn, user_id, service_normalized):
            return None

        now = utc_now()
        subscription = Subscription(
            id=str(uuid.uuid4()),
            user_id=user_id,
            service_normalized=service_normalized,
            display_service=evidence.merchant,
            category="Other",
            currency=evidence.currency,
            billing_cycle=evidence.billing_cycle,
            confirmed_billing_cycle=evidence.billing_cycle,
            status=_S.ACTIVE,
            confirmed_amount=evidence.latest[1],
            source=SubscriptionSource.CARD,
            source_confidence=SourceConfidence.CARD_ONLY,
            card_linked=True,
            last_card_transaction_id=evidence.latest[0],
            last_card_transaction_at=evidence.latest[2],
            first_detected_at=now,
            created_at=now,
            updated_at=now,
        )

        for tx_id, amount, tx_date in evidence.transactions:
            charge = new_charge(
                ChargeCreate(
                    user_id=user_id,
                    service=evidence.merchant,
                    amount=amount,
                    currency=evidence.currency,
                    billing_cycle=evidence.billing_cycle,
                    charged_at=tx_date,
                    source_transaction_id=tx_id,
                    source=SubscriptionSource.CARD,
                ),
                subscription_id=subscription.id,
            )
            if ChargeRepository.record(conn, charge):
                _accumulate(subscription, amount, tx_date, evidence.billing_cycle)

        SubscriptionRepository.insert(conn, subscription)

    counter("aggregator.card.created")
    return subscription


@retry_on_db_lock()
def mark_email_only(user_id: str, touched_ids: set[str]) -> int:
    """Email-sourced subscriptions without card corroboration in this pass -> email_only."""
    with db_transaction() as conn:
        rows = conn.execute(
            """
            SELECT id FROM subscriptions
            WHERE user_id = ? AND deleted_at IS NULL AND source = ? AND source_confidence != ?
            """,
            (user_id, SubscriptionSource.EMAIL.value, SourceConfidence.EMAIL_ONLY.value),
        ).fetchall()
        ids = [row["id"] for row in rows if row["id"] not in touched_ids]
        for subscription_id in ids:
            conn.execute(
                "UPDATE subscriptions SET source_confidence = ?, updated_at = ? WHERE id = ?",
                (SourceConfidence.EMAIL_ONLY.value, utc_now().isoformat(), subscription_id),
            )
    return len(ids)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def auto_cancel(user_id: str, subscription_id: str, reason: str = AUTO_CANCEL_REASON) -> Subscription | None:
    current = SubscriptionRepository.get_by_id(user_id, subscription_id)
    if current is None:
        return None
    with subscription_locks.hold((user_id, current.service_normalized)):
        return _set_terminal_locked(user_id, subscription_id, _S.CANCELED.value, reason)


def expire_one_time(user_id: str, subscription_id: str) -> Subscription | None:
    current = SubscriptionRepository.get_by_id(user_id, subscription_id)
    if current is None:
        return None
    with subscription_locks.hold((user_id, current.service_normalized)):
        return _set_terminal_locked(user_id, subscription_id, _S.EXPIRED.value, None)


@retry_on_db_lock()
def _set_terminal_locked(
    user_id: str,
    subscription_id: str,
    target: str,
    reason: str | None,
) -> Subscription | None:
    with db_transaction() as conn:
        subscription = SubscriptionRepository.get_by_id(user_id, subscription_id, conn=conn)
        if subscription is None or subscription.deleted_at is not None or subscription.status == target:
            return None

        if target == _S.EXPIRED.value:
            # One-time purchases sit outside the recurring state machine
            subscription.status = target
        elif not _move_to(subscription, target):
            return None

        if reason:
            subscription.auto_canceled = True
            subscription.auto_canceled_reason = reason
        SubscriptionRepository.update(conn, subscription)

    log_event("aggregator.lifecycle", subscription=subscription.id, status=target)
    return subscription
