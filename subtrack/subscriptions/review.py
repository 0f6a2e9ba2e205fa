"""
Review Resolution - human decisions on low-confidence billing candidates.

verify:  final fields (edits over extracted) -> aggregator.apply_charge
decline: discard, remember the decline for the sender domain

Both decisions feed MerchantRuleRepository so later messages from the same
domain get a confidence boost (or penalty) in the extraction pipeline.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from subtrack.errors import ReviewItemNotFoundError, ReviewValidationError
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, log_event
from subtrack.subscriptions import aggregator
from subtrack.subscriptions.aggregator import ApplyOutcome
from subtrack.subscriptions.models import (
    BillingCycle,
    ChargeCreate,
    PendingSuggestion,
    ReviewDecision,
    Subscription,
    SubscriptionSource,
    utc_now,
)
from subtrack.subscriptions.repository import (
    IgnoredSenderRepository,
    MerchantRuleRepository,
    PendingSuggestionRepository,
)
from subtrack.subscriptions.types import SignalKind

logger = get_logger(__name__)


class ReviewEdits(BaseModel):
    """Fields a reviewer may override before verifying an item."""

    model_config = ConfigDict(use_enum_values=True)

    service: str | None = None
    amount: float | None = None
    currency: str | None = None
    billing_cycle: BillingCycle | None = None
    category: str | None = None
    charged_at: datetime | None = None

    @field_validator("amount")
    @classmethod
    def amount_not_negative(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            raise ValueError("amount cannot be negative")
        return v

    def overrides(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, mode="json")


def _sender_domain(sender: str) -> str:
    _, _, domain = (sender or "").rpartition("@")
    return domain.strip(" >").lower()


def _pending_item(user_id: str, item_id: str) -> PendingSuggestion:
    item = PendingSuggestionRepository.get_by_id(user_id, item_id)
    if item is None or item.decision != ReviewDecision.PENDING.value:
        raise ReviewItemNotFoundError(f"review item {item_id} not found")
    return item


def next_review_item(user_id: str) -> PendingSuggestion | None:
    """Highest confidence level first, newest first within a level."""
    return PendingSuggestionRepository.next_pending(user_id)


def list_review_items(
    user_id: str,
    decision: ReviewDecision | str = ReviewDecision.PENDING,
    level: int | None = None,
    limit: int = 100,
) -> list[PendingSuggestion]:
    return PendingSuggestionRepository.list_by_user(
        user_id, decision=ReviewDecision(decision).value, level=level, limit=limit
    )


def verify_review_item(
    user_id: str,
    item_id: str,
    edits: ReviewEdits | None = None,
    always_ignore_sender: bool = False,
) -> Subscription | None:
    """
    Promote a review item into the ledger.

    Args:
        user_id: Owner of the item
        item_id: Review item id
        edits: Reviewer overrides; unset fields fall back to the extracted values
        always_ignore_sender: Also stop scanning this sender in future scans

    Returns:
        The created or updated subscription, or None for a one-time purchase

    Raises:
        ReviewItemNotFoundError: Unknown or already-decided item
        ReviewValidationError: No service name or a non-positive amount after edits
    """
    item = _pending_item(user_id, item_id)
    overrides = (edits or ReviewEdits()).overrides()

    service = (overrides.get("service") or item.service or "").strip()
    amount = float(overrides.get("amount", item.amount) or 0.0)
    if not service:
        raise ReviewValidationError("service is required to verify a review item")
    if amount <= 0:
        raise ReviewValidationError("amount must be positive to verify a review item")

    event = ChargeCreate(
        user_id=user_id,
        service=service,
        amount=amount,
        currency=overrides.get("currency") or item.currency,
        billing_cycle=overrides.get("billing_cycle") or item.billing_cycle,
        charged_at=edits.charged_at if edits and edits.charged_at else (item.charged_at or utc_now()),
        category=overrides.get("category") or item.category,
        source_message_id=item.source_message_id,
        source=SubscriptionSource.REVIEW,
        subject=item.subject[:200],
        sender=item.sender,
    )

    # Item stays pending if the charge fails; a retry dedupes by message id
    result = aggregator.apply_charge(event)

    if not PendingSuggestionRepository.decide(user_id, item_id, ReviewDecision.VERIFIED, overrides or None):
        # Another request decided it first
        raise ReviewItemNotFoundError(f"review item {item_id} not found")

    domain = _sender_domain(item.sender)
    if always_ignore_sender and item.sender:
        IgnoredSenderRepository.add(user_id, item.sender)
    if domain:
        MerchantRuleRepository.record_verified(
            user_id,
            domain,
            kind=SignalKind.BILLING_EVENT.value,
            service=service,
            category=event.category,
        )

    counter("review.verified")
    log_event("review.verified", item=item_id, outcome=result.outcome.value)
    if result.outcome == ApplyOutcome.DUPLICATE:
        logger.info("Review item %s was already in the ledger", item_id)
    return result.subscription


def decline_review_item(user_id: str, item_id: str, always_ignore_sender: bool = False) -> None:
    """Discard a review item and remember the decline for its sender domain."""
    item = _pending_item(user_id, item_id)
    if not PendingSuggestionRepository.decide(user_id, item_id, ReviewDecision.DECLINED):
        raise ReviewItemNotFoundError(f"review item {item_id} not found")

    if always_ignore_sender and item.sender:
        IgnoredSenderRepository.add(user_id, item.sender)
    domain = _sender_domain(item.sender)
    if domain:
        MerchantRuleRepository.record_declined(user_id, domain)

    counter("review.declined")
    log_event("review.declined", item=item_id, ignore_sender=always_ignore_sender)
