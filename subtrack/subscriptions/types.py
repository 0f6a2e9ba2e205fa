"""
Module: types
Purpose: Shared pipeline types for billing-signal extraction and routing.
Dependencies: subtrack.subscriptions.models (enums only)

Extractor output is validated here into a tagged union
(BillingEvent | StatusEvent | NonBilling) so downstream code never branches on
ad-hoc field presence.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from subtrack.subscriptions.models import BillingCycle

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------


class SignalKind(str, Enum):
    BILLING_EVENT = "billing_event"  # Confirmed, amount-bearing charge
    STATUS_EVENT = "status_event"  # Failure, hold, trial, cancellation
    MARKETING = "marketing"
    NEWSLETTER = "newsletter"
    OTHER = "other"


NON_BILLING_KINDS = frozenset(
    {SignalKind.MARKETING.value, SignalKind.NEWSLETTER.value, SignalKind.OTHER.value}
)


class StatusEventType(str, Enum):
    PAYMENT_FAILED = "payment_failed"
    ON_HOLD = "on_hold"
    CANCELED = "canceled"
    TRIAL_STARTED = "trial_started"
    TRIAL_OFFER = "trial_offer"
    RENEWAL_REMINDER = "renewal_reminder"
    CARD_EXPIRING = "card_expiring"
    PLAN_CHANGED = "plan_changed"
    REACTIVATED = "reactivated"


CATEGORIES = (
    "Streaming",
    "Music",
    "Gaming",
    "Productivity",
    "Cloud",
    "Finance",
    "Fitness",
    "Retail",
    "Food",
    "Other",
)

_CYCLES = {c.value for c in BillingCycle}
_STATUS_TYPES = {s.value for s in StatusEventType}
_KINDS = {k.value for k in SignalKind}


# ---------------------------------------------------------------------------
# Tagged union (validated extractor output)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BillingEvent:
    service: str | None
    amount: float
    currency: str = "USD"
    billing_cycle: str = BillingCycle.UNKNOWN.value
    category: str = "Other"
    charge_date: datetime | None = None
    confidence: float | None = None
    kind: str = field(default=SignalKind.BILLING_EVENT.value, init=False)


@dataclass(frozen=True)
class StatusEvent:
    service: str | None
    status_event_type: str
    category: str = "Other"
    confidence: float | None = None
    kind: str = field(default=SignalKind.STATUS_EVENT.value, init=False)


@dataclass(frozen=True)
class NonBilling:
    kind: str = SignalKind.OTHER.value
    service: str | None = None
    category: str = "Other"
    confidence: float | None = None


StructuredFields = BillingEvent | StatusEvent | NonBilling


def parse_amount(value: Any) -> float:
    """Coerce an extractor amount ("9,99", "$12.00", 9.99, None) to a float."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, int | float):
        return float(value)
    text = "".join(ch for ch in str(value) if ch.isdigit() or ch in ".,-")
    if not text:
        return 0.0
    # A trailing ",dd" or ".dd" is the decimal part; other separators group thousands
    if len(text) > 3 and text[-3] in ".,":
        text = text[:-3].replace(",", "").replace(".", "") + "." + text[-2:]
    else:
        text = text.replace(",", "")
    try:
        return float(text)
    except ValueError:
        return 0.0


def parse_charge_date(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _clean_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def structured_fields_from_payload(payload: Any) -> StructuredFields:
    """
    Validate a raw extractor JSON object into the tagged union.

    Unknown kinds, cycles, categories and status types default to their
    neutral value; a non-dict payload becomes NonBilling("other").
    """
    if not isinstance(payload, dict):
        return NonBilling()

    kind = str(payload.get("kind") or "").strip().lower()
    if kind not in _KINDS:
        kind = SignalKind.OTHER.value

    service = _clean_str(payload.get("service"))
    category = _clean_str(payload.get("category")) or "Other"
    if category not in CATEGORIES:
        category = "Other"

    confidence = payload.get("confidence")
    if isinstance(confidence, int | float) and not isinstance(confidence, bool):
        confidence = max(0.0, min(1.0, float(confidence)))
    else:
        confidence = None

    if kind == SignalKind.BILLING_EVENT.value:
        cycle = str(payload.get("billing_cycle") or "").strip().lower()
        currency = (_clean_str(payload.get("currency")) or "USD").upper()
        return BillingEvent(
            service=service,
            amount=parse_amount(payload.get("amount")),
            currency=currency if len(currency) == 3 else "USD",
            billing_cycle=cycle if cycle in _CYCLES else BillingCycle.UNKNOWN.value,
            category=category,
            charge_date=parse_charge_date(payload.get("charge_date")),
            confidence=confidence,
        )

    if kind == SignalKind.STATUS_EVENT.value:
        status_type = str(payload.get("status_event_type") or "").strip().lower()
        if status_type not in _STATUS_TYPES:
            return NonBilling(kind=SignalKind.OTHER.value, service=service, category=category, confidence=confidence)
        return StatusEvent(
            service=service,
            status_event_type=status_type,
            category=category,
            confidence=confidence,
        )

    return NonBilling(kind=kind, service=service, category=category, confidence=confidence)


# ---------------------------------------------------------------------------
# Flat working record (merged extractor + deterministic parser)
# ---------------------------------------------------------------------------


@dataclass
class ExtractedSignal:
    """
    Structured billing facts for one message:
    {service, category, amount, currency, billing_cycle, kind, status_event_type, charge_date}.
    """

    kind: str = SignalKind.OTHER.value
    service: str | None = None
    category: str = "Other"
    amount: float = 0.0
    currency: str = "USD"
    billing_cycle: str = BillingCycle.UNKNOWN.value
    status_event_type: str | None = None
    charge_date: datetime | None = None
    confidence: float | None = None
    extraction_method: str = "rules"  # "llm" | "rules" | "hybrid"

    @classmethod
    def from_fields(cls, fields: StructuredFields, method: str = "llm") -> ExtractedSignal:
        match fields:
            case BillingEvent():
                return cls(
                    kind=fields.kind,
                    service=fields.service,
                    category=fields.category,
                    amount=fields.amount,
                    currency=fields.currency,
                    billing_cycle=fields.billing_cycle,
                    charge_date=fields.charge_date,
                    confidence=fields.confidence,
                    extraction_method=method,
                )
            case StatusEvent():
                return cls(
                    kind=fields.kind,
                    service=fields.service,
                    category=fields.category,
                    status_event_type=fields.status_event_type,
                    confidence=fields.confidence,
                    extraction_method=method,
                )
            case _:
                return cls(
                    kind=fields.kind,
                    service=fields.service,
                    category=fields.category,
                    confidence=fields.confidence,
                    extraction_method=method,
                )

    def to_fields(self) -> StructuredFields:
        if self.kind == SignalKind.BILLING_EVENT.value:
            return BillingEvent(
                service=self.service,
                amount=self.amount,
                currency=self.currency,
                billing_cycle=self.billing_cycle,
                category=self.category,
                charge_date=self.charge_date,
                confidence=self.confidence,
            )
        if self.kind == SignalKind.STATUS_EVENT.value and self.status_event_type:
            return StatusEvent(
                service=self.service,
                status_event_type=self.status_event_type,
                category=self.category,
                confidence=self.confidence,
            )
        kind = self.kind if self.kind in NON_BILLING_KINDS else SignalKind.OTHER.value
        return NonBilling(kind=kind, service=self.service, category=self.category, confidence=self.confidence)

    def with_changes(self, **changes: Any) -> ExtractedSignal:
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "service": self.service,
            "category": self.category,
            "amount": self.amount,
            "currency": self.currency,
            "billing_cycle": self.billing_cycle,
            "status_event_type": self.status_event_type,
            "charge_date": self.charge_date.isoformat() if self.charge_date else None,
            "confidence": self.confidence,
            "extraction_method": self.extraction_method,
        }


# ---------------------------------------------------------------------------
# Per-message outcome (from pipeline.py)
# ---------------------------------------------------------------------------


class MessageOutcome(str, Enum):
    """Where a single message ended up."""

    CHARGE_CREATED = "charge_created"
    DUPLICATE = "duplicate"
    RECORDED_ONLY = "recorded_only"  # One-time / unknown cycle: ledger only
    STATUS_APPLIED = "status_applied"
    STATUS_DROPPED = "status_dropped"  # No subscription to apply it to
    PENDING_REVIEW = "pending_review"
    SKIPPED = "skipped"


@dataclass
class PipelineResult:
    outcome: MessageOutcome
    reason: str = ""
    signal: ExtractedSignal | None = None
    subscription_id: str | None = None

    @property
    def created_charge(self) -> bool:
        return self.outcome in (MessageOutcome.CHARGE_CREATED, MessageOutcome.RECORDED_ONLY)

    @classmethod
    def skipped(cls, reason: str, signal: ExtractedSignal | None = None) -> PipelineResult:
        return cls(outcome=MessageOutcome.SKIPPED, reason=reason, signal=signal)
