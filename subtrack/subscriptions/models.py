"""
Subscription domain models.

A Subscription is the canonical aggregate per (user, normalized service); a
Charge is an immutable ledger entry that evidences it. PendingSuggestion,
MerchantRule and ScanSession carry the review loop and scan progress.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def normalize_service(name: str | None) -> str:
    """Key used for subscription uniqueness: trimmed, lower-cased, single-spaced."""
    if not name:
        return ""
    return " ".join(name.strip().lower().split())


def parse_dt(val: Any) -> datetime | None:
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        parsed = val
    else:
        parsed = datetime.fromisoformat(str(val))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def _enum_value(val: Any) -> Any:
    return val.value if isinstance(val, Enum) else val


class SubscriptionStatus(str, Enum):
    """Lifecycle status; transitions are owned by the aggregator."""

    ACTIVE = "active"
    TRIAL = "trial"
    PAST_DUE = "past_due"  # Payment failed
    ON_HOLD = "on_hold"  # Provider paused the account
    CANCELED = "canceled"  # Explicit cancellation or auto-cancel sweep
    EXPIRED = "expired"  # One-time purchase, terminal
    UNKNOWN = "unknown"


class BillingCycle(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONE_TIME = "one_time"
    UNKNOWN = "unknown"


RECURRING_CYCLES = frozenset({BillingCycle.WEEKLY.value, BillingCycle.MONTHLY.value, BillingCycle.YEARLY.value})


class SourceConfidence(str, Enum):
    """Which evidence streams corroborate a subscription."""

    EMAIL_ONLY = "email_only"
    CARD_ONLY = "card_only"
    EMAIL_AND_CARD = "email+card"


class SubscriptionSource(str, Enum):
    EMAIL = "email"
    CARD = "card"
    EMAIL_AND_CARD = "email+card"
    REVIEW = "review"  # Created by verifying a review item


class ChargeKind(str, Enum):
    SUBSCRIPTION = "subscription"  # Counts toward subscription totals
    ONE_TIME = "one_time"  # Ledger only


class ChargeStatus(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ReviewDecision(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    DECLINED = "declined"


class ScanMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


class ScanStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Subscription(BaseModel):
    """
    Canonical recurring obligation for one user and one normalized service.

    Unique per (user_id, service_normalized) among rows with deleted_at unset.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(..., description="Unique identifier (UUID)")
    user_id: str
    service_normalized: str
    display_service: str
    category: str = "Other"
    currency: str = "USD"
    billing_cycle: BillingCycle = BillingCycle.UNKNOWN
    confirmed_billing_cycle: BillingCycle | None = Field(
        default=None, description="Cycle corroborated by card cadence"
    )
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    amount: float = Field(default=0.0, description="Latest charge amount")
    confirmed_amount: float | None = Field(default=None, description="Latest card-confirmed amount")
    monthly_amount: float = 0.0
    estimated_monthly_spend: float = 0.0
    first_charge_at: datetime | None = None
    last_charge_at: datetime | None = None
    next_renewal: datetime | None = None
    total_charges: int = 0
    total_amount: float = 0.0
    source: SubscriptionSource = SubscriptionSource.EMAIL
    source_confidence: SourceConfidence = SourceConfidence.EMAIL_ONLY
    card_linked: bool = False
    auto_canceled: bool = False
    auto_canceled_reason: str | None = None
    last_card_transaction_id: str | None = None
    last_card_transaction_at: datetime | None = None
    first_detected_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("display_service")
    @classmethod
    def display_service_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("display_service cannot be empty")
        return v.strip()

    def best_known_amount(self) -> float:
        """Amount used to compare card transactions against this subscription."""
        for value in (self.confirmed_amount, self.amount, self.monthly_amount, self.estimated_monthly_spend):
            if value:
                return float(value)
        return 0.0

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "service_normalized": self.service_normalized,
            "display_service": self.display_service,
            "category": self.category,
            "currency": self.currency,
            "billing_cycle": _enum_value(self.billing_cycle),
            "confirmed_billing_cycle": _enum_value(self.confirmed_billing_cycle),
            "status": _enum_value(self.status),
            "amount": self.amount,
            "confirmed_amount": self.confirmed_amount,
            "monthly_amount": self.monthly_amount,
            "estimated_monthly_spend": self.estimated_monthly_spend,
            "first_charge_at": _iso(self.first_charge_at),
            "last_charge_at": _iso(self.last_charge_at),
            "next_renewal": _iso(self.next_renewal),
            "total_charges": self.total_charges,
            "total_amount": self.total_amount,
            "source": _enum_value(self.source),
            "source_confidence": _enum_value(self.source_confidence),
            "card_linked": int(self.card_linked),
            "auto_canceled": int(self.auto_canceled),
            "auto_canceled_reason": self.auto_canceled_reason,
            "last_card_transaction_id": self.last_card_transaction_id,
            "last_card_transaction_at": _iso(self.last_card_transaction_at),
            "first_detected_at": _iso(self.first_detected_at),
            "deleted_at": _iso(self.deleted_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Subscription:
        """Create Subscription from database row."""
        data = dict(row)
        for key in (
            "first_charge_at",
            "last_charge_at",
            "next_renewal",
            "last_card_transaction_at",
            "first_detected_at",
            "deleted_at",
            "created_at",
            "updated_at",
        ):
            data[key] = parse_dt(data.get(key))
        for key in ("first_detected_at", "created_at", "updated_at"):
            if data[key] is None:
                data[key] = utc_now()
        data["card_linked"] = bool(data.get("card_linked"))
        data["auto_canceled"] = bool(data.get("auto_canceled"))
        return cls(**data)


class Charge(BaseModel):
    """Immutable ledger entry for one confirmed monetary event."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    user_id: str
    subscription_id: str | None = None
    service: str
    service_normalized: str
    amount: float
    currency: str = "USD"
    billing_cycle: BillingCycle = BillingCycle.UNKNOWN
    charged_at: datetime
    source_message_id: str | None = None
    source_transaction_id: str | None = None
    category: str = "Other"
    kind: ChargeKind = ChargeKind.SUBSCRIPTION
    status: ChargeStatus = ChargeStatus.PAID
    subject: str | None = None
    sender: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "service": self.service,
            "service_normalized": self.service_normalized,
            "amount": self.amount,
            "currency": self.currency,
            "billing_cycle": _enum_value(self.billing_cycle),
            "charged_at": _iso(self.charged_at),
            "source_message_id": self.source_message_id,
            "source_transaction_id": self.source_transaction_id,
            "category": self.category,
            "kind": _enum_value(self.kind),
            "status": _enum_value(self.status),
            "subject": self.subject,
            "sender": self.sender,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Charge:
        data = dict(row)
        data["charged_at"] = parse_dt(data["charged_at"])
        data["created_at"] = parse_dt(data.get("created_at")) or utc_now()
        return cls(**data)


class ChargeCreate(BaseModel):
    """Input to the aggregator for one confirmed charge (email, card or review)."""

    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    service: str
    amount: float
    currency: str = "USD"
    billing_cycle: BillingCycle = BillingCycle.UNKNOWN
    charged_at: datetime
    category: str = "Other"
    source_message_id: str | None = None
    source_transaction_id: str | None = None
    source: SubscriptionSource = SubscriptionSource.EMAIL
    subject: str | None = None
    sender: str | None = None

    @field_validator("service")
    @classmethod
    def service_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("service cannot be empty")
        return v.strip()

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return (v or "USD").strip().upper()


class PendingSuggestion(BaseModel):
    """Low-confidence billing candidate awaiting a review decision."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    user_id: str
    source_message_id: str
    sender: str = ""
    subject: str = ""
    charged_at: datetime | None = None
    service: str | None = None
    amount: float = 0.0
    currency: str = "USD"
    billing_cycle: BillingCycle = BillingCycle.UNKNOWN
    category: str = "Other"
    kind: str = "billing_event"
    confidence: float = 0.0
    confidence_level: int = Field(default=2, ge=1, le=5)
    decision: ReviewDecision = ReviewDecision.PENDING
    preview: str = ""
    extracted: dict[str, Any] = Field(default_factory=dict)
    edited_fields: dict[str, Any] | None = None
    decided_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "source_message_id": self.source_message_id,
            "sender": self.sender,
            "subject": self.subject,
            "charged_at": _iso(self.charged_at),
            "service": self.service,
            "amount": self.amount,
            "currency": self.currency,
            "billing_cycle": _enum_value(self.billing_cycle),
            "category": self.category,
            "kind": self.kind,
            "confidence": self.confidence,
            "confidence_level": self.confidence_level,
            "decision": _enum_value(self.decision),
            "preview": self.preview,
            "extracted": json.dumps(self.extracted, default=str),
            "edited_fields": json.dumps(self.edited_fields) if self.edited_fields is not None else None,
            "decided_at": _iso(self.decided_at),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> PendingSuggestion:
        data = dict(row)
        data["charged_at"] = parse_dt(data.get("charged_at"))
        data["decided_at"] = parse_dt(data.get("decided_at"))
        data["created_at"] = parse_dt(data.get("created_at")) or utc_now()
        data["extracted"] = json.loads(data["extracted"]) if data.get("extracted") else {}
        data["edited_fields"] = json.loads(data["edited_fields"]) if data.get("edited_fields") else None
        return cls(**data)


class MerchantRule(BaseModel):
    """Per-user memory of review outcomes for one sender domain."""

    user_id: str
    domain: str
    default_kind: str | None = None
    default_service: str | None = None
    default_category: str | None = None
    verified_count: int = 0
    declined_count: int = 0
    updated_at: datetime = Field(default_factory=utc_now)

    def confidence_boost(self, step: float = 0.1, cap: float = 0.3) -> float:
        """Positive after verifications, negative after declines, bounded by cap."""
        raw = step * (self.verified_count - self.declined_count)
        return max(-cap, min(cap, raw))

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> MerchantRule:
        data = dict(row)
        data["updated_at"] = parse_dt(data.get("updated_at")) or utc_now()
        return cls(**data)


class ScanSession(BaseModel):
    """Progress counters for one mailbox scan."""

    model_config = ConfigDict(use_enum_values=True)

    scan_id: str
    user_id: str
    mode: ScanMode
    status: ScanStatus = ScanStatus.RUNNING
    total_messages: int = 0
    processed: int = 0
    new_charges: int = 0
    skipped_existing: int = 0
    skipped_other: int = 0
    pending_review: int = 0
    scanned_after: datetime | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> ScanSession:
        data = dict(row)
        for key in ("scanned_after", "started_at", "completed_at"):
            data[key] = parse_dt(data.get(key))
        if data["started_at"] is None:
            data["started_at"] = utc_now()
        return cls(**data)
