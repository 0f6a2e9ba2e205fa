"""
Subscriptions module - billing signal ingestion and subscription aggregation.
"""

from subtrack.subscriptions.aggregator import ApplyOutcome, ChargeApplyResult, apply_charge
from subtrack.subscriptions.ingestion import ScanSummary, compute_scan_window, scan_mailbox
from subtrack.subscriptions.lifecycle import SweepSummary, sweep_subscriptions
from subtrack.subscriptions.models import (
    BillingCycle,
    Charge,
    ChargeCreate,
    PendingSuggestion,
    Subscription,
    SubscriptionStatus,
)
from subtrack.subscriptions.pipeline import ExtractionPipeline
from subtrack.subscriptions.review import (
    ReviewEdits,
    decline_review_item,
    next_review_item,
    verify_review_item,
)
from subtrack.subscriptions.types import ExtractedSignal, MessageOutcome, PipelineResult

__all__ = [
    "ApplyOutcome",
    "BillingCycle",
    "Charge",
    "ChargeApplyResult",
    "ChargeCreate",
    "ExtractedSignal",
    "ExtractionPipeline",
    "MessageOutcome",
    "PendingSuggestion",
    "PipelineResult",
    "ReviewEdits",
    "ScanSummary",
    "Subscription",
    "SubscriptionStatus",
    "SweepSummary",
    "apply_charge",
    "compute_scan_window",
    "decline_review_item",
    "next_review_item",
    "scan_mailbox",
    "sweep_subscriptions",
    "verify_review_item",
]
