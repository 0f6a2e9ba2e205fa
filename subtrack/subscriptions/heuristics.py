"""
Classification heuristics.

Deterministic corrections applied to extractor output before anything is
persisted. Gates run in a fixed order:

1. billing_event without a positive amount -> marketing
2. promotional language without receipt evidence -> marketing
3. hold / payment failure / trial language -> status_event
4. provider overrides (data/provider_rules.yaml)
5. final promotional gate on billing_event

The result never carries kind=billing_event with amount <= 0.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from subtrack.infrastructure.settings import PROVIDER_RULES_PATH
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, log_event
from subtrack.subscriptions.filter_data import (
    FAILURE_KEYWORDS,
    ON_HOLD_KEYWORDS,
    PROMO_KEYWORDS,
    RECEIPT_ATTACHMENT_TOKENS,
    RECEIPT_KEYWORDS,
    TRIAL_KEYWORDS,
)
from subtrack.subscriptions.models import BillingCycle
from subtrack.subscriptions.types import SignalKind, StatusEventType

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderRule:
    """One provider override loaded from YAML."""

    name: str
    domain: str
    phrases: tuple[str, ...]
    kind: str = SignalKind.BILLING_EVENT.value
    billing_cycle: str | None = None
    cycle_mode: str = "default"  # "force" | "default"
    service: str | None = None
    require_positive_amount: bool = False
    preserve_status_event: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderRule:
        return cls(
            name=str(data["name"]),
            domain=str(data["domain"]).lower(),
            phrases=tuple(str(p).lower() for p in data.get("phrases") or ()),
            kind=data.get("kind", SignalKind.BILLING_EVENT.value),
            billing_cycle=data.get("billing_cycle"),
            cycle_mode=data.get("cycle_mode", "default"),
            service=data.get("service"),
            require_positive_amount=bool(data.get("require_positive_amount", False)),
            preserve_status_event=bool(data.get("preserve_status_event", False)),
        )


@dataclass(frozen=True)
class HeuristicInput:
    kind: str
    amount: float = 0.0
    billing_cycle: str = BillingCycle.UNKNOWN.value
    service: str | None = None
    status_event_type: str | None = None
    subject: str = ""
    body: str = ""
    sender: str = ""
    attachment_names: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class HeuristicResult:
    kind: str
    amount: float
    billing_cycle: str
    service: str | None
    status_event_type: str | None
    applied: tuple[str, ...] = ()  # Names of the gates/rules that changed something


def _load_rules_file(path: Path) -> list[ProviderRule]:
    if not path.exists():
        logger.warning("Provider rules not found at %s", path)
        return []

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    rules = [ProviderRule.from_dict(entry) for entry in data.get("providers", [])]
    logger.info("Loaded %d provider rules from %s", len(rules), path)
    return rules


@lru_cache(maxsize=4)
def load_provider_rules(path: Path | None = None) -> tuple[ProviderRule, ...]:
    """Provider overrides from YAML (cached per path)."""
    return tuple(_load_rules_file(path or PROVIDER_RULES_PATH))


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(k in text for k in keywords)


def _has_receipt_attachment(names: tuple[str, ...]) -> bool:
    return any(_contains_any(name.lower(), RECEIPT_ATTACHMENT_TOKENS) for name in names)


def apply_provider_rule(
    rule: ProviderRule,
    state: HeuristicResult,
    sender: str,
    body: str,
) -> HeuristicResult:
    """
    Apply one provider override if its domain and phrases match.

    Rules never fire on marketing; `require_positive_amount` additionally needs
    amount > 0; `preserve_status_event` keeps an already-detected status event.
    """
    if rule.domain not in sender.lower():
        return state
    if not _contains_any(body.lower(), rule.phrases):
        return state
    if state.kind == SignalKind.MARKETING.value:
        return state
    if rule.require_positive_amount and not state.amount > 0:
        return state

    kind = rule.kind
    if rule.preserve_status_event and state.kind == SignalKind.STATUS_EVENT.value:
        kind = state.kind

    cycle = state.billing_cycle
    if rule.billing_cycle:
        if rule.cycle_mode == "force" or cycle == BillingCycle.UNKNOWN.value:
            cycle = rule.billing_cycle

    logger.info(
        "Forced subscription classification provider=%s kind=%s billing_cycle=%s",
        rule.name,
        kind,
        cycle,
    )
    counter(f"heuristics.provider.{rule.name}")
    return replace(
        state,
        kind=kind,
        billing_cycle=cycle,
        service=state.service or rule.service,
        applied=state.applied + (f"provider:{rule.name}",),
    )


def apply_heuristics(
    data: HeuristicInput,
    rules: tuple[ProviderRule, ...] | None = None,
) -> HeuristicResult:
    """
    Correct extractor output with keyword gates and provider overrides.

    Args:
        data: Extractor (or deterministic) classification plus message text
        rules: Provider overrides; defaults to data/provider_rules.yaml

    Returns:
        HeuristicResult; kind=billing_event always has amount > 0
    """
    if rules is None:
        rules = load_provider_rules()

    text = f"{data.subject} {data.body}".lower()
    has_promo = _contains_any(text, PROMO_KEYWORDS)
    has_receipt = _contains_any(text, RECEIPT_KEYWORDS)
    has_receipt_attachment = _has_receipt_attachment(data.attachment_names)

    amount = data.amount if data.amount and data.amount > 0 else 0.0
    state = HeuristicResult(
        kind=data.kind,
        amount=amount,
        billing_cycle=data.billing_cycle or BillingCycle.UNKNOWN.value,
        service=data.service,
        status_event_type=data.status_event_type,
    )

    def gate(name: str, **changes: Any) -> None:
        nonlocal state
        state = replace(state, applied=state.applied + (name,), **changes)

    if state.kind == SignalKind.BILLING_EVENT.value and state.amount <= 0:
        gate("non_positive_amount", kind=SignalKind.MARKETING.value, amount=0.0)

    if has_promo and not has_receipt and not has_receipt_attachment:
        gate("promo_without_receipt", kind=SignalKind.MARKETING.value, amount=0.0)

    if _contains_any(text, ON_HOLD_KEYWORDS):
        gate(
            "on_hold",
            kind=SignalKind.STATUS_EVENT.value,
            status_event_type=StatusEventType.ON_HOLD.value,
            amount=0.0,
        )
    elif _contains_any(text, FAILURE_KEYWORDS):
        gate(
            "payment_failed",
            kind=SignalKind.STATUS_EVENT.value,
            status_event_type=StatusEventType.PAYMENT_FAILED.value,
            amount=0.0,
        )
    elif _contains_any(text, TRIAL_KEYWORDS):
        gate(
            "trial_offer",
            kind=SignalKind.STATUS_EVENT.value,
            status_event_type=StatusEventType.TRIAL_OFFER.value,
            amount=0.0,
        )

    for rule in rules:
        state = apply_provider_rule(rule, state, data.sender, data.body)

    if (
        state.kind == SignalKind.BILLING_EVENT.value
        and has_promo
        and not has_receipt
        and not has_receipt_attachment
    ):
        gate("final_promo_gate", kind=SignalKind.MARKETING.value, amount=0.0)

    # A provider rule can force billing_event on a zero amount (preserve/default rules)
    if state.kind == SignalKind.BILLING_EVENT.value and state.amount <= 0:
        gate("post_condition", kind=SignalKind.MARKETING.value, amount=0.0)

    if state.kind != SignalKind.STATUS_EVENT.value:
        state = replace(state, status_event_type=None)

    if state.applied:
        log_event(
            "heuristics.applied",
            gates=",".join(state.applied),
            kind_in=data.kind,
            kind_out=state.kind,
        )

    return state
