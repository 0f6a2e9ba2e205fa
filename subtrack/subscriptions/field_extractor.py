"""
Field Extractor - structured billing facts from one message.

Hybrid LLM + rules approach:
- Gemini classifies the message and extracts service/amount/cycle/date
- The deterministic signal parser fills or overrides amount and cycle
- Service falls back to merchant rule, sender domain, then subject

The LLM is optional (SUBTRACK_USE_LLM). Any LLM failure degrades to the
rules-only path; extraction itself never raises for a single message.
"""

from __future__ import annotations

import json
import os
import re
from datetime import datetime, timedelta
from typing import Protocol

from subtrack.config import EXTRACTION_MAX_CHARS, EXTRACTION_SNIPPET_CHARS
from subtrack.gmail.parser import ParsedMessage
from subtrack.infrastructure.llm_budget import check_budget, record_llm_call
from subtrack.llm.retry import call_llm
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, log_event
from subtrack.subscriptions.filter_data import (
    CANCELED_KEYWORDS,
    CHARGE_EVIDENCE_KEYWORDS,
    DOMAIN_NOISE_LABELS,
    FAILURE_KEYWORDS,
    ON_HOLD_KEYWORDS,
    REACTIVATED_KEYWORDS,
    RECEIPT_ATTACHMENT_TOKENS,
    TRIAL_KEYWORDS,
)
from subtrack.subscriptions.models import BillingCycle, MerchantRule
from subtrack.subscriptions.signal_parser import (
    extract_amount_and_currency,
    extract_billing_cycle,
    extract_dates,
)
from subtrack.subscriptions.types import (
    ExtractedSignal,
    SignalKind,
    StatusEventType,
    structured_fields_from_payload,
)

logger = get_logger(__name__)

# Parser dates further than this before the message are a different charge
_CHARGE_DATE_LOOKBACK = timedelta(days=45)

_SUBJECT_STOPWORDS = frozenset(
    {
        "Your",
        "You",
        "Thanks",
        "Thank",
        "Receipt",
        "Invoice",
        "Order",
        "Payment",
        "Subscription",
        "Confirmation",
        "The",
        "From",
        "For",
        "We",
        "Re",
        "Fwd",
    }
)

SYSTEM_INSTRUCTION = (
    "Extract subscription billing details in JSON only. Be conservative: only call something a "
    "charge when there is a clear billed amount; otherwise prefer marketing/other and set amount "
    "to 0 for discounts or uncertain charges. Treat explicit contract language like \"we will "
    "charge you every month until you cancel\" as a recurring monthly billing_event. Never guess "
    "renewal dates, only classify billing cycles. Never infer cancellation just because no future "
    "emails are present."
)

EXTRACTION_PROMPT = """Decide whether this email is a real subscription charge, a subscription status change, or neither.

Sender: {sender}
Subject: {subject}
Snippet: {snippet}
Body:
{body}

Return JSON with keys: service, category, amount, currency, billing_cycle, kind, status_event_type, charge_date, confidence.

Rules:
- kind is one of: billing_event, status_event, marketing, newsletter, other.
- billing_event ONLY when the email confirms a completed charge (receipt, invoice, order confirmation) with a specific amount > 0 and is not about a failed payment or a hold.
- status_event when the email is about subscription state without a successful charge. status_event_type is one of: payment_failed, on_hold, canceled, trial_started, trial_offer, renewal_reminder, card_expiring, plan_changed, reactivated.
- marketing/newsletter when advertising prices, plans, discounts or trials without a confirmed charge. amount=0.
- amount is numeric only. Promotional prices are not charges; if unsure set amount to 0.
- service is the human-readable merchant (Spotify, Netflix, Talabat Pro). null only if unrelated to billing.
- category is one of: Streaming, Music, Gaming, Productivity, Cloud, Finance, Fitness, Retail, Food, Other.
- billing_cycle is one of: monthly, yearly, weekly, one_time, unknown.
- currency is an ISO code; USD if missing.
- charge_date is YYYY-MM-DD only when clearly stated; never guess dates.
- confidence is 0.0-1.0: how sure you are of kind and amount.

Respond with ONLY the JSON."""


class Extractor(Protocol):
    """Probabilistic extraction service."""

    def extract(
        self,
        text: str,
        subject: str,
        sender: str,
        snippet: str,
        user_id: str,
    ) -> ExtractedSignal | None: ...


def truncate_text(text: str | None, limit: int = EXTRACTION_MAX_CHARS) -> str:
    """
    Bound text to `limit` characters.

    Cuts at the last sentence end or newline inside the limit when that
    boundary lies past half the limit; otherwise hard-cuts at the limit.
    """
    if not text:
        return ""
    if len(text) <= limit:
        return text

    head = text[:limit]
    boundary = max(head.rfind(". "), head.rfind("! "), head.rfind("? "), head.rfind("\n"))
    if boundary > limit // 2:
        return head[: boundary + 1].rstrip()
    return head


def service_from_sender(sender: str | None) -> str | None:
    """
    Service name derived from the sender domain.

    "Spotify <no-reply@spotify.com>" -> "Spotify"; "billing@mail.netflix.co.uk" -> "Netflix".
    """
    if not sender:
        return None
    match = re.search(r"@([a-z0-9.-]+)", sender, re.IGNORECASE)
    if not match:
        return None

    labels = [label for label in match.group(1).lower().split(".") if label]
    if len(labels) < 2:
        return None
    labels = [label for label in labels[:-1] if label not in DOMAIN_NOISE_LABELS]
    if not labels:
        return None
    return labels[-1].replace("-", " ").title()


def service_from_subject(subject: str | None) -> str | None:
    """First capitalised non-generic token in the subject."""
    if not subject:
        return None
    for token in re.findall(r"\b[A-Z][A-Za-z0-9+]+\b", subject):
        if token not in _SUBJECT_STOPWORDS:
            return token
    return None


def _deterministic_status(text: str) -> str | None:
    if any(k in text for k in ON_HOLD_KEYWORDS):
        return StatusEventType.ON_HOLD.value
    if any(k in text for k in FAILURE_KEYWORDS):
        return StatusEventType.PAYMENT_FAILED.value
    if any(k in text for k in CANCELED_KEYWORDS):
        return StatusEventType.CANCELED.value
    if any(k in text for k in REACTIVATED_KEYWORDS):
        return StatusEventType.REACTIVATED.value
    if any(k in text for k in TRIAL_KEYWORDS):
        return StatusEventType.TRIAL_OFFER.value
    return None


class GeminiBillingExtractor:
    """Extractor backed by Gemini; returns None when disabled, over budget or failing."""

    def _use_llm(self) -> bool:
        return os.getenv("SUBTRACK_USE_LLM", "false").lower() == "true"

    def extract(
        self,
        text: str,
        subject: str,
        sender: str,
        snippet: str,
        user_id: str,
    ) -> ExtractedSignal | None:
        if not self._use_llm():
            counter("subscriptions.extractor.llm_disabled")
            return None

        budget = check_budget(user_id)
        if not budget.is_allowed:
            counter("subscriptions.extractor.budget_exceeded")
            logger.warning("LLM budget exceeded: user=%s reason=%s", user_id, budget.reason)
            return None

        prompt = EXTRACTION_PROMPT.format(
            sender=self._sanitize(sender, 200),
            subject=self._sanitize(subject, 300),
            snippet=self._sanitize(snippet, EXTRACTION_SNIPPET_CHARS),
            body=self._sanitize(text, EXTRACTION_MAX_CHARS),
        )

        try:
            response_text = call_llm(
                prompt,
                counter_prefix="extractor",
                system_instruction=SYSTEM_INSTRUCTION,
            )
        except Exception as e:
            logger.warning("LLM extraction failed, using rules only: %s", e)
            counter("subscriptions.extractor.llm_error")
            return None
        finally:
            record_llm_call(user_id, "extractor")

        payload = self._parse_llm_response(response_text)
        if not payload:
            counter("subscriptions.extractor.malformed")
            return None

        counter("subscriptions.extractor.llm_success")
        return ExtractedSignal.from_fields(structured_fields_from_payload(payload), method="llm")

    def _parse_llm_response(self, response_text: str | None) -> dict:
        """Parse LLM JSON response; {} for anything that is not a JSON object."""
        if not response_text:
            return {}
        json_text = response_text.strip()
        if json_text.startswith("```"):
            json_text = re.sub(r"^```(?:json)?\n?", "", json_text)
            json_text = re.sub(r"\n?```$", "", json_text)

        try:
            data = json.loads(json_text)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse LLM extraction response: %s", e)
            return {}

        return data if isinstance(data, dict) else {}

    def _sanitize(self, text: str | None, max_length: int) -> str:
        """Sanitize input for LLM prompt."""
        if not text:
            return ""

        text = re.sub(r"(?i)(ignore|disregard).*(instruction|prompt)", "[REDACTED]", text)
        text = text.replace("{", "{{").replace("}", "}}")
        return text[:max_length]


class BillingFieldExtractor:
    """
    Merge probabilistic and deterministic extraction into one ExtractedSignal.

    Args:
        extractor: Probabilistic extractor; None means rules only
    """

    def __init__(self, extractor: Extractor | None = None):
        self.extractor = extractor

    def extract(
        self,
        message: ParsedMessage,
        user_id: str,
        attachment_text: str = "",
        merchant_rule: MerchantRule | None = None,
    ) -> ExtractedSignal:
        body = truncate_text(message.text_body)
        signal = None
        if self.extractor is not None:
            signal = self.extractor.extract(
                text=f"{body}\n{attachment_text}".strip(),
                subject=message.subject,
                sender=message.sender,
                snippet=message.snippet,
                user_id=user_id,
            )

        rules_text = "\n".join(
            part for part in (message.subject, message.snippet, body, attachment_text) if part
        )

        if signal is None:
            signal = self._extract_with_rules(message, rules_text)
        else:
            signal = self._merge_rules(signal, rules_text)

        signal = self._fill_charge_date(signal, rules_text, message.received_at)

        if not signal.service:
            signal = signal.with_changes(service=self._fallback_service(message, merchant_rule))
        if merchant_rule is not None and merchant_rule.default_category and signal.category == "Other":
            signal = signal.with_changes(category=merchant_rule.default_category)

        log_event(
            "subscriptions.extractor.complete",
            message=message.message_id_hash(),
            kind=signal.kind,
            has_amount=signal.amount > 0,
            cycle=signal.billing_cycle,
            method=signal.extraction_method,
        )
        return signal

    def _extract_with_rules(self, message: ParsedMessage, text: str) -> ExtractedSignal:
        """Deterministic kind: status keywords, else evidenced positive amount, else other."""
        lower = text.lower()
        found = extract_amount_and_currency(text)
        cycle = extract_billing_cycle(text)

        status_type = _deterministic_status(lower)
        if status_type:
            return ExtractedSignal(
                kind=SignalKind.STATUS_EVENT.value,
                status_event_type=status_type,
                billing_cycle=cycle,
                extraction_method="rules",
            )

        has_evidence = any(k in lower for k in CHARGE_EVIDENCE_KEYWORDS) or any(
            token in attachment.filename.lower()
            for attachment in message.attachments
            for token in RECEIPT_ATTACHMENT_TOKENS
        )
        if found and has_evidence:
            return ExtractedSignal(
                kind=SignalKind.BILLING_EVENT.value,
                amount=found.amount,
                currency=found.currency,
                billing_cycle=cycle,
                extraction_method="rules",
            )

        return ExtractedSignal(kind=SignalKind.OTHER.value, billing_cycle=cycle, extraction_method="rules")

    def _merge_rules(self, signal: ExtractedSignal, text: str) -> ExtractedSignal:
        """Parser amount overrides only when the extractor had none; parser cycle fills unknown."""
        changes: dict = {}
        if not signal.amount or signal.amount <= 0:
            found = extract_amount_and_currency(text)
            if found:
                changes.update(amount=found.amount, currency=found.currency)
        if signal.billing_cycle == BillingCycle.UNKNOWN.value:
            cycle = extract_billing_cycle(text)
            if cycle != BillingCycle.UNKNOWN.value:
                changes["billing_cycle"] = cycle
        if changes:
            changes["extraction_method"] = "hybrid"
            return signal.with_changes(**changes)
        return signal

    def _fill_charge_date(
        self,
        signal: ExtractedSignal,
        text: str,
        received_at: datetime | None,
    ) -> ExtractedSignal:
        if signal.charge_date is not None or received_at is None:
            return signal
        last_charge = extract_dates(text).last_charge
        if last_charge and received_at - _CHARGE_DATE_LOOKBACK <= last_charge <= received_at:
            return signal.with_changes(charge_date=last_charge)
        return signal

    def _fallback_service(self, message: ParsedMessage, merchant_rule: MerchantRule | None) -> str | None:
        if merchant_rule is not None and merchant_rule.default_service:
            return merchant_rule.default_service
        return service_from_sender(message.sender_email or message.sender) or service_from_subject(
            message.subject
        )
