"""
Subscription presence detection (no LLM).

Cheap pre-check deciding whether a message is worth extracting at all. Pure
marketing (marketing language with no billing, amount or attachment evidence)
is rejected outright so the extractor is never called for it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from subtrack.config import PRESENCE_THRESHOLD
from subtrack.subscriptions.filter_data import (
    AMOUNT_SIGNALS,
    KNOWN_BILLING_DOMAINS,
    MARKETING_SIGNALS,
    PDF_INVOICE_PATTERN,
    SUBSCRIPTION_SIGNALS,
)

_DOMAIN_RES = tuple(re.compile(p, re.IGNORECASE) for p in KNOWN_BILLING_DOMAINS)
_SUBSCRIPTION_RES = tuple(re.compile(p, re.IGNORECASE) for p in SUBSCRIPTION_SIGNALS)
_MARKETING_RES = tuple(re.compile(p, re.IGNORECASE) for p in MARKETING_SIGNALS)
_AMOUNT_RES = tuple(re.compile(p, re.IGNORECASE) for p in AMOUNT_SIGNALS)
_PDF_INVOICE_RE = re.compile(PDF_INVOICE_PATTERN, re.IGNORECASE)


@dataclass(frozen=True)
class PresenceResult:
    presence: bool
    reason: str
    confidence: float
    score: float
    pure_marketing: bool = False


def _any(patterns: tuple[re.Pattern[str], ...], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def detect_subscription_presence(
    subject: str = "",
    sender: str = "",
    snippet: str = "",
    body_text: str = "",
    attachment_text: str = "",
    has_pdf_attachment: bool = False,
) -> PresenceResult:
    """
    Score billing evidence in a message.

    Scores add up from independent signals (PDF invoice text, PDF attachment,
    known billing domain, subscription keywords, amounts, absence of marketing
    language). Presence requires a score of at least PRESENCE_THRESHOLD;
    confidence is the score capped at 1.0.
    """
    full_text = f"{subject} {snippet} {body_text} {attachment_text}".lower()

    has_known_domain = _any(_DOMAIN_RES, sender.lower())
    has_subscription = _any(_SUBSCRIPTION_RES, full_text)
    has_amount = _any(_AMOUNT_RES, full_text)
    has_marketing = _any(_MARKETING_RES, full_text)
    has_pdf_invoice = bool(attachment_text) and bool(_PDF_INVOICE_RE.search(attachment_text))

    score = 0.0
    reasons: list[str] = []

    if has_pdf_invoice:
        score += 0.4
        reasons.append("attachment invoice/receipt")
    if has_pdf_attachment:
        score += 0.4
        reasons.append("PDF attachment present")
    if has_known_domain and has_subscription:
        score += 0.3
        reasons.append("known billing domain + subscription keywords")
    if has_subscription and has_amount:
        score += 0.3
        reasons.append("subscription keywords + amount")
    if has_subscription and not has_marketing:
        score += 0.2
        reasons.append("subscription keywords (no marketing)")
    if has_known_domain and has_amount:
        score += 0.2
        reasons.append("known domain + amount")
    if has_amount and not has_marketing:
        score += 0.1
        reasons.append("amount present (no marketing)")
    if has_known_domain:
        score += 0.1
        reasons.append("known billing domain")

    if (
        has_marketing
        and not has_subscription
        and not has_amount
        and not has_pdf_invoice
        and not has_pdf_attachment
    ):
        return PresenceResult(
            presence=False,
            reason="pure marketing/newsletter (no billing signals)",
            confidence=0.0,
            score=0.0,
            pure_marketing=True,
        )

    score = round(score, 4)
    presence = score >= PRESENCE_THRESHOLD
    reason = "; ".join(reasons) or "no signals detected"
    if not presence:
        reason = f"low score ({score:.2f}): {reason}"

    return PresenceResult(
        presence=presence,
        reason=reason,
        confidence=min(1.0, score),
        score=score,
    )
