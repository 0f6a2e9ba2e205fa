"""Merchant name normalization and fuzzy matching for card transactions."""

from __future__ import annotations

import re

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_LEGAL_SUFFIXES = re.compile(r"\b(inc|llc|ltd|co|corp|company|limited|plc)\b")
_WHITESPACE = re.compile(r"\s+")

# Structurally unlikely to be subscriptions; they would pollute cadence inference
ONE_OFF_MERCHANTS = re.compile(
    r"starbucks|mcdonald|burger|pizza|uber|lyft|doordash|instacart|airlines|delta|united"
    r"|ryanair|wizz|booking|expedia|hotel|shell|chevron",
    re.IGNORECASE,
)

# Money movement rather than purchases
NON_SUBSCRIPTION_MERCHANTS = re.compile(
    r"payment|transfer|top\s?up|wallet|cash|atm|refund|reversal|chargeback|loan"
    r"|card\s?payment|credit\s?card\s?payment|installment|p2p|venmo|cashapp|zelle",
    re.IGNORECASE,
)


def normalize_merchant(name: str | None) -> str:
    """
    Lowercase, punctuation to spaces, legal suffixes removed, whitespace collapsed.

    >>> normalize_merchant("NETFLIX.COM Inc.")
    'netflix com'
    """
    if not name:
        return ""
    text = _NON_ALNUM.sub(" ", name.lower())
    text = _LEGAL_SUFFIXES.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def is_one_off_merchant(normalized: str) -> bool:
    return bool(ONE_OFF_MERCHANTS.search(normalized))


def is_likely_subscription_merchant(normalized: str) -> bool:
    if not normalized:
        return False
    return not NON_SUBSCRIPTION_MERCHANTS.search(normalized)


def text_similarity(a: str, b: str) -> float:
    """1.0 exact, 0.9 substring containment, else Jaccard over whitespace tokens."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return 0.9
    a_tokens = set(a.split())
    b_tokens = set(b.split())
    union = len(a_tokens | b_tokens) or 1
    return len(a_tokens & b_tokens) / union


def amounts_match(card_amount: float, subscription_amount: float, tolerance: float) -> bool:
    """Within `tolerance` of the larger of the two amounts; zero never matches."""
    if not card_amount or not subscription_amount:
        return False
    return abs(card_amount - subscription_amount) <= max(card_amount, subscription_amount) * tolerance
