"""
Deterministic signal parser.

Regex/keyword extraction of amount, currency, billing cycle and receipt dates
straight from message or attachment text. Runs as the fallback when the
extractor is disabled or returns no amount, and as a cross-check otherwise.

Pure functions, no I/O.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime

from subtrack.subscriptions.models import BillingCycle
from subtrack.subscriptions.types import parse_amount

# 1,234.56 / 1.234,56 / 1299.00 / 9.99 / 12; never a fragment of a longer number or a date
_AMOUNT = r"(?<![\d/.,-])(\d{1,3}(?:[.,]\d{3})+(?:[.,]\d{2})?|\d{1,7}(?:[.,]\d{2})?)(?![\d/-])"
_CONTEXT_CODES = r"\b(usd|egp|eur|gbp|sar|aed)\b"
_ISO_CODES = r"(usd|egp|eur|gbp|sar|aed|cad|aud|jpy|cny|inr|mxn|brl)"

_TOTAL_PATTERNS = (
    re.compile(
        r"(?:total|grand total|amount due|amount paid|subtotal|price|cost|charge|charged|paid|billed)"
        r"[^0-9]{0,30}" + _AMOUNT,
        re.IGNORECASE,
    ),
    re.compile(_AMOUNT + r"[^0-9]{0,30}(?:total|grand total|amount due|amount paid)", re.IGNORECASE),
)

_SYMBOL_PATTERNS = (
    (re.compile(r"\$\s*" + _AMOUNT), "USD"),
    (re.compile(r"€\s*" + _AMOUNT), "EUR"),
    (re.compile(r"£\s*" + _AMOUNT), "GBP"),
)

_CODE_BEFORE = re.compile(r"\b" + _ISO_CODES + r"\b\s*" + _AMOUNT, re.IGNORECASE)
_CODE_AFTER = re.compile(_AMOUNT + r"\s*\b" + _ISO_CODES + r"\b", re.IGNORECASE)

_MONTHLY = re.compile(r"monthly|per month|each month|every month|monthly subscription|monthly plan")
_YEARLY = re.compile(
    r"yearly|annual|per year|each year|every year|annual subscription|yearly plan|\(1 year\)"
)
_WEEKLY = re.compile(r"weekly|per week|each week|every week|weekly subscription")
_EVERY_N = re.compile(r"(?:renews?|billed|charged|payment)\s+(?:every|each)\s+(\d+)\s*(month|year|week)")
_ONE_MONTH = re.compile(r"\(1\s*month\)")
_TWELVE_MONTHS = re.compile(r"\(12\s*months?\)|\(1\s*year\)")

_DATE_VALUE = (
    r"(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4}|"
    r"(?:january|february|march|april|may|june|july|august|september|october|november|december)"
    r"\s+\d{1,2},?\s+\d{4})"
)
_LAST_CHARGE = re.compile(
    r"(?:charged|paid|billed|payment date|transaction date)[^0-9]{0,30}?" + _DATE_VALUE, re.IGNORECASE
)
_INVOICE_DATE = re.compile(r"(?:invoice date|invoice issued|date)[^0-9]{0,30}?" + _DATE_VALUE, re.IGNORECASE)
_NEXT_BILLING = re.compile(
    r"(?:next billing|next charge|renews? on|renewal date|next payment)[^0-9]{0,30}?" + _DATE_VALUE,
    re.IGNORECASE,
)


@dataclass(frozen=True)
class AmountMatch:
    amount: float
    currency: str
    source: str  # "total_keyword" | "currency_pattern"


@dataclass(frozen=True)
class ReceiptDates:
    last_charge: datetime | None = None
    invoice_date: datetime | None = None
    next_billing: datetime | None = None


def _currency_from_context(context: str) -> str:
    code = re.search(_CONTEXT_CODES, context, re.IGNORECASE)
    if code:
        return code.group(1).upper()
    if "$" in context:
        return "USD"
    if "€" in context:
        return "EUR"
    if "£" in context:
        return "GBP"
    return "USD"


def extract_amount_and_currency(text: str | None) -> AmountMatch | None:
    """
    Find the most trustworthy positive amount in text.

    Keyword-anchored totals ("Total: 12.00") win, with the currency taken from
    the surrounding 50 characters. Otherwise the first symbol-prefixed or
    ISO-code-prefixed/suffixed amount is used.
    """
    if not text:
        return None

    for pattern in _TOTAL_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        amount = parse_amount(match.group(1))
        if amount > 0:
            context = text[max(0, match.start() - 50) : match.end() + 50]
            return AmountMatch(amount=amount, currency=_currency_from_context(context), source="total_keyword")

    for pattern, currency in _SYMBOL_PATTERNS:
        match = pattern.search(text)
        if match:
            amount = parse_amount(match.group(1))
            if amount > 0:
                return AmountMatch(amount=amount, currency=currency, source="currency_pattern")

    match = _CODE_BEFORE.search(text)
    if match:
        amount = parse_amount(match.group(2))
        if amount > 0:
            return AmountMatch(amount=amount, currency=match.group(1).upper(), source="currency_pattern")

    match = _CODE_AFTER.search(text)
    if match:
        amount = parse_amount(match.group(1))
        if amount > 0:
            return AmountMatch(amount=amount, currency=match.group(2).upper(), source="currency_pattern")

    return None


def extract_billing_cycle(text: str | None) -> str:
    """Billing cycle keyword in text: monthly, yearly, weekly or unknown."""
    if not text:
        return BillingCycle.UNKNOWN.value

    lower = text.lower()
    if _MONTHLY.search(lower):
        return BillingCycle.MONTHLY.value
    if _YEARLY.search(lower):
        return BillingCycle.YEARLY.value
    if _WEEKLY.search(lower):
        return BillingCycle.WEEKLY.value

    match = _EVERY_N.search(lower)
    if match:
        count, unit = int(match.group(1)), match.group(2)
        if unit == "month" and count == 1:
            return BillingCycle.MONTHLY.value
        if (unit == "month" and count == 12) or unit == "year":
            return BillingCycle.YEARLY.value
        if unit == "week" and count == 1:
            return BillingCycle.WEEKLY.value

    if _ONE_MONTH.search(lower):
        return BillingCycle.MONTHLY.value
    if _TWELVE_MONTHS.search(lower):
        return BillingCycle.YEARLY.value

    return BillingCycle.UNKNOWN.value


def _parse_date_value(raw: str) -> datetime | None:
    raw = raw.strip().replace(",", "")
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%B %d %Y"):
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return None


def extract_dates(text: str | None) -> ReceiptDates:
    """Keyword-anchored receipt dates (last charge, invoice date, next billing)."""
    if not text:
        return ReceiptDates()

    def find(pattern: re.Pattern[str]) -> datetime | None:
        match = pattern.search(text)
        return _parse_date_value(match.group(1)) if match else None

    return ReceiptDates(
        last_charge=find(_LAST_CHARGE),
        invoice_date=find(_INVOICE_DATE),
        next_billing=find(_NEXT_BILLING),
    )
