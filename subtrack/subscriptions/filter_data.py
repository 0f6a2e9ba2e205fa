"""
Module: filter_data
Purpose: Keyword and domain constants for presence detection and classification heuristics.
Dependencies: None (pure data, no imports)

Separates keyword policy from the matching logic in presence.py and
heuristics.py. Provider-specific overrides live in data/provider_rules.yaml.
"""

# ---------------------------------------------------------------------------
# Classification heuristics (substring match on lower-cased text)
# ---------------------------------------------------------------------------

PROMO_KEYWORDS: tuple[str, ...] = (
    "sale",
    "50% off",
    "25% off",
    "% off",
    "discount",
    "offer",
    "promo",
    "promotion",
    "gift guide",
    "black friday",
    "cyber monday",
    "this weekend only",
    "today only",
    "use code",
    "coupon",
    "deal",
    "shop now",
    "save",
)

RECEIPT_KEYWORDS: tuple[str, ...] = (
    "receipt",
    "e-receipt",
    "invoice",
    "subscription fee invoice",
    "order confirmation",
    "order placed",
    "thanks for your order",
    "payment receipt",
)

# Attachment filename fragments that mark a receipt document
RECEIPT_ATTACHMENT_TOKENS: tuple[str, ...] = ("invoice", "receipt", "subscription-charge")

ON_HOLD_KEYWORDS: tuple[str, ...] = ("on hold",)

FAILURE_KEYWORDS: tuple[str, ...] = (
    "payment failed",
    "unable to charge",
    "could not be renewed",
    "billing issue",
)

TRIAL_KEYWORDS: tuple[str, ...] = ("trial", "start your trial", "trial offer")

# Deterministic status detection when no extractor is available
CANCELED_KEYWORDS: tuple[str, ...] = (
    "subscription has been canceled",
    "subscription has been cancelled",
    "your subscription was canceled",
    "your subscription was cancelled",
    "membership has been canceled",
    "membership has been cancelled",
)

REACTIVATED_KEYWORDS: tuple[str, ...] = (
    "welcome back",
    "subscription has been reactivated",
    "membership has been reactivated",
)

# Language that shows money actually moved (deterministic billing_event path)
CHARGE_EVIDENCE_KEYWORDS: tuple[str, ...] = RECEIPT_KEYWORDS + (
    "charged",
    "billed",
    "payment confirmation",
    "payment received",
    "thank you for your payment",
    "amount paid",
    "renewed",
)

# ---------------------------------------------------------------------------
# Subscription presence detection (regex, case-insensitive)
# ---------------------------------------------------------------------------

KNOWN_BILLING_DOMAINS: tuple[str, ...] = (
    r"apple\.com",
    r"spotify\.com",
    r"talabat\.com",
    r"openai\.com",
    r"google\.com",
    r"netflix\.com",
    r"amazon\.com",
    r"microsoft\.com",
    r"adobe\.com",
    r"adobe\.net",
    r"youtube\.com",
    r"discord\.com",
    r"github\.com",
    r"notion\.so",
    r"figma\.com",
    r"slack\.com",
    r"zoom\.us",
    r"dropbox\.com",
    r"salesforce\.com",
    r"shopify\.com",
    r"stripe\.com",
    r"paypal\.com",
)

SUBSCRIPTION_SIGNALS: tuple[str, ...] = (
    r"subscription",
    r"renewal",
    r"auto-renew",
    r"renews on",
    r"will be charged",
    r"recurring",
    r"your plan",
    r"membership",
    r"premium",
    r"billing",
    r"invoice",
    r"receipt",
    r"tax invoice",
    r"next billing",
    r"next charge",
    r"payment confirmation",
    r"order confirmation",
    r"charged",
    r"billed",
    r"paid",
)

MARKETING_SIGNALS: tuple[str, ...] = (
    r"^unsubscribe",
    r"click here to unsubscribe",
    r"view in browser",
    r"newsletter",
    r"promo code",
    r"special offer",
    r"limited time",
    r"sale ends",
    r"% off",
    r"discount code",
)

AMOUNT_SIGNALS: tuple[str, ...] = (
    r"\$\s*\d+(?:[.,]\d{2})?",
    r"€\s*\d+(?:[.,]\d{2})?",
    r"£\s*\d+(?:[.,]\d{2})?",
    r"\b(?:usd|egp|eur|gbp|sar|aed)\b\s*\d+(?:[.,]\d{2})?",
    r"\d+(?:[.,]\d{2})?\s*\b(?:usd|egp|eur|gbp|sar|aed)\b",
    r"\btotal\b[^0-9]{0,20}\d+(?:[.,]\d{2})?",
    r"\bamount\b[^0-9]{0,20}\d+(?:[.,]\d{2})?",
    r"\bprice\b[^0-9]{0,20}\d+(?:[.,]\d{2})?",
)

PDF_INVOICE_PATTERN: str = r"(?:invoice|receipt|tax invoice|total|amount)"

# Sender-domain labels that never name a service
DOMAIN_NOISE_LABELS: frozenset[str] = frozenset(
    {"com", "net", "org", "co", "io", "mail", "email", "emails", "e", "em", "news", "info"}
)
