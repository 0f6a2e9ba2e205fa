"""Centralized configuration for the Subtrack engine.

Re-exports everything from subtrack.infrastructure.settings, then adds typed
constants for database, scanning, extraction, LLM, card sync and lifecycle
settings.  Environment variable overrides use safe defaults so the engine
starts without extra env configuration.
"""

from __future__ import annotations

import os

from subtrack.infrastructure.settings import *  # noqa: F401, F403

# --- App ---
APP_VERSION: str = "1.0.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("SUBTRACK_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = 5.0
DB_CONNECT_TIMEOUT: float = 30.0
DB_TEMP_CONN_MAX: int = 10
DB_RETRY_MAX: int = 5
DB_RETRY_BASE_DELAY: float = 0.1
DB_RETRY_MAX_DELAY: float = 2.0
DB_RETRY_JITTER: float = 0.1

# --- Mailbox scan ---
SCAN_WINDOW_DAYS: int = 365
SCAN_SAFETY_OVERLAP_DAYS: int = 2
SCAN_MAX_MESSAGES: int = int(os.getenv("SUBTRACK_SCAN_MAX_MESSAGES", "500"))
SCAN_PAGE_SIZE: int = 200
SCAN_WORKERS: int = int(os.getenv("SUBTRACK_SCAN_WORKERS", "4"))
SCAN_QUERY_TERMS: tuple[str, ...] = (
    "receipt",
    "invoice",
    "billed",
    "charged",
    "renewal",
    "subscription",
    "payment",
    '"thanks for your order"',
    '"your order"',
)

# --- Extraction pipeline ---
EXTRACTION_MAX_CHARS: int = 4000
EXTRACTION_SNIPPET_CHARS: int = 500
EXTRACTION_ATTACHMENT_CHARS: int = 2000
# Billing events below this confidence become review items instead of charges
AUTO_COMMIT_CONFIDENCE: float = float(os.getenv("SUBTRACK_AUTO_COMMIT_CONFIDENCE", "0.6"))
PRESENCE_THRESHOLD: float = 0.3
MERCHANT_RULE_BOOST_STEP: float = 0.1
MERCHANT_RULE_BOOST_MAX: float = 0.3
DEFAULT_CURRENCY: str = "USD"
WEEKS_PER_MONTH: float = 4.345

# --- LLM ---
LLM_TIMEOUT_SECONDS: int = int(os.getenv("SUBTRACK_LLM_TIMEOUT", "30"))
LLM_MAX_RETRIES: int = int(os.getenv("SUBTRACK_LLM_MAX_RETRIES", "3"))

# --- LLM Budget ---
LLM_USER_DAILY_LIMIT: int = 500
LLM_GLOBAL_DAILY_LIMIT: int = 10000

# --- Card reconciliation ---
CARD_SYNC_PAGE_SIZE: int = 100
CARD_SYNC_TIMEOUT_SECONDS: float = float(os.getenv("SUBTRACK_CARD_SYNC_TIMEOUT", "15"))
CARD_BUCKET_TOLERANCE: float = 0.10
CARD_AMOUNT_MATCH_TOLERANCE: float = 0.10
CARD_STABLE_AMOUNT_TOLERANCE: float = 0.15
CARD_MIN_SIMILARITY: float = 0.6
CARD_MATCH_BONUS: float = 0.1

# --- Lifecycle ---
LIFECYCLE_CYCLE_DAYS: dict[str, int] = {"weekly": 7, "monthly": 30, "yearly": 365}
LIFECYCLE_GRACE_DAYS: dict[str, int] = {"weekly": 14, "monthly": 30, "yearly": 90}
AUTO_CANCEL_REASON: str = "No recent charge activity"

# --- API ---
API_LIST_LIMIT_DEFAULT: int = 100
API_LIST_LIMIT_MAX: int = 500
