"""Subtrack - Track recurring subscriptions from billing emails and card transactions"""

from __future__ import annotations

__version__ = "1.0.0"


# Lazy imports for subscriptions module
def __getattr__(name: str):
    """
    Lazy imports so lightweight modules (parser, heuristics) load without pulling in
    the database or LLM stack.
    """
    if name in ("Subscription", "SubscriptionStatus", "Charge"):
        from subtrack.subscriptions import models

        return getattr(models, name)

    if name == "scan_mailbox":
        from subtrack.subscriptions.ingestion import scan_mailbox

        return scan_mailbox

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "Charge",
    "Subscription",
    "SubscriptionStatus",
    "scan_mailbox",
]
