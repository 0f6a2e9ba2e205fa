"""
Cards module - card-transaction sync and reconciliation against subscriptions.
"""

from subtrack.cards.cadence import CardTransaction, bucket_transactions, infer_cadence
from subtrack.cards.merchant import normalize_merchant, text_similarity
from subtrack.cards.reconciler import ReconcileSummary, reconcile_card_transactions
from subtrack.cards.sync import sync_card_transactions

__all__ = [
    "CardTransaction",
    "ReconcileSummary",
    "bucket_transactions",
    "infer_cadence",
    "normalize_merchant",
    "reconcile_card_transactions",
    "sync_card_transactions",
    "text_similarity",
]
