"""Card sync loop: provider pages -> stored transactions -> reconcile -> sweep."""

from __future__ import annotations

from datetime import datetime

from subtrack.cards.cadence import CardTransaction
from subtrack.cards.provider import CardTransactionProvider, PlaidTransactionsProvider, transaction_from_payload
from subtrack.cards.reconciler import ReconcileSummary, reconcile_card_transactions
from subtrack.cards.repository import CardLinkRepository, CardTransactionRepository
from subtrack.errors import ProviderNotConfiguredError
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, log_event
from subtrack.subscriptions.lifecycle import sweep_subscriptions
from subtrack.subscriptions.models import utc_now

logger = get_logger(__name__)

# Upper bound on pages per sync; the provider keeps the cursor for the rest
MAX_SYNC_PAGES = 50


def sync_card_transactions(
    user_id: str,
    provider: CardTransactionProvider | None = None,
    now: datetime | None = None,
) -> ReconcileSummary:
    """
    Pull new card transactions for a user and reconcile them.

    Raises:
        ProviderNotConfiguredError: User has no card link or provider credentials are missing
        AdapterError: Provider kept failing after retries (cursor is not advanced)
    """
    link = CardLinkRepository.get(user_id)
    if link is None:
        raise ProviderNotConfiguredError("plaid", "no linked card account")

    provider = provider or PlaidTransactionsProvider()
    now = now or utc_now()

    cursor = link.cursor
    fetched: list[CardTransaction] = []
    for _ in range(MAX_SYNC_PAGES):
        page = provider.sync(link.access_token, cursor)
        for payload in [*page.added, *page.modified]:
            tx = transaction_from_payload(payload)
            if tx is None:
                counter("cards.sync.invalid_transaction")
                continue
            fetched.append(tx)
        cursor = page.next_cursor or cursor
        if not page.has_more:
            break
    else:
        logger.warning("Card sync for user %s stopped after %d pages", user_id, MAX_SYNC_PAGES)

    CardTransactionRepository.upsert_many(user_id, fetched)
    CardLinkRepository.save_cursor(user_id, cursor)

    summary = reconcile_card_transactions(user_id, CardTransactionRepository.list_settled(user_id), now=now)
    sweep_subscriptions(user_id, now=now)

    log_event("cards.sync.complete", user=user_id, fetched=len(fetched), created=summary.created)
    return summary
