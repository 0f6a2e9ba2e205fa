"""
Card-transaction provider adapters.

The engine only needs a cursor-paginated sync call. PlaidTransactionsProvider
talks to a Plaid-compatible /transactions/sync endpoint over HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from subtrack.cards.cadence import CardTransaction
from subtrack.config import (
    CARD_SYNC_PAGE_SIZE,
    CARD_SYNC_TIMEOUT_SECONDS,
    PLAID_BASE_URLS,
    PLAID_CLIENT_ID,
    PLAID_ENV,
    PLAID_SECRET,
)
from subtrack.errors import ProviderNotConfiguredError
from subtrack.infrastructure.retry import AdapterError, RetryPolicy
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, time_block
from subtrack.subscriptions.models import parse_dt

logger = get_logger(__name__)


@dataclass
class CardSyncPage:
    added: list[dict[str, Any]] = field(default_factory=list)
    modified: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


class CardTransactionProvider(Protocol):
    def sync(self, access_token: str, cursor: str | None) -> CardSyncPage: ...


def transaction_from_payload(payload: dict[str, Any]) -> CardTransaction | None:
    """
    Normalize one provider transaction. Returns None when id or date is missing
    or a field cannot be coerced.

    Amounts are stored as absolute values; the merchant falls back to `name`
    when `merchant_name` is empty.
    """
    tx_id = payload.get("transaction_id")
    raw_date = payload.get("date")
    if not tx_id or not raw_date:
        return None

    try:
        amount = abs(float(payload.get("amount") or 0))
    except (TypeError, ValueError):
        amount = 0.0

    try:
        return CardTransaction(
            transaction_id=str(tx_id),
            merchant=str(payload.get("merchant_name") or payload.get("name") or ""),
            amount=amount,
            date=parse_dt(raw_date),
            currency=str(payload.get("iso_currency_code") or "USD").upper(),
            pending=bool(payload.get("pending")),
        )
    except (TypeError, ValueError) as exc:
        logger.warning("Dropping card transaction %s: %s", tx_id, exc)
        return None


class PlaidTransactionsProvider:
    """
    CardTransactionProvider backed by Plaid's /transactions/sync.

    Args:
        client_id, secret: API credentials (default: PLAID_CLIENT_ID / PLAID_SECRET)
        environment: sandbox | development | production
        session: requests.Session to reuse (tests pass a stub)
    """

    def __init__(
        self,
        client_id: str | None = None,
        secret: str | None = None,
        environment: str | None = None,
        session: requests.Session | None = None,
        timeout: float = CARD_SYNC_TIMEOUT_SECONDS,
    ):
        self.client_id = client_id or PLAID_CLIENT_ID
        self.secret = secret or PLAID_SECRET
        if not self.client_id or not self.secret:
            raise ProviderNotConfiguredError("plaid", "PLAID_CLIENT_ID and PLAID_SECRET are required")

        env = environment or PLAID_ENV
        if env not in PLAID_BASE_URLS:
            raise ProviderNotConfiguredError("plaid", f"unknown environment {env!r}")
        self.base_url = PLAID_BASE_URLS[env]
        self.session = session or requests.Session()
        self.timeout = timeout
        self._policy = RetryPolicy(stage="cards.sync", fatal=(ProviderNotConfiguredError,))

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.session.post(
                f"{self.base_url}{path}",
                json={"client_id": self.client_id, "secret": self.secret, **body},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise AdapterError(f"card provider timed out: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise AdapterError(f"card provider request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise ProviderNotConfiguredError("plaid", f"credentials rejected ({response.status_code})")
        if response.status_code >= 400:
            logger.warning("Card provider %s returned %d", path, response.status_code)
            raise AdapterError(
                f"card provider returned {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    def sync(self, access_token: str, cursor: str | None) -> CardSyncPage:
        body: dict[str, Any] = {"access_token": access_token, "count": CARD_SYNC_PAGE_SIZE}
        if cursor:
            body["cursor"] = cursor

        with time_block("cards.sync.latency"):
            data = self._policy.execute(self._post, "/transactions/sync", body)

        counter("cards.sync.pages")
        return CardSyncPage(
            added=data.get("added", []),
            modified=data.get("modified", []),
            next_cursor=data.get("next_cursor"),
            has_more=bool(data.get("has_more")),
        )
