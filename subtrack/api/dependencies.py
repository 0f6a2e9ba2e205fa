"""Request-scoped dependencies: caller identity and provider factories."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Header, HTTPException

from subtrack.cards.provider import CardTransactionProvider, PlaidTransactionsProvider
from subtrack.config import GOOGLE_OAUTH_CLIENT_ID, GOOGLE_OAUTH_CLIENT_SECRET
from subtrack.errors import ProviderNotConfiguredError
from subtrack.gmail.client import GmailMessageSource, MessageSource

MessageSourceFactory = Callable[[str | None, str | None], MessageSource]


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Authentication happens upstream; the gateway forwards the user id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    return x_user_id.strip()


def _gmail_source(access_token: str | None, refresh_token: str | None) -> MessageSource:
    if not access_token:
        raise ProviderNotConfiguredError("gmail", "no access token supplied")
    return GmailMessageSource.from_tokens(
        access_token,
        refresh_token=refresh_token,
        client_id=GOOGLE_OAUTH_CLIENT_ID,
        client_secret=GOOGLE_OAUTH_CLIENT_SECRET,
    )


def get_message_source_factory() -> MessageSourceFactory:
    return _gmail_source


def get_card_provider() -> CardTransactionProvider:
    return PlaidTransactionsProvider()
