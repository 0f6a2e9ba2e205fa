"""Card link, card sync and lifecycle sweep endpoints."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from subtrack.api.dependencies import get_card_provider, get_user_id
from subtrack.cards.provider import CardTransactionProvider
from subtrack.cards.repository import CardLinkRepository
from subtrack.cards.sync import sync_card_transactions
from subtrack.subscriptions.lifecycle import sweep_subscriptions

router = APIRouter(prefix="/api", tags=["cards"])


class CardLinkRequest(BaseModel):
    access_token: str = Field(..., min_length=1)


@router.post("/cards/link")
def link_card_account(request: CardLinkRequest, user_id: str = Depends(get_user_id)) -> dict[str, Any]:
    """Store a provider access token obtained by the client's link flow."""
    CardLinkRepository.link(user_id, request.access_token)
    return {"linked": True}


@router.post("/cards/sync")
def sync_cards(
    user_id: str = Depends(get_user_id),
    provider: CardTransactionProvider = Depends(get_card_provider),
) -> dict[str, Any]:
    return asdict(sync_card_transactions(user_id, provider=provider))


@router.post("/sweep")
def run_sweep(user_id: str = Depends(get_user_id)) -> dict[str, Any]:
    return asdict(sweep_subscriptions(user_id))
