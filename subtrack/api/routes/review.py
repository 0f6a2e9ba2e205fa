"""Review queue endpoints for low-confidence billing candidates."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from subtrack.api.dependencies import get_user_id
from subtrack.config import API_LIST_LIMIT_DEFAULT, API_LIST_LIMIT_MAX
from subtrack.subscriptions.models import PendingSuggestion, ReviewDecision
from subtrack.subscriptions.repository import PendingSuggestionRepository
from subtrack.subscriptions.review import (
    ReviewEdits,
    decline_review_item,
    list_review_items,
    next_review_item,
    verify_review_item,
)

router = APIRouter(prefix="/api/review", tags=["review"])


class VerifyRequest(BaseModel):
    edits: ReviewEdits | None = None
    always_ignore_sender: bool = False


class DeclineRequest(BaseModel):
    always_ignore_sender: bool = False


@router.get("/next")
def get_next_item(user_id: str = Depends(get_user_id)) -> dict[str, Any]:
    return {
        "item": next_review_item(user_id),
        "remaining": PendingSuggestionRepository.count_pending(user_id),
    }


@router.get("")
def list_items(
    user_id: str = Depends(get_user_id),
    decision: ReviewDecision = ReviewDecision.PENDING,
    level: int | None = Query(default=None, ge=1, le=5),
    limit: int = Query(default=API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
) -> list[PendingSuggestion]:
    return list_review_items(user_id, decision=decision, level=level, limit=limit)


@router.post("/{item_id}/verify")
def verify_item(
    item_id: str,
    request: VerifyRequest | None = None,
    user_id: str = Depends(get_user_id),
) -> dict[str, Any]:
    request = request or VerifyRequest()
    subscription = verify_review_item(
        user_id,
        item_id,
        edits=request.edits,
        always_ignore_sender=request.always_ignore_sender,
    )
    return {"id": item_id, "decision": ReviewDecision.VERIFIED.value, "subscription": subscription}


@router.post("/{item_id}/decline")
def decline_item(
    item_id: str,
    request: DeclineRequest | None = None,
    user_id: str = Depends(get_user_id),
) -> dict[str, Any]:
    request = request or DeclineRequest()
    decline_review_item(user_id, item_id, always_ignore_sender=request.always_ignore_sender)
    return {"id": item_id, "decision": ReviewDecision.DECLINED.value}
