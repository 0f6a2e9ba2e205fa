"""
Subscriptions API endpoints.

Read-only views over the aggregate plus soft delete / restore. All other
writes go through scans, review and card sync.
"""

from __future__ import annotations

import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from subtrack.api.dependencies import get_user_id
from subtrack.config import API_LIST_LIMIT_DEFAULT, API_LIST_LIMIT_MAX
from subtrack.errors import SubscriptionNotFoundError
from subtrack.observability.logging import get_logger
from subtrack.subscriptions.ledger import ChargeRepository
from subtrack.subscriptions.models import Charge, Subscription, SubscriptionStatus
from subtrack.subscriptions.repository import SubscriptionRepository

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = get_logger(__name__)


def _require(user_id: str, subscription_id: str) -> Subscription:
    subscription = SubscriptionRepository.get_by_id(user_id, subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(f"subscription {subscription_id} not found")
    return subscription


@router.get("")
def list_subscriptions(
    user_id: str = Depends(get_user_id),
    status: list[SubscriptionStatus] | None = Query(default=None),
    include_deleted: bool = False,
    limit: int = Query(default=API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    subscriptions = SubscriptionRepository.list_by_user(
        user_id,
        status=[s.value for s in status] if status else None,
        include_deleted=include_deleted,
        limit=limit,
        offset=offset,
    )
    live = [s for s in subscriptions if s.deleted_at is None]
    return {
        "subscriptions": subscriptions,
        "total": len(subscriptions),
        "estimated_monthly_spend": round(
            sum(s.estimated_monthly_spend for s in live if s.status in ("active", "trial", "past_due")), 2
        ),
    }


@router.get("/{subscription_id}")
def get_subscription(subscription_id: str, user_id: str = Depends(get_user_id)) -> Subscription:
    return _require(user_id, subscription_id)


@router.get("/{subscription_id}/charges")
def list_charges(
    subscription_id: str,
    user_id: str = Depends(get_user_id),
    limit: int = Query(default=API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
) -> list[Charge]:
    _require(user_id, subscription_id)
    return ChargeRepository.list_by_subscription(user_id, subscription_id, limit=limit)


@router.delete("/{subscription_id}")
def delete_subscription(subscription_id: str, user_id: str = Depends(get_user_id)) -> dict[str, Any]:
    _require(user_id, subscription_id)
    if not SubscriptionRepository.soft_delete(user_id, subscription_id):
        raise HTTPException(status_code=409, detail="Subscription already deleted")
    return {"id": subscription_id, "deleted": True}


@router.post("/{subscription_id}/restore")
def restore_subscription(subscription_id: str, user_id: str = Depends(get_user_id)) -> Subscription:
    _require(user_id, subscription_id)
    try:
        restored = SubscriptionRepository.restore(user_id, subscription_id)
    except sqlite3.IntegrityError:
        raise HTTPException(
            status_code=409, detail="A live subscription for this service already exists"
        ) from None
    if not restored:
        raise HTTPException(status_code=409, detail="Subscription is not deleted")
    return _require(user_id, subscription_id)
