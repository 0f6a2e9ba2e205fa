"""
Mailbox scan endpoints.

Scans run synchronously inside the request (FastAPI threadpool); progress is
persisted per scan so another client can poll GET /api/scans/{scan_id}.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from subtrack.api.dependencies import MessageSourceFactory, get_message_source_factory, get_user_id
from subtrack.observability.logging import get_logger
from subtrack.subscriptions.ingestion import scan_mailbox
from subtrack.subscriptions.models import ScanMode, ScanSession
from subtrack.subscriptions.repository import ScanSessionRepository

router = APIRouter(prefix="/api/scans", tags=["scans"])
logger = get_logger(__name__)


class ScanRequest(BaseModel):
    mode: ScanMode = ScanMode.INCREMENTAL
    access_token: str | None = None
    refresh_token: str | None = None


@router.post("")
def start_scan(
    request: ScanRequest,
    user_id: str = Depends(get_user_id),
    source_factory: MessageSourceFactory = Depends(get_message_source_factory),
) -> dict[str, Any]:
    source = source_factory(request.access_token, request.refresh_token)
    summary = scan_mailbox(user_id, mode=request.mode, source=source)
    logger.info("Scan %s finished for user %s", summary.scan_id, user_id)
    return {
        "scan_id": summary.scan_id,
        "processed": summary.processed,
        "new_charges": summary.new_charges,
        "skipped_existing": summary.skipped_existing,
        "skipped_other": summary.skipped_other,
        "pending_review": summary.pending_review,
        "scanned_after": summary.scanned_after.isoformat() if summary.scanned_after else None,
    }


@router.get("/{scan_id}")
def get_scan(scan_id: str, user_id: str = Depends(get_user_id)) -> ScanSession:
    session = ScanSessionRepository.get(user_id, scan_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    return session
