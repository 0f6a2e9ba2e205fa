"""Health check endpoints."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from subtrack.config import APP_VERSION
from subtrack.llm.gemini import llm_credentials_present

router = APIRouter(tags=["health"])

_LATENCY_METRICS = (
    "ingestion.list.latency",
    "ingestion.scan.latency",
    "gmail.list.latency",
    "gmail.get.latency",
    "cards.sync.latency",
)


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Service status and credential readiness (no provider calls are made)."""
    return {
        "status": "healthy",
        "service": "Subtrack API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "llm": {
            "ready": llm_credentials_present(),
            "enabled": os.getenv("SUBTRACK_USE_LLM", "false").lower() == "true",
        },
        "cards": {"ready": bool(os.getenv("PLAID_CLIENT_ID") and os.getenv("PLAID_SECRET"))},
    }


@router.get("/health/db")
async def database_health() -> dict[str, Any]:
    """Connection pool usage; degraded above 80%."""
    from subtrack.infrastructure.database import get_pool_stats

    stats = get_pool_stats()
    return {
        "status": "degraded" if stats["usage_percent"] > 80 else "healthy",
        "pool": stats,
    }


@router.get("/health/metrics")
async def metrics() -> dict[str, Any]:
    """In-process counters and stage latencies since startup."""
    from subtrack.observability.telemetry import get_latency_stats, snapshot_counters

    return {
        "counters": snapshot_counters(),
        "latency": {name: get_latency_stats(name) for name in _LATENCY_METRICS},
    }
