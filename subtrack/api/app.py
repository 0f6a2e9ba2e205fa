"""FastAPI server for Subtrack subscription tracking"""

from __future__ import annotations

import os
import sqlite3

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from subtrack.api.routes.cards import router as cards_router
from subtrack.api.routes.health import router as health_router
from subtrack.api.routes.review import router as review_router
from subtrack.api.routes.scans import router as scans_router
from subtrack.api.routes.subscriptions import router as subscriptions_router
from subtrack.config import APP_VERSION
from subtrack.errors import (
    MailProviderAuthError,
    ProviderNotConfiguredError,
    ReviewItemNotFoundError,
    ReviewValidationError,
    SubscriptionNotFoundError,
)
from subtrack.infrastructure.database import init_database
from subtrack.infrastructure.retry import AdapterError
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)

app = FastAPI(title="Subtrack API", version=APP_VERSION)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log the full validation error, return only the offending field names."""
    logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
    counter("api.validation_errors")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.exception_handler(ProviderNotConfiguredError)
async def provider_not_configured_handler(request: Request, exc: ProviderNotConfiguredError) -> JSONResponse:
    counter("api.provider_not_configured")
    return _error(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(MailProviderAuthError)
async def mail_auth_handler(request: Request, exc: MailProviderAuthError) -> JSONResponse:
    # Revoked grants need a reconnect, not a retry
    counter("api.mail_auth_error")
    return _error(status.HTTP_409_CONFLICT, str(exc))


@app.exception_handler(ReviewItemNotFoundError)
@app.exception_handler(SubscriptionNotFoundError)
async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(ReviewValidationError)
async def review_validation_handler(request: Request, exc: ReviewValidationError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(AdapterError)
async def adapter_error_handler(request: Request, exc: AdapterError) -> JSONResponse:
    logger.error("Upstream provider failed on %s: %s", request.url.path, exc)
    counter("api.upstream_error")
    return _error(status.HTTP_502_BAD_GATEWAY, "Upstream provider unavailable")


ALLOWED_ORIGINS = [origin for origin in os.getenv("SUBTRACK_ALLOWED_ORIGINS", "").split(",") if origin]

# Allow localhost in development only
if os.getenv("SUBTRACK_ENV", "development") == "development":
    ALLOWED_ORIGINS.extend(
        [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ]
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-User-ID"],
)


@app.on_event("startup")
def initialize_database() -> None:
    """Create tables (idempotent)."""
    try:
        logger.info("Initializing database schema...")
        init_database()
        logger.info("Database initialization complete")
    except sqlite3.OperationalError as e:
        logger.critical("Database schema error: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e


app.include_router(health_router)
app.include_router(scans_router)
app.include_router(subscriptions_router)
app.include_router(review_router)
app.include_router(cards_router)
