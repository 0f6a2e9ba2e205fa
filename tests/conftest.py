"""
Pytest configuration for Subtrack tests

Provides an isolated SQLite database per test, Gmail payload builders and an
in-memory MessageSource.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime
from typing import Any

import pytest

from subtrack.gmail.client import MessagePage
from subtrack.infrastructure.database import close_pool, init_database
from subtrack.infrastructure.llm_budget import reset_budget
from subtrack.observability.telemetry import reset_counters, reset_latencies
from subtrack.subscriptions.heuristics import load_provider_rules

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _no_llm(monkeypatch):
    """Tests exercise the deterministic path unless they inject an extractor."""
    monkeypatch.setenv("SUBTRACK_USE_LLM", "false")


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Fresh database file for one test; the pool is reopened against it."""
    db_path = tmp_path / "subtrack_test.db"
    monkeypatch.setenv("SUBTRACK_DB_PATH", str(db_path))
    close_pool()
    init_database()
    reset_counters()
    reset_latencies()
    reset_budget()
    load_provider_rules.cache_clear()
    yield db_path
    close_pool()


@pytest.fixture
def now() -> datetime:
    return NOW


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("utf-8")


def gmail_message(
    message_id: str,
    subject: str,
    sender: str,
    body: str,
    snippet: str = "",
    received: datetime = NOW,
    mime_type: str = "text/plain",
    attachments: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Gmail API `format=full` payload with one body part and optional attachments."""
    body_part = {"mimeType": mime_type, "body": {"data": _b64(body)}}
    parts = [body_part, *(attachments or [])]
    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "snippet": snippet or body[:120],
        "internalDate": str(int(received.timestamp() * 1000)),
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": sender},
                {"name": "To", "value": "user@example.com"},
            ],
            "body": {"size": 0},
            "parts": parts,
        },
    }


def spotify_receipt(message_id: str = "spotify-1", received: datetime = NOW, amount: str = "9.99"):
    return gmail_message(
        message_id,
        subject=f"Your receipt from Spotify - ${amount}, charged monthly",
        sender="Spotify <no-reply@spotify.com>",
        body=(
            f"Thanks for your payment. You were charged ${amount} for Spotify Premium.\n"
            "We will charge you each month until you cancel."
        ),
        received=received,
    )


def promo_email(message_id: str = "promo-1", received: datetime = NOW):
    return gmail_message(
        message_id,
        subject="50% OFF this weekend only!",
        sender="Deals <news@shop.example.com>",
        body="Limited time: 50% off everything. Use code SAVE50. Click here to unsubscribe.",
        received=received,
    )


class FakeMessageSource:
    """In-memory MessageSource; pages through ids in insertion order."""

    def __init__(self, messages: list[dict[str, Any]] | None = None, page_size: int = 2):
        self.messages = {m["id"]: m for m in messages or []}
        self.page_size = page_size
        self.queries: list[str] = []
        self.fetched: list[str] = []
        self.errors: dict[str, Exception] = {}
        self.list_error: Exception | None = None

    def list_message_ids(self, query: str, page_token: str | None = None, max_results: int = 200) -> MessagePage:
        if self.list_error is not None:
            raise self.list_error
        self.queries.append(query)
        ids = list(self.messages)
        start = int(page_token or 0)
        size = min(self.page_size, max_results)
        end = start + size
        return MessagePage(ids=ids[start:end], next_page_token=str(end) if end < len(ids) else None)

    def get_message(self, message_id: str) -> dict[str, Any]:
        self.fetched.append(message_id)
        if message_id in self.errors:
            raise self.errors[message_id]
        return self.messages[message_id]

    def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        return b""


@pytest.fixture
def fake_source():
    return FakeMessageSource
