"""
API tests for the Subtrack FastAPI app.

Providers are swapped through FastAPI dependency overrides; the database is
the per-test SQLite file from the temp_db fixture.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import FakeMessageSource, spotify_receipt
from fastapi.testclient import TestClient

from subtrack.api.app import app
from subtrack.api.dependencies import get_card_provider, get_message_source_factory
from subtrack.cards.provider import CardSyncPage
from subtrack.errors import MailProviderAuthError
from subtrack.subscriptions.models import PendingSuggestion
from subtrack.subscriptions.repository import PendingSuggestionRepository

HEADERS = {"X-User-ID": "u1"}


@pytest.fixture
def client(temp_db):
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use_source(source: FakeMessageSource) -> None:
    app.dependency_overrides[get_message_source_factory] = lambda: (lambda access, refresh: source)


def _scan_one_receipt(client: TestClient) -> dict:
    recent = datetime.now(UTC) - timedelta(days=1)
    _use_source(FakeMessageSource([spotify_receipt(received=recent)]))
    response = client.post("/api/scans", json={"mode": "incremental", "access_token": "tok"}, headers=HEADERS)
    assert response.status_code == 200, response.text
    return response.json()


class TestHealthEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_database_health(self, client):
        response = client.get("/health/db")
        assert response.status_code == 200
        assert "pool" in response.json()

    def test_metrics_after_scan(self, client):
        _scan_one_receipt(client)

        metrics = client.get("/health/metrics").json()
        assert metrics["counters"]["aggregator.charge.created"] == 1
        assert metrics["counters"]["ledger.recorded"] == 1
        assert metrics["latency"]["ingestion.scan.latency"]["count"] == 1


class TestScanEndpoints:
    def test_missing_user_header_is_unauthorized(self, client):
        response = client.post("/api/scans", json={"mode": "incremental"})
        assert response.status_code == 401

    def test_scan_creates_subscription(self, client):
        summary = _scan_one_receipt(client)
        assert summary["new_charges"] == 1
        assert summary["processed"] == 1

        session = client.get(f"/api/scans/{summary['scan_id']}", headers=HEADERS).json()
        assert session["status"] == "completed"

        listing = client.get("/api/subscriptions", headers=HEADERS).json()
        assert listing["total"] == 1
        assert listing["subscriptions"][0]["display_service"] == "Spotify"
        assert listing["estimated_monthly_spend"] == pytest.approx(9.99)

    def test_scan_without_mailbox_token_is_bad_request(self, client):
        response = client.post("/api/scans", json={"mode": "full"}, headers=HEADERS)
        assert response.status_code == 400
        assert "gmail" in response.json()["detail"]

    def test_revoked_mailbox_is_conflict(self, client):
        source = FakeMessageSource([])
        source.list_error = MailProviderAuthError("invalid_grant")
        _use_source(source)

        response = client.post("/api/scans", json={"access_token": "tok"}, headers=HEADERS)
        assert response.status_code == 409

    def test_invalid_mode_returns_field_names(self, client):
        response = client.post("/api/scans", json={"mode": "weekly"}, headers=HEADERS)
        assert response.status_code == 422
        assert response.json()["invalid_fields"] == ["mode"]

    def test_unknown_scan_is_not_found(self, client):
        assert client.get("/api/scans/nope", headers=HEADERS).status_code == 404


class TestSubscriptionEndpoints:
    def test_delete_and_restore(self, client):
        _scan_one_receipt(client)
        subscription_id = client.get("/api/subscriptions", headers=HEADERS).json()["subscriptions"][0]["id"]

        assert client.delete(f"/api/subscriptions/{subscription_id}", headers=HEADERS).json()["deleted"] is True
        assert client.delete(f"/api/subscriptions/{subscription_id}", headers=HEADERS).status_code == 409
        assert client.get("/api/subscriptions", headers=HEADERS).json()["total"] == 0

        restored = client.post(f"/api/subscriptions/{subscription_id}/restore", headers=HEADERS)
        assert restored.status_code == 200
        assert restored.json()["deleted_at"] is None

    def test_charges_for_subscription(self, client):
        _scan_one_receipt(client)
        subscription_id = client.get("/api/subscriptions", headers=HEADERS).json()["subscriptions"][0]["id"]

        charges = client.get(f"/api/subscriptions/{subscription_id}/charges", headers=HEADERS).json()
        assert len(charges) == 1
        assert charges[0]["amount"] == pytest.approx(9.99)

    def test_other_users_cannot_see_subscription(self, client):
        _scan_one_receipt(client)
        subscription_id = client.get("/api/subscriptions", headers=HEADERS).json()["subscriptions"][0]["id"]

        response = client.get(f"/api/subscriptions/{subscription_id}", headers={"X-User-ID": "u2"})
        assert response.status_code == 404


class TestReviewEndpoints:
    def _queue_item(self) -> None:
        PendingSuggestionRepository.create(
            PendingSuggestion(
                id="r1",
                user_id="u1",
                source_message_id="msg-r1",
                sender="billing@calm.com",
                charged_at=datetime.now(UTC) - timedelta(days=2),
                service="Calm",
                amount=14.99,
                billing_cycle="monthly",
                confidence=0.5,
                confidence_level=3,
            )
        )

    def test_next_item_and_verify(self, client):
        self._queue_item()

        queue = client.get("/api/review/next", headers=HEADERS).json()
        assert queue["item"]["id"] == "r1"
        assert queue["remaining"] == 1

        response = client.post("/api/review/r1/verify", json={"edits": {"amount": 12.99}}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["subscription"]["amount"] == pytest.approx(12.99)
        assert client.get("/api/review/next", headers=HEADERS).json()["item"] is None

    def test_verify_rejects_zero_amount(self, client):
        self._queue_item()
        response = client.post("/api/review/r1/verify", json={"edits": {"amount": 0}}, headers=HEADERS)
        assert response.status_code == 400

    def test_decline(self, client):
        self._queue_item()
        response = client.post("/api/review/r1/decline", json={"always_ignore_sender": True}, headers=HEADERS)
        assert response.json()["decision"] == "declined"

    def test_unknown_item_is_not_found(self, client):
        assert client.post("/api/review/missing/decline", json={}, headers=HEADERS).status_code == 404


class _StaticCardProvider:
    def __init__(self, page: CardSyncPage):
        self.page = page

    def sync(self, access_token: str, cursor: str | None) -> CardSyncPage:
        return self.page


class TestCardEndpoints:
    def test_sync_without_link_is_bad_request(self, client):
        app.dependency_overrides[get_card_provider] = lambda: _StaticCardProvider(CardSyncPage())
        assert client.post("/api/cards/sync", headers=HEADERS).status_code == 400

    def test_link_then_sync(self, client):
        today = datetime.now(UTC).date()
        added = [
            {
                "transaction_id": tx_id,
                "merchant_name": "Disney Plus",
                "amount": 7.99,
                "date": (today - timedelta(days=days_ago)).isoformat(),
            }
            for tx_id, days_ago in (("d1", 31), ("d2", 1))
        ]
        page = CardSyncPage(added=added, next_cursor="c1")
        app.dependency_overrides[get_card_provider] = lambda: _StaticCardProvider(page)

        assert client.post("/api/cards/link", json={"access_token": "access-1"}, headers=HEADERS).json()["linked"]
        summary = client.post("/api/cards/sync", headers=HEADERS).json()

        assert summary["created"] == 1
        listing = client.get("/api/subscriptions", headers=HEADERS).json()
        assert listing["subscriptions"][0]["source_confidence"] == "card_only"

    def test_sweep(self, client):
        response = client.post("/api/sweep", headers=HEADERS)
        assert response.json() == {"canceled": 0, "expired": 0}
