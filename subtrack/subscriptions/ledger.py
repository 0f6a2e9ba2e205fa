"""
Charge Ledger - append-only record of confirmed monetary events.

At most one Charge exists per (user_id, source_message_id) and per
(user_id, source_transaction_id); the unique partial indexes enforce it and
`record` reports a duplicate instead of raising. Charges are never updated.
"""

from __future__ import annotations

import sqlite3
import uuid

from subtrack.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter
from subtrack.subscriptions.models import Charge, ChargeCreate, ChargeKind, normalize_service

logger = get_logger(__name__)


def new_charge(
    event: ChargeCreate,
    subscription_id: str | None = None,
    kind: ChargeKind = ChargeKind.SUBSCRIPTION,
) -> Charge:
    """Build the ledger row for an incoming charge event."""
    return Charge(
        id=str(uuid.uuid4()),
        user_id=event.user_id,
        subscription_id=subscription_id,
        service=event.service,
        service_normalized=normalize_service(event.service),
        amount=event.amount,
        currency=event.currency,
        billing_cycle=event.billing_cycle,
        charged_at=event.charged_at,
        source_message_id=event.source_message_id,
        source_transaction_id=event.source_transaction_id,
        category=event.category,
        kind=kind,
        subject=event.subject,
        sender=event.sender,
    )


class ChargeRepository:
    """Ledger persistence. Write methods take the caller's transaction."""

    @staticmethod
    def record(conn: sqlite3.Connection, charge: Charge) -> bool:
        """
        Insert a charge unless one already exists for its source id.

        Returns:
            True if inserted, False if it was a duplicate
        """
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO charges (
                id, user_id, subscription_id, service, service_normalized, amount,
                currency, billing_cycle, charged_at, source_message_id,
                source_transaction_id, category, kind, status, subject, sender, created_at
            ) VALUES (
                :id, :user_id, :subscription_id, :service, :service_normalized, :amount,
                :currency, :billing_cycle, :charged_at, :source_message_id,
                :source_transaction_id, :category, :kind, :status, :subject, :sender, :created_at
            )
            """,
            charge.to_db_dict(),
        )
        if cursor.rowcount == 0:
            counter("ledger.duplicate")
            logger.debug("Duplicate charge ignored for user %s", charge.user_id)
            return False

        counter("ledger.recorded")
        return True

    @staticmethod
    def exists_for_message(user_id: str, message_id: str) -> bool:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM charges WHERE user_id = ? AND source_message_id = ?",
                (user_id, message_id),
            ).fetchone()
        return row is not None

    @staticmethod
    def exists_for_transaction(conn: sqlite3.Connection, user_id: str, transaction_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM charges WHERE user_id = ? AND source_transaction_id = ?",
            (user_id, transaction_id),
        ).fetchone()
        return row is not None

    @staticmethod
    def list_by_subscription(user_id: str, subscription_id: str, limit: int = 100) -> list[Charge]:
        """Charges for one subscription, newest first."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM charges
                WHERE user_id = ? AND subscription_id = ?
                ORDER BY charged_at DESC
                LIMIT ?
                """,
                (user_id, subscription_id, limit),
            ).fetchall()
        return [Charge.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def list_by_user(user_id: str, limit: int = 500) -> list[Charge]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM charges WHERE user_id = ? ORDER BY charged_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [Charge.from_db_row(dict(row)) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def delete_for_user(user_id: str) -> int:
        """Remove every charge for a user (full rescan reset)."""
        with db_transaction() as conn:
            cursor = conn.execute("DELETE FROM charges WHERE user_id = ?", (user_id,))
        logger.info("Deleted %d charges for user %s", cursor.rowcount, user_id)
        return cursor.rowcount
