"""Card transaction storage and per-user card provider links."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from subtrack.cards.cadence import CardTransaction
from subtrack.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from subtrack.observability.logging import get_logger
from subtrack.subscriptions.models import parse_dt, utc_now

logger = get_logger(__name__)


@dataclass
class CardLink:
    user_id: str
    access_token: str
    cursor: str | None = None
    linked: bool = True
    last_synced_at: datetime | None = None


def _row_to_transaction(row: dict[str, Any]) -> CardTransaction:
    return CardTransaction(
        transaction_id=row["transaction_id"],
        merchant=row["merchant"],
        amount=float(row["amount"]),
        date=parse_dt(row["date"]),
        currency=row["currency"] or "USD",
        pending=bool(row["pending"]),
    )


class CardTransactionRepository:
    @staticmethod
    @retry_on_db_lock()
    def upsert_many(user_id: str, transactions: list[CardTransaction]) -> int:
        """Insert new transactions and refresh modified ones. Returns rows written."""
        if not transactions:
            return 0
        now = utc_now().isoformat()
        with db_transaction() as conn:
            conn.executemany(
                """
                INSERT INTO card_transactions (
                    user_id, transaction_id, amount, currency, merchant, date, pending, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, transaction_id) DO UPDATE SET
                    amount = excluded.amount,
                    currency = excluded.currency,
                    merchant = excluded.merchant,
                    date = excluded.date,
                    pending = excluded.pending,
                    updated_at = excluded.updated_at
                """,
                [
                    (
                        user_id,
                        tx.transaction_id,
                        tx.amount,
                        tx.currency,
                        tx.merchant,
                        tx.date.isoformat(),
                        int(tx.pending),
                        now,
                    )
                    for tx in transactions
                ],
            )
        logger.info("Stored %d card transactions for user %s", len(transactions), user_id)
        return len(transactions)

    @staticmethod
    def list_settled(user_id: str) -> list[CardTransaction]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM card_transactions WHERE user_id = ? AND pending = 0 ORDER BY date DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_transaction(dict(row)) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def delete_for_user(user_id: str) -> int:
        with db_transaction() as conn:
            cursor = conn.execute("DELETE FROM card_transactions WHERE user_id = ?", (user_id,))
        return cursor.rowcount


class CardLinkRepository:
    @staticmethod
    @retry_on_db_lock()
    def link(user_id: str, access_token: str) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO card_links (user_id, access_token, cursor, linked, created_at)
                VALUES (?, ?, NULL, 1, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    access_token = excluded.access_token,
                    linked = 1
                """,
                (user_id, access_token, utc_now().isoformat()),
            )

    @staticmethod
    def get(user_id: str) -> CardLink | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM card_links WHERE user_id = ? AND linked = 1",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return CardLink(
            user_id=row["user_id"],
            access_token=row["access_token"],
            cursor=row["cursor"],
            linked=bool(row["linked"]),
            last_synced_at=parse_dt(row["last_synced_at"]),
        )

    @staticmethod
    @retry_on_db_lock()
    def save_cursor(user_id: str, cursor: str | None) -> None:
        with db_transaction() as conn:
            conn.execute(
                "UPDATE card_links SET cursor = ?, last_synced_at = ? WHERE user_id = ?",
                (cursor, utc_now().isoformat(), user_id),
            )
