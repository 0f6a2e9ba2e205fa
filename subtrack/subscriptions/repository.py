"""
Subscription Repository - CRUD for subscriptions and the review-loop tables.

Follows the database patterns in subtrack/infrastructure/database.py. Methods
that take a `conn` participate in the caller's transaction (the aggregator
holds one transaction per read-modify-write); the rest open their own.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from subtrack.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from subtrack.observability.logging import get_logger
from subtrack.subscriptions.models import (
    MerchantRule,
    PendingSuggestion,
    ReviewDecision,
    ScanMode,
    ScanSession,
    ScanStatus,
    Subscription,
    parse_dt,
    utc_now,
)

logger = get_logger(__name__)

_SUBSCRIPTION_COLUMNS = (
    "id",
    "user_id",
    "service_normalized",
    "display_service",
    "category",
    "currency",
    "billing_cycle",
    "confirmed_billing_cycle",
    "status",
    "amount",
    "confirmed_amount",
    "monthly_amount",
    "estimated_monthly_spend",
    "first_charge_at",
    "last_charge_at",
    "next_renewal",
    "total_charges",
    "total_amount",
    "source",
    "source_confidence",
    "card_linked",
    "auto_canceled",
    "auto_canceled_reason",
    "last_card_transaction_id",
    "last_card_transaction_at",
    "first_detected_at",
    "deleted_at",
    "created_at",
    "updated_at",
)


class SubscriptionRepository:
    """
    Repository for Subscription rows.

    Status transitions and totals are owned by the aggregator; other callers
    only read, soft-delete or restore.
    """

    @staticmethod
    def insert(conn: sqlite3.Connection, subscription: Subscription) -> Subscription:
        columns = ", ".join(_SUBSCRIPTION_COLUMNS)
        params = ", ".join(f":{c}" for c in _SUBSCRIPTION_COLUMNS)
        conn.execute(
            f"INSERT INTO subscriptions ({columns}) VALUES ({params})",
            subscription.to_db_dict(),
        )
        logger.info(
            "Created subscription %s (%s) for user %s",
            subscription.id,
            subscription.service_normalized,
            subscription.user_id,
        )
        return subscription

    @staticmethod
    def update(conn: sqlite3.Connection, subscription: Subscription) -> Subscription:
        subscription.updated_at = utc_now()
        assignments = ", ".join(f"{c} = :{c}" for c in _SUBSCRIPTION_COLUMNS if c not in ("id", "user_id"))
        conn.execute(
            f"UPDATE subscriptions SET {assignments} WHERE id = :id AND user_id = :user_id",
            subscription.to_db_dict(),
        )
        return subscription

    @staticmethod
    def get_live_by_service(
        conn: sqlite3.Connection, user_id: str, service_normalized: str
    ) -> Subscription | None:
        row = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE user_id = ? AND service_normalized = ? AND deleted_at IS NULL
            """,
            (user_id, service_normalized),
        ).fetchone()
        return Subscription.from_db_row(dict(row)) if row else None

    @staticmethod
    def get_by_id(user_id: str, subscription_id: str, conn: sqlite3.Connection | None = None) -> Subscription | None:
        query = "SELECT * FROM subscriptions WHERE id = ? AND user_id = ?"
        if conn is not None:
            row = conn.execute(query, (subscription_id, user_id)).fetchone()
        else:
            with get_db_connection() as own:
                row = own.execute(query, (subscription_id, user_id)).fetchone()
        return Subscription.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_by_user(
        user_id: str,
        status: list[str] | None = None,
        include_deleted: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Subscription]:
        """
        List subscriptions for a user, optionally filtered by status.

        Returns:
            Subscriptions ordered by created_at ASC (oldest first)
        """
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        if status:
            clauses.append(f"status IN ({','.join('?' * len(status))})")
            params.extend(status)

        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM subscriptions
                WHERE {" AND ".join(clauses)}
                ORDER BY created_at ASC, id ASC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()

        return [Subscription.from_db_row(dict(row)) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def soft_delete(user_id: str, subscription_id: str) -> bool:
        now = utc_now().isoformat()
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE subscriptions SET deleted_at = ?, updated_at = ?
                WHERE id = ? AND user_id = ? AND deleted_at IS NULL
                """,
                (now, now, subscription_id, user_id),
            )
        if cursor.rowcount:
            logger.info("Soft-deleted subscription %s for user %s", subscription_id, user_id)
        return cursor.rowcount > 0

    @staticmethod
    @retry_on_db_lock()
    def restore(user_id: str, subscription_id: str) -> bool:
        """
        Clear deleted_at.

        Raises:
            sqlite3.IntegrityError: A live subscription for the same service exists
        """
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE subscriptions SET deleted_at = NULL, updated_at = ?
                WHERE id = ? AND user_id = ? AND deleted_at IS NOT NULL
                """,
                (utc_now().isoformat(), subscription_id, user_id),
            )
        return cursor.rowcount > 0

    @staticmethod
    @retry_on_db_lock()
    def delete_for_user(user_id: str) -> int:
        """Hard-delete every subscription for a user (full rescan reset)."""
        with db_transaction() as conn:
            cursor = conn.execute("DELETE FROM subscriptions WHERE user_id = ?", (user_id,))
        logger.info("Deleted %d subscriptions for user %s", cursor.rowcount, user_id)
        return cursor.rowcount


class PendingSuggestionRepository:
    """Low-confidence candidates awaiting review."""

    @staticmethod
    @retry_on_db_lock()
    def create(suggestion: PendingSuggestion) -> bool:
        """Insert unless a suggestion already exists for the same message."""
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO pending_suggestions (
                    id, user_id, source_message_id, sender, subject, charged_at, service,
                    amount, currency, billing_cycle, category, kind, confidence,
                    confidence_level, decision, preview, extracted, edited_fields,
                    decided_at, created_at
                ) VALUES (
                    :id, :user_id, :source_message_id, :sender, :subject, :charged_at, :service,
                    :amount, :currency, :billing_cycle, :category, :kind, :confidence,
                    :confidence_level, :decision, :preview, :extracted, :edited_fields,
                    :decided_at, :created_at
                )
                """,
                suggestion.to_db_dict(),
            )
        if cursor.rowcount:
            logger.info("Created review item %s for user %s", suggestion.id, suggestion.user_id)
        return cursor.rowcount > 0

    @staticmethod
    def get_by_id(user_id: str, item_id: str) -> PendingSuggestion | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM pending_suggestions WHERE id = ? AND user_id = ?",
                (item_id, user_id),
            ).fetchone()
        return PendingSuggestion.from_db_row(dict(row)) if row else None

    @staticmethod
    def next_pending(user_id: str) -> PendingSuggestion | None:
        """Highest confidence level first, newest first within a level."""
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM pending_suggestions
                WHERE user_id = ? AND decision = ?
                ORDER BY confidence_level DESC, created_at DESC
                LIMIT 1
                """,
                (user_id, ReviewDecision.PENDING.value),
            ).fetchone()
        return PendingSuggestion.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_by_user(
        user_id: str,
        decision: str = ReviewDecision.PENDING.value,
        level: int | None = None,
        limit: int = 100,
    ) -> list[PendingSuggestion]:
        clauses = ["user_id = ?", "decision = ?"]
        params: list[Any] = [user_id, decision]
        if level is not None:
            clauses.append("confidence_level = ?")
            params.append(level)
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM pending_suggestions
                WHERE {" AND ".join(clauses)}
                ORDER BY confidence_level DESC, created_at DESC
                LIMIT ?
                """,
                (*params, limit),
            ).fetchall()
        return [PendingSuggestion.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def count_pending(user_id: str) -> int:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM pending_suggestions WHERE user_id = ? AND decision = ?",
                (user_id, ReviewDecision.PENDING.value),
            ).fetchone()
        return int(row[0])

    @staticmethod
    @retry_on_db_lock()
    def decide(
        user_id: str,
        item_id: str,
        decision: ReviewDecision,
        edited_fields: dict[str, Any] | None = None,
    ) -> bool:
        """Mark a pending item decided. False if it was not pending."""
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pending_suggestions
                SET decision = ?, decided_at = ?, edited_fields = ?
                WHERE id = ? AND user_id = ? AND decision = ?
                """,
                (
                    decision.value,
                    utc_now().isoformat(),
                    json.dumps(edited_fields) if edited_fields is not None else None,
                    item_id,
                    user_id,
                    ReviewDecision.PENDING.value,
                ),
            )
        return cursor.rowcount > 0

    @staticmethod
    @retry_on_db_lock()
    def delete_for_user(user_id: str) -> int:
        with db_transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM pending_suggestions WHERE user_id = ? AND decision = ?",
                (user_id, ReviewDecision.PENDING.value),
            )
        return cursor.rowcount


class IgnoredSenderRepository:
    @staticmethod
    @retry_on_db_lock()
    def add(user_id: str, sender: str) -> None:
        with db_transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO ignored_senders (user_id, sender, created_at) VALUES (?, ?, ?)",
                (user_id, sender.lower(), utc_now().isoformat()),
            )
        logger.info("Ignoring sender for user %s", user_id)

    @staticmethod
    def is_ignored(user_id: str, sender: str) -> bool:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM ignored_senders WHERE user_id = ? AND sender = ?",
                (user_id, sender.lower()),
            ).fetchone()
        return row is not None

    @staticmethod
    def list_by_user(user_id: str) -> list[str]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT sender FROM ignored_senders WHERE user_id = ? ORDER BY sender",
                (user_id,),
            ).fetchall()
        return [row["sender"] for row in rows]


class MerchantRuleRepository:
    """Per-user, per-domain memory of review outcomes."""

    @staticmethod
    def get(user_id: str, domain: str) -> MerchantRule | None:
        if not domain:
            return None
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM merchant_rules WHERE user_id = ? AND domain = ?",
                (user_id, domain.lower()),
            ).fetchone()
        return MerchantRule.from_db_row(dict(row)) if row else None

    @staticmethod
    @retry_on_db_lock()
    def record_verified(
        user_id: str,
        domain: str,
        kind: str | None = None,
        service: str | None = None,
        category: str | None = None,
    ) -> None:
        """verified_count += 1 and remember the verified defaults."""
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO merchant_rules (
                    user_id, domain, default_kind, default_service, default_category,
                    verified_count, declined_count, updated_at
                ) VALUES (?, ?, ?, ?, ?, 1, 0, ?)
                ON CONFLICT(user_id, domain) DO UPDATE SET
                    default_kind = COALESCE(excluded.default_kind, default_kind),
                    default_service = COALESCE(excluded.default_service, default_service),
                    default_category = COALESCE(excluded.default_category, default_category),
                    verified_count = verified_count + 1,
                    updated_at = excluded.updated_at
                """,
                (user_id, domain.lower(), kind, service, category, utc_now().isoformat()),
            )

    @staticmethod
    @retry_on_db_lock()
    def record_declined(user_id: str, domain: str) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO merchant_rules (user_id, domain, verified_count, declined_count, updated_at)
                VALUES (?, ?, 0, 1, ?)
                ON CONFLICT(user_id, domain) DO UPDATE SET
                    declined_count = declined_count + 1,
                    updated_at = excluded.updated_at
                """,
                (user_id, domain.lower(), utc_now().isoformat()),
            )


class ScanSessionRepository:
    """Progress counters for mailbox scans."""

    @staticmethod
    @retry_on_db_lock()
    def create(user_id: str, mode: ScanMode | str, scanned_after: datetime | None = None) -> ScanSession:
        session = ScanSession(
            scan_id=str(uuid.uuid4()),
            user_id=user_id,
            mode=mode,
            scanned_after=scanned_after,
        )
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO scan_sessions (scan_id, user_id, mode, status, scanned_after, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    session.scan_id,
                    user_id,
                    session.mode,
                    session.status,
                    scanned_after.isoformat() if scanned_after else None,
                    session.started_at.isoformat(),
                ),
            )
        logger.info("Created scan session %s for user %s (%s)", session.scan_id, user_id, session.mode)
        return session

    @staticmethod
    @retry_on_db_lock()
    def update_progress(scan_id: str, **counters: int) -> None:
        allowed = {
            "total_messages",
            "processed",
            "new_charges",
            "skipped_existing",
            "skipped_other",
            "pending_review",
        }
        unknown = set(counters) - allowed
        if unknown:
            raise ValueError(f"Unknown scan counters: {unknown}")
        if not counters:
            return
        assignments = ", ".join(f"{name} = :{name}" for name in counters)
        with db_transaction() as conn:
            conn.execute(
                f"UPDATE scan_sessions SET {assignments} WHERE scan_id = :scan_id",
                {**counters, "scan_id": scan_id},
            )

    @staticmethod
    @retry_on_db_lock()
    def finish(scan_id: str, status: ScanStatus, error: str | None = None) -> None:
        with db_transaction() as conn:
            conn.execute(
                "UPDATE scan_sessions SET status = ?, error = ?, completed_at = ? WHERE scan_id = ?",
                (status.value, error, utc_now().isoformat(), scan_id),
            )

    @staticmethod
    def get(user_id: str, scan_id: str) -> ScanSession | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM scan_sessions WHERE scan_id = ? AND user_id = ?",
                (scan_id, user_id),
            ).fetchone()
        return ScanSession.from_db_row(dict(row)) if row else None


class ScanStateRepository:
    """High-water mark for incremental scan windows."""

    @staticmethod
    def get_last_scan_at(user_id: str) -> datetime | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT last_scan_at FROM user_scan_state WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return parse_dt(row["last_scan_at"]) if row else None

    @staticmethod
    @retry_on_db_lock()
    def set_last_scan_at(user_id: str, when: datetime) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_scan_state (user_id, last_scan_at) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET last_scan_at = excluded.last_scan_at
                """,
                (user_id, when.isoformat()),
            )
