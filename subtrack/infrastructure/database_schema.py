"""
Database schema initialization for Subtrack.

Contains the SQL schema and validation logic, kept apart from database.py.
Timestamps are stored as ISO-8601 strings with UTC offsets.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from subtrack.observability.logging import get_logger

logger = get_logger(__name__)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Safe to run multiple times - uses CREATE TABLE IF NOT EXISTS.

    Side Effects:
    - Creates tables and indexes if they don't exist
    - Creates the parent directory if needed
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS subscriptions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                service_normalized TEXT NOT NULL,
                display_service TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT 'Other',
                currency TEXT NOT NULL DEFAULT 'USD',
                billing_cycle TEXT NOT NULL DEFAULT 'unknown',
                confirmed_billing_cycle TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                amount REAL NOT NULL DEFAULT 0,
                confirmed_amount REAL,
                monthly_amount REAL NOT NULL DEFAULT 0,
                estimated_monthly_spend REAL NOT NULL DEFAULT 0,
                first_charge_at TEXT,
                last_charge_at TEXT,
                next_renewal TEXT,
                total_charges INTEGER NOT NULL DEFAULT 0,
                total_amount REAL NOT NULL DEFAULT 0,
                source TEXT NOT NULL DEFAULT 'email',
                source_confidence TEXT NOT NULL DEFAULT 'email_only',
                card_linked INTEGER NOT NULL DEFAULT 0,
                auto_canceled INTEGER NOT NULL DEFAULT 0,
                auto_canceled_reason TEXT,
                last_card_transaction_id TEXT,
                last_card_transaction_at TEXT,
                first_detected_at TEXT NOT NULL,
                deleted_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_user_service_live
                ON subscriptions(user_id, service_normalized) WHERE deleted_at IS NULL;
            CREATE INDEX IF NOT EXISTS idx_subscriptions_user_status
                ON subscriptions(user_id, status);

            CREATE TABLE IF NOT EXISTS charges (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                subscription_id TEXT,
                service TEXT NOT NULL,
                service_normalized TEXT NOT NULL,
                amount REAL NOT NULL,
                currency TEXT NOT NULL DEFAULT 'USD',
                billing_cycle TEXT NOT NULL DEFAULT 'unknown',
                charged_at TEXT NOT NULL,
                source_message_id TEXT,
                source_transaction_id TEXT,
                category TEXT NOT NULL DEFAULT 'Other',
                kind TEXT NOT NULL DEFAULT 'subscription',
                status TEXT NOT NULL DEFAULT 'paid',
                subject TEXT,
                sender TEXT,
                created_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_charges_user_message
                ON charges(user_id, source_message_id) WHERE source_message_id IS NOT NULL;
            CREATE UNIQUE INDEX IF NOT EXISTS idx_charges_user_transaction
                ON charges(user_id, source_transaction_id)
                WHERE source_transaction_id IS NOT NULL;
            CREATE INDEX IF NOT EXISTS idx_charges_subscription
                ON charges(subscription_id, charged_at);

            CREATE TABLE IF NOT EXISTS pending_suggestions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                source_message_id TEXT NOT NULL,
                sender TEXT NOT NULL DEFAULT '',
                subject TEXT NOT NULL DEFAULT '',
                charged_at TEXT,
                service TEXT,
                amount REAL NOT NULL DEFAULT 0,
                currency TEXT NOT NULL DEFAULT 'USD',
                billing_cycle TEXT NOT NULL DEFAULT 'unknown',
                category TEXT NOT NULL DEFAULT 'Other',
                kind TEXT NOT NULL DEFAULT 'billing_event',
                confidence REAL NOT NULL DEFAULT 0,
                confidence_level INTEGER NOT NULL DEFAULT 2,
                decision TEXT NOT NULL DEFAULT 'pending',
                preview TEXT NOT NULL DEFAULT '',
                extracted TEXT NOT NULL DEFAULT '{}',
                edited_fields TEXT,
                decided_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(user_id, source_message_id)
            );

            CREATE INDEX IF NOT EXISTS idx_pending_user_decision
                ON pending_suggestions(user_id, decision, confidence_level);

            CREATE TABLE IF NOT EXISTS ignored_senders (
                user_id TEXT NOT NULL,
                sender TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, sender)
            );

            CREATE TABLE IF NOT EXISTS merchant_rules (
                user_id TEXT NOT NULL,
                domain TEXT NOT NULL,
                default_kind TEXT,
                default_service TEXT,
                default_category TEXT,
                verified_count INTEGER NOT NULL DEFAULT 0,
                declined_count INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, domain)
            );

            CREATE TABLE IF NOT EXISTS card_transactions (
                user_id TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                amount REAL NOT NULL,
                currency TEXT NOT NULL DEFAULT 'USD',
                merchant TEXT NOT NULL,
                date TEXT NOT NULL,
                pending INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, transaction_id)
            );

            CREATE TABLE IF NOT EXISTS card_links (
                user_id TEXT PRIMARY KEY,
                access_token TEXT NOT NULL,
                cursor TEXT,
                linked INTEGER NOT NULL DEFAULT 1,
                last_synced_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scan_sessions (
                scan_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                mode TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'running',
                total_messages INTEGER NOT NULL DEFAULT 0,
                processed INTEGER NOT NULL DEFAULT 0,
                new_charges INTEGER NOT NULL DEFAULT 0,
                skipped_existing INTEGER NOT NULL DEFAULT 0,
                skipped_other INTEGER NOT NULL DEFAULT 0,
                pending_review INTEGER NOT NULL DEFAULT 0,
                scanned_after TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_scan_sessions_user
                ON scan_sessions(user_id, started_at);

            CREATE TABLE IF NOT EXISTS user_scan_state (
                user_id TEXT PRIMARY KEY,
                last_scan_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database schema initialized at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Args:
        conn: Active database connection

    Returns:
        True if valid

    Raises:
        ValueError: If tables or columns are missing
    """
    required_tables = {
        "subscriptions": ["id", "user_id", "service_normalized", "status", "total_amount"],
        "charges": ["id", "user_id", "amount", "source_message_id", "source_transaction_id"],
        "pending_suggestions": ["id", "user_id", "source_message_id", "decision"],
        "ignored_senders": ["user_id", "sender"],
        "merchant_rules": ["user_id", "domain", "verified_count", "declined_count"],
        "card_transactions": ["user_id", "transaction_id", "amount", "merchant", "date"],
        "card_links": ["user_id", "access_token", "cursor"],
        "scan_sessions": ["scan_id", "user_id", "status", "processed"],
        "user_scan_state": ["user_id", "last_scan_at"],
    }

    cursor = conn.cursor()

    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(required_tables.keys()) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {missing_tables}")

    for table, required_cols in required_tables.items():
        # Table names come from the dict above; identifiers cannot be parameterized
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")

        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}

        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table '{table}' missing columns: {missing_cols}")

    return True
