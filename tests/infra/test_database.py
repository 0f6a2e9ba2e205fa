from __future__ import annotations

import sqlite3
import threading

import pytest

from subtrack.infrastructure.database import (
    checkpoint_wal,
    db_transaction,
    get_db_connection,
    get_pool_stats,
    init_database,
    retry_on_db_lock,
    validate_schema,
)


def test_init_database_is_idempotent(temp_db):
    init_database()
    assert validate_schema() is True


def test_transaction_rolls_back_on_error(temp_db):
    with pytest.raises(RuntimeError):
        with db_transaction() as conn:
            conn.execute(
                "INSERT INTO ignored_senders (user_id, sender, created_at) VALUES (?, ?, ?)",
                ("u1", "spam@example.com", "2025-01-01T00:00:00+00:00"),
            )
            raise RuntimeError("abort")

    with get_db_connection() as conn:
        count = conn.execute("SELECT COUNT(*) FROM ignored_senders").fetchone()[0]
    assert count == 0


def test_live_subscription_unique_per_service(temp_db):
    row = (
        "INSERT INTO subscriptions (id, user_id, service_normalized, display_service, deleted_at,"
        " first_detected_at, created_at, updated_at)"
        " VALUES (?, 'u1', 'netflix', 'Netflix', ?, '2025-01-01', '2025-01-01', '2025-01-01')"
    )
    with db_transaction() as conn:
        conn.execute(row, ("s1", "2025-01-01T00:00:00+00:00"))
        conn.execute(row, ("s2", None))

    with pytest.raises(sqlite3.IntegrityError):
        with db_transaction() as conn:
            conn.execute(row, ("s3", None))


def test_pool_stats_and_checkpoint(temp_db):
    stats = get_pool_stats()
    assert stats["pool_size"] >= 1
    assert stats["closed"] is False
    assert checkpoint_wal()["busy"] is False


def test_connections_can_cross_threads(temp_db):
    errors = []

    def reader():
        try:
            with get_db_connection() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            errors.append(exc)

    threads = [threading.Thread(target=reader) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []


def test_retry_on_db_lock_retries_locked_only():
    calls = []

    @retry_on_db_lock(max_retries=2, base_delay=0.0, max_delay=0.0)
    def locked_then_ok():
        calls.append(1)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert locked_then_ok() == "ok"
    assert len(calls) == 2

    @retry_on_db_lock(max_retries=2, base_delay=0.0)
    def syntax_error():
        calls.append(1)
        raise sqlite3.OperationalError("near SELEC: syntax error")

    with pytest.raises(sqlite3.OperationalError):
        syntax_error()
    assert len(calls) == 3
