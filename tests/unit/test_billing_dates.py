from __future__ import annotations

from datetime import UTC, datetime

import pytest

from subtrack.subscriptions.billing_dates import compute_monthly_amount, compute_next_renewal


@pytest.mark.parametrize(
    "cycle,amount,expected",
    [
        ("monthly", 9.99, 9.99),
        ("yearly", 120.0, 10.0),
        ("weekly", 2.0, 8.69),
        ("one_time", 50.0, 0.0),
        ("unknown", 50.0, 0.0),
        ("monthly", 0.0, 0.0),
        ("monthly", None, 0.0),
    ],
)
def test_monthly_amount(cycle, amount, expected):
    assert compute_monthly_amount(cycle, amount) == pytest.approx(expected)


def test_next_renewal_handles_month_ends():
    jan_31 = datetime(2025, 1, 31, tzinfo=UTC)
    assert compute_next_renewal("monthly", jan_31) == datetime(2025, 2, 28, tzinfo=UTC)
    assert compute_next_renewal("yearly", jan_31) == datetime(2026, 1, 31, tzinfo=UTC)
    assert compute_next_renewal("weekly", jan_31) == datetime(2025, 2, 7, tzinfo=UTC)


def test_next_renewal_for_non_recurring():
    assert compute_next_renewal("one_time", datetime(2025, 1, 1, tzinfo=UTC)) is None
    assert compute_next_renewal("monthly", None) is None
