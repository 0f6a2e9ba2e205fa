from __future__ import annotations

import unittest

from subtrack.infrastructure.llm_budget import check_budget, record_llm_call, reset_budget
from subtrack.observability.telemetry import (
    counter,
    get_counter,
    get_latency_stats,
    get_p95,
    reset_counters,
    reset_latencies,
    snapshot_counters,
    time_block,
)


class TelemetryTests(unittest.TestCase):
    def setUp(self):
        reset_latencies()
        reset_counters()

    def test_time_block_appends_ms_suffix(self):
        metric_name = "gmail.get.latency"

        with time_block(metric_name):
            pass

        stats = get_latency_stats(metric_name)
        self.assertEqual(stats["count"], 1)
        self.assertEqual(get_latency_stats("gmail.get.latency_ms")["count"], 1)

        p95 = get_p95(metric_name)
        self.assertGreaterEqual(p95, 0.0)

    def test_time_block_records_on_error(self):
        with self.assertRaises(ValueError):
            with time_block("ingestion.scan.latency"):
                raise ValueError("boom")

        self.assertEqual(get_latency_stats("ingestion.scan.latency")["count"], 1)

    def test_counter_increments(self):
        counter("ledger.recorded")
        counter("ledger.recorded", 2)
        self.assertEqual(get_counter("ledger.recorded"), 3)
        self.assertEqual(get_counter("never.touched"), 0)
        self.assertEqual(snapshot_counters(), {"ledger.recorded": 3})

    def test_empty_stats(self):
        self.assertEqual(get_latency_stats("cards.sync.latency")["count"], 0)
        self.assertEqual(get_p95("cards.sync.latency"), 0.0)


class LLMBudgetTests(unittest.TestCase):
    def setUp(self):
        reset_budget()

    def test_user_limit(self):
        for _ in range(2):
            record_llm_call("u1")

        status = check_budget("u1", user_limit=2, global_limit=100)
        self.assertFalse(status.is_allowed)
        self.assertIn("User daily limit", status.reason)
        self.assertTrue(check_budget("u2", user_limit=2, global_limit=100).is_allowed)

    def test_global_limit(self):
        record_llm_call("u1")
        record_llm_call("u2")

        status = check_budget("u3", user_limit=10, global_limit=2)
        self.assertFalse(status.is_allowed)
        self.assertEqual(status.global_calls_today, 2)


if __name__ == "__main__":
    unittest.main()
