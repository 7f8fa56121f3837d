import unittest
from datetime import datetime, timedelta, timezone

from src.shared.stats.metrics import (
    compute_batch_fraction,
    compute_fraction,
    compute_runtime_s,
    compute_throughput,
)
from src.shared.task_status import TaskStatus
from src.shared.versions import compare_versions, is_newer


class TestStatsMetrics(unittest.TestCase):
    def test_compute_runtime_s_returns_zero_without_started_at(self) -> None:
        now = datetime(2026, 1, 13, 12, 0, 0, tzinfo=timezone.utc)
        self.assertEqual(compute_runtime_s(None, None, now=now), 0.0)

    def test_compute_runtime_s_uses_started_at_and_finished_at(self) -> None:
        start = datetime(2026, 1, 13, 12, 0, 0, tzinfo=timezone.utc)
        end = start + timedelta(seconds=2.5)
        self.assertAlmostEqual(compute_runtime_s(start, end), 2.5, places=6)

    def test_compute_runtime_s_treats_naive_as_utc(self) -> None:
        start = datetime(2026, 1, 13, 12, 0, 0)
        now = datetime(2026, 1, 13, 12, 0, 3, tzinfo=timezone.utc)
        self.assertAlmostEqual(compute_runtime_s(start, None, now=now), 3.0, places=6)

    def test_compute_throughput(self) -> None:
        self.assertEqual(compute_throughput(4096, 2.0), 2048.0)
        self.assertEqual(compute_throughput(4096, 0.0), 0.0)

    def test_compute_fraction_clamps(self) -> None:
        self.assertEqual(compute_fraction(5, 10), 0.5)
        self.assertEqual(compute_fraction(15, 10), 1.0)
        self.assertEqual(compute_fraction(0, 0), 1.0)

    def test_compute_batch_fraction(self) -> None:
        self.assertAlmostEqual(compute_batch_fraction(1, 4, 0.5), 0.375)
        self.assertAlmostEqual(compute_batch_fraction(0, 4, 2.0), 0.25)
        self.assertEqual(compute_batch_fraction(4, 4, 0.0), 1.0)
        self.assertEqual(compute_batch_fraction(0, 0, 0.0), 1.0)


class TestTaskStatus(unittest.TestCase):
    def test_active_and_terminal(self) -> None:
        self.assertTrue(TaskStatus.RUNNING.is_active())
        self.assertFalse(TaskStatus.IDLE.is_active())
        for status in (TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.CANCELLED):
            self.assertTrue(status.is_terminal())
        self.assertFalse(TaskStatus.RUNNING.is_terminal())


class TestVersions(unittest.TestCase):
    def test_numeric_ordering(self) -> None:
        self.assertEqual(compare_versions("1.2.10", "1.2.9"), 1)
        self.assertEqual(compare_versions("v2", "2.0"), 0)
        self.assertEqual(compare_versions("1.0", "1.0.1"), -1)

    def test_text_fallback(self) -> None:
        self.assertEqual(compare_versions("Beta", "beta"), 0)
        self.assertEqual(compare_versions("alpha", "beta"), -1)

    def test_is_newer_requires_both_versions(self) -> None:
        self.assertTrue(is_newer("1.1", "1.0"))
        self.assertFalse(is_newer("1.0", "1.0"))
        self.assertFalse(is_newer(None, "1.0"))
        self.assertFalse(is_newer("1.1", "  "))


if __name__ == "__main__":
    unittest.main()
