"""
Tests for src/modshare/net/retry.py

Covers:
- Exponential backoff delays
- Retryable relay statuses and connection-level failures
- Max retries limit and the disabled switch
"""

import unittest
from unittest.mock import Mock

from src.modshare.errors import TransportError
from src.modshare.net.retry import RetryConfig, RetryableError, with_retry


class TestRetryConfig(unittest.TestCase):
    """Tests for RetryConfig."""

    def test_default_values(self):
        config = RetryConfig()
        self.assertEqual(config.max_retries, 2)
        self.assertEqual(config.base_delay_s, 1.0)
        self.assertEqual(config.max_delay_s, 30.0)
        self.assertEqual(config.jitter_factor, 0.25)
        for code in (408, 429, 500, 502, 503, 504):
            self.assertIn(code, config.retryable_status_codes)
        self.assertTrue(config.enabled)

    def test_compute_delay_exponential(self):
        config = RetryConfig(base_delay_s=1.0, max_delay_s=100.0, jitter_factor=0.0)
        self.assertEqual(config.compute_delay(0), 1.0)
        self.assertEqual(config.compute_delay(1), 2.0)
        self.assertEqual(config.compute_delay(2), 4.0)

    def test_compute_delay_capped_at_max(self):
        config = RetryConfig(base_delay_s=10.0, max_delay_s=15.0, jitter_factor=0.0)
        self.assertEqual(config.compute_delay(0), 10.0)
        self.assertEqual(config.compute_delay(1), 15.0)

    def test_jitter_stays_within_factor(self):
        config = RetryConfig(base_delay_s=4.0, max_delay_s=100.0, jitter_factor=0.25)
        for _ in range(20):
            delay = config.compute_delay(0)
            self.assertGreaterEqual(delay, 4.0)
            self.assertLessEqual(delay, 5.0)

    def test_should_retry(self):
        config = RetryConfig()
        self.assertTrue(config.should_retry(RetryableError("x", status_code=503)))
        self.assertTrue(config.should_retry(RetryableError("connection reset")))
        self.assertFalse(config.should_retry(RetryableError("x", status_code=404)))
        self.assertFalse(config.should_retry(RetryableError("x", status_code=503, should_retry=False)))

    def test_persist_round_trip_and_coercion(self):
        config = RetryConfig(max_retries=5, base_delay_s=0.5, retryable_status_codes={429})
        restored = RetryConfig.from_persist_dict(config.to_persist_dict())
        self.assertEqual(restored, config)

        sanitized = RetryConfig.from_persist_dict({
            "max_retries": -3,
            "base_delay_s": "bad",
            "jitter_factor": 7,
            "retryable_status_codes": ["x"],
        })
        self.assertEqual(sanitized.max_retries, 0)
        self.assertEqual(sanitized.base_delay_s, 1.0)
        self.assertEqual(sanitized.jitter_factor, 1.0)
        self.assertIn(503, sanitized.retryable_status_codes)


class TestWithRetry(unittest.TestCase):
    """Tests for with_retry."""

    def setUp(self):
        self.sleep = Mock()
        self.config = RetryConfig(max_retries=2, base_delay_s=1.0, jitter_factor=0.0)

    def test_success_no_retry(self):
        func = Mock(return_value="result")
        self.assertEqual(with_retry(func, config=self.config, sleep=self.sleep), "result")
        func.assert_called_once()
        self.sleep.assert_not_called()

    def test_retries_transport_errors_then_succeeds(self):
        func = Mock(side_effect=[TransportError("busy", status_code=503), TransportError("reset"), "ok"])
        self.assertEqual(with_retry(func, config=self.config, sleep=self.sleep), "ok")
        self.assertEqual(func.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [1.0, 2.0])

    def test_retry_exhausted(self):
        func = Mock(side_effect=TransportError("down", status_code=502))
        with self.assertRaises(TransportError):
            with_retry(func, config=self.config, sleep=self.sleep)
        self.assertEqual(func.call_count, 3)  # 1 initial + 2 retries

    def test_client_errors_not_retried(self):
        func = Mock(side_effect=TransportError("missing", status_code=404))
        with self.assertRaises(TransportError):
            with_retry(func, config=self.config, sleep=self.sleep)
        func.assert_called_once()

    def test_other_exceptions_propagate(self):
        func = Mock(side_effect=ValueError("bad payload"))
        with self.assertRaises(ValueError):
            with_retry(func, config=self.config, sleep=self.sleep)
        func.assert_called_once()

    def test_on_retry_callback(self):
        on_retry = Mock()
        func = Mock(side_effect=[RetryableError("x"), "ok"])
        with_retry(func, config=self.config, on_retry=on_retry, sleep=self.sleep)
        on_retry.assert_called_once()
        self.assertEqual(on_retry.call_args.args[0], 0)

    def test_disabled_retry(self):
        func = Mock(side_effect=RetryableError("error"))
        with self.assertRaises(RetryableError):
            with_retry(func, config=RetryConfig(max_retries=5, enabled=False), sleep=self.sleep)
        func.assert_called_once()


if __name__ == "__main__":
    unittest.main()
