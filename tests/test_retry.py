"""Tests for bhyve_machine.retry module."""

from __future__ import annotations

from unittest.mock import patch

from bhyve_machine.retry import RetryPolicy


class TestRetryPolicy:
    def test_bound(self):
        assert RetryPolicy(tries=60, delay=2.0).bound == 120.0

    def test_attempts_sleep_between_tries_only(self):
        with patch("bhyve_machine.retry.time.sleep") as mock_sleep:
            attempts = list(RetryPolicy(tries=3, delay=0.5).attempts())
        assert attempts == [1, 2, 3]
        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(0.5)

    def test_poll_returns_first_value(self):
        seen = []

        def probe(attempt):
            seen.append(attempt)
            return "ready" if attempt == 2 else None

        assert RetryPolicy(tries=5, delay=0).poll(probe) == "ready"
        assert seen == [1, 2]

    def test_poll_exhausted_returns_none(self):
        calls = []
        assert RetryPolicy(tries=4, delay=0).poll(lambda attempt: calls.append(attempt)) is None
        assert calls == [1, 2, 3, 4]

    def test_falsy_values_count_as_success(self):
        assert RetryPolicy(tries=3, delay=0).poll(lambda attempt: 0) == 0
