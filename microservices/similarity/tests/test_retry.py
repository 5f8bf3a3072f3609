"""
Tests for the retry utility decorator.
Covers successful call, retried call, exhausted retries,
and non-retryable exception propagation.
"""

from __future__ import annotations

import pytest

from microservices.similarity.src.retry import retry


class TestRetryDecorator:
    """Validate the @retry decorator behaviour."""

    def test_successful_call_no_retry(self):
        call_count = {"n": 0}

        @retry(max_retries=3, backoff_sec=0.01)
        def always_ok():
            call_count["n"] += 1
            return "ok"

        assert always_ok() == "ok"
        assert call_count["n"] == 1

    def test_retried_then_success(self):
        """Function should succeed after transient ConnectionError retries."""
        print("\n[TEST] test_retried_then_success")

        call_count = {"n": 0}

        @retry(max_retries=5, backoff_sec=0.01)
        def fail_twice():
            call_count["n"] += 1
            if call_count["n"] <= 2:
                raise ConnectionError("transient")
            return "recovered"

        assert fail_twice() == "recovered"
        assert call_count["n"] == 3
        print("  ✓ function called 3 times (2 failures + 1 success)")

    def test_exhausted_retries_raises(self):
        call_count = {"n": 0}

        @retry(max_retries=2, backoff_sec=0.01)
        def always_fail():
            call_count["n"] += 1
            raise TimeoutError("permanent")

        with pytest.raises(TimeoutError, match="permanent"):
            always_fail()
        # Initial call + 2 retries = 3 total
        assert call_count["n"] == 3

    def test_non_retryable_exception_propagates_immediately(self):
        call_count = {"n": 0}

        @retry(max_retries=5, backoff_sec=0.01)
        def raise_value_error():
            call_count["n"] += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            raise_value_error()
        assert call_count["n"] == 1

    def test_custom_retryable_exceptions(self):
        call_count = {"n": 0}

        @retry(max_retries=3, backoff_sec=0.01, retryable_exceptions=(RuntimeError,))
        def custom_fail():
            call_count["n"] += 1
            if call_count["n"] <= 1:
                raise RuntimeError("recoverable")
            return "done"

        assert custom_fail() == "done"
        assert call_count["n"] == 2

    def test_wraps_preserves_name(self):
        @retry()
        def named():
            return None

        assert named.__name__ == "named"
