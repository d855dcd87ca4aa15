"""Unit tests for the failure circuit breaker."""

from __future__ import annotations

import pytest

from loopsmith.circuit_breaker import CircuitBreaker, error_signature

pytestmark = pytest.mark.unit


class TestErrorSignature:
    def test_masks_volatile_parts(self):
        a = error_signature("TypeError at foo (src/a.ts:10:4) 0xdeadbeef 2024-01-02T03:04:05")
        b = error_signature("TypeError at foo (src/a.ts:99:1) 0x1234 2025-11-12 13:14:15")
        assert a == b

    def test_case_insensitive_and_short(self):
        sig = error_signature("Module Not Found")
        assert sig == error_signature("module not found")
        assert len(sig) == 8

    def test_different_messages_differ(self):
        assert error_signature("lint failed") != error_signature("tests failed")


class TestCircuitBreaker:
    def test_trips_on_consecutive_failures(self):
        cb = CircuitBreaker(max_consecutive_failures=3, max_distinct_errors=10)
        assert cb.record_failure("boom") is False
        assert cb.record_failure("boom") is False
        assert cb.record_failure("boom") is True
        assert cb.is_tripped()
        assert "3 consecutive" in cb.trip_reason()

    def test_success_resets_streak_only(self):
        cb = CircuitBreaker(max_consecutive_failures=2, max_distinct_errors=10)
        cb.record_failure("a")
        cb.record_success()
        assert cb.record_failure("a") is False
        assert cb.stats()["total_failures"] == 2
        assert cb.stats()["consecutive_failures"] == 1

    def test_trips_on_distinct_errors_across_successes(self):
        cb = CircuitBreaker(max_consecutive_failures=10, max_distinct_errors=3)
        for message in ("first", "second"):
            cb.record_failure(message)
            cb.record_success()
        assert not cb.is_tripped()
        assert cb.record_failure("third") is True
        assert "3 different errors" == cb.trip_reason()

    def test_repeated_error_counts_once(self):
        cb = CircuitBreaker(max_consecutive_failures=10, max_distinct_errors=2)
        for _ in range(4):
            cb.record_failure("same failure")
        assert cb.stats()["distinct_errors"] == 1
        assert not cb.is_tripped()

    def test_empty_error_text_adds_no_signature(self):
        cb = CircuitBreaker()
        cb.record_failure("")
        assert cb.stats()["distinct_errors"] == 0
        assert cb.last_error is None

    def test_reset_closes_breaker(self):
        cb = CircuitBreaker(max_consecutive_failures=1)
        cb.record_failure("x")
        cb.reset()
        assert not cb.is_tripped()
        assert cb.trip_reason() == ""
        assert cb.stats() == {
            "consecutive_failures": 0,
            "total_failures": 0,
            "distinct_errors": 0,
            "is_open": False,
        }

    @pytest.mark.parametrize(("failures", "errors"), [(0, 5), (3, 0)])
    def test_rejects_non_positive_thresholds(self, failures, errors):
        with pytest.raises(ValueError):
            CircuitBreaker(failures, errors)
