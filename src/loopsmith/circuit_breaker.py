"""Failure backpressure for the iteration loop."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_MAX_DISTINCT_ERRORS = 5

_HEX_RE = re.compile(r"0x[0-9a-fA-F]+")
_STACK_FRAME_RE = re.compile(r"at\s+\S+\s+\(\S+:\d+:\d+\)")
_TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}")
_LINE_COL_RE = re.compile(r":\d+:\d+")


def error_signature(error_text: str) -> str:
    """Return a short stable hash of *error_text* with volatile parts masked.

    Addresses, stack frames, timestamps and ``:line:col`` suffixes are
    replaced before hashing so that the same failure on a different run
    produces the same signature.
    """
    normalized = _HEX_RE.sub("HEX", error_text or "")
    normalized = _STACK_FRAME_RE.sub("STACK", normalized)
    normalized = _TIMESTAMP_RE.sub("TIMESTAMP", normalized)
    normalized = _LINE_COL_RE.sub(":N:N", normalized)
    normalized = normalized.lower().strip()[:500]
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()[:8]


class CircuitBreaker:
    """Trip after too many failures in a row or too many different failures.

    Parameters
    ----------
    max_consecutive_failures:
        Consecutive failures that trip the breaker.
    max_distinct_errors:
        Distinct normalized error signatures (over the whole run) that trip
        the breaker.
    """

    def __init__(
        self,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        max_distinct_errors: int = DEFAULT_MAX_DISTINCT_ERRORS,
    ) -> None:
        if max_consecutive_failures < 1 or max_distinct_errors < 1:
            raise ValueError("circuit breaker thresholds must be >= 1")
        self.max_consecutive_failures = max_consecutive_failures
        self.max_distinct_errors = max_distinct_errors
        self.consecutive_failures = 0
        self.total_failures = 0
        self.error_signatures: set[str] = set()
        self.last_error: str | None = None

    def record_success(self) -> None:
        """Reset the consecutive-failure streak; lifetime totals are kept."""
        self.consecutive_failures = 0

    def record_failure(self, error_text: str = "") -> bool:
        """Count a failure and return True when the breaker is now tripped."""
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_error = error_text or None
        if error_text:
            self.error_signatures.add(error_signature(error_text))
        tripped = self.is_tripped()
        if tripped:
            logger.warning("Circuit breaker tripped: %s", self.trip_reason())
        return tripped

    def is_tripped(self) -> bool:
        return (
            self.consecutive_failures >= self.max_consecutive_failures
            or len(self.error_signatures) >= self.max_distinct_errors
        )

    def trip_reason(self) -> str:
        """Describe why the breaker is open, or ``""`` when it is closed."""
        if self.consecutive_failures >= self.max_consecutive_failures:
            return f"{self.consecutive_failures} consecutive failures"
        if len(self.error_signatures) >= self.max_distinct_errors:
            return f"{len(self.error_signatures)} different errors"
        return ""

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.total_failures = 0
        self.error_signatures.clear()
        self.last_error = None

    def stats(self) -> dict[str, Any]:
        return {
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "distinct_errors": len(self.error_signatures),
            "is_open": self.is_tripped(),
        }
