"""Deterministic backend call failure classification for the retry controller."""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_relay.orchestrator.backend.base import CallFailure
from agent_relay.orchestrator.models import FailureClass, FailureHint

FAILURE_CLASSIFIER_VERSION = 1

_TOO_MANY_REQUESTS = 429
_REQUEST_TIMEOUT = 408
_SERVER_ERROR = 500

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate-limit",
    "ratelimit",
    "resource_exhausted",
    "resource exhausted",
    "quota",
    "retry in",
    "retry after",
    "retrydelay",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "connection refused",
    "timed out",
    "timeout",
    "temporarily unavailable",
    "temporary failure",
    "network error",
    "econnreset",
    "could not resolve host",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "overloaded",
)

_SECONDS_UNITS = frozenset({"s", "sec", "secs", "second", "seconds"})
_DELAY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"retrydelay\W*(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|secs?|seconds?)?",
        re.IGNORECASE,
    ),
    re.compile(
        r"retry\s+(?:in|after)\s*:?\s*(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|secs?|seconds?)?\b",
        re.IGNORECASE,
    ),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    delay_ms: float | None
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def is_retryable(self) -> bool:
        return self.failure_class != FailureClass.FATAL

    def to_event_details(self, *, candidate_id: str, attempt: int) -> dict[str, object]:
        """Serialize classifier diagnostics for task events and logs."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "candidate": candidate_id,
            "attempt": attempt,
            "failure_class": self.failure_class.value,
            "delay_ms": self.delay_ms,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(
    failure: CallFailure,
    *,
    default_rate_limit_delay_ms: float,
) -> FailureClassification:
    """Classify one call failure into a retry class; first matching rule wins."""

    haystack = failure.reason.lower()
    status = failure.status_code

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if status == _TOO_MANY_REQUESTS or pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            delay_ms=_rate_limit_delay(
                failure,
                default_rate_limit_delay_ms=default_rate_limit_delay_ms,
            ),
            reason_code="rate_limited",
            matched_rule="http_429" if status == _TOO_MANY_REQUESTS else "rate_limit_pattern",
            matched_pattern=pattern,
        )

    if failure.hint in {FailureHint.NETWORK, FailureHint.TIMEOUT}:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            delay_ms=None,
            reason_code=f"transient_{failure.hint.value}",
            matched_rule="transient_hint",
            matched_pattern=None,
        )

    if status is not None and (status == _REQUEST_TIMEOUT or status >= _SERVER_ERROR):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            delay_ms=None,
            reason_code="transient_http_status",
            matched_rule=f"http_{status}",
            matched_pattern=None,
        )

    # Remote reasons describe the target page, not the transport.
    pattern = None
    if failure.hint != FailureHint.REMOTE:
        pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            delay_ms=None,
            reason_code="transient_pattern",
            matched_rule="transient_pattern",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.FATAL,
        delay_ms=None,
        reason_code=f"fatal_{failure.hint.value}",
        matched_rule="fallback_fatal",
        matched_pattern=None,
    )


def parse_retry_delay_ms(message: str) -> float | None:
    """Extract a retry delay hint such as `retry in 12s` from a failure message."""

    for pattern in _DELAY_PATTERNS:
        match = pattern.search(message)
        if match is None:
            continue
        value = float(match.group(1))
        unit = (match.group(2) or "s").lower()
        if unit in _SECONDS_UNITS:
            return value * 1000.0
        return value
    return None


def _rate_limit_delay(failure: CallFailure, *, default_rate_limit_delay_ms: float) -> float:
    if failure.retry_after_ms is not None:
        return failure.retry_after_ms
    parsed = parse_retry_delay_ms(failure.reason)
    if parsed is not None:
        return parsed
    return default_rate_limit_delay_ms


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
