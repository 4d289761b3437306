"""Retry policy and backoff strategies for the retry/fallback controller."""

from __future__ import annotations

import math
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace

BackoffFn = Callable[[int], float]


def linear_backoff(step_ms: float = 1_000.0) -> BackoffFn:
    """Wait `step_ms * attempt` before the next transient retry."""

    def _delay(attempt: int) -> float:
        return step_ms * max(attempt, 1)

    return _delay


def exponential_backoff(
    *,
    base_ms: float = 1_000.0,
    max_ms: float = 30_000.0,
    rng: random.Random | None = None,
) -> BackoffFn:
    """Full-jitter exponential backoff capped at `max_ms`."""

    generator = rng or random.Random()  # noqa: S311

    def _delay(attempt: int) -> float:
        ceiling = min(max_ms, base_ms * (2 ** max(attempt - 1, 0)))
        return generator.uniform(0, ceiling)

    return _delay


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Per-task retry and candidate-fallback policy."""

    max_attempts_per_candidate: int = 3
    same_candidate_delay_threshold_ms: float = 15_000.0
    default_rate_limit_delay_ms: float = 5_000.0
    transient_backoff: BackoffFn = field(default_factory=linear_backoff)

    def __post_init__(self) -> None:
        if self.max_attempts_per_candidate < 1:
            raise ValueError("max_attempts_per_candidate must be >= 1.")
        if self.same_candidate_delay_threshold_ms < 0:
            raise ValueError("same_candidate_delay_threshold_ms must be >= 0.")
        if self.default_rate_limit_delay_ms < 0:
            raise ValueError("default_rate_limit_delay_ms must be >= 0.")

    def with_overrides(self, overrides: Mapping[str, object] | None) -> RetryPolicy:
        """Apply inbound `retryPolicy` overrides (camelCase keys)."""

        if not overrides:
            return self
        changes: dict[str, object] = {}
        if "maxAttemptsPerCandidate" in overrides:
            changes["max_attempts_per_candidate"] = _as_int(
                overrides["maxAttemptsPerCandidate"],
                name="maxAttemptsPerCandidate",
            )
        if "sameCandidateDelayThresholdMs" in overrides:
            changes["same_candidate_delay_threshold_ms"] = _as_float(
                overrides["sameCandidateDelayThresholdMs"],
                name="sameCandidateDelayThresholdMs",
            )
        if "defaultRateLimitDelayMs" in overrides:
            changes["default_rate_limit_delay_ms"] = _as_float(
                overrides["defaultRateLimitDelayMs"],
                name="defaultRateLimitDelayMs",
            )
        if "transientBackoffMs" in overrides:
            changes["transient_backoff"] = linear_backoff(
                _as_float(overrides["transientBackoffMs"], name="transientBackoffMs"),
            )
        unknown = set(overrides) - {
            "maxAttemptsPerCandidate",
            "sameCandidateDelayThresholdMs",
            "defaultRateLimitDelayMs",
            "transientBackoffMs",
        }
        if unknown:
            raise ValueError(f"Unknown retryPolicy keys: {sorted(unknown)}")
        return replace(self, **changes)


def _as_int(value: object, *, name: str) -> int:
    return int(_as_float(value, name=name))


def _as_float(value: object, *, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValueError(f"retryPolicy.{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except OverflowError:
        number = math.inf
    if not math.isfinite(number):
        raise ValueError(f"retryPolicy.{name} must be a finite number, got {value!r}")
    return number
