"""Runtime configuration for backends, orchestration and retry policy."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from agent_relay.orchestrator.policy import (
    BackoffFn,
    RetryPolicy,
    exponential_backoff,
    linear_backoff,
)

DEFAULT_API_URL = "https://agent.tinyfish.ai/v1/automation/run-sse"
DEFAULT_CANDIDATE_ID = "primary"
SUPPORTED_FRAME_FORMATS = ("sse", "ndjson")
SUPPORTED_BACKOFF_STRATEGIES = ("linear", "exponential")


@dataclass(slots=True)
class BackendEndpoint:
    """One configured backend candidate endpoint."""

    candidate_id: str
    url: str


@dataclass(slots=True)
class BackendSettings:
    """Remote backend settings."""

    endpoints: tuple[BackendEndpoint, ...] = (
        BackendEndpoint(candidate_id=DEFAULT_CANDIDATE_ID, url=DEFAULT_API_URL),
    )
    api_key: str | None = None
    connect_timeout_seconds: float = 10.0


@dataclass(slots=True)
class OrchestratorSettings:
    """Run scheduling and outbound stream settings."""

    default_concurrency_limit: int = 3
    max_concurrency_limit: int = 10
    run_timeout_seconds: float = 900.0
    call_timeout_seconds: float | None = 300.0
    frame_format: str = "sse"
    writer_queue_size: int = 256


@dataclass(slots=True)
class RetrySettings:
    """Retry/fallback policy settings."""

    max_attempts_per_candidate: int = 3
    same_candidate_delay_threshold_ms: float = 15_000.0
    default_rate_limit_delay_ms: float = 5_000.0
    transient_backoff_ms: float = 1_000.0
    transient_backoff_strategy: str = "linear"
    transient_backoff_max_ms: float = 30_000.0

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts_per_candidate=self.max_attempts_per_candidate,
            same_candidate_delay_threshold_ms=self.same_candidate_delay_threshold_ms,
            default_rate_limit_delay_ms=self.default_rate_limit_delay_ms,
            transient_backoff=self.backoff(),
        )

    def backoff(self) -> BackoffFn:
        if self.transient_backoff_strategy == "exponential":
            return exponential_backoff(
                base_ms=self.transient_backoff_ms,
                max_ms=self.transient_backoff_max_ms,
            )
        return linear_backoff(self.transient_backoff_ms)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    backend: BackendSettings = field(default_factory=BackendSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from `AGENT_RELAY_*` environment variables."""

        return cls(
            backend=BackendSettings(
                endpoints=_collect_endpoints(),
                api_key=os.getenv("AGENT_RELAY_API_KEY") or None,
                connect_timeout_seconds=float(
                    os.getenv("AGENT_RELAY_CONNECT_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
            orchestrator=OrchestratorSettings(
                default_concurrency_limit=int(
                    os.getenv("AGENT_RELAY_DEFAULT_CONCURRENCY", "3"),
                ),
                max_concurrency_limit=int(os.getenv("AGENT_RELAY_MAX_CONCURRENCY", "10")),
                run_timeout_seconds=float(
                    os.getenv("AGENT_RELAY_RUN_TIMEOUT_SECONDS", "900"),
                ),
                call_timeout_seconds=_env_optional_float("AGENT_RELAY_CALL_TIMEOUT_SECONDS", 300.0),
                frame_format=os.getenv("AGENT_RELAY_FRAME_FORMAT", "sse").strip().lower(),
                writer_queue_size=int(os.getenv("AGENT_RELAY_WRITER_QUEUE_SIZE", "256")),
            ),
            retry=RetrySettings(
                max_attempts_per_candidate=int(
                    os.getenv("AGENT_RELAY_MAX_ATTEMPTS_PER_CANDIDATE", "3"),
                ),
                same_candidate_delay_threshold_ms=float(
                    os.getenv("AGENT_RELAY_SAME_CANDIDATE_DELAY_THRESHOLD_MS", "15000"),
                ),
                default_rate_limit_delay_ms=float(
                    os.getenv("AGENT_RELAY_DEFAULT_RATE_LIMIT_DELAY_MS", "5000"),
                ),
                transient_backoff_ms=float(
                    os.getenv("AGENT_RELAY_TRANSIENT_BACKOFF_MS", "1000"),
                ),
                transient_backoff_strategy=(
                    os.getenv("AGENT_RELAY_TRANSIENT_BACKOFF", "linear").strip().lower()
                ),
                transient_backoff_max_ms=float(
                    os.getenv("AGENT_RELAY_TRANSIENT_BACKOFF_MAX_MS", "30000"),
                ),
            ),
        )

    def validate_for_run(self) -> None:
        """Raise configuration error if run settings are unusable."""

        if not self.backend.endpoints:
            raise ValueError(
                "At least one backend endpoint is required. "
                "Set AGENT_RELAY_API_URL or AGENT_RELAY_BACKENDS.",
            )
        for endpoint in self.backend.endpoints:
            _validate_endpoint_url(endpoint.url)
        if self.orchestrator.default_concurrency_limit < 1:
            raise ValueError("AGENT_RELAY_DEFAULT_CONCURRENCY must be >= 1.")
        if self.orchestrator.max_concurrency_limit < self.orchestrator.default_concurrency_limit:
            raise ValueError(
                "AGENT_RELAY_MAX_CONCURRENCY must be >= AGENT_RELAY_DEFAULT_CONCURRENCY.",
            )
        if self.orchestrator.run_timeout_seconds <= 0:
            raise ValueError("AGENT_RELAY_RUN_TIMEOUT_SECONDS must be > 0.")
        call_timeout = self.orchestrator.call_timeout_seconds
        if call_timeout is not None and call_timeout <= 0:
            raise ValueError("AGENT_RELAY_CALL_TIMEOUT_SECONDS must be > 0 or empty.")
        if self.orchestrator.frame_format not in SUPPORTED_FRAME_FORMATS:
            raise ValueError(
                f"Unsupported AGENT_RELAY_FRAME_FORMAT: {self.orchestrator.frame_format!r}. "
                f"Use one of {SUPPORTED_FRAME_FORMATS}.",
            )
        if self.orchestrator.writer_queue_size < 1:
            raise ValueError("AGENT_RELAY_WRITER_QUEUE_SIZE must be >= 1.")
        if self.retry.max_attempts_per_candidate < 1:
            raise ValueError("AGENT_RELAY_MAX_ATTEMPTS_PER_CANDIDATE must be >= 1.")
        if self.retry.same_candidate_delay_threshold_ms < 0:
            raise ValueError("AGENT_RELAY_SAME_CANDIDATE_DELAY_THRESHOLD_MS must be >= 0.")
        if self.retry.default_rate_limit_delay_ms < 0:
            raise ValueError("AGENT_RELAY_DEFAULT_RATE_LIMIT_DELAY_MS must be >= 0.")
        if self.retry.transient_backoff_ms < 0:
            raise ValueError("AGENT_RELAY_TRANSIENT_BACKOFF_MS must be >= 0.")
        strategy = self.retry.transient_backoff_strategy
        if strategy not in SUPPORTED_BACKOFF_STRATEGIES:
            raise ValueError(
                f"Unsupported AGENT_RELAY_TRANSIENT_BACKOFF: {strategy!r}. "
                f"Use one of {SUPPORTED_BACKOFF_STRATEGIES}.",
            )
        if self.retry.transient_backoff_max_ms < self.retry.transient_backoff_ms:
            raise ValueError(
                "AGENT_RELAY_TRANSIENT_BACKOFF_MAX_MS must be >= AGENT_RELAY_TRANSIENT_BACKOFF_MS.",
            )


def _collect_endpoints() -> tuple[BackendEndpoint, ...]:
    endpoints: list[BackendEndpoint] = []
    single = os.getenv("AGENT_RELAY_API_URL", DEFAULT_API_URL).strip()
    if single:
        endpoints.append(BackendEndpoint(candidate_id=DEFAULT_CANDIDATE_ID, url=single))

    raw = os.getenv("AGENT_RELAY_BACKENDS", "").strip()
    if not raw:
        return tuple(endpoints)

    seen = {endpoint.candidate_id for endpoint in endpoints}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid AGENT_RELAY_BACKENDS entry: "
                f"{token!r}. Expected format '<candidate_id>|<url>'.",
            )
        candidate_id, url = token.split("|", 1)
        candidate_id = candidate_id.strip().lower()
        url = url.strip()
        if not candidate_id:
            raise ValueError(f"Invalid AGENT_RELAY_BACKENDS entry: {token!r} (empty id).")
        _validate_endpoint_url(url)
        if candidate_id in seen:
            raise ValueError(
                f"Duplicate backend candidate id in AGENT_RELAY_BACKENDS: {candidate_id!r}",
            )
        seen.add(candidate_id)
        endpoints.append(BackendEndpoint(candidate_id=candidate_id, url=url))
    return tuple(endpoints)


def _validate_endpoint_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid backend URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_optional_float(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"", "none", "off", "0"}:
        return None
    try:
        return float(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
