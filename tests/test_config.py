from __future__ import annotations

import random

import allure
import pytest

from agent_relay.config import (
    DEFAULT_API_URL,
    BackendEndpoint,
    BackendSettings,
    OrchestratorSettings,
    RetrySettings,
    Settings,
)
from agent_relay.orchestrator.policy import exponential_backoff

pytestmark = [
    allure.epic("Run Orchestration"),
    allure.feature("Configuration"),
]


def _clear_env(monkeypatch) -> None:
    for name in (
        "AGENT_RELAY_API_KEY",
        "AGENT_RELAY_API_URL",
        "AGENT_RELAY_BACKENDS",
        "AGENT_RELAY_CALL_TIMEOUT_SECONDS",
        "AGENT_RELAY_FRAME_FORMAT",
        "AGENT_RELAY_DEFAULT_CONCURRENCY",
        "AGENT_RELAY_TRANSIENT_BACKOFF",
        "AGENT_RELAY_TRANSIENT_BACKOFF_MS",
        "AGENT_RELAY_TRANSIENT_BACKOFF_MAX_MS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_from_env_defaults(monkeypatch) -> None:
    _clear_env(monkeypatch)

    settings = Settings.from_env()

    assert settings.backend.api_key is None
    assert settings.backend.endpoints == (
        BackendEndpoint(candidate_id="primary", url=DEFAULT_API_URL),
    )
    assert settings.orchestrator.default_concurrency_limit == 3
    assert settings.orchestrator.call_timeout_seconds == 300.0
    assert settings.orchestrator.frame_format == "sse"
    settings.validate_for_run()


def test_from_env_reads_backends_and_overrides(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("AGENT_RELAY_API_KEY", "secret")
    monkeypatch.setenv("AGENT_RELAY_API_URL", "https://main.example.com/run-sse")
    monkeypatch.setenv(
        "AGENT_RELAY_BACKENDS",
        "Backup|https://backup.example.com/run-sse, eu|http://eu.example.com/run-sse",
    )
    monkeypatch.setenv("AGENT_RELAY_CALL_TIMEOUT_SECONDS", "off")
    monkeypatch.setenv("AGENT_RELAY_FRAME_FORMAT", " NDJSON ")
    monkeypatch.setenv("AGENT_RELAY_DEFAULT_CONCURRENCY", "5")

    settings = Settings.from_env()

    assert settings.backend.api_key == "secret"
    assert [endpoint.candidate_id for endpoint in settings.backend.endpoints] == [
        "primary",
        "backup",
        "eu",
    ]
    assert settings.orchestrator.call_timeout_seconds is None
    assert settings.orchestrator.frame_format == "ndjson"
    assert settings.orchestrator.default_concurrency_limit == 5


def test_blank_api_url_leaves_only_listed_backends(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("AGENT_RELAY_API_URL", "")
    monkeypatch.setenv("AGENT_RELAY_BACKENDS", "backup|https://backup.example.com/run-sse")

    settings = Settings.from_env()

    assert [endpoint.candidate_id for endpoint in settings.backend.endpoints] == ["backup"]


@pytest.mark.parametrize(
    ("backends", "message"),
    [
        ("no-separator", "Expected format"),
        ("|https://x.example.com", "empty id"),
        ("primary|https://dup.example.com", "Duplicate backend candidate id"),
        ("ftp|ftp://files.example.com", "Invalid backend URL"),
    ],
)
def test_invalid_backends_entries_are_rejected(monkeypatch, backends: str, message: str) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("AGENT_RELAY_BACKENDS", backends)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_invalid_call_timeout_number_is_rejected(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("AGENT_RELAY_CALL_TIMEOUT_SECONDS", "soon")

    with pytest.raises(ValueError, match="Invalid number for AGENT_RELAY_CALL_TIMEOUT_SECONDS"):
        Settings.from_env()


def test_validate_for_run_requires_an_endpoint() -> None:
    settings = Settings(backend=BackendSettings(endpoints=()))

    with pytest.raises(ValueError, match="At least one backend endpoint is required"):
        settings.validate_for_run()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (
            Settings(orchestrator=OrchestratorSettings(default_concurrency_limit=0)),
            "DEFAULT_CONCURRENCY",
        ),
        (
            Settings(
                orchestrator=OrchestratorSettings(
                    default_concurrency_limit=5,
                    max_concurrency_limit=2,
                ),
            ),
            "MAX_CONCURRENCY",
        ),
        (Settings(orchestrator=OrchestratorSettings(run_timeout_seconds=0)), "RUN_TIMEOUT_SECONDS"),
        (Settings(orchestrator=OrchestratorSettings(frame_format="xml")), "FRAME_FORMAT"),
        (Settings(retry=RetrySettings(max_attempts_per_candidate=0)), "MAX_ATTEMPTS_PER_CANDIDATE"),
        (Settings(retry=RetrySettings(transient_backoff_ms=-1)), "TRANSIENT_BACKOFF_MS"),
        (Settings(retry=RetrySettings(transient_backoff_strategy="cubic")), "TRANSIENT_BACKOFF"),
        (
            Settings(retry=RetrySettings(transient_backoff_ms=500, transient_backoff_max_ms=100)),
            "TRANSIENT_BACKOFF_MAX_MS",
        ),
    ],
)
def test_validate_for_run_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate_for_run()


def test_retry_settings_build_policy() -> None:
    policy = RetrySettings(max_attempts_per_candidate=2, transient_backoff_ms=250).to_policy()

    assert policy.max_attempts_per_candidate == 2
    assert policy.transient_backoff(1) == 250
    assert policy.transient_backoff(3) == 750


def test_exponential_backoff_strategy_stays_under_cap(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("AGENT_RELAY_TRANSIENT_BACKOFF", " Exponential ")
    monkeypatch.setenv("AGENT_RELAY_TRANSIENT_BACKOFF_MS", "100")
    monkeypatch.setenv("AGENT_RELAY_TRANSIENT_BACKOFF_MAX_MS", "400")

    settings = Settings.from_env()
    settings.validate_for_run()
    policy = settings.retry.to_policy()

    assert settings.retry.transient_backoff_strategy == "exponential"
    assert all(0 <= policy.transient_backoff(attempt) <= 400 for attempt in range(1, 10))


def test_exponential_backoff_ceiling_doubles_per_attempt() -> None:
    delays = exponential_backoff(base_ms=100, max_ms=1_000, rng=random.Random(7))

    for attempt, ceiling in ((1, 100), (2, 200), (3, 400), (4, 800), (5, 1_000), (9, 1_000)):
        assert 0 <= delays(attempt) <= ceiling
