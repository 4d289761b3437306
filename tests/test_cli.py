from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_relay import main as cli_main
from agent_relay.main import agent_relay
from agent_relay.orchestrator.controllers import RelayCliController

pytestmark = [
    allure.epic("Run Orchestration"),
    allure.feature("CLI"),
]


@pytest.fixture()
def relay_env(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_API_KEY", "cli-key")
    monkeypatch.setenv("AGENT_RELAY_API_URL", "https://primary.example.com/run-sse")
    for name in (
        "AGENT_RELAY_BACKENDS",
        "AGENT_RELAY_FRAME_FORMAT",
        "AGENT_RELAY_SAME_CANDIDATE_DELAY_THRESHOLD_MS",
        "AGENT_RELAY_DEFAULT_RATE_LIMIT_DELAY_MS",
    ):
        monkeypatch.delenv(name, raising=False)


def _write_request(tmp_path: Path, count: int) -> Path:
    path = tmp_path / "request.json"
    path.write_text(
        json.dumps(
            {
                "tasks": [
                    {"input": {"target": f"https://site{index}.example.com", "instruction": "Read"}}
                    for index in range(count)
                ],
            },
        ),
        "utf-8",
    )
    return path


def _envelopes(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


def test_run_streams_ndjson_envelopes(
    tmp_path: Path,
    monkeypatch,
    relay_env,
    scripted_adapter,
    succeed_script,
) -> None:
    adapter = scripted_adapter(lambda request: succeed_script({"id": request.task_id}))
    monkeypatch.setattr(
        cli_main,
        "CONTROLLER",
        RelayCliController(adapter_factory=lambda settings: adapter),
    )
    request_path = _write_request(tmp_path, 3)

    result = CliRunner().invoke(
        agent_relay,
        ["run", str(request_path), "--format", "ndjson", "--concurrency", "2"],
    )

    assert result.exit_code == 0, result.output
    envelopes = _envelopes(result.output)
    assert envelopes[-1]["type"] == "run_complete"
    assert envelopes[-1]["data"]["completed"] == 3
    assert sorted(call.task_id for call in adapter.calls) == ["task-1", "task-2", "task-3"]
    assert all(call.candidate.api_key == "cli-key" for call in adapter.calls)
    assert "completed=3 failed=0 skipped=0" in result.output


def test_run_without_api_key_is_rejected(
    tmp_path: Path,
    monkeypatch,
    relay_env,
    scripted_adapter,
) -> None:
    monkeypatch.delenv("AGENT_RELAY_API_KEY")
    adapter = scripted_adapter(lambda request: [])
    monkeypatch.setattr(
        cli_main,
        "CONTROLLER",
        RelayCliController(adapter_factory=lambda settings: adapter),
    )

    result = CliRunner().invoke(
        agent_relay,
        ["run", str(_write_request(tmp_path, 2)), "--format", "ndjson"],
    )

    assert result.exit_code == 1
    assert "Run rejected: configuration error." in result.output
    envelopes = _envelopes(result.output)
    assert [item["type"] for item in envelopes] == ["task_error", "run_complete"]
    assert envelopes[1]["data"]["skipped"] == 2
    assert adapter.calls == []


def test_run_with_invalid_json_still_streams_run_complete(tmp_path: Path, relay_env) -> None:
    path = tmp_path / "request.json"
    path.write_text("{not json", "utf-8")

    result = CliRunner().invoke(agent_relay, ["run", str(path), "--format", "ndjson"])

    assert result.exit_code == 1
    assert "Configuration error" in result.output
    envelopes = _envelopes(result.output)
    assert [item["type"] for item in envelopes] == ["task_error", "run_complete"]
    assert "not valid JSON" in envelopes[0]["data"]["error"]
    assert envelopes[1]["data"]["total"] == 0


def test_run_with_broken_environment_streams_sse_rejection(
    tmp_path: Path,
    monkeypatch,
    relay_env,
) -> None:
    monkeypatch.setenv("AGENT_RELAY_BACKENDS", "no-separator")

    result = CliRunner().invoke(agent_relay, ["run", str(_write_request(tmp_path, 2))])

    assert result.exit_code == 1
    frames = [line for line in result.output.splitlines() if line.startswith("data: ")]
    envelopes = [json.loads(frame.removeprefix("data: ")) for frame in frames]
    assert [item["type"] for item in envelopes] == ["task_error", "run_complete"]
    assert "Expected format" in envelopes[0]["data"]["error"]
    assert envelopes[1]["data"]["skipped"] == 0


def test_repair_json_prints_recovered_document(tmp_path: Path) -> None:
    path = tmp_path / "output.txt"
    path.write_text('Here you go:\n```json\n{"items": [1, 2]}\n```\n', "utf-8")

    result = CliRunner().invoke(agent_relay, ["repair-json", str(path)])

    assert result.exit_code == 0, result.output
    assert '"items": [' in result.output
    assert "strategy=fenced" in result.output


def test_repair_json_fails_without_json(tmp_path: Path) -> None:
    path = tmp_path / "output.txt"
    path.write_text("no structured data here", "utf-8")

    result = CliRunner().invoke(agent_relay, ["repair-json", str(path)])

    assert result.exit_code == 1
    assert "No JSON could be recovered." in result.output


def test_classify_short_rate_limit_retries_same_candidate(relay_env) -> None:
    result = CliRunner().invoke(
        agent_relay,
        ["classify", "--message", "Too many requests, retry in 2s", "--status", "429"],
    )

    assert result.exit_code == 0, result.output
    assert "class=rate_limited" in result.output
    assert "delay_ms=2000" in result.output
    assert "matched_rule=http_429" in result.output
    assert "action=retry_same" in result.output


def test_classify_network_failure_backs_off(relay_env) -> None:
    result = CliRunner().invoke(
        agent_relay,
        ["classify", "--message", "socket closed", "--hint", "network"],
    )

    assert "class=transient" in result.output
    assert "reason_code=transient_network" in result.output
    assert "action=backoff_retry" in result.output


def test_classify_unknown_failure_is_fatal(relay_env) -> None:
    result = CliRunner().invoke(agent_relay, ["classify", "--message", "Page requires login"])

    assert "class=fatal" in result.output
    assert "matched_rule=fallback_fatal" in result.output
    assert "action=fail" in result.output
