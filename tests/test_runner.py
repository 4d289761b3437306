from __future__ import annotations

import asyncio
import dataclasses
import json
from typing import Any

import allure
import pytest

from agent_relay.orchestrator.backend.base import BackendEvent
from agent_relay.orchestrator.backend.events import STREAM_ENDED_REASON
from agent_relay.orchestrator.models import TaskStatus
from agent_relay.orchestrator.runner import (
    CANCEL_REASON_REQUESTED,
    CANCEL_REASON_RUN_TIMEOUT,
    OrchestrationRunner,
    reject_run,
)
from agent_relay.orchestrator.writer import QueueSink

pytestmark = [
    allure.epic("Run Orchestration"),
    allure.feature("Run Coordinator"),
]


def _request(count: int, **extra: Any) -> dict[str, Any]:
    return {
        "tasks": [
            {
                "id": f"t{index}",
                "input": {
                    "target": f"https://site{index}.example.com",
                    "instruction": "Read the headline",
                },
            }
            for index in range(count)
        ],
        **extra,
    }


async def _envelopes(sink: QueueSink) -> list[dict[str, Any]]:
    return [json.loads(frame) async for frame in sink]


def _types_for(envelopes: list[dict[str, Any]], task_id: str) -> list[str]:
    return [item["type"] for item in envelopes if item.get("taskId") == task_id]


@pytest.mark.asyncio
async def test_all_tasks_complete_within_concurrency_limit(
    settings, scripted_adapter, sleep_recorder, succeed_script
) -> None:
    adapter = scripted_adapter(
        lambda request: succeed_script({"title": request.task_id}),
        step_delay=0.005,
    )
    sink = QueueSink()

    report = await OrchestrationRunner(adapter, settings, sleep=sleep_recorder).run(
        _request(5, concurrencyLimit=2),
        sink,
    )

    envelopes = await _envelopes(sink)
    assert report.ok
    assert adapter.peak_active <= 2
    assert [item["type"] for item in envelopes].count("run_complete") == 1
    assert envelopes[-1]["type"] == "run_complete"
    assert envelopes[-1]["data"]["completed"] == 5
    assert envelopes[-1]["data"]["cancelled"] is False
    for index in range(5):
        types = _types_for(envelopes, f"t{index}")
        assert types[0] == "task_start"
        assert types[-1] == "task_complete"
        assert types.count("task_complete") == 1
    completion = next(
        item for item in envelopes if item["type"] == "task_complete" and item["taskId"] == "t3"
    )
    assert completion["data"]["result"] == {"title": "t3"}
    assert completion["data"]["candidate"] == "primary"
    assert completion["data"]["attempts"] == 1


@pytest.mark.asyncio
async def test_stream_ending_early_fails_only_that_task(
    settings, scripted_adapter, sleep_recorder, succeed_script
) -> None:
    def script(request):
        if request.task_id == "t1":
            return [BackendEvent.progress("Scrolling")]
        return succeed_script("ok")

    adapter = scripted_adapter(script)
    sink = QueueSink()

    report = await OrchestrationRunner(adapter, settings, sleep=sleep_recorder).run(
        _request(3),
        sink,
    )

    envelopes = await _envelopes(sink)
    statuses = {result.task_id: result.status for result in report.results}
    assert statuses == {
        "t0": TaskStatus.COMPLETED,
        "t1": TaskStatus.FAILED,
        "t2": TaskStatus.COMPLETED,
    }
    error = next(item for item in envelopes if item["type"] == "task_error")
    assert error["taskId"] == "t1"
    assert error["data"]["error"] == STREAM_ENDED_REASON
    assert error["data"]["failureClass"] == "fatal"
    assert adapter.candidates_called("t1") == ["primary"]
    summary = envelopes[-1]["data"]
    assert (summary["total"], summary["completed"], summary["failed"], summary["skipped"]) == (
        3,
        2,
        1,
        0,
    )


@pytest.mark.asyncio
async def test_consumer_disconnect_does_not_abort_the_run(
    settings, scripted_adapter, sleep_recorder, succeed_script
) -> None:
    sink = QueueSink()

    def script(request):
        if request.task_id == "t1":
            sink.disconnect()
        return succeed_script("ok")

    adapter = scripted_adapter(script)

    report = await OrchestrationRunner(adapter, settings, sleep=sleep_recorder).run(
        _request(3, concurrencyLimit=1),
        sink,
    )

    assert report.summary.completed == 3
    assert not report.summary.cancelled
    envelopes = await _envelopes(sink)
    assert "run_complete" not in [item["type"] for item in envelopes]
    assert all(result.status == TaskStatus.COMPLETED for result in report.results)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("mutate", "raw_request", "error_fragment", "total"),
    [
        (
            lambda settings: dataclasses.replace(
                settings,
                backend=dataclasses.replace(settings.backend, api_key=None),
            ),
            _request(2),
            "AGENT_RELAY_API_KEY",
            2,
        ),
        (
            lambda settings: settings,
            {
                "tasks": [
                    {"id": "a", "input": {"target": "https://a.example.com", "instruction": "x"}},
                    {"id": "a", "input": {"target": "https://b.example.com", "instruction": "y"}},
                ],
            },
            "Duplicate task ids",
            2,
        ),
        (lambda settings: settings, {"tasks": []}, "non-empty", 0),
        (
            lambda settings: settings,
            _request(1, backendCandidates=["missing"]),
            "Unknown backend candidates",
            1,
        ),
        (
            lambda settings: settings,
            _request(1, retryPolicy={"maxAttemptsPerCandidate": 1e400}),
            "maxAttemptsPerCandidate",
            1,
        ),
        (
            lambda settings: settings,
            _request(2, runTimeoutSeconds=float("inf")),
            "runTimeoutSeconds",
            2,
        ),
    ],
)
async def test_configuration_errors_reject_the_run(
    settings,
    scripted_adapter,
    sleep_recorder,
    succeed_script,
    mutate,
    raw_request,
    error_fragment,
    total,
) -> None:
    adapter = scripted_adapter(lambda request: succeed_script("never"))
    sink = QueueSink()

    report = await OrchestrationRunner(adapter, mutate(settings), sleep=sleep_recorder).run(
        raw_request,
        sink,
    )

    envelopes = await _envelopes(sink)
    assert not report.ok
    assert error_fragment in (report.error or "")
    assert adapter.calls == []
    assert [item["type"] for item in envelopes] == ["task_error", "run_complete"]
    assert "taskId" not in envelopes[0]
    assert error_fragment in envelopes[0]["data"]["error"]
    assert envelopes[1]["data"]["total"] == total
    assert envelopes[1]["data"]["skipped"] == total
    assert envelopes[1]["data"]["cancelled"] is False


@pytest.mark.asyncio
async def test_run_timeout_keeps_finished_results(
    settings, scripted_adapter, sleep_recorder, hang_marker, succeed_script
) -> None:
    def script(request):
        if request.task_id == "t0":
            return succeed_script({"price": 42})
        return [BackendEvent.progress("Loading"), hang_marker]

    adapter = scripted_adapter(script)
    sink = QueueSink()

    report = await OrchestrationRunner(adapter, settings, sleep=sleep_recorder).run(
        _request(3, concurrencyLimit=2, runTimeoutSeconds=0.1),
        sink,
    )

    envelopes = await _envelopes(sink)
    summary = envelopes[-1]["data"]
    assert envelopes[-1]["type"] == "run_complete"
    assert summary["completed"] == 1
    assert summary["skipped"] == 2
    assert summary["cancelled"] is True
    assert report.run.cancel_reason == CANCEL_REASON_RUN_TIMEOUT
    assert report.results[0].result == {"price": 42}
    assert "task_error" not in [item["type"] for item in envelopes]
    assert adapter.active == 0


@pytest.mark.asyncio
async def test_external_cancel_skips_unfinished_tasks(
    settings, scripted_adapter, sleep_recorder, hang_marker, succeed_script
) -> None:
    cancel = asyncio.Event()

    def script(request):
        if request.task_id == "t0":
            return succeed_script("first")
        cancel.set()
        return [hang_marker]

    adapter = scripted_adapter(script)
    sink = QueueSink()

    report = await OrchestrationRunner(adapter, settings, sleep=sleep_recorder).run(
        _request(4, concurrencyLimit=1),
        sink,
        cancel_event=cancel,
    )

    assert report.run.cancel_reason == CANCEL_REASON_REQUESTED
    assert report.summary.completed == 1
    assert report.summary.skipped == 3
    assert report.summary.cancelled
    assert adapter.candidates_called() == ["primary", "primary"]
    envelopes = await _envelopes(sink)
    assert [item["type"] for item in envelopes].count("run_complete") == 1


@pytest.mark.asyncio
async def test_worker_exception_is_reported_as_task_error(
    settings, scripted_adapter, sleep_recorder, succeed_script
) -> None:
    def script(request):
        if request.task_id == "t0":
            return [BackendEvent.progress("Starting"), RuntimeError("adapter bug")]
        return succeed_script("ok")

    adapter = scripted_adapter(script)
    sink = QueueSink()

    report = await OrchestrationRunner(adapter, settings, sleep=sleep_recorder).run(
        _request(2),
        sink,
    )

    envelopes = await _envelopes(sink)
    assert report.summary.failed == 1
    assert report.summary.completed == 1
    assert _types_for(envelopes, "t0")[-1] == "task_error"
    error = next(item for item in envelopes if item["type"] == "task_error")
    assert error["data"]["error"] == "Internal error: RuntimeError: adapter bug"


@pytest.mark.asyncio
async def test_unsupported_frame_format_is_rejected(settings, scripted_adapter) -> None:
    runner = OrchestrationRunner(scripted_adapter(lambda request: []), settings)

    with pytest.raises(ValueError, match="Unsupported frame format"):
        await runner.run(_request(1), QueueSink(), frame_format="xml")


@pytest.mark.asyncio
async def test_invalid_frame_format_setting_rejects_with_sse_framing(
    settings, scripted_adapter
) -> None:
    adapter = scripted_adapter(lambda request: [])
    settings = dataclasses.replace(
        settings,
        orchestrator=dataclasses.replace(settings.orchestrator, frame_format="xml"),
    )
    sink = QueueSink()

    report = await OrchestrationRunner(adapter, settings).run(_request(1), sink)

    frames = [frame async for frame in sink]
    assert "AGENT_RELAY_FRAME_FORMAT" in (report.error or "")
    assert adapter.calls == []
    assert all(frame.startswith("data: ") for frame in frames)
    assert [json.loads(frame.removeprefix("data: "))["type"] for frame in frames] == [
        "task_error",
        "run_complete",
    ]


@pytest.mark.asyncio
async def test_reject_run_without_request_reports_empty_summary() -> None:
    sink = QueueSink()

    report = await reject_run(sink, "Invalid JSON in request.json", frame_format="ndjson")

    envelopes = await _envelopes(sink)
    assert report.error == "Invalid JSON in request.json"
    assert [item["type"] for item in envelopes] == ["task_error", "run_complete"]
    assert "taskId" not in envelopes[0]
    assert envelopes[1]["data"]["total"] == 0
    assert envelopes[1]["data"]["skipped"] == 0
