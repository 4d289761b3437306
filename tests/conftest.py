"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

import pytest

from agent_relay.config import (
    BackendEndpoint,
    BackendSettings,
    OrchestratorSettings,
    RetrySettings,
    Settings,
)
from agent_relay.orchestrator.backend.base import BackendCallRequest, BackendEvent

# Script marker: the fake call blocks until cancelled.
HANG = object()

Script = Callable[[BackendCallRequest], Sequence[object]]


class ScriptedAdapter:
    """Fake backend adapter replaying scripted events per call."""

    def __init__(self, script: Script, *, step_delay: float = 0.0) -> None:
        self._script = script
        self._step_delay = step_delay
        self.calls: list[BackendCallRequest] = []
        self.active = 0
        self.peak_active = 0
        self.closed_streams = 0

    async def __aenter__(self) -> ScriptedAdapter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    def candidates_called(self, task_id: str | None = None) -> list[str]:
        return [
            call.candidate.candidate_id
            for call in self.calls
            if task_id is None or call.task_id == task_id
        ]

    async def stream(self, request: BackendCallRequest):
        self.calls.append(request)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            for item in self._script(request):
                await asyncio.sleep(self._step_delay)
                if item is HANG:
                    await asyncio.Event().wait()
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.active -= 1
            self.closed_streams += 1


def succeed(result: object = None, *, steps: Sequence[str] = ("Working",)) -> list[BackendEvent]:
    return [*(BackendEvent.progress(step) for step in steps), BackendEvent.success(result)]


class SleepRecorder:
    """Injectable sleep that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        backend=BackendSettings(
            endpoints=(
                BackendEndpoint(candidate_id="primary", url="https://primary.example.com/run-sse"),
                BackendEndpoint(candidate_id="backup", url="https://backup.example.com/run-sse"),
            ),
            api_key="test-key",
        ),
        orchestrator=OrchestratorSettings(
            default_concurrency_limit=2,
            run_timeout_seconds=30.0,
            call_timeout_seconds=None,
            frame_format="ndjson",
            writer_queue_size=16,
        ),
        retry=RetrySettings(transient_backoff_ms=10.0),
    )


@pytest.fixture()
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def scripted_adapter() -> type[ScriptedAdapter]:
    return ScriptedAdapter


@pytest.fixture()
def hang_marker() -> object:
    return HANG


@pytest.fixture()
def succeed_script() -> Callable[..., list[BackendEvent]]:
    return succeed
