"""Controllers for agent-relay CLI commands."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

from agent_relay.config import Settings
from agent_relay.orchestrator.backend import CallFailure, HttpStreamingBackend
from agent_relay.orchestrator.contracts import load_run_request
from agent_relay.orchestrator.failure_classifier import classify_failure
from agent_relay.orchestrator.models import FailureHint
from agent_relay.orchestrator.output_repair import OutputParseError, parse_structured_output
from agent_relay.orchestrator.runner import (
    DEFAULT_FRAME_FORMAT,
    OrchestrationRunner,
    RunReport,
    reject_run,
)
from agent_relay.orchestrator.writer import TextStreamSink

AdapterFactory = Callable[[Settings], Any]


@dataclass(slots=True)
class RunCommand:
    """CLI input for one orchestration run."""

    request_path: Path
    frame_format: str | None = None
    concurrency: int | None = None
    run_timeout_seconds: float | None = None


@dataclass(slots=True)
class RepairJsonCommand:
    """CLI input for structured output repair."""

    path: Path


@dataclass(slots=True)
class ClassifyCommand:
    """CLI input for a one-off failure classification."""

    message: str
    status_code: int | None = None
    hint: str = FailureHint.REMOTE.value
    retry_after_ms: float | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines for stdout, diagnostics for stderr and overall success."""

    lines: list[str] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    success: bool = True


def _http_backend(settings: Settings) -> HttpStreamingBackend:
    return HttpStreamingBackend(connect_timeout_seconds=settings.backend.connect_timeout_seconds)


class RelayCliController:
    """Application controller for run / repair-json / classify commands."""

    def __init__(
        self,
        *,
        adapter_factory: AdapterFactory = _http_backend,
        stdout: TextIO | None = None,
    ) -> None:
        self._adapter_factory = adapter_factory
        self._stdout = stdout

    def run(self, command: RunCommand) -> CommandResult:
        settings: Settings | None = None
        try:
            settings = Settings.from_env()
            raw_request = load_run_request(command.request_path)
        except ValueError as error:
            frame_format = command.frame_format or (
                settings.orchestrator.frame_format if settings is not None else None
            )
            report = asyncio.run(
                reject_run(
                    TextStreamSink(self._stdout or sys.stdout),
                    str(error),
                    frame_format=frame_format or DEFAULT_FRAME_FORMAT,
                ),
            )
            return CommandResult(
                diagnostics=[f"Configuration error: {report.error}"],
                success=False,
            )

        if command.concurrency is not None:
            raw_request["concurrencyLimit"] = command.concurrency
        if command.run_timeout_seconds is not None:
            raw_request["runTimeoutSeconds"] = command.run_timeout_seconds

        report = asyncio.run(
            self._run_async(
                settings=settings,
                raw_request=raw_request,
                frame_format=command.frame_format,
            ),
        )
        summary = report.summary
        diagnostics = [
            f"Run {report.run.run_id}: total={summary.total} completed={summary.completed} "
            f"failed={summary.failed} skipped={summary.skipped} "
            f"duration_ms={summary.duration_ms} cancelled={str(summary.cancelled).lower()}",
        ]
        if report.error is not None:
            diagnostics.insert(0, f"Configuration error: {report.error}")
        return CommandResult(diagnostics=diagnostics, success=report.ok)

    def repair_json(self, command: RepairJsonCommand) -> CommandResult:
        text = command.path.read_text("utf-8", errors="replace")
        try:
            parsed = parse_structured_output(text)
        except OutputParseError as error:
            return CommandResult(diagnostics=[f"Could not recover JSON: {error}"], success=False)
        return CommandResult(
            lines=[json.dumps(parsed.payload, ensure_ascii=False, indent=2)],
            diagnostics=[f"strategy={parsed.strategy}"],
        )

    def classify(self, command: ClassifyCommand) -> CommandResult:
        settings = Settings.from_env()
        classification = classify_failure(
            CallFailure(
                reason=command.message,
                hint=FailureHint(command.hint),
                status_code=command.status_code,
                retry_after_ms=command.retry_after_ms,
            ),
            default_rate_limit_delay_ms=settings.retry.default_rate_limit_delay_ms,
        )
        delay = "-" if classification.delay_ms is None else f"{classification.delay_ms:.0f}"
        threshold = settings.retry.same_candidate_delay_threshold_ms
        lines = [
            f"class={classification.failure_class.value}",
            f"delay_ms={delay}",
            f"reason_code={classification.reason_code}",
            f"matched_rule={classification.matched_rule}",
            f"matched_pattern={classification.matched_pattern or '-'}",
        ]
        if classification.delay_ms is not None:
            action = "retry_same" if classification.delay_ms <= threshold else "switch_candidate"
            lines.append(f"action={action}")
        elif not classification.is_retryable:
            lines.append("action=fail")
        else:
            lines.append("action=backoff_retry")
        return CommandResult(lines=lines)

    async def _run_async(
        self,
        *,
        settings: Settings,
        raw_request: dict[str, Any],
        frame_format: str | None,
    ) -> RunReport:
        cancel_event = asyncio.Event()
        sink = TextStreamSink(self._stdout or sys.stdout)
        async with self._adapter_factory(settings) as adapter:
            runner = OrchestrationRunner(adapter, settings)
            with _cancel_on_signals(cancel_event):
                return await runner.run(
                    raw_request,
                    sink,
                    cancel_event=cancel_event,
                    frame_format=frame_format,
                )


@contextmanager
def _cancel_on_signals(cancel_event: asyncio.Event) -> Iterator[None]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, cancel_event.set)
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop signal support (Windows) or not in the main thread.
            continue
        installed.append(signum)
    try:
        yield
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
