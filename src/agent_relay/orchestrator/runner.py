"""Run coordinator wiring limiter, controllers, multiplexer, writer and aggregator."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from agent_relay.config import Settings
from agent_relay.orchestrator.aggregator import ResultAggregator
from agent_relay.orchestrator.backend.base import BackendAdapter
from agent_relay.orchestrator.contracts import (
    FRAME_FORMATS,
    ConfigurationError,
    RunRequest,
    TaskSpec,
    parse_run_request,
    run_complete_envelope,
    run_error_envelope,
    task_ids_from_request,
)
from agent_relay.orchestrator.limiter import ConcurrencyLimiter
from agent_relay.orchestrator.models import (
    OrchestrationRun,
    RunSummary,
    TaskResult,
    TaskStatus,
    TaskUnit,
    now_ms,
)
from agent_relay.orchestrator.multiplexer import EventMultiplexer, TaskEventChannel
from agent_relay.orchestrator.retry_controller import RetryFallbackController, SleepFn
from agent_relay.orchestrator.routing import resolve_candidates
from agent_relay.orchestrator.sanitization import sanitize_preview
from agent_relay.orchestrator.writer import OutboundStreamWriter, StreamSink

logger = logging.getLogger(__name__)

CANCEL_REASON_RUN_TIMEOUT = "run_timeout"
CANCEL_REASON_REQUESTED = "cancel_requested"
CANCEL_REASON_ABORTED = "aborted"
DEFAULT_FRAME_FORMAT = "sse"


@dataclass(slots=True)
class RunReport:
    """What the caller gets back once the outbound stream is closed."""

    run: OrchestrationRun
    summary: RunSummary
    results: list[TaskResult]
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class OrchestrationRunner:
    """Execute one orchestration run and stream its envelopes to a sink."""

    def __init__(
        self,
        adapter: BackendAdapter,
        settings: Settings | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.adapter = adapter
        self.settings = settings or Settings()
        self._sleep = sleep

    async def run(
        self,
        raw_request: dict[str, Any],
        sink: StreamSink,
        *,
        cancel_event: asyncio.Event | None = None,
        frame_format: str | None = None,
    ) -> RunReport:
        if frame_format is not None and frame_format not in FRAME_FORMATS:
            raise ValueError(f"Unsupported frame format: {frame_format!r}")
        frame_format = frame_format or self.settings.orchestrator.frame_format
        if frame_format not in FRAME_FORMATS:
            # validate_for_run rejects the setting; the rejection still needs a framing.
            frame_format = DEFAULT_FRAME_FORMAT
        run_id = uuid.uuid4().hex[:12]
        started_at = now_ms()
        writer = OutboundStreamWriter(
            sink,
            frame_format=frame_format,
            queue_size=self.settings.orchestrator.writer_queue_size,
        )
        writer.start()

        try:
            request = self._prepare(raw_request)
            candidates = resolve_candidates(request.candidate_ids, self.settings.backend)
        except (ValueError, TypeError, OverflowError) as error:
            return await _write_rejection(
                writer,
                str(error),
                raw_request=raw_request,
                run_id=run_id,
                started_at=started_at,
            )

        run = OrchestrationRun(
            run_id=run_id,
            tasks=[
                TaskUnit(task_id=spec.task_id, payload=spec.to_payload()) for spec in request.tasks
            ],
            started_at=started_at,
        )
        aggregator = ResultAggregator(run)
        multiplexer = EventMultiplexer(writer.send)
        channels = {spec.task_id: multiplexer.channel(spec.task_id) for spec in request.tasks}
        controller = RetryFallbackController(
            self.adapter,
            candidates,
            request.retry_policy,
            call_timeout_seconds=request.call_timeout_seconds,
            sleep=self._sleep,
            tracker=aggregator,
        )
        limiter: ConcurrencyLimiter[TaskSpec] = ConcurrencyLimiter(request.concurrency_limit)
        logger.info(
            "Run %s started: tasks=%d concurrency=%d candidates=%s",
            run_id,
            len(request.tasks),
            request.concurrency_limit,
            [candidate.candidate_id for candidate in candidates],
        )

        async def _work(spec: TaskSpec) -> None:
            await self._execute_task(spec, controller, aggregator, channels[spec.task_id])

        async def _isolate(spec: TaskSpec, error: Exception) -> None:
            message = sanitize_preview(f"Internal error: {error.__class__.__name__}: {error}")
            if aggregator.mark_failed(spec.task_id, message):
                await channels[spec.task_id].failed(message)

        stop = asyncio.Event()
        stop_reasons: list[str] = []
        watcher = asyncio.create_task(
            self._watch_stop(stop, stop_reasons, cancel_event, request.run_timeout_seconds),
        )
        try:
            await limiter.run_all(request.tasks, _work, on_error=_isolate, cancel_event=stop)
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            if aggregator.pending_count or aggregator.running_count:
                aggregator.cancel(stop_reasons[0] if stop_reasons else CANCEL_REASON_ABORTED)
            summary = aggregator.finalize()
            await writer.send(run_complete_envelope(summary, at=now_ms()))
            await writer.close()

        logger.info(
            "Run %s finished: completed=%d failed=%d skipped=%d duration_ms=%d "
            "cancelled=%s peak_running=%d",
            run_id,
            summary.completed,
            summary.failed,
            summary.skipped,
            summary.duration_ms,
            summary.cancelled,
            limiter.peak_running,
        )
        return RunReport(run=run, summary=summary, results=aggregator.results())

    def _prepare(self, raw_request: dict[str, Any]) -> RunRequest:
        try:
            self.settings.validate_for_run()
        except ValueError as error:
            raise ConfigurationError(str(error)) from error
        orchestrator = self.settings.orchestrator
        return parse_run_request(
            raw_request,
            default_concurrency_limit=orchestrator.default_concurrency_limit,
            max_concurrency_limit=orchestrator.max_concurrency_limit,
            run_timeout_seconds=orchestrator.run_timeout_seconds,
            call_timeout_seconds=orchestrator.call_timeout_seconds,
            retry_policy=self.settings.retry.to_policy(),
        )

    async def _execute_task(
        self,
        spec: TaskSpec,
        controller: RetryFallbackController,
        aggregator: ResultAggregator,
        channel: TaskEventChannel,
    ) -> None:
        if not aggregator.mark_running(spec.task_id):
            return
        await channel.started(target=spec.target, instruction=spec.instruction)
        outcome = await controller.run(spec, channel)
        if outcome.ok:
            if aggregator.mark_completed(
                spec.task_id,
                outcome.result,
                streaming_handle=outcome.streaming_handle,
            ):
                await channel.completed(
                    outcome.result,
                    streamingUrl=outcome.streaming_handle,
                    attempts=outcome.attempts,
                    candidate=outcome.candidate_id,
                )
            return
        error = outcome.error or "Task failed"
        if aggregator.mark_failed(spec.task_id, error):
            failure_class = outcome.failure_class
            await channel.failed(
                error,
                failureClass=failure_class.value if failure_class is not None else None,
                attempts=outcome.attempts,
                candidate=outcome.candidate_id,
            )

    async def _watch_stop(
        self,
        stop: asyncio.Event,
        reasons: list[str],
        cancel_event: asyncio.Event | None,
        run_timeout_seconds: float,
    ) -> None:
        try:
            async with asyncio.timeout(run_timeout_seconds):
                if cancel_event is None:
                    await asyncio.Event().wait()
                else:
                    await cancel_event.wait()
            reasons.append(CANCEL_REASON_REQUESTED)
        except TimeoutError:
            logger.warning("Run exceeded %.1fs wall-clock budget; cancelling", run_timeout_seconds)
            reasons.append(CANCEL_REASON_RUN_TIMEOUT)
        stop.set()


async def reject_run(
    sink: StreamSink,
    error: str,
    *,
    raw_request: dict[str, Any] | None = None,
    frame_format: str = DEFAULT_FRAME_FORMAT,
) -> RunReport:
    """Stream the rejection of a run that could not even be loaded.

    Emits one ``task_error`` without a task id and a ``run_complete`` that
    counts every task of ``raw_request`` (if any) as skipped.
    """
    if frame_format not in FRAME_FORMATS:
        frame_format = DEFAULT_FRAME_FORMAT
    writer = OutboundStreamWriter(sink, frame_format=frame_format)
    writer.start()
    return await _write_rejection(
        writer,
        error,
        raw_request=raw_request or {},
        run_id=uuid.uuid4().hex[:12],
        started_at=now_ms(),
    )


async def _write_rejection(
    writer: OutboundStreamWriter,
    error: str,
    *,
    raw_request: dict[str, Any],
    run_id: str,
    started_at: int,
) -> RunReport:
    message = sanitize_preview(error) or "Invalid run configuration"
    logger.error("Run %s rejected: %s", run_id, message)
    run = OrchestrationRun(
        run_id=run_id,
        tasks=[
            TaskUnit(task_id=task_id, payload={}) for task_id in task_ids_from_request(raw_request)
        ],
        started_at=started_at,
    )
    at = now_ms()
    for task in run.tasks:
        task.transition(TaskStatus.SKIPPED, at=at)
    aggregator = ResultAggregator(run)
    summary = aggregator.finalize()
    await writer.send(run_error_envelope(message, at=at))
    await writer.send(run_complete_envelope(summary, at=now_ms()))
    await writer.close()
    return RunReport(run=run, summary=summary, results=aggregator.results(), error=message)
