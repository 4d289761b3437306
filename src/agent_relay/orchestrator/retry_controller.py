"""Per-task retry and candidate fallback driven by failure classification."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_relay.orchestrator.backend.base import (
    BackendAdapter,
    BackendCallRequest,
    BackendCandidate,
    BackendEventKind,
    CallFailure,
    CallOutcome,
    CallSuccess,
)
from agent_relay.orchestrator.backend.events import STREAM_ENDED_REASON
from agent_relay.orchestrator.contracts import TaskSpec
from agent_relay.orchestrator.failure_classifier import FailureClassification, classify_failure
from agent_relay.orchestrator.models import FailureClass, FailureHint
from agent_relay.orchestrator.multiplexer import TaskEventChannel
from agent_relay.orchestrator.policy import RetryPolicy
from agent_relay.orchestrator.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class AttemptTracker(Protocol):
    """Receives per-attempt bookkeeping for a task."""

    def record_attempt(self, task_id: str, candidate_id: str) -> None: ...

    def record_streaming_handle(self, task_id: str, url: str) -> None: ...


@dataclass(slots=True)
class TaskOutcome:
    """Final outcome of a task after retries and fallbacks."""

    ok: bool
    result: Any = None
    error: str | None = None
    streaming_handle: str | None = None
    candidate_id: str | None = None
    attempts: int = 0
    classification: FailureClassification | None = None
    attempts_by_candidate: dict[str, int] = field(default_factory=dict)

    @property
    def failure_class(self) -> FailureClass | None:
        if self.classification is None:
            return None
        return self.classification.failure_class


class RetryFallbackController:
    """Drive one task through its backend candidates.

    Rate limits with a short delay retry the same candidate; longer delays
    switch candidates at once.  Transient failures back off and retry until
    the per-candidate budget runs out.  Fatal failures end the task.
    """

    def __init__(  # noqa: PLR0913
        self,
        adapter: BackendAdapter,
        candidates: Sequence[BackendCandidate],
        policy: RetryPolicy,
        *,
        call_timeout_seconds: float | None = None,
        sleep: SleepFn = asyncio.sleep,
        tracker: AttemptTracker | None = None,
    ) -> None:
        if not candidates:
            raise ValueError("At least one backend candidate is required.")
        self.adapter = adapter
        self.candidates = tuple(candidates)
        self.policy = policy
        self.call_timeout_seconds = call_timeout_seconds
        self._sleep = sleep
        self._tracker = tracker

    async def run(  # noqa: C901
        self,
        task: TaskSpec,
        channel: TaskEventChannel | None = None,
    ) -> TaskOutcome:
        outcome = TaskOutcome(ok=False)
        last_failure: CallFailure | None = None
        max_attempts = self.policy.max_attempts_per_candidate

        for index, candidate in enumerate(self.candidates):
            attempt = 0
            while attempt < max_attempts:
                attempt += 1
                outcome.attempts += 1
                outcome.candidate_id = candidate.candidate_id
                outcome.attempts_by_candidate[candidate.candidate_id] = attempt
                if self._tracker is not None:
                    self._tracker.record_attempt(task.task_id, candidate.candidate_id)

                call = await self._attempt(task, candidate, attempt, channel)
                if call.streaming_handle is not None:
                    outcome.streaming_handle = call.streaming_handle
                if isinstance(call, CallSuccess):
                    outcome.ok = True
                    outcome.result = call.result
                    outcome.classification = None
                    outcome.error = None
                    return outcome

                last_failure = call
                classification = classify_failure(
                    call,
                    default_rate_limit_delay_ms=self.policy.default_rate_limit_delay_ms,
                )
                outcome.classification = classification
                outcome.error = sanitize_preview(call.reason) or call.reason
                details = classification.to_event_details(
                    candidate_id=candidate.candidate_id,
                    attempt=attempt,
                )

                if classification.failure_class == FailureClass.FATAL:
                    logger.info(
                        "Task %s: fatal failure on %s: %s",
                        task.task_id,
                        candidate.candidate_id,
                        outcome.error,
                    )
                    return outcome

                if classification.failure_class == FailureClass.RATE_LIMITED:
                    delay_ms = classification.delay_ms or 0.0
                    if (
                        delay_ms <= self.policy.same_candidate_delay_threshold_ms
                        and attempt < max_attempts
                    ):
                        await self._wait_before_retry(task, channel, delay_ms, details)
                        continue
                    logger.warning(
                        "Task %s: rate limited on %s (delay=%.0fms), switching candidate",
                        task.task_id,
                        candidate.candidate_id,
                        delay_ms,
                    )
                    break

                if attempt < max_attempts:
                    await self._wait_before_retry(
                        task,
                        channel,
                        self.policy.transient_backoff(attempt),
                        details,
                    )
                    continue
                logger.warning(
                    "Task %s: transient failures exhausted %d attempts on %s",
                    task.task_id,
                    max_attempts,
                    candidate.candidate_id,
                )

            if index + 1 < len(self.candidates):
                next_candidate = self.candidates[index + 1]
                logger.info(
                    "Task %s: falling back from %s to %s",
                    task.task_id,
                    candidate.candidate_id,
                    next_candidate.candidate_id,
                )
                if channel is not None:
                    await channel.progress(
                        f"Switching to backend {next_candidate.candidate_id}",
                        phase="fallback",
                        fromCandidate=candidate.candidate_id,
                        candidate=next_candidate.candidate_id,
                    )

        if last_failure is not None and outcome.error is None:
            outcome.error = last_failure.reason
        return outcome

    async def _attempt(
        self,
        task: TaskSpec,
        candidate: BackendCandidate,
        attempt: int,
        channel: TaskEventChannel | None,
    ) -> CallOutcome:
        request = BackendCallRequest(
            task_id=task.task_id,
            candidate=candidate,
            target=task.target,
            instruction=task.instruction,
            config=dict(task.config),
            attempt=attempt,
        )
        if self.call_timeout_seconds is None:
            return await self._consume(request, channel)
        try:
            async with asyncio.timeout(self.call_timeout_seconds):
                return await self._consume(request, channel)
        except TimeoutError:
            logger.warning(
                "Task %s: call to %s exceeded %.1fs",
                task.task_id,
                candidate.candidate_id,
                self.call_timeout_seconds,
            )
            return CallFailure(
                reason=f"Call timed out after {self.call_timeout_seconds:g}s",
                hint=FailureHint.TIMEOUT,
            )

    async def _consume(
        self,
        request: BackendCallRequest,
        channel: TaskEventChannel | None,
    ) -> CallOutcome:
        handle: str | None = None
        async with contextlib.aclosing(self.adapter.stream(request)) as events:
            async for event in events:
                if event.kind == BackendEventKind.PROGRESS and event.message:
                    if channel is not None:
                        await channel.progress(
                            event.message,
                            candidate=request.candidate.candidate_id,
                            attempt=request.attempt,
                        )
                elif event.kind == BackendEventKind.STREAMING_HANDLE and event.streaming_handle:
                    handle = event.streaming_handle
                    if self._tracker is not None:
                        self._tracker.record_streaming_handle(request.task_id, handle)
                    if channel is not None:
                        await channel.streaming_handle(handle)
                elif event.outcome is not None:
                    return event.outcome
        return CallFailure(
            reason=STREAM_ENDED_REASON,
            hint=FailureHint.PROTOCOL,
            streaming_handle=handle,
        )

    async def _wait_before_retry(
        self,
        task: TaskSpec,
        channel: TaskEventChannel | None,
        delay_ms: float,
        details: dict[str, object],
    ) -> None:
        logger.warning(
            "Task %s: %s failure (%s), retrying in %.0fms",
            task.task_id,
            details["failure_class"],
            details["matched_rule"],
            delay_ms,
        )
        if channel is not None:
            await channel.progress(
                f"Retrying in {delay_ms / 1000:.1f}s",
                phase="retry",
                delayMs=delay_ms,
                candidate=details["candidate"],
                attempt=details["attempt"],
                failureClass=details["failure_class"],
            )
        await self._sleep(delay_ms / 1000.0)
