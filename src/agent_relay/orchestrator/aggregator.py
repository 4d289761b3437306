"""Authoritative per-task terminal state and run summaries."""

from __future__ import annotations

import logging
from typing import Any

from agent_relay.orchestrator.models import (
    OrchestrationRun,
    RunSummary,
    TaskResult,
    TaskStatus,
    TaskUnit,
    now_ms,
)

logger = logging.getLogger(__name__)


class ResultAggregator:
    """Owns task status transitions for one run.

    Transition methods return True only when the status actually changed, so
    callers emit a terminal envelope only for the transition that won.
    """

    def __init__(self, run: OrchestrationRun) -> None:
        self._run = run
        self._tasks = {task.task_id: task for task in run.tasks}

    @property
    def run(self) -> OrchestrationRun:
        return self._run

    @property
    def running_count(self) -> int:
        return sum(1 for task in self._run.tasks if task.status == TaskStatus.RUNNING)

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._run.tasks if task.status == TaskStatus.PENDING)

    def task(self, task_id: str) -> TaskUnit:
        return self._tasks[task_id]

    def mark_running(self, task_id: str) -> bool:
        return self._tasks[task_id].transition(TaskStatus.RUNNING, at=now_ms())

    def mark_completed(
        self,
        task_id: str,
        result: Any,
        *,
        streaming_handle: str | None = None,
    ) -> bool:
        task = self._tasks[task_id]
        if not task.transition(TaskStatus.COMPLETED, at=now_ms()):
            logger.debug("Task %s: ignored completion in status %s", task_id, task.status.value)
            return False
        task.result = result
        if streaming_handle is not None:
            task.streaming_handle = streaming_handle
        return True

    def mark_failed(self, task_id: str, error: str) -> bool:
        task = self._tasks[task_id]
        if not task.transition(TaskStatus.FAILED, at=now_ms()):
            logger.debug("Task %s: ignored failure in status %s", task_id, task.status.value)
            return False
        task.error = error
        return True

    def record_attempt(self, task_id: str, candidate_id: str) -> None:
        task = self._tasks[task_id]
        if task.status.is_terminal:
            return
        task.attempts += 1
        task.candidate_id = candidate_id

    def record_streaming_handle(self, task_id: str, url: str) -> None:
        task = self._tasks[task_id]
        if not task.status.is_terminal:
            task.streaming_handle = url

    def cancel(self, reason: str) -> list[str]:
        """Force every pending or running task to skipped; return their ids."""

        if not self._run.cancelled:
            self._run.cancelled = True
            self._run.cancel_reason = reason
        at = now_ms()
        skipped = [
            task.task_id
            for task in self._run.tasks
            if not task.status.is_terminal and task.transition(TaskStatus.SKIPPED, at=at)
        ]
        if skipped:
            logger.info(
                "Run %s cancelled (%s): skipped %d tasks",
                self._run.run_id,
                reason,
                len(skipped),
            )
        return skipped

    def partial_results(self) -> list[TaskResult]:
        """Snapshot of tasks that already reached a terminal status."""

        return [task.to_result() for task in self._run.tasks if task.status.is_terminal]

    def results(self) -> list[TaskResult]:
        return [task.to_result() for task in self._run.tasks]

    def summary(self, *, at: int | None = None) -> RunSummary:
        """Counts recomputed from the current task statuses."""

        counts = {status: 0 for status in TaskStatus}
        for task in self._run.tasks:
            counts[task.status] += 1
        end = at if at is not None else now_ms()
        return RunSummary(
            total=len(self._run.tasks),
            completed=counts[TaskStatus.COMPLETED],
            failed=counts[TaskStatus.FAILED],
            skipped=counts[TaskStatus.SKIPPED],
            duration_ms=max(end - self._run.started_at, 0),
            cancelled=self._run.cancelled,
        )

    def finalize(self) -> RunSummary:
        at = now_ms()
        self._run.completed_at = at
        self._run.summary = self.summary(at=at)
        return self._run.summary
