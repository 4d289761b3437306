"""Domain models for orchestration runs, task units and outbound envelopes."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Return wall-clock time as epoch milliseconds."""

    return int(time.time() * 1000)


class TaskStatus(str, Enum):
    """Task unit lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED})

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.SKIPPED, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED}),
}


class InvalidTransitionError(RuntimeError):
    """Raised on a status change the task lifecycle does not allow."""


class TaskEventKind(str, Enum):
    """Normalized per-task event kinds."""

    STARTED = "started"
    PROGRESS = "progress"
    STREAMING_HANDLE = "streaming_handle"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskEventKind.COMPLETED, TaskEventKind.FAILED}


class FailureClass(str, Enum):
    """Retry classes produced by the failure classifier."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


class FailureHint(str, Enum):
    """Where a backend call failure originated."""

    HTTP_STATUS = "http_status"
    NETWORK = "network"
    TIMEOUT = "timeout"
    REMOTE = "remote"
    PROTOCOL = "protocol"


class EnvelopeType(str, Enum):
    """Outbound envelope types seen by stream subscribers."""

    TASK_START = "task_start"
    TASK_PROGRESS = "task_progress"
    TASK_STREAMING_HANDLE = "task_streaming_handle"
    TASK_COMPLETE = "task_complete"
    TASK_ERROR = "task_error"
    RUN_COMPLETE = "run_complete"


ENVELOPE_TYPE_BY_EVENT_KIND: dict[TaskEventKind, EnvelopeType] = {
    TaskEventKind.STARTED: EnvelopeType.TASK_START,
    TaskEventKind.PROGRESS: EnvelopeType.TASK_PROGRESS,
    TaskEventKind.STREAMING_HANDLE: EnvelopeType.TASK_STREAMING_HANDLE,
    TaskEventKind.COMPLETED: EnvelopeType.TASK_COMPLETE,
    TaskEventKind.FAILED: EnvelopeType.TASK_ERROR,
}


@dataclass(slots=True)
class TaskUnit:
    """One independently schedulable unit of remote work."""

    task_id: str
    payload: dict[str, Any]
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None
    error: str | None = None
    streaming_handle: str | None = None
    attempts: int = 0
    candidate_id: str | None = None
    started_at: int | None = None
    finished_at: int | None = None

    def transition(self, status: TaskStatus, *, at: int) -> bool:
        """Move to `status`; return False when the task is already terminal."""

        if self.status.is_terminal:
            return False
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Task {self.task_id!r} cannot move from {self.status.value} to {status.value}.",
            )
        self.status = status
        if status == TaskStatus.RUNNING:
            self.started_at = at
        if status.is_terminal:
            self.finished_at = at
        return True

    def to_result(self) -> TaskResult:
        return TaskResult(
            task_id=self.task_id,
            status=self.status,
            result=self.result,
            error=self.error,
            streaming_handle=self.streaming_handle,
            attempts=self.attempts,
            candidate_id=self.candidate_id,
        )


@dataclass(slots=True, frozen=True)
class TaskResult:
    """Read-only snapshot of one task's outcome."""

    task_id: str
    status: TaskStatus
    result: Any
    error: str | None
    streaming_handle: str | None
    attempts: int
    candidate_id: str | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "streamingUrl": self.streaming_handle,
            "attempts": self.attempts,
            "candidate": self.candidate_id,
        }


@dataclass(slots=True, frozen=True)
class TaskEvent:
    """Event generated for one task by its controller or backend call."""

    task_id: str
    kind: TaskEventKind
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    @property
    def is_terminal(self) -> bool:
        return self.kind.is_terminal


@dataclass(slots=True, frozen=True)
class RunSummary:
    """Run-level counts recomputed from the terminal task set."""

    total: int
    completed: int
    failed: int
    skipped: int
    duration_ms: int
    cancelled: bool = False

    def to_payload(self) -> dict[str, object]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "durationMs": self.duration_ms,
            "cancelled": self.cancelled,
        }


@dataclass(slots=True)
class OrchestrationRun:
    """Bounded-lifetime container for the task units submitted together."""

    run_id: str
    tasks: list[TaskUnit]
    started_at: int
    completed_at: int | None = None
    cancelled: bool = False
    cancel_reason: str | None = None
    summary: RunSummary | None = None


@dataclass(slots=True, frozen=True)
class Envelope:
    """One outbound stream message."""

    type: EnvelopeType
    timestamp: int
    task_id: str | None = None
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value}
        if self.task_id is not None:
            payload["taskId"] = self.task_id
        if self.data is not None:
            payload["data"] = self.data
        payload["timestamp"] = self.timestamp
        return payload
