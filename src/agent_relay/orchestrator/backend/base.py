"""Backend adapter interface for orchestrator task execution."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from agent_relay.orchestrator.models import FailureHint


@dataclass(slots=True, frozen=True)
class BackendCandidate:
    """Resolved endpoint for one backend candidate id."""

    candidate_id: str
    url: str
    api_key: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BackendCallRequest:
    """Inputs required to execute one task attempt against one candidate."""

    task_id: str
    candidate: BackendCandidate
    target: str
    instruction: str
    config: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


@dataclass(slots=True, frozen=True)
class CallSuccess:
    """Terminal success of one backend call."""

    result: Any
    streaming_handle: str | None = None


@dataclass(slots=True, frozen=True)
class CallFailure:
    """Terminal failure of one backend call with a classification hint."""

    reason: str
    hint: FailureHint
    status_code: int | None = None
    retry_after_ms: float | None = None
    streaming_handle: str | None = None


CallOutcome = CallSuccess | CallFailure


class BackendEventKind(str, Enum):
    """Normalized backend stream event kinds."""

    PROGRESS = "progress"
    STREAMING_HANDLE = "streaming_handle"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(slots=True, frozen=True)
class BackendEvent:
    """One normalized event decoded from a backend stream."""

    kind: BackendEventKind
    message: str | None = None
    streaming_handle: str | None = None
    outcome: CallOutcome | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in {BackendEventKind.SUCCESS, BackendEventKind.FAILURE}

    @classmethod
    def progress(cls, message: str) -> BackendEvent:
        return cls(kind=BackendEventKind.PROGRESS, message=message)

    @classmethod
    def handle(cls, url: str) -> BackendEvent:
        return cls(kind=BackendEventKind.STREAMING_HANDLE, streaming_handle=url)

    @classmethod
    def success(cls, result: Any, *, streaming_handle: str | None = None) -> BackendEvent:
        return cls(
            kind=BackendEventKind.SUCCESS,
            outcome=CallSuccess(result=result, streaming_handle=streaming_handle),
        )

    @classmethod
    def failure(  # noqa: PLR0913
        cls,
        reason: str,
        *,
        hint: FailureHint,
        status_code: int | None = None,
        retry_after_ms: float | None = None,
        streaming_handle: str | None = None,
    ) -> BackendEvent:
        return cls(
            kind=BackendEventKind.FAILURE,
            message=reason,
            outcome=CallFailure(
                reason=reason,
                hint=hint,
                status_code=status_code,
                retry_after_ms=retry_after_ms,
                streaming_handle=streaming_handle,
            ),
        )


class BackendAdapter(Protocol):
    """Protocol implemented by streaming backend adapters."""

    def stream(self, request: BackendCallRequest) -> AsyncGenerator[BackendEvent, None]:
        """Yield normalized events; the last one is always terminal."""
