"""Backend adapters for orchestrated task calls."""

from agent_relay.orchestrator.backend.base import (
    BackendAdapter,
    BackendCallRequest,
    BackendCandidate,
    BackendEvent,
    BackendEventKind,
    CallFailure,
    CallOutcome,
    CallSuccess,
)
from agent_relay.orchestrator.backend.events import (
    STREAM_ENDED_REASON,
    EventNormalizer,
    EventStreamDecoder,
    LineBuffer,
)
from agent_relay.orchestrator.backend.http_backend import HttpStreamingBackend

__all__ = [
    "STREAM_ENDED_REASON",
    "BackendAdapter",
    "BackendCallRequest",
    "BackendCandidate",
    "BackendEvent",
    "BackendEventKind",
    "CallFailure",
    "CallOutcome",
    "CallSuccess",
    "EventNormalizer",
    "EventStreamDecoder",
    "HttpStreamingBackend",
    "LineBuffer",
]
