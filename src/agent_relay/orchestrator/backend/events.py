"""Incremental decoding and normalization of backend event streams.

Backends speak slightly different dialects: browser-automation runs send
``STEP`` / ``STREAMING_URL`` / ``COMPLETE`` events over SSE, generation
endpoints stream ``candidates`` chunks ending with a ``finishReason``.  Both
are folded into the four kinds of :class:`BackendEventKind`.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from agent_relay.orchestrator.backend.base import BackendEvent
from agent_relay.orchestrator.models import FailureHint
from agent_relay.orchestrator.output_repair import try_parse_structured_output

logger = logging.getLogger(__name__)

STREAM_ENDED_REASON = "stream ended without completion"
DEFAULT_FAILURE_MESSAGE = "Automation failed"
DEFAULT_STEP_MESSAGE = "Processing..."

_STEP_FIELDS = ("purpose", "action", "message", "step", "description", "text", "content")
_HANDLE_FIELDS = (
    "streamingUrl",
    "streaming_url",
    "liveUrl",
    "live_url",
    "liveViewUrl",
    "live_view_url",
)
_RESULT_FIELDS = ("resultJson", "result_json", "result", "output")
_ERROR_FIELDS = ("error", "message", "reason", "detail")

_STEP_TYPES = frozenset({"STEP", "PROGRESS", "ACTION"})
_SUCCESS_TYPES = frozenset({"COMPLETE", "COMPLETED", "DONE", "RESULT", "SUCCESS", "FINISHED"})
_SUCCESS_STATUSES = frozenset({"", "COMPLETE", "COMPLETED", "SUCCESS", "SUCCEEDED", "DONE", "OK"})
_FAILURE_TYPES = frozenset({"ERROR", "FAILED", "FAILURE"})
_FAILURE_STATUSES = frozenset({"FAILED", "FAILURE", "ERROR", "CANCELLED", "CANCELED"})
_SYSTEM_TYPES = frozenset({"STARTED", "STREAMING_URL", "HEARTBEAT", "PING", "CONNECTED", "INIT"})
_BLOCKED_FINISH_REASONS = frozenset(
    {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"},
)


class MalformedLineError(ValueError):
    """Raised for a stream line that carries data but is not a JSON object."""


class LineBuffer:
    """Split a chunked text stream into complete lines."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        rest, self._buffer = self._buffer, ""
        rest = rest.rstrip("\r")
        return [rest] if rest.strip() else []


def parse_event_line(line: str) -> dict[str, Any] | None:
    """Decode one SSE ``data:`` line or bare JSON line.

    Returns None for lines that carry nothing to decode (blank lines, SSE
    comments and fields other than ``data``, ``[DONE]`` markers).
    """

    stripped = line.strip()
    if not stripped or stripped.startswith(":"):
        return None
    if stripped.startswith("data:"):
        body = stripped[len("data:") :].strip()
    elif stripped.startswith(("event:", "id:", "retry:")):
        return None
    else:
        body = stripped
    if not body or body == "[DONE]":
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as error:
        raise MalformedLineError(f"Invalid JSON in stream line: {error}") from error
    if not isinstance(payload, dict):
        raise MalformedLineError(f"Stream line is not a JSON object: {type(payload).__name__}")
    return payload


class EventNormalizer:
    """Map raw backend payloads onto normalized backend events for one call."""

    def __init__(self) -> None:
        self._last_handle: str | None = None
        self._generated: list[str] = []

    @property
    def streaming_handle(self) -> str | None:
        return self._last_handle

    def normalize(self, raw: dict[str, Any]) -> list[BackendEvent]:
        events: list[BackendEvent] = []
        handle = _first_text(raw, _HANDLE_FIELDS)
        if handle is not None and handle != self._last_handle:
            self._last_handle = handle
            events.append(BackendEvent.handle(handle))

        if "candidates" in raw or "promptFeedback" in raw:
            events.extend(self._normalize_generation_chunk(raw))
            return events

        event_type = _upper(raw.get("type") or raw.get("event"))
        status = _upper(raw.get("status"))

        if event_type in _FAILURE_TYPES or status in _FAILURE_STATUSES:
            events.append(
                BackendEvent.failure(
                    _error_message(raw),
                    hint=FailureHint.REMOTE,
                    streaming_handle=self._last_handle,
                ),
            )
            return events

        if event_type in _SUCCESS_TYPES and status in _SUCCESS_STATUSES:
            events.append(
                BackendEvent.success(
                    _decode_result(raw),
                    streaming_handle=self._last_handle,
                ),
            )
            return events

        if event_type in _SYSTEM_TYPES:
            return events

        message = _first_text(raw, _STEP_FIELDS)
        if message is None and event_type in _STEP_TYPES:
            message = DEFAULT_STEP_MESSAGE
        if message is not None:
            events.append(BackendEvent.progress(message))
        return events

    def _normalize_generation_chunk(self, raw: dict[str, Any]) -> list[BackendEvent]:
        feedback = raw.get("promptFeedback")
        if isinstance(feedback, dict) and isinstance(feedback.get("blockReason"), str):
            return [
                BackendEvent.failure(
                    f"Prompt blocked: {feedback['blockReason']}",
                    hint=FailureHint.REMOTE,
                ),
            ]

        candidates = raw.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return []
        candidate = candidates[0]
        if not isinstance(candidate, dict):
            return []

        events: list[BackendEvent] = []
        text = _candidate_text(candidate)
        if text:
            self._generated.append(text)
            generated_chars = sum(len(part) for part in self._generated)
            events.append(BackendEvent.progress(f"Generated {generated_chars} characters"))

        finish_reason = _upper(candidate.get("finishReason"))
        if not finish_reason:
            return events
        if finish_reason in _BLOCKED_FINISH_REASONS:
            events.append(
                BackendEvent.failure(
                    f"Generation stopped: {finish_reason}",
                    hint=FailureHint.REMOTE,
                ),
            )
            return events
        events.append(BackendEvent.success(_decode_text("".join(self._generated))))
        return events


class EventStreamDecoder:
    """Turn raw stream chunks into normalized events ending in one terminal event."""

    def __init__(self, *, task_id: str = "-") -> None:
        self._task_id = task_id
        self._lines = LineBuffer()
        self._normalizer = EventNormalizer()
        self._event_name: str | None = None
        self._finished = False
        self.skipped_lines = 0

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: str) -> list[BackendEvent]:
        return self._decode_lines(self._lines.feed(chunk))

    def finish(self) -> list[BackendEvent]:
        """Flush buffered input; synthesize a failure if no terminal event was seen."""

        events = self._decode_lines(self._lines.flush())
        if not self._finished:
            self._finished = True
            logger.warning(
                "Task %s: %s (skipped_lines=%d)",
                self._task_id,
                STREAM_ENDED_REASON,
                self.skipped_lines,
            )
            events.append(
                BackendEvent.failure(
                    STREAM_ENDED_REASON,
                    hint=FailureHint.PROTOCOL,
                    streaming_handle=self._normalizer.streaming_handle,
                ),
            )
        return events

    def _decode_lines(self, lines: list[str]) -> list[BackendEvent]:
        events: list[BackendEvent] = []
        for line in lines:
            if self._finished:
                break
            stripped = line.strip()
            if not stripped:
                self._event_name = None
                continue
            if stripped.startswith("event:"):
                self._event_name = stripped[len("event:") :].strip() or None
                continue
            try:
                raw = parse_event_line(line)
            except MalformedLineError as error:
                self.skipped_lines += 1
                logger.debug("Task %s: skipped malformed stream line: %s", self._task_id, error)
                continue
            if raw is None:
                continue
            if self._event_name is not None and "type" not in raw:
                raw = {**raw, "type": self._event_name}
            for event in self._normalizer.normalize(raw):
                events.append(event)
                if event.is_terminal:
                    self._finished = True
                    break
        return events


def _upper(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().upper()


def _first_text(raw: dict[str, Any], fields: tuple[str, ...]) -> str | None:
    for field_name in fields:
        value = raw.get(field_name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _error_message(raw: dict[str, Any]) -> str:
    error = raw.get("error")
    if isinstance(error, dict):
        nested = _first_text(error, ("message", "reason", "detail"))
        if nested is not None:
            return nested
    return _first_text(raw, _ERROR_FIELDS) or DEFAULT_FAILURE_MESSAGE


def _decode_result(raw: dict[str, Any]) -> Any:
    for field_name in _RESULT_FIELDS:
        if field_name in raw:
            value = raw[field_name]
            if isinstance(value, str):
                return _decode_text(value)
            return value
    return None


def _decode_text(text: str) -> Any:
    parsed = try_parse_structured_output(text)
    if parsed is None:
        return text
    return parsed.payload


def _candidate_text(candidate: dict[str, Any]) -> str:
    content = candidate.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    return "".join(
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    )
