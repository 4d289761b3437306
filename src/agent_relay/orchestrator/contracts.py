"""Inbound run request contract and outbound envelope framing."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_relay.orchestrator.models import (
    ENVELOPE_TYPE_BY_EVENT_KIND,
    Envelope,
    EnvelopeType,
    RunSummary,
    TaskEvent,
)
from agent_relay.orchestrator.policy import RetryPolicy

FRAME_FORMATS = ("sse", "ndjson")


class ConfigurationError(ValueError):
    """Raised when a run request or its credentials are unusable."""


@dataclass(slots=True)
class TaskSpec:
    """One validated task entry of a run request."""

    task_id: str
    target: str
    instruction: str
    config: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {"target": self.target, "instruction": self.instruction, "config": self.config}


@dataclass(slots=True)
class RunRequest:
    """Validated run request with defaults applied."""

    tasks: list[TaskSpec]
    concurrency_limit: int
    candidate_ids: list[str]
    retry_policy: RetryPolicy
    run_timeout_seconds: float
    call_timeout_seconds: float | None


def load_run_request(path: Path) -> dict[str, Any]:
    """Load a run request JSON document and validate top-level object type."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ConfigurationError(f"Run request {path} is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Expected JSON object in {path}")
    return payload


def parse_run_request(  # noqa: PLR0913
    raw: dict[str, Any],
    *,
    default_concurrency_limit: int,
    max_concurrency_limit: int,
    run_timeout_seconds: float,
    call_timeout_seconds: float | None,
    retry_policy: RetryPolicy,
) -> RunRequest:
    """Validate an inbound run request, raising ConfigurationError on bad input."""

    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise ConfigurationError("tasks must be a non-empty array")

    task_ids = task_ids_from_request(raw)
    duplicates = sorted({task_id for task_id in task_ids if task_ids.count(task_id) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate task ids: {duplicates}")
    tasks = [
        _parse_task(item, task_id=task_id, index=index)
        for index, (item, task_id) in enumerate(zip(raw_tasks, task_ids, strict=True))
    ]

    concurrency = raw.get("concurrencyLimit", default_concurrency_limit)
    if isinstance(concurrency, bool) or not isinstance(concurrency, int):
        raise ConfigurationError(f"concurrencyLimit must be an integer, got {concurrency!r}")
    concurrency = min(max(concurrency, 1), max_concurrency_limit)

    candidate_ids = raw.get("backendCandidates") or []
    if not isinstance(candidate_ids, list) or not all(
        isinstance(candidate_id, str) and candidate_id.strip() for candidate_id in candidate_ids
    ):
        raise ConfigurationError("backendCandidates must be an array of non-empty strings")

    try:
        policy = retry_policy.with_overrides(_optional_object(raw, "retryPolicy"))
    except ValueError as error:
        raise ConfigurationError(str(error)) from error

    run_timeout = _optional_positive_number(raw, "runTimeoutSeconds")
    call_timeout = (
        _optional_positive_number(raw, "callTimeoutSeconds")
        if "callTimeoutSeconds" in raw
        else call_timeout_seconds
    )
    return RunRequest(
        tasks=tasks,
        concurrency_limit=concurrency,
        candidate_ids=[candidate_id.strip().lower() for candidate_id in candidate_ids],
        retry_policy=policy,
        run_timeout_seconds=run_timeout if run_timeout is not None else run_timeout_seconds,
        call_timeout_seconds=call_timeout,
    )


def task_ids_from_request(raw: dict[str, Any]) -> list[str]:
    """Task ids of a (possibly invalid) request; missing ids are generated."""

    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, list):
        return []
    explicit = [
        item["id"].strip()
        if isinstance(item, dict) and isinstance(item.get("id"), str) and item["id"].strip()
        else None
        for item in raw_tasks
    ]
    taken = {task_id for task_id in explicit if task_id is not None}
    task_ids: list[str] = []
    for index, task_id in enumerate(explicit):
        if task_id is None:
            counter = index + 1
            while f"task-{counter}" in taken:
                counter += 1
            task_id = f"task-{counter}"
            taken.add(task_id)
        task_ids.append(task_id)
    return task_ids


def envelope_for_event(event: TaskEvent) -> Envelope:
    return Envelope(
        type=ENVELOPE_TYPE_BY_EVENT_KIND[event.kind],
        timestamp=event.timestamp,
        task_id=event.task_id,
        data=dict(event.detail) or None,
    )


def run_complete_envelope(summary: RunSummary, *, at: int) -> Envelope:
    return Envelope(type=EnvelopeType.RUN_COMPLETE, timestamp=at, data=summary.to_payload())


def run_error_envelope(message: str, *, at: int) -> Envelope:
    """Run-level error, sent without a task id."""

    return Envelope(type=EnvelopeType.TASK_ERROR, timestamp=at, data={"error": message})


def format_frame(envelope: Envelope, frame_format: str) -> str:
    """Serialize an envelope as one SSE (`data: ...`) or NDJSON frame."""

    body = json.dumps(envelope.to_dict(), ensure_ascii=False, separators=(",", ":"), default=str)
    if frame_format == "sse":
        return f"data: {body}\n\n"
    if frame_format == "ndjson":
        return f"{body}\n"
    raise ValueError(f"Unsupported frame format: {frame_format!r}. Use one of {FRAME_FORMATS}.")


def _parse_task(item: object, *, task_id: str, index: int) -> TaskSpec:
    if not isinstance(item, dict):
        raise ConfigurationError(f"tasks[{index}] must be an object")
    task_input = item.get("input")
    if not isinstance(task_input, dict):
        raise ConfigurationError(f"tasks[{index}].input must be an object")
    target = _first_string(task_input, ("target", "url"))
    if target is None:
        raise ConfigurationError(f"tasks[{index}].input.target must be a non-empty string")
    instruction = _first_string(task_input, ("instruction", "goal"))
    if instruction is None:
        raise ConfigurationError(f"tasks[{index}].input.instruction must be a non-empty string")
    config = task_input.get("config") or {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"tasks[{index}].input.config must be an object")
    return TaskSpec(task_id=task_id, target=target, instruction=instruction, config=dict(config))


def _first_string(payload: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _optional_object(raw: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigurationError(f"{key} must be an object")
    return value


def _optional_positive_number(raw: dict[str, Any], key: str) -> float | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigurationError(f"{key} must be a positive number, got {value!r}")
    try:
        number = float(value)
    except OverflowError:
        number = math.inf
    if not math.isfinite(number) or number <= 0:
        raise ConfigurationError(f"{key} must be a positive finite number, got {value!r}")
    return number
