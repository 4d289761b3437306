"""Merge per-task event producers into one tagged outbound sequence."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from agent_relay.orchestrator.contracts import envelope_for_event
from agent_relay.orchestrator.models import Envelope, TaskEvent, TaskEventKind, now_ms

logger = logging.getLogger(__name__)

SendFn = Callable[[Envelope], Awaitable[object]]


class EventMultiplexer:
    """Tag task events as envelopes and forward them in arrival order."""

    def __init__(self, send: SendFn) -> None:
        self._send = send
        self.published = 0

    async def publish(self, event: TaskEvent) -> None:
        self.published += 1
        await self._send(envelope_for_event(event))

    def channel(self, task_id: str) -> TaskEventChannel:
        return TaskEventChannel(task_id, self)


class TaskEventChannel:
    """Per-task publisher; nothing is forwarded after the task's terminal event."""

    def __init__(self, task_id: str, multiplexer: EventMultiplexer) -> None:
        self.task_id = task_id
        self._multiplexer = multiplexer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def started(self, **detail: Any) -> bool:
        return await self._emit(TaskEventKind.STARTED, detail)

    async def progress(self, message: str, **detail: Any) -> bool:
        return await self._emit(TaskEventKind.PROGRESS, {"message": message, **detail})

    async def streaming_handle(self, url: str) -> bool:
        return await self._emit(TaskEventKind.STREAMING_HANDLE, {"streamingUrl": url})

    async def completed(self, result: Any, **detail: Any) -> bool:
        return await self._emit(TaskEventKind.COMPLETED, {"result": result, **detail})

    async def failed(self, error: str, **detail: Any) -> bool:
        return await self._emit(TaskEventKind.FAILED, {"error": error, **detail})

    async def _emit(self, kind: TaskEventKind, detail: dict[str, Any]) -> bool:
        if self._closed:
            logger.debug("Task %s: dropped %s event after terminal", self.task_id, kind.value)
            return False
        if kind.is_terminal:
            self._closed = True
        await self._multiplexer.publish(
            TaskEvent(task_id=self.task_id, kind=kind, detail=detail, timestamp=now_ms()),
        )
        return True
