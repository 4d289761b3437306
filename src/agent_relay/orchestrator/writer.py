"""Serialized outbound stream writer shared by all task producers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Protocol, TextIO

from agent_relay.orchestrator.contracts import format_frame
from agent_relay.orchestrator.models import Envelope

logger = logging.getLogger(__name__)


class SinkClosedError(RuntimeError):
    """Raised by a sink when the consumer has gone away."""


class StreamSink(Protocol):
    """Destination for serialized frames."""

    async def write(self, frame: str) -> None:
        """Write one frame; raise SinkClosedError if the consumer left."""

    async def close(self) -> None:
        """Release the sink; must be safe to call more than once."""


class TextStreamSink:
    """Sink over a text stream such as stdout; a broken pipe is a disconnect."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    async def write(self, frame: str) -> None:
        try:
            self._stream.write(frame)
            self._stream.flush()
        except (BrokenPipeError, ConnectionResetError) as error:
            raise SinkClosedError("Consumer closed the output stream.") from error
        except ValueError as error:
            # Writing to a closed file object.
            raise SinkClosedError(str(error)) from error

    async def close(self) -> None:
        try:
            self._stream.flush()
        except (BrokenPipeError, ConnectionResetError, ValueError):
            logger.debug("Output stream already closed at writer shutdown.")


class QueueSink:
    """In-process sink exposing frames as an async iterator.

    Meant for embedding the run in a web response body; the web layer calls
    `disconnect()` when the client goes away.
    """

    def __init__(self) -> None:
        self._frames: asyncio.Queue[str | None] = asyncio.Queue()
        self._disconnected = False
        self._closed = False

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def disconnect(self) -> None:
        self._disconnected = True

    async def write(self, frame: str) -> None:
        if self._disconnected:
            raise SinkClosedError("Consumer disconnected.")
        self._frames.put_nowait(frame)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._frames.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            frame = await self._frames.get()
            if frame is None:
                return
            yield frame


class OutboundStreamWriter:
    """Single-owner writer: one task drains a bounded queue into the sink.

    `send` never raises.  Once `close` has been called, or the sink reported
    that the consumer disconnected, envelopes are dropped silently.
    """

    def __init__(
        self,
        sink: StreamSink,
        *,
        frame_format: str = "sse",
        queue_size: int = 256,
    ) -> None:
        self._sink = sink
        self._frame_format = frame_format
        self._queue: asyncio.Queue[Envelope | None] = asyncio.Queue(maxsize=queue_size)
        self._owner: asyncio.Task[None] | None = None
        self._closing = False
        self._closed = asyncio.Event()
        self._disconnected = False
        self.frames_written = 0
        self.frames_dropped = 0

    async def __aenter__(self) -> OutboundStreamWriter:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closing

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def start(self) -> None:
        if self._owner is None:
            self._owner = asyncio.create_task(self._drain(), name="outbound-stream-writer")

    async def send(self, envelope: Envelope) -> bool:
        """Queue one envelope; return False when it was dropped."""

        if self._closing or self._disconnected:
            self.frames_dropped += 1
            return False
        await self._queue.put(envelope)
        return True

    async def close(self) -> None:
        """Flush queued envelopes, then close the sink; idempotent."""

        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        try:
            self.start()
            await self._queue.put(None)
            if self._owner is not None:
                await self._owner
            try:
                await self._sink.close()
            except SinkClosedError:
                logger.debug("Sink already closed by consumer.")
        finally:
            self._closed.set()
        logger.debug(
            "Writer closed: written=%d dropped=%d disconnected=%s",
            self.frames_written,
            self.frames_dropped,
            self._disconnected,
        )

    async def _drain(self) -> None:
        while True:
            envelope = await self._queue.get()
            if envelope is None:
                return
            if self._disconnected:
                self.frames_dropped += 1
                continue
            try:
                await self._sink.write(format_frame(envelope, self._frame_format))
            except SinkClosedError:
                self._disconnected = True
                self.frames_dropped += 1
                logger.info("Consumer disconnected; dropping remaining frames.")
            except Exception:
                self._disconnected = True
                self.frames_dropped += 1
                logger.exception("Sink write failed; dropping remaining frames.")
            else:
                self.frames_written += 1
