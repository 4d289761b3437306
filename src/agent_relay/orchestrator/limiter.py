"""Bounded FIFO dispatch of task workers with per-task fault isolation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter(Generic[T]):
    """Run at most `limit` workers at once, dispatching in submission order.

    An exception raised by one worker is logged and handed to `on_error`; it
    never reaches sibling workers.  Setting the cancel event stops dispatch,
    cancels in-flight workers and returns the items never dispatched.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("Concurrency limit must be >= 1.")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.running = 0
        self.peak_running = 0
        self.dispatched = 0

    async def run_all(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[None]],
        *,
        on_error: Callable[[T, Exception], Awaitable[None]],
        cancel_event: asyncio.Event | None = None,
    ) -> list[T]:
        """Dispatch every item; return the ones left undispatched by cancellation."""

        cancel_event = cancel_event or asyncio.Event()
        in_flight: set[asyncio.Task[None]] = set()
        undispatched: list[T] = []
        try:
            for index, item in enumerate(items):
                if not await self._acquire(cancel_event):
                    undispatched = list(items[index:])
                    break
                self.dispatched += 1
                worker_task = asyncio.create_task(self._run_one(item, worker, on_error))
                in_flight.add(worker_task)
                worker_task.add_done_callback(in_flight.discard)
            await self._wait_in_flight(in_flight, cancel_event)
        finally:
            if in_flight:
                for worker_task in in_flight:
                    worker_task.cancel()
                await asyncio.gather(*in_flight, return_exceptions=True)
        if undispatched:
            logger.info("Dispatch stopped with %d tasks not started", len(undispatched))
        return undispatched

    async def _acquire(self, cancel_event: asyncio.Event) -> bool:
        if cancel_event.is_set():
            return False
        acquire = asyncio.create_task(self._semaphore.acquire())
        cancelled = asyncio.create_task(cancel_event.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not acquire.done():
                acquire.cancel()
            await asyncio.gather(acquire, cancelled, return_exceptions=True)
        acquired = not acquire.cancelled() and acquire.exception() is None
        if acquired and cancel_event.is_set():
            self._semaphore.release()
            return False
        return acquired

    async def _wait_in_flight(
        self,
        in_flight: set[asyncio.Task[None]],
        cancel_event: asyncio.Event,
    ) -> None:
        cancelled = asyncio.create_task(cancel_event.wait())
        try:
            while in_flight and not cancel_event.is_set():
                await asyncio.wait({*in_flight, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            await asyncio.gather(cancelled, return_exceptions=True)

    async def _run_one(
        self,
        item: T,
        worker: Callable[[T], Awaitable[None]],
        on_error: Callable[[T, Exception], Awaitable[None]],
    ) -> None:
        self.running += 1
        self.peak_running = max(self.peak_running, self.running)
        try:
            await worker(item)
        except Exception as error:
            logger.exception("Worker crashed; isolating failure")
            try:
                await on_error(item, error)
            except Exception:
                logger.exception("Error handler failed for isolated worker")
        finally:
            self.running -= 1
            self._semaphore.release()
