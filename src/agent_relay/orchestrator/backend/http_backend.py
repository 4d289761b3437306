"""Streaming HTTP backend adapter built on httpx."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from agent_relay.orchestrator.backend.base import BackendCallRequest, BackendEvent
from agent_relay.orchestrator.backend.events import EventStreamDecoder
from agent_relay.orchestrator.models import FailureHint
from agent_relay.orchestrator.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

_BODY_EXCERPT_CHARS = 500


class HttpStreamingBackend:
    """POST one task to a candidate endpoint and decode its event stream.

    The adapter never raises for expected failures: HTTP errors, transport
    errors and streams that end early all come back as a terminal failure
    event.  Cancelling the consuming task closes the HTTP response.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float | None = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = httpx.Timeout(read_timeout_seconds, connect=connect_timeout_seconds)

    async def __aenter__(self) -> HttpStreamingBackend:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def stream(self, request: BackendCallRequest) -> AsyncGenerator[BackendEvent, None]:
        client = self._ensure_client()
        decoder = EventStreamDecoder(task_id=request.task_id)
        logger.debug(
            "Task %s: POST %s (candidate=%s, attempt=%d)",
            request.task_id,
            request.candidate.url,
            request.candidate.candidate_id,
            request.attempt,
        )
        try:
            async with client.stream(
                "POST",
                request.candidate.url,
                json=build_payload(request),
                headers=build_headers(request),
            ) as response:
                if response.status_code >= httpx.codes.BAD_REQUEST:
                    yield await _status_failure(response)
                    return
                async for chunk in response.aiter_text():
                    for event in decoder.feed(chunk):
                        yield event
                    if decoder.finished:
                        return
        except httpx.TimeoutException as error:
            yield BackendEvent.failure(
                f"Request timed out: {error.__class__.__name__}",
                hint=FailureHint.TIMEOUT,
            )
            return
        except httpx.TransportError as error:
            yield BackendEvent.failure(
                f"Network error: {sanitize_preview(str(error)) or error.__class__.__name__}",
                hint=FailureHint.NETWORK,
            )
            return

        for event in decoder.finish():
            yield event

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client


def build_payload(request: BackendCallRequest) -> dict[str, Any]:
    """Request body: target and instruction plus pass-through per-call config."""

    return {"url": request.target, "goal": request.instruction, **request.config}


def build_headers(request: BackendCallRequest) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
    }
    if request.candidate.api_key:
        headers["X-API-Key"] = request.candidate.api_key
    extra = request.candidate.options.get("headers")
    if isinstance(extra, dict):
        headers.update({str(key): str(value) for key, value in extra.items()})
    return headers


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Convert a `Retry-After` header (seconds or HTTP date) to milliseconds."""

    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        return None
    try:
        return max(float(stripped), 0.0) * 1000.0
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(stripped)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    return max((moment - reference).total_seconds(), 0.0) * 1000.0


async def _status_failure(response: httpx.Response) -> BackendEvent:
    body = await response.aread()
    excerpt = sanitize_preview(
        body.decode("utf-8", errors="replace"),
        max_chars=_BODY_EXCERPT_CHARS,
    )
    reason = f"HTTP {response.status_code}"
    if excerpt:
        reason = f"{reason}: {excerpt}"
    return BackendEvent.failure(
        reason,
        hint=FailureHint.HTTP_STATUS,
        status_code=response.status_code,
        retry_after_ms=parse_retry_after(response.headers.get("Retry-After")),
    )
