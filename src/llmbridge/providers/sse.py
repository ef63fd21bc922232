"""Streaming event normalizer and the vendor framing readers that feed it.

Provider clients read raw upstream bytes with one of the framing readers
below (server-sent events, JSON lines or the AWS binary event stream), turn
each complete chunk into text deltas and push them into an
:class:`SseHandler`.  The handler owns the canonical event queue the gateway
relays to its own client.

Every reader yields complete chunks only, checks the abort signal between
chunks and stops reading as soon as it is set.  Malformed chunks raise
:class:`~llmbridge.providers.errors.ProtocolError`; they are never dropped.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from botocore.eventstream import EventStreamBuffer, ParserError

from llmbridge.abort import AbortSignal
from llmbridge.providers.errors import ProtocolError
from llmbridge.providers.models import CompletionDetails, SseEvent

_log = structlog.get_logger(__name__)


class SseHandler:
    """Collects normalized events for one stream.

    State moves ``open -> emitting -> closed``: :meth:`text` may be called any
    number of times, :meth:`done` closes the stream and emits the single
    terminal ``done`` event.  Nothing is emitted once the stream is closed or
    the abort signal is set.
    """

    def __init__(self, abort: AbortSignal) -> None:
        self._abort = abort
        self._queue: asyncio.Queue[SseEvent] = asyncio.Queue()
        self._parts: list[str] = []
        self._closed = False
        self.details = CompletionDetails()

    @property
    def abort(self) -> AbortSignal:
        return self._abort

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def buffer(self) -> str:
        """All text emitted so far."""
        return "".join(self._parts)

    def text(self, delta: str) -> None:
        if not delta or self._closed or self._abort.aborted():
            return
        self._parts.append(delta)
        self._queue.put_nowait(SseEvent.text_event(delta))

    def done(self) -> None:
        if self._closed or self._abort.aborted():
            return
        self._closed = True
        self._queue.put_nowait(SseEvent.done_event())

    async def next_event(self) -> SseEvent:
        return await self._queue.get()

    def next_event_nowait(self) -> SseEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None


# ---------------------------------------------------------------------------
# Framing readers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SseMessage:
    """One complete server-sent event block."""

    event: str
    data: str

    def json(self) -> dict[str, Any]:
        """Decode the data field, which must hold a JSON object."""
        try:
            payload = json.loads(self.data)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Invalid JSON in stream event: {self.data[:200]}") from exc
        if not isinstance(payload, dict):
            raise ProtocolError(f"Expected a JSON object in stream event: {self.data[:200]}")
        return payload


async def iter_sse_messages(
    response: httpx.Response, abort: AbortSignal
) -> AsyncIterator[SseMessage]:
    """Yield blank-line-terminated SSE blocks from *response*.

    ``event:`` names default to ``message``; multi-line ``data:`` fields are
    joined with newlines; comment lines (keep-alives) are skipped.  A final
    block not followed by a blank line is flushed when the body closes.
    """
    event: str | None = None
    data: list[str] = []
    async for line in response.aiter_lines():
        if abort.aborted():
            return
        if not line:
            if data:
                yield SseMessage(event=event or "message", data="\n".join(data))
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data and not abort.aborted():
        yield SseMessage(event=event or "message", data="\n".join(data))


async def iter_json_lines(
    response: httpx.Response, abort: AbortSignal
) -> AsyncIterator[dict[str, Any]]:
    """Yield one decoded JSON object per non-empty line of *response*."""
    async for line in response.aiter_lines():
        if abort.aborted():
            return
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Invalid JSON line in stream: {line[:200]}") from exc
        if not isinstance(payload, dict):
            raise ProtocolError(f"Expected a JSON object in stream: {line[:200]}")
        yield payload


async def iter_event_stream(
    response: httpx.Response, abort: AbortSignal
) -> AsyncIterator[tuple[dict[str, Any], bytes]]:
    """Yield ``(headers, payload)`` for each AWS event-stream message.

    The event stream is a sequence of length-prefixed binary messages with
    CRC-checked preludes; botocore's parser does the framing.
    """
    buffer = EventStreamBuffer()
    async for data in response.aiter_bytes():
        if abort.aborted():
            return
        buffer.add_data(data)
        try:
            for message in buffer:
                yield message.headers, message.payload
                if abort.aborted():
                    return
        except ParserError as exc:
            raise ProtocolError(f"Invalid event stream message: {exc}") from exc
