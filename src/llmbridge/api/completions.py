"""OpenAI-compatible ``/v1/chat/completions`` endpoint.

Translates between the OpenAI wire format and the gateway's canonical
:class:`~llmbridge.providers.SendData` / :class:`~llmbridge.providers.SseEvent`
types, resolves the requested model to a provider client and drives either a
buffered call or a live stream.

Streaming responses hold back the HTTP status line until the provider
produced its first event or failed: an authentication or validation error
raised before any token still surfaces as a clean 4xx/5xx JSON error instead
of a 200 stream that dies immediately.
"""

import asyncio
import json
import time
import uuid
from collections.abc import AsyncGenerator
from typing import Any, Literal

import anyio
import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from opentelemetry import trace
from opentelemetry.trace import StatusCode
from pydantic import BaseModel, Field

from llmbridge.abort import AbortRegistry, AbortSignal
from llmbridge.api.errors import error_body, provider_error_response, status_for
from llmbridge.config import settings
from llmbridge.metrics import record_request
from llmbridge.providers import (
    Client,
    CompletionDetails,
    ConfigError,
    GatewayConfig,
    Message,
    ProviderError,
    SendData,
    SseEvent,
    SseHandler,
    init_client,
)

router = APIRouter(prefix="/v1", tags=["completions"])

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

DEFAULT_MODEL_NAME = "default"


# ---------------------------------------------------------------------------
# Request models (OpenAI wire format)
# ---------------------------------------------------------------------------


class _Message(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str | list[dict[str, Any]]


class ChatCompletionRequest(BaseModel):
    """OpenAI-compatible chat completion request body."""

    model: str
    messages: list[_Message] = Field(min_length=1)
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    stream: bool = False


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_gateway_config(request: Request) -> GatewayConfig:
    """Return the process-wide :class:`GatewayConfig` from ``app.state``."""
    config: GatewayConfig | None = getattr(request.app.state, "gateway_config", None)
    if config is None:
        raise HTTPException(status_code=503, detail="Gateway configuration not loaded")
    return config


def get_aborts(request: Request) -> AbortRegistry:
    aborts: AbortRegistry | None = getattr(request.app.state, "aborts", None)
    if aborts is None:
        aborts = request.app.state.aborts = AbortRegistry()
    return aborts


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.options("/chat/completions")
async def chat_completions_options(request: Request) -> Response:
    _log.info("http_request", method=request.method, path=request.url.path, status=204)
    return Response(status_code=204)


@router.post("/chat/completions", response_model=None)
async def chat_completions(
    body: ChatCompletionRequest,
    request: Request,
    gateway_config: GatewayConfig = Depends(get_gateway_config),
    aborts: AbortRegistry = Depends(get_aborts),
) -> Response:
    """Generate a chat completion.

    Args:
        body: OpenAI-compatible request body.
        request: Raw request, used for logging.
        gateway_config: Injected process-wide configuration; never mutated.
        aborts: Registry of live stream abort signals.

    Returns:
        A ``text/event-stream`` :class:`StreamingResponse` when
        ``body.stream`` is ``True``, otherwise a :class:`JSONResponse` with the
        full completion.  Errors use the OpenAI error envelope.
    """
    completion_id = generate_completion_id()
    created = int(time.time())
    start_time = time.monotonic()

    log = _log.bind(
        request_id=completion_id,
        method=request.method,
        path=request.url.path,
        model=body.model,
        stream=body.stream,
    )

    with _tracer.start_as_current_span("gateway.completions") as span:
        span.set_attribute("gen_ai.request.model", body.model)
        span.set_attribute("llm.stream", body.stream)
        log.info("completion_request_start")

        try:
            config = gateway_config.snapshot()
            model_id = resolve_model(config, body.model)
            client = init_client(
                config,
                timeout=settings.llm_timeout,
                connect_timeout=settings.llm_connect_timeout,
                max_retries=settings.llm_max_retries,
            )
            if body.max_tokens is not None:
                client.set_max_output_tokens(body.max_tokens)
            send_data = SendData(
                messages=tuple(Message(role=m.role, content=m.content) for m in body.messages),
                temperature=body.temperature,
                top_p=body.top_p,
                stream=body.stream,
            )
        except ProviderError as exc:
            span.record_exception(exc)
            span.set_status(StatusCode.ERROR, exc.message)
            return _error(exc, log, client_name="unknown", stream=body.stream, start_time=start_time)

        span.set_attribute("gen_ai.system", client.kind)
        log = log.bind(client=client.name, model=model_id)

        if body.stream:
            return await _stream_completion(
                client, send_data, aborts, completion_id, model_id, created, log, start_time
            )

        http_client = client.build_client()
        try:
            async with http_client:
                content, details = await client.send(http_client, send_data)
        except ProviderError as exc:
            span.record_exception(exc)
            span.set_status(StatusCode.ERROR, exc.message)
            return _error(exc, log, client_name=client.name, stream=False, start_time=start_time)

        duration_s = time.monotonic() - start_time
        record_request(
            client.name,
            stream=False,
            outcome="success",
            duration_s=duration_s,
            input_tokens=details.input_tokens,
            output_tokens=details.output_tokens,
        )
        log.info(
            "http_request",
            status=200,
            duration_ms=round(duration_s * 1000, 2),
            input_tokens=details.input_tokens,
            output_tokens=details.output_tokens,
        )
        return JSONResponse(
            content=completion_body(completion_id, model_id, created, content, details)
        )


# ---------------------------------------------------------------------------
# Model resolution
# ---------------------------------------------------------------------------


def resolve_model(config: GatewayConfig, requested: str) -> str:
    """Bind *config* (a request snapshot) to the requested model; return its id.

    ``"default"`` selects the configured default model.  The literal id of
    the configured default keeps the snapshot as-is; any other value is
    looked up among the configured clients.

    Raises:
        ConfigError: The model cannot be resolved.
    """
    default = config.model
    if requested == DEFAULT_MODEL_NAME:
        if default is None:
            raise ConfigError("No default model configured")
        return config.set_model(default.id).id
    if default is not None and requested == default.id:
        return requested
    return config.set_model(requested).id


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class StreamRelay:
    """Moves normalized events from the provider task to the response writer.

    The provider call runs in its own task and feeds an :class:`SseHandler`.
    :meth:`next_event` races "next queued event" against "provider task
    ended" and "abort signal set", whichever happens first.
    """

    def __init__(
        self,
        client: Client,
        http_client: httpx.AsyncClient,
        send_data: SendData,
        abort: AbortSignal,
    ) -> None:
        self.handler = SseHandler(abort)
        self._abort = abort
        self._http_client = http_client
        self._producer = asyncio.create_task(
            client.send_streaming(http_client, self.handler, send_data)
        )

    @property
    def aborted(self) -> bool:
        return self._abort.aborted()

    async def next_event(self) -> SseEvent | None:
        """Return the next event, or ``None`` once the stream ended or was aborted.

        Raises:
            ProviderError: The provider call failed and every event queued
                before the failure has been delivered.
        """
        event = self.handler.next_event_nowait()
        if event is not None:
            return event
        if self._producer.done():
            return self._after_producer()

        getter = asyncio.ensure_future(self.handler.next_event())
        abort_waiter = asyncio.ensure_future(self._abort.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, abort_waiter, self._producer},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (getter, abort_waiter):
                if not task.done():
                    task.cancel()

        if getter in done:
            return getter.result()
        if abort_waiter in done:
            return None
        return self._after_producer()

    def _after_producer(self) -> SseEvent | None:
        event = self.handler.next_event_nowait()
        if event is not None:
            return event
        if self._producer.cancelled():
            return None
        exc = self._producer.exception()
        if exc is not None:
            raise exc
        return None

    async def aclose(self) -> None:
        """Stop the provider task if still running and release the upstream connection."""
        if not self._producer.done():
            self._abort.abort()
            self._producer.cancel()
        await asyncio.gather(self._producer, return_exceptions=True)
        await self._http_client.aclose()


async def _stream_completion(
    client: Client,
    send_data: SendData,
    aborts: AbortRegistry,
    completion_id: str,
    model_id: str,
    created: int,
    log: Any,
    start_time: float,
) -> Response:
    abort = aborts.create()
    relay = StreamRelay(client, client.build_client(), send_data, abort)

    # First-event handshake: nothing is sent until the provider has either
    # produced an event or failed.
    try:
        first = await relay.next_event()
    except ProviderError as exc:
        aborts.discard(abort)
        await relay.aclose()
        return _error(exc, log, client_name=client.name, stream=True, start_time=start_time)
    except BaseException:
        aborts.discard(abort)
        with anyio.CancelScope(shield=True):
            await relay.aclose()
        raise

    log.info("http_request", status=200)
    return StreamingResponse(
        _stream_frames(
            relay, first, aborts, abort, client.name, completion_id, model_id, created, log, start_time
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


async def _stream_frames(
    relay: StreamRelay,
    first: SseEvent | None,
    aborts: AbortRegistry,
    abort: AbortSignal,
    client_name: str,
    completion_id: str,
    model_id: str,
    created: int,
    log: Any,
    start_time: float,
) -> AsyncGenerator[str, None]:
    """Yield OpenAI ``chat.completion.chunk`` frames for one stream.

    A failure after the first event cannot change the status line any more;
    it is reported as a final ``error`` frame and the stream ends without the
    ``stop`` frame and ``[DONE]`` sentinel.
    """
    outcome = "success"
    try:
        yield _sse(create_chunk(completion_id, model_id, created, {"role": "assistant", "content": ""}))

        event = first
        while event is not None and not event.is_done:
            yield _sse(create_chunk(completion_id, model_id, created, {"content": event.text}))
            event = await relay.next_event()

        if event is None and relay.aborted:
            outcome = "cancelled"
            log.info("completion_stream_cancelled")
            return

        yield _sse(create_chunk(completion_id, model_id, created, {}, finish_reason="stop"))
        yield "data: [DONE]\n\n"

    except ProviderError as exc:
        outcome = "error"
        log.error(
            "completion_stream_error",
            status=status_for(exc),
            error_type=type(exc).__name__,
            error=exc.message,
        )
        yield _sse(error_body(exc.message))

    except (asyncio.CancelledError, GeneratorExit):
        outcome = "cancelled"
        log.info("completion_stream_cancelled")
        raise

    finally:
        # Also runs inside the cancelled response task after a disconnect:
        # bookkeeping first, then the shielded upstream close.
        aborts.discard(abort)
        details = relay.handler.details
        duration_s = time.monotonic() - start_time
        record_request(
            client_name,
            stream=True,
            outcome=outcome,
            duration_s=duration_s,
            input_tokens=details.input_tokens,
            output_tokens=details.output_tokens,
        )
        log.info(
            "completion_request_complete",
            outcome=outcome,
            duration_ms=round(duration_s * 1000, 2),
            input_tokens=details.input_tokens,
            output_tokens=details.output_tokens,
        )
        with anyio.CancelScope(shield=True):
            await relay.aclose()


# ---------------------------------------------------------------------------
# Wire format helpers
# ---------------------------------------------------------------------------


def generate_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def create_chunk(
    completion_id: str,
    model: str,
    created: int,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> dict[str, Any]:
    """Build one OpenAI ``chat.completion.chunk`` payload."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }


def completion_body(
    completion_id: str,
    model: str,
    created: int,
    content: str,
    details: CompletionDetails,
) -> dict[str, Any]:
    """Build an OpenAI ``chat.completion`` body; the upstream id wins when known."""
    input_tokens = details.input_tokens or 0
    output_tokens = details.output_tokens or 0
    return {
        "id": details.id or completion_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "logprobs": None,
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": input_tokens,
            "completion_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
        },
    }


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _error(
    exc: ProviderError, log: Any, client_name: str, stream: bool, start_time: float
) -> JSONResponse:
    duration_s = time.monotonic() - start_time
    record_request(client_name, stream=stream, outcome="error", duration_s=duration_s)
    log.error(
        "http_request",
        status=status_for(exc),
        error_type=type(exc).__name__,
        error=exc.message,
        duration_ms=round(duration_s * 1000, 2),
    )
    return provider_error_response(exc)
