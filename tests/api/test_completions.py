"""Tests for POST/OPTIONS /v1/chat/completions."""

import asyncio
import json
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from llmbridge.abort import AbortSignal
from llmbridge.api.completions import StreamRelay, completion_body, resolve_model
from llmbridge.config import parse_gateway_config
from llmbridge.main import app
from llmbridge.providers import (
    AuthError,
    CompletionDetails,
    ConfigError,
    InvalidRequestError,
    Message,
    Model,
    ProtocolError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitError,
    SendData,
    TimeoutError,
)
from llmbridge.providers.config import OpenAIConfig
from llmbridge.providers.openai import OpenAIClient

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_DEFAULT_BODY: dict = {
    "model": "default",
    "messages": [{"role": "user", "content": "Hello"}],
}

_CONFIG: dict = {
    "model": "openai:gpt-4o",
    "clients": [
        {"type": "openai", "api_key": "sk-test"},
        {"type": "ollama", "api_base": "http://localhost:11434", "models": [{"name": "llama3"}]},
    ],
}


class StubClient:
    """Stands in for a provider client; records calls instead of doing HTTP."""

    kind = "stub"
    name = "stub"

    def __init__(
        self,
        deltas: tuple[str, ...] = (),
        details: CompletionDetails | None = None,
        error: ProviderError | None = None,
        error_at: int = 0,
    ) -> None:
        self.deltas = deltas
        self.details = details or CompletionDetails()
        self.error = error
        self.error_at = error_at
        self.calls = 0
        self.max_output_tokens: int | None = None
        self.last_data: SendData | None = None

    def set_max_output_tokens(self, value: int | None) -> None:
        self.max_output_tokens = value

    def build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient()

    async def send(self, http_client: httpx.AsyncClient, data: SendData):
        self.calls += 1
        self.last_data = data
        if self.error is not None:
            raise self.error
        return "".join(self.deltas), self.details

    async def send_streaming(self, http_client: httpx.AsyncClient, handler, data: SendData):
        self.calls += 1
        self.last_data = data
        for index, delta in enumerate(self.deltas):
            if self.error is not None and index == self.error_at:
                raise self.error
            handler.text(delta)
            await asyncio.sleep(0)
        if self.error is not None and self.error_at >= len(self.deltas):
            raise self.error
        handler.details = self.details
        handler.done()


def _install(mocker: Any, stub: StubClient) -> dict[str, Any]:
    """Route init_client to *stub*; return what it was called with."""
    captured: dict[str, Any] = {}

    def _init_client(config, **transport):
        captured["model"] = config.model.id
        captured["transport"] = transport
        return stub

    mocker.patch("llmbridge.api.completions.init_client", side_effect=_init_client)
    return captured


def _frames(text: str) -> list[str]:
    return [chunk.removeprefix("data: ") for chunk in text.split("\n\n") if chunk]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def gateway_config():
    """Install a fresh gateway configuration and remove it after every test."""
    app.state.gateway_config = parse_gateway_config(_CONFIG)
    yield app.state.gateway_config
    if hasattr(app.state, "gateway_config"):
        del app.state.gateway_config


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# get_gateway_config() dependency
# ---------------------------------------------------------------------------


class TestGetGatewayConfig:
    async def test_missing_config_returns_503(self, client: AsyncClient) -> None:
        del app.state.gateway_config
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert response.status_code == 503
        assert response.json()["error"]["type"] == "invalid_request_error"


# ---------------------------------------------------------------------------
# Non-streaming
# ---------------------------------------------------------------------------


class TestNonStreaming:
    async def test_response_structure(self, client: AsyncClient, mocker) -> None:
        _install(
            mocker,
            StubClient(("hello",), CompletionDetails(input_tokens=3, output_tokens=1)),
        )
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)

        assert response.status_code == 200
        body = response.json()
        assert body["object"] == "chat.completion"
        assert body["id"].startswith("chatcmpl-")
        assert isinstance(body["created"], int)
        assert body["model"] == "openai:gpt-4o"
        choice = body["choices"][0]
        assert choice["index"] == 0
        assert choice["message"] == {"role": "assistant", "content": "hello"}
        assert choice["logprobs"] is None
        assert choice["finish_reason"] == "stop"
        assert body["usage"] == {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}

    async def test_upstream_id_is_reused(self, client: AsyncClient, mocker) -> None:
        _install(mocker, StubClient(("ok",), CompletionDetails(id="chatcmpl-upstream")))
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert response.json()["id"] == "chatcmpl-upstream"

    async def test_missing_usage_counts_as_zero(self, client: AsyncClient, mocker) -> None:
        _install(mocker, StubClient(("ok",)))
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert response.json()["usage"] == {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }

    async def test_request_fields_reach_the_client(self, client: AsyncClient, mocker) -> None:
        stub = StubClient(("ok",))
        _install(mocker, stub)
        await client.post(
            "/v1/chat/completions",
            json={
                "model": "default",
                "messages": [
                    {"role": "system", "content": "Be brief."},
                    {"role": "user", "content": [{"type": "text", "text": "Hi"}]},
                ],
                "temperature": 0.2,
                "top_p": 0.9,
                "max_tokens": 256,
            },
        )

        assert stub.max_output_tokens == 256
        assert stub.last_data is not None
        assert stub.last_data.temperature == 0.2
        assert stub.last_data.top_p == 0.9
        assert stub.last_data.stream is False
        assert stub.last_data.messages == (
            Message(role="system", content="Be brief."),
            Message(role="user", content=[{"type": "text", "text": "Hi"}]),
        )

    async def test_max_tokens_absent_leaves_model_limit(self, client: AsyncClient, mocker) -> None:
        stub = StubClient(("ok",))
        _install(mocker, stub)
        await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert stub.max_output_tokens is None

    async def test_transport_settings_forwarded(self, client: AsyncClient, mocker) -> None:
        from llmbridge.config import settings

        captured = _install(mocker, StubClient(("ok",)))
        await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert captured["transport"] == {
            "timeout": settings.llm_timeout,
            "connect_timeout": settings.llm_connect_timeout,
            "max_retries": settings.llm_max_retries,
        }

    @pytest.mark.parametrize(
        "exc, expected_status",
        [
            (AuthError("bad key"), 401),
            (TimeoutError("slow"), 400),
            (ProviderUnavailableError("down"), 400),
            (InvalidRequestError("bad request"), 400),
            (ProtocolError("garbled"), 400),
            (ProviderError("vendor said no"), 400),
        ],
    )
    async def test_provider_errors_map_to_status(
        self, client: AsyncClient, mocker, exc: ProviderError, expected_status: int
    ) -> None:
        _install(mocker, StubClient(error=exc))
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert response.status_code == expected_status
        assert response.json() == {
            "error": {"message": exc.message, "type": "invalid_request_error"}
        }

    async def test_rate_limit_sets_retry_after(self, client: AsyncClient, mocker) -> None:
        _install(mocker, StubClient(error=RateLimitError("slow down", retry_after=7)))
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "7"


# ---------------------------------------------------------------------------
# Model resolution
# ---------------------------------------------------------------------------


class TestModelResolution:
    async def test_unknown_model_is_rejected_before_any_call(
        self, client: AsyncClient, mocker
    ) -> None:
        stub = StubClient(("hello",))
        init = mocker.patch("llmbridge.api.completions.init_client", return_value=stub)

        response = await client.post(
            "/v1/chat/completions", json={**_DEFAULT_BODY, "model": "unknown-model"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"
        assert "unknown-model" in response.json()["error"]["message"]
        init.assert_not_called()
        assert stub.calls == 0

    async def test_default_alias_uses_configured_default(
        self, client: AsyncClient, mocker
    ) -> None:
        captured = _install(mocker, StubClient(("ok",)))
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert captured["model"] == "openai:gpt-4o"
        assert response.json()["model"] == "openai:gpt-4o"

    async def test_literal_default_id(self, client: AsyncClient, mocker) -> None:
        captured = _install(mocker, StubClient(("ok",)))
        response = await client.post(
            "/v1/chat/completions", json={**_DEFAULT_BODY, "model": "openai:gpt-4o"}
        )
        assert captured["model"] == "openai:gpt-4o"
        assert response.json()["model"] == "openai:gpt-4o"

    async def test_other_model_does_not_touch_shared_config(
        self, client: AsyncClient, mocker, gateway_config
    ) -> None:
        captured = _install(mocker, StubClient(("ok",)))
        response = await client.post(
            "/v1/chat/completions", json={**_DEFAULT_BODY, "model": "ollama:llama3"}
        )
        assert captured["model"] == "ollama:llama3"
        assert response.json()["model"] == "ollama:llama3"
        assert gateway_config.model.id == "openai:gpt-4o"

    async def test_bare_client_name_selects_first_model(
        self, client: AsyncClient, mocker
    ) -> None:
        captured = _install(mocker, StubClient(("ok",)))
        await client.post("/v1/chat/completions", json={**_DEFAULT_BODY, "model": "ollama"})
        assert captured["model"] == "ollama:llama3"

    def test_resolve_model_without_default(self) -> None:
        config = parse_gateway_config({"clients": []})
        with pytest.raises(ConfigError, match="default"):
            resolve_model(config, "default")


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStreaming:
    async def test_frames(self, client: AsyncClient, mocker) -> None:
        _install(mocker, StubClient(("he", "llo")))
        response = await client.post(
            "/v1/chat/completions", json={**_DEFAULT_BODY, "stream": True}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"

        frames = _frames(response.text)
        assert frames[-1] == "[DONE]"
        chunks = [json.loads(frame) for frame in frames[:-1]]
        assert len(chunks) == 4

        assert chunks[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
        content = "".join(c["choices"][0]["delta"]["content"] for c in chunks[1:3])
        assert content == "hello"
        assert chunks[3]["choices"][0]["delta"] == {}
        assert chunks[3]["choices"][0]["finish_reason"] == "stop"

        ids = {c["id"] for c in chunks}
        assert len(ids) == 1
        for chunk in chunks:
            assert chunk["object"] == "chat.completion.chunk"
            assert chunk["model"] == "openai:gpt-4o"
            assert chunk["choices"][0]["index"] == 0
        assert all(c["choices"][0]["finish_reason"] is None for c in chunks[:3])

    async def test_empty_stream_still_finishes(self, client: AsyncClient, mocker) -> None:
        _install(mocker, StubClient(()))
        response = await client.post(
            "/v1/chat/completions", json={**_DEFAULT_BODY, "stream": True}
        )
        frames = _frames(response.text)
        assert len(frames) == 3
        assert json.loads(frames[1])["choices"][0]["finish_reason"] == "stop"
        assert frames[2] == "[DONE]"

    @pytest.mark.parametrize(
        "exc, expected_status",
        [
            (AuthError("bad key"), 401),
            (RateLimitError("slow down"), 429),
            (InvalidRequestError("temperature out of range"), 400),
            (ProviderUnavailableError("down"), 400),
        ],
    )
    async def test_error_before_first_event_sets_status(
        self, client: AsyncClient, mocker, exc: ProviderError, expected_status: int
    ) -> None:
        _install(mocker, StubClient(("never",), error=exc, error_at=0))
        response = await client.post(
            "/v1/chat/completions", json={**_DEFAULT_BODY, "stream": True}
        )
        assert response.status_code == expected_status
        assert response.headers["content-type"].startswith("application/json")
        assert response.json()["error"]["message"] == exc.message

    async def test_error_after_first_event_ends_with_error_frame(
        self, client: AsyncClient, mocker
    ) -> None:
        _install(mocker, StubClient(("he", "llo"), error=ProtocolError("garbled"), error_at=1))
        response = await client.post(
            "/v1/chat/completions", json={**_DEFAULT_BODY, "stream": True}
        )

        assert response.status_code == 200
        frames = _frames(response.text)
        assert "[DONE]" not in frames
        assert json.loads(frames[1])["choices"][0]["delta"] == {"content": "he"}
        assert json.loads(frames[-1]) == {
            "error": {"message": "garbled", "type": "invalid_request_error"}
        }
        assert not any('"finish_reason": "stop"' in frame for frame in frames)

    async def test_abort_signal_released(self, client: AsyncClient, mocker) -> None:
        _install(mocker, StubClient(("a", "b")))
        await client.post("/v1/chat/completions", json={**_DEFAULT_BODY, "stream": True})
        assert len(app.state.aborts) == 0

    async def test_client_disconnect_releases_stream(self, mocker) -> None:
        stub = _HangingClient()
        _install(mocker, stub)
        record = mocker.patch("llmbridge.api.completions.record_request")

        body = json.dumps({**_DEFAULT_BODY, "stream": True}).encode()
        pending = [{"type": "http.request", "body": body, "more_body": False}]
        first_frame_sent = asyncio.Event()
        sent: list[dict] = []

        async def receive() -> dict:
            if pending:
                return pending.pop(0)
            await first_frame_sent.wait()
            return {"type": "http.disconnect"}

        async def send(message: dict) -> None:
            sent.append(message)
            if message["type"] == "http.response.body" and message.get("body"):
                first_frame_sent.set()

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/v1/chat/completions",
            "raw_path": b"/v1/chat/completions",
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"test"), (b"content-type", b"application/json")],
            "client": ("127.0.0.1", 50000),
            "server": ("test", 80),
        }
        await asyncio.wait_for(app(scope, receive, send), timeout=5)

        assert sent[0]["status"] == 200
        assert stub.cancelled
        assert len(app.state.aborts) == 0
        assert record.call_args.kwargs["outcome"] == "cancelled"


# ---------------------------------------------------------------------------
# StreamRelay
# ---------------------------------------------------------------------------


class _HangingClient(StubClient):
    def __init__(self) -> None:
        super().__init__()
        self.cancelled = False

    async def send_streaming(self, http_client, handler, data):
        handler.text("first")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


_SEND_DATA = SendData(messages=(Message(role="user", content="hi"),), stream=True)


class TestStreamRelay:
    async def test_abort_ends_relay_and_cancels_producer(self) -> None:
        stub = _HangingClient()
        abort = AbortSignal()
        relay = StreamRelay(stub, httpx.AsyncClient(), _SEND_DATA, abort)

        first = await relay.next_event()
        assert first is not None and first.text == "first"

        asyncio.get_running_loop().call_soon(abort.abort)
        assert await relay.next_event() is None
        assert relay.aborted

        await relay.aclose()
        assert stub.cancelled

    async def test_aclose_aborts_running_producer(self) -> None:
        stub = _HangingClient()
        abort = AbortSignal()
        relay = StreamRelay(stub, httpx.AsyncClient(), _SEND_DATA, abort)
        await relay.next_event()

        await relay.aclose()
        assert abort.aborted()
        assert stub.cancelled

    async def test_queued_events_drain_before_error(self) -> None:
        stub = StubClient(("a", "b"), error=ProviderUnavailableError("reset"), error_at=2)
        relay = StreamRelay(stub, httpx.AsyncClient(), _SEND_DATA, AbortSignal())

        texts = []
        with pytest.raises(ProviderUnavailableError, match="reset"):
            while True:
                event = await relay.next_event()
                texts.append(event.text)
        assert texts == ["a", "b"]
        await relay.aclose()

    async def test_done_event_terminates(self) -> None:
        relay = StreamRelay(StubClient(("x",)), httpx.AsyncClient(), _SEND_DATA, AbortSignal())
        assert (await relay.next_event()).text == "x"
        assert (await relay.next_event()).is_done
        assert await relay.next_event() is None
        await relay.aclose()


# ---------------------------------------------------------------------------
# OPTIONS, CORS and unknown routes
# ---------------------------------------------------------------------------

_CORS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET,POST,PUT,PATCH,DELETE",
    "access-control-allow-headers": "Content-Type,Authorization",
}


def _assert_cors(response: httpx.Response) -> None:
    for name, value in _CORS.items():
        assert response.headers[name] == value


class TestRoutingAndCors:
    async def test_options_returns_204_with_cors(self, client: AsyncClient) -> None:
        response = await client.options("/v1/chat/completions")
        assert response.status_code == 204
        assert response.content == b""
        _assert_cors(response)

    async def test_success_carries_cors(self, client: AsyncClient, mocker) -> None:
        _install(mocker, StubClient(("ok",)))
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        _assert_cors(response)

    async def test_stream_carries_cors(self, client: AsyncClient, mocker) -> None:
        _install(mocker, StubClient(("ok",)))
        response = await client.post(
            "/v1/chat/completions", json={**_DEFAULT_BODY, "stream": True}
        )
        _assert_cors(response)

    async def test_unknown_path_returns_404_envelope(self, client: AsyncClient) -> None:
        response = await client.get("/v1/models")
        assert response.status_code == 404
        assert response.json() == {
            "error": {
                "message": "The requested endpoint was not found.",
                "type": "invalid_request_error",
            }
        }
        _assert_cors(response)

    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    async def test_wrong_method_returns_404_envelope(
        self, client: AsyncClient, method: str
    ) -> None:
        response = await client.request(method, "/v1/chat/completions")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "The requested endpoint was not found."
        assert "allow" not in response.headers
        _assert_cors(response)

    async def test_malformed_json_returns_400(self, client: AsyncClient, mocker) -> None:
        init = mocker.patch("llmbridge.api.completions.init_client")
        response = await client.post(
            "/v1/chat/completions",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"
        _assert_cors(response)
        init.assert_not_called()

    @pytest.mark.parametrize(
        "body",
        [
            {"model": "default"},
            {"model": "default", "messages": []},
            {"model": "default", "messages": [{"role": "robot", "content": "hi"}]},
            {"messages": [{"role": "user", "content": "hi"}]},
            {**_DEFAULT_BODY, "max_tokens": 0},
        ],
    )
    async def test_invalid_body_returns_400(self, client: AsyncClient, body: dict) -> None:
        response = await client.post("/v1/chat/completions", json=body)
        assert response.status_code == 400
        assert response.json()["error"]["message"].startswith("Invalid request body")


# ---------------------------------------------------------------------------
# Malformed upstream payloads, through a real provider client
# ---------------------------------------------------------------------------


def _install_upstream(mocker: Any, response: httpx.Response) -> None:
    provider = OpenAIClient.resolve(
        OpenAIConfig(type="openai", api_key="sk-test"),
        Model(client_name="openai", name="gpt-4o"),
        max_retries=1,
    )
    mocker.patch.object(
        provider,
        "build_client",
        return_value=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)),
    )
    _install(mocker, provider)


class TestMalformedUpstream:
    @pytest.mark.parametrize("chunk", [b"[1]", b"null", b'"text"'])
    async def test_non_object_stream_chunk(
        self, client: AsyncClient, mocker, chunk: bytes
    ) -> None:
        _install_upstream(mocker, httpx.Response(200, content=b"data: " + chunk + b"\n\n"))
        response = await client.post(
            "/v1/chat/completions", json={**_DEFAULT_BODY, "stream": True}
        )
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"
        _assert_cors(response)
        assert len(app.state.aborts) == 0

    @pytest.mark.parametrize(
        "body",
        [{"choices": [{"message": None}]}, [1], None, {"choices": None}],
    )
    async def test_non_object_buffered_body(self, client: AsyncClient, mocker, body) -> None:
        _install_upstream(mocker, httpx.Response(200, json=body))
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert response.status_code == 400
        assert response.json()["error"]["message"].startswith("Unexpected response from openai")
        _assert_cors(response)

    async def test_upstream_outage_is_a_400(self, client: AsyncClient, mocker) -> None:
        provider_response = httpx.Response(503, json={"error": {"message": "overloaded"}})
        _install_upstream(mocker, provider_response)
        response = await client.post("/v1/chat/completions", json=_DEFAULT_BODY)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "overloaded"
        _assert_cors(response)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


class TestCompletionBody:
    def test_generated_id_when_upstream_has_none(self) -> None:
        body = completion_body("chatcmpl-local", "openai:gpt-4o", 1, "hi", CompletionDetails())
        assert body["id"] == "chatcmpl-local"
        assert body["created"] == 1
