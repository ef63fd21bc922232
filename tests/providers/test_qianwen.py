"""Tests for the Qianwen (DashScope) client."""

import json

import httpx
import pytest

from llmbridge.abort import AbortSignal
from llmbridge.providers import Message, Model, ProviderError, SendData, SseHandler
from llmbridge.providers.config import QianwenConfig
from llmbridge.providers.qianwen import QianwenClient

_DATA = SendData(messages=(Message(role="user", content="Hello"),))


def _client() -> QianwenClient:
    config = QianwenConfig(type="qianwen", api_key="ds-key")
    return QianwenClient.resolve(config, Model(client_name="qianwen", name="qwen-turbo"))


def _transport(response: httpx.Response, requests: list[httpx.Request]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return response

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestQianwen:
    async def test_send(self) -> None:
        requests: list[httpx.Request] = []
        body = {
            "request_id": "req-1",
            "output": {"text": "Hey", "finish_reason": "stop"},
            "usage": {"input_tokens": 4, "output_tokens": 1},
        }
        async with _transport(httpx.Response(200, json=body), requests) as http_client:
            text, details = await _client().send(http_client, _DATA)

        assert text == "Hey"
        assert (details.id, details.total_tokens) == ("req-1", 5)
        assert json.loads(requests[0].content) == {
            "model": "qwen-turbo",
            "input": {"messages": [{"role": "user", "content": "Hello"}]},
            "parameters": {},
        }
        assert "x-dashscope-sse" not in requests[0].headers

    async def test_send_error_code(self) -> None:
        body = {"code": "InvalidParameter", "message": "Model not exist."}
        async with _transport(httpx.Response(200, json=body), []) as http_client:
            with pytest.raises(ProviderError, match="Model not exist"):
                await _client().send(http_client, _DATA)

    async def test_stream(self) -> None:
        content = (
            b'id:1\nevent:result\ndata:{"output": {"text": "he", "finish_reason": "null"}}\n\n'
            b'id:2\nevent:result\ndata:{"output": {"text": "llo", "finish_reason": "stop"},'
            b' "usage": {"input_tokens": 3, "output_tokens": 2}, "request_id": "req-2"}\n\n'
        )
        requests: list[httpx.Request] = []
        handler = SseHandler(AbortSignal())
        async with _transport(httpx.Response(200, content=content), requests) as http_client:
            await _client().send_streaming(http_client, handler, _DATA)

        assert handler.buffer == "hello"
        assert handler.closed
        assert handler.details.id == "req-2"
        assert handler.details.total_tokens == 5
        assert requests[0].headers["x-dashscope-sse"] == "enable"
        assert json.loads(requests[0].content)["parameters"]["incremental_output"] is True

    async def test_stream_error_event(self) -> None:
        content = b'event:error\ndata:{"code": "Throttling", "message": "Requests throttled"}\n\n'
        handler = SseHandler(AbortSignal())
        async with _transport(httpx.Response(200, content=content), []) as http_client:
            with pytest.raises(ProviderError, match="throttled"):
                await _client().send_streaming(http_client, handler, _DATA)
