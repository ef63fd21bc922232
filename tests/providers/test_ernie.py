"""Tests for the Ernie client (token exchange plus envelope errors)."""

import json

import httpx
import pytest

from llmbridge.abort import AbortSignal
from llmbridge.providers import (
    AuthError,
    InvalidRequestError,
    Message,
    Model,
    ProviderError,
    SendData,
    SseHandler,
)
from llmbridge.providers.config import ErnieConfig
from llmbridge.providers.ernie import ErnieClient

_DATA = SendData(
    messages=(Message(role="system", content="Be brief."), Message(role="user", content="Hello"))
)


def _client() -> ErnieClient:
    config = ErnieConfig(type="ernie", api_key="ak", secret_key="sk")
    return ErnieClient.resolve(config, Model(client_name="ernie", name="ernie-4.0-8k"))


class FakeBaidu:
    """Serves the OAuth token endpoint and one canned chat response."""

    def __init__(self, chat: httpx.Response, token: dict | None = None) -> None:
        self.chat = chat
        self.token = token if token is not None else {"access_token": "tok-1"}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/2.0/token":
            return httpx.Response(200, json=self.token)
        return self.chat

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


class TestErnie:
    async def test_send(self) -> None:
        baidu = FakeBaidu(
            httpx.Response(
                200,
                json={"id": "as-1", "result": "Hey", "usage": {"prompt_tokens": 4, "completion_tokens": 1}},
            )
        )
        async with baidu.client() as http_client:
            text, details = await _client().send(http_client, _DATA)

        assert text == "Hey"
        assert (details.id, details.total_tokens) == ("as-1", 5)

        token_request, chat_request = baidu.requests
        assert token_request.url.params["client_id"] == "ak"
        assert token_request.url.params["client_secret"] == "sk"
        assert chat_request.url.path == "/rpc/2.0/ai_custom/v1/wenxinworkshop/chat/completions_pro"
        assert chat_request.url.params["access_token"] == "tok-1"
        assert json.loads(chat_request.content) == {
            "messages": [{"role": "user", "content": "Hello"}],
            "system": "Be brief.",
        }

    async def test_token_failure(self) -> None:
        baidu = FakeBaidu(
            httpx.Response(200, json={}),
            token={"error": "invalid_client", "error_description": "unknown client id"},
        )
        async with baidu.client() as http_client:
            with pytest.raises(AuthError, match="unknown client id"):
                await _client().send(http_client, _DATA)

    @pytest.mark.parametrize(
        "code, expected",
        [(110, AuthError), (336003, ProviderError)],
    )
    async def test_envelope_error(self, code: int, expected: type) -> None:
        baidu = FakeBaidu(httpx.Response(200, json={"error_code": code, "error_msg": "nope"}))
        async with baidu.client() as http_client:
            with pytest.raises(expected, match=f"nope \\(error_code {code}\\)"):
                await _client().send(http_client, _DATA)

    async def test_zero_temperature_rejected(self) -> None:
        data = SendData(messages=_DATA.messages, temperature=0)
        async with httpx.AsyncClient() as http_client:
            with pytest.raises(InvalidRequestError, match="temperature"):
                await _client().send(http_client, data)

    async def test_stream(self) -> None:
        content = (
            b'data: {"id": "as-2", "result": "he", "is_end": false}\n\n'
            b'data: {"id": "as-2", "result": "llo", "is_end": true,'
            b' "usage": {"prompt_tokens": 3, "completion_tokens": 2}}\n\n'
        )
        baidu = FakeBaidu(httpx.Response(200, content=content))
        handler = SseHandler(AbortSignal())
        async with baidu.client() as http_client:
            await _client().send_streaming(http_client, handler, _DATA)

        assert handler.buffer == "hello"
        assert handler.closed
        assert handler.details.id == "as-2"
        assert handler.details.total_tokens == 5

    async def test_stream_json_error(self) -> None:
        baidu = FakeBaidu(httpx.Response(200, json={"error_code": 17, "error_msg": "daily limit"}))
        handler = SseHandler(AbortSignal())
        async with baidu.client() as http_client:
            with pytest.raises(ProviderError, match="daily limit"):
                await _client().send_streaming(http_client, handler, _DATA)
        assert not handler.closed
