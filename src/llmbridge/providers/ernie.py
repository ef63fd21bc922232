"""Baidu Ernie (Wenxin Workshop).

Requests carry an OAuth access token exchanged from the configured
``api_key`` / ``secret_key`` pair.  Errors come back with HTTP 200 and an
``error_code`` envelope, for buffered and streaming calls alike.
"""

from typing import Any

import httpx

from llmbridge.providers.base import Client
from llmbridge.providers.config import ErnieConfig, ModelConfig
from llmbridge.providers.errors import AuthError, InvalidRequestError, ProviderError
from llmbridge.providers.models import CompletionDetails, SendData
from llmbridge.providers.sse import SseHandler, iter_sse_messages

ERNIE_API_BASE = "https://aip.baidubce.com"

# Chat endpoint path segment for each model name.
ERNIE_ENDPOINTS: dict[str, str] = {
    "ernie-4.0-8k": "completions_pro",
    "ernie-3.5-8k": "completions",
    "ernie-3.5-4k-0205": "ernie-3.5-4k-0205",
    "ernie-speed-128k": "ernie-speed-128k",
    "ernie-lite-8k": "ernie-lite-8k",
    "ernie-tiny-8k": "ernie-tiny-8k",
}

# Error codes that mean the credentials or token are bad.
_AUTH_ERROR_CODES = frozenset({13, 14, 15, 110, 111})


class ErnieClient(Client):
    kind = "ernie"
    config_class = ErnieConfig
    required_fields = ("api_key", "secret_key")
    temperature_range = (0.0, 1.0)
    default_models = (
        ModelConfig(name="ernie-4.0-8k", max_input_tokens=5120, max_output_tokens=2048),
        ModelConfig(name="ernie-3.5-8k", max_input_tokens=5120, max_output_tokens=2048),
        ModelConfig(name="ernie-speed-128k", max_input_tokens=124000, max_output_tokens=4096),
        ModelConfig(name="ernie-lite-8k", max_input_tokens=7168, max_output_tokens=2048),
    )

    def validate(self, data: SendData) -> None:
        super().validate(data)
        if data.temperature is not None and data.temperature == 0:
            raise InvalidRequestError(
                "temperature must be in (0.0, 1.0] for ernie, got 0", provider=self.name
            )

    async def fetch_access_token(self, http_client: httpx.AsyncClient) -> str:
        response = await http_client.post(
            f"{ERNIE_API_BASE}/oauth/2.0/token",
            params={
                "grant_type": "client_credentials",
                "client_id": self.config.get("api_key"),
                "client_secret": self.config.get("secret_key"),
            },
        )
        data = self.json_body(response)
        token = data.get("access_token")
        if not token:
            raise AuthError(
                f"Failed to fetch access token: {data.get('error_description') or data}",
                provider=self.name,
            )
        return token

    def build_body(self, data: SendData, stream: bool) -> dict[str, Any]:
        system, messages = data.split_system()
        body: dict[str, Any] = {"messages": [m.to_dict() for m in messages]}
        if system:
            body["system"] = system
        if self._model.max_output_tokens is not None:
            body["max_output_tokens"] = self._model.max_output_tokens
        if data.temperature is not None:
            body["temperature"] = data.temperature
        if data.top_p is not None:
            body["top_p"] = data.top_p
        if stream:
            body["stream"] = True
        return self.with_extra_fields(body)

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        token = await self.fetch_access_token(http_client)
        endpoint = ERNIE_ENDPOINTS.get(self._model.name, self._model.name)
        return http_client.build_request(
            "POST",
            f"{ERNIE_API_BASE}/rpc/2.0/ai_custom/v1/wenxinworkshop/chat/{endpoint}",
            params={"access_token": token},
            json=self.build_body(data, stream),
        )

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        data = self.json_body(response)
        self._raise_for_envelope(data)
        usage = data.get("usage") or {}
        return data.get("result") or "", CompletionDetails(
            id=data.get("id"),
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
        )

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        if response.headers.get("content-type", "").startswith("application/json"):
            await response.aread()
            self._raise_for_envelope(self.json_body(response))
        async for message in iter_sse_messages(response, handler.abort):
            chunk = message.json()
            self._raise_for_envelope(chunk)
            handler.text(chunk.get("result") or "")
            usage = chunk.get("usage")
            if usage:
                handler.details.id = chunk.get("id")
                handler.details.input_tokens = usage.get("prompt_tokens")
                handler.details.output_tokens = usage.get("completion_tokens")
            if chunk.get("is_end"):
                handler.done()
                return

    def extract_error(self, data: Any) -> str | None:
        if isinstance(data, dict) and data.get("error_msg"):
            return data["error_msg"]
        return super().extract_error(data)

    def _raise_for_envelope(self, data: dict[str, Any]) -> None:
        code = data.get("error_code")
        if not code:
            return
        message = f"{data.get('error_msg') or 'request failed'} (error_code {code})"
        if code in _AUTH_ERROR_CODES:
            raise AuthError(message, provider=self.name)
        raise ProviderError(message, provider=self.name)
