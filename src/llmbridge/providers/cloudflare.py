"""Cloudflare Workers AI."""

from typing import Any

import httpx

from llmbridge.providers.base import Client
from llmbridge.providers.config import CloudflareConfig, ModelConfig
from llmbridge.providers.errors import ProviderError
from llmbridge.providers.models import CompletionDetails, SendData
from llmbridge.providers.sse import SseHandler, iter_sse_messages

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"


class CloudflareClient(Client):
    kind = "cloudflare"
    config_class = CloudflareConfig
    required_fields = ("account_id", "api_key")
    temperature_range = (0.0, 5.0)
    default_models = (
        ModelConfig(name="@cf/meta/llama-3-8b-instruct", max_input_tokens=4096, max_output_tokens=4096),
        ModelConfig(name="@cf/mistral/mistral-7b-instruct-v0.2-lora", max_input_tokens=4096),
        ModelConfig(name="@cf/qwen/qwen1.5-14b-chat-awq", max_input_tokens=4096),
    )

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        body: dict[str, Any] = {"messages": [m.to_dict() for m in data.messages]}
        if self._model.max_output_tokens is not None:
            body["max_tokens"] = self._model.max_output_tokens
        if data.temperature is not None:
            body["temperature"] = data.temperature
        if data.top_p is not None:
            body["top_p"] = data.top_p
        if stream:
            body["stream"] = True
        return http_client.build_request(
            "POST",
            f"{CLOUDFLARE_API_BASE}/accounts/{self.config.get('account_id')}/ai/run/{self._model.name}",
            headers={"Authorization": f"Bearer {self.config.get('api_key')}"},
            json=self.with_extra_fields(body),
        )

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        data = self.json_body(response)
        if not data.get("success", True):
            raise ProviderError(self.extract_error(data) or "request failed", provider=self.name)
        result = data.get("result") or {}
        usage = result.get("usage") or {}
        return result.get("response") or "", CompletionDetails(
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
        )

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        async for message in iter_sse_messages(response, handler.abort):
            if message.data == "[DONE]":
                handler.done()
                return
            chunk = message.json()
            handler.text(chunk.get("response") or "")
            usage = chunk.get("usage")
            if usage:
                handler.details.input_tokens = usage.get("prompt_tokens")
                handler.details.output_tokens = usage.get("completion_tokens")

    def extract_error(self, data: Any) -> str | None:
        if isinstance(data, dict) and data.get("errors"):
            return "; ".join(str(e.get("message", e)) for e in data["errors"])
        return super().extract_error(data)
