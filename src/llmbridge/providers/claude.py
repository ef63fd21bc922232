"""Anthropic Claude messages API."""

from typing import Any

import httpx

from llmbridge.providers.base import Client
from llmbridge.providers.config import ClaudeConfig, ModelConfig
from llmbridge.providers.errors import ProviderError
from llmbridge.providers.models import CompletionDetails, Model, SendData
from llmbridge.providers.sse import SseHandler, iter_sse_messages

CLAUDE_API_BASE = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


def claude_build_body(model: Model, data: SendData) -> dict[str, Any]:
    """Build a messages-API body; ``max_tokens`` is mandatory for Claude."""
    system, messages = data.split_system()
    body: dict[str, Any] = {
        "messages": [m.to_dict() for m in messages],
        "max_tokens": model.max_output_tokens or DEFAULT_MAX_TOKENS,
    }
    if system:
        body["system"] = system
    if data.temperature is not None:
        body["temperature"] = data.temperature
    if data.top_p is not None:
        body["top_p"] = data.top_p
    return body


def claude_parse_response(data: dict[str, Any]) -> tuple[str, CompletionDetails]:
    text = "".join(
        block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"
    )
    usage = data.get("usage") or {}
    return text, CompletionDetails(
        id=data.get("id"),
        input_tokens=usage.get("input_tokens"),
        output_tokens=usage.get("output_tokens"),
    )


def claude_handle_event(event: dict[str, Any], handler: SseHandler, provider: str) -> bool:
    """Apply one Claude stream event to *handler*; return ``True`` at ``message_stop``."""
    event_type = event.get("type")
    if event_type == "message_start":
        message = event.get("message") or {}
        handler.details.id = message.get("id")
        handler.details.input_tokens = (message.get("usage") or {}).get("input_tokens")
    elif event_type == "content_block_delta":
        handler.text((event.get("delta") or {}).get("text") or "")
    elif event_type == "message_delta":
        output_tokens = (event.get("usage") or {}).get("output_tokens")
        if output_tokens is not None:
            handler.details.output_tokens = output_tokens
    elif event_type == "message_stop":
        handler.done()
        return True
    elif event_type == "error":
        error = event.get("error") or {}
        raise ProviderError(error.get("message") or "stream error", provider=provider)
    return False


class ClaudeClient(Client):
    kind = "claude"
    config_class = ClaudeConfig
    required_fields = ("api_key",)
    temperature_range = (0.0, 1.0)
    default_models = (
        ModelConfig(name="claude-3-5-sonnet-20240620", max_input_tokens=200000, max_output_tokens=4096),
        ModelConfig(name="claude-3-opus-20240229", max_input_tokens=200000, max_output_tokens=4096),
        ModelConfig(name="claude-3-sonnet-20240229", max_input_tokens=200000, max_output_tokens=4096),
        ModelConfig(name="claude-3-haiku-20240307", max_input_tokens=200000, max_output_tokens=4096),
    )

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        body = claude_build_body(self._model, data)
        body["model"] = self._model.name
        if stream:
            body["stream"] = True
        api_base = (self.config.get("api_base") or CLAUDE_API_BASE).rstrip("/")
        return http_client.build_request(
            "POST",
            f"{api_base}/messages",
            headers={
                "x-api-key": self.config.get("api_key") or "",
                "anthropic-version": ANTHROPIC_VERSION,
            },
            json=self.with_extra_fields(body),
        )

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        return claude_parse_response(self.json_body(response))

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        async for message in iter_sse_messages(response, handler.abort):
            if claude_handle_event(message.json(), handler, self.name):
                return
