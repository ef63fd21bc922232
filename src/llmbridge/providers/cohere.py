"""Cohere chat API (v1).

The last user turn goes in ``message``, earlier turns in ``chat_history`` and
system prompts in ``preamble``.  Streams are newline-delimited JSON.
"""

from typing import Any

import httpx

from llmbridge.providers.base import Client
from llmbridge.providers.config import CohereConfig, ModelConfig
from llmbridge.providers.errors import InvalidRequestError, ProviderError
from llmbridge.providers.models import CompletionDetails, SendData
from llmbridge.providers.sse import SseHandler, iter_json_lines

COHERE_API_BASE = "https://api.cohere.ai/v1"

_ROLES = {"user": "USER", "assistant": "CHATBOT"}


def _details(data: dict[str, Any]) -> CompletionDetails:
    units = (data.get("meta") or {}).get("billed_units") or {}
    return CompletionDetails(
        id=data.get("generation_id"),
        input_tokens=units.get("input_tokens"),
        output_tokens=units.get("output_tokens"),
    )


class CohereClient(Client):
    kind = "cohere"
    config_class = CohereConfig
    required_fields = ("api_key",)
    temperature_range = (0.0, 5.0)
    top_p_range = (0.0, 0.99)
    default_models = (
        ModelConfig(name="command-r", max_input_tokens=128000, max_output_tokens=4000),
        ModelConfig(name="command-r-plus", max_input_tokens=128000, max_output_tokens=4000),
    )

    def build_body(self, data: SendData, stream: bool) -> dict[str, Any]:
        system, messages = data.split_system()
        if not messages or messages[-1].role != "user":
            raise InvalidRequestError(
                "The last message must be from the user", provider=self.name
            )
        body: dict[str, Any] = {
            "model": self._model.name,
            "message": messages[-1].text(),
        }
        if system:
            body["preamble"] = system
        if len(messages) > 1:
            body["chat_history"] = [
                {"role": _ROLES[m.role], "message": m.text()} for m in messages[:-1]
            ]
        if self._model.max_output_tokens is not None:
            body["max_tokens"] = self._model.max_output_tokens
        if data.temperature is not None:
            body["temperature"] = data.temperature
        if data.top_p is not None:
            body["p"] = data.top_p
        if stream:
            body["stream"] = True
        return self.with_extra_fields(body)

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        api_base = (self.config.get("api_base") or COHERE_API_BASE).rstrip("/")
        return http_client.build_request(
            "POST",
            f"{api_base}/chat",
            headers={"Authorization": f"Bearer {self.config.get('api_key')}"},
            json=self.build_body(data, stream),
        )

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        data = self.json_body(response)
        return data.get("text") or "", _details(data)

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        async for event in iter_json_lines(response, handler.abort):
            event_type = event.get("event_type")
            if event_type == "text-generation":
                handler.text(event.get("text") or "")
            elif event_type == "stream-end":
                if event.get("finish_reason") == "ERROR":
                    raise ProviderError("Cohere stream ended with an error", provider=self.name)
                details = _details(event.get("response") or {})
                handler.details.id = details.id
                handler.details.input_tokens = details.input_tokens
                handler.details.output_tokens = details.output_tokens
                handler.done()
                return
