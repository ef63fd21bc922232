"""Ollama chat API; streams are newline-delimited JSON ending with ``done: true``."""

from typing import Any

import httpx

from llmbridge.providers.base import Client
from llmbridge.providers.config import OllamaConfig
from llmbridge.providers.errors import ProviderError
from llmbridge.providers.models import CompletionDetails, SendData
from llmbridge.providers.sse import SseHandler, iter_json_lines

OLLAMA_API_BASE = "http://localhost:11434"


def _details(data: dict[str, Any]) -> CompletionDetails:
    return CompletionDetails(
        input_tokens=data.get("prompt_eval_count"),
        output_tokens=data.get("eval_count"),
    )


class OllamaClient(Client):
    kind = "ollama"
    config_class = OllamaConfig

    def build_body(self, data: SendData, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._model.name,
            "messages": [m.to_dict() for m in data.messages],
            "stream": stream,
        }
        options: dict[str, Any] = {}
        if self._model.max_output_tokens is not None:
            options["num_predict"] = self._model.max_output_tokens
        if data.temperature is not None:
            options["temperature"] = data.temperature
        if data.top_p is not None:
            options["top_p"] = data.top_p
        if options:
            body["options"] = options
        return self.with_extra_fields(body)

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        api_base = (self.config.get("api_base") or OLLAMA_API_BASE).rstrip("/")
        endpoint = self.config.get("chat_endpoint") or "/api/chat"
        api_auth = self.config.get("api_auth")
        return http_client.build_request(
            "POST",
            f"{api_base}{endpoint}",
            headers={"Authorization": api_auth} if api_auth else {},
            json=self.build_body(data, stream),
        )

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        data = self.json_body(response)
        if data.get("error"):
            raise ProviderError(data["error"], provider=self.name)
        return (data.get("message") or {}).get("content") or "", _details(data)

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        async for chunk in iter_json_lines(response, handler.abort):
            if chunk.get("error"):
                raise ProviderError(chunk["error"], provider=self.name)
            handler.text((chunk.get("message") or {}).get("content") or "")
            if chunk.get("done"):
                details = _details(chunk)
                handler.details.input_tokens = details.input_tokens
                handler.details.output_tokens = details.output_tokens
                handler.done()
                return
