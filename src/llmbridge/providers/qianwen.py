"""Alibaba Qianwen (DashScope text generation)."""

from typing import Any

import httpx

from llmbridge.providers.base import Client
from llmbridge.providers.config import ModelConfig, QianwenConfig
from llmbridge.providers.errors import ProviderError
from llmbridge.providers.models import CompletionDetails, SendData
from llmbridge.providers.sse import SseHandler, iter_sse_messages

QIANWEN_API_URL = (
    "https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation"
)


def _details(data: dict[str, Any]) -> CompletionDetails:
    usage = data.get("usage") or {}
    return CompletionDetails(
        id=data.get("request_id"),
        input_tokens=usage.get("input_tokens"),
        output_tokens=usage.get("output_tokens"),
    )


class QianwenClient(Client):
    kind = "qianwen"
    config_class = QianwenConfig
    required_fields = ("api_key",)
    default_models = (
        ModelConfig(name="qwen-turbo", max_input_tokens=6000, max_output_tokens=1500),
        ModelConfig(name="qwen-plus", max_input_tokens=30000, max_output_tokens=2000),
        ModelConfig(name="qwen-max", max_input_tokens=6000, max_output_tokens=2000),
        ModelConfig(name="qwen-max-longcontext", max_input_tokens=28000, max_output_tokens=2000),
    )

    def build_body(self, data: SendData, stream: bool) -> dict[str, Any]:
        parameters: dict[str, Any] = {}
        if self._model.max_output_tokens is not None:
            parameters["max_tokens"] = self._model.max_output_tokens
        if data.temperature is not None:
            parameters["temperature"] = data.temperature
        if data.top_p is not None:
            parameters["top_p"] = data.top_p
        if stream:
            parameters["incremental_output"] = True
        return self.with_extra_fields(
            {
                "model": self._model.name,
                "input": {"messages": [m.to_dict() for m in data.messages]},
                "parameters": parameters,
            }
        )

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        headers = {"Authorization": f"Bearer {self.config.get('api_key')}"}
        if stream:
            headers["X-DashScope-SSE"] = "enable"
        return http_client.build_request(
            "POST", QIANWEN_API_URL, headers=headers, json=self.build_body(data, stream)
        )

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        data = self.json_body(response)
        if data.get("code"):
            raise ProviderError(self.extract_error(data) or data["code"], provider=self.name)
        return (data.get("output") or {}).get("text") or "", _details(data)

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        async for message in iter_sse_messages(response, handler.abort):
            chunk = message.json()
            if message.event == "error" or chunk.get("code"):
                raise ProviderError(
                    self.extract_error(chunk) or "stream error", provider=self.name
                )
            output = chunk.get("output") or {}
            handler.text(output.get("text") or "")
            if chunk.get("usage"):
                details = _details(chunk)
                handler.details.id = details.id
                handler.details.input_tokens = details.input_tokens
                handler.details.output_tokens = details.output_tokens
            if output.get("finish_reason") == "stop":
                handler.done()
                return
