"""Replicate predictions API.

A completion is a two-step exchange: create a prediction, then either poll
its ``urls.get`` until it settles (buffered) or read its ``urls.stream``
event stream (streaming).  Models take one prompt string rendered with the
family's chat template.
"""

import asyncio
from typing import Any, ClassVar

import httpx

from llmbridge.providers.base import Client
from llmbridge.providers.config import ModelConfig, ReplicateConfig
from llmbridge.providers.errors import ProtocolError, ProviderError
from llmbridge.providers.models import CompletionDetails, SendData
from llmbridge.providers.prompt_format import format_for_model, generate_prompt
from llmbridge.providers.sse import SseHandler, iter_sse_messages

REPLICATE_API_BASE = "https://api.replicate.com/v1"

_TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})


class ReplicateClient(Client):
    kind = "replicate"
    config_class = ReplicateConfig
    required_fields = ("api_key",)
    temperature_range = (0.0, 5.0)
    default_models = (
        ModelConfig(name="meta/meta-llama-3-70b-instruct", max_input_tokens=8192, max_output_tokens=4096),
        ModelConfig(name="meta/meta-llama-3-8b-instruct", max_input_tokens=8192, max_output_tokens=4096),
        ModelConfig(name="mistralai/mistral-7b-instruct-v0.2", max_input_tokens=32000, max_output_tokens=8192),
        ModelConfig(name="mistralai/mixtral-8x7b-instruct-v0.1", max_input_tokens=32000, max_output_tokens=8192),
    )

    poll_interval: ClassVar[float] = 1.0

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.get('api_key')}"}

    def build_body(self, data: SendData, stream: bool) -> dict[str, Any]:
        model_input: dict[str, Any] = {
            "prompt": generate_prompt(data.messages, format_for_model(self._model.name)),
            "prompt_template": "{prompt}",
        }
        if self._model.max_output_tokens is not None:
            model_input["max_new_tokens"] = self._model.max_output_tokens
        if data.temperature is not None:
            model_input["temperature"] = data.temperature
        if data.top_p is not None:
            model_input["top_p"] = data.top_p
        model_input.update(self._model.extra_fields)
        body: dict[str, Any] = {"input": model_input}
        if stream:
            body["stream"] = True
        return body

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        return http_client.build_request(
            "POST",
            f"{REPLICATE_API_BASE}/models/{self._model.name}/predictions",
            headers=self.headers(),
            json=self.build_body(data, stream),
        )

    async def _create_prediction(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> dict[str, Any]:
        request = await self.build_request(http_client, data, stream)
        response = await http_client.send(request)
        await self.check_response(response)
        return self.json_body(response)

    async def _send(
        self, http_client: httpx.AsyncClient, data: SendData
    ) -> tuple[str, CompletionDetails]:
        prediction = await self._create_prediction(http_client, data, stream=False)
        get_url = prediction["urls"]["get"]
        while prediction.get("status") not in _TERMINAL_STATUSES:
            await asyncio.sleep(self.poll_interval)
            response = await http_client.get(get_url, headers=self.headers())
            await self.check_response(response)
            prediction = self.json_body(response)
        return self.parse_prediction(prediction)

    async def _send_streaming(
        self, http_client: httpx.AsyncClient, handler: SseHandler, data: SendData
    ) -> None:
        prediction = await self._create_prediction(http_client, data, stream=True)
        handler.details.id = prediction.get("id")
        stream_url = (prediction.get("urls") or {}).get("stream")
        if not stream_url:
            raise ProtocolError("Prediction has no stream URL", provider=self.name)
        request = http_client.build_request(
            "GET",
            stream_url,
            headers={**self.headers(), "Accept": "text/event-stream", "Cache-Control": "no-store"},
        )
        response = await http_client.send(request, stream=True)
        try:
            await self.check_response(response)
            await self.parse_stream(response, handler)
        finally:
            await response.aclose()

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        async for message in iter_sse_messages(response, handler.abort):
            if message.event == "output":
                handler.text(message.data)
            elif message.event == "done":
                handler.done()
                return
            elif message.event == "error":
                raise ProviderError(message.data or "prediction failed", provider=self.name)

    def parse_prediction(self, prediction: dict[str, Any]) -> tuple[str, CompletionDetails]:
        status = prediction.get("status")
        if status != "succeeded":
            raise ProviderError(
                f"Prediction {status}: {prediction.get('error') or 'no output'}",
                provider=self.name,
            )
        output = prediction.get("output") or ""
        text = "".join(output) if isinstance(output, list) else str(output)
        metrics = prediction.get("metrics") or {}
        return text, CompletionDetails(
            id=prediction.get("id"),
            input_tokens=metrics.get("input_token_count"),
            output_tokens=metrics.get("output_token_count"),
        )

    def extract_error(self, data: Any) -> str | None:
        if isinstance(data, dict) and isinstance(data.get("detail"), str):
            return data["detail"]
        return super().extract_error(data)
