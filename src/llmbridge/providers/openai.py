"""OpenAI, OpenAI-compatible platforms and Azure OpenAI.

All three speak the OpenAI chat-completions wire format; they differ only in
URL layout and authentication header.
"""

from typing import Any, ClassVar

import httpx

from llmbridge.providers.base import Client
from llmbridge.providers.config import (
    AzureOpenAIConfig,
    BaseClientConfig,
    ModelConfig,
    OpenAICompatibleConfig,
    OpenAIConfig,
)
from llmbridge.providers.errors import ConfigError
from llmbridge.providers.models import CompletionDetails, Model, SendData
from llmbridge.providers.sse import SseHandler, iter_sse_messages

OPENAI_API_BASE = "https://api.openai.com/v1"
AZURE_API_VERSION = "2024-02-01"

OPENAI_COMPATIBLE_PLATFORMS: dict[str, str] = {
    "anyscale": "https://api.endpoints.anyscale.com/v1",
    "deepinfra": "https://api.deepinfra.com/v1/openai",
    "fireworks": "https://api.fireworks.ai/inference/v1",
    "groq": "https://api.groq.com/openai/v1",
    "mistral": "https://api.mistral.ai/v1",
    "moonshot": "https://api.moonshot.cn/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "octoai": "https://text.octoai.run/v1",
    "perplexity": "https://api.perplexity.ai",
    "together": "https://api.together.xyz/v1",
}


def openai_build_body(model: Model, data: SendData, stream: bool) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": model.name,
        "messages": [m.to_dict() for m in data.messages],
    }
    if model.max_output_tokens is not None:
        body["max_tokens"] = model.max_output_tokens
    if data.temperature is not None:
        body["temperature"] = data.temperature
    if data.top_p is not None:
        body["top_p"] = data.top_p
    if stream:
        body["stream"] = True
    return body


def openai_parse_response(data: dict[str, Any]) -> tuple[str, CompletionDetails]:
    text = data["choices"][0]["message"].get("content") or ""
    usage = data.get("usage") or {}
    return text, CompletionDetails(
        id=data.get("id"),
        input_tokens=usage.get("prompt_tokens"),
        output_tokens=usage.get("completion_tokens"),
    )


async def openai_parse_stream(response: httpx.Response, handler: SseHandler) -> None:
    async for message in iter_sse_messages(response, handler.abort):
        if message.data == "[DONE]":
            handler.done()
            return
        chunk = message.json()
        if chunk.get("id"):
            handler.details.id = chunk["id"]
        usage = chunk.get("usage")
        if usage:
            handler.details.input_tokens = usage.get("prompt_tokens")
            handler.details.output_tokens = usage.get("completion_tokens")
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            handler.text(delta.get("content") or "")


class OpenAIClient(Client):
    kind = "openai"
    config_class = OpenAIConfig
    required_fields = ("api_key",)
    default_models: ClassVar[tuple[ModelConfig, ...]] = (
        ModelConfig(name="gpt-3.5-turbo", max_input_tokens=16385),
        ModelConfig(name="gpt-4-turbo", max_input_tokens=128000),
        ModelConfig(name="gpt-4o", max_input_tokens=128000),
        ModelConfig(name="gpt-4o-mini", max_input_tokens=128000),
    )

    def api_base(self) -> str:
        return (self.config.get("api_base") or OPENAI_API_BASE).rstrip("/")

    def chat_url(self) -> str:
        return f"{self.api_base()}/chat/completions"

    def auth_headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.get('api_key')}"}
        organization_id = self.config.get("organization_id")
        if organization_id:
            headers["OpenAI-Organization"] = organization_id
        return headers

    def build_body(self, data: SendData, stream: bool) -> dict[str, Any]:
        return self.with_extra_fields(openai_build_body(self._model, data, stream))

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        return http_client.build_request(
            "POST",
            self.chat_url(),
            headers=self.auth_headers(),
            json=self.build_body(data, stream),
        )

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        return openai_parse_response(self.json_body(response))

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        await openai_parse_stream(response, handler)


class OpenAICompatibleClient(OpenAIClient):
    """Any platform exposing the OpenAI API shape.

    ``api_base`` defaults from the platform table when the client is named
    after a known platform (``groq``, ``mistral``, ...).
    """

    kind = "openai-compatible"
    config_class = OpenAICompatibleConfig
    required_fields = ()
    default_models = ()

    @classmethod
    def resolve(cls, config: BaseClientConfig, model: Model, **transport: Any) -> Client:
        client = super().resolve(config, model, **transport)
        if not (config.get("api_base") or OPENAI_COMPATIBLE_PLATFORMS.get(config.client_name)):
            raise ConfigError(
                f"client '{config.client_name}' is missing 'api_base' "
                f"(set it in the config file or via {config.env_prefix()}_API_BASE)",
                provider=config.client_name,
            )
        return client

    def api_base(self) -> str:
        base = self.config.get("api_base") or OPENAI_COMPATIBLE_PLATFORMS[self.name]
        return base.rstrip("/")

    def chat_url(self) -> str:
        endpoint = self.config.get("chat_endpoint") or "/chat/completions"
        return f"{self.api_base()}{endpoint}"

    def auth_headers(self) -> dict[str, str]:
        api_key = self.config.get("api_key")
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}


class AzureOpenAIClient(OpenAIClient):
    """Azure OpenAI; model names are deployment names."""

    kind = "azure-openai"
    config_class = AzureOpenAIConfig
    required_fields = ("api_base", "api_key")
    default_models = ()

    def chat_url(self) -> str:
        api_version = self.config.get("api_version") or AZURE_API_VERSION
        return (
            f"{self.config.get('api_base').rstrip('/')}/openai/deployments/"
            f"{self._model.name}/chat/completions?api-version={api_version}"
        )

    def auth_headers(self) -> dict[str, str]:
        return {"api-key": self.config.get("api_key") or ""}

    def build_body(self, data: SendData, stream: bool) -> dict[str, Any]:
        body = super().build_body(data, stream)
        body.pop("model", None)
        return body
