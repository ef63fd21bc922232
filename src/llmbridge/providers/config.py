"""Static client configuration, one pydantic model per provider kind.

The ``type`` field is the kind tag: it selects exactly one
:class:`ClientConfig` variant and, through the registry, exactly one client
implementation.  Credential fields may be left out of the file and supplied
through the environment as ``{CLIENT_NAME}_{FIELD}``, e.g.
``OPENAI_API_KEY`` or ``MY_OLLAMA_API_BASE``.
"""

import os
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class ModelConfig(BaseModel):
    """One model entry under a client's ``models`` list."""

    model_config = ConfigDict(extra="ignore")

    name: str
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    extra_fields: dict[str, Any] = Field(default_factory=dict)


class ExtraConfig(BaseModel):
    """Per-client transport settings."""

    model_config = ConfigDict(extra="ignore")

    proxy: str | None = None
    connect_timeout: float | None = None
    max_retries: int | None = None


class BaseClientConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    type: str
    name: str | None = None
    models: list[ModelConfig] = Field(default_factory=list)
    extra: ExtraConfig | None = None

    @property
    def client_name(self) -> str:
        return self.name or self.type

    def env_prefix(self) -> str:
        return self.client_name.upper().replace("-", "_")

    def get(self, field: str) -> str | None:
        """Return a config value, falling back to ``{CLIENT_NAME}_{FIELD}``."""
        value = getattr(self, field, None)
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        if value:
            return str(value)
        return os.environ.get(f"{self.env_prefix()}_{field.upper()}") or None


class OpenAIConfig(BaseClientConfig):
    type: Literal["openai"]
    api_key: SecretStr | None = None
    api_base: str | None = None
    organization_id: str | None = None


class OpenAICompatibleConfig(BaseClientConfig):
    type: Literal["openai-compatible"]
    api_key: SecretStr | None = None
    api_base: str | None = None
    chat_endpoint: str | None = None


class AzureOpenAIConfig(BaseClientConfig):
    type: Literal["azure-openai"]
    api_key: SecretStr | None = None
    api_base: str | None = None
    api_version: str | None = None


class GeminiConfig(BaseClientConfig):
    type: Literal["gemini"]
    api_key: SecretStr | None = None
    api_base: str | None = None
    block_threshold: str | None = None


class VertexAIConfig(BaseClientConfig):
    type: Literal["vertexai"]
    project_id: str | None = None
    location: str | None = None
    adc_file: str | None = None
    access_token: SecretStr | None = None
    block_threshold: str | None = None


class ClaudeConfig(BaseClientConfig):
    type: Literal["claude"]
    api_key: SecretStr | None = None
    api_base: str | None = None


class CohereConfig(BaseClientConfig):
    type: Literal["cohere"]
    api_key: SecretStr | None = None
    api_base: str | None = None


class OllamaConfig(BaseClientConfig):
    type: Literal["ollama"]
    api_base: str | None = None
    api_auth: SecretStr | None = None
    chat_endpoint: str | None = None


class BedrockConfig(BaseClientConfig):
    type: Literal["bedrock"]
    access_key_id: SecretStr | None = None
    secret_access_key: SecretStr | None = None
    session_token: SecretStr | None = None
    region: str | None = None


class CloudflareConfig(BaseClientConfig):
    type: Literal["cloudflare"]
    account_id: str | None = None
    api_key: SecretStr | None = None


class ReplicateConfig(BaseClientConfig):
    type: Literal["replicate"]
    api_key: SecretStr | None = None


class ErnieConfig(BaseClientConfig):
    type: Literal["ernie"]
    api_key: SecretStr | None = None
    secret_key: SecretStr | None = None


class QianwenConfig(BaseClientConfig):
    type: Literal["qianwen"]
    api_key: SecretStr | None = None


ClientConfig = Annotated[
    OpenAIConfig
    | OpenAICompatibleConfig
    | AzureOpenAIConfig
    | GeminiConfig
    | VertexAIConfig
    | ClaudeConfig
    | CohereConfig
    | OllamaConfig
    | BedrockConfig
    | CloudflareConfig
    | ReplicateConfig
    | ErnieConfig
    | QianwenConfig,
    Field(discriminator="type"),
]
