"""Closed registry of provider kinds, model resolution and client construction.

Every ``ClientConfig`` kind tag maps to exactly one client class here;
adding a vendor means adding one config model and one entry in
:data:`CLIENTS`.
"""

import copy
from dataclasses import dataclass, field
from typing import Any

from llmbridge.providers.base import Client
from llmbridge.providers.bedrock import BedrockClient
from llmbridge.providers.claude import ClaudeClient
from llmbridge.providers.cloudflare import CloudflareClient
from llmbridge.providers.cohere import CohereClient
from llmbridge.providers.config import BaseClientConfig
from llmbridge.providers.ernie import ErnieClient
from llmbridge.providers.errors import ConfigError
from llmbridge.providers.gemini import GeminiClient, VertexAIClient
from llmbridge.providers.models import Model
from llmbridge.providers.ollama import OllamaClient
from llmbridge.providers.openai import AzureOpenAIClient, OpenAIClient, OpenAICompatibleClient
from llmbridge.providers.qianwen import QianwenClient
from llmbridge.providers.replicate import ReplicateClient

CLIENTS: dict[str, type[Client]] = {
    client.kind: client
    for client in (
        OpenAIClient,
        OpenAICompatibleClient,
        GeminiClient,
        ClaudeClient,
        CohereClient,
        OllamaClient,
        AzureOpenAIClient,
        VertexAIClient,
        BedrockClient,
        CloudflareClient,
        ReplicateClient,
        ErnieClient,
        QianwenClient,
    )
}


def client_class(config: BaseClientConfig) -> type[Client]:
    try:
        return CLIENTS[config.type]
    except KeyError:
        raise ConfigError(f"unknown client type '{config.type}'") from None


def list_models(clients: list[BaseClientConfig]) -> list[Model]:
    """Every model offered by *clients*, in configuration order."""
    models: list[Model] = []
    for config in clients:
        models.extend(client_class(config).list_models(config))
    return models


def find_model(clients: list[BaseClientConfig], value: str) -> Model:
    """Resolve ``client:model`` (exact id) or a bare client name (its first model).

    Raises:
        ConfigError: No configured client offers a matching model.
    """
    models = list_models(clients)
    if ":" in value:
        for model in models:
            if model.id == value:
                return copy.deepcopy(model)
    else:
        for model in models:
            if model.client_name == value:
                return copy.deepcopy(model)
    raise ConfigError(f"Invalid model '{value}'")


@dataclass
class GatewayConfig:
    """Snapshot of the configured clients and the default model.

    The gateway keeps one process-wide instance and never mutates it; each
    request works on :meth:`snapshot`.
    """

    clients: list[BaseClientConfig] = field(default_factory=list)
    model: Model | None = None

    def snapshot(self) -> "GatewayConfig":
        return GatewayConfig(
            clients=list(self.clients),
            model=copy.deepcopy(self.model),
        )

    def set_model(self, value: str) -> Model:
        """Rebind this snapshot's model to *value*."""
        self.model = find_model(self.clients, value)
        return self.model

    def client_config(self, client_name: str) -> BaseClientConfig:
        for config in self.clients:
            if config.client_name == client_name:
                return config
        raise ConfigError(f"Unknown client '{client_name}'")


def init_client(config: GatewayConfig, **transport: Any) -> Client:
    """Build the client serving ``config.model``.

    *transport* is forwarded to the client (``timeout``, ``connect_timeout``,
    ``max_retries``).
    """
    if config.model is None:
        raise ConfigError("No model configured")
    client_config = config.client_config(config.model.client_name)
    return client_class(client_config).resolve(client_config, config.model, **transport)
