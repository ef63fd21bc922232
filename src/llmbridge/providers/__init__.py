"""Provider client abstraction layer.

Public surface area for the providers package.  Import from here rather than
from the individual submodules so internal structure can change freely.

Example::

    from llmbridge.abort import AbortSignal
    from llmbridge.providers import GatewayConfig, Message, SendData, SseHandler, init_client

    config.set_model("claude:claude-3-haiku-20240307")
    client = init_client(config)
    handler = SseHandler(AbortSignal())
    async with client.build_client() as http_client:
        await client.send_streaming(
            http_client,
            handler,
            SendData(messages=(Message(role="user", content="Hello"),), stream=True),
        )
    print(handler.buffer)
"""

from llmbridge.providers.base import Client, count_tokens
from llmbridge.providers.config import BaseClientConfig, ClientConfig, ModelConfig
from llmbridge.providers.errors import (
    AuthError,
    ConfigError,
    InvalidRequestError,
    ProtocolError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitError,
    TimeoutError,
)
from llmbridge.providers.models import (
    CompletionDetails,
    Message,
    Model,
    SendData,
    SseEvent,
)
from llmbridge.providers.registry import (
    CLIENTS,
    GatewayConfig,
    find_model,
    init_client,
    list_models,
)
from llmbridge.providers.sse import SseHandler

__all__ = [
    # Models
    "CompletionDetails",
    "Message",
    "Model",
    "SendData",
    "SseEvent",
    # Configuration
    "BaseClientConfig",
    "ClientConfig",
    "GatewayConfig",
    "ModelConfig",
    # Clients
    "CLIENTS",
    "Client",
    "SseHandler",
    "count_tokens",
    "find_model",
    "init_client",
    "list_models",
    # Errors
    "ProviderError",
    "ConfigError",
    "RateLimitError",
    "AuthError",
    "TimeoutError",
    "InvalidRequestError",
    "ProviderUnavailableError",
    "ProtocolError",
]
