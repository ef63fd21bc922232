from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import Field, TypeAdapter, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from llmbridge.providers.config import ClientConfig
from llmbridge.providers.errors import ConfigError
from llmbridge.providers.registry import GatewayConfig, find_model

_log = structlog.get_logger(__name__)

_CLIENTS_ADAPTER = TypeAdapter(list[ClientConfig])


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LLMBRIDGE_",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="llmbridge")
    app_version: str = Field(default="0.1.0")
    # Port, IP or host:port; normalized by llmbridge.serve.normalize_address.
    address: str | None = Field(default=None)

    # Client list and default model
    config_file: Path = Field(default=Path("~/.config/llmbridge/config.yaml"))
    model: str | None = Field(default=None)

    # Observability
    otel_exporter_otlp_endpoint: str | None = Field(default=None)
    otel_service_name: str = Field(default="llmbridge")
    log_level: str = Field(default="INFO")
    metrics_port: int | None = Field(default=None)

    # Upstream call behaviour
    llm_timeout: float = Field(default=60.0)
    llm_connect_timeout: float = Field(default=10.0)
    llm_max_retries: int = Field(default=3)

    # Seconds to wait for in-flight connections on shutdown; None waits forever.
    shutdown_timeout: int | None = Field(default=None)


settings = Settings()


def parse_gateway_config(data: dict[str, Any], model: str | None = None) -> GatewayConfig:
    """Build a :class:`GatewayConfig` from the decoded YAML document.

    *model* overrides the document's ``model`` key.  Without either, the
    first model of the first client is the default.

    Raises:
        ConfigError: The client list fails validation or the default model
            cannot be resolved.
    """
    try:
        clients = _CLIENTS_ADAPTER.validate_python(data.get("clients") or [])
    except ValidationError as exc:
        raise ConfigError(f"Invalid clients configuration: {exc}") from exc

    config = GatewayConfig(clients=list(clients))
    value = model or data.get("model")
    if value:
        config.model = find_model(config.clients, value)
    elif clients:
        config.model = find_model(config.clients, clients[0].client_name)
    return config


def load_gateway_config(path: Path | None = None, model: str | None = None) -> GatewayConfig:
    """Read the YAML client configuration at *path* (default ``settings.config_file``)."""
    path = (path or settings.config_file).expanduser()
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    config = parse_gateway_config(data, model or settings.model)
    _log.info(
        "gateway_config_loaded",
        path=str(path),
        clients=[c.client_name for c in config.clients],
        model=config.model.id if config.model else None,
    )
    return config
