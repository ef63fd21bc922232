"""Process entry point: bind address handling and the uvicorn server.

Usage::

    llmbridge                      # 127.0.0.1:8000
    llmbridge 9000                 # 127.0.0.1:9000
    llmbridge 0.0.0.0              # 0.0.0.0:8000
    llmbridge localhost:9000 --model claude:claude-3-haiku-20240307

The first interrupt stops accepting connections and drains in-flight
requests; a second one forces the exit and aborts every live stream.
"""

import argparse
import asyncio
import ipaddress
import signal
import sys
from pathlib import Path
from types import FrameType

import structlog
import uvicorn

from llmbridge.abort import AbortRegistry
from llmbridge.config import load_gateway_config, settings
from llmbridge.main import app
from llmbridge.providers import ConfigError

_log = structlog.get_logger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _parse_port(value: str, address: str) -> int:
    if not value.isdigit() or not 0 < int(value) < 65536:
        raise ConfigError(f"Invalid port in address '{address}'")
    return int(value)


def normalize_address(value: str | None) -> tuple[str, int]:
    """Turn a port, an IP or ``host:port`` into a ``(host, port)`` pair.

    A bare port binds the loopback host; a bare IP binds the default port.

    Raises:
        ConfigError: *value* is none of the accepted forms.
    """
    if value is None or not value.strip():
        return DEFAULT_HOST, DEFAULT_PORT
    value = value.strip()

    if value.isdigit():
        return DEFAULT_HOST, _parse_port(value, value)

    try:
        return str(ipaddress.ip_address(value.strip("[]"))), DEFAULT_PORT
    except ValueError:
        pass

    host, sep, port = value.rpartition(":")
    host = host.strip("[]")
    if not sep or not host:
        raise ConfigError(f"Invalid address '{value}'")
    return host, _parse_port(port, value)


def api_url(host: str, port: int) -> str:
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}/v1/chat/completions"


class GatewayServer(uvicorn.Server):
    """uvicorn server that aborts live streams on a forced exit."""

    def __init__(self, config: uvicorn.Config, aborts: AbortRegistry) -> None:
        super().__init__(config)
        self.aborts = aborts
        self._loop: asyncio.AbstractEventLoop | None = None

    async def serve(self, sockets=None) -> None:
        self._loop = asyncio.get_running_loop()
        await super().serve(sockets)

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        forcing = self.should_exit and sig == signal.SIGINT
        super().handle_exit(sig, frame)
        if forcing and self._loop is not None:
            _log.warning("forced_shutdown", live_streams=len(self.aborts))
            self._loop.call_soon_threadsafe(self.aborts.abort_all)


def run(
    address: str | None = None,
    config_path: Path | None = None,
    model: str | None = None,
) -> None:
    """Load the gateway configuration and serve until interrupted."""
    host, port = normalize_address(address or settings.address)
    app.state.gateway_config = load_gateway_config(config_path, model)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        access_log=False,
        timeout_graceful_shutdown=settings.shutdown_timeout,
    )
    server = GatewayServer(config, app.state.aborts)

    url = api_url(host, port)
    print(f"Access the chat completion API at: {url}")
    _log.info("gateway_listening", host=host, port=port, url=url)
    server.run()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="llmbridge",
        description="Serve an OpenAI-compatible chat completions API in front of many LLM vendors.",
    )
    parser.add_argument(
        "address",
        nargs="?",
        help="port, IP or host:port to listen on (default 127.0.0.1:8000)",
    )
    parser.add_argument("--config", type=Path, help="YAML client configuration file")
    parser.add_argument("--model", help="default model, as client:model or a client name")
    args = parser.parse_args(argv)

    try:
        run(args.address, args.config, args.model)
    except ConfigError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
