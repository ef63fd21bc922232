"""Prometheus instruments for the gateway.

The gateway port serves only the chat-completions API, so metrics are
exposed on their own listener when ``metrics_port`` is configured.
"""

import structlog
from prometheus_client import Counter, Histogram, start_http_server

_log = structlog.get_logger(__name__)

REQUESTS = Counter(
    "llmbridge_requests_total",
    "Chat completion requests by client, mode and outcome.",
    ["client", "stream", "outcome"],
)
TOKENS = Counter(
    "llmbridge_tokens_total",
    "Tokens reported by upstream providers.",
    ["client", "direction"],
)
LATENCY = Histogram(
    "llmbridge_request_duration_seconds",
    "Wall time from request receipt to the last response byte.",
    ["client", "stream"],
)


def record_request(
    client: str,
    stream: bool,
    outcome: str,
    duration_s: float | None = None,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
) -> None:
    mode = "true" if stream else "false"
    REQUESTS.labels(client=client, stream=mode, outcome=outcome).inc()
    if duration_s is not None:
        LATENCY.labels(client=client, stream=mode).observe(duration_s)
    if input_tokens:
        TOKENS.labels(client=client, direction="input").inc(input_tokens)
    if output_tokens:
        TOKENS.labels(client=client, direction="output").inc(output_tokens)


def start_metrics_server(port: int | None) -> None:
    if port is None:
        return
    start_http_server(port)
    _log.info("metrics_server_started", port=port)
