import structlog
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from llmbridge.abort import AbortRegistry
from llmbridge.api.completions import router as completions_router
from llmbridge.api.errors import install_exception_handlers
from llmbridge.config import load_gateway_config, settings
from llmbridge.metrics import start_metrics_server

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        structlog.stdlib.NAME_TO_LEVEL.get(settings.log_level.lower(), 20)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()

# ---------------------------------------------------------------------------
# OpenTelemetry
# ---------------------------------------------------------------------------
resource = Resource.create({"service.name": settings.otel_service_name})
tracer_provider = TracerProvider(resource=resource)
if settings.otel_exporter_otlp_endpoint:
    otlp_exporter = OTLPSpanExporter(
        endpoint=f"{settings.otel_exporter_otlp_endpoint}/v1/traces",
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
trace.set_tracer_provider(tracer_provider)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,PUT,PATCH,DELETE",
    "Access-Control-Allow-Headers": "Content-Type,Authorization",
}


class CORSHeadersMiddleware:
    """Stamp the fixed CORS headers on every HTTP response, errors included."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in CORS_HEADERS.items():
                    headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="llmbridge",
    version=settings.app_version,
    description=(
        "OpenAI-compatible chat completions gateway in front of many "
        "LLM vendors, with streaming relay and full observability."
    ),
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

app.add_middleware(CORSHeadersMiddleware)
install_exception_handlers(app)

app.include_router(completions_router)

# Signals of live streams; the server aborts them all on forced shutdown.
app.state.aborts = AbortRegistry()

# Instrument *after* routes are registered
FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def _startup() -> None:
    # The server entry point loads the configuration before binding; this
    # covers running the app directly under an ASGI server.
    if getattr(app.state, "gateway_config", None) is None:
        app.state.gateway_config = load_gateway_config()

    start_metrics_server(settings.metrics_port)

    config = app.state.gateway_config
    log.info(
        "gateway_ready",
        model=config.model.id if config.model else None,
        clients=[c.client_name for c in config.clients],
        llm_timeout=settings.llm_timeout,
        llm_max_retries=settings.llm_max_retries,
        otel_endpoint=settings.otel_exporter_otlp_endpoint,
        metrics_port=settings.metrics_port,
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    log.info("gateway_shutting_down", live_streams=len(app.state.aborts))
    tracer_provider.shutdown()
