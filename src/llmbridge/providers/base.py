"""Provider client contract and the HTTP machinery every vendor shares.

A vendor implementation only describes its own wire format:

* :meth:`Client.build_request` serializes a :class:`SendData` into the
  vendor's HTTP request (URL, auth headers, JSON body).
* :meth:`Client.parse_response` extracts the answer text and usage counters
  from a buffered response.
* :meth:`Client.parse_stream` reads the vendor's incremental framing and
  pushes text deltas into an :class:`~llmbridge.providers.sse.SseHandler`.
* :meth:`Client.extract_error` pulls the message out of the vendor's error
  envelope.

Everything else (validation, the input-size guard, status mapping, httpx
error mapping, retries on buffered calls, tracing and structured logging)
lives here so the vendor modules stay small.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, ClassVar, TypeVar

import httpx
import litellm
import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from llmbridge.providers.config import BaseClientConfig, ExtraConfig, ModelConfig
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
from llmbridge.providers.models import CompletionDetails, Message, Model, SendData
from llmbridge.providers.sse import SseHandler

# LiteLLM is only used for token counting; keep its own logging quiet.
logging.getLogger("LiteLLM").setLevel(logging.WARNING)

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

T = TypeVar("T")


def count_tokens(messages: Sequence[Message], model: str = "gpt-3.5-turbo") -> int:
    """Estimate the prompt token count of *messages*.

    Uses LiteLLM's token counter (tiktoken for OpenAI-family models, a default
    tokenizer otherwise).  Falls back to a word-count approximation when the
    counter fails.
    """
    try:
        return litellm.token_counter(model=model, messages=[m.to_dict() for m in messages])
    except Exception as exc:
        _log.warning(
            "token_counting_failed",
            model=model,
            error=str(exc),
            fallback="word_count_approximation",
        )
        text = " ".join(m.text() for m in messages)
        return max(1, round(len(text.split()) * 1.3))


def _before_sleep(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` hook that emits a structured warning."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    next_action = retry_state.next_action
    wait_seconds = next_action.sleep if next_action is not None else 0.0
    _log.warning(
        "llm_request_retry",
        attempt=retry_state.attempt_number,
        wait_seconds=round(wait_seconds, 2),
        error_type=type(exc).__name__ if exc else None,
        error=str(exc) if exc else None,
    )


class Client:
    """Base class of every provider client.

    Subclasses set the class attributes below and implement the four wire
    hooks.  Instances are request-scoped: each one holds its own copy of the
    bound :class:`Model`, so per-request overrides never leak.

    Args:
        config: The client's static configuration.
        model: The model to bind; copied on construction.
        timeout: Read timeout in seconds for upstream calls.
        connect_timeout: Connect timeout in seconds, unless the client's
            ``extra.connect_timeout`` overrides it.
        max_retries: Attempts for transient failures on buffered calls,
            unless ``extra.max_retries`` overrides it.
    """

    kind: ClassVar[str]
    config_class: ClassVar[type[BaseClientConfig]]
    required_fields: ClassVar[tuple[str, ...]] = ()
    default_models: ClassVar[tuple[ModelConfig, ...]] = ()
    temperature_range: ClassVar[tuple[float, float]] = (0.0, 2.0)
    top_p_range: ClassVar[tuple[float, float]] = (0.0, 1.0)

    def __init__(
        self,
        config: BaseClientConfig,
        model: Model,
        timeout: float = 60.0,
        connect_timeout: float = 10.0,
        max_retries: int = 3,
    ) -> None:
        self.config = config
        self._model = Model(
            client_name=model.client_name,
            name=model.name,
            max_input_tokens=model.max_input_tokens,
            max_output_tokens=model.max_output_tokens,
            extra_fields=dict(model.extra_fields),
        )
        extra = config.extra or ExtraConfig()
        self._timeout = timeout
        self._connect_timeout = extra.connect_timeout or connect_timeout
        self._max_retries = max(1, extra.max_retries if extra.max_retries is not None else max_retries)
        self._proxy = extra.proxy

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def resolve(cls, config: BaseClientConfig, model: Model, **transport: Any) -> "Client":
        """Validate *config* for this vendor and build a client bound to *model*.

        Raises:
            ConfigError: The config belongs to another vendor or a mandatory
                field is missing from both the config and the environment.
        """
        if not isinstance(config, cls.config_class) or config.type != cls.kind:
            raise ConfigError(
                f"client '{config.client_name}' has type '{config.type}', expected '{cls.kind}'",
                provider=config.client_name,
            )
        for field in cls.required_fields:
            if not config.get(field):
                raise ConfigError(
                    f"client '{config.client_name}' is missing '{field}' "
                    f"(set it in the config file or via {config.env_prefix()}_{field.upper()})",
                    provider=config.client_name,
                )
        return cls(config, model, **transport)

    @classmethod
    def list_models(cls, config: BaseClientConfig) -> list[Model]:
        """Models offered by *config*: its own list, else the vendor defaults."""
        entries = config.models or list(cls.default_models)
        return [
            Model(
                client_name=config.client_name,
                name=entry.name,
                max_input_tokens=entry.max_input_tokens,
                max_output_tokens=entry.max_output_tokens,
                extra_fields=dict(entry.extra_fields),
            )
            for entry in entries
        ]

    # ------------------------------------------------------------------
    # Model access
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.config.client_name

    @property
    def model(self) -> Model:
        return self._model

    def set_max_output_tokens(self, max_output_tokens: int | None) -> None:
        self._model.set_max_output_tokens(max_output_tokens)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def build_client(self) -> httpx.AsyncClient:
        """Return a request-scoped HTTP client with this vendor's timeouts and proxy.

        Failed connection attempts are retried by the transport up to
        ``max_retries`` times; requests already sent are never replayed here.
        """
        timeout = httpx.Timeout(self._timeout, connect=self._connect_timeout)
        transport = httpx.AsyncHTTPTransport(retries=self._max_retries, proxy=self._proxy)
        return httpx.AsyncClient(timeout=timeout, transport=transport)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(
        self, http_client: httpx.AsyncClient, data: SendData
    ) -> tuple[str, CompletionDetails]:
        """Perform one buffered round trip and return ``(text, details)``.

        Raises:
            InvalidRequestError: Sampling parameters out of range for this
                vendor, prompt too large, or the vendor rejected the request.
            AuthError, RateLimitError, TimeoutError, ProviderUnavailableError:
                Mapped from the vendor's HTTP status or transport failures.
            ProtocolError: The vendor's response could not be parsed.
        """
        self.validate(data)
        log = _log.bind(client=self.name, model=self._model.name, stream=False)
        start_time = time.monotonic()

        with _tracer.start_as_current_span("llm.send") as span:
            self._set_span_attributes(span, data, stream=False)
            log.info("llm_request_start")
            try:
                text, details = await self._with_retries(
                    lambda: self._guarded(self._send(http_client, data))
                )
            except ProviderError as exc:
                span.record_exception(exc)
                span.set_status(StatusCode.ERROR, exc.message)
                log.error("llm_request_error", error_type=type(exc).__name__, error=exc.message)
                raise
            finally:
                duration_ms = round((time.monotonic() - start_time) * 1000, 2)
                log.info("llm_request_complete", duration_ms=duration_ms)

            self._set_usage_attributes(span, details)
            return text, details

    async def send_streaming(
        self, http_client: httpx.AsyncClient, handler: SseHandler, data: SendData
    ) -> None:
        """Stream a completion into *handler*.

        Returns once the upstream stream closes; the handler then holds the
        terminal ``done`` event unless the abort signal was set, in which
        case reading stops early and nothing further is emitted.  Streams are
        never retried.
        """
        self.validate(data)
        log = _log.bind(client=self.name, model=self._model.name, stream=True)
        start_time = time.monotonic()

        with _tracer.start_as_current_span("llm.send_streaming") as span:
            self._set_span_attributes(span, data, stream=True)
            log.info("llm_request_start")
            try:
                await self._guarded(self._send_streaming(http_client, handler, data))
            except ProviderError as exc:
                span.record_exception(exc)
                span.set_status(StatusCode.ERROR, exc.message)
                log.error("llm_request_error", error_type=type(exc).__name__, error=exc.message)
                raise
            finally:
                duration_ms = round((time.monotonic() - start_time) * 1000, 2)
                log.info(
                    "llm_request_complete",
                    duration_ms=duration_ms,
                    aborted=handler.abort.aborted(),
                )

            if handler.abort.aborted():
                return
            handler.done()
            self._set_usage_attributes(span, handler.details)

    def validate(self, data: SendData) -> None:
        """Check sampling parameters and prompt size against this vendor's limits."""
        for label, value, (low, high) in (
            ("temperature", data.temperature, self.temperature_range),
            ("top_p", data.top_p, self.top_p_range),
        ):
            if value is not None and not low <= value <= high:
                raise InvalidRequestError(
                    f"{label} must be in [{low}, {high}] for {self.kind}, got {value}",
                    provider=self.name,
                )

        limit = self._model.max_input_tokens
        if limit and count_tokens(data.messages, self._model.name) > limit:
            raise InvalidRequestError("Exceed max input tokens limit", provider=self.name)

    # ------------------------------------------------------------------
    # Wire hooks
    # ------------------------------------------------------------------

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        raise NotImplementedError

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        raise NotImplementedError

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        raise NotImplementedError

    def extract_error(self, data: Any) -> str | None:
        """Pull the human-readable message out of a vendor error body."""
        if not isinstance(data, dict):
            return None
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("message") or error.get("msg")
        if isinstance(error, str):
            return error
        message = data.get("message")
        return message if isinstance(message, str) else None

    # ------------------------------------------------------------------
    # Shared request flow
    # ------------------------------------------------------------------

    async def _send(
        self, http_client: httpx.AsyncClient, data: SendData
    ) -> tuple[str, CompletionDetails]:
        request = await self.build_request(http_client, data, stream=False)
        response = await http_client.send(request)
        await self.check_response(response)
        return self.parse_response(response)

    async def _send_streaming(
        self, http_client: httpx.AsyncClient, handler: SseHandler, data: SendData
    ) -> None:
        request = await self.build_request(http_client, data, stream=True)
        response = await http_client.send(request, stream=True)
        try:
            await self.check_response(response)
            await self.parse_stream(response, handler)
        finally:
            await response.aclose()

    async def check_response(self, response: httpx.Response) -> None:
        """Raise the mapped :class:`ProviderError` for a non-2xx *response*."""
        if response.is_success:
            return
        await response.aread()
        raise self.status_error(response)

    def status_error(self, response: httpx.Response) -> ProviderError:
        status = response.status_code
        try:
            body: Any = response.json()
        except ValueError:
            body = None
        message = self.extract_error(body) or response.text.strip() or f"HTTP {status}"

        if status in (401, 403):
            return AuthError(message, provider=self.name)
        if status == 429:
            retry_after = response.headers.get("retry-after")
            return RateLimitError(
                message,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                provider=self.name,
            )
        if status in (408, 504):
            return TimeoutError(message, provider=self.name)
        if status >= 500:
            return ProviderUnavailableError(message, provider=self.name)
        return InvalidRequestError(message, provider=self.name)

    def json_body(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ProtocolError(
                f"Invalid JSON response: {response.text[:200]}", provider=self.name
            ) from exc

    def with_extra_fields(self, body: dict[str, Any]) -> dict[str, Any]:
        """Merge the bound model's ``extra_fields`` into a vendor request body."""
        if self._model.extra_fields:
            body.update(self._model.extra_fields)
        return body

    async def _guarded(self, call: Awaitable[T]) -> T:
        """Await *call*, mapping transport and parsing failures to gateway errors."""
        try:
            return await call
        except ProviderError:
            raise
        except httpx.TimeoutException as exc:
            raise TimeoutError(
                f"Request to {self.name} timed out: {exc}", provider=self.name, original_error=exc
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                f"{self.name} is unavailable: {exc}", provider=self.name, original_error=exc
            ) from exc
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProtocolError(
                f"Unexpected response from {self.name}: {exc!r}",
                provider=self.name,
                original_error=exc,
            ) from exc

    async def _with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run *call* with exponential-backoff retry on transient failures only."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            retry=retry_if_exception_type((RateLimitError, TimeoutError, ProviderUnavailableError)),
            wait=wait_exponential(multiplier=1, min=1, max=20),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                return await call()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def _set_span_attributes(self, span: Any, data: SendData, stream: bool) -> None:
        span.set_attribute("gen_ai.system", self.kind)
        span.set_attribute("gen_ai.request.model", self._model.name)
        span.set_attribute("llm.stream", stream)
        if data.temperature is not None:
            span.set_attribute("gen_ai.request.temperature", data.temperature)
        if data.top_p is not None:
            span.set_attribute("gen_ai.request.top_p", data.top_p)
        if self._model.max_output_tokens is not None:
            span.set_attribute("gen_ai.request.max_tokens", self._model.max_output_tokens)

    def _set_usage_attributes(self, span: Any, details: CompletionDetails) -> None:
        if details.input_tokens is not None:
            span.set_attribute("gen_ai.usage.input_tokens", details.input_tokens)
        if details.output_tokens is not None:
            span.set_attribute("gen_ai.usage.output_tokens", details.output_tokens)
