"""Exception hierarchy for gateway and provider failures.

Every failure a provider client can produce is mapped to one of these typed
exceptions so the HTTP layer can pick a status code without inspecting raw
httpx or vendor internals.
"""


class ProviderError(Exception):
    """Base exception for all provider errors.

    Attributes:
        message: Human-readable error description, usually the vendor's own.
        provider: Client name (e.g. "openai", "claude").  ``None`` when the
            provider could not be determined.
        original_error: The upstream exception that caused this error, if any.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.message = message
        self.provider = provider
        self.original_error = original_error
        super().__init__(message)


class ConfigError(ProviderError):
    """Raised for missing credentials, invalid client config or unknown models.

    Always raised before any network call is attempted.
    """


class RateLimitError(ProviderError):
    """Raised when the provider returns HTTP 429 (rate limit exceeded).

    Attributes:
        retry_after: Seconds to wait before retrying, when the provider
            supplies a ``Retry-After`` header.  ``None`` if unavailable.
    """

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        provider: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, provider=provider, original_error=original_error)
        self.retry_after = retry_after


class AuthError(ProviderError):
    """Raised for authentication or authorisation failures (HTTP 401 / 403)."""


class TimeoutError(ProviderError):  # noqa: A001 – intentionally shadows the built-in
    """Raised when a provider request exceeds the configured timeout."""


class InvalidRequestError(ProviderError):
    """Raised for requests rejected as malformed or unsupported.

    Covers vendor HTTP 400 / 404 / 422 as well as local validation such as
    out-of-range sampling parameters or an oversized prompt.
    """


class ProviderUnavailableError(ProviderError):
    """Raised when the provider is down or unreachable (HTTP 5xx / network error)."""


class ProtocolError(ProviderError):
    """Raised when a streamed chunk or response body cannot be parsed."""
