"""OpenAI-style error envelopes and the exception handlers that produce them.

Every error response body has the shape
``{"error": {"message": ..., "type": "invalid_request_error"}}``.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from llmbridge.providers import (
    AuthError,
    ConfigError,
    ProviderError,
    RateLimitError,
)

_log = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# HTTP status codes for gateway error types; anything else, upstream
# timeouts and outages included, is a 400
# ---------------------------------------------------------------------------
_ERROR_STATUS: dict[type[ProviderError], int] = {
    ConfigError: 400,
    RateLimitError: 429,
    AuthError: 401,
}

_NOT_FOUND_MESSAGE = "The requested endpoint was not found."


def status_for(exc: ProviderError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 400


def error_body(message: str) -> dict[str, dict[str, str]]:
    return {"error": {"message": message, "type": "invalid_request_error"}}


def error_response(
    message: str, status_code: int = 400, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(message), headers=headers)


def provider_error_response(
    exc: ProviderError, headers: dict[str, str] | None = None
) -> JSONResponse:
    error_headers = dict(headers or {})
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        error_headers["Retry-After"] = str(int(exc.retry_after))
    return error_response(exc.message, status_for(exc), error_headers)


async def _http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Only the chat endpoint exists, so a wrong method is an unknown endpoint too.
    if exc.status_code in (404, 405):
        status, message, headers = 404, _NOT_FOUND_MESSAGE, None
    else:
        status, message = exc.status_code, str(exc.detail)
        headers = getattr(exc, "headers", None)
    _log.error(
        "http_request",
        method=request.method,
        path=request.url.path,
        status=status,
        error=message,
    )
    return error_response(message, status, headers)


async def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    message = f"Invalid request body, {details}"
    _log.error(
        "http_request",
        method=request.method,
        path=request.url.path,
        status=400,
        error=message,
    )
    return error_response(message, 400)


async def _provider_exception_handler(request: Request, exc: ProviderError) -> JSONResponse:
    status = status_for(exc)
    _log.error(
        "http_request",
        method=request.method,
        path=request.url.path,
        status=status,
        error_type=type(exc).__name__,
        error=exc.message,
    )
    return provider_error_response(exc)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(ProviderError, _provider_exception_handler)
