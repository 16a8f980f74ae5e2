"""
Application Middleware and Error Rendering for the Livestream Engagement API.

This module defines the FastAPI middleware and exception handlers that handle
cross-cutting concerns for every request: correlation, error rendering and
performance monitoring.

Key Components:
- `CorrelationMiddleware`: Assigns a correlation ID to every incoming request,
  taken from `X-Correlation-ID` / `X-Request-ID` or freshly generated, and
  echoes it back in the response headers.
- `ErrorHandlingMiddleware`: Last line of defence. Anything that escaped the
  exception handlers is logged with its traceback and rendered as a generic
  500 response.
- `PerformanceMiddleware`: Logs the start and end of each request, adds a
  `X-Process-Time` header and warns about slow requests.
- `register_exception_handlers`: Installs the handlers that turn
  `LivestreamAPIException`, `HTTPException` and request validation failures
  into the standard error body.

Error body:
    {"error": {"type", "code", "message", "details", "correlation_id"}}

Architectural Design:
- Layered Processing Pipeline: `CorrelationMiddleware` is added last so it runs
  first, making the correlation ID available to everything after it.
- Starlette's `BaseHTTPMiddleware`: All middleware build on it.
"""

import os
import time
import uuid
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .exceptions import LivestreamAPIException, to_http_exception
from .logging_config import get_logger, set_correlation_id

logger = get_logger("core.middleware")

DEFAULT_SLOW_REQUEST_SECONDS = 1.0


def _correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


def create_error_response(
    error_type: str,
    error_code: str,
    message: str,
    status_code: int = 400,
    correlation_id: str = None,
    details: Dict[str, Any] = None,
    headers: Dict[str, str] = None,
) -> JSONResponse:
    """Create standardized error response"""

    error_data = {
        "error": {
            "type": error_type,
            "code": error_code,
            "message": message,
            "details": details or {},
            "correlation_id": correlation_id,
        }
    }
    return JSONResponse(status_code=status_code, content=error_data, headers=headers)


async def livestream_api_exception_handler(
    request: Request, exc: LivestreamAPIException
) -> JSONResponse:
    http_exc = to_http_exception(exc)
    log = logger.error if http_exc.status_code >= 500 else logger.warning
    log(
        f"Application error: {exc.message}",
        extra={
            "error_type": type(exc).__name__,
            "error_code": exc.error_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return create_error_response(
        type(exc).__name__,
        exc.error_code,
        exc.message,
        status_code=http_exc.status_code,
        correlation_id=_correlation_id(request),
        details=exc.details,
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    logger.warning(
        f"HTTP exception: {exc.status_code} - {exc.detail}",
        extra={
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return create_error_response(
        "HTTPException",
        f"HTTP_{exc.status_code}",
        str(exc.detail),
        status_code=exc.status_code,
        correlation_id=_correlation_id(request),
        headers=getattr(exc, "headers", None),
    )


async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "path", "query"))
    logger.warning(
        f"Request validation failed: {first.get('msg', 'invalid request')}",
        extra={"path": request.url.path, "method": request.method, "field": field},
    )
    return create_error_response(
        "ValidationError",
        "VALIDATION_ERROR",
        f"Validation failed for field '{field}': {first.get('msg', 'invalid value')}",
        status_code=400,
        correlation_id=_correlation_id(request),
        details={"field": field, "errors": [str(e.get("msg")) for e in errors]},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LivestreamAPIException, livestream_api_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation IDs to requests"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = (
            request.headers.get("X-Correlation-ID")
            or request.headers.get("X-Request-ID")
            or str(uuid.uuid4())
        )

        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Renders exceptions that no exception handler claimed"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except LivestreamAPIException as e:
            return await livestream_api_exception_handler(request, e)

        except HTTPException as e:
            return await http_exception_handler(request, e)

        except Exception as e:
            logger.error(
                f"Unexpected error: {str(e)}",
                extra={
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                },
                exc_info=True,
            )
            return create_error_response(
                "InternalServerError",
                "INTERNAL_ERROR",
                "An unexpected error occurred",
                status_code=500,
                correlation_id=_correlation_id(request),
            )


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Middleware for performance monitoring and logging"""

    def __init__(self, app: ASGIApp, slow_request_seconds: float = None):
        super().__init__(app)
        if slow_request_seconds is None:
            slow_request_seconds = float(
                os.getenv("SLOW_REQUEST_SECONDS", DEFAULT_SLOW_REQUEST_SECONDS)
            )
        self.slow_request_seconds = slow_request_seconds

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        logger.debug(
            f"Request started: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "query_params": dict(request.query_params),
                "client_ip": request.client.host if request.client else None,
            },
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        process_time_ms = round(process_time * 1000, 2)
        response.headers["X-Process-Time"] = str(process_time_ms)

        logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": process_time_ms,
            },
        )

        if process_time > self.slow_request_seconds:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "process_time_ms": process_time_ms,
                    "threshold_exceeded": True,
                },
            )

        return response
