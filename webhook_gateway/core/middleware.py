"""
FastAPI Middleware

Request/response middleware for the webhook gateway:
- Correlation ID per delivery (echoed as X-Correlation-ID and X-Request-ID)
- Request logging with provider delivery headers, signatures redacted
- Error rendering through AppException.to_dict
- Security headers for a JSON-only API
- Per-IP rate limiting of webhook deliveries
"""
import time
from bisect import bisect_left
from collections import defaultdict
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from webhook_gateway.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id,
    redact_headers,
)
from webhook_gateway.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)

# Provider headers worth logging to trace a delivery across retries
_DELIVERY_HEADERS = (
    "x-github-event",
    "x-github-delivery",
    "linear-delivery",
    "linear-event",
    "x-slack-retry-num",
    "x-slack-retry-reason",
    "x-hub-signature-256",
    "linear-signature",
    "x-slack-signature",
)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    One correlation ID per delivery.

    Taken from ``X-Correlation-ID`` (or ``X-Request-ID``) when the caller sent
    one, generated otherwise, and echoed back under both names.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        incoming = request.headers.get("X-Correlation-ID") or request.headers.get("X-Request-ID")
        correlation_id = set_correlation_id(incoming)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Request-ID"] = correlation_id
        return response


def _delivery_headers(request: Request) -> dict[str, str]:
    present = {
        name: request.headers[name]
        for name in _DELIVERY_HEADERS
        if name in request.headers
    }
    return redact_headers(present)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and responses"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start_time = time.monotonic()
        path = request.url.path

        logger.info(
            f"Request started: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "client_host": request.client.host if request.client else None,
                "delivery_headers": _delivery_headers(request),
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "duration_seconds": round(time.monotonic() - start_time, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        log_level = "info" if response.status_code < 400 else "warning"
        getattr(logger, log_level)(
            f"Request completed: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_seconds": round(time.monotonic() - start_time, 4),
            }
        )
        return response


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Response headers for a JSON-only API.

    The base set goes on every response. CSP and HSTS are added only outside
    DEBUG, where the gateway sits behind TLS.
    """

    BASE_HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
    }
    PRODUCTION_HEADERS = {
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    }

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._headers = dict(self.BASE_HEADERS)
        if not debug:
            self._headers.update(self.PRODUCTION_HEADERS)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)
        for name, value in self._headers.items():
            response.headers.setdefault(name, value)
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit per client IP on ``/webhook`` paths.

    Webhook responses carry ``RateLimit-Limit`` and ``RateLimit-Remaining``.
    Past the limit the gateway answers 429 with ``Retry-After`` and the
    delivery never reaches signature verification. Sits inside
    CorrelationIdMiddleware so a 429 still carries a correlation ID.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 100,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        # per IP, ascending monotonic arrival times
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _cleanup_window(self, ip: str, now: float) -> None:
        """Drop arrivals older than the window; forget IPs with none left"""
        timestamps = self._requests.get(ip)
        if timestamps is None:
            return
        del timestamps[:bisect_left(timestamps, now - self._window_seconds)]
        if not timestamps:
            del self._requests[ip]

    def _limit_headers(self, used: int) -> dict[str, str]:
        return {
            "RateLimit-Limit": str(self._max_requests),
            "RateLimit-Remaining": str(max(self._max_requests - used, 0)),
        }

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        path = request.url.path
        if "/webhook" not in path:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()
        self._cleanup_window(client_ip, now)

        used = len(self._requests.get(client_ip, ()))
        if used >= self._max_requests:
            logger.warning(
                "Webhook delivery rate limited",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                    "delivery_headers": _delivery_headers(request),
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "code": ErrorCode.RATE_LIMITED.value,
                        "message": "Too many webhook deliveries from this address",
                        "details": {"retry_after_seconds": self._window_seconds},
                    }
                },
                headers={
                    "Retry-After": str(self._window_seconds),
                    "X-Correlation-ID": get_correlation_id(),
                    **self._limit_headers(used),
                },
            )

        self._requests[client_ip].append(now)
        response = await call_next(request)
        response.headers.update(self._limit_headers(used + 1))
        return response

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()

        self._cleanup_window(client_ip, now)

        if len(self._requests.get(client_ip, [])) >= self._max_requests:
            logger.warning(
                "Rate limit exceeded for webhook",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "code": ErrorCode.RATE_LIMITED.value,
                        "message": "Too many requests. Please try again later.",
                        "details": {"retry_after_seconds": self._window_seconds},
                    }
                },
                headers={
                    "Retry-After": str(self._window_seconds),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        self._requests[client_ip].append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI, settings=None) -> None:
    """Setup all middleware for the application.

    Starlette wraps in reverse order of registration, so requests flow
    SecurityHeaders -> CorrelationId -> RequestLogging -> RateLimit -> app.
    """
    if settings is None:
        from webhook_gateway.core.config import settings

    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
