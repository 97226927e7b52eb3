"""
FastAPI Middleware

- Correlation ID per request
- Request logging with secrets redacted from the query string
- Sliding-window rate limit on webhook endpoints
- AppException / unexpected exception handlers
"""
import time
from collections import defaultdict
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

# Query parameters never written to logs (Meta verification handshake)
_REDACTED_QUERY_PARAMS = frozenset({"hub.verify_token"})


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def _safe_query_params(request: Request) -> dict[str, str]:
    return {
        key: "***" if key in _REDACTED_QUERY_PARAMS else value
        for key, value in request.query_params.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and responses"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path

        logger.info(
            f"Request started: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "query_params": _safe_query_params(request),
                "client_host": request.client.host if request.client else None,
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
                    "duration_seconds": round(time.time() - start_time, 4),
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
                "duration_seconds": round(time.time() - start_time, 4),
            }
        )
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limit per client IP on ``/webhook`` paths.

    Returns 429 with ``Retry-After`` once ``max_requests`` are seen inside
    ``window_seconds``.
    """

    def __init__(self, app: FastAPI, *, max_requests: int = 100, window_seconds: int = 60) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _cleanup_window(self, ip: str, now: float) -> None:
        cutoff = now - self._window_seconds
        recent = [ts for ts in self._requests[ip] if ts >= cutoff]
        if recent:
            self._requests[ip] = recent
        else:
            # drop empty keys so one-off IPs do not accumulate
            del self._requests[ip]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if "/webhook" not in path:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
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
                        "details": {},
                    }
                },
                headers={
                    "Retry-After": str(self._window_seconds),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        self._requests[client_ip].append(now)
        return await call_next(request)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
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


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
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


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    # Last added is outermost: CorrelationId -> RequestLogging -> RateLimit -> app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
