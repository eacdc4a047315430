# consult_dispatch/transport/middleware.py
"""
HTTP middleware mounted by the dispatch API.

- RequestContextMiddleware: request id, one access log line, per-route
  counters and latency, JSON 500 for anything that escapes a route.
- SecurityHeadersMiddleware: SecurityHeaders on every response.
"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match
from starlette.types import ASGIApp

from consult_dispatch.config import settings
from consult_dispatch.infra.logging_config import get_logger, LogContext
from consult_dispatch.infra.metrics import inc_counter, observe_histogram
from consult_dispatch.transport.security import SecurityHeaders, sanitize_error_message

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def route_template(request: Request) -> str:
    """Path template of the matched route ("/requests/{request_id}"), for low-cardinality labels."""
    app = request.scope.get("app")
    for route in getattr(app, "routes", []):
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return "unmatched"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag, time and log each request; turn escaped exceptions into a JSON 500."""

    def __init__(self, app: ASGIApp, log_requests: bool = True):
        super().__init__(app)
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        route = route_template(request)
        log_ctx = LogContext(logger, request_id=request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            log_ctx.error(
                f"Unhandled exception: {request.method} {route} {exc.__class__.__name__}: {exc}",
                exc_info=True,
            )
            inc_counter("http_unhandled_errors_total", route=route)
            response = JSONResponse(
                status_code=500,
                content={
                    "error": sanitize_error_message(exc, settings.is_production),
                    "request_id": request_id,
                },
            )

        elapsed = time.perf_counter() - started
        response.headers[REQUEST_ID_HEADER] = request_id
        inc_counter("http_requests_total", route=route, status=str(response.status_code))
        observe_histogram("http_request_seconds", elapsed, route=route)

        if self.log_requests:
            log_ctx.info(
                f"{request.method} {request.url.path} -> {response.status_code} ({elapsed * 1000:.1f}ms)",
                extra={
                    "method": request.method,
                    "route": route,
                    "status_code": response.status_code,
                    "duration_ms": round(elapsed * 1000, 2),
                },
            )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Apply SecurityHeaders to every response"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)
