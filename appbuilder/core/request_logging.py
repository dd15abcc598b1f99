"""
Request logging middleware.
One structured line per request with timing; never logs bodies.

Artifact downloads and synchronous conversions can take minutes, so the
duration is measured around the whole downstream call, failures included.
"""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from appbuilder.core.metrics import metrics
from appbuilder.core.request_context import set_request_id

logger = logging.getLogger("appbuilder.request")

# Polled by probes and scrapers; counted but not logged
QUIET_PATHS = frozenset({"/health", "/metrics"})


def _count(status_code: int) -> None:
    metrics.inc("requests_total")
    status_class = status_code // 100
    if status_class in (2, 4, 5):
        metrics.inc(f"requests_{status_class}xx")


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns X-Request-Id, times the request, updates metrics and logs it."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = set_request_id(request.headers.get("x-request-id"))
        path = request.url.path
        started = time.perf_counter()

        try:
            response: Response = await call_next(request)
        except Exception:
            _count(500)
            logger.exception(
                "request_failed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                },
            )
            raise

        response.headers["X-Request-Id"] = request_id
        _count(response.status_code)

        if path not in QUIET_PATHS:
            level = logging.WARNING if response.status_code >= 500 else logging.INFO
            logger.log(
                level,
                "request",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                    "client_ip": _client_ip(request),
                },
            )

        return response
