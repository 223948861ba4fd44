"""
Request logging middleware.
Logs structured request/response info with timing.
NEVER logs: API keys, request bodies (submitted files), sensitive headers.
"""
import logging
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.metrics import metrics
from app.core.request_context import set_request_id

logger = logging.getLogger("builder.request")

# Quiet paths polled by load balancers and scrapers
QUIET_PATHS = frozenset(["/health", "/metrics"])

_BUILD_PATH = re.compile(r"^/(?:admin/)?builds/([A-Za-z0-9_-]+)")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    - Sets request_id (reusing a well-formed incoming X-Request-Id)
    - Logs request/response with timing
    - Adds X-Request-Id header
    - Updates metrics
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = set_request_id(request.headers.get("x-request-id"))

        # Get client IP (handle proxied requests)
        client_ip = request.client.host if request.client else "unknown"
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()

        start_time = time.perf_counter()
        response: Response = await call_next(request)
        # Streaming responses (SSE, zip) are timed to first byte
        duration_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers["X-Request-Id"] = request_id

        metrics.inc("requests_total")
        status_class = response.status_code // 100
        if status_class == 2:
            metrics.inc("requests_2xx")
        elif status_class == 4:
            metrics.inc("requests_4xx")
        elif status_class == 5:
            metrics.inc("requests_5xx")

        path = request.url.path
        if path not in QUIET_PATHS:
            extra = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "client_ip": client_ip,
            }
            match = _BUILD_PATH.match(path)
            if match:
                extra["job_id"] = match.group(1)
            logger.info("request", extra=extra)

        return response
