"""
API key authentication middleware.
Supports both X-API-Key header and Authorization: Bearer token.

PUBLIC ROUTES (no auth required):
- /health, /version - System endpoints
- /docs, /redoc, /openapi.json - API documentation
- /admin/* - Uses separate X-Admin-Key

PROTECTED ROUTES (API key required):
- /build, /builds/* - Build submission, status, logs, artifacts
- /metrics - Prometheus metrics
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.auth import AuthContext, require_api_key
from app.core.errors import AuthError

logger = logging.getLogger(__name__)

# Routes that don't require authentication
PUBLIC_PATHS = frozenset([
    "/health",
    "/version",
    "/docs",
    "/redoc",
    "/openapi.json",
])

# Route prefixes that don't require authentication
PUBLIC_PREFIXES = (
    "/admin/",      # Admin uses separate X-Admin-Key
)


def is_public_path(path: str) -> bool:
    """Check if a path is public (no API key required)."""
    if path in PUBLIC_PATHS:
        return True

    for prefix in PUBLIC_PREFIXES:
        if path.startswith(prefix):
            return True

    return False


def extract_api_key(request: Request) -> str:
    """API key from X-API-Key, falling back to Authorization: Bearer."""
    api_key = request.headers.get("X-API-Key")
    if not api_key:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            api_key = auth_header[7:]
    return api_key or ""


class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce API key on protected endpoints.
    Rejected requests never reach the routers, so nothing is enqueued.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if is_public_path(path):
            return await call_next(request)

        try:
            auth_context = require_api_key(extract_api_key(request))
        except AuthError as e:
            # Log failed auth attempt (don't include the key!)
            logger.warning(f"auth_failed path={path}")
            return JSONResponse(
                status_code=e.status_code,
                content={"detail": str(e)}
            )

        request.state.auth = auth_context
        request.state.api_key_id = auth_context.api_key_id

        return await call_next(request)


def get_auth_context(request: Request) -> AuthContext:
    """Get auth context from request. Call after middleware has run."""
    return getattr(request.state, "auth", None)
