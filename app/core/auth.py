"""
API key authentication.

Client keys come from BUILDER_API_KEYS (comma-separated); the admin key from
BUILDER_ADMIN_KEY. Keys are never logged; a short hash identifies the caller.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from app.core.config import get_config
from app.core.errors import AuthError

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    """Authentication context attached to requests."""
    api_key_id: str


def key_id(raw_key: str) -> str:
    """Non-reversible identifier for a key (safe to log)."""
    return hashlib.sha256(raw_key.encode()).hexdigest()[:12]


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode(), b.encode())


def authenticate_api_key(raw_key: str) -> Optional[AuthContext]:
    """
    Authenticate an API key and return the auth context.
    Returns None if authentication fails.
    """
    if not raw_key:
        return None

    matched = False
    # Check every configured key so timing does not reveal the match position
    for configured in get_config().api_keys:
        if constant_time_compare(raw_key, configured):
            matched = True

    if not matched:
        return None
    return AuthContext(api_key_id=key_id(raw_key))


def verify_admin_key(admin_key: Optional[str]) -> bool:
    """Verify the admin key."""
    configured_key = get_config().admin_key
    if not configured_key:
        logger.warning("BUILDER_ADMIN_KEY not configured - admin endpoints disabled")
        return False
    if not admin_key:
        return False
    return constant_time_compare(admin_key, configured_key)


def require_api_key(raw_key: str) -> AuthContext:
    """Authenticate a client key or raise AuthError (always 401)."""
    if not raw_key:
        raise AuthError("Missing API key")
    auth_context = authenticate_api_key(raw_key)
    if auth_context is None:
        raise AuthError("Invalid API key")
    return auth_context


def require_admin_key(admin_key: Optional[str]) -> None:
    """Raise AuthError unless admin_key is valid: 401 when missing, 403 when wrong."""
    if not admin_key:
        raise AuthError("Missing admin key")
    if not verify_admin_key(admin_key):
        raise AuthError("Invalid admin key", status_code=403)
