"""
Request context for tracking request_id across async calls.
"""
import re
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable for request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Accepted shape for a caller-supplied X-Request-Id
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def get_request_id() -> str:
    """Get the current request ID ("" outside a request)."""
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request ID. A missing or malformed id is replaced by a new uuid."""
    if not request_id or not _REQUEST_ID_PATTERN.match(request_id):
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id
