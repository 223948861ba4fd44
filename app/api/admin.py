"""
Admin API endpoints for build inspection and dependency cache management.
All endpoints require the X-Admin-Key header (the stream also accepts
?adminKey= since EventSource cannot set headers).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse

from app.api.builds import get_job_or_404, job_to_response, sse_response
from app.core.auth import require_admin_key
from app.core.cache import CacheEntry, dependency_cache
from app.core.config import get_config
from app.core.errors import AuthError, ValidationError
from app.core.job_queue import build_queue
from app.core.jobs import JobStatus, job_registry
from app.schemas.build import (
    AdminMetricsResponse,
    BuildListResponse,
    BuildStatusResponse,
    CacheEntryResponse,
    CacheListResponse,
    CacheSettingsRequest,
    CacheSettingsResponse,
)

logger = logging.getLogger(__name__)


def _check_admin_key(key: Optional[str]) -> None:
    try:
        require_admin_key(key)
    except AuthError as e:
        if e.status_code == 403:
            logger.warning("admin_auth_failed")
        raise HTTPException(status_code=e.status_code, detail=str(e))


def require_admin(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> None:
    """Dependency to require admin key."""
    _check_admin_key(x_admin_key)


router = APIRouter(prefix="/admin", tags=["admin"])


def _entry_to_response(entry: CacheEntry) -> CacheEntryResponse:
    return CacheEntryResponse(
        fingerprint=entry.fingerprint,
        size_bytes=entry.size_bytes,
        created_at=entry.created_at.isoformat(),
        last_used_at=entry.last_used_at.isoformat(),
    )


# =============================================================================
# Builds
# =============================================================================

@router.get("/builds", response_model=BuildListResponse, dependencies=[Depends(require_admin)])
async def list_builds(
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    status: Optional[JobStatus] = Query(default=None),
) -> BuildListResponse:
    """List build jobs, most recent first."""
    jobs, total = job_registry.list_jobs(limit=limit, offset=offset, status=status)
    return BuildListResponse(
        builds=[job_to_response(j, include_logs=False) for j in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/builds/{job_id}", response_model=BuildStatusResponse, dependencies=[Depends(require_admin)])
async def get_build(job_id: str) -> BuildStatusResponse:
    """One build job including its log."""
    return job_to_response(get_job_or_404(job_id))


@router.get("/builds/{job_id}/stream")
async def stream_build(
    job_id: str,
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    admin_key: Optional[str] = Query(default=None, alias="adminKey"),
) -> StreamingResponse:
    """Live build log as server-sent events."""
    _check_admin_key(x_admin_key or admin_key)
    get_job_or_404(job_id)
    return sse_response(job_id)


# =============================================================================
# Dependency cache
# =============================================================================

@router.get("/cache", response_model=CacheListResponse, dependencies=[Depends(require_admin)])
async def get_cache() -> CacheListResponse:
    """Cache entries (most recently used first), limits and total size."""
    limits = dependency_cache.get_limits()
    return CacheListResponse(
        entries=[_entry_to_response(e) for e in dependency_cache.entries()],
        settings=CacheSettingsResponse(max_entries=limits.max_entries, max_bytes=limits.max_bytes),
        total_bytes=dependency_cache.total_bytes(),
    )


@router.post("/cache/clear", dependencies=[Depends(require_admin)])
async def clear_cache() -> dict:
    """Remove every cache entry."""
    deleted = dependency_cache.clear()
    return {"status": "ok", "deleted": deleted}


@router.post("/cache/settings", dependencies=[Depends(require_admin)])
async def update_cache_settings(request: CacheSettingsRequest) -> dict:
    """Change cache limits; entries beyond the new limits are evicted at once."""
    try:
        limits = dependency_cache.set_limits(
            max_entries=request.max_entries,
            max_bytes=request.max_bytes,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {
        "status": "ok",
        "settings": {"max_entries": limits.max_entries, "max_bytes": limits.max_bytes},
    }


@router.delete("/cache/{fingerprint}", dependencies=[Depends(require_admin)])
async def remove_cache_entry(fingerprint: str) -> dict:
    """Remove one cache entry."""
    if not dependency_cache.remove(fingerprint):
        raise HTTPException(status_code=404, detail="Cache entry not found")
    return {"status": "ok", "fingerprint": fingerprint}


# =============================================================================
# Diagnostics
# =============================================================================

@router.get("/metrics", response_model=AdminMetricsResponse, dependencies=[Depends(require_admin)])
async def admin_metrics() -> AdminMetricsResponse:
    """Queue and job counts plus cache totals."""
    job_counts = dict(build_queue.stats())
    job_counts.update(job_registry.status_counts())
    return AdminMetricsResponse(
        job_counts=job_counts,
        total_builds=job_registry.count(),
        cache_entries=len(dependency_cache.entries()),
        total_cache_bytes=dependency_cache.total_bytes(),
    )


@router.get("/config", dependencies=[Depends(require_admin)])
async def admin_config() -> dict:
    """Effective configuration (secrets omitted)."""
    return get_config().public_view()
