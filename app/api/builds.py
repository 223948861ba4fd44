"""
Build API routes.

Endpoints:
- POST /build - Submit a project (202 + job id, or wait for the zip)
- GET /builds/{job_id} - Job status, fingerprint, artifact ref, log
- GET /builds/{job_id}/logs - Accumulated build log
- GET /builds/{job_id}/stream - Server-sent events: history, then live tail
- GET /builds/{job_id}/artifact - Download the zip (409 until completed)

All endpoints require an API key (enforced by APIKeyMiddleware).
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from app.core.artifact_store import artifact_store
from app.core.build_logs import log_broadcaster
from app.core.config import get_config
from app.core.jobs import BuildJob, JobRegistry, JobStatus, job_registry
from app.core.submission import submit_build
from app.schemas.build import (
    BuildLogsResponse,
    BuildRequest,
    BuildStatusResponse,
    BuildSubmitResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["builds"])

# Seconds between checks for a finished build while a stream is idle
STREAM_POLL_S = 1.0

# Sleep between polls of an idle stream
STREAM_IDLE_S = 0.1

# Seconds between status checks while a request waits for completion
WAIT_POLL_S = 0.25


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def job_to_response(job: BuildJob, include_logs: bool = True) -> BuildStatusResponse:
    """Client view of a job."""
    return BuildStatusResponse(
        id=job.id,
        status=job.status.value,
        created_at=job.created_at.isoformat(),
        started_at=_iso(job.started_at),
        completed_at=_iso(job.completed_at),
        duration_ms=job.duration_ms,
        build_command=job.build_command,
        install_dependencies=job.install_dependencies,
        dependency_fingerprint=job.dependency_fingerprint,
        package_manager=job.package_manager,
        cache_hit=job.cache_hit,
        attempts=job.attempts,
        error=job.error,
        artifact=job.artifact_ref,
        artifact_size_bytes=job.artifact_size_bytes,
        artifact_sha256=job.artifact_sha256,
        logs=log_broadcaster.read(job.id) if include_logs else None,
    )


def get_job_or_404(job_id: str) -> BuildJob:
    job = job_registry.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def artifact_response(job: BuildJob) -> FileResponse:
    """Zip download for a completed job."""
    if job.status != JobStatus.COMPLETED:
        raise HTTPException(
            status_code=409,
            detail=f"Artifact not available: job is {job.status.value}",
        )
    if not job.artifact_path:
        raise HTTPException(status_code=404, detail="Artifact not found")

    path = artifact_store.artifact_path(job.id)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Artifact file not found")

    # Verify integrity
    if job.artifact_sha256 and not artifact_store.verify_artifact(job.id, job.artifact_sha256):
        logger.error(f"artifact_integrity_failed job_id={job.id}")
        raise HTTPException(status_code=500, detail="Artifact integrity check failed")

    return FileResponse(
        path,
        media_type="application/zip",
        filename=f"{job.id}.zip",
        headers={"X-Artifact-SHA256": job.artifact_sha256 or ""},
    )


async def sse_log_events(job_id: str) -> AsyncIterator[str]:
    """
    Server-sent events for one build log.
    History first, then live chunks, then a final `end` event with the status.

    The subscription is polled without blocking and the stream sleeps on the
    event loop between polls, so an open stream holds no threadpool worker.
    """
    sub = log_broadcaster.subscribe(job_id)
    try:
        if sub.history:
            yield f"data: {json.dumps({'logs': sub.history})}\n\n"

        loop = asyncio.get_running_loop()
        next_status_check = 0.0
        while True:
            finished = False
            if loop.time() >= next_status_check:
                finished = await run_in_threadpool(job_registry.is_terminal, job_id)
                next_status_check = loop.time() + STREAM_POLL_S
            texts, done = sub.poll(is_finished=lambda: finished)
            for chunk in texts:
                yield f"data: {json.dumps({'logs': chunk})}\n\n"
            if done:
                break
            if not texts:
                await asyncio.sleep(STREAM_IDLE_S)

        if sub.overflowed:
            yield "event: overflow\ndata: {}\n\n"
            return

        job = await run_in_threadpool(job_registry.get, job_id)
        status = job.status.value if job else "unknown"
        yield f"event: end\ndata: {json.dumps({'status': status})}\n\n"
    finally:
        log_broadcaster.unsubscribe(sub)


async def wait_for_terminal(
    job_id: str,
    timeout: float,
    registry: Optional[JobRegistry] = None,
    poll_s: float = WAIT_POLL_S,
) -> Optional[BuildJob]:
    """
    Wait until the job is terminal or timeout elapses, sleeping on the event loop.
    Returns the latest snapshot (None if the job does not exist). Re-reading the
    DB also sees workers running in other processes.
    """
    registry = registry or job_registry
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await run_in_threadpool(registry.get, job_id)
        if job is None or job.status.is_terminal:
            return job
        remaining = deadline - loop.time()
        if remaining <= 0:
            return job
        await asyncio.sleep(min(poll_s, remaining))


def sse_response(job_id: str) -> StreamingResponse:
    return StreamingResponse(
        sse_log_events(job_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# Routes
# =============================================================================

@router.post("/build", status_code=202, response_model=BuildSubmitResponse)
async def create_build(request: BuildRequest):
    """
    Submit a project for building.

    Returns 202 with the job id immediately. With `waitForCompletion` the
    request is held (up to BUILDER_WAIT_TIMEOUT_S):
    - completed: the zip is returned
    - failed: 200 with status, error and log
    - still running at the deadline: 202 with the job id
    """
    job = await run_in_threadpool(submit_build, request)

    if not request.wait_for_completion:
        return BuildSubmitResponse(
            id=job.id,
            status=job.status.value,
            artifact=None,
            status_url=f"/builds/{job.id}",
            logs_url=f"/builds/{job.id}/logs",
        )

    timeout = get_config().wait_timeout_s
    job = await wait_for_terminal(job.id, timeout)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    if job.status == JobStatus.COMPLETED:
        return artifact_response(job)

    if job.status == JobStatus.FAILED:
        return JSONResponse(
            status_code=200,
            content={
                "id": job.id,
                "status": job.status.value,
                "error": job.error,
                "logs": log_broadcaster.read(job.id),
            },
        )

    logger.info(f"build_wait_timeout job_id={job.id} status={job.status.value}")
    return JSONResponse(
        status_code=202,
        content={"id": job.id, "status": job.status.value, "artifact": None},
    )


@router.get("/builds/{job_id}", response_model=BuildStatusResponse)
async def get_build(job_id: str) -> BuildStatusResponse:
    """Status, timestamps, dependency fingerprint, artifact reference and log."""
    job = get_job_or_404(job_id)
    return job_to_response(job)


@router.get("/builds/{job_id}/logs", response_model=BuildLogsResponse)
async def get_build_logs(job_id: str) -> BuildLogsResponse:
    """Full accumulated build log."""
    get_job_or_404(job_id)
    return BuildLogsResponse(id=job_id, logs=log_broadcaster.read(job_id))


@router.get("/builds/{job_id}/stream")
async def stream_build_logs(job_id: str) -> StreamingResponse:
    """Live build log as server-sent events until the build finishes."""
    get_job_or_404(job_id)
    return sse_response(job_id)


@router.get("/builds/{job_id}/artifact")
async def download_artifact(job_id: str) -> FileResponse:
    """Download the packaged build output."""
    job = get_job_or_404(job_id)
    return artifact_response(job)
