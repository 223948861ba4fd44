"""
Build submission: turns a validated request into a queued job.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from app.core.build_logs import LogBroadcaster, log_broadcaster
from app.core.build_runner import default_manifest_bytes
from app.core.cache import MANIFEST_FILE, fingerprint_files
from app.core.config import get_config
from app.core.job_queue import BuildQueue, build_queue
from app.core.jobs import BuildJob, JobRegistry, job_registry
from app.schemas.build import BuildRequest

logger = logging.getLogger(__name__)


def submit_build(
    request: BuildRequest,
    registry: Optional[JobRegistry] = None,
    queue: Optional[BuildQueue] = None,
    logs: Optional[LogBroadcaster] = None,
) -> BuildJob:
    """
    Create a queued job for the submitted project and enqueue it.

    The dependency fingerprint is computed here from the submitted files so it
    is visible before any worker picks the job up; a project without a
    package.json is fingerprinted with the default manifest it will receive.
    """
    registry = registry or job_registry
    queue = queue or build_queue
    logs = logs or log_broadcaster

    files = {f.path: f.data() for f in request.files}
    if MANIFEST_FILE not in files:
        files[MANIFEST_FILE] = default_manifest_bytes()
    fingerprint = fingerprint_files(files)

    job = registry.create(
        build_command=request.build_command or get_config().default_build_command,
        install_dependencies=request.install_dependencies,
        dependency_fingerprint=fingerprint,
    )
    logs.append(job.id, f"{datetime.now(timezone.utc).isoformat()} [status] queued\n")

    try:
        queue.enqueue(job.id, {"files": [f.to_payload() for f in request.files]})
    except Exception:
        # A job nobody will ever claim must not outlive a failed submission
        logger.exception(f"build_enqueue_failed job_id={job.id}")
        registry.discard(job.id)
        raise

    logger.info(
        f"build_submitted job_id={job.id} files={len(request.files)} "
        f"install={request.install_dependencies} fingerprint={fingerprint[:16]}"
    )
    return job
