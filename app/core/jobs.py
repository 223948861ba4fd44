"""
SQLite-backed registry of build jobs and their lifecycle state.
Logs only job_id, status, duration - never file contents or secrets.

Status moves strictly forward:
    queued -> installing -> building -> completed
and any non-terminal status may move to failed. Terminal jobs are immutable.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from app.core.config import get_config
from app.core.errors import InvalidTransition
from app.core.metrics import metrics
from app.db.database import SessionLocal
from app.db.models import BuildJob as BuildJobModel

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Build job lifecycle status."""
    QUEUED = "queued"
    INSTALLING = "installing"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Position in the forward sequence; failed is reachable from any non-terminal state
_FORWARD_ORDER = {
    JobStatus.QUEUED: 0,
    JobStatus.INSTALLING: 1,
    JobStatus.BUILDING: 2,
    JobStatus.COMPLETED: 3,
}


def is_valid_transition(current: JobStatus, target: JobStatus) -> bool:
    """True if target directly follows current (or is failed from a non-terminal state)."""
    if current.is_terminal:
        return False
    if target == JobStatus.FAILED:
        return True
    return _FORWARD_ORDER[target] == _FORWARD_ORDER[current] + 1


@dataclass
class BuildJob:
    """Represents a build job (in-memory snapshot)."""
    id: str
    status: JobStatus
    created_at: datetime
    build_command: str
    install_dependencies: bool
    dependency_fingerprint: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    package_manager: Optional[str] = None
    cache_hit: bool = False
    attempts: int = 0
    error: Optional[str] = None
    artifact_path: Optional[str] = None
    artifact_size_bytes: Optional[int] = None
    artifact_sha256: Optional[str] = None

    @property
    def artifact_ref(self) -> Optional[str]:
        """Client-facing artifact reference (download route)."""
        if self.status == JobStatus.COMPLETED and self.artifact_path:
            return f"/builds/{self.id}/artifact"
        return None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _model_to_job(model: BuildJobModel) -> BuildJob:
    """Convert SQLAlchemy model to BuildJob dataclass."""
    return BuildJob(
        id=model.id,
        status=JobStatus(model.status),
        created_at=datetime.fromisoformat(model.created_at),
        build_command=model.build_command,
        install_dependencies=bool(model.install_dependencies),
        dependency_fingerprint=model.dependency_fingerprint,
        started_at=_parse_ts(model.started_at),
        completed_at=_parse_ts(model.completed_at),
        duration_ms=model.duration_ms,
        package_manager=model.package_manager,
        cache_hit=bool(model.cache_hit),
        attempts=model.attempts or 0,
        error=model.error,
        artifact_path=model.artifact_path,
        artifact_size_bytes=model.artifact_size_bytes,
        artifact_sha256=model.artifact_sha256,
    )


@dataclass
class ArtifactRecord:
    path: Path
    size_bytes: int
    sha256: str


class JobRegistry:
    """Ordered, capped record of build jobs."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        history_cap: Optional[int] = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self._history_cap = history_cap if history_cap is not None else get_config().job_history
        self._drop_hooks: list[Callable[[str], None]] = []

    def on_drop(self, hook: Callable[[str], None]) -> None:
        """Register a callback run for every job dropped by the history cap."""
        self._drop_hooks.append(hook)

    def _enforce_history_cap(self, db) -> list[str]:
        """Drop the oldest terminal jobs beyond the cap. Active jobs are kept."""
        total = db.query(BuildJobModel).count()
        excess = total - self._history_cap
        if excess <= 0:
            return []
        victims = (
            db.query(BuildJobModel)
            .filter(BuildJobModel.status.in_([JobStatus.COMPLETED.value, JobStatus.FAILED.value]))
            .order_by(BuildJobModel.created_at.asc())
            .limit(excess)
            .all()
        )
        dropped = [v.id for v in victims]
        for victim in victims:
            db.delete(victim)
        db.commit()
        if dropped:
            logger.info(f"job_history_trimmed dropped={len(dropped)}")
        return dropped

    def create(
        self,
        build_command: str,
        install_dependencies: bool,
        dependency_fingerprint: str,
    ) -> BuildJob:
        """Create a new queued job and return it."""
        job_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        db = self._session_factory()
        try:
            job_model = BuildJobModel(
                id=job_id,
                status=JobStatus.QUEUED.value,
                created_at=now.isoformat(),
                build_command=build_command,
                install_dependencies=install_dependencies,
                dependency_fingerprint=dependency_fingerprint,
                cache_hit=False,
                attempts=0,
            )
            db.add(job_model)
            db.commit()
            db.refresh(job_model)
            job = _model_to_job(job_model)
            dropped = self._enforce_history_cap(db)
        finally:
            db.close()

        self._run_drop_hooks(dropped)

        logger.info(f"job_created job_id={job_id} status={job.status.value}")
        metrics.inc("builds_submitted_total")
        return job

    def _run_drop_hooks(self, job_ids: list[str]) -> None:
        for dropped_id in job_ids:
            for hook in self._drop_hooks:
                try:
                    hook(dropped_id)
                except OSError as e:
                    logger.warning(f"job_drop_cleanup_failed job_id={dropped_id} error_type={type(e).__name__}")

    def discard(self, job_id: str) -> bool:
        """
        Delete a job that never reached a worker (submission rolled back).
        Only queued jobs can be discarded. Returns True if the row was deleted.
        """
        db = self._session_factory()
        try:
            deleted = (
                db.query(BuildJobModel)
                .filter(BuildJobModel.id == job_id, BuildJobModel.status == JobStatus.QUEUED.value)
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        if deleted:
            self._run_drop_hooks([job_id])
            logger.info(f"job_discarded job_id={job_id}")
        return bool(deleted)

    def get(self, job_id: str) -> Optional[BuildJob]:
        """Get a job by ID."""
        db = self._session_factory()
        try:
            job_model = db.get(BuildJobModel, job_id)
            if not job_model:
                return None
            return _model_to_job(job_model)
        finally:
            db.close()

    def list_jobs(
        self,
        limit: int = 20,
        offset: int = 0,
        status: Optional[JobStatus] = None,
    ) -> tuple[list[BuildJob], int]:
        """
        List jobs, most recent first.
        Returns (jobs, total count).
        """
        db = self._session_factory()
        try:
            query = db.query(BuildJobModel)
            if status is not None:
                query = query.filter(BuildJobModel.status == status.value)
            total = query.count()
            items = query.order_by(BuildJobModel.created_at.desc()).offset(offset).limit(limit).all()
            return [_model_to_job(m) for m in items], total
        finally:
            db.close()

    def count(self) -> int:
        db = self._session_factory()
        try:
            return db.query(BuildJobModel).count()
        finally:
            db.close()

    def status_counts(self) -> dict[str, int]:
        """Number of jobs per status (every status present, zero if none)."""
        db = self._session_factory()
        try:
            rows = (
                db.query(BuildJobModel.status, func.count(BuildJobModel.id))
                .group_by(BuildJobModel.status)
                .all()
            )
        finally:
            db.close()
        counts = {s.value: 0 for s in JobStatus}
        counts.update({status: n for status, n in rows})
        return counts

    def _mutate(self, job_id: str, mutate: Callable[[BuildJobModel], None]) -> BuildJob:
        db = self._session_factory()
        try:
            job_model = db.get(BuildJobModel, job_id)
            if not job_model:
                raise KeyError(job_id)
            if JobStatus(job_model.status).is_terminal:
                raise InvalidTransition(f"Job {job_id} is {job_model.status} and can no longer change")
            mutate(job_model)
            db.commit()
            db.refresh(job_model)
            return _model_to_job(job_model)
        finally:
            db.close()

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        artifact: Optional[ArtifactRecord] = None,
    ) -> BuildJob:
        """Move a job to the next status. Raises InvalidTransition otherwise."""

        def apply(job_model: BuildJobModel) -> None:
            current = JobStatus(job_model.status)
            if not is_valid_transition(current, status):
                raise InvalidTransition(f"Job {job_id}: {current.value} -> {status.value} not allowed")

            now = datetime.now(timezone.utc)
            job_model.status = status.value
            if status == JobStatus.INSTALLING:
                job_model.started_at = now.isoformat()
            elif status.is_terminal:
                job_model.completed_at = now.isoformat()
                if job_model.started_at:
                    started = datetime.fromisoformat(job_model.started_at)
                    job_model.duration_ms = int((now - started).total_seconds() * 1000)
                if error is not None:
                    job_model.error = error
                if artifact is not None and status == JobStatus.COMPLETED:
                    job_model.artifact_path = str(artifact.path)
                    job_model.artifact_size_bytes = artifact.size_bytes
                    job_model.artifact_sha256 = artifact.sha256

        job = self._mutate(job_id, apply)

        logger.info(
            f"job_updated job_id={job_id} status={status.value} "
            f"duration_ms={job.duration_ms}"
        )
        if status == JobStatus.COMPLETED:
            metrics.inc("builds_completed_total")
        elif status == JobStatus.FAILED:
            metrics.inc("builds_failed_total")
        return job

    def fail(self, job_id: str, error: str) -> BuildJob:
        return self.transition(job_id, JobStatus.FAILED, error=error)

    def complete(self, job_id: str, artifact: ArtifactRecord) -> BuildJob:
        return self.transition(job_id, JobStatus.COMPLETED, artifact=artifact)

    def mark_claimed(self, job_id: str) -> BuildJob:
        """Count a worker claim (redelivery counter). Terminal jobs are left alone."""
        job = self.get(job_id)
        if job is None or job.status.is_terminal:
            return job

        def apply(job_model: BuildJobModel) -> None:
            job_model.attempts = (job_model.attempts or 0) + 1

        return self._mutate(job_id, apply)

    def set_fingerprint(self, job_id: str, fingerprint: str) -> BuildJob:
        def apply(job_model: BuildJobModel) -> None:
            job_model.dependency_fingerprint = fingerprint

        return self._mutate(job_id, apply)

    def record_install(self, job_id: str, package_manager: Optional[str], cache_hit: bool) -> BuildJob:
        def apply(job_model: BuildJobModel) -> None:
            job_model.package_manager = package_manager
            job_model.cache_hit = cache_hit

        return self._mutate(job_id, apply)

    def is_terminal(self, job_id: str) -> bool:
        job = self.get(job_id)
        return job is None or job.status.is_terminal


# Global job registry instance
job_registry = JobRegistry()
