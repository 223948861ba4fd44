"""
SQLAlchemy models for build jobs, the job queue and the dependency cache index.
"""
from sqlalchemy import Boolean, Column, Float, Index, Integer, Text

from app.db.database import Base


class BuildJob(Base):
    """SQLite model for build jobs."""
    __tablename__ = "build_jobs"

    id = Column(Text, primary_key=True, index=True)
    status = Column(Text, nullable=False, index=True)
    created_at = Column(Text, nullable=False, index=True)  # ISO timestamp
    started_at = Column(Text, nullable=True)
    completed_at = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    build_command = Column(Text, nullable=False)
    install_dependencies = Column(Boolean, nullable=False, default=True)
    dependency_fingerprint = Column(Text, nullable=False, index=True)
    package_manager = Column(Text, nullable=True)  # npm, yarn, pnpm
    cache_hit = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)

    # Artifact columns (set only once the job completes)
    artifact_path = Column(Text, nullable=True)
    artifact_size_bytes = Column(Integer, nullable=True)
    artifact_sha256 = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_build_jobs_status_created", "status", "created_at"),
    )


class QueueItem(Base):
    """Durable queue row; one per job id."""
    __tablename__ = "build_queue"

    job_id = Column(Text, primary_key=True)
    payload = Column(Text, nullable=True)  # JSON; dropped on ack
    state = Column(Text, nullable=False, default="ready", index=True)  # ready, claimed (acked rows are deleted)
    attempts = Column(Integer, nullable=False, default=0)
    claimed_by = Column(Text, nullable=True)
    lease_expires_at = Column(Float, nullable=True)  # Unix timestamp
    enqueued_at = Column(Float, nullable=False, index=True)  # Unix timestamp

    __table_args__ = (
        Index("ix_build_queue_state_enqueued", "state", "enqueued_at"),
    )


class CacheEntry(Base):
    """Index row for a cached node_modules tree."""
    __tablename__ = "cache_entries"

    fingerprint = Column(Text, primary_key=True)
    path = Column(Text, nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)  # Unix timestamp
    last_used_at = Column(Float, nullable=False, index=True)  # Unix timestamp
    use_seq = Column(Integer, nullable=False, default=0)  # tie-break for equal timestamps


class CacheSettings(Base):
    """Runtime-adjustable cache limits (single row, id=1)."""
    __tablename__ = "cache_settings"

    id = Column(Integer, primary_key=True)
    max_entries = Column(Integer, nullable=False)
    max_bytes = Column(Integer, nullable=False)
