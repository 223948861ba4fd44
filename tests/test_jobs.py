"""
Tests for the job registry.

Tests cover:
- Forward-only status transitions
- Timestamps and duration
- History cap (oldest terminal jobs dropped with their logs/artifacts)
"""
import time

import pytest

from app.core.errors import InvalidTransition
from app.core.jobs import (
    ArtifactRecord,
    JobRegistry,
    JobStatus,
    is_valid_transition,
)


@pytest.fixture
def registry(components):
    return components.registry


def new_job(registry, **overrides):
    params = {
        "build_command": "npm run build",
        "install_dependencies": True,
        "dependency_fingerprint": "f" * 64,
    }
    params.update(overrides)
    return registry.create(**params)


class TestTransitions:
    """Status moves strictly forward; failed is reachable from any non-terminal state."""

    def test_valid_transition_table(self):
        assert is_valid_transition(JobStatus.QUEUED, JobStatus.INSTALLING)
        assert is_valid_transition(JobStatus.INSTALLING, JobStatus.BUILDING)
        assert is_valid_transition(JobStatus.BUILDING, JobStatus.COMPLETED)
        for status in (JobStatus.QUEUED, JobStatus.INSTALLING, JobStatus.BUILDING):
            assert is_valid_transition(status, JobStatus.FAILED)

    def test_invalid_transition_table(self):
        assert not is_valid_transition(JobStatus.QUEUED, JobStatus.BUILDING)
        assert not is_valid_transition(JobStatus.QUEUED, JobStatus.COMPLETED)
        assert not is_valid_transition(JobStatus.BUILDING, JobStatus.INSTALLING)
        assert not is_valid_transition(JobStatus.COMPLETED, JobStatus.FAILED)
        assert not is_valid_transition(JobStatus.FAILED, JobStatus.QUEUED)

    def test_new_job_is_queued(self, registry):
        job = new_job(registry)
        assert job.status == JobStatus.QUEUED
        assert job.started_at is None
        assert job.artifact_ref is None
        assert job.attempts == 0

    def test_full_lifecycle(self, registry, tmp_path):
        job = new_job(registry)
        registry.transition(job.id, JobStatus.INSTALLING)
        registry.transition(job.id, JobStatus.BUILDING)
        done = registry.complete(
            job.id,
            ArtifactRecord(path=tmp_path / f"{job.id}.zip", size_bytes=10, sha256="abc"),
        )

        assert done.status == JobStatus.COMPLETED
        assert done.started_at is not None
        assert done.completed_at >= done.started_at
        assert done.duration_ms >= 0
        assert done.artifact_ref == f"/builds/{job.id}/artifact"
        assert done.artifact_size_bytes == 10

    def test_skipping_a_step_rejected(self, registry):
        job = new_job(registry)
        with pytest.raises(InvalidTransition):
            registry.transition(job.id, JobStatus.BUILDING)
        assert registry.get(job.id).status == JobStatus.QUEUED

    def test_terminal_job_is_immutable(self, registry):
        job = new_job(registry)
        registry.fail(job.id, "build_error: exited with code 1")
        with pytest.raises(InvalidTransition):
            registry.transition(job.id, JobStatus.INSTALLING)
        with pytest.raises(InvalidTransition):
            registry.set_fingerprint(job.id, "other")
        failed = registry.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "build_error: exited with code 1"
        assert failed.artifact_ref is None

    def test_unknown_job(self, registry):
        assert registry.get("missing") is None
        with pytest.raises(KeyError):
            registry.transition("missing", JobStatus.INSTALLING)

    def test_mark_claimed_counts_attempts(self, registry):
        job = new_job(registry)
        registry.mark_claimed(job.id)
        registry.mark_claimed(job.id)
        assert registry.get(job.id).attempts == 2

    def test_record_install(self, registry):
        job = new_job(registry)
        registry.transition(job.id, JobStatus.INSTALLING)
        registry.record_install(job.id, "npm", cache_hit=True)
        updated = registry.get(job.id)
        assert updated.package_manager == "npm"
        assert updated.cache_hit is True


class TestListing:
    """Listing and counting."""

    def test_list_most_recent_first(self, registry):
        ids = []
        for _ in range(3):
            ids.append(new_job(registry).id)
            time.sleep(0.01)
        jobs, total = registry.list_jobs()
        assert total == 3
        assert [j.id for j in jobs] == list(reversed(ids))

    def test_list_by_status(self, registry):
        a = new_job(registry)
        new_job(registry)
        registry.fail(a.id, "internal_error: boom")
        jobs, total = registry.list_jobs(status=JobStatus.FAILED)
        assert total == 1
        assert jobs[0].id == a.id

    def test_status_counts(self, registry):
        a = new_job(registry)
        new_job(registry)
        registry.fail(a.id, "x")
        counts = registry.status_counts()
        assert counts["queued"] == 1
        assert counts["failed"] == 1
        assert counts["completed"] == 0


class TestHistoryCap:
    """Only the most recent jobs are kept."""

    def test_oldest_terminal_jobs_dropped(self, session_factory):
        registry = JobRegistry(session_factory=session_factory, history_cap=3)
        dropped = []
        registry.on_drop(dropped.append)

        first = new_job(registry)
        registry.fail(first.id, "x")
        for _ in range(3):
            new_job(registry)

        assert registry.count() == 3
        assert registry.get(first.id) is None
        assert dropped == [first.id]

    def test_active_jobs_never_dropped(self, session_factory):
        registry = JobRegistry(session_factory=session_factory, history_cap=2)
        jobs = [new_job(registry) for _ in range(4)]
        assert registry.count() == 4
        assert all(registry.get(j.id) for j in jobs)

    def test_drop_removes_log_and_artifact(self, components, session_factory):
        registry = JobRegistry(session_factory=session_factory, history_cap=1)
        registry.on_drop(components.logs.delete)
        registry.on_drop(components.artifacts.delete_artifact)

        old = new_job(registry)
        components.logs.append(old.id, "[status] queued\n")
        components.artifacts.artifact_path(old.id).write_bytes(b"PK")
        registry.fail(old.id, "x")

        new_job(registry)

        assert not components.logs.log_path(old.id).exists()
        assert not components.artifacts.artifact_path(old.id).exists()


class TestDiscard:
    """A queued job can be rolled back when its submission fails."""

    def test_discard_queued_job(self, registry, components):
        job = new_job(registry)
        components.logs.append(job.id, "[status] queued\n")

        assert registry.discard(job.id) is True
        assert registry.get(job.id) is None
        assert not components.logs.log_path(job.id).exists()

    def test_started_job_is_kept(self, registry):
        job = new_job(registry)
        registry.transition(job.id, JobStatus.INSTALLING)

        assert registry.discard(job.id) is False
        assert registry.get(job.id).status == JobStatus.INSTALLING

    def test_unknown_job(self, registry):
        assert registry.discard("missing") is False
