"""
Tests for the HTTP API.

Tests cover:
- Public endpoints (/health, /version)
- API key enforcement (rejected before any job exists)
- Submission validation
- Build status, logs, stream and artifact endpoints (integrity checked on download)
- waitForCompletion (zip, failure JSON, deadline) and the non-blocking wait behind it
- Admin endpoints (X-Admin-Key)
- Prometheus metrics
"""
import asyncio
import base64
import hashlib
import io
import json
import threading
import time
import zipfile
from pathlib import Path

import pytest

from app.api.builds import wait_for_terminal
from app.core.artifact_store import artifact_store
from app.core.auth import key_id, require_admin_key, require_api_key
from app.core.build_logs import log_broadcaster
from app.core.build_runner import BuildWorker, CommandResult
from app.core.cache import dependency_cache
from app.core.config import get_config
from app.core.errors import AuthError
from app.core.job_queue import build_queue
from app.core.jobs import JobStatus, job_registry
from app.worker import WorkerPool

PACKAGE_JSON = json.dumps({"name": "web", "scripts": {"build": "tool build"}})


def fake_npm(cmd, cwd, timeout, env_override=None):
    """install creates node_modules, anything else writes dist/ (or fails for `fail`)."""
    cwd = Path(cwd)
    if len(cmd) > 1 and cmd[1] in ("install", "ci"):
        (cwd / "node_modules" / "tool").mkdir(parents=True, exist_ok=True)
        (cwd / "node_modules" / "tool" / "index.js").write_text("// tool\n")
        return CommandResult(cmd, 0, "added 1 package\n", "", 1)
    if cmd[0] == "fail":
        return CommandResult(cmd, 1, "", "compile error\n", 1)
    (cwd / "dist").mkdir(exist_ok=True)
    (cwd / "dist" / "index.html").write_text("<h1>ok</h1>\n")
    return CommandResult(cmd, 0, "built\n", "", 1)


def drain_queue():
    """Run every queued job to completion with the fake npm."""
    worker = BuildWorker(runner=fake_npm)
    while worker.run_once() is not None:
        pass


def build_body(**overrides):
    body = {"files": [{"path": "package.json", "content": PACKAGE_JSON}]}
    body.update(overrides)
    return body


@pytest.fixture
def fake_pool():
    pool = WorkerPool(size=1, worker_factory=lambda: BuildWorker(runner=fake_npm), poll_s=0.1)
    pool.start()
    yield pool
    pool.stop()


# =============================================================================
# Public endpoints
# =============================================================================

class TestPublicEndpoints:
    """Endpoints that need no credentials."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_version(self, client):
        response = client.get("/version")
        assert response.status_code == 200
        assert response.json()["name"] == "vite-builder"

    def test_request_id_header(self, client):
        response = client.get("/health", headers={"X-Request-Id": "abc-123"})
        assert response.headers["X-Request-Id"] == "abc-123"


# =============================================================================
# Authentication
# =============================================================================

class TestAuthentication:
    """Requests without a valid key never create anything."""

    def test_missing_key_rejected(self, client):
        before = job_registry.count()
        response = client.post("/build", json=build_body())
        assert response.status_code == 401
        assert response.json()["detail"] == "Missing API key"
        assert job_registry.count() == before

    def test_invalid_key_rejected_without_side_effects(self, client, invalid_auth_headers):
        builds_dir = get_config().builds_dir
        logs_before = sorted(p.name for p in builds_dir.glob("*.log"))
        jobs_before = job_registry.count()
        cache_before = len(dependency_cache.entries())
        queue_before = build_queue.stats()

        response = client.post("/build", json=build_body(), headers=invalid_auth_headers)

        assert response.status_code == 401
        assert "id" not in response.json()
        assert job_registry.count() == jobs_before
        assert sorted(p.name for p in builds_dir.glob("*.log")) == logs_before
        assert len(dependency_cache.entries()) == cache_before
        assert build_queue.stats() == queue_before

    def test_bearer_token_accepted(self, client):
        response = client.get("/builds/unknown", headers={"Authorization": "Bearer second-api-key"})
        assert response.status_code == 404

    def test_status_requires_key(self, client):
        assert client.get("/builds/anything").status_code == 401

    def test_metrics_requires_key(self, client, auth_headers):
        assert client.get("/metrics").status_code == 401
        assert client.get("/metrics", headers=auth_headers).status_code == 200

    def test_require_api_key(self):
        assert require_api_key("test-api-key").api_key_id == key_id("test-api-key")
        for raw, message in (("", "Missing API key"), ("nope", "Invalid API key")):
            with pytest.raises(AuthError) as exc_info:
                require_api_key(raw)
            assert str(exc_info.value) == message
            assert exc_info.value.status_code == 401

    def test_require_admin_key(self):
        require_admin_key("test-admin-key")
        with pytest.raises(AuthError) as exc_info:
            require_admin_key(None)
        assert exc_info.value.status_code == 401
        with pytest.raises(AuthError) as exc_info:
            require_admin_key("test-api-key")
        assert exc_info.value.status_code == 403


# =============================================================================
# Submission
# =============================================================================

class TestSubmission:
    """POST /build."""

    def test_async_submit(self, client, auth_headers):
        response = client.post("/build", json=build_body(), headers=auth_headers)
        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "queued"
        assert data["artifact"] is None
        assert data["status_url"] == f"/builds/{data['id']}"

        job = job_registry.get(data["id"])
        assert job.status == JobStatus.QUEUED
        assert job.build_command == "npm run build"
        assert len(job.dependency_fingerprint) == 64
        assert "[status] queued" in log_broadcaster.read(job.id)

    def test_custom_build_command(self, client, auth_headers):
        response = client.post(
            "/build",
            json=build_body(buildCommand="npm run build:prod", installDependencies=False),
            headers=auth_headers,
        )
        job = job_registry.get(response.json()["id"])
        assert job.build_command == "npm run build:prod"
        assert job.install_dependencies is False

    def test_base64_file(self, client, auth_headers):
        encoded = base64.b64encode(b"\x00\x01binary").decode()
        response = client.post(
            "/build",
            json={"files": [{"path": "public/data.bin", "contentBase64": encoded}]},
            headers=auth_headers,
        )
        assert response.status_code == 202

    @pytest.mark.parametrize("body", [
        {},
        {"files": []},
        {"files": [{"path": "../escape.js", "content": "x"}]},
        {"files": [{"path": "/etc/passwd", "content": "x"}]},
        {"files": [{"path": "a.txt", "content": "x", "contentBase64": "eA=="}]},
        {"files": [{"path": "a.bin", "contentBase64": "not base64!!"}]},
        {"files": [{"path": "a.js", "content": "1"}, {"path": "a.js", "content": "2"}]},
    ])
    def test_invalid_submissions(self, client, auth_headers, body):
        before = job_registry.count()
        response = client.post("/build", json=body, headers=auth_headers)
        assert response.status_code == 422
        assert job_registry.count() == before


# =============================================================================
# Status, logs, artifact
# =============================================================================

class TestBuildEndpoints:
    """Reading job state."""

    def test_unknown_job_404(self, client, auth_headers):
        for path in ("/builds/nope", "/builds/nope/logs", "/builds/nope/artifact", "/builds/nope/stream"):
            assert client.get(path, headers=auth_headers).status_code == 404

    def test_artifact_before_completion_409(self, client, auth_headers):
        job_id = client.post("/build", json=build_body(), headers=auth_headers).json()["id"]
        response = client.get(f"/builds/{job_id}/artifact", headers=auth_headers)
        assert response.status_code == 409

    def test_completed_build(self, client, auth_headers):
        job_id = client.post("/build", json=build_body(), headers=auth_headers).json()["id"]
        drain_queue()

        status = client.get(f"/builds/{job_id}", headers=auth_headers).json()
        assert status["status"] == "completed"
        assert status["artifact"] == f"/builds/{job_id}/artifact"
        assert status["started_at"] and status["completed_at"]
        assert "[complete]" in status["logs"]

        logs = client.get(f"/builds/{job_id}/logs", headers=auth_headers).json()
        assert logs["logs"] == status["logs"]

        artifact = client.get(f"/builds/{job_id}/artifact", headers=auth_headers)
        assert artifact.status_code == 200
        assert artifact.headers["content-type"] == "application/zip"
        with zipfile.ZipFile(io.BytesIO(artifact.content)) as zf:
            assert zf.namelist() == ["index.html"]

    def test_failed_build(self, client, auth_headers):
        job_id = client.post(
            "/build", json=build_body(buildCommand="fail", installDependencies=False), headers=auth_headers
        ).json()["id"]
        drain_queue()

        status = client.get(f"/builds/{job_id}", headers=auth_headers).json()
        assert status["status"] == "failed"
        assert status["artifact"] is None
        assert status["error"] == "build_error: build command exited with code 1"
        assert client.get(f"/builds/{job_id}/artifact", headers=auth_headers).status_code == 409

    def test_corrupted_artifact_not_served(self, client, auth_headers):
        job_id = client.post("/build", json=build_body(), headers=auth_headers).json()["id"]
        drain_queue()

        artifact_store.artifact_path(job_id).write_bytes(b"not the zip that was built")

        response = client.get(f"/builds/{job_id}/artifact", headers=auth_headers)
        assert response.status_code == 500
        assert response.json()["detail"] == "Artifact integrity check failed"

    def test_missing_artifact_file_404(self, client, auth_headers):
        job_id = client.post("/build", json=build_body(), headers=auth_headers).json()["id"]
        drain_queue()

        artifact_store.artifact_path(job_id).unlink()

        response = client.get(f"/builds/{job_id}/artifact", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["detail"] == "Artifact file not found"

    def test_artifact_sha256_header(self, client, auth_headers):
        job_id = client.post("/build", json=build_body(), headers=auth_headers).json()["id"]
        drain_queue()

        sha256 = job_registry.get(job_id).artifact_sha256
        response = client.get(f"/builds/{job_id}/artifact", headers=auth_headers)
        assert response.headers["X-Artifact-SHA256"] == sha256
        assert hashlib.sha256(response.content).hexdigest() == sha256

    def test_stream_of_finished_build(self, client, auth_headers):
        job_id = client.post("/build", json=build_body(), headers=auth_headers).json()["id"]
        drain_queue()

        response = client.get(f"/builds/{job_id}/stream", headers=auth_headers)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = [e for e in response.text.split("\n\n") if e]
        first = json.loads(events[0][len("data: "):])
        assert "[status] queued" in first["logs"]
        assert events[-1] == 'event: end\ndata: {"status": "completed"}'

    def test_stream_follows_running_build(self, client, auth_headers, fake_pool):
        job_id = client.post("/build", json=build_body(), headers=auth_headers).json()["id"]

        response = client.get(f"/builds/{job_id}/stream", headers=auth_headers)
        assert response.status_code == 200

        events = [e for e in response.text.split("\n\n") if e]
        logs = "".join(json.loads(e[len("data: "):])["logs"] for e in events if e.startswith("data: "))
        assert "[status] queued" in logs
        assert "[complete]" in logs
        assert events[-1] == 'event: end\ndata: {"status": "completed"}'


# =============================================================================
# waitForCompletion
# =============================================================================

class TestWaitForCompletion:
    """Synchronous submissions."""

    def test_returns_zip(self, client, auth_headers, fake_pool):
        response = client.post("/build", json=build_body(waitForCompletion=True), headers=auth_headers)
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
            assert "index.html" in zf.namelist()

    def test_failure_returns_json(self, client, auth_headers, fake_pool):
        response = client.post(
            "/build",
            json=build_body(waitForCompletion=True, buildCommand="fail", installDependencies=False),
            headers=auth_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "failed"
        assert data["error"].startswith("build_error")
        assert "compile error" in data["logs"]

    def test_deadline_returns_202(self, client, auth_headers):
        # No workers running: the wait (BUILDER_WAIT_TIMEOUT_S=2) expires
        response = client.post("/build", json=build_body(waitForCompletion=True), headers=auth_headers)
        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        drain_queue()


class TestWaitForTerminal:
    """The completion wait sleeps on the event loop between status reads."""

    @staticmethod
    def new_job(registry):
        return registry.create(
            build_command="npm run build",
            install_dependencies=False,
            dependency_fingerprint="f" * 64,
        )

    def test_returns_when_job_finishes(self, components):
        job = self.new_job(components.registry)
        timer = threading.Timer(0.2, components.registry.fail, args=(job.id, "internal_error: stopped"))
        timer.start()

        result = asyncio.run(wait_for_terminal(job.id, timeout=5, registry=components.registry, poll_s=0.05))
        timer.join()

        assert result.status == JobStatus.FAILED
        assert result.error == "internal_error: stopped"

    def test_deadline_returns_latest_snapshot(self, components):
        job = self.new_job(components.registry)

        start = time.monotonic()
        result = asyncio.run(wait_for_terminal(job.id, timeout=0.3, registry=components.registry, poll_s=0.05))

        assert result.status == JobStatus.QUEUED
        assert 0.25 <= time.monotonic() - start < 3

    def test_unknown_job(self, components):
        result = asyncio.run(wait_for_terminal("missing", timeout=1, registry=components.registry))
        assert result is None

    def test_concurrent_waits_share_the_loop(self, components):
        jobs = [self.new_job(components.registry) for _ in range(5)]

        async def wait_all():
            waits = [
                wait_for_terminal(job.id, timeout=5, registry=components.registry, poll_s=0.05)
                for job in jobs
            ]
            # Finish the jobs from the same loop while every wait is pending
            async def finish():
                await asyncio.sleep(0.2)
                for job in jobs:
                    components.registry.fail(job.id, "internal_error: stopped")
            results = await asyncio.gather(*waits, finish())
            return results[:-1]

        results = asyncio.run(wait_all())
        assert [r.status for r in results] == [JobStatus.FAILED] * len(jobs)


# =============================================================================
# Admin
# =============================================================================

class TestAdmin:
    """Admin endpoints use X-Admin-Key."""

    def test_missing_admin_key(self, client):
        assert client.get("/admin/builds").status_code == 401

    def test_invalid_admin_key(self, client):
        response = client.get("/admin/builds", headers={"X-Admin-Key": "wrong"})
        assert response.status_code == 403

    def test_api_key_is_not_admin_key(self, client, auth_headers):
        response = client.get("/admin/cache", headers={"X-Admin-Key": auth_headers["X-API-Key"]})
        assert response.status_code == 403

    def test_list_builds(self, client, auth_headers, admin_headers):
        job_id = client.post("/build", json=build_body(), headers=auth_headers).json()["id"]
        data = client.get("/admin/builds", headers=admin_headers).json()
        assert data["total"] >= 1
        assert job_id in [b["id"] for b in data["builds"]]

        one = client.get(f"/admin/builds/{job_id}", headers=admin_headers).json()
        assert one["id"] == job_id
        assert "[status] queued" in one["logs"]
        drain_queue()

    def test_list_builds_by_status(self, client, admin_headers):
        response = client.get("/admin/builds?status=bogus", headers=admin_headers)
        assert response.status_code == 422

    def test_admin_stream_accepts_query_key(self, client, auth_headers):
        job_id = client.post("/build", json=build_body(), headers=auth_headers).json()["id"]
        drain_queue()
        response = client.get(f"/admin/builds/{job_id}/stream?adminKey=test-admin-key")
        assert response.status_code == 200
        assert "event: end" in response.text

    def test_cache_lifecycle(self, client, auth_headers, admin_headers):
        client.post("/build", json=build_body(), headers=auth_headers)
        drain_queue()

        cache = client.get("/admin/cache", headers=admin_headers).json()
        assert len(cache["entries"]) >= 1
        assert cache["total_bytes"] > 0
        fingerprint = cache["entries"][0]["fingerprint"]

        response = client.delete(f"/admin/cache/{fingerprint}", headers=admin_headers)
        assert response.status_code == 200
        assert client.delete(f"/admin/cache/{fingerprint}", headers=admin_headers).status_code == 404

        response = client.post("/admin/cache/clear", headers=admin_headers)
        assert response.json()["status"] == "ok"
        assert client.get("/admin/cache", headers=admin_headers).json()["entries"] == []

    def test_cache_settings(self, client, admin_headers):
        response = client.post(
            "/admin/cache/settings", json={"maxEntries": 3, "maxBytes": 1024 ** 3}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["settings"] == {"max_entries": 3, "max_bytes": 1024 ** 3}

        settings = client.get("/admin/cache", headers=admin_headers).json()["settings"]
        assert settings == {"max_entries": 3, "max_bytes": 1024 ** 3}

        bad = client.post("/admin/cache/settings", json={"maxEntries": -1}, headers=admin_headers)
        assert bad.status_code == 422

        client.post("/admin/cache/settings", json={"maxEntries": 5, "maxBytes": 2 * 1024 ** 3},
                    headers=admin_headers)

    def test_admin_metrics(self, client, admin_headers):
        data = client.get("/admin/metrics", headers=admin_headers).json()
        assert set(data) == {"job_counts", "total_builds", "cache_entries", "total_cache_bytes"}
        assert "waiting" in data["job_counts"]
        assert "completed" in data["job_counts"]

    def test_admin_config_has_no_secrets(self, client, admin_headers):
        response = client.get("/admin/config", headers=admin_headers)
        assert response.status_code == 200
        text = response.text
        assert "test-admin-key" not in text
        assert "test-api-key" not in text
        assert response.json()["api_keys_configured"] == 2


# =============================================================================
# Metrics
# =============================================================================

class TestMetrics:
    """Prometheus exposition."""

    def test_prometheus_format(self, client, auth_headers):
        client.get("/health")
        text = client.get("/metrics", headers=auth_headers).text
        assert "# TYPE builder_requests_total counter" in text
        assert "builder_builds_submitted_total" in text
        assert "builder_queue_waiting" in text
