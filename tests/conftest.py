"""
Pytest configuration and fixtures.
"""
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Set test environment before importing app (module-level singletons read it)
os.environ["BUILDER_DATA_DIR"] = tempfile.mkdtemp(prefix="builder-test-")
os.environ["BUILDER_API_KEYS"] = "test-api-key,second-api-key"
os.environ["BUILDER_ADMIN_KEY"] = "test-admin-key"
os.environ["BUILDER_START_WORKERS"] = "0"
os.environ["BUILDER_WAIT_TIMEOUT_S"] = "2"

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from app.core.artifact_store import ArtifactStore
from app.core.build_logs import LogBroadcaster
from app.core.build_runner import WorkspaceManager
from app.core.cache import DependencyCache
from app.core.job_queue import BuildQueue
from app.core.jobs import JobRegistry
from app.db.database import create_session_factory


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


@pytest.fixture
def auth_headers():
    """Return valid authentication headers."""
    return {"X-API-Key": "test-api-key"}


@pytest.fixture
def admin_headers():
    """Return valid admin headers."""
    return {"X-Admin-Key": "test-admin-key"}


@pytest.fixture
def invalid_auth_headers():
    """Return invalid authentication headers."""
    return {"X-API-Key": "invalid-key"}


@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a fresh database."""
    return create_session_factory(tmp_path / "test.db")


@pytest.fixture
def components(tmp_path, session_factory):
    """A complete, isolated set of build service components."""
    builds_dir = tmp_path / "builds"
    logs = LogBroadcaster(logs_dir=builds_dir, buffer_size=100)
    artifacts = ArtifactStore(artifacts_dir=builds_dir)
    registry = JobRegistry(session_factory=session_factory, history_cap=100)
    registry.on_drop(logs.delete)
    registry.on_drop(artifacts.delete_artifact)
    return SimpleNamespace(
        registry=registry,
        queue=BuildQueue(session_factory=session_factory, lease_s=60),
        cache=DependencyCache(
            cache_dir=tmp_path / "cache",
            session_factory=session_factory,
            max_entries=5,
            max_bytes=2 * 1024 * 1024 * 1024,
        ),
        logs=logs,
        artifacts=artifacts,
        workspaces=WorkspaceManager(base_dir=tmp_path / "workspaces"),
        root=Path(tmp_path),
    )
