"""
Artifact storage for packaged build outputs.
Manages creation, retrieval, and cleanup of <job_id>.zip archives.

- Archives are written to a temp name and renamed into place, so a
  redelivered job simply replaces its own artifact
- Size limit enforced
- SHA256 recorded for verification
"""
import hashlib
import logging
import os
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from app.core.config import get_config

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

MAX_FILES = 50_000
MAX_ZIP_BYTES = 512 * 1024 * 1024  # 512MB

TMP_SUFFIX = ".zip.tmp"


@dataclass
class ArtifactInfo:
    """Information about a stored artifact."""
    job_id: str
    path: Path
    name: str
    size_bytes: int
    sha256: str
    file_count: int
    created_at: datetime


class ArtifactError(Exception):
    """Error during artifact operations."""
    pass


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


class ArtifactStore:
    """Manages artifact storage and retrieval."""

    def __init__(self, artifacts_dir: Optional[Path] = None):
        """Initialize artifact store."""
        self._artifacts_dir = Path(artifacts_dir) if artifacts_dir else get_config().builds_dir
        self._artifacts_dir.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, job_id: str) -> Path:
        return self._artifacts_dir / f"{job_id}.zip"

    def run_startup_cleanup(self) -> int:
        """Remove half-written archives left by a crashed worker. Safe to call multiple times."""
        deleted = 0
        try:
            for item in self._artifacts_dir.iterdir():
                if item.is_file() and item.name.endswith(TMP_SUFFIX):
                    item.unlink()
                    deleted += 1
        except OSError as e:
            logger.warning(f"cleanup_artifacts_failed error_type={type(e).__name__}")
            return deleted

        if deleted > 0:
            logger.info(f"cleanup_artifacts deleted={deleted}")
        return deleted

    def create_artifact(self, job_id: str, source_dir: Path) -> ArtifactInfo:
        """
        Archive the contents of source_dir (paths relative to it) as <job_id>.zip.

        Raises:
            ArtifactError: If the directory is missing or limits are exceeded
        """
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise ArtifactError(f"Output directory not found: {source_dir.name}")

        final_path = self.artifact_path(job_id)
        tmp_path = self._artifacts_dir / f"{job_id}{TMP_SUFFIX}"

        file_count = 0
        try:
            with zipfile.ZipFile(tmp_path, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
                for dirpath, dirnames, filenames in os.walk(source_dir):
                    dirnames.sort()
                    for name in sorted(filenames):
                        file_path = Path(dirpath) / name
                        if not file_path.is_file():
                            continue
                        file_count += 1
                        if file_count > MAX_FILES:
                            raise ArtifactError(f"Too many files: > {MAX_FILES}")
                        zf.write(file_path, file_path.relative_to(source_dir).as_posix())

            zip_size = tmp_path.stat().st_size
            if zip_size > MAX_ZIP_BYTES:
                raise ArtifactError(
                    f"ZIP size exceeds limit: {zip_size} > {MAX_ZIP_BYTES} bytes"
                )
            os.replace(tmp_path, final_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        sha256 = _sha256_file(final_path)

        logger.info(
            f"artifact_created job_id={job_id} size={zip_size} files={file_count}"
        )

        return ArtifactInfo(
            job_id=job_id,
            path=final_path,
            name=final_path.name,
            size_bytes=zip_size,
            sha256=sha256,
            file_count=file_count,
            created_at=datetime.now(timezone.utc),
        )

    def delete_artifact(self, job_id: str) -> bool:
        """Delete artifact for a job. Returns True if deleted."""
        path = self.artifact_path(job_id)
        if path.is_file():
            path.unlink()
            logger.info(f"artifact_deleted job_id={job_id}")
            return True
        return False

    def verify_artifact(self, job_id: str, expected_sha256: str) -> bool:
        """Verify artifact integrity using SHA256."""
        path = self.artifact_path(job_id)
        if not path.is_file():
            return False
        return _sha256_file(path) == expected_sha256


# Global artifact store instance
artifact_store = ArtifactStore()
