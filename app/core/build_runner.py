"""
Build Runner - executes one build job end to end.

Pipeline: materialize workspace -> cache restore -> install -> cache populate
-> build -> package. Each job runs in its own workspace directory.

Security:
- No shell=True anywhere; build commands are split with shlex
- Every subprocess has a timeout; on timeout its whole process group is killed
- No secrets or file contents in service logs (the build log holds command output)
- Workspaces are removed after every job
"""
import base64
import json
import logging
import os
import shlex
import shutil
import signal
import socket
import subprocess
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.artifact_store import ArtifactError, ArtifactStore, artifact_store
from app.core.build_logs import LogBroadcaster, log_broadcaster
from app.core.cache import DependencyCache, dependency_cache, fingerprint_workspace
from app.core.config import BuilderConfig, get_config
from app.core.errors import (
    BuildError,
    CacheError,
    InstallError,
    InternalError,
    InvalidTransition,
    JobFailure,
    LogSealedError,
    PackagingError,
    ValidationError,
)
from app.core.job_queue import BuildQueue, QueuedBuild, build_queue
from app.core.jobs import ArtifactRecord, JobRegistry, JobStatus, job_registry

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

MAX_LOG_SIZE = 1 * 1024 * 1024  # 1MB per command stream

WORKSPACE_RETENTION_HOURS = 24

# Passed through from the service environment to install/build commands
PASSTHROUGH_ENV = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
    "npm_config_registry",
    "npm_config_cache",
    "YARN_CACHE_FOLDER",
    "PNPM_HOME",
    "NVM_DIR",
)

DEFAULT_PACKAGE_JSON = {
    "name": "fallback-vite-app",
    "version": "1.0.0",
    "scripts": {
        "dev": "vite",
        "build": "vite build",
        "preview": "vite preview",
    },
    "dependencies": {},
    "devDependencies": {"vite": "^5.0.0"},
}

DEFAULT_INDEX_HTML = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Vite App</title>
  </head>
  <body>
    <div id="app">Hello Vite</div>
    <script type="module" src="/src/main.js"></script>
  </body>
</html>
"""

DEFAULT_MAIN_JS = "document.getElementById('app').innerText = 'Built with Vite!';\n"


def default_manifest_bytes() -> bytes:
    """package.json written when a submission has none."""
    return json.dumps(DEFAULT_PACKAGE_JSON, indent=2).encode("utf-8")


# =============================================================================
# Install strategies
# =============================================================================

class PackageManager(str, Enum):
    """Package manager chosen from the workspace lockfile."""
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"


@dataclass(frozen=True)
class InstallStrategy:
    """Install command for one package manager."""
    package_manager: PackageManager
    command: tuple[str, ...]
    lockfile: Optional[str] = None


def select_install_strategy(workspace: Path) -> InstallStrategy:
    """Pick the install command from whichever lockfile the project ships."""
    if (workspace / "pnpm-lock.yaml").is_file():
        return InstallStrategy(PackageManager.PNPM, ("pnpm", "install"), "pnpm-lock.yaml")
    if (workspace / "yarn.lock").is_file():
        return InstallStrategy(PackageManager.YARN, ("yarn", "install"), "yarn.lock")
    if (workspace / "package-lock.json").is_file():
        return InstallStrategy(PackageManager.NPM, ("npm", "ci", "--include=dev"), "package-lock.json")
    return InstallStrategy(PackageManager.NPM, ("npm", "install"))


# =============================================================================
# Safe Command Execution
# =============================================================================

@dataclass
class CommandResult:
    """Result of a subprocess command."""
    command: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False


def _command_env(cwd: Path, env_override: Optional[dict] = None) -> dict:
    """Environment for install/build commands; node_modules/.bin comes first on PATH."""
    env = {
        "PATH": f"{cwd / 'node_modules' / '.bin'}{os.pathsep}"
                f"{os.environ.get('PATH', '/usr/local/bin:/usr/bin:/bin')}",
        "HOME": os.environ.get("HOME", "/tmp"),
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "CI": "true",
    }
    for name in PASSTHROUGH_ENV:
        if name in os.environ:
            env[name] = os.environ[name]
    if env_override:
        env.update(env_override)
    return env


def _truncate(text: str) -> str:
    max_output = MAX_LOG_SIZE
    if len(text) > max_output:
        return text[:max_output] + f"\n... (truncated, {len(text)} total chars)"
    return text


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout: float,
    env_override: Optional[dict] = None,
) -> CommandResult:
    """
    Execute a command with no shell in its own process group.

    On timeout the entire group (the command and anything it spawned) is
    killed before returning.
    """
    if not isinstance(cmd, list):
        raise InternalError("Command must be a list, not a string")
    if len(cmd) == 0:
        raise InternalError("Command cannot be empty")

    start_time = datetime.now(timezone.utc)
    timed_out = False

    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            env=_command_env(Path(cwd), env_override),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as e:
        return CommandResult(
            command=cmd,
            exit_code=127,
            stdout="",
            stderr=f"{cmd[0]}: {e.strerror or type(e).__name__}",
            duration_ms=0,
        )

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
        exit_code = proc.returncode
    except subprocess.TimeoutExpired:
        _kill_process_group(proc)
        stdout, stderr = proc.communicate()
        exit_code = -1
        timed_out = True
        logger.warning(f"command_timeout cmd={cmd[0]} timeout={timeout}")
    except BaseException:
        _kill_process_group(proc)
        proc.wait()
        raise

    duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)

    return CommandResult(
        command=cmd,
        exit_code=exit_code,
        stdout=_truncate(stdout or ""),
        stderr=_truncate(stderr or ""),
        duration_ms=duration_ms,
        timed_out=timed_out,
    )


CommandRunner = Callable[..., CommandResult]


# =============================================================================
# Workspace Management
# =============================================================================

def _is_safe_path(path: str) -> bool:
    """Check if a path is safe (no traversal, not absolute)."""
    normalized = os.path.normpath(path)
    if os.path.isabs(normalized):
        return False
    if ".." in normalized.split(os.sep):
        return False
    if normalized in (".", ""):
        return False
    return True


class WorkspaceManager:
    """Manages isolated workspaces for build jobs."""

    def __init__(self, base_dir: Optional[Path] = None):
        self._base_dir = Path(base_dir) if base_dir else get_config().workspaces_dir
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def create_workspace(self, job_id: str) -> Path:
        """Create an empty workspace directory for a job (replacing leftovers)."""
        workspace = self._base_dir / job_id
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
        workspace.mkdir(parents=True, exist_ok=True)
        logger.info(f"workspace_created job_id={job_id}")
        return workspace

    def cleanup_workspace(self, job_id: str) -> bool:
        """Remove workspace for a job."""
        workspace = self._base_dir / job_id
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
            logger.info(f"workspace_cleaned job_id={job_id}")
            return True
        return False

    def cleanup_old_workspaces(self) -> int:
        """Remove workspaces older than retention period."""
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=WORKSPACE_RETENTION_HOURS)
            deleted = 0

            for item in self._base_dir.iterdir():
                if item.is_dir():
                    mtime = datetime.fromtimestamp(item.stat().st_mtime, tz=timezone.utc)
                    if mtime < cutoff:
                        shutil.rmtree(item, ignore_errors=True)
                        deleted += 1

            if deleted > 0:
                logger.info(f"cleanup_workspaces deleted={deleted}")
            return deleted
        except OSError as e:
            logger.warning(f"cleanup_workspaces_failed error={type(e).__name__}")
            return 0


def materialize_files(workspace: Path, files: list[dict[str, Any]]) -> int:
    """
    Write submitted files into the workspace.
    Each file has `path` and either `content` (text) or `contentBase64`.
    A file with neither is written empty.
    """
    count = 0
    for item in files:
        rel_path = item.get("path", "")
        if not _is_safe_path(rel_path):
            raise ValidationError(f"Invalid path: {rel_path}")

        dest = workspace / os.path.normpath(rel_path)
        dest.parent.mkdir(parents=True, exist_ok=True)

        if isinstance(item.get("content"), str):
            dest.write_text(item["content"], encoding="utf-8")
        elif isinstance(item.get("contentBase64"), str):
            dest.write_bytes(base64.b64decode(item["contentBase64"]))
        else:
            dest.write_bytes(b"")
        count += 1
    return count


def ensure_default_project(workspace: Path) -> list[str]:
    """
    Fill in a minimal Vite project around whatever was submitted.
    Returns the files that were created.
    """
    created = []

    pkg_path = workspace / "package.json"
    if not pkg_path.exists():
        pkg_path.write_bytes(default_manifest_bytes())
        created.append("package.json")

    index_path = workspace / "index.html"
    if not index_path.exists():
        index_path.write_text(DEFAULT_INDEX_HTML, encoding="utf-8")
        created.append("index.html")

    main_path = workspace / "src" / "main.js"
    if not main_path.exists():
        main_path.parent.mkdir(parents=True, exist_ok=True)
        main_path.write_text(DEFAULT_MAIN_JS, encoding="utf-8")
        created.append("src/main.js")

    return created


# =============================================================================
# Worker
# =============================================================================

class BuildWorker:
    """
    Consumes jobs from the build queue and drives each through the pipeline.

    A job failure never escapes process(): the job is marked failed and the
    worker moves on to the next one.
    """

    def __init__(
        self,
        queue: Optional[BuildQueue] = None,
        registry: Optional[JobRegistry] = None,
        cache: Optional[DependencyCache] = None,
        logs: Optional[LogBroadcaster] = None,
        artifacts: Optional[ArtifactStore] = None,
        workspaces: Optional[WorkspaceManager] = None,
        runner: Optional[CommandRunner] = None,
        config: Optional[BuilderConfig] = None,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue or build_queue
        self.registry = registry or job_registry
        self.cache = cache or dependency_cache
        self.logs = logs or log_broadcaster
        self.artifacts = artifacts or artifact_store
        self.workspaces = workspaces or WorkspaceManager()
        self.runner = runner or run_command
        self.config = config or get_config()
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"

    # -------------------------------------------------------------------------
    # Logging helpers
    # -------------------------------------------------------------------------

    def _log(self, job_id: str, text: str) -> None:
        if not text.endswith("\n"):
            text += "\n"
        self.logs.append(job_id, f"{datetime.now(timezone.utc).isoformat()} {text}")

    def _log_command(self, job_id: str, step: str, result: CommandResult) -> None:
        self._log(
            job_id,
            f"[{step}] $ {' '.join(result.command)}\n"
            f"[{step}] stdout:\n{result.stdout}\n"
            f"[{step}] stderr:\n{result.stderr}\n"
            f"[{step}] exit code {result.exit_code} ({result.duration_ms}ms)"
            + (" TIMED OUT" if result.timed_out else ""),
        )

    # -------------------------------------------------------------------------
    # Queue consumption
    # -------------------------------------------------------------------------

    def run_once(self) -> Optional[str]:
        """Claim and process one job. Returns its id, or None if the queue is empty."""
        item = self.queue.claim(self.worker_id)
        if item is None:
            return None
        # Not acked if process() itself blows up: the lease expires and the job is redelivered
        with self._lease_heartbeat(item.job_id):
            self.process(item)
        self.queue.ack(item.job_id)
        return item.job_id

    @contextmanager
    def _lease_heartbeat(self, job_id: str):
        """Keep renewing the queue lease while the job is being processed."""
        stop = threading.Event()
        interval = self.queue.lease_s / 3

        def renew() -> None:
            while not stop.wait(interval):
                try:
                    if not self.queue.renew(job_id, self.worker_id):
                        logger.warning(f"lease_lost job_id={job_id} worker_id={self.worker_id}")
                        return
                except SQLAlchemyError as e:
                    logger.warning(f"lease_renew_failed job_id={job_id} error_type={type(e).__name__}")

        thread = threading.Thread(target=renew, name=f"lease-{job_id[:8]}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join()

    def process(self, item: QueuedBuild) -> None:
        job = self.registry.get(item.job_id)
        if job is None:
            logger.warning(f"job_not_found job_id={item.job_id}")
            return
        if job.status.is_terminal:
            logger.info(f"job_already_terminal job_id={job.id} status={job.status.value}")
            return
        if job.status != JobStatus.QUEUED:
            # Redelivered after a worker died mid-pipeline
            self._fail(job.id, InternalError(f"worker lost during {job.status.value}"))
            return

        self.registry.mark_claimed(job.id)
        logger.info(f"job_started job_id={job.id}", extra={"job_id": job.id, "worker_id": self.worker_id})

        try:
            self._execute(job, item.payload)
        except JobFailure as e:
            self._fail(job.id, e)
        except ValidationError as e:
            self._fail(job.id, e)
        except Exception as e:
            logger.exception(f"job_internal_error job_id={job.id}")
            self._fail(job.id, InternalError(f"Unexpected error: {type(e).__name__}: {e}"))
        finally:
            try:
                self.workspaces.cleanup_workspace(job.id)
            except OSError as e:
                logger.warning(f"workspace_cleanup_failed job_id={job.id} error_type={type(e).__name__}")

    def _fail(self, job_id: str, error: Exception) -> None:
        kind = getattr(error, "kind", "internal_error")
        message = str(error)
        try:
            output = getattr(error, "output", None)
            if output:
                self._log(job_id, output)
            self._log(job_id, f"[failed] {kind}: {message}")
            self.registry.fail(job_id, f"{kind}: {message}")
        except (InvalidTransition, LogSealedError):
            logger.warning(f"job_fail_ignored job_id={job_id} reason=already_terminal")
        finally:
            self.logs.seal(job_id)
        logger.info(f"job_failed job_id={job_id} error_type={kind}")

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def _execute(self, job, payload: dict[str, Any]) -> None:
        job_id = job.id

        self.registry.transition(job_id, JobStatus.INSTALLING)
        self._log(job_id, "[status] installing")

        workspace = self.workspaces.create_workspace(job_id)
        written = materialize_files(workspace, payload.get("files") or [])
        self._log(job_id, f"[workspace] wrote {written} files")

        created = ensure_default_project(workspace)
        if created:
            self._log(job_id, f"[workspace] created default {', '.join(created)}")

        fingerprint = fingerprint_workspace(workspace)
        if fingerprint != job.dependency_fingerprint:
            self.registry.set_fingerprint(job_id, fingerprint)

        if job.install_dependencies:
            fresh_install = self._install(job_id, workspace, fingerprint)
            if fresh_install:
                self._populate_cache(job_id, fingerprint, workspace / "node_modules")
        else:
            self._log(job_id, "[install] skipped (installDependencies=false)")

        self.registry.transition(job_id, JobStatus.BUILDING)
        self._log(job_id, "[status] building")
        self._build(job_id, workspace, job.build_command)

        output_dir = workspace / self.config.output_dir
        if not output_dir.is_dir():
            raise PackagingError(f"{self.config.output_dir} not found")

        try:
            info = self.artifacts.create_artifact(job_id, output_dir)
        except ArtifactError as e:
            raise PackagingError(str(e)) from e
        self._log(job_id, f"[package] {info.name} files={info.file_count} size={info.size_bytes} sha256={info.sha256}")

        self._log(job_id, "[complete] build completed")
        self.registry.complete(
            job_id,
            ArtifactRecord(path=info.path, size_bytes=info.size_bytes, sha256=info.sha256),
        )
        self.logs.seal(job_id)

    def _install(self, job_id: str, workspace: Path, fingerprint: str) -> bool:
        """
        Restore node_modules from cache or run the install command.
        Returns True when a fresh install ran (the tree is worth caching).
        """
        strategy = select_install_strategy(workspace)
        node_modules = workspace / "node_modules"

        try:
            restored = self.cache.restore(fingerprint, node_modules)
        except CacheError as e:
            self._log(job_id, f"[cache] restore failed: {e}")
            shutil.rmtree(node_modules, ignore_errors=True)
            restored = False

        if restored:
            self._log(job_id, "[cache] Restored node_modules from cache")
            self.registry.record_install(job_id, strategy.package_manager.value, cache_hit=True)
            return False

        self._log(job_id, f"[install] using {strategy.package_manager.value}")
        result = self.runner(
            list(strategy.command),
            workspace,
            timeout=self.config.install_timeout_s,
            env_override={"NODE_ENV": "development", "npm_config_production": "false"},
        )
        self._log_command(job_id, "install", result)
        self.registry.record_install(job_id, strategy.package_manager.value, cache_hit=False)

        if result.timed_out:
            raise InstallError(f"{strategy.package_manager.value} install timed out after {self.config.install_timeout_s}s")
        if result.exit_code != 0:
            raise InstallError(f"{strategy.package_manager.value} install exited with code {result.exit_code}")
        return True

    def _populate_cache(self, job_id: str, fingerprint: str, node_modules: Path) -> None:
        if not node_modules.is_dir():
            self._log(job_id, "[cache] no node_modules to cache")
            return
        try:
            if self.cache.populate(fingerprint, node_modules):
                self._log(job_id, f"[cache] node_modules cached: {fingerprint}")
            else:
                self._log(job_id, f"[cache] already cached: {fingerprint}")
        except CacheError as e:
            self._log(job_id, f"[cache] populate failed: {e}")

    def _build(self, job_id: str, workspace: Path, build_command: str) -> None:
        try:
            argv = shlex.split(build_command)
        except ValueError as e:
            raise BuildError(f"Invalid build command: {e}") from e
        if not argv:
            raise BuildError("Build command is empty")

        result = self.runner(argv, workspace, timeout=self.config.build_timeout_s)
        self._log_command(job_id, "build", result)

        if result.timed_out:
            raise BuildError(f"build command timed out after {self.config.build_timeout_s}s")
        if result.exit_code != 0:
            raise BuildError(f"build command exited with code {result.exit_code}")
