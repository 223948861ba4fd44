"""
Build service configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).parent.parent.parent

DEFAULT_CACHE_MAX_ENTRIES = 5
DEFAULT_CACHE_MAX_BYTES = 2 * 1024 * 1024 * 1024  # 2GB


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class BuilderConfig:
    """Build service configuration (immutable)."""
    data_dir: Path
    builds_dir: Path
    cache_dir: Path
    workspaces_dir: Path
    api_keys: tuple[str, ...] = field(default_factory=tuple)  # Never logged
    admin_key: Optional[str] = None  # Never logged
    install_timeout_s: float = 120.0
    build_timeout_s: float = 120.0
    wait_timeout_s: float = 300.0
    cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    cache_max_bytes: int = DEFAULT_CACHE_MAX_BYTES
    job_history: int = 100
    workers: int = 1
    start_workers: bool = True
    queue_poll_s: float = 1.0
    queue_lease_s: float = 1800.0
    log_buffer: int = 1000
    output_dir: str = "dist"
    default_build_command: str = "npm run build"
    log_level: str = "INFO"
    port: int = 3000

    @property
    def database_path(self) -> Path:
        return self.data_dir / "builder.db"

    def public_view(self) -> dict:
        """Effective configuration without secrets (admin diagnostics)."""
        return {
            "data_dir": str(self.data_dir),
            "builds_dir": str(self.builds_dir),
            "cache_dir": str(self.cache_dir),
            "workspaces_dir": str(self.workspaces_dir),
            "install_timeout_s": self.install_timeout_s,
            "build_timeout_s": self.build_timeout_s,
            "wait_timeout_s": self.wait_timeout_s,
            "cache_max_entries": self.cache_max_entries,
            "cache_max_bytes": self.cache_max_bytes,
            "job_history": self.job_history,
            "workers": self.workers,
            "output_dir": self.output_dir,
            "default_build_command": self.default_build_command,
            "port": self.port,
            "api_keys_configured": len(self.api_keys),
            "admin_key_set": bool(self.admin_key),
        }


def get_config() -> BuilderConfig:
    """Load build service configuration from environment."""
    data_dir = Path(os.getenv("BUILDER_DATA_DIR") or (PROJECT_ROOT / "data"))
    builds_dir = Path(os.getenv("BUILDER_BUILDS_DIR") or (data_dir / "builds"))
    cache_dir = Path(os.getenv("BUILDER_CACHE_DIR") or (data_dir / "cache"))
    workspaces_dir = Path(os.getenv("BUILDER_WORKSPACES_DIR") or (data_dir / "workspaces"))

    api_keys = tuple(
        k.strip() for k in os.getenv("BUILDER_API_KEYS", "").split(",") if k.strip()
    )

    return BuilderConfig(
        data_dir=data_dir,
        builds_dir=builds_dir,
        cache_dir=cache_dir,
        workspaces_dir=workspaces_dir,
        api_keys=api_keys,
        admin_key=os.getenv("BUILDER_ADMIN_KEY") or None,
        install_timeout_s=_float_env("BUILDER_INSTALL_TIMEOUT_S", 120.0),
        build_timeout_s=_float_env("BUILDER_BUILD_TIMEOUT_S", 120.0),
        wait_timeout_s=_float_env("BUILDER_WAIT_TIMEOUT_S", 300.0),
        cache_max_entries=_int_env("BUILDER_CACHE_MAX_ENTRIES", DEFAULT_CACHE_MAX_ENTRIES),
        cache_max_bytes=_int_env("BUILDER_CACHE_MAX_BYTES", DEFAULT_CACHE_MAX_BYTES),
        job_history=_int_env("BUILDER_JOB_HISTORY", 100),
        workers=max(1, _int_env("BUILDER_WORKERS", 1)),
        start_workers=_bool_env("BUILDER_START_WORKERS", True),
        queue_poll_s=_float_env("BUILDER_QUEUE_POLL_S", 1.0),
        queue_lease_s=_float_env("BUILDER_QUEUE_LEASE_S", 1800.0),
        log_buffer=max(1, _int_env("BUILDER_LOG_BUFFER", 1000)),
        output_dir=os.getenv("BUILDER_OUTPUT_DIR", "dist"),
        default_build_command=os.getenv("BUILDER_DEFAULT_BUILD_COMMAND", "npm run build"),
        log_level=os.getenv("BUILDER_LOG_LEVEL", "INFO"),
        port=_int_env("PORT", 3000),
    )
