"""
Error taxonomy for the build pipeline.

Rejections (raised before a job exists): ValidationError, AuthError.
Non-fatal: CacheError (pipeline continues as a fresh install).
Terminal job failures: InstallError, BuildError, PackagingError.
Orchestration bugs: InternalError.
"""
from typing import Optional


class BuilderError(Exception):
    """Base class for build service errors."""
    kind = "builder_error"


class ValidationError(BuilderError):
    """Malformed submission (missing files, bad path, bad encoding)."""
    kind = "validation_error"


class AuthError(BuilderError):
    """Missing or invalid credential."""
    kind = "auth_error"

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class CacheError(BuilderError):
    """Cache restore or populate failed. Never fails a job."""
    kind = "cache_error"


class JobFailure(BuilderError):
    """A pipeline step failed; the job transitions to failed."""
    kind = "job_failure"

    def __init__(self, message: str, output: Optional[str] = None):
        super().__init__(message)
        self.output = output


class InstallError(JobFailure):
    kind = "install_error"


class BuildError(JobFailure):
    kind = "build_error"


class PackagingError(JobFailure):
    kind = "packaging_error"


class InternalError(BuilderError):
    """Unexpected failure during orchestration."""
    kind = "internal_error"


class InvalidTransition(InternalError):
    """A status change that is not strictly forward."""
    kind = "invalid_transition"


class LogSealedError(InternalError):
    """Append to the log of a job that already reached a terminal state."""
    kind = "log_sealed"
