"""
Pydantic schemas for the build API requests and responses.
"""
import base64
import binascii
import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_FILES_PER_BUILD = 5000
MAX_PATH_LENGTH = 512


# =============================================================================
# Request Schemas
# =============================================================================

class BuildFile(BaseModel):
    """One project file. Text in `content` or bytes in `contentBase64`; neither means empty."""

    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(
        description="Path relative to the project root",
        min_length=1,
        max_length=MAX_PATH_LENGTH,
    )
    content: Optional[str] = Field(default=None, description="UTF-8 text content")
    content_base64: Optional[str] = Field(
        default=None,
        alias="contentBase64",
        description="Base64-encoded binary content",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Reject absolute paths and traversal."""
        v = v.replace("\\", "/")
        if v.startswith("/") or (len(v) > 1 and v[1] == ":"):
            raise ValueError(f"Path must be relative: {v}")
        normalized = os.path.normpath(v)
        if ".." in normalized.split(os.sep) or normalized in (".", ""):
            raise ValueError(f"Invalid path: {v}")
        if "\x00" in v:
            raise ValueError("Path contains a NUL byte")
        return normalized.replace(os.sep, "/")

    @field_validator("content_base64")
    @classmethod
    def validate_base64(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("contentBase64 is not valid base64")
        return v

    @model_validator(mode="after")
    def validate_single_content(self) -> "BuildFile":
        if self.content is not None and self.content_base64 is not None:
            raise ValueError("Provide at most one of content or contentBase64")
        return self

    def data(self) -> bytes:
        """Decoded file bytes."""
        if self.content is not None:
            return self.content.encode("utf-8")
        if self.content_base64 is not None:
            return base64.b64decode(self.content_base64)
        return b""

    def to_payload(self) -> dict:
        """Queue payload form (what the worker materializes)."""
        item = {"path": self.path}
        if self.content is not None:
            item["content"] = self.content
        elif self.content_base64 is not None:
            item["contentBase64"] = self.content_base64
        return item


class BuildRequest(BaseModel):
    """Request body for POST /build."""

    model_config = ConfigDict(populate_by_name=True)

    files: list[BuildFile] = Field(
        description="Project files",
        min_length=1,
        max_length=MAX_FILES_PER_BUILD,
    )
    build_command: Optional[str] = Field(
        default=None,
        alias="buildCommand",
        description="Build command (defaults to `npm run build`)",
        max_length=1000,
    )
    install_dependencies: bool = Field(
        default=True,
        alias="installDependencies",
        description="Install node_modules (restoring from cache when possible)",
    )
    wait_for_completion: bool = Field(
        default=False,
        alias="waitForCompletion",
        description="Hold the request until the build finishes and return the zip",
    )

    @field_validator("build_command")
    @classmethod
    def validate_build_command(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def validate_unique_paths(self) -> "BuildRequest":
        seen = set()
        for f in self.files:
            if f.path in seen:
                raise ValueError(f"Duplicate path: {f.path}")
            seen.add(f.path)
        return self


class CacheSettingsRequest(BaseModel):
    """Request body for POST /admin/cache/settings."""

    model_config = ConfigDict(populate_by_name=True)

    max_entries: Optional[int] = Field(default=None, alias="maxEntries", ge=0)
    max_bytes: Optional[int] = Field(default=None, alias="maxBytes", ge=0)


# =============================================================================
# Response Schemas
# =============================================================================

class BuildSubmitResponse(BaseModel):
    """Response for POST /build (async)."""
    id: str
    status: str
    artifact: Optional[str] = None
    status_url: str
    logs_url: str


class BuildStatusResponse(BaseModel):
    """Response for GET /builds/{id}."""
    id: str
    status: str
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    build_command: str
    install_dependencies: bool
    dependency_fingerprint: str
    package_manager: Optional[str] = None
    cache_hit: bool = False
    attempts: int = 0
    error: Optional[str] = None
    artifact: Optional[str] = None
    artifact_size_bytes: Optional[int] = None
    artifact_sha256: Optional[str] = None
    logs: Optional[str] = None


class BuildLogsResponse(BaseModel):
    """Response for GET /builds/{id}/logs."""
    id: str
    logs: str


class BuildListResponse(BaseModel):
    """Response for GET /admin/builds."""
    builds: list[BuildStatusResponse]
    total: int
    limit: int
    offset: int


class CacheEntryResponse(BaseModel):
    fingerprint: str
    size_bytes: int
    created_at: str
    last_used_at: str


class CacheSettingsResponse(BaseModel):
    max_entries: int
    max_bytes: int


class CacheListResponse(BaseModel):
    """Response for GET /admin/cache."""
    entries: list[CacheEntryResponse]
    settings: CacheSettingsResponse
    total_bytes: int


class AdminMetricsResponse(BaseModel):
    """Response for GET /admin/metrics."""
    job_counts: dict[str, int]
    total_builds: int
    cache_entries: int
    total_cache_bytes: int
