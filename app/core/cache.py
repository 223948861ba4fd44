"""
Content-addressed cache of installed node_modules trees.

Entries are keyed by dependency fingerprint and bounded by entry count and
total bytes; least recently used entries are evicted first.

Locking:
- population is exclusive per fingerprint (fingerprint-keyed lock)
- restores share the index lock, eviction/removal hold it exclusively
- the fingerprint primary key rejects duplicates written by other processes
"""
import hashlib
import json
import logging
import os
import shutil
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.core.config import get_config
from app.core.errors import CacheError, ValidationError
from app.core.metrics import metrics
from app.db.database import SessionLocal
from app.db.models import CacheEntry as CacheEntryModel, CacheSettings

logger = logging.getLogger(__name__)

MANIFEST_FILE = "package.json"

# Lockfile priority matches package manager selection in the build runner
LOCKFILES = ("pnpm-lock.yaml", "yarn.lock", "package-lock.json")

STAGING_DIR_NAME = ".staging"


# =============================================================================
# Fingerprinting
# =============================================================================

def compute_fingerprint(
    manifest: Optional[Union[bytes, str]],
    lockfile: Optional[bytes] = None,
) -> str:
    """
    Hash a project's declared dependency set.

    A lockfile wins: its raw bytes are hashed. Otherwise only
    dependencies/devDependencies from the manifest are hashed, in canonical
    form, so edits to scripts or metadata keep the same fingerprint.
    """
    if lockfile is not None:
        content = lockfile
    elif manifest is not None:
        if isinstance(manifest, str):
            manifest = manifest.encode("utf-8")
        try:
            pkg = json.loads(manifest.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            pkg = None
        if isinstance(pkg, dict):
            deps = {
                "dependencies": pkg.get("dependencies") or {},
                "devDependencies": pkg.get("devDependencies") or {},
            }
            content = json.dumps(deps, sort_keys=True, separators=(",", ":")).encode("utf-8")
        else:
            # Unparseable manifest: the install will fail anyway, keep it deterministic
            content = manifest
    else:
        content = b""
    return hashlib.sha256(content).hexdigest()


def fingerprint_files(files: Mapping[str, bytes]) -> str:
    """Fingerprint an in-memory project (normalized relative path -> bytes)."""
    lockfile = next((files[name] for name in LOCKFILES if name in files), None)
    return compute_fingerprint(files.get(MANIFEST_FILE), lockfile)


def fingerprint_workspace(root: Path) -> str:
    """Fingerprint a project materialized on disk."""
    root = Path(root)
    lockfile = None
    for name in LOCKFILES:
        candidate = root / name
        if candidate.is_file():
            lockfile = candidate.read_bytes()
            break
    manifest_path = root / MANIFEST_FILE
    manifest = manifest_path.read_bytes() if manifest_path.is_file() else None
    return compute_fingerprint(manifest, lockfile)


def compute_dir_size(path: Path) -> int:
    """Recursive byte-sum of regular files (symlinks are not followed)."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            file_path = os.path.join(dirpath, name)
            try:
                st = os.lstat(file_path)
            except OSError:
                continue
            if not os.path.islink(file_path):
                total += st.st_size
    return total


# =============================================================================
# Cache index
# =============================================================================

@dataclass
class CacheEntry:
    """A cached dependency tree."""
    fingerprint: str
    path: Path
    size_bytes: int
    created_at: datetime
    last_used_at: datetime


@dataclass(frozen=True)
class CacheLimits:
    max_entries: int
    max_bytes: int


def _model_to_entry(model: CacheEntryModel) -> CacheEntry:
    return CacheEntry(
        fingerprint=model.fingerprint,
        path=Path(model.path),
        size_bytes=model.size_bytes,
        created_at=datetime.fromtimestamp(model.created_at, tz=timezone.utc),
        last_used_at=datetime.fromtimestamp(model.last_used_at, tz=timezone.utc),
    )


class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class DependencyCache:
    """Disk-backed node_modules cache with LRU eviction."""

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        session_factory: Optional[sessionmaker] = None,
        max_entries: Optional[int] = None,
        max_bytes: Optional[int] = None,
    ):
        config = get_config()
        self._cache_dir = Path(cache_dir) if cache_dir else config.cache_dir
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._session_factory = session_factory or SessionLocal
        self._default_limits = CacheLimits(
            max_entries=config.cache_max_entries if max_entries is None else max_entries,
            max_bytes=config.cache_max_bytes if max_bytes is None else max_bytes,
        )
        self._index_lock = _ReadWriteLock()
        self._touch_lock = threading.Lock()
        self._population_locks: dict[str, tuple[threading.Lock, int]] = {}  # lock, users
        self._population_locks_guard = threading.Lock()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    @contextmanager
    def _population_lock(self, fingerprint: str):
        """Serialise populate() per fingerprint; the lock is dropped once unused."""
        with self._population_locks_guard:
            lock, users = self._population_locks.get(fingerprint, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._population_locks[fingerprint] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._population_locks_guard:
                lock, users = self._population_locks[fingerprint]
                if users <= 1:
                    del self._population_locks[fingerprint]
                else:
                    self._population_locks[fingerprint] = (lock, users - 1)

    @staticmethod
    def _next_seq(db) -> int:
        current = db.query(func.max(CacheEntryModel.use_seq)).scalar()
        return (current or 0) + 1

    def _limits(self, db) -> CacheLimits:
        row = db.get(CacheSettings, 1)
        if row is None:
            return self._default_limits
        return CacheLimits(max_entries=row.max_entries, max_bytes=row.max_bytes)

    def _delete_entry(self, db, model: CacheEntryModel) -> None:
        shutil.rmtree(model.path, ignore_errors=True)
        db.delete(model)

    def _enforce_limits_locked(self, db) -> list[str]:
        """Evict LRU entries until both bounds hold. Caller holds the write lock."""
        limits = self._limits(db)
        entries = (
            db.query(CacheEntryModel)
            .order_by(CacheEntryModel.last_used_at.asc(), CacheEntryModel.use_seq.asc())
            .all()
        )
        evicted = []

        while len(entries) > limits.max_entries:
            victim = entries.pop(0)
            self._delete_entry(db, victim)
            evicted.append(victim.fingerprint)

        total = sum(e.size_bytes for e in entries)
        while total > limits.max_bytes and entries:
            victim = entries.pop(0)
            self._delete_entry(db, victim)
            evicted.append(victim.fingerprint)
            total = sum(e.size_bytes for e in entries)

        db.commit()

        if evicted:
            metrics.inc("cache_evictions_total", len(evicted))
            logger.info(f"cache_evicted count={len(evicted)} remaining={len(entries)} total_bytes={total}")
        return evicted

    # -------------------------------------------------------------------------
    # Pipeline operations
    # -------------------------------------------------------------------------

    def restore(self, fingerprint: str, destination: Path) -> bool:
        """
        Copy a cached tree into destination.
        Returns False on a miss; raises CacheError if the copy fails.
        """
        destination = Path(destination)
        with self._index_lock.read():
            db = self._session_factory()
            try:
                model = db.get(CacheEntryModel, fingerprint)
                if model is None:
                    metrics.inc("cache_misses_total")
                    logger.debug(f"cache_miss fingerprint={fingerprint[:16]}")
                    return False

                source = Path(model.path)
                if not source.is_dir():
                    metrics.inc("cache_errors_total")
                    raise CacheError(f"Cache entry {fingerprint[:16]} missing on disk")

                try:
                    destination.mkdir(parents=True, exist_ok=True)
                    shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
                except (OSError, shutil.Error) as e:
                    metrics.inc("cache_errors_total")
                    raise CacheError(f"Cache restore failed: {type(e).__name__}") from e

                with self._touch_lock:
                    model.last_used_at = time.time()
                    model.use_seq = self._next_seq(db)
                    db.commit()
            finally:
                db.close()

        metrics.inc("cache_hits_total")
        logger.info(f"cache_restored fingerprint={fingerprint[:16]}")
        return True

    def populate(self, fingerprint: str, source_dir: Path) -> bool:
        """
        Store source_dir under fingerprint, then enforce limits.
        Returns False when an entry already exists (no-op).
        """
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise CacheError(f"Nothing to cache: {source_dir.name} is not a directory")

        with self._population_lock(fingerprint):
            if self.get(fingerprint) is not None:
                return False

            staging = self._cache_dir / STAGING_DIR_NAME / f"{fingerprint}-{uuid.uuid4().hex}"
            try:
                staging.parent.mkdir(parents=True, exist_ok=True)
                shutil.copytree(source_dir, staging, symlinks=True)
                size = compute_dir_size(staging)
            except (OSError, shutil.Error) as e:
                shutil.rmtree(staging, ignore_errors=True)
                metrics.inc("cache_errors_total")
                raise CacheError(f"Cache populate failed: {type(e).__name__}") from e

            final = self._cache_dir / fingerprint
            with self._index_lock.write():
                db = self._session_factory()
                try:
                    if db.get(CacheEntryModel, fingerprint) is not None:
                        shutil.rmtree(staging, ignore_errors=True)
                        return False

                    try:
                        # Orphaned directory from a crash between rename and commit
                        if final.exists():
                            shutil.rmtree(final, ignore_errors=True)
                        os.replace(staging, final)
                    except OSError as e:
                        # e.g. the staging copy was removed by clear() meanwhile
                        shutil.rmtree(staging, ignore_errors=True)
                        metrics.inc("cache_errors_total")
                        raise CacheError(f"Cache populate failed: {type(e).__name__}") from e

                    now = time.time()
                    db.add(CacheEntryModel(
                        fingerprint=fingerprint,
                        path=str(final),
                        size_bytes=size,
                        created_at=now,
                        last_used_at=now,
                        use_seq=self._next_seq(db),
                    ))
                    try:
                        db.commit()
                    except IntegrityError:
                        # Registered concurrently by another process
                        db.rollback()
                        return False

                    self._enforce_limits_locked(db)
                finally:
                    db.close()

        metrics.inc("cache_populated_total")
        logger.info(f"cache_populated fingerprint={fingerprint[:16]} size={size}")
        return True

    # -------------------------------------------------------------------------
    # Administrative operations
    # -------------------------------------------------------------------------

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        db = self._session_factory()
        try:
            model = db.get(CacheEntryModel, fingerprint)
            return _model_to_entry(model) if model else None
        finally:
            db.close()

    def entries(self) -> list[CacheEntry]:
        """Entries, most recently used first."""
        db = self._session_factory()
        try:
            models = (
                db.query(CacheEntryModel)
                .order_by(CacheEntryModel.last_used_at.desc(), CacheEntryModel.use_seq.desc())
                .all()
            )
            return [_model_to_entry(m) for m in models]
        finally:
            db.close()

    def total_bytes(self) -> int:
        db = self._session_factory()
        try:
            return db.query(func.coalesce(func.sum(CacheEntryModel.size_bytes), 0)).scalar()
        finally:
            db.close()

    def remove(self, fingerprint: str) -> bool:
        """Remove one entry. Returns True if it existed."""
        with self._index_lock.write():
            db = self._session_factory()
            try:
                model = db.get(CacheEntryModel, fingerprint)
                if model is None:
                    return False
                self._delete_entry(db, model)
                db.commit()
            finally:
                db.close()
        logger.info(f"cache_removed fingerprint={fingerprint[:16]}")
        return True

    def clear(self) -> int:
        """Remove every entry. Returns the count removed."""
        with self._index_lock.write():
            db = self._session_factory()
            try:
                models = db.query(CacheEntryModel).all()
                for model in models:
                    self._delete_entry(db, model)
                db.commit()
            finally:
                db.close()
            shutil.rmtree(self._cache_dir / STAGING_DIR_NAME, ignore_errors=True)
        logger.info(f"cache_clear_all deleted={len(models)}")
        return len(models)

    def get_limits(self) -> CacheLimits:
        db = self._session_factory()
        try:
            return self._limits(db)
        finally:
            db.close()

    def set_limits(
        self,
        max_entries: Optional[int] = None,
        max_bytes: Optional[int] = None,
    ) -> CacheLimits:
        """Update limits (unset values keep their current setting) and evict."""
        if max_entries is not None and max_entries < 0:
            raise ValidationError("max_entries must be >= 0")
        if max_bytes is not None and max_bytes < 0:
            raise ValidationError("max_bytes must be >= 0")

        with self._index_lock.write():
            db = self._session_factory()
            try:
                current = self._limits(db)
                limits = CacheLimits(
                    max_entries=current.max_entries if max_entries is None else max_entries,
                    max_bytes=current.max_bytes if max_bytes is None else max_bytes,
                )
                row = db.get(CacheSettings, 1)
                if row is None:
                    db.add(CacheSettings(id=1, max_entries=limits.max_entries, max_bytes=limits.max_bytes))
                else:
                    row.max_entries = limits.max_entries
                    row.max_bytes = limits.max_bytes
                db.commit()
                self._enforce_limits_locked(db)
            finally:
                db.close()

        logger.info(f"cache_limits_updated max_entries={limits.max_entries} max_bytes={limits.max_bytes}")
        return limits


# Global cache instance
dependency_cache = DependencyCache()
