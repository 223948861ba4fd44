"""
SQLite database engine and session management.
Database path: <BUILDER_DATA_DIR>/builder.db (data/ under the project root by default).
"""
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from app.core.config import get_config

# Base class for models
Base = declarative_base()


def create_sqlite_engine(database_path: Path) -> Engine:
    """Create a SQLite engine usable from worker threads."""
    database_path = Path(database_path)
    database_path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        f"sqlite:///{database_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False,  # No SQL logging (payloads may contain file contents)
    )


def create_session_factory(database_path: Path) -> sessionmaker:
    """
    Create an isolated engine + session factory and make sure tables exist.
    Used by tests and by standalone workers pointed at another data dir.
    """
    isolated_engine = create_sqlite_engine(database_path)
    init_db(isolated_engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=isolated_engine)


DATABASE_PATH = get_config().database_path

engine = create_sqlite_engine(DATABASE_PATH)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = None):
    """Initialize database tables."""
    from app.db.models import BuildJob, QueueItem, CacheEntry, CacheSettings  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
