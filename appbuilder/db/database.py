"""
SQLite database engine and session management.
Database path: APPBUILDER_DB_PATH (default data/builds.db).
"""
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from appbuilder.core.config import get_config

# Base class for models
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """Create a SQLite engine usable from worker threads."""
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False},
        echo=False,
    )


def make_session_factory(database_url: str) -> sessionmaker:
    """Create a session factory bound to a fresh engine with tables created."""
    bind = make_engine(database_url)
    init_db(bind)
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


def init_db(bind: Engine | None = None) -> None:
    """Initialize database tables."""
    from appbuilder.db.models import Build, BuildEvent  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)


_config = get_config()
Path(_config.db_path).parent.mkdir(parents=True, exist_ok=True)

engine = make_engine(_config.database_url)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
