"""Build history database.

Every orchestrated build attempt is mirrored into a small SQL database
(SQLite by default) so operators can see when each OS version was last
built and why a run failed. The history is advisory: nothing in the build
pipeline reads it back to make decisions.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from goldenimage.config import get_settings

SQLITE_FILE_PREFIX = "sqlite:///"


class Base(DeclarativeBase):
    """Declarative base for history tables."""


def _ensure_sqlite_parent(db_url: str) -> None:
    db_file = db_url.removeprefix(SQLITE_FILE_PREFIX)
    if db_file and db_file != ":memory:":
        Path(db_file).parent.mkdir(parents=True, exist_ok=True)


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the history database.

    Args:
        db_url: Database URL (default: settings.db_url).

    Returns:
        SQLAlchemy Engine. For SQLite files the parent directory is created.
    """
    db_url = db_url or get_settings().db_url

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if db_url.startswith(SQLITE_FILE_PREFIX):
            _ensure_sqlite_parent(db_url)

    return create_engine(db_url, connect_args=connect_args, echo=False)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to engine (default: from settings)."""
    return sessionmaker(
        bind=engine or get_engine(), autoflush=False, expire_on_commit=False
    )


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error."""
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the history tables if they do not exist yet."""
    # Models must be imported before create_all sees them
    from goldenimage.builds import models as builds_models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


def open_history(db_url: str | None = None) -> sessionmaker[Session]:
    """Open the history database, creating its tables on first use.

    Args:
        db_url: Database URL (default: settings.db_url).

    Returns:
        Session factory for BuildRecord queries and updates.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_history",
]
