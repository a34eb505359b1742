"""SQLite engine and session management.

One engine per process. ``init_db`` may be called again (tests, MCP
lifespan) and replaces the previous engine.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from cadence.config import get_settings
from cadence.models import Base

_lock = threading.Lock()
_engine = None
_SessionLocal = None
_current_db_path: Path | None = None


def _enable_sqlite_fks(dbapi_conn, _record) -> None:
    # analysis_debate / arbiter / guidance rows cascade from analysis_run
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(db_path: str | Path | None = None) -> None:
    """Create the engine and all tables, including the running-run partial index."""
    global _engine, _SessionLocal, _current_db_path
    if db_path is None:
        settings = get_settings()
        settings.ensure_directories()
        db_path = settings.database_path
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        event.listen(_engine, "connect", _enable_sqlite_fks)
        Base.metadata.create_all(_engine)
        # Orchestrator commits per transition and re-reads nothing after commit
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _current_db_path = db_path


def get_session() -> Session:
    with _lock:
        factory = _SessionLocal
    if factory is None:
        raise RuntimeError("init_db() has not been called")
    return factory()


def _transaction() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# MCP tools
session_scope = contextmanager(_transaction)


def session_generator() -> Generator[Session, None, None]:
    """FastAPI dependency body; see ``cadence.app.db_session``."""
    yield from _transaction()


def current_db_path() -> Path | None:
    return _current_db_path
