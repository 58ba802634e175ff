from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings


# ---------- Engine / Session ----------

def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    # several writers (pipeline thread, watchdog, API) share one file
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL")
    cur.execute("PRAGMA busy_timeout=30000")
    cur.close()


class Database:
    """
    Engine + session factory for one database URL.

    Built once by the app (stored on `app.state.db`) and passed explicitly to
    the pipeline, state machine and progress gateway; tests build their own
    against a temporary file.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        # echo=False to keep tests quiet
        self.engine: Engine = create_engine(url, future=True, echo=False, connect_args=connect_args)
        if url.startswith("sqlite") and ":memory:" not in url:
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )

    def init_db(self) -> None:
        """Create ORM tables (no-op on existing ones)."""
        # Import models here to avoid circular imports
        from .models import Base  # noqa: WPS433 (import inside function)

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()


def create_database(url: str | None = None) -> Database:
    db = Database(url or get_settings().db_url)
    db.init_db()
    return db


def get_db(request: Request) -> Database:
    """FastAPI dependency: the Database the app was started with."""
    return request.app.state.db
