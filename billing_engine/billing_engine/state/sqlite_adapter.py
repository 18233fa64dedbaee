"""SQLite engine for local development and the test suite.

Uses the same ORM tables as the PostgreSQL backend.  Differences:

* SQLAlchemy emits BEGIN itself so savepoints work.
* No connection pooling for files; ``:memory:`` databases share a single
  connection so every session sees the same schema.
* ``SELECT ... FOR UPDATE`` is ignored; SQLite serialises writers.
* JSONB columns fall back to SQLite's JSON (stored as text).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def get_local_engine(db_path: Path | str = ".billing/state.db") -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are created
        automatically.  Use ``:memory:`` for an ephemeral database.
    """
    if db_path == ":memory:":
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"
        engine = create_async_engine(url, echo=False, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()
        # Let SQLAlchemy own BEGIN so SAVEPOINT (begin_nested) behaves.
        dbapi_conn.isolation_level = None  # type: ignore[attr-defined]

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    logger.info("Created SQLite engine: %s", url)
    return engine
