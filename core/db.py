"""
core/db.py -- Engine construction and timestamp helpers shared by the stores.

Both auth/store.py and catalog/store.py point at the same DATABASE_URL but
own separate MetaData objects, so each package can evolve its schema
independently.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision: lexicographic order equals chronological order, so ORDER BY and
"expires_at > now" comparisons work on plain TEXT columns.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new connection.

    SQLite PRAGMAs are per-connection, so they must be set from a connect
    listener rather than once at startup.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # FastAPI runs sync endpoints in a threadpool, so one pooled SQLite
        # connection may be used from several threads.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))
