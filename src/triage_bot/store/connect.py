from __future__ import annotations

import os
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from triage_bot.logging import get_logger

from .models import StoreBase


logger = get_logger(__name__)

DEFAULT_DB_PATH = Path.home() / ".triage-bot" / "triage-bot.db"


def sqlite_uri(db_path: str | Path | None = None) -> str:
    """Return a SQLite URI for ``db_path``, else ``TRIAGE_BOT_DB_PATH``, else the default."""

    raw = str(db_path).strip() if db_path is not None else (os.getenv("TRIAGE_BOT_DB_PATH") or "").strip()
    if not raw:
        raw = str(DEFAULT_DB_PATH)
    if raw.startswith("sqlite"):
        return raw
    path = Path(raw).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return "sqlite:///" + str(path)


def sqlite_engine(db_uri: str) -> Engine:
    engine = create_engine(db_uri, connect_args={"check_same_thread": False}, echo=False)
    trace_sql = os.getenv("TRIAGE_BOT_SQL_TRACE")

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        if trace_sql:
            dbapi_connection.set_trace_callback(lambda statement: logger.info(statement))
        cursor.close()

    return engine


# Columns added after the first release; created on older files with ALTER TABLE.
_ADDITIVE_COLUMNS: dict[str, list[tuple[str, str]]] = {
    "channel_message": [("reply_ts", "TEXT"), ("classified_at", "DATETIME")],
    "run_trace": [("mutations_json", "JSON"), ("error", "TEXT")],
}


def _ensure_columns(engine: Engine) -> None:
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    for table, wanted in _ADDITIVE_COLUMNS.items():
        if table not in tables:
            continue
        present = {col["name"] for col in inspector.get_columns(table)}
        missing = [(name, col_type) for name, col_type in wanted if name not in present]
        if not missing:
            continue
        with engine.begin() as conn:
            for name, col_type in missing:
                conn.execute(text(f'ALTER TABLE {table} ADD COLUMN "{name}" {col_type}'))
        logger.info("Added missing columns %s.%s", table, ", ".join(name for name, _ in missing))


@lru_cache(maxsize=None)
def get_engine(db_uri: str) -> Engine:
    engine = sqlite_engine(db_uri)
    StoreBase.metadata.create_all(bind=engine)
    _ensure_columns(engine)
    return engine


@contextmanager
def get_session(db_uri: str) -> Iterator[Session]:
    """Session that commits on clean exit and rolls back on any error."""

    SessionLocal = sessionmaker(bind=get_engine(db_uri), expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
