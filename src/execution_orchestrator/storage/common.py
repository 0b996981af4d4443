"""Time and SQLite helpers shared by the registry and the runtime components."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import UTC, date, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def utc_day(value: datetime) -> date:
    """Calendar day in UTC; daily budgets roll over at UTC midnight."""

    return to_utc_aware(value).date()


def to_db_datetime(value: datetime) -> datetime:
    """Normalize to naive UTC for SQLite storage."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware(value: datetime) -> datetime:
    """Re-attach UTC to values read back from SQLite."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int = 5000) -> Engine:
    """Engine shared by the API thread, dispatch threads and the tick loop."""

    engine = create_engine(
        sqlite_url(db_path),
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def connect_sqlite_with_policy(*, db_path: Path, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Raw sqlite3 connection with the engine's pragmas, for diagnostics."""

    connection = sqlite3.connect(db_path, check_same_thread=False)
    _apply_sqlite_pragmas(connection, busy_timeout_ms=busy_timeout_ms)
    connection.row_factory = sqlite3.Row
    return connection


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()
