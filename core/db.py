from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "connect",
    "configure_connection",
    "read_transaction",
    "transaction",
]

DEFAULT_BUSY_TIMEOUT_MS = 5000


def connect(
    db_path: str | Path,
    *,
    timeout: float = 5.0,
    isolation_level: Optional[str] = None,
    check_same_thread: bool = False,
) -> sqlite3.Connection:
    """Return a configured SQLite connection in autocommit mode.

    Transactions are opened explicitly through :func:`transaction` and
    :func:`read_transaction` so multi-statement work is always bracketed.
    """

    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(path),
        timeout=timeout,
        isolation_level=isolation_level,
        check_same_thread=check_same_thread,
    )
    configure_connection(conn)
    return conn


def configure_connection(conn: sqlite3.Connection, *, enable_wal: bool = True) -> None:
    conn.execute(f"PRAGMA busy_timeout={int(DEFAULT_BUSY_TIMEOUT_MS)}")
    if enable_wal:
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.DatabaseError:
            pass
    try:
        conn.execute("PRAGMA foreign_keys=ON")
    except sqlite3.DatabaseError:
        pass


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Write transaction holding the database write lock from the start."""

    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


@contextmanager
def read_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Deferred transaction; every SELECT inside sees the same snapshot."""

    conn.execute("BEGIN")
    try:
        yield conn
    finally:
        conn.rollback()
