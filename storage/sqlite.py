"""SQLite helpers for the persistence layer."""
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from config.settings import settings


@contextmanager
def get_conn() -> Iterator[sqlite3.Connection]:
    """Yield a SQLite connection, ensuring the data directory exists.

    Everything written inside the block is committed together when it exits
    cleanly and discarded when it raises.
    """

    directory = os.path.dirname(settings.DB_PATH) or "."
    os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(settings.DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def use_conn(conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    """Reuse the caller's connection (and transaction) or open a fresh one."""

    if conn is not None:
        yield conn
        return
    with get_conn() as fresh:
        yield fresh
