"""Shared SQLite connection setup for the job store and the queue."""

import sqlite3
from pathlib import Path

from sqlite_utils import Database


def open_database(db_path: str, timeout_s: float = 30.0) -> Database:
    """Open (creating if needed) a WAL-mode SQLite database.

    The connection may be handed between threads; callers serialize access
    with their own lock.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path), timeout=timeout_s, check_same_thread=False)
    db = Database(conn)

    # Enable WAL mode for better concurrent performance
    db.conn.execute("PRAGMA journal_mode=WAL")
    db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
    db.conn.commit()
    return db
