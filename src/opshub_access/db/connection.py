"""SQLite connection factory for the access ledger."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


class Database:
    """Thread-safe SQLite connection manager.

    Uses WAL mode for concurrent readers and a threading lock for writes.
    Each thread gets its own connection via thread-local storage.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._db_path

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._get_conn().execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._get_conn().execute(sql, params).fetchall()

    def write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a single write and commit it."""
        with self._write_lock:
            conn = self._get_conn()
            try:
                cursor = conn.execute(sql, params)
            except sqlite3.Error:
                conn.rollback()
                raise
            conn.commit()
            return cursor

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several writes atomically; rolls back if the block raises."""
        with self._write_lock:
            conn = self._get_conn()
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def write_script(self, sql: str) -> None:
        """Execute a multi-statement SQL script."""
        with self._write_lock:
            conn = self._get_conn()
            conn.executescript(sql)

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
