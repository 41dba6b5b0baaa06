"""Database backend abstraction for state persistence."""

from __future__ import annotations

import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

MEMORY_DB = ":memory:"


class DatabaseBackend(ABC):
    """Abstract base class for database backends."""

    @abstractmethod
    def execute(self, query: str, params: tuple = ()) -> Any:
        """Execute a query and return cursor."""

    @abstractmethod
    def executescript(self, script: str) -> None:
        """Execute multiple SQL statements."""

    @abstractmethod
    def fetchone(self, query: str, params: tuple = ()) -> dict | None:
        """Execute query and fetch one row as dict."""

    @abstractmethod
    def fetchall(self, query: str, params: tuple = ()) -> list[dict]:
        """Execute query and fetch all rows as dicts."""

    @abstractmethod
    @contextmanager
    def transaction(self, immediate: bool = False) -> Generator[None, None, None]:
        """Context manager for transactions.

        ``immediate`` takes the write lock up front so a read-check-write
        sequence inside the block cannot interleave with another writer.
        """

    @abstractmethod
    def close(self) -> None:
        """Close database connection."""


class SQLiteBackend(DatabaseBackend):
    """SQLite database backend.

    File databases use one connection per thread in WAL mode. An in-memory
    database is a single connection shared by all threads, guarded by a lock,
    so every caller sees the same data.
    """

    def __init__(self, db_path: str = "deepflow-state.db", timeout: float = 30.0):
        """Initialize SQLite backend.

        Args:
            db_path: Path to SQLite database file, or ``":memory:"``
            timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path if db_path == MEMORY_DB else str(Path(db_path))
        self.timeout = timeout
        self._local = threading.local()
        self._shared: sqlite3.Connection | None = None
        self._shared_lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == MEMORY_DB

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if not self.is_memory:
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _get_conn(self) -> sqlite3.Connection:
        """Get the connection for the calling thread."""
        if self.is_memory:
            if self._shared is None:
                self._shared = self._connect()
            return self._shared
        if getattr(self._local, "conn", None) is None:
            self._local.conn = self._connect()
        return self._local.conn

    @contextmanager
    def _guard(self) -> Generator[None, None, None]:
        if self.is_memory:
            with self._shared_lock:
                yield
        else:
            yield

    def execute(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._guard():
            return self._get_conn().execute(query, params)

    def executescript(self, script: str) -> None:
        with self._guard():
            conn = self._get_conn()
            conn.executescript(script)
            conn.commit()

    def fetchone(self, query: str, params: tuple = ()) -> dict | None:
        with self._guard():
            row = self._get_conn().execute(query, params).fetchone()
            return dict(row) if row else None

    def fetchall(self, query: str, params: tuple = ()) -> list[dict]:
        with self._guard():
            return [dict(row) for row in self._get_conn().execute(query, params).fetchall()]

    @contextmanager
    def transaction(self, immediate: bool = False) -> Generator[None, None, None]:
        with self._guard():
            conn = self._get_conn()
            if immediate and not conn.in_transaction:
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def close(self) -> None:
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None
        if self._shared is not None:
            self._shared.close()
            self._shared = None


def create_backend(url: str | None = None, **kwargs) -> DatabaseBackend:
    """Create a database backend from URL or kwargs.

    Examples:
        >>> backend = create_backend("sqlite:///deepflow.db")
        >>> backend = create_backend("sqlite:///:memory:")
        >>> backend = create_backend(db_path="deepflow.db")
    """
    if url:
        if url == MEMORY_DB:
            return SQLiteBackend(db_path=MEMORY_DB)
        parsed = urlparse(url)
        if parsed.scheme in ("sqlite", "sqlite3"):
            path = parsed.path
            if path.startswith("/"):
                path = path[1:]
            return SQLiteBackend(db_path=path or "deepflow-state.db")
        raise ValueError(f"Unsupported database scheme: {parsed.scheme}")

    return SQLiteBackend(**kwargs)
