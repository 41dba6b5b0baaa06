"""Database backends shared by the usage ledger and the session store."""

from .backends import MEMORY_DB, DatabaseBackend, SQLiteBackend, create_backend

__all__ = ["MEMORY_DB", "DatabaseBackend", "SQLiteBackend", "create_backend"]
