"""Database adapters and query construction."""

from .adapter import BackendKind, DatabaseAdapter, QueryResult
from .connection import create_adapter, open_adapter
from .postgres_adapter import PostgresAdapter
from .sqlite_adapter import SqliteAdapter

__all__ = [
    "BackendKind",
    "DatabaseAdapter",
    "QueryResult",
    "create_adapter",
    "open_adapter",
    "PostgresAdapter",
    "SqliteAdapter",
]
