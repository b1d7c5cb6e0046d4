"""Persistent storage: SQLite database for patients, studies and RHC snapshots."""

from storage.database import RHC_VALUE_COLUMNS, Database, get_db

__all__ = [
    "Database",
    "get_db",
    "RHC_VALUE_COLUMNS",
]
