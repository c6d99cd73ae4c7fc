"""
SQLite adapters for the synthetic monitor repositories.
"""

from .catalog import SQLiteCatalog
from .database import Database
from .history import SQLiteHistoryStore, dedupe_by_id

__all__ = ["Database", "SQLiteCatalog", "SQLiteHistoryStore", "dedupe_by_id"]
