#!/usr/bin/env python3
"""
SQLite schema and connection helpers shared by the catalog and history store.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

# Naive UTC with fixed-width microseconds so text comparison orders correctly.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        host TEXT NOT NULL,
        port INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'unknown',
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS node_groups (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    # node_id is not a foreign key; members may outlive their node
    '''
    CREATE TABLE IF NOT EXISTS node_group_members (
        group_id INTEGER NOT NULL,
        node_id INTEGER NOT NULL,
        position INTEGER NOT NULL,
        PRIMARY KEY (group_id, node_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS apis (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        uri TEXT NOT NULL,
        http_method TEXT NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS api_parameters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        api_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        placement TEXT NOT NULL DEFAULT 'query',
        required INTEGER NOT NULL DEFAULT 0,
        description TEXT NOT NULL DEFAULT ''
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS synthetic_tests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        target_type TEXT NOT NULL,
        target_id INTEGER NOT NULL,
        api_id INTEGER NOT NULL,
        parameter_values TEXT NOT NULL DEFAULT '{}',
        interval_seconds INTEGER NOT NULL DEFAULT 60,
        alert_threshold_ms INTEGER NOT NULL DEFAULT 1000,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS tags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS node_tags (
        node_id INTEGER NOT NULL,
        tag_id INTEGER NOT NULL,
        PRIMARY KEY (node_id, tag_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS api_tags (
        api_id INTEGER NOT NULL,
        tag_id INTEGER NOT NULL,
        PRIMARY KEY (api_id, tag_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS synthetic_test_tags (
        test_id INTEGER NOT NULL,
        tag_id INTEGER NOT NULL,
        PRIMARY KEY (test_id, tag_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS synthetic_test_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        synthetic_test_id INTEGER,
        node_id INTEGER NOT NULL,
        status_code INTEGER NOT NULL,
        success INTEGER NOT NULL,
        response_time_ms INTEGER NOT NULL,
        executed_at TEXT NOT NULL,
        input TEXT,
        output TEXT
    )
    ''',
    '''
    CREATE INDEX IF NOT EXISTS idx_history_executed_at
    ON synthetic_test_history(executed_at)
    ''',
    '''
    CREATE INDEX IF NOT EXISTS idx_history_test_id
    ON synthetic_test_history(synthetic_test_id, executed_at)
    ''',
    '''
    CREATE INDEX IF NOT EXISTS idx_history_node_id
    ON synthetic_test_history(node_id)
    ''',
]


def format_timestamp(value: datetime) -> str:
    """Serialise a datetime as naive UTC text. Naive input is taken as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse stored timestamp text back into an aware UTC datetime."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class Database:
    """Owns the database path and schema creation."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init_database()

    def _init_database(self) -> None:
        """Create the schema if it does not exist."""
        Path(self.db_path).resolve().parent.mkdir(parents=True, exist_ok=True)

        with self.connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and always closes."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()
