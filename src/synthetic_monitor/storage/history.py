#!/usr/bin/env python3
"""
SQLite history store.

Append-only log of probe outcomes plus the composed filter query used by the
history and alert views.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from ..interfaces import HistoryQuery, HistoryStore
from ..models import (
    SYSTEM_NODE_ID,
    SYSTEM_NODE_NAME,
    Alert,
    HistoryRecord,
    ProbeOutcome,
    TargetType,
    utcnow,
)
from .database import Database, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

ALERT_PREDICATE = (
    "(h.success = 0 OR "
    "(t.alert_threshold_ms IS NOT NULL AND h.response_time_ms > t.alert_threshold_ms))"
)

NODE_NAME = f"COALESCE(n.name, CASE WHEN h.node_id = {SYSTEM_NODE_ID} THEN '{SYSTEM_NODE_NAME}' END)"

RECORD_COLUMNS = f'''
    h.id, h.synthetic_test_id, h.node_id, h.status_code, h.success,
    h.response_time_ms, h.executed_at, h.input, h.output,
    {NODE_NAME} AS node_name, n.host AS host, n.port AS port, t.name AS test_name
'''

RECORD_FROM = '''
    FROM synthetic_test_history h
    LEFT JOIN nodes n ON n.id = h.node_id
    LEFT JOIN synthetic_tests t ON t.id = h.synthetic_test_id
'''


def _contains(column: str) -> str:
    return f"instr(lower({column}), lower(?)) > 0"


def build_filters(query: HistoryQuery) -> Tuple[str, List[Any]]:
    """Translate a HistoryQuery into a WHERE clause and its parameters."""
    clauses: List[str] = []
    params: List[Any] = []

    if query.test_id is not None:
        clauses.append("h.synthetic_test_id = ?")
        params.append(query.test_id)
    if query.test_name:
        clauses.append(_contains("t.name"))
        params.append(query.test_name)
    if query.node_id is not None:
        clauses.append("h.node_id = ?")
        params.append(query.node_id)
    if query.node_name:
        clauses.append(_contains(NODE_NAME))
        params.append(query.node_name)
    if query.node_group_name:
        clauses.append(f'''EXISTS (
            SELECT 1 FROM node_group_members m
            JOIN node_groups g ON g.id = m.group_id
            WHERE m.node_id = h.node_id AND {_contains("g.name")}
        )''')
        params.append(query.node_group_name)
    if query.tag_name:
        clauses.append(f'''EXISTS (
            SELECT 1 FROM synthetic_test_tags st
            JOIN tags tg ON tg.id = st.tag_id
            WHERE st.test_id = h.synthetic_test_id AND {_contains("tg.name")}
        )''')
        params.append(query.tag_name)
    if query.notification_enabled is True:
        clauses.append(f"NOT {ALERT_PREDICATE}")
    elif query.notification_enabled is False:
        clauses.append(ALERT_PREDICATE)
    if query.start_date is not None:
        clauses.append("h.executed_at >= ?")
        params.append(format_timestamp(query.start_date))
    if query.end_date is not None:
        clauses.append("h.executed_at <= ?")
        params.append(format_timestamp(query.end_date))

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def _record_id(record: Any) -> Any:
    if isinstance(record, dict):
        return record.get("id", record.get("syntheticTestHistoryId"))
    if isinstance(record, Alert):
        return record.history_id
    return getattr(record, "id", None)


def dedupe_by_id(records: Iterable[Any]) -> List[Any]:
    """Drop repeated records by ID, keeping the first occurrence and the order.

    Accepts HistoryRecord and Alert objects, or dicts keyed by ``id`` or
    ``syntheticTestHistoryId``. Records without an ID are always kept.
    """
    seen = set()
    unique = []
    for record in records:
        record_id = _record_id(record)
        if record_id is None:
            unique.append(record)
            continue
        if record_id in seen:
            continue
        seen.add(record_id)
        unique.append(record)
    return unique


class SQLiteHistoryStore(HistoryStore):
    """HistoryStore backed by the shared SQLite database."""

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> HistoryRecord:
        return HistoryRecord(
            id=row["id"],
            synthetic_test_id=row["synthetic_test_id"],
            node_id=row["node_id"],
            status_code=row["status_code"],
            success=bool(row["success"]),
            response_time_ms=row["response_time_ms"],
            executed_at=parse_timestamp(row["executed_at"]),
            input_json=row["input"],
            output_json=row["output"],
            node_name=row["node_name"],
            host=row["host"],
            port=row["port"],
            test_name=row["test_name"],
        )

    def append(
        self,
        outcome: ProbeOutcome,
        test_id: Optional[int],
        request_input: Optional[Dict[str, Any]] = None,
        executed_at: Optional[datetime] = None,
    ) -> Optional[HistoryRecord]:
        """
        Append one outcome as a new history row.

        Args:
            outcome: Probe outcome to persist
            test_id: Owning synthetic test; None marks a preview that is not stored
            request_input: Request description stored as the record input
            executed_at: Execution time, defaults to now

        Returns:
            The stored HistoryRecord, or None for previews
        """
        if test_id is None:
            logger.debug(f"Skipping history for preview probe on node {outcome.node_id}")
            return None

        executed_at = executed_at or utcnow()
        input_json = json.dumps(request_input) if request_input is not None else None
        output_json = json.dumps(outcome.response_body, default=str)

        with self.database.connect() as conn:
            record_id = conn.execute(
                '''
                INSERT INTO synthetic_test_history
                (synthetic_test_id, node_id, status_code, success, response_time_ms,
                 executed_at, input, output)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    test_id,
                    outcome.node_id,
                    outcome.status_code,
                    int(outcome.success),
                    outcome.response_time_ms,
                    format_timestamp(executed_at),
                    input_json,
                    output_json,
                ),
            ).lastrowid

        return HistoryRecord(
            id=record_id,
            synthetic_test_id=test_id,
            node_id=outcome.node_id,
            status_code=outcome.status_code,
            success=outcome.success,
            response_time_ms=outcome.response_time_ms,
            executed_at=parse_timestamp(format_timestamp(executed_at)),
            input_json=input_json,
            output_json=output_json,
            node_name=outcome.node_name,
        )

    def query(self, query: HistoryQuery) -> Tuple[List[HistoryRecord], int]:
        where, params = build_filters(query)
        with self.database.connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) {RECORD_FROM} {where}", params).fetchone()[0]
            rows = conn.execute(
                f'''
                SELECT {RECORD_COLUMNS} {RECORD_FROM} {where}
                ORDER BY h.executed_at DESC, h.id DESC
                LIMIT ? OFFSET ?
                ''',
                params + [query.limit, query.offset],
            ).fetchall()
        return [self._row_to_record(row) for row in rows], total

    def get_test_history(self, test_id: int, limit: int = 100) -> List[HistoryRecord]:
        records, _ = self.query(HistoryQuery(test_id=test_id, limit=limit))
        return records

    def get_node_history(self, node_id: int, limit: int = 100) -> List[HistoryRecord]:
        records, _ = self.query(HistoryQuery(node_id=node_id, limit=limit))
        return records

    def get_alerts(self, start_date: datetime, limit: int = 100) -> List[Alert]:
        """
        Materialise alerts by joining history with tests and APIs.

        Args:
            start_date: Inclusive lower bound on executed_at
            limit: Maximum number of alerts, newest first

        Returns:
            List of Alert objects
        """
        with self.database.connect() as conn:
            rows = conn.execute(
                f'''
                SELECT h.id, h.synthetic_test_id, h.node_id, h.status_code, h.success,
                       h.response_time_ms, h.executed_at, h.input,
                       {NODE_NAME} AS node_name,
                       t.name AS test_name, t.alert_threshold_ms, t.target_type, t.target_id,
                       t.api_id, a.name AS api_name, a.uri AS api_uri, a.http_method AS api_method
                FROM synthetic_test_history h
                JOIN synthetic_tests t ON t.id = h.synthetic_test_id
                LEFT JOIN apis a ON a.id = t.api_id
                LEFT JOIN nodes n ON n.id = h.node_id
                WHERE h.executed_at >= ? AND {ALERT_PREDICATE}
                ORDER BY h.executed_at DESC, h.id DESC
                LIMIT ?
                ''',
                (format_timestamp(start_date), limit),
            ).fetchall()
            tags = self._test_tags(conn, {row["synthetic_test_id"] for row in rows})

        return [
            Alert(
                test_id=row["synthetic_test_id"],
                test_name=row["test_name"],
                node_id=row["node_id"],
                node_name=row["node_name"] or f"node-{row['node_id']}",
                api_id=row["api_id"],
                api_name=row["api_name"] or "",
                api_uri=row["api_uri"] or "",
                api_method=row["api_method"] or "",
                parameter_values=Alert.parameters_from_input(row["input"]),
                response_time=row["response_time_ms"],
                threshold=row["alert_threshold_ms"],
                timestamp=parse_timestamp(row["executed_at"]),
                status_code=row["status_code"],
                success=bool(row["success"]),
                test_tags=tags.get(row["synthetic_test_id"], frozenset()),
                target_type=TargetType(row["target_type"]),
                target_id=row["target_id"],
                history_id=row["id"],
            )
            for row in rows
        ]

    @staticmethod
    def _test_tags(conn: sqlite3.Connection, test_ids) -> Dict[int, FrozenSet[str]]:
        if not test_ids:
            return {}
        placeholders = ",".join("?" for _ in test_ids)
        rows = conn.execute(
            f'''
            SELECT st.test_id, tg.name FROM synthetic_test_tags st
            JOIN tags tg ON tg.id = st.tag_id
            WHERE st.test_id IN ({placeholders})
            ''',
            list(test_ids),
        ).fetchall()
        tags: Dict[int, set] = {}
        for row in rows:
            tags.setdefault(row["test_id"], set()).add(row["name"])
        return {test_id: frozenset(names) for test_id, names in tags.items()}

    def delete_by_test_id(self, test_id: int) -> int:
        with self.database.connect() as conn:
            deleted = conn.execute(
                "DELETE FROM synthetic_test_history WHERE synthetic_test_id = ?", (test_id,)
            ).rowcount
        logger.info(f"Deleted {deleted} history records of test {test_id}")
        return deleted

    def delete_record(self, record_id: int) -> bool:
        with self.database.connect() as conn:
            return conn.execute(
                "DELETE FROM synthetic_test_history WHERE id = ?", (record_id,)
            ).rowcount > 0

    def prune_older_than(self, cutoff: datetime) -> int:
        with self.database.connect() as conn:
            deleted = conn.execute(
                "DELETE FROM synthetic_test_history WHERE executed_at < ?",
                (format_timestamp(cutoff),),
            ).rowcount
        logger.info(f"Pruned {deleted} history records older than {cutoff.isoformat()}")
        return deleted
