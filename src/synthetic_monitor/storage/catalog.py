#!/usr/bin/env python3
"""
SQLite adapter for the catalog repositories (nodes, groups, APIs, tests, tags).
"""

import json
import logging
import sqlite3
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from ..errors import ValidationError
from ..interfaces import Catalog
from ..models import (
    ApiDefinition,
    ApiParameter,
    Node,
    NodeGroup,
    ParameterPlacement,
    SyntheticTest,
    Tag,
    TargetType,
)
from ..tags import parse_tags
from .database import Database

logger = logging.getLogger(__name__)

# (link table, owner column) per taggable entity
TAG_LINKS = {
    "node": ("node_tags", "node_id"),
    "api": ("api_tags", "api_id"),
    "test": ("synthetic_test_tags", "test_id"),
}


class SQLiteCatalog(Catalog):
    """All catalog repositories over one SQLite database."""

    def __init__(self, database: Database):
        self.database = database

    # Tags

    def _tags_for(self, conn: sqlite3.Connection, entity: str, owner_id: int) -> FrozenSet[str]:
        table, column = TAG_LINKS[entity]
        rows = conn.execute(
            f"SELECT t.name FROM tags t JOIN {table} l ON l.tag_id = t.id WHERE l.{column} = ?",
            (owner_id,),
        ).fetchall()
        return frozenset(row["name"] for row in rows)

    def _upsert_tag(self, conn: sqlite3.Connection, name: str) -> int:
        conn.execute("INSERT OR IGNORE INTO tags (name) VALUES (?)", (name,))
        return conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()["id"]

    def _set_tags(self, conn: sqlite3.Connection, entity: str, owner_id: int, tags: Any) -> FrozenSet[str]:
        table, column = TAG_LINKS[entity]
        names = parse_tags(tags)
        conn.execute(f"DELETE FROM {table} WHERE {column} = ?", (owner_id,))
        for name in names:
            tag_id = self._upsert_tag(conn, name)
            conn.execute(
                f"INSERT OR IGNORE INTO {table} ({column}, tag_id) VALUES (?, ?)", (owner_id, tag_id)
            )
        return names

    def list_tags(self) -> List[Tag]:
        with self.database.connect() as conn:
            rows = conn.execute("SELECT id, name FROM tags ORDER BY name").fetchall()
        return [Tag(id=row["id"], name=row["name"]) for row in rows]

    def get_or_create_tag(self, name: str) -> Tag:
        name = name.strip()
        if not name:
            raise ValidationError("Tag name must not be empty", details={"field": "name"})
        with self.database.connect() as conn:
            tag_id = self._upsert_tag(conn, name)
        return Tag(id=tag_id, name=name)

    _ORPHAN_SQL = '''
        SELECT id, name FROM tags t
        WHERE NOT EXISTS (SELECT 1 FROM node_tags WHERE tag_id = t.id)
          AND NOT EXISTS (SELECT 1 FROM api_tags WHERE tag_id = t.id)
          AND NOT EXISTS (SELECT 1 FROM synthetic_test_tags WHERE tag_id = t.id)
        ORDER BY name
    '''

    def list_orphan_tags(self) -> List[Tag]:
        with self.database.connect() as conn:
            rows = conn.execute(self._ORPHAN_SQL).fetchall()
        return [Tag(id=row["id"], name=row["name"]) for row in rows]

    def delete_orphan_tags(self) -> int:
        with self.database.connect() as conn:
            ids = [row["id"] for row in conn.execute(self._ORPHAN_SQL).fetchall()]
            conn.executemany("DELETE FROM tags WHERE id = ?", [(i,) for i in ids])
        if ids:
            logger.info(f"Deleted {len(ids)} orphan tags")
        return len(ids)

    # Nodes

    def _row_to_node(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Node:
        return Node(
            id=row["id"],
            name=row["name"],
            host=row["host"],
            port=row["port"],
            status=row["status"],
            tags=self._tags_for(conn, "node", row["id"]),
        )

    def get_node(self, node_id: int) -> Optional[Node]:
        with self.database.connect() as conn:
            row = conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
            return self._row_to_node(conn, row) if row else None

    def list_nodes(self) -> List[Node]:
        with self.database.connect() as conn:
            rows = conn.execute("SELECT * FROM nodes ORDER BY id").fetchall()
            return [self._row_to_node(conn, row) for row in rows]

    def create_node(self, name: str, host: str, port: int, tags: Any = None, status: str = "unknown") -> Node:
        with self.database.connect() as conn:
            cursor = conn.execute(
                "INSERT INTO nodes (name, host, port, status) VALUES (?, ?, ?, ?)",
                (name, host, int(port), status),
            )
            node_id = cursor.lastrowid
            names = self._set_tags(conn, "node", node_id, tags)
        return Node(id=node_id, name=name, host=host, port=int(port), status=status, tags=names)

    def update_node_status(self, node_id: int, status: str) -> None:
        with self.database.connect() as conn:
            conn.execute("UPDATE nodes SET status = ? WHERE id = ?", (status, node_id))

    def delete_node(self, node_id: int) -> bool:
        with self.database.connect() as conn:
            deleted = conn.execute("DELETE FROM nodes WHERE id = ?", (node_id,)).rowcount
            conn.execute("DELETE FROM node_tags WHERE node_id = ?", (node_id,))
        return deleted > 0

    # Groups

    def _members(self, conn: sqlite3.Connection, group_id: int) -> List[int]:
        rows = conn.execute(
            "SELECT node_id FROM node_group_members WHERE group_id = ? ORDER BY position",
            (group_id,),
        ).fetchall()
        return [row["node_id"] for row in rows]

    def get_group(self, group_id: int) -> Optional[NodeGroup]:
        with self.database.connect() as conn:
            row = conn.execute("SELECT id, name FROM node_groups WHERE id = ?", (group_id,)).fetchone()
            if row is None:
                return None
            return NodeGroup(id=row["id"], name=row["name"], member_node_ids=self._members(conn, row["id"]))

    def list_groups(self) -> List[NodeGroup]:
        with self.database.connect() as conn:
            rows = conn.execute("SELECT id, name FROM node_groups ORDER BY id").fetchall()
            return [
                NodeGroup(id=row["id"], name=row["name"], member_node_ids=self._members(conn, row["id"]))
                for row in rows
            ]

    def create_group(self, name: str, member_node_ids: Sequence[int]) -> NodeGroup:
        members: List[int] = []
        for node_id in member_node_ids:
            if int(node_id) not in members:
                members.append(int(node_id))

        with self.database.connect() as conn:
            group_id = conn.execute("INSERT INTO node_groups (name) VALUES (?)", (name,)).lastrowid
            conn.executemany(
                "INSERT INTO node_group_members (group_id, node_id, position) VALUES (?, ?, ?)",
                [(group_id, node_id, position) for position, node_id in enumerate(members)],
            )
        return NodeGroup(id=group_id, name=name, member_node_ids=members)

    def delete_group(self, group_id: int) -> bool:
        with self.database.connect() as conn:
            deleted = conn.execute("DELETE FROM node_groups WHERE id = ?", (group_id,)).rowcount
            conn.execute("DELETE FROM node_group_members WHERE group_id = ?", (group_id,))
        return deleted > 0

    # APIs

    def _parameters(self, conn: sqlite3.Connection, api_id: int) -> List[ApiParameter]:
        rows = conn.execute(
            "SELECT * FROM api_parameters WHERE api_id = ? ORDER BY id", (api_id,)
        ).fetchall()
        return [
            ApiParameter(
                id=row["id"],
                name=row["name"],
                placement=ParameterPlacement(row["placement"]),
                required=bool(row["required"]),
                description=row["description"],
            )
            for row in rows
        ]

    def _row_to_api(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ApiDefinition:
        return ApiDefinition(
            id=row["id"],
            name=row["name"],
            uri=row["uri"],
            http_method=row["http_method"],
            parameters=self._parameters(conn, row["id"]),
            tags=self._tags_for(conn, "api", row["id"]),
        )

    def get_api(self, api_id: int) -> Optional[ApiDefinition]:
        with self.database.connect() as conn:
            row = conn.execute("SELECT * FROM apis WHERE id = ?", (api_id,)).fetchone()
            return self._row_to_api(conn, row) if row else None

    def list_apis(self) -> List[ApiDefinition]:
        with self.database.connect() as conn:
            rows = conn.execute("SELECT * FROM apis ORDER BY id").fetchall()
            return [self._row_to_api(conn, row) for row in rows]

    def create_api(
        self,
        name: str,
        uri: str,
        http_method: str,
        parameters: Iterable[Mapping[str, Any]] = (),
        tags: Any = None,
    ) -> ApiDefinition:
        prepared = []
        for param in parameters:
            param_name = str(param.get("name", "")).strip()
            if not param_name:
                raise ValidationError("API parameter name must not be empty", details={"field": "name"})
            try:
                placement = ParameterPlacement(param.get("placement", param.get("type", "query")))
            except ValueError:
                raise ValidationError(
                    f"Invalid placement for parameter {param_name}", details={"field": "placement"}
                )
            prepared.append(
                (param_name, placement.value, int(bool(param.get("required", False))), param.get("description", ""))
            )

        with self.database.connect() as conn:
            api_id = conn.execute(
                "INSERT INTO apis (name, uri, http_method) VALUES (?, ?, ?)",
                (name, uri, http_method.upper()),
            ).lastrowid
            conn.executemany(
                "INSERT INTO api_parameters (api_id, name, placement, required, description) VALUES (?, ?, ?, ?, ?)",
                [(api_id,) + values for values in prepared],
            )
            self._set_tags(conn, "api", api_id, tags)
            row = conn.execute("SELECT * FROM apis WHERE id = ?", (api_id,)).fetchone()
            return self._row_to_api(conn, row)

    def delete_api(self, api_id: int) -> bool:
        """Delete an API. Tests that reference it are kept and fail at execution."""
        with self.database.connect() as conn:
            deleted = conn.execute("DELETE FROM apis WHERE id = ?", (api_id,)).rowcount
            conn.execute("DELETE FROM api_parameters WHERE api_id = ?", (api_id,))
            conn.execute("DELETE FROM api_tags WHERE api_id = ?", (api_id,))
        return deleted > 0

    # Synthetic tests

    def _row_to_test(self, conn: sqlite3.Connection, row: sqlite3.Row) -> SyntheticTest:
        stored: Dict[str, str] = json.loads(row["parameter_values"] or "{}")
        return SyntheticTest(
            id=row["id"],
            name=row["name"],
            target_type=TargetType(row["target_type"]),
            target_id=row["target_id"],
            api_id=row["api_id"],
            parameter_values={int(k): v for k, v in stored.items()},
            interval_seconds=row["interval_seconds"],
            alert_threshold_ms=row["alert_threshold_ms"],
            tags=self._tags_for(conn, "test", row["id"]),
            enabled=bool(row["enabled"]),
        )

    def get_test(self, test_id: int) -> Optional[SyntheticTest]:
        with self.database.connect() as conn:
            row = conn.execute("SELECT * FROM synthetic_tests WHERE id = ?", (test_id,)).fetchone()
            return self._row_to_test(conn, row) if row else None

    def list_tests(self, enabled_only: bool = False) -> List[SyntheticTest]:
        sql = "SELECT * FROM synthetic_tests"
        if enabled_only:
            sql += " WHERE enabled = 1"
        with self.database.connect() as conn:
            rows = conn.execute(sql + " ORDER BY id").fetchall()
            return [self._row_to_test(conn, row) for row in rows]

    def create_test(
        self,
        name: str,
        target_type: TargetType,
        target_id: int,
        api_id: int,
        parameter_values: Optional[Mapping[Any, str]] = None,
        interval_seconds: int = 60,
        alert_threshold_ms: int = 1000,
        tags: Any = None,
        enabled: bool = True,
    ) -> SyntheticTest:
        try:
            target_type = TargetType(target_type)
        except ValueError:
            raise ValidationError(f"Unknown target type: {target_type}", details={"field": "targetType"})
        if interval_seconds < 1:
            raise ValidationError("intervalSeconds must be positive", details={"field": "intervalSeconds"})
        if alert_threshold_ms < 0:
            raise ValidationError("alertThresholdMs must not be negative", details={"field": "alertThresholdMs"})

        values = {str(int(k)): str(v) for k, v in (parameter_values or {}).items()}
        with self.database.connect() as conn:
            test_id = conn.execute(
                '''
                INSERT INTO synthetic_tests
                (name, target_type, target_id, api_id, parameter_values,
                 interval_seconds, alert_threshold_ms, enabled)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    name,
                    target_type.value,
                    target_id,
                    api_id,
                    json.dumps(values),
                    interval_seconds,
                    alert_threshold_ms,
                    int(enabled),
                ),
            ).lastrowid
            self._set_tags(conn, "test", test_id, tags)
            row = conn.execute("SELECT * FROM synthetic_tests WHERE id = ?", (test_id,)).fetchone()
            return self._row_to_test(conn, row)

    def set_test_enabled(self, test_id: int, enabled: bool) -> None:
        with self.database.connect() as conn:
            conn.execute("UPDATE synthetic_tests SET enabled = ? WHERE id = ?", (int(enabled), test_id))

    def delete_test(self, test_id: int) -> bool:
        with self.database.connect() as conn:
            deleted = conn.execute("DELETE FROM synthetic_tests WHERE id = ?", (test_id,)).rowcount
            conn.execute("DELETE FROM synthetic_test_tags WHERE test_id = ?", (test_id,))
        return deleted > 0
