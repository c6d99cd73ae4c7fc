#!/usr/bin/env python3
"""
Tests for the SQLite history store and its composed filter query.
"""

import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from src.synthetic_monitor.interfaces import HistoryQuery
from src.synthetic_monitor.models import ProbeOutcome, SYSTEM_NODE_NAME, TargetType
from src.synthetic_monitor.storage import dedupe_by_id

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def outcome(node_id, success=True, latency=50, status=200, name="n"):
    return ProbeOutcome(
        node_id=node_id,
        node_name=name,
        status_code=status,
        success=success,
        response_time_ms=latency,
        response_body={"ok": success},
    )


@pytest.fixture
def seeded(catalog, history):
    """Two nodes in one group, two tests with tags, and history rows."""
    web1 = catalog.create_node("web-1", "10.0.0.1", 8080, tags="prod")
    db1 = catalog.create_node("DB-Primary", "10.0.0.2", 5432)
    group = catalog.create_group("Frontend Pool", [web1.id])
    api = catalog.create_api("users", "/api/users", "GET", [{"name": "userId", "required": True}])
    user_test = catalog.create_test(
        "User Lookup", TargetType.GROUP, group.id, api.id,
        parameter_values={api.parameters[0].id: "42"},
        alert_threshold_ms=100, tags=["prod", "users"],
    )
    db_test = catalog.create_test(
        "db ping", TargetType.NODE, db1.id, api.id,
        parameter_values={api.parameters[0].id: "1"},
        alert_threshold_ms=500, tags="infra",
    )

    rows = [
        # (test, node, success, latency, minutes ago)
        (user_test, web1, True, 50, 50),     # ok
        (user_test, web1, True, 150, 40),    # latency alert
        (user_test, web1, False, 20, 30),    # failure alert
        (db_test, db1, True, 100, 20),       # ok
        (db_test, db1, True, 600, 10),       # latency alert
    ]
    records = []
    for test, node, success, latency, minutes in rows:
        records.append(history.append(
            outcome(node.id, success, latency, name=node.name),
            test.id,
            {"method": "GET", "url": "http://x", "parameters": {"userId": "42"}},
            executed_at=NOW - timedelta(minutes=minutes),
        ))
    return {
        "web1": web1, "db1": db1, "group": group, "api": api,
        "user_test": user_test, "db_test": db_test, "records": records,
    }


class TestAppend:
    """Append-only writes."""

    def test_append_returns_record(self, history):
        record = history.append(outcome(3), 9, {"method": "GET"}, executed_at=NOW)

        assert record.id > 0
        assert record.synthetic_test_id == 9
        assert record.node_id == 3
        assert record.success is True
        assert record.executed_at == NOW
        assert json.loads(record.input_json) == {"method": "GET"}
        assert json.loads(record.output_json) == {"ok": True}

    def test_preview_without_test_id_is_not_persisted(self, history):
        assert history.append(outcome(3), None) is None
        records, total = history.query(HistoryQuery())
        assert records == []
        assert total == 0

    def test_naive_datetimes_are_treated_as_utc(self, history):
        record = history.append(outcome(1), 1, executed_at=datetime(2026, 1, 1, 8, 30))
        assert record.executed_at == datetime(2026, 1, 1, 8, 30, tzinfo=timezone.utc)

    def test_system_outcome_is_named(self, history):
        history.append(ProbeOutcome.no_targets(), 5, executed_at=NOW)
        records, _ = history.query(HistoryQuery(test_id=5))
        assert records[0].node_id == 0
        assert records[0].node_name == SYSTEM_NODE_NAME
        assert records[0].success is False

    def test_concurrent_style_appends_get_unique_ids(self, history):
        ids = {history.append(outcome(n), 1, executed_at=NOW).id for n in range(20)}
        assert len(ids) == 20


class TestQuery:
    """Composed filters, ordering and pagination."""

    def test_newest_first_with_total(self, seeded, history):
        records, total = history.query(HistoryQuery())
        assert total == 5
        assert [r.response_time_ms for r in records] == [600, 100, 20, 150, 50]

    def test_joined_display_fields(self, seeded, history):
        records, _ = history.query(HistoryQuery(node_id=seeded["db1"].id, limit=1))
        record = records[0]
        assert record.node_name == "DB-Primary"
        assert record.host == "10.0.0.2"
        assert record.port == 5432
        assert record.test_name == "db ping"

    def test_filter_by_test_id(self, seeded, history):
        records, total = history.query(HistoryQuery(test_id=seeded["user_test"].id))
        assert total == 3
        assert {r.synthetic_test_id for r in records} == {seeded["user_test"].id}

    def test_test_name_substring_is_case_insensitive(self, seeded, history):
        _, total = history.query(HistoryQuery(test_name="user look"))
        assert total == 3

    def test_node_name_substring_is_case_insensitive(self, seeded, history):
        _, total = history.query(HistoryQuery(node_name="primary"))
        assert total == 2

    def test_node_group_name_matches_membership(self, seeded, history):
        records, total = history.query(HistoryQuery(node_group_name="frontend"))
        assert total == 3
        assert {r.node_id for r in records} == {seeded["web1"].id}

    def test_tag_name_matches_owning_test_tags(self, seeded, history):
        _, total = history.query(HistoryQuery(tag_name="INFRA"))
        assert total == 2
        _, total = history.query(HistoryQuery(tag_name="user"))
        assert total == 3

    def test_notification_enabled_true_returns_non_alerts(self, seeded, history):
        records, total = history.query(HistoryQuery(notification_enabled=True))
        assert total == 2
        assert sorted(r.response_time_ms for r in records) == [50, 100]

    def test_notification_enabled_false_returns_alerts(self, seeded, history):
        records, total = history.query(HistoryQuery(notification_enabled=False))
        assert total == 3
        assert sorted(r.response_time_ms for r in records) == [20, 150, 600]

    def test_date_range_is_inclusive(self, seeded, history):
        query = HistoryQuery(
            start_date=NOW - timedelta(minutes=40),
            end_date=NOW - timedelta(minutes=20),
        )
        records, total = history.query(query)
        assert total == 3
        assert [r.response_time_ms for r in records] == [100, 20, 150]

    def test_filters_combine_with_and(self, seeded, history):
        query = HistoryQuery(tag_name="prod", notification_enabled=False, node_name="web")
        records, total = history.query(query)
        assert total == 2
        assert all(r.synthetic_test_id == seeded["user_test"].id for r in records)

    def test_pagination_keeps_total(self, seeded, history):
        first, total = history.query(HistoryQuery(limit=2))
        second, _ = history.query(HistoryQuery(limit=2, offset=2))
        assert total == 5
        assert len(first) == 2 and len(second) == 2
        assert {r.id for r in first}.isdisjoint(r.id for r in second)

    def test_overlapping_pages_dedupe_without_loss(self, seeded, history):
        first, _ = history.query(HistoryQuery(limit=3))
        second, _ = history.query(HistoryQuery(limit=3, offset=2))
        merged = dedupe_by_id(first + second)
        assert [r.id for r in merged] == [r.id for r in history.query(HistoryQuery())[0]]


class TestHistoryQueryValidation:

    @pytest.mark.parametrize("limit", [0, 1001])
    def test_limit_bounds(self, limit):
        with pytest.raises(PydanticValidationError):
            HistoryQuery(limit=limit)

    def test_negative_offset(self):
        with pytest.raises(PydanticValidationError):
            HistoryQuery(offset=-1)

    def test_end_before_start(self):
        with pytest.raises(PydanticValidationError):
            HistoryQuery(start_date=NOW, end_date=NOW - timedelta(seconds=1))

    def test_blank_names_are_ignored(self):
        assert HistoryQuery(node_name="  ").node_name is None


class TestAlertsAndDeletes:

    def test_get_alerts_joins_test_and_api(self, seeded, history):
        alerts = history.get_alerts(NOW - timedelta(hours=1))

        assert [a.response_time for a in alerts] == [600, 20, 150]
        latest = alerts[0]
        assert latest.test_name == "db ping"
        assert latest.api_name == "users"
        assert latest.api_uri == "/api/users"
        assert latest.api_method == "GET"
        assert latest.threshold == 500
        assert latest.parameter_values == {"userId": "42"}
        assert latest.test_tags == {"infra"}
        assert latest.target_type == TargetType.NODE
        assert latest.history_id == seeded["records"][4].id

    def test_get_alerts_respects_start_and_limit(self, seeded, history):
        assert len(history.get_alerts(NOW - timedelta(minutes=15))) == 1
        assert len(history.get_alerts(NOW - timedelta(hours=1), limit=2)) == 2

    def test_get_test_and_node_history(self, seeded, history):
        assert len(history.get_test_history(seeded["user_test"].id, limit=2)) == 2
        assert len(history.get_node_history(seeded["db1"].id)) == 2

    def test_delete_by_test_id(self, seeded, history):
        assert history.delete_by_test_id(seeded["user_test"].id) == 3
        _, total = history.query(HistoryQuery())
        assert total == 2

    def test_delete_record(self, seeded, history):
        record_id = seeded["records"][0].id
        assert history.delete_record(record_id) is True
        assert history.delete_record(record_id) is False

    def test_prune_older_than(self, seeded, history):
        assert history.prune_older_than(NOW - timedelta(minutes=35)) == 2
        _, total = history.query(HistoryQuery())
        assert total == 3

    def test_records_are_never_updated_in_place(self, seeded, history, db_path):
        with sqlite3.connect(db_path) as conn:
            count = conn.execute("SELECT COUNT(*) FROM synthetic_test_history").fetchone()[0]
        assert count == len(seeded["records"])


class TestDedupe:

    def test_dedupe_dicts(self):
        assert dedupe_by_id([{"id": 1}, {"id": 1}, {"id": 2}]) == [{"id": 1}, {"id": 2}]

    def test_dedupe_serialised_records(self):
        rows = [{"syntheticTestHistoryId": 5}, {"syntheticTestHistoryId": 4}, {"syntheticTestHistoryId": 5}]
        assert dedupe_by_id(rows) == rows[:2]

    def test_records_without_id_are_kept(self):
        rows = [{"x": 1}, {"x": 2}, {"id": 1}, {"id": 1}]
        assert dedupe_by_id(rows) == [{"x": 1}, {"x": 2}, {"id": 1}]
