#!/usr/bin/env python3
"""
Synthetic test runner.

Orchestrates one execution run per trigger: resolve the target, bind the
stored parameters, probe every node concurrently and append each outcome to
history from inside its node task. Also serves the read paths (statistics,
alert feed, status overview) over accumulated history.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .alerts import (
    STATISTICS_TIME_RANGES,
    AlertFilter,
    is_alert,
    outcome_alerts,
    recent_alert_records,
    resolve_time_range,
)
from .config import SyntheticConfig
from .errors import (
    ApiNotFoundError,
    HistoryPersistenceError,
    NodeNotFoundError,
    ReferentialIntegrityError,
    SyntheticMonitorError,
    TestNotFoundError,
)
from .interfaces import Catalog, HistoryQuery, HistoryStore
from .models import (
    ExecutionRun,
    HistoryRecord,
    Node,
    ProbeOutcome,
    SyntheticTest,
    isoformat,
    utcnow,
)
from .parameter_binder import bind_named_values, bind_stored_values, bindings_to_mapping
from .probe_executor import ProbeExecutor
from .statistics import chart_series, compute_statistics, summarize_alerts
from .storage import Database, SQLiteCatalog, SQLiteHistoryStore, dedupe_by_id
from .target_resolver import resolve_targets

logger = logging.getLogger(__name__)

RECENT_RESULTS = 5
RECENT_ALERT_WINDOW = 10
PAGE_SIZE = 1000


class SyntheticTestRunner:
    """Executes synthetic tests and answers history-derived queries."""

    def __init__(
        self,
        config: SyntheticConfig,
        catalog: Catalog,
        history: HistoryStore,
        executor: Optional[ProbeExecutor] = None,
    ) -> None:
        self.config = config
        self.catalog = catalog
        self.history = history
        self.executor = executor or ProbeExecutor.from_config(config)

    @classmethod
    def from_config(cls, config: SyntheticConfig) -> "SyntheticTestRunner":
        """Wire the runner to SQLite adapters on ``config.db_path``."""
        database = Database(config.db_path)
        return cls(config, SQLiteCatalog(database), SQLiteHistoryStore(database))

    def _load_test(self, test_id: int) -> SyntheticTest:
        test = self.catalog.get_test(test_id)
        if test is None:
            raise TestNotFoundError(test_id)
        return test

    def _resolve(self, test: SyntheticTest) -> List[Node]:
        nodes = {node.id: node for node in self.catalog.list_nodes()}
        groups = {group.id: group for group in self.catalog.list_groups()}
        return resolve_targets(test.target_type, test.target_id, nodes, groups)

    async def execute_test(self, test_id: int) -> ExecutionRun:
        """
        Execute one run of a synthetic test.

        Args:
            test_id: ID of the synthetic test

        Returns:
            ExecutionRun with one outcome per resolved node

        Raises:
            TestNotFoundError: if the test does not exist
            ReferentialIntegrityError: if the test's API has been deleted
            ValidationError: on missing required parameters or malformed targets
            HistoryPersistenceError: if any outcome could not be appended
        """
        test = self._load_test(test_id)
        api = self.catalog.get_api(test.api_id)
        if api is None:
            raise ReferentialIntegrityError(
                f"Synthetic test {test.name} references missing API {test.api_id}",
                details={"testId": test.id, "apiId": test.api_id},
            )

        targets = self._resolve(test)
        bindings = bind_stored_values(api.parameters, test.parameter_values)
        run = ExecutionRun(test_id=test.id, test_name=test.name, executed_at=utcnow())
        unpersisted: List[ProbeOutcome] = []
        errors: List[Exception] = []

        async def record(outcome: ProbeOutcome, request_input: Dict[str, Any]) -> None:
            try:
                stored = self.history.append(outcome, test.id, request_input)
            except Exception as e:
                logger.error(f"Failed to append history for test {test.id} node {outcome.node_id}: {e}")
                unpersisted.append(outcome)
                errors.append(e)
                return
            if stored is not None:
                run.records.append(stored)

        logger.debug(f"Executing test {test.name} against {len(targets)} nodes")
        run.outcomes = await self.executor.probe_all(api, bindings, targets, on_outcome=record)
        run.records.sort(key=lambda r: r.id)

        alerts = outcome_alerts(run.outcomes, test)
        for outcome in alerts:
            logger.warning(
                f"Alert: test {test.name} on {outcome.node_name} "
                f"(status {outcome.status_code}, {outcome.response_time_ms}ms, "
                f"threshold {test.alert_threshold_ms}ms)"
            )
        logger.info(
            f"Test {test.name}: {run.status.value} "
            f"({len(run.outcomes)} outcomes, {len(alerts)} alerts)"
        )

        if unpersisted:
            payload = json.dumps([o.to_dict() for o in unpersisted], default=str)
            logger.error(f"Unpersisted outcomes for test {test.id}: {payload}")
            raise HistoryPersistenceError(run, unpersisted, cause=errors[0])
        return run

    async def execute_api(
        self,
        api_id: int,
        target_node: Node,
        values_by_name: Mapping[str, Any],
    ) -> Tuple[ProbeOutcome, Dict[str, str]]:
        """
        Probe an API once against a caller-supplied node without writing history.

        Returns:
            Tuple of (outcome, bound parameter mapping)
        """
        api = self.catalog.get_api(api_id)
        if api is None:
            raise ApiNotFoundError(api_id)

        bindings = bind_named_values(api.parameters, values_by_name)
        outcomes = await self.executor.probe_all(api, bindings, [target_node])
        for outcome in outcomes:
            self.history.append(outcome, None)
        return outcomes[0], bindings_to_mapping(bindings)

    async def execute_enabled_tests(self) -> Dict[int, Union[ExecutionRun, Exception]]:
        """Run every enabled test once, concurrently.

        Returns:
            Mapping of test ID to its ExecutionRun, or the error that stopped it
        """
        tests = self.catalog.list_tests(enabled_only=True)
        if not tests:
            logger.info("No enabled synthetic tests")
            return {}

        results = await asyncio.gather(
            *(self.execute_test(test.id) for test in tests), return_exceptions=True
        )

        summary: Dict[int, Union[ExecutionRun, Exception]] = {}
        for test, result in zip(tests, results):
            if isinstance(result, SyntheticMonitorError):
                logger.error(f"Test {test.name} could not be executed: {result.message}")
            elif isinstance(result, Exception):
                logger.error(f"Test {test.name} failed with unexpected error: {result}")
            elif isinstance(result, BaseException):
                raise result
            summary[test.id] = result
        return summary

    def _fetch_all(self, query: HistoryQuery) -> List[HistoryRecord]:
        records: List[HistoryRecord] = []
        offset = 0
        while True:
            page, total = self.history.query(query.model_copy(update={"limit": PAGE_SIZE, "offset": offset}))
            records.extend(page)
            offset += len(page)
            if not page or offset >= total:
                break
        return dedupe_by_id(records)

    def get_test_statistics(
        self,
        test_id: int,
        time_range: str = "24h",
        node_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Aggregates and chart series for one test over a time window."""
        test = self._load_test(test_id)
        start = resolve_time_range(time_range, now, STATISTICS_TIME_RANGES)
        records = self._fetch_all(HistoryQuery(test_id=test.id, node_id=node_id, start_date=start))
        return {
            "testId": test.id,
            "testName": test.name,
            "nodeId": node_id,
            "startDate": isoformat(start),
            "statistics": compute_statistics(records, test.alert_threshold_ms).to_dict(),
            "chart": chart_series(records),
        }

    def get_alerts(
        self,
        time_range: str = "24h",
        alert_filter: Optional[AlertFilter] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Alert feed for a time range, optionally narrowed by tag/node/group."""
        start = resolve_time_range(time_range, now)
        alerts = dedupe_by_id(self.history.get_alerts(start, self.config.alert_limit))
        if alert_filter is not None and not alert_filter.is_empty:
            alerts = alert_filter.apply(alerts)
        return {
            "startDate": isoformat(start),
            "alerts": alerts,
            "summary": summarize_alerts(alerts),
        }

    def get_recent_alerts_for_test(self, test_id: int) -> List[HistoryRecord]:
        test = self._load_test(test_id)
        return recent_alert_records(
            self.history.get_test_history(test.id, RECENT_ALERT_WINDOW), test, RECENT_ALERT_WINDOW
        )

    def get_all_tests_status(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Overview of every test: recent results, last-hour statistics and
        whether any of the last ten records is an alert.
        """
        start = (now or utcnow()) - timedelta(hours=1)
        overview = []
        for test in self.catalog.list_tests():
            recent = self.history.get_test_history(test.id, RECENT_ALERT_WINDOW)
            last_hour = self._fetch_all(HistoryQuery(test_id=test.id, start_date=start))
            overview.append({
                "test": test.to_dict(),
                "recentResults": [r.to_dict() for r in recent[:RECENT_RESULTS]],
                "statistics": compute_statistics(last_hour, test.alert_threshold_ms).to_dict(),
                "hasAlerts": any(is_alert(r, test) for r in recent),
            })
        return overview

    def delete_test(self, test_id: int) -> int:
        """Delete a test and its history. Returns the number of history rows removed."""
        test = self._load_test(test_id)
        removed = self.history.delete_by_test_id(test.id)
        self.catalog.delete_test(test.id)
        logger.info(f"Deleted synthetic test {test.name} ({removed} history records)")
        return removed

    async def check_node_health(self, node_id: int) -> Dict[str, Any]:
        """Check a node's health endpoint and store the resulting status."""
        node = self.catalog.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)

        healthy, latency_ms, error = await self.executor.check_node_health(node)
        status = "healthy" if healthy else "error"
        self.catalog.update_node_status(node.id, status)
        if not healthy:
            logger.warning(f"Node {node.name} unhealthy: {error}")
        return {
            "nodeId": node.id,
            "nodeStatus": status,
            "responseTimeMs": latency_ms,
            "error": error,
            "checkedAt": isoformat(utcnow()),
        }

    def prune_history(self, now: Optional[datetime] = None) -> int:
        """Delete history older than the configured retention."""
        cutoff = (now or utcnow()) - timedelta(days=self.config.history_retention_days)
        return self.history.prune_older_than(cutoff)
