#!/usr/bin/env python3
"""
Synthetic monitor API - HTTP interface for execution, history and alerts.

Every response uses the ``{success, data, total?, timestamp}`` envelope.
Errors use ``{success: false, error, message}`` with a non-2xx status.
"""

import logging
from typing import Any, Dict, List, Optional

import aiohttp_cors
import pydantic
from aiohttp import web
from aiohttp.web import Request, Response

from .alerts import AlertFilter
from .config import SyntheticConfig
from .errors import (
    HistoryPersistenceError,
    NodeNotFoundError,
    SyntheticMonitorError,
    ValidationError,
)
from .interfaces import HistoryQuery
from .models import Node, isoformat, utcnow
from .runner import SyntheticTestRunner

logger = logging.getLogger(__name__)

TEST_HISTORY_DEFAULT_LIMIT = 100
MAX_LIMIT = 1000

NOTIFICATION_FILTERS = {"Y": True, "N": False, "ALL": None}

HISTORY_QUERY_PARAMS = {
    "syntheticTestId": "test_id",
    "syntheticTestName": "test_name",
    "nodeId": "node_id",
    "nodeName": "node_name",
    "nodeGroupName": "node_group_name",
    "tagName": "tag_name",
    "startDate": "start_date",
    "endDate": "end_date",
    "limit": "limit",
    "offset": "offset",
}
FIELD_NAMES = {v: k for k, v in HISTORY_QUERY_PARAMS.items()}


def _timestamp() -> str:
    return isoformat(utcnow())


def parse_int(value: Optional[str], field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{field} must be an integer", details={"field": field})


def parse_id_list(values: List[str], field: str) -> List[int]:
    """Parse repeated and/or comma-separated integer query values."""
    ids = []
    for value in values:
        for part in value.split(","):
            if part.strip():
                ids.append(parse_int(part.strip(), field))
    return ids


def history_query_from_params(params) -> HistoryQuery:
    """Build a HistoryQuery from request query parameters.

    Raises:
        ValidationError: on malformed values, naming the offending field
    """
    data: Dict[str, Any] = {}
    for param, name in HISTORY_QUERY_PARAMS.items():
        value = params.get(param)
        if value is not None and value != "":
            data[name] = value

    notification = params.get("notificationEnabled")
    if notification:
        if notification.upper() not in NOTIFICATION_FILTERS:
            raise ValidationError(
                "notificationEnabled must be Y, N or all", details={"field": "notificationEnabled"}
            )
        data["notification_enabled"] = NOTIFICATION_FILTERS[notification.upper()]

    try:
        return HistoryQuery(**data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        loc = first["loc"][0] if first.get("loc") else None
        field = FIELD_NAMES.get(loc, loc) if loc else None
        raise ValidationError(
            f"Invalid {field or 'query'}: {first['msg']}",
            details={"field": field} if field else None,
        )


class SyntheticMonitorAPI:
    """Web API for the synthetic monitor."""

    def __init__(self, runner: SyntheticTestRunner, config: SyntheticConfig):
        self.runner = runner
        self.config = config
        self.app = web.Application()
        self._setup_routes()
        self._setup_cors()

    def _setup_routes(self) -> None:
        """Setup API routes."""
        self.app.router.add_get('/health', self.health_check)
        self.app.router.add_get('/synthetic-tests/status', self.get_tests_status)
        self.app.router.add_post('/synthetic-tests/{id}/execute', self.execute_test)
        self.app.router.add_get('/synthetic-tests/{id}/history', self.get_test_history)
        self.app.router.add_get('/synthetic-tests/{id}/statistics', self.get_test_statistics)
        self.app.router.add_delete('/synthetic-tests/{id}', self.delete_test)
        self.app.router.add_post('/apis/{id}/execute', self.execute_api)
        self.app.router.add_get('/history', self.get_history)
        self.app.router.add_get('/alerts', self.get_alerts)
        self.app.router.add_post('/nodes/{id}/health', self.check_node_health)

    def _setup_cors(self) -> None:
        """Setup CORS for API access."""
        cors = aiohttp_cors.setup(self.app, defaults={
            "*": aiohttp_cors.ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*"
            )
        })

        for route in list(self.app.router.routes()):
            cors.add(route)

    @staticmethod
    def _success(data: Any, total: Optional[int] = None, **extra: Any) -> Response:
        body = {'success': True, 'data': data}
        if total is not None:
            body['total'] = total
        body.update(extra)
        body['timestamp'] = _timestamp()
        return web.json_response(body)

    @staticmethod
    def _error(error: SyntheticMonitorError, data: Any = None) -> Response:
        body = error.to_response()
        if data is not None:
            body['data'] = data
        body['timestamp'] = _timestamp()
        return web.json_response(body, status=error.http_status)

    @staticmethod
    def _internal_error(endpoint: str, error: Exception) -> Response:
        logger.error(f"{endpoint} endpoint error: {error}")
        return web.json_response({
            'success': False,
            'error': 'ERR_INTERNAL',
            'message': str(error) or type(error).__name__,
            'timestamp': _timestamp()
        }, status=500)

    @staticmethod
    def _path_id(request: Request) -> int:
        return parse_int(request.match_info['id'], 'id')

    async def health_check(self, request: Request) -> Response:
        """Simple health check for the API itself."""
        return web.json_response({
            'success': True,
            'status': 'healthy',
            'timestamp': _timestamp(),
            'service': 'synthetic-monitor-api'
        })

    async def execute_test(self, request: Request) -> Response:
        """Execute one run of a synthetic test and persist its history."""
        try:
            run = await self.runner.execute_test(self._path_id(request))
            return self._success(run.to_dict())
        except HistoryPersistenceError as e:
            return self._error(e, data=e.run.to_dict())
        except SyntheticMonitorError as e:
            return self._error(e)
        except Exception as e:
            return self._internal_error("Execute test", e)

    async def execute_api(self, request: Request) -> Response:
        """Probe an API once against a caller-supplied node (preview, no history)."""
        try:
            api_id = self._path_id(request)
            try:
                body = await request.json()
            except ValueError:
                body = None
            if not isinstance(body, dict) or not isinstance(body.get('parsedParams'), dict):
                raise ValidationError(
                    "Request body must contain a parsedParams object", details={"field": "parsedParams"}
                )

            node = self._target_node(body.get('targetNode'))
            outcome, parameters = await self.runner.execute_api(api_id, node, body['parsedParams'])
            return self._success({
                'apiId': api_id,
                'parameters': parameters,
                'executedAt': _timestamp(),
                'results': outcome.to_dict(),
            })
        except SyntheticMonitorError as e:
            return self._error(e)
        except Exception as e:
            return self._internal_error("Execute API", e)

    def _target_node(self, target: Any) -> Node:
        """Accept a node ID or an inline ``{id?, name?, host, port}`` object."""
        if isinstance(target, dict) and target.get('host'):
            try:
                port = int(target.get('port'))
            except (TypeError, ValueError):
                raise ValidationError("targetNode.port must be an integer", details={"field": "targetNode.port"})
            node_id = target.get('id') or 0
            return Node(
                id=int(node_id),
                name=str(target.get('name') or target['host']),
                host=str(target['host']),
                port=port,
            )

        node_id = target.get('id') if isinstance(target, dict) else target
        if node_id is None or isinstance(node_id, bool):
            raise ValidationError("targetNode is required", details={"field": "targetNode"})
        try:
            node_id = int(node_id)
        except (TypeError, ValueError):
            raise ValidationError("targetNode must be a node ID or object", details={"field": "targetNode"})
        node = self.runner.catalog.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    async def get_test_history(self, request: Request) -> Response:
        """Raw history of one test, newest first."""
        try:
            test_id = self._path_id(request)
            limit = parse_int(request.query.get('limit'), 'limit')
            if limit is None:
                limit = TEST_HISTORY_DEFAULT_LIMIT
            if not 1 <= limit <= MAX_LIMIT:
                raise ValidationError(
                    f"limit must be between 1 and {MAX_LIMIT}", details={"field": "limit"}
                )
            records = self.runner.history.get_test_history(test_id, limit)
            return self._success([r.to_dict() for r in records], total=len(records))
        except SyntheticMonitorError as e:
            return self._error(e)
        except Exception as e:
            return self._internal_error("Test history", e)

    async def get_history(self, request: Request) -> Response:
        """Composed history query with pagination."""
        try:
            query = history_query_from_params(request.query)
            records, total = self.runner.history.query(query)
            return self._success(
                [r.to_dict() for r in records],
                total=total,
                limit=query.limit,
                offset=query.offset,
            )
        except SyntheticMonitorError as e:
            return self._error(e)
        except Exception as e:
            return self._internal_error("History", e)

    async def get_alerts(self, request: Request) -> Response:
        """Alert feed for a time range with optional tag/node/group narrowing."""
        try:
            time_range = request.query.get('timeRange', '24h')
            alert_filter = AlertFilter.create(
                tags=",".join(request.query.getall('tags', [])),
                node_ids=parse_id_list(request.query.getall('nodeIds', []), 'nodeIds'),
                group_ids=parse_id_list(request.query.getall('groupIds', []), 'groupIds'),
            )
            feed = self.runner.get_alerts(time_range, alert_filter)
            alerts = feed['alerts']
            return self._success(
                [a.to_dict() for a in alerts],
                total=len(alerts),
                count=len(alerts),
                summary=feed['summary'],
                timeRange=time_range,
                startDate=feed['startDate'],
            )
        except SyntheticMonitorError as e:
            return self._error(e)
        except Exception as e:
            return self._internal_error("Alerts", e)

    async def get_test_statistics(self, request: Request) -> Response:
        """Windowed statistics and chart series for one test."""
        try:
            test_id = self._path_id(request)
            node_id = parse_int(request.query.get('nodeId'), 'nodeId')
            time_range = request.query.get('timeRange', '24h')
            return self._success(self.runner.get_test_statistics(test_id, time_range, node_id))
        except SyntheticMonitorError as e:
            return self._error(e)
        except Exception as e:
            return self._internal_error("Statistics", e)

    async def get_tests_status(self, request: Request) -> Response:
        """Overview of all synthetic tests."""
        try:
            overview = self.runner.get_all_tests_status()
            return self._success(overview, total=len(overview))
        except SyntheticMonitorError as e:
            return self._error(e)
        except Exception as e:
            return self._internal_error("Tests status", e)

    async def delete_test(self, request: Request) -> Response:
        """Delete a synthetic test and cascade-delete its history."""
        try:
            test_id = self._path_id(request)
            removed = self.runner.delete_test(test_id)
            return self._success({'testId': test_id, 'deletedHistoryRecords': removed})
        except SyntheticMonitorError as e:
            return self._error(e)
        except Exception as e:
            return self._internal_error("Delete test", e)

    async def check_node_health(self, request: Request) -> Response:
        """Run a health check against a node and store its status."""
        try:
            result = await self.runner.check_node_health(self._path_id(request))
            return self._success(result)
        except SyntheticMonitorError as e:
            return self._error(e)
        except Exception as e:
            return self._internal_error("Node health", e)

    def get_app(self) -> web.Application:
        """Get the aiohttp application."""
        return self.app

    async def start_server(self, host: Optional[str] = None, port: Optional[int] = None) -> web.AppRunner:
        """Start the API server and return its AppRunner for cleanup."""
        host = host or self.config.api_host
        port = port or self.config.api_port
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(f"Synthetic monitor API started on {host}:{port}")
        return runner
