#!/usr/bin/env python3
"""
Tests for the probe executor against an in-process aiohttp server.
"""

import asyncio
from unittest.mock import AsyncMock

import aiohttp
import pytest

from src.synthetic_monitor.errors import UnsupportedHttpMethod, ValidationError
from src.synthetic_monitor.models import (
    ApiDefinition,
    Node,
    ParameterBinding,
    ParameterPlacement,
    SYSTEM_NODE_NAME,
)
from src.synthetic_monitor.probe_executor import ProbeExecutor, is_ip_address


def make_api(method="GET", uri="/api/echo"):
    return ApiDefinition(id=1, name="echo", uri=uri, http_method=method)


def node_for(server, node_id=1, name="node-a"):
    return Node(id=node_id, name=name, host=server.host, port=server.port)


BINDINGS = [
    ParameterBinding("userId", ParameterPlacement.QUERY, "42"),
    ParameterBinding("note", ParameterPlacement.BODY, "hello"),
]


@pytest.fixture
def executor():
    return ProbeExecutor(timeout_seconds=0.5, max_concurrency=4, health_timeout_seconds=0.5)


class TestBuildUrl:
    """URL construction and validation."""

    def test_builds_url(self):
        node = Node(id=1, name="a", host="example.internal", port=8080)
        assert ProbeExecutor.build_url(make_api(uri="/v1/users"), node) == "http://example.internal:8080/v1/users"

    def test_ipv6_host_is_bracketed(self):
        node = Node(id=1, name="a", host="::1", port=8080)
        assert ProbeExecutor.build_url(make_api(), node) == "http://[::1]:8080/api/echo"

    @pytest.mark.parametrize("host", ["", "bad host", "http://x", "a/b"])
    def test_rejects_bad_host(self, host):
        with pytest.raises(ValidationError) as exc_info:
            ProbeExecutor.build_url(make_api(), Node(id=1, name="a", host=host, port=80))
        assert exc_info.value.details["field"] == "host"

    @pytest.mark.parametrize("port", [0, 70000, "abc", None])
    def test_rejects_bad_port(self, port):
        with pytest.raises(ValidationError) as exc_info:
            ProbeExecutor.build_url(make_api(), Node(id=1, name="a", host="h", port=port))
        assert exc_info.value.details["field"] == "port"

    @pytest.mark.parametrize("uri", ["", "api/echo", "/a b", "/x://y"])
    def test_rejects_bad_uri(self, uri):
        with pytest.raises(ValidationError) as exc_info:
            ProbeExecutor.build_url(make_api(uri=uri), Node(id=1, name="a", host="h", port=80))
        assert exc_info.value.details["field"] == "uri"


class TestSplitBindings:
    """Parameter placement per HTTP method."""

    @pytest.mark.parametrize("method", ["GET", "DELETE"])
    def test_query_methods_put_everything_in_query(self, method):
        query, body = ProbeExecutor.split_bindings(method, BINDINGS)
        assert query == {"userId": "42", "note": "hello"}
        assert body is None

    @pytest.mark.parametrize("method", ["POST", "PUT"])
    def test_body_methods_split_by_placement(self, method):
        query, body = ProbeExecutor.split_bindings(method, BINDINGS)
        assert query == {"userId": "42"}
        assert body == {"note": "hello"}


class TestProbe:
    """Single-node probes."""

    @pytest.mark.asyncio
    async def test_get_success(self, executor, probe_server):
        async with aiohttp.ClientSession() as session:
            outcome = await executor.probe(session, make_api(), BINDINGS, node_for(probe_server))

        assert outcome.success is True
        assert outcome.status_code == 200
        assert outcome.node_id == 1
        assert outcome.node_name == "node-a"
        assert outcome.response_time_ms >= 0
        assert outcome.response_body["method"] == "GET"
        assert outcome.response_body["query"] == {"userId": "42", "note": "hello"}
        assert outcome.response_body["body"] is None

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self, executor, probe_server):
        async with aiohttp.ClientSession() as session:
            outcome = await executor.probe(session, make_api("post"), BINDINGS, node_for(probe_server))

        assert outcome.success is True
        assert outcome.response_body["method"] == "POST"
        assert outcome.response_body["query"] == {"userId": "42"}
        assert outcome.response_body["body"] == {"note": "hello"}

    @pytest.mark.asyncio
    async def test_non_2xx_is_failed_outcome(self, executor, probe_server):
        async with aiohttp.ClientSession() as session:
            outcome = await executor.probe(session, make_api(uri="/api/fail"), [], node_for(probe_server))

        assert outcome.success is False
        assert outcome.status_code == 500
        assert outcome.response_body["response"] == {"message": "boom"}
        assert "500" in outcome.response_body["error"]

    @pytest.mark.asyncio
    async def test_plain_text_body(self, executor, probe_server):
        async with aiohttp.ClientSession() as session:
            outcome = await executor.probe(session, make_api(uri="/api/ping"), [], node_for(probe_server))
        assert outcome.response_body == "pong"

    @pytest.mark.asyncio
    async def test_timeout_is_failed_outcome(self, executor, slow_server):
        async with aiohttp.ClientSession() as session:
            outcome = await executor.probe(session, make_api(), [], node_for(slow_server))

        assert outcome.success is False
        assert outcome.status_code == 0
        assert "Timeout" in outcome.response_body["error"]
        assert outcome.response_time_ms >= 400

    @pytest.mark.asyncio
    async def test_connection_refused_is_failed_outcome(self, executor, unused_port):
        node = Node(id=7, name="down", host="127.0.0.1", port=unused_port)
        async with aiohttp.ClientSession() as session:
            outcome = await executor.probe(session, make_api(), [], node)

        assert outcome.success is False
        assert outcome.status_code == 0
        assert outcome.node_id == 7
        assert outcome.response_body["error"]

    @pytest.mark.asyncio
    async def test_unsupported_method_raises(self, executor, probe_server):
        async with aiohttp.ClientSession() as session:
            with pytest.raises(UnsupportedHttpMethod):
                await executor.probe(session, make_api("PATCH"), [], node_for(probe_server))


class TestProbeAll:
    """Multi-node execution."""

    @pytest.mark.asyncio
    async def test_zero_nodes_yields_system_outcome(self, executor):
        callback = AsyncMock()
        outcomes = await executor.probe_all(make_api(), [], [], on_outcome=callback)

        assert len(outcomes) == 1
        outcome = outcomes[0]
        assert outcome.node_id == 0
        assert outcome.node_name == SYSTEM_NODE_NAME
        assert outcome.success is False
        assert outcome.status_code == 0
        assert outcome.response_body == {"error": "no target nodes"}
        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_independent_outcomes_per_node(self, executor, probe_server, slow_server, unused_port):
        nodes = [
            node_for(slow_server, 1, "slow"),
            node_for(probe_server, 2, "fast"),
            Node(id=3, name="down", host="127.0.0.1", port=unused_port),
        ]
        seen = []

        async def record(outcome, request_input):
            seen.append((outcome.node_id, request_input["url"]))

        outcomes = await executor.probe_all(make_api(), BINDINGS, nodes, on_outcome=record)

        assert [o.node_id for o in outcomes] == [1, 2, 3]
        assert [o.success for o in outcomes] == [False, True, False]
        assert sorted(node_id for node_id, _ in seen) == [1, 2, 3]
        assert dict(seen)[2] == f"http://{probe_server.host}:{probe_server.port}/api/echo"

    @pytest.mark.asyncio
    async def test_invalid_target_rejects_run_before_any_call(self, executor, probe_server):
        callback = AsyncMock()
        nodes = [node_for(probe_server), Node(id=2, name="bad", host="", port=80)]

        with pytest.raises(ValidationError):
            await executor.probe_all(make_api(), [], nodes, on_outcome=callback)
        callback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_probes_run_concurrently(self, slow_server):
        executor = ProbeExecutor(timeout_seconds=0.5, max_concurrency=10)
        nodes = [node_for(slow_server, i, f"n{i}") for i in range(1, 5)]

        loop = asyncio.get_running_loop()
        started = loop.time()
        outcomes = await executor.probe_all(make_api(), [], nodes)
        elapsed = loop.time() - started

        assert len(outcomes) == 4
        assert all(not o.success for o in outcomes)
        assert elapsed < 1.5


class TestNodeHealth:
    """Health checks against the node's /health endpoint."""

    def test_is_ip_address(self):
        assert is_ip_address("10.0.0.1")
        assert is_ip_address("::1")
        assert not is_ip_address("example.com")

    @pytest.mark.asyncio
    async def test_healthy_node(self, executor, probe_server):
        healthy, latency_ms, error = await executor.check_node_health(node_for(probe_server))
        assert healthy is True
        assert error is None

    @pytest.mark.asyncio
    async def test_hostname_uses_get(self, executor, probe_server):
        node = Node(id=1, name="a", host="localhost", port=probe_server.port)
        healthy, _, _ = await executor.check_node_health(node)
        assert healthy is True

    @pytest.mark.asyncio
    async def test_404_counts_as_reachable(self, executor, bare_server):
        healthy, _, error = await executor.check_node_health(node_for(bare_server))
        assert healthy is True
        assert error is None

    @pytest.mark.asyncio
    async def test_server_error_is_unhealthy(self, executor, unhealthy_server):
        healthy, _, error = await executor.check_node_health(node_for(unhealthy_server))
        assert healthy is False
        assert error.startswith("HTTP 500")

    @pytest.mark.asyncio
    async def test_unreachable_node(self, executor, unused_port):
        node = Node(id=1, name="down", host="127.0.0.1", port=unused_port)
        healthy, _, error = await executor.check_node_health(node)
        assert healthy is False
        assert error
