"""Pytest configuration for synthetic monitor tests.

This file configures the test environment and handles import paths centrally.
All test files should use this configuration - DO NOT add sys.path manipulations
in individual test files.
"""

import asyncio
import os
import socket
import sys
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

# Centralized sys.path configuration for all tests
# This allows tests to import from src/ directly without individual setup
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.synthetic_monitor.config import SyntheticConfig  # noqa: E402
from src.synthetic_monitor.storage import (  # noqa: E402
    Database,
    SQLiteCatalog,
    SQLiteHistoryStore,
)


@pytest.fixture(autouse=True)
def clean_synthetic_env(monkeypatch):
    """Keep SYNTHETIC_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("SYNTHETIC_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path(tmp_path) -> str:
    """Path of a fresh SQLite database file."""
    return str(tmp_path / "synthetic.db")


@pytest.fixture
def database(db_path) -> Database:
    return Database(db_path)


@pytest.fixture
def catalog(database) -> SQLiteCatalog:
    return SQLiteCatalog(database)


@pytest.fixture
def history(database) -> SQLiteHistoryStore:
    return SQLiteHistoryStore(database)


@pytest.fixture
def config(db_path) -> SyntheticConfig:
    """Configuration with short timeouts suitable for tests."""
    return SyntheticConfig(
        db_path=db_path,
        probe_timeout_seconds=0.5,
        max_concurrency=5,
        health_check_timeout_seconds=0.5,
    )


async def _echo(request):
    body = await request.json() if request.can_read_body else None
    return web.json_response({
        "method": request.method,
        "path": request.path,
        "query": dict(request.query),
        "body": body,
    })


async def _failing(request):
    return web.json_response({"message": "boom"}, status=500)


async def _plain_text(request):
    return web.Response(text="pong")


async def _slow(request):
    await asyncio.sleep(2)
    return web.json_response({"slow": True})


def build_probe_app(healthy: bool = True) -> web.Application:
    """Application standing in for a probed node."""
    app = web.Application()
    for method in ("GET", "POST", "PUT", "DELETE", "PATCH"):
        app.router.add_route(method, "/api/echo", _echo)
    app.router.add_get("/api/fail", _failing)
    app.router.add_get("/api/ping", _plain_text)
    if healthy:
        app.router.add_get("/health", _plain_text)
    else:
        app.router.add_get("/health", _failing)
    return app


def build_slow_app() -> web.Application:
    """Application whose every route outlives the probe timeout."""
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", _slow)
    return app


@pytest.fixture
async def probe_server():
    server = TestServer(build_probe_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def slow_server():
    server = TestServer(build_slow_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def unused_port() -> int:
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
async def unhealthy_server():
    server = TestServer(build_probe_app(healthy=False))
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def bare_server():
    """Server with no routes at all; every path answers 404."""
    server = TestServer(web.Application())
    await server.start_server()
    yield server
    await server.close()
