#!/usr/bin/env python3
"""
Probe executor for synthetic tests.

Issues the underlying API call against each resolved node, measures latency
and converts every transport problem (timeout, refused connection, non-2xx
status) into a failed ProbeOutcome. Only programming errors such as an
unsupported HTTP method are raised.
"""

import asyncio
import ipaddress
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import aiohttp

from .errors import UnsupportedHttpMethod, ValidationError
from .models import (
    ApiDefinition,
    Node,
    ParameterBinding,
    ParameterPlacement,
    ProbeOutcome,
)
from .parameter_binder import bindings_to_mapping

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = ("GET", "POST", "PUT", "DELETE")
QUERY_METHODS = ("GET", "DELETE")
HEALTH_PATH = "/health"

OutcomeCallback = Callable[[ProbeOutcome, Dict[str, Any]], Awaitable[None]]


def is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return False


class ProbeExecutor:
    """Dispatches API probes against nodes with a per-call timeout."""

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        max_concurrency: int = 10,
        health_timeout_seconds: float = 5.0,
    ):
        """
        Initialize the executor.

        Args:
            timeout_seconds: Timeout applied to each probe independently
            max_concurrency: Maximum probes in flight within one run
            health_timeout_seconds: Timeout for node health checks
        """
        self.timeout_seconds = timeout_seconds
        self.max_concurrency = max_concurrency
        self.health_timeout_seconds = health_timeout_seconds

    @classmethod
    def from_config(cls, config) -> "ProbeExecutor":
        return cls(
            timeout_seconds=config.probe_timeout_seconds,
            max_concurrency=config.max_concurrency,
            health_timeout_seconds=config.health_check_timeout_seconds,
        )

    @staticmethod
    def normalize_method(api: ApiDefinition) -> str:
        method = (api.http_method or "").upper()
        if method not in SUPPORTED_METHODS:
            raise UnsupportedHttpMethod(api.http_method)
        return method

    @staticmethod
    def build_url(api: ApiDefinition, node: Node) -> str:
        """Build ``http://{host}:{port}{uri}`` after validating each part.

        Raises:
            ValidationError: if host, port or URI is malformed
        """
        host = (node.host or "").strip()
        if not host or any(c in host for c in " /?#@"):
            raise ValidationError(
                f"Invalid host for node {node.name}: {node.host!r}", details={"field": "host"}
            )
        if ":" in host:
            if not is_ip_address(host):
                raise ValidationError(
                    f"Invalid host for node {node.name}: {node.host!r}", details={"field": "host"}
                )
            host = f"[{host}]"

        try:
            port = int(node.port)
        except (TypeError, ValueError):
            port = 0
        if not 0 < port < 65536:
            raise ValidationError(
                f"Invalid port for node {node.name}: {node.port!r}", details={"field": "port"}
            )

        uri = (api.uri or "").strip()
        if not uri.startswith("/") or any(c.isspace() for c in uri) or "://" in uri:
            raise ValidationError(f"Invalid URI for API {api.name}: {api.uri!r}", details={"field": "uri"})

        url = f"http://{host}:{port}{uri}"
        if urlsplit(url).port != port:
            raise ValidationError(f"Invalid URL: {url}", details={"field": "uri"})
        return url

    @staticmethod
    def split_bindings(
        method: str, bindings: Sequence[ParameterBinding]
    ) -> Tuple[Dict[str, str], Optional[Dict[str, str]]]:
        """Place bindings into (query params, JSON body) for the given method.

        GET and DELETE carry everything in the query string. POST and PUT send
        body-placed bindings as JSON and keep query-placed ones in the URL.
        """
        if method in QUERY_METHODS:
            return bindings_to_mapping(bindings), None
        query = bindings_to_mapping(b for b in bindings if b.placement == ParameterPlacement.QUERY)
        body = bindings_to_mapping(b for b in bindings if b.placement == ParameterPlacement.BODY)
        return query, body

    def describe_request(
        self, api: ApiDefinition, bindings: Sequence[ParameterBinding], url: Optional[str]
    ) -> Dict[str, Any]:
        """Request description persisted as a history record's input."""
        return {
            "method": (api.http_method or "").upper(),
            "url": url,
            "parameters": bindings_to_mapping(bindings),
        }

    async def probe(
        self,
        session: aiohttp.ClientSession,
        api: ApiDefinition,
        bindings: Sequence[ParameterBinding],
        node: Node,
    ) -> ProbeOutcome:
        """
        Probe one node.

        Args:
            session: aiohttp ClientSession
            api: API definition to call
            bindings: Bound parameters
            node: Target node

        Returns:
            ProbeOutcome; transport failures yield success=False
        """
        method = self.normalize_method(api)
        url = self.build_url(api, node)
        params, body = self.split_bindings(method, bindings)

        start_time = time.monotonic()
        try:
            async with session.request(
                method,
                url,
                params=params or None,
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as resp:
                text = await resp.text()
                latency_ms = _elapsed_ms(start_time)
                data = _decode_body(text)
                success = 200 <= resp.status < 300
                if not success:
                    logger.warning(f"Probe {api.name} on {node.name} returned HTTP {resp.status}")
                    data = {"error": f"Request failed with status code {resp.status}", "response": data}
                return ProbeOutcome(
                    node_id=node.id,
                    node_name=node.name,
                    status_code=resp.status,
                    success=success,
                    response_time_ms=latency_ms,
                    response_body=data,
                )
        except asyncio.TimeoutError:
            latency_ms = _elapsed_ms(start_time)
            logger.warning(f"Probe {api.name} on {node.name} timed out after {self.timeout_seconds}s")
            return self._failed(node, latency_ms, f"Timeout after {self.timeout_seconds}s")
        except (aiohttp.ClientError, OSError) as e:
            latency_ms = _elapsed_ms(start_time)
            logger.warning(f"Probe {api.name} on {node.name} failed: {e}")
            return self._failed(node, latency_ms, str(e) or type(e).__name__)

    @staticmethod
    def _failed(node: Node, latency_ms: int, error: str) -> ProbeOutcome:
        return ProbeOutcome(
            node_id=node.id,
            node_name=node.name,
            status_code=0,
            success=False,
            response_time_ms=latency_ms,
            response_body={"error": error},
        )

    async def probe_all(
        self,
        api: ApiDefinition,
        bindings: Sequence[ParameterBinding],
        nodes: Sequence[Node],
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> List[ProbeOutcome]:
        """
        Probe every node concurrently, one independent task per node.

        The method and every URL are validated before any request is sent, so a
        malformed target rejects the whole run. ``on_outcome`` is awaited inside
        each node task as soon as that node's outcome is known.

        Returns:
            Outcomes in node order; a single synthetic failure when ``nodes``
            is empty
        """
        self.normalize_method(api)
        urls = {node.id: self.build_url(api, node) for node in nodes}

        if not nodes:
            outcome = ProbeOutcome.no_targets()
            logger.warning(f"API {api.name}: no target nodes to probe")
            if on_outcome is not None:
                await on_outcome(outcome, self.describe_request(api, bindings, None))
            return [outcome]

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async with aiohttp.ClientSession() as session:

            async def run_one(node: Node) -> ProbeOutcome:
                async with semaphore:
                    outcome = await self.probe(session, api, bindings, node)
                if on_outcome is not None:
                    await on_outcome(outcome, self.describe_request(api, bindings, urls[node.id]))
                return outcome

            results = await asyncio.gather(
                *(run_one(node) for node in nodes), return_exceptions=True
            )

        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def check_node_health(self, node: Node) -> Tuple[bool, int, Optional[str]]:
        """
        Check whether a node answers on its health endpoint.

        IP hosts are checked with HEAD, hostnames with GET. A 404 still counts
        as reachable.

        Returns:
            Tuple of (healthy, latency_ms, error_message)
        """
        method = "HEAD" if is_ip_address(node.host) else "GET"
        host = f"[{node.host}]" if ":" in node.host else node.host
        url = f"http://{host}:{node.port}{HEALTH_PATH}"
        timeout = aiohttp.ClientTimeout(total=self.health_timeout_seconds)

        start_time = time.monotonic()
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url) as resp:
                    latency_ms = _elapsed_ms(start_time)
                    if resp.status < 400 or resp.status == 404:
                        return True, latency_ms, None
                    return False, latency_ms, f"HTTP {resp.status} {resp.reason or ''}".strip()
        except asyncio.TimeoutError:
            return False, _elapsed_ms(start_time), f"Timeout after {self.health_timeout_seconds}s"
        except (aiohttp.ClientError, OSError) as e:
            return False, _elapsed_ms(start_time), str(e) or type(e).__name__


def _elapsed_ms(start_time: float) -> int:
    return int(round((time.monotonic() - start_time) * 1000))


def _decode_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text
