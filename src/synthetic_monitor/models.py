#!/usr/bin/env python3
"""
Data models for the synthetic monitor.

Contains the core data structures shared by the resolver, binder, executor,
history store, aggregator and alert evaluator. Entities serialise to the
camelCase JSON shape used by the HTTP API via ``to_dict()``.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


SYSTEM_NODE_ID = 0
SYSTEM_NODE_NAME = "<system>"


class TargetType(str, Enum):
    NODE = "node"
    GROUP = "group"


class ParameterPlacement(str, Enum):
    QUERY = "query"
    BODY = "body"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


@dataclass
class Node:
    """A probe endpoint owned by the node registry."""
    id: int
    name: str
    host: str
    port: int
    status: str = "unknown"
    tags: FrozenSet[str] = field(default_factory=frozenset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "status": self.status,
            "tags": sorted(self.tags),
        }


@dataclass
class NodeGroup:
    """Ordered set of node IDs. Members may reference nodes that no longer exist."""
    id: int
    name: str
    member_node_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "nodeIds": list(self.member_node_ids)}


@dataclass
class ApiParameter:
    id: int
    name: str
    placement: ParameterPlacement = ParameterPlacement.QUERY
    required: bool = False
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.placement.value,
            "required": self.required,
            "description": self.description,
        }


@dataclass
class ApiDefinition:
    id: int
    name: str
    uri: str
    http_method: str
    parameters: List[ApiParameter] = field(default_factory=list)
    tags: FrozenSet[str] = field(default_factory=frozenset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "uri": self.uri,
            "method": self.http_method,
            "parameters": [p.to_dict() for p in self.parameters],
            "tags": sorted(self.tags),
        }


@dataclass
class SyntheticTest:
    """A named API call repeatedly executed against a node or node group."""
    id: int
    name: str
    target_type: TargetType
    target_id: int
    api_id: int
    parameter_values: Dict[int, str] = field(default_factory=dict)
    interval_seconds: int = 60
    alert_threshold_ms: int = 1000
    tags: FrozenSet[str] = field(default_factory=frozenset)
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "targetType": self.target_type.value,
            "targetId": self.target_id,
            "apiId": self.api_id,
            "apiParameterValues": {str(k): v for k, v in self.parameter_values.items()},
            "intervalSeconds": self.interval_seconds,
            "alertThresholdMs": self.alert_threshold_ms,
            "tags": sorted(self.tags),
            "enabled": self.enabled,
        }


@dataclass
class Tag:
    id: int
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class ParameterBinding:
    """A bound parameter ready for transport, keyed by name rather than ID."""
    name: str
    placement: ParameterPlacement
    value: str


@dataclass
class ProbeOutcome:
    """Result of one probe against one node. Never persisted directly."""
    node_id: int
    node_name: str
    status_code: int
    success: bool
    response_time_ms: int
    response_body: Any = None

    @classmethod
    def no_targets(cls) -> "ProbeOutcome":
        """Synthetic outcome reported when a target resolves to zero nodes."""
        return cls(
            node_id=SYSTEM_NODE_ID,
            node_name=SYSTEM_NODE_NAME,
            status_code=0,
            success=False,
            response_time_ms=0,
            response_body={"error": "no target nodes"},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "statusCode": self.status_code,
            "success": self.success,
            "responseTimeMs": self.response_time_ms,
            "data": self.response_body,
        }


@dataclass(frozen=True)
class HistoryRecord:
    """One immutable, persisted outcome of a single probe against a single node."""
    id: int
    synthetic_test_id: Optional[int]
    node_id: int
    status_code: int
    success: bool
    response_time_ms: int
    executed_at: datetime
    input_json: Optional[str] = None
    output_json: Optional[str] = None
    # Joined for display only; not part of the stored row.
    node_name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    test_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "syntheticTestHistoryId": self.id,
            "syntheticTestId": self.synthetic_test_id,
            "syntheticTestName": self.test_name,
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "host": self.host,
            "port": self.port,
            "statusCode": self.status_code,
            "success": self.success,
            "responseTimeMs": self.response_time_ms,
            "executedAt": isoformat(self.executed_at),
            "input": self.input_json,
            "output": self.output_json,
        }


@dataclass
class Alert:
    """A history record joined with its owning test and API, materialised on read."""
    test_id: int
    test_name: str
    node_id: int
    node_name: str
    api_id: int
    api_name: str
    api_uri: str
    api_method: str
    parameter_values: Dict[str, Any]
    response_time: int
    threshold: int
    timestamp: datetime
    status_code: int
    success: bool = False
    test_tags: FrozenSet[str] = field(default_factory=frozenset)
    target_type: Optional[TargetType] = None
    target_id: Optional[int] = None
    history_id: Optional[int] = None

    @staticmethod
    def parameters_from_input(input_json: Optional[str]) -> Dict[str, Any]:
        """Extract the bound parameter map stored in a record's input JSON."""
        if not input_json:
            return {}
        try:
            data = json.loads(input_json)
        except (TypeError, ValueError):
            return {}
        if isinstance(data, dict) and isinstance(data.get("parameters"), dict):
            return data["parameters"]
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "testId": self.test_id,
            "testName": self.test_name,
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "apiId": self.api_id,
            "apiName": self.api_name,
            "apiUri": self.api_uri,
            "apiMethod": self.api_method,
            "parameterValues": self.parameter_values,
            "responseTime": self.response_time,
            "threshold": self.threshold,
            "timestamp": isoformat(self.timestamp),
            "statusCode": self.status_code,
            "success": self.success,
            "tags": sorted(self.test_tags),
            "targetType": self.target_type.value if self.target_type else None,
            "targetId": self.target_id,
            "syntheticTestHistoryId": self.history_id,
        }


@dataclass
class TestStatistics:
    """Windowed aggregates over a history slice."""
    __test__ = False  # keep pytest from collecting this class

    total_executions: int
    success_rate: str
    avg_response_time: str
    min_response_time: Optional[int]
    max_response_time: Optional[int]
    alert_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalExecutions": self.total_executions,
            "successRate": self.success_rate,
            "avgResponseTime": self.avg_response_time,
            "minResponseTime": self.min_response_time,
            "maxResponseTime": self.max_response_time,
            "alertCount": self.alert_count,
        }


@dataclass
class ExecutionRun:
    """
    One execution run of a synthetic test.

    The per-node breakdown is always retained; ``success`` is only true when
    every outcome succeeded.
    """
    test_id: Optional[int]
    test_name: str
    executed_at: datetime
    outcomes: List[ProbeOutcome] = field(default_factory=list)
    records: List[HistoryRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.outcomes) and all(o.success for o in self.outcomes)

    @property
    def status(self) -> RunStatus:
        if self.success:
            return RunStatus.SUCCESS
        if any(o.success for o in self.outcomes):
            return RunStatus.PARTIAL_FAILURE
        return RunStatus.FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "testId": self.test_id,
            "testName": self.test_name,
            "executedAt": isoformat(self.executed_at),
            "success": self.success,
            "status": self.status.value,
            "results": [o.to_dict() for o in self.outcomes],
            "historyIds": [r.id for r in self.records],
        }
