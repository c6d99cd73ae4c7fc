#!/usr/bin/env python3
"""
Repository interfaces for the synthetic monitor.

The engine depends only on these abstractions. Each backing store provides
one adapter implementing them (see ``storage``).
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import (
    Alert,
    ApiDefinition,
    HistoryRecord,
    Node,
    NodeGroup,
    ProbeOutcome,
    SyntheticTest,
    Tag,
    TargetType,
)


class HistoryQuery(BaseModel):
    """Composable history filter. Every supplied field narrows the result (AND)."""

    test_id: Optional[int] = Field(default=None, description="Exact synthetic test ID")
    test_name: Optional[str] = Field(default=None, description="Case-insensitive substring of the test name")
    node_id: Optional[int] = Field(default=None, description="Exact node ID")
    node_name: Optional[str] = Field(default=None, description="Case-insensitive substring of the node name")
    node_group_name: Optional[str] = Field(
        default=None, description="Substring of a group the record's node belongs to"
    )
    tag_name: Optional[str] = Field(default=None, description="Substring of one of the owning test's tags")
    notification_enabled: Optional[bool] = Field(
        default=None, description="True: only non-alert records, False: only alerts, None: no filter"
    )
    start_date: Optional[datetime] = Field(default=None, description="Inclusive lower bound on executed_at")
    end_date: Optional[datetime] = Field(default=None, description="Inclusive upper bound on executed_at")
    limit: int = Field(default=50, ge=1, le=1000, description="Maximum number of records to return")
    offset: int = Field(default=0, ge=0, description="Number of records to skip")

    @field_validator("test_name", "node_name", "node_group_name", "tag_name", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, value):
        # Stored timestamps are UTC; naive bounds are read the same way.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def validate_date_range(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self


class NodeRepository(ABC):
    """Node registry."""

    @abstractmethod
    def get_node(self, node_id: int) -> Optional[Node]:
        pass

    @abstractmethod
    def list_nodes(self) -> List[Node]:
        pass

    @abstractmethod
    def create_node(self, name: str, host: str, port: int, tags: Any = None, status: str = "unknown") -> Node:
        pass

    @abstractmethod
    def update_node_status(self, node_id: int, status: str) -> None:
        pass

    @abstractmethod
    def delete_node(self, node_id: int) -> bool:
        """Delete a node. Group memberships referencing it are left in place."""
        pass


class NodeGroupRepository(ABC):
    """Node groups. Members are node IDs and may dangle."""

    @abstractmethod
    def get_group(self, group_id: int) -> Optional[NodeGroup]:
        pass

    @abstractmethod
    def list_groups(self) -> List[NodeGroup]:
        pass

    @abstractmethod
    def create_group(self, name: str, member_node_ids: Sequence[int]) -> NodeGroup:
        pass

    @abstractmethod
    def delete_group(self, group_id: int) -> bool:
        pass


class ApiRepository(ABC):
    """API definitions with their parameter schemas."""

    @abstractmethod
    def get_api(self, api_id: int) -> Optional[ApiDefinition]:
        pass

    @abstractmethod
    def list_apis(self) -> List[ApiDefinition]:
        pass

    @abstractmethod
    def create_api(
        self,
        name: str,
        uri: str,
        http_method: str,
        parameters: Iterable[Mapping[str, Any]] = (),
        tags: Any = None,
    ) -> ApiDefinition:
        """
        Create an API definition.

        Args:
            parameters: Mappings with name, placement ("query"/"body"),
                required and description
        """
        pass

    @abstractmethod
    def delete_api(self, api_id: int) -> bool:
        pass


class SyntheticTestRepository(ABC):
    """Synthetic test definitions."""

    @abstractmethod
    def get_test(self, test_id: int) -> Optional[SyntheticTest]:
        pass

    @abstractmethod
    def list_tests(self, enabled_only: bool = False) -> List[SyntheticTest]:
        pass

    @abstractmethod
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
        pass

    @abstractmethod
    def set_test_enabled(self, test_id: int, enabled: bool) -> None:
        pass

    @abstractmethod
    def delete_test(self, test_id: int) -> bool:
        """Delete the test definition only. History is removed by the HistoryStore."""
        pass


class TagRepository(ABC):
    """Tags shared by nodes, APIs and tests."""

    @abstractmethod
    def list_tags(self) -> List[Tag]:
        pass

    @abstractmethod
    def get_or_create_tag(self, name: str) -> Tag:
        pass

    @abstractmethod
    def list_orphan_tags(self) -> List[Tag]:
        """Tags no node, API or test references."""
        pass

    @abstractmethod
    def delete_orphan_tags(self) -> int:
        pass


class Catalog(NodeRepository, NodeGroupRepository, ApiRepository, SyntheticTestRepository, TagRepository):
    """All catalog repositories served by one backing store."""


class HistoryStore(ABC):
    """
    Append-only log of probe outcomes.

    Records are never updated. They are only created, or removed in bulk by
    retention pruning and cascade deletes.
    """

    @abstractmethod
    def append(
        self,
        outcome: ProbeOutcome,
        test_id: Optional[int],
        request_input: Optional[Dict[str, Any]] = None,
        executed_at: Optional[datetime] = None,
    ) -> Optional[HistoryRecord]:
        """
        Persist one outcome.

        Returns:
            The stored record, or None when ``test_id`` is None (preview)
        """
        pass

    @abstractmethod
    def query(self, query: HistoryQuery) -> Tuple[List[HistoryRecord], int]:
        """Return (page of records newest first, total matching count)."""
        pass

    @abstractmethod
    def get_test_history(self, test_id: int, limit: int = 100) -> List[HistoryRecord]:
        pass

    @abstractmethod
    def get_node_history(self, node_id: int, limit: int = 100) -> List[HistoryRecord]:
        pass

    @abstractmethod
    def get_alerts(self, start_date: datetime, limit: int = 100) -> List[Alert]:
        """Alert rows (failed or over threshold) executed at or after start_date."""
        pass

    @abstractmethod
    def delete_by_test_id(self, test_id: int) -> int:
        pass

    @abstractmethod
    def delete_record(self, record_id: int) -> bool:
        pass

    @abstractmethod
    def prune_older_than(self, cutoff: datetime) -> int:
        pass
