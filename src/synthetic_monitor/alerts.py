#!/usr/bin/env python3
"""
Alert evaluation.

An alert is a history record that failed outright or exceeded its test's
latency threshold. AlertFilter narrows a candidate alert set by tag, node
and group: OR within each category, AND across categories, and an empty
category places no constraint.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .models import Alert, HistoryRecord, ProbeOutcome, SyntheticTest, TargetType, utcnow
from .tags import parse_tags

logger = logging.getLogger(__name__)

DEFAULT_TIME_RANGE = "24h"

ALERT_TIME_RANGES: Dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}

STATISTICS_TIME_RANGES: Dict[str, timedelta] = dict(ALERT_TIME_RANGES, **{"30d": timedelta(days=30)})


def is_alert(record: Any, test: SyntheticTest) -> bool:
    """True when the record failed or its latency exceeds the test threshold.

    Accepts a HistoryRecord or a ProbeOutcome.
    """
    return (not record.success) or record.response_time_ms > test.alert_threshold_ms


def resolve_time_range(
    time_range: Optional[str],
    now: Optional[datetime] = None,
    ranges: Dict[str, timedelta] = ALERT_TIME_RANGES,
) -> datetime:
    """Turn "1h" / "6h" / "24h" / "7d" into a start date. Unknown values mean 24h."""
    now = now or utcnow()
    delta = ranges.get(time_range or DEFAULT_TIME_RANGE)
    if delta is None:
        logger.debug(f"Unknown time range {time_range!r}, using {DEFAULT_TIME_RANGE}")
        delta = ranges[DEFAULT_TIME_RANGE]
    return now - delta


def _int_set(values: Optional[Iterable[Any]]) -> FrozenSet[int]:
    return frozenset(int(v) for v in (values or ()))


@dataclass(frozen=True)
class AlertFilter:
    """Tag / node / group selection applied to an alert feed."""

    tags: FrozenSet[str] = field(default_factory=frozenset)
    node_ids: FrozenSet[int] = field(default_factory=frozenset)
    group_ids: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def create(cls, tags: Any = None, node_ids: Any = None, group_ids: Any = None) -> "AlertFilter":
        """Build a filter from loosely typed input (tag strings, ID lists)."""
        return cls(tags=parse_tags(tags), node_ids=_int_set(node_ids), group_ids=_int_set(group_ids))

    @property
    def is_empty(self) -> bool:
        return not (self.tags or self.node_ids or self.group_ids)

    def matches(self, alert: Alert) -> bool:
        tag_match = not self.tags or bool(self.tags & alert.test_tags)
        node_match = not self.node_ids or alert.node_id in self.node_ids
        # Group selection matches group-targeted tests only, never member nodes.
        group_match = not self.group_ids or (
            alert.target_type == TargetType.GROUP and alert.target_id in self.group_ids
        )
        return tag_match and node_match and group_match

    def apply(self, alerts: Iterable[Alert]) -> List[Alert]:
        return [alert for alert in alerts if self.matches(alert)]


def recent_alert_records(
    records: Iterable[HistoryRecord], test: SyntheticTest, limit: int = 10
) -> List[HistoryRecord]:
    """Alert records among the ``limit`` most recent records of a test."""
    recent = sorted(records, key=lambda r: (r.executed_at, r.id), reverse=True)[:limit]
    return [r for r in recent if is_alert(r, test)]


def outcome_alerts(outcomes: Iterable[ProbeOutcome], test: SyntheticTest) -> List[ProbeOutcome]:
    """Live outcomes of a run that constitute alerts."""
    return [o for o in outcomes if is_alert(o, test)]
