#!/usr/bin/env python3
"""
Windowed statistics over history slices.

All functions are pure: they take an already-fetched list of records and
never touch storage.
"""

from typing import Any, Dict, Iterable, List, Sequence

from .models import Alert, HistoryRecord, TestStatistics, isoformat

NOT_AVAILABLE = "N/A"
CHART_POINTS = 50


def _newest_first(records: Iterable[HistoryRecord]) -> List[HistoryRecord]:
    return sorted(records, key=lambda r: (r.executed_at, r.id), reverse=True)


def compute_statistics(records: Sequence[HistoryRecord], alert_threshold_ms: int) -> TestStatistics:
    """
    Aggregate a history slice.

    ``alert_count`` counts latency breaches only; failed requests within the
    threshold are not included.

    Args:
        records: History records already filtered to a test (and optionally a node)
        alert_threshold_ms: The owning test's latency threshold

    Returns:
        TestStatistics with "N/A" rates when the slice is empty
    """
    total = len(records)
    if total == 0:
        return TestStatistics(
            total_executions=0,
            success_rate=NOT_AVAILABLE,
            avg_response_time=NOT_AVAILABLE,
            min_response_time=None,
            max_response_time=None,
            alert_count=0,
        )

    latencies = [r.response_time_ms for r in records]
    successes = sum(1 for r in records if r.success)
    return TestStatistics(
        total_executions=total,
        success_rate=f"{100 * successes / total:.1f}",
        avg_response_time=f"{sum(latencies) / total:.2f}",
        min_response_time=min(latencies),
        max_response_time=max(latencies),
        alert_count=sum(1 for latency in latencies if latency > alert_threshold_ms),
    )


def chart_series(records: Iterable[HistoryRecord], limit: int = CHART_POINTS) -> List[Dict[str, Any]]:
    """Most recent ``limit`` records in chronological order as chart points."""
    recent = _newest_first(records)[:limit]
    recent.reverse()
    return [
        {"time": isoformat(r.executed_at), "responseTimeMs": r.response_time_ms}
        for r in recent
    ]


def summarize_alerts(alerts: Sequence[Alert]) -> Dict[str, int]:
    return {
        "total": len(alerts),
        "affectedTests": len({a.test_id for a in alerts}),
        "affectedNodes": len({a.node_id for a in alerts}),
    }
