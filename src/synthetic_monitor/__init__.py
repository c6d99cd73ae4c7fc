"""
Synthetic Monitor - synthetic test execution, history and alerting.

Resolves a test's node or node-group target, probes the test's API against
every node, keeps the outcomes as append-only history and derives
statistics and alerts from it.
"""

from .config import SyntheticConfig
from .models import (
    Alert,
    ApiDefinition,
    ApiParameter,
    ExecutionRun,
    HistoryRecord,
    Node,
    NodeGroup,
    ProbeOutcome,
    SyntheticTest,
    TestStatistics,
)
from .runner import SyntheticTestRunner
from .api import SyntheticMonitorAPI

__all__ = [
    'SyntheticConfig',
    'SyntheticTestRunner',
    'SyntheticMonitorAPI',
    'Alert',
    'ApiDefinition',
    'ApiParameter',
    'ExecutionRun',
    'HistoryRecord',
    'Node',
    'NodeGroup',
    'ProbeOutcome',
    'SyntheticTest',
    'TestStatistics',
]
