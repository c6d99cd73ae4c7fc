#!/usr/bin/env python3
"""
Target resolution.

Expands a synthetic test's ``(target_type, target_id)`` into the concrete
nodes to probe, given a snapshot of nodes and groups.
"""

import logging
from typing import List, Mapping, Union

from .errors import ValidationError
from .models import Node, NodeGroup, TargetType

logger = logging.getLogger(__name__)


def resolve_targets(
    target_type: Union[TargetType, str],
    target_id: int,
    nodes: Mapping[int, Node],
    groups: Mapping[int, NodeGroup],
) -> List[Node]:
    """Resolve a test target into an ordered list of nodes.

    A missing node or group yields an empty list. Group members that no longer
    exist are dropped; the remaining members keep the group's stored order.

    Args:
        target_type: "node" or "group"
        target_id: ID of the node or group
        nodes: Node snapshot keyed by ID
        groups: Group snapshot keyed by ID

    Returns:
        Nodes to probe (possibly empty)
    """
    try:
        target_type = TargetType(target_type)
    except ValueError:
        raise ValidationError(
            f"Unknown target type: {target_type}", details={"field": "targetType"}
        )

    if target_type is TargetType.NODE:
        node = nodes.get(target_id)
        return [node] if node is not None else []

    group = groups.get(target_id)
    if group is None:
        logger.debug(f"Node group {target_id} not found")
        return []

    resolved: List[Node] = []
    seen = set()
    for node_id in group.member_node_ids:
        if node_id in seen:
            continue
        seen.add(node_id)
        node = nodes.get(node_id)
        if node is None:
            logger.debug(f"Dropping dangling member {node_id} of group {group.name}")
            continue
        resolved.append(node)
    return resolved

