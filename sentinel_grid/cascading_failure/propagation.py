"""
Failure propagation rules shared by cascade prediction and cascade execution.

Severity delivered across an edge is the parent's severity times the edge
weight times a fixed per-hop decay. Propagation stops at inactive edges,
isolated nodes, the severity floor and the hop limit. Both the read-only
path forecast and the mutating cascade walk use plan_propagation, so a
forecast always names the nodes a cascade of the same severity would reach.
"""

from collections import deque
from dataclasses import dataclass
from typing import List, Optional

from ..digital_twin.graph import TwinGraph
from ..digital_twin.models import NodeStatus


@dataclass(frozen=True)
class PropagationParams:
    decay: float = 0.8
    floor: float = 0.05
    max_hops: int = 6
    health_penalty: float = 0.5  # health lost per unit of delivered severity


DEFAULT_PROPAGATION = PropagationParams()


@dataclass
class PlannedImpact:
    node_id: str
    hop: int
    severity: float
    via: Optional[str] = None  # upstream node the failure arrived from


def plan_propagation(graph: TwinGraph, origin_id: str, severity: float,
                     params: PropagationParams = DEFAULT_PROPAGATION) -> List[PlannedImpact]:
    """
    Breadth-first walk of active outgoing dependency edges.

    Each node is reached at most once, along its fewest-hop path; ties go to
    the edge discovered first. The origin is always the first entry.
    """
    impacts = [PlannedImpact(node_id=origin_id, hop=0, severity=severity)]
    visited = {origin_id}
    queue = deque([(origin_id, severity, 0)])

    while queue:
        node_id, current, hop = queue.popleft()
        if hop >= params.max_hops:
            continue
        for edge in graph.outgoing_edges(node_id):
            if not edge.is_active or edge.to_id in visited:
                continue
            target = graph.get_node_by_id(edge.to_id)
            if target is None or target.status == NodeStatus.ISOLATED:
                continue
            delivered = current * edge.weight * params.decay
            if delivered < params.floor:
                continue
            visited.add(edge.to_id)
            impacts.append(PlannedImpact(node_id=edge.to_id, hop=hop + 1, severity=delivered, via=node_id))
            queue.append((edge.to_id, delivered, hop + 1))

    return impacts
