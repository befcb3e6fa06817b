#!/usr/bin/env python3
"""
Cascading Failure - Propagation Engine
======================================

Pushes a failure from an origin node through the twin's dependency graph:
- Breadth-first along active outgoing dependency edges
- Delivered severity decays with edge weight and a fixed per-hop factor
- Isolated nodes and inactive edges block propagation
- Each reached node takes a risk increase and a health penalty

The whole cascade is planned before any node is touched, so a cascade is
either applied completely or rejected without effect. Cascade damage is
permanent until mitigated.

Usage:
    python -m sentinel_grid.cascading_failure.simulation --trigger node_0001
    python -m sentinel_grid.cascading_failure.simulation --trigger node_0001 --severity 0.9
    python -m sentinel_grid.cascading_failure.simulation --random-failure
    python -m sentinel_grid.cascading_failure.simulation --list-components
"""

import argparse
from collections import Counter
from typing import List, Optional

from ..common import LogCategory, clamp, get_settings
from ..context import SimulationContext
from ..digital_twin.models import CascadeEvent, CascadeHop, DigitalTwinNode, NodeStatus
from ..exceptions import InvalidOperationError, ValidationError
from .propagation import DEFAULT_PROPAGATION, PlannedImpact, PropagationParams, plan_propagation

INCIDENT_MIN_NODES = 2


class CascadeEngine:
    """Applies failure cascades to the twin graph."""

    def __init__(self, context: SimulationContext, params: PropagationParams = DEFAULT_PROPAGATION):
        self.context = context
        self.params = params

    def trigger_cascade(self, origin_id: str, severity: float) -> CascadeEvent:
        """
        Propagate a failure of the given severity from origin_id.

        Args:
            origin_id: Node where the failure starts
            severity: Initial severity in (0, 1]

        Returns:
            CascadeEvent listing affected nodes, the propagation path and the
            total delivered severity as impact score

        Raises:
            NodeNotFoundError: Unknown origin
            ValidationError: Severity outside (0, 1]
            InvalidOperationError: Origin is isolated
        """
        if not 0.0 < severity <= 1.0:
            raise ValidationError(f"Cascade severity must be in (0, 1], got {severity}")

        with self.context.lock:
            graph = self.context.graph
            origin = graph.require_node(origin_id)
            if origin.status == NodeStatus.ISOLATED:
                raise InvalidOperationError(f"Node {origin_id} is isolated; cascade cannot start there")

            plan = plan_propagation(graph, origin_id, severity, self.params)
            for impact in plan:
                graph.apply_damage(impact.node_id,
                                   risk_increase=impact.severity,
                                   health_loss=impact.severity * self.params.health_penalty)

            event = CascadeEvent(
                id=self.context.ids.next("cascade"),
                origin_id=origin_id,
                severity=severity,
                started_at=self.context.now(),
                affected_nodes=[impact.node_id for impact in plan],
                impact_score=sum(impact.severity for impact in plan),
                propagation_path=[
                    CascadeHop(from_id=impact.via, to_id=impact.node_id, hop=impact.hop, severity=impact.severity)
                    for impact in plan if impact.via is not None
                ],
                hops=max(impact.hop for impact in plan),
            )
            self.context.cascades[event.id] = event

            self.context.log.simulation(
                LogCategory.CASCADE,
                f"Cascade from {origin.name}: {len(event.affected_nodes)} nodes, "
                f"impact {event.impact_score:.2f}, depth {event.hops}",
                {"cascade_id": event.id, "severity": severity},
            )
            if len(event.affected_nodes) >= INCIDENT_MIN_NODES:
                incident = self.context.open_incident(
                    severity=severity,
                    affected_nodes=event.affected_nodes,
                    summary=f"Cascading failure from {origin.name} reached {len(event.affected_nodes)} nodes",
                    root_cause=f"Failure of {origin.type.replace('_', ' ')} {origin.id}",
                    cascade_event_id=event.id,
                )
                event.incident_id = incident.id
            return event

    def get_cascade(self, cascade_id: str) -> Optional[CascadeEvent]:
        return self.context.cascades.get(cascade_id)

    def get_cascade_history(self) -> List[CascadeEvent]:
        with self.context.lock:
            return sorted(self.context.cascades.values(), key=lambda e: e.started_at)

    def preview(self, origin_id: str, severity: float) -> List[PlannedImpact]:
        """Planned impacts without applying them."""
        with self.context.lock:
            self.context.graph.require_node(origin_id)
            return plan_propagation(self.context.graph, origin_id, severity, self.params)


# =============================================================================
# Reporting
# =============================================================================

def print_cascade_report(event: CascadeEvent, context: SimulationContext):
    """Print detailed cascade report."""
    graph = context.graph
    nodes: List[DigitalTwinNode] = [graph.get_node_by_id(nid) for nid in event.affected_nodes
                                    if graph.get_node_by_id(nid) is not None]

    print("\n" + "=" * 80)
    print(" CASCADING FAILURE REPORT")
    print(" Triggered: " + event.started_at.strftime("%Y-%m-%d %H:%M:%S"))
    print("=" * 80)

    print(f"\n ORIGIN: {event.origin_id} (severity {event.severity:.2f})")

    print("\n IMPACT SUMMARY")
    print("-" * 80)
    print(f" Nodes Affected:      {len(event.affected_nodes)}")
    print(f" Maximum Depth:       {event.hops} hops")
    print(f" Impact Score:        {event.impact_score:.2f}")
    print(f" Now Critical:        {sum(1 for n in nodes if n.status == NodeStatus.CRITICAL)}")
    print(f" Now Offline:         {sum(1 for n in nodes if n.status == NodeStatus.OFFLINE)}")

    print("\n IMPACT BY NODE TYPE:")
    print("-" * 40)
    for node_type, count in Counter(n.type for n in nodes).most_common():
        print(f"   {node_type:<25} {count:3d}")

    print("\n PROPAGATION PATH (first 15 hops):")
    print("-" * 80)
    print(f" {'Hop':>4} {'From':<12} {'To':<12} {'Severity':>9} {'Status':<10}")
    print("-" * 80)
    for step in event.propagation_path[:15]:
        node = graph.get_node_by_id(step.to_id)
        status = node.status.value if node else "unknown"
        print(f" {step.hop:>4} {step.from_id:<12} {step.to_id:<12} {step.severity:>9.3f} {status:<10}")
    if len(event.propagation_path) > 15:
        print(f"   ... and {len(event.propagation_path) - 15} more hops")

    print("\n" + "=" * 80)


def main():
    parser = argparse.ArgumentParser(description="Cascading Failure Simulation")
    parser.add_argument("--trigger", help="Node ID where the failure starts")
    parser.add_argument("--severity", type=float, default=0.8, help="Initial severity (0, 1]")
    parser.add_argument("--random-failure", action="store_true",
                        help="Trigger a failure at a random generation node")
    parser.add_argument("--list-components", action="store_true",
                        help="List available nodes")
    parser.add_argument("--seed", type=int, help="Topology seed")
    parser.add_argument("--nodes", type=int, help="Number of nodes")
    args = parser.parse_args()

    context = SimulationContext(get_settings())
    context.initialize(node_count=args.nodes, seed=args.seed)
    engine = CascadeEngine(context)

    if args.list_components:
        print("\nAvailable Nodes:")
        print("-" * 60)
        for node in context.graph.get_all_nodes():
            print(f"  {node.id:<12} {node.type:<16} {node.region:<8} deps={len(node.dependents)}")
        return

    trigger = args.trigger
    if args.random_failure:
        generators = context.graph.get_nodes_by_category("generation")
        if not generators:
            print("No generation nodes found")
            return
        trigger = context.rng.choice(generators).id
        print(f"\nRandom failure selected: {trigger}")

    if not trigger:
        parser.print_help()
        return

    event = engine.trigger_cascade(trigger, clamp(args.severity, 0.01, 1.0))
    print_cascade_report(event, context)


if __name__ == "__main__":
    main()
