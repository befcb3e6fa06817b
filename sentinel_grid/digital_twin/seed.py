#!/usr/bin/env python3
"""
Digital Twin - Infrastructure Topology Generator
================================================

Builds a reproducible infrastructure network for the twin graph:

1. Power Grid
   - Generators, solar farms, wind turbines, battery storage
   - Substations, relay switches, transformers, water pumps

2. Telecom & Control
   - Telecom towers, control centers, SCADA servers

3. Data Centers
   - Powered by generation, coordinated over data links

Nodes are clustered around five regional centres. Connections prefer the
same region and always point from the upstream tier to the downstream one,
so a failure flows the way power and control actually do.

The same seed always produces the same graph.
"""

import math
import random
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .models import DependencyEdge, DigitalTwinNode, EdgeType, edge_key

REGIONS = ["North", "South", "East", "West", "Central"]

# Per-type category, rated capacity (MW or equivalent) and thermal limit (C)
NODE_TYPE_CONFIG = {
    "substation": {"category": "transmission", "rated_capacity": 500, "thermal_limit": 85},
    "transformer": {"category": "distribution", "rated_capacity": 100, "thermal_limit": 95},
    "generator": {"category": "generation", "rated_capacity": 1000, "thermal_limit": 90},
    "datacenter": {"category": "datacenter", "rated_capacity": 50, "thermal_limit": 75},
    "telecom_tower": {"category": "telecom", "rated_capacity": 10, "thermal_limit": 70},
    "water_pump": {"category": "distribution", "rated_capacity": 20, "thermal_limit": 80},
    "control_center": {"category": "control", "rated_capacity": 5, "thermal_limit": 65},
    "solar_farm": {"category": "generation", "rated_capacity": 200, "thermal_limit": 85},
    "wind_turbine": {"category": "generation", "rated_capacity": 150, "thermal_limit": 80},
    "battery_storage": {"category": "storage", "rated_capacity": 100, "thermal_limit": 60},
    "scada_server": {"category": "control", "rated_capacity": 2, "thermal_limit": 55},
    "relay_switch": {"category": "transmission", "rated_capacity": 50, "thermal_limit": 90},
}

TYPE_WEIGHTS = {
    "substation": 20,
    "transformer": 25,
    "generator": 10,
    "datacenter": 8,
    "telecom_tower": 10,
    "water_pump": 5,
    "control_center": 3,
    "solar_farm": 6,
    "wind_turbine": 5,
    "battery_storage": 4,
    "scada_server": 2,
    "relay_switch": 2,
}

# Lower tiers supply higher tiers
CATEGORY_TIER = {
    "generation": 0,
    "storage": 1,
    "transmission": 2,
    "distribution": 3,
    "telecom": 3,
    "control": 4,
    "datacenter": 4,
}

REGION_RADIUS = 35.0
COORDINATE_SPREAD = 12.0
SAME_REGION_PREFERENCE = 0.7


def region_center(region: str) -> Tuple[float, float]:
    """Regions sit evenly on a circle around the map centre."""
    angle = (REGIONS.index(region) / len(REGIONS)) * 2 * math.pi
    return (50 + math.cos(angle) * REGION_RADIUS, 50 + math.sin(angle) * REGION_RADIUS)


def edge_type_for(a: DigitalTwinNode, b: DigitalTwinNode) -> EdgeType:
    categories = {a.category, b.category}
    if "control" in categories:
        return EdgeType.CONTROL
    if "telecom" in categories:
        return EdgeType.DATA
    if "storage" in categories:
        return EdgeType.BACKUP
    if categories == {"datacenter"}:
        return EdgeType.THERMAL
    if "datacenter" in categories:
        return EdgeType.DATA
    return EdgeType.POWER


def _create_node(rng: random.Random, index: int, now: Optional[datetime]) -> DigitalTwinNode:
    node_type = rng.choices(list(TYPE_WEIGHTS), weights=list(TYPE_WEIGHTS.values()))[0]
    config = NODE_TYPE_CONFIG[node_type]
    region = rng.choice(REGIONS)
    cx, cy = region_center(region)
    capacity = config["rated_capacity"]
    load_ratio = rng.random() * 0.4 + 0.3

    return DigitalTwinNode(
        id=f"node_{index:04d}",
        name=f"{region} {node_type.replace('_', ' ').title()} {rng.randint(100, 999)}",
        type=node_type,
        category=config["category"],
        region=region,
        coordinates=(rng.gauss(cx, COORDINATE_SPREAD), rng.gauss(cy, COORDINATE_SPREAD)),
        risk_score=rng.random() * 0.25 + 0.05,
        health=rng.random() * 0.15 + 0.85,
        load_ratio=load_ratio,
        temperature=rng.random() * 20 + 35,
        power_draw=rng.random() * capacity * 0.7,
        voltage=230 + rng.gauss(0, 5),
        frequency=60 + rng.gauss(0, 0.05),
        rated_capacity=capacity,
        current_load=load_ratio * capacity,
        thermal_limit=config["thermal_limit"],
        cyber_health=rng.random() * 0.1 + 0.9,
        packet_loss=rng.random() * 0.02,
        latency=rng.random() * 50 + 10,
        tamper_signal=rng.random() * 0.05,
        failed_auth_count=int(rng.random() * 3),
        hours_since_maintenance=rng.random() * 1500,
        last_seen=now,
    )


def _orient(a: DigitalTwinNode, b: DigitalTwinNode) -> Tuple[DigitalTwinNode, DigitalTwinNode]:
    """Return (provider, dependent) for a connection between a and b."""
    if CATEGORY_TIER[b.category] < CATEGORY_TIER[a.category]:
        return b, a
    return a, b


def build_topology(node_count: int, seed: int,
                   now: Optional[datetime] = None) -> Tuple[List[DigitalTwinNode], List[DependencyEdge]]:
    """
    Generate nodes and dependency edges for the twin graph.

    Args:
        node_count: Number of nodes to create
        seed: RNG seed, equal seeds give identical graphs
        now: Timestamp stamped on every node's last_seen

    Returns:
        Tuple of (nodes, edges); each edge is already registered on both
        endpoints' dependency/dependent/connection lists
    """
    rng = random.Random(seed)
    nodes = [_create_node(rng, i, now) for i in range(node_count)]
    by_region: Dict[str, List[DigitalTwinNode]] = {r: [] for r in REGIONS}
    for node in nodes:
        by_region[node.region].append(node)

    edges: Dict[str, DependencyEdge] = {}

    def connect(provider: DigitalTwinNode, dependent: DigitalTwinNode, edge_type: EdgeType):
        key = edge_key(provider.id, dependent.id)
        if provider.id == dependent.id or key in edges or edge_key(dependent.id, provider.id) in edges:
            return
        edges[key] = DependencyEdge(
            from_id=provider.id,
            to_id=dependent.id,
            type=edge_type,
            weight=rng.random() * 0.5 + 0.5,
            latency=rng.random() * 30 + 5,
            bandwidth=rng.random() * 900 + 100,
        )
        provider.dependents.append(dependent.id)
        dependent.dependencies.append(provider.id)
        provider.connections.append(dependent.id)
        dependent.connections.append(provider.id)

    if node_count > 1:
        for node in nodes:
            for _ in range(rng.randint(2, 5)):
                same_region = [n for n in by_region[node.region] if n.id != node.id]
                if same_region and rng.random() < SAME_REGION_PREFERENCE:
                    other = rng.choice(same_region)
                else:
                    other = nodes[rng.randrange(node_count)]
                if other.id == node.id:
                    continue
                provider, dependent = _orient(node, other)
                connect(provider, dependent, edge_type_for(provider, dependent))

        generators = [n for n in nodes if n.category == "generation"]
        if generators:
            for node in nodes:
                if node.category not in ("control", "datacenter"):
                    continue
                for _ in range(rng.randint(1, 3)):
                    connect(rng.choice(generators), node, EdgeType.POWER)

    return nodes, list(edges.values())
