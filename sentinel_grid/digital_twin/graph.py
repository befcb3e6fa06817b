#!/usr/bin/env python3
"""
Digital Twin - Live Infrastructure Graph
========================================

Holds every node and dependency edge of the simulated infrastructure and
owns the per-tick evolution of node metrics:

- Bounded, mean-reverting random walk on load, temperature, voltage,
  frequency, latency, packet loss, tamper signal and cyber health
- Business-hours load profile and a solar generation curve
- Slow health wear; damage persists until a mitigation repairs it
- Status derived from risk and health thresholds (isolation is sticky)

Threat perturbations and mitigation effects are applied here so that every
metric change goes through the same clamping rules.
"""

import random
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

from ..common import clamp, logger
from ..exceptions import ApplyFailedError, InvalidOperationError, NodeNotFoundError
from .models import (
    ActionType,
    BackupParams,
    CoolingParams,
    CyberStatus,
    DependencyEdge,
    DigitalTwinNode,
    LoadShedParams,
    MaintenanceParams,
    NodeStatus,
    RerouteParams,
    ThreatType,
    edge_key,
)
from .seed import REGIONS, build_topology

# Status thresholds
CRITICAL_RISK = 0.75
DEGRADED_RISK = 0.45
CRITICAL_HEALTH = 0.3
DEGRADED_HEALTH = 0.5
OFFLINE_HEALTH = 0.1

# Cyber status thresholds
COMPROMISED_CYBER_HEALTH = 0.4
COMPROMISED_TAMPER = 0.7
WARNING_CYBER_HEALTH = 0.7
WARNING_TAMPER = 0.3

# Metric response per unit of threat severity
THREAT_EFFECTS = {
    ThreatType.CYBER_ATTACK: {
        "cyber_health": -0.5, "tamper_signal": 0.6, "packet_loss": 0.1,
        "latency": 150.0, "failed_auth_count": 6,
    },
    ThreatType.SENSOR_SPOOFING: {"tamper_signal": 0.7},
    ThreatType.OVERLOAD: {"load_ratio": 0.3, "temperature": 15.0},
    ThreatType.TELECOM_OUTAGE: {"latency": 500.0, "packet_loss": 0.5, "cyber_health": -0.3},
    ThreatType.EQUIPMENT_FAILURE: {"health": -0.5},
    ThreatType.WEATHER_STRESS: {"temperature": 10.0, "health": -0.1},
    ThreatType.PHYSICAL_INTRUSION: {"tamper_signal": 0.4, "failed_auth_count": 3, "health": -0.1},
}

# Immediate risk bump per unit of threat severity, overwritten by the next rescoring
THREAT_RISK_BUMP = {
    ThreatType.CYBER_ATTACK: 0.3,
    ThreatType.SENSOR_SPOOFING: 0.2,
    ThreatType.OVERLOAD: 0.4,
    ThreatType.TELECOM_OUTAGE: 0.2,
    ThreatType.EQUIPMENT_FAILURE: 0.5,
    ThreatType.WEATHER_STRESS: 0.2,
    ThreatType.PHYSICAL_INTRUSION: 0.25,
}

# Categories an action cannot be applied to
ACTION_INVALID_CATEGORIES = {
    ActionType.LOAD_SHED: {"control", "telecom"},
    ActionType.REROUTE: {"generation", "storage"},
}

# Actions still allowed on an isolated node
ISOLATION_EXEMPT_ACTIONS = {ActionType.MANUAL_OVERRIDE, ActionType.DISPATCH_MAINTENANCE}

MitigationParams = Union[LoadShedParams, RerouteParams, CoolingParams, BackupParams, MaintenanceParams]

DEFAULT_ACTION_PARAMS = {
    ActionType.LOAD_SHED: LoadShedParams,
    ActionType.REROUTE: RerouteParams,
    ActionType.ENABLE_COOLING: CoolingParams,
    ActionType.ACTIVATE_BACKUP: BackupParams,
    ActionType.DISPATCH_MAINTENANCE: MaintenanceParams,
}


def metric_bounds(node: DigitalTwinNode, metric: str):
    if metric == "temperature":
        return 20.0, node.thermal_limit + 40.0
    if metric == "voltage":
        return 200.0, 260.0
    if metric == "frequency":
        return 59.5, 60.5
    if metric == "latency":
        return 1.0, 2000.0
    if metric == "failed_auth_count":
        return 0, 100
    if metric == "hours_since_maintenance":
        return 0.0, 100000.0
    return 0.0, 1.0


def derive_status(node: DigitalTwinNode) -> NodeStatus:
    """Map risk and health onto a status. Worse inputs never give a better status."""
    if node.status == NodeStatus.ISOLATED:
        return NodeStatus.ISOLATED
    if node.health < OFFLINE_HEALTH:
        return NodeStatus.OFFLINE
    if node.risk_score > CRITICAL_RISK or node.health < CRITICAL_HEALTH:
        return NodeStatus.CRITICAL
    if node.risk_score > DEGRADED_RISK or node.health < DEGRADED_HEALTH:
        return NodeStatus.DEGRADED
    return NodeStatus.ONLINE


def derive_cyber_status(node: DigitalTwinNode) -> CyberStatus:
    if node.cyber_status == CyberStatus.ISOLATED:
        return CyberStatus.ISOLATED
    if node.cyber_health < COMPROMISED_CYBER_HEALTH or node.tamper_signal > COMPROMISED_TAMPER:
        return CyberStatus.COMPROMISED
    if node.cyber_health < WARNING_CYBER_HEALTH or node.tamper_signal > WARNING_TAMPER:
        return CyberStatus.WARNING
    return CyberStatus.SECURE


def _revert(current: float, target: float, rate: float) -> float:
    return current + (target - current) * rate


def _lowered(value: float, amount: float, floor: float) -> float:
    """Reduce by amount down to floor; a value already under the floor is left alone."""
    return min(value, max(floor, value - amount))


class TwinGraph:
    """
    In-memory twin of the infrastructure network.

    Not thread-safe on its own; callers hold the simulation context lock.
    """

    def __init__(self):
        self._nodes: Dict[str, DigitalTwinNode] = {}
        self._edges: Dict[str, DependencyEdge] = {}
        self._outgoing: Dict[str, List[str]] = {}
        self._incoming: Dict[str, List[str]] = {}
        self._initialized = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self, node_count: int, seed: int, now: Optional[datetime] = None):
        """Build a fresh topology, discarding any previous state."""
        nodes, edges = build_topology(node_count, seed, now)
        self.load_topology(nodes, edges)
        logger.info(f"Twin graph initialized: {len(self._nodes)} nodes, {len(self._edges)} edges (seed={seed})")

    def load_topology(self, nodes: List[DigitalTwinNode], edges: List[DependencyEdge]):
        """
        Replace the graph with the given nodes and edges.

        Edges must reference known nodes; dependency, dependent and
        connection lists are rebuilt from the edges.
        """
        self.reset()
        for node in nodes:
            node.dependencies, node.dependents, node.connections = [], [], []
            self._nodes[node.id] = node
            self._outgoing[node.id] = []
            self._incoming[node.id] = []
        for edge in edges:
            if edge.from_id not in self._nodes or edge.to_id not in self._nodes:
                raise NodeNotFoundError(edge.to_id if edge.from_id in self._nodes else edge.from_id)
            self._edges[edge.key] = edge
            self._outgoing[edge.from_id].append(edge.key)
            self._incoming[edge.to_id].append(edge.key)
            provider, dependent = self._nodes[edge.from_id], self._nodes[edge.to_id]
            provider.dependents.append(dependent.id)
            dependent.dependencies.append(provider.id)
            provider.connections.append(dependent.id)
            dependent.connections.append(provider.id)
        for node in nodes:
            self.refresh_status(node)
        self._initialized = True

    def reset(self):
        self._nodes.clear()
        self._edges.clear()
        self._outgoing.clear()
        self._incoming.clear()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_all_nodes(self) -> List[DigitalTwinNode]:
        return list(self._nodes.values())

    def get_node_by_id(self, node_id: str) -> Optional[DigitalTwinNode]:
        return self._nodes.get(node_id)

    def require_node(self, node_id: str) -> DigitalTwinNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def regions(self) -> List[str]:
        return list(REGIONS)

    def get_nodes_by_region(self, region: str) -> List[DigitalTwinNode]:
        return [n for n in self._nodes.values() if n.region == region]

    def get_nodes_by_category(self, category: str) -> List[DigitalTwinNode]:
        return [n for n in self._nodes.values() if n.category == category]

    def get_critical_nodes(self) -> List[DigitalTwinNode]:
        return [n for n in self._nodes.values() if n.status == NodeStatus.CRITICAL]

    def get_compromised_nodes(self) -> List[DigitalTwinNode]:
        return [n for n in self._nodes.values() if n.cyber_status == CyberStatus.COMPROMISED]

    def get_all_edges(self) -> List[DependencyEdge]:
        return list(self._edges.values())

    def get_edge(self, from_id: str, to_id: str) -> Optional[DependencyEdge]:
        return self._edges.get(edge_key(from_id, to_id))

    def outgoing_edges(self, node_id: str) -> List[DependencyEdge]:
        return [self._edges[k] for k in self._outgoing.get(node_id, [])]

    def incoming_edges(self, node_id: str) -> List[DependencyEdge]:
        return [self._edges[k] for k in self._incoming.get(node_id, [])]

    def get_neighbors(self, node_id: str) -> List[DigitalTwinNode]:
        node = self.require_node(node_id)
        return [self._nodes[n] for n in node.connections if n in self._nodes]

    def get_dependencies(self, node_id: str) -> List[DigitalTwinNode]:
        node = self.require_node(node_id)
        return [self._nodes[n] for n in node.dependencies if n in self._nodes]

    def get_dependents(self, node_id: str) -> List[DigitalTwinNode]:
        node = self.require_node(node_id)
        return [self._nodes[n] for n in node.dependents if n in self._nodes]

    # -------------------------------------------------------------------------
    # Drift
    # -------------------------------------------------------------------------

    def tick(self, rng: random.Random, hour_of_day: int, tick_hours: float = 1.0,
             now: Optional[datetime] = None):
        """Advance every node's metrics by one step of bounded random drift."""
        if 8 <= hour_of_day <= 18:
            load_multiplier = 1.1
        elif hour_of_day < 6:
            load_multiplier = 0.8
        else:
            load_multiplier = 1.0
        daylight = 6 <= hour_of_day <= 18

        for node in self._nodes.values():
            self._drift_node(node, rng, load_multiplier, daylight, tick_hours)
            node.last_seen = now
            self.refresh_status(node)

    def _drift_node(self, node: DigitalTwinNode, rng: random.Random, load_multiplier: float,
                    daylight: bool, tick_hours: float):
        target_load = 0.55 * load_multiplier
        if node.type == "solar_farm" and not daylight:
            target_load = 0.05
        node.load_ratio = clamp(
            _revert(node.load_ratio, target_load, 0.05) + (rng.random() - 0.5) * 0.04, 0.05, 1.0)
        node.current_load = node.load_ratio * node.rated_capacity
        node.power_draw = node.current_load * 0.9

        equilibrium = 25 + node.load_ratio * (node.thermal_limit - 25) * 0.7
        node.temperature = clamp(
            _revert(node.temperature, equilibrium, 0.1) + rng.gauss(0, 0.5),
            *metric_bounds(node, "temperature"))
        node.voltage = clamp(_revert(node.voltage, 230.0, 0.1) + rng.gauss(0, 1.0),
                             *metric_bounds(node, "voltage"))
        node.frequency = clamp(_revert(node.frequency, 60.0, 0.2) + rng.gauss(0, 0.01),
                               *metric_bounds(node, "frequency"))

        node.latency = clamp(_revert(node.latency, 30.0, 0.05) + rng.gauss(0, 2.0),
                             *metric_bounds(node, "latency"))
        node.packet_loss = clamp(_revert(node.packet_loss, 0.01, 0.05) + rng.gauss(0, 0.002))
        node.tamper_signal = clamp(_revert(node.tamper_signal, 0.02, 0.03) + (rng.random() - 0.52) * 0.01)
        node.cyber_health = clamp(_revert(node.cyber_health, 0.95, 0.02) + rng.gauss(0, 0.005))
        roll = rng.random()
        if roll < 0.02:
            node.failed_auth_count += 1
        elif roll > 0.9 and node.failed_auth_count > 0:
            node.failed_auth_count -= 1

        wear = 0.0005 * tick_hours * (1 + node.load_ratio)
        if node.temperature > node.thermal_limit:
            wear += 0.01 * (node.temperature - node.thermal_limit) / node.thermal_limit
        node.health = clamp(node.health - wear + rng.gauss(0, 0.001))
        node.hours_since_maintenance += tick_hours

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def refresh_status(self, node: DigitalTwinNode):
        node.status = derive_status(node)
        node.cyber_status = derive_cyber_status(node)

    def restore_node(self, snapshot: DigitalTwinNode):
        """Put back a node copy taken before a failed update."""
        if snapshot.id not in self._nodes:
            raise NodeNotFoundError(snapshot.id)
        self._nodes[snapshot.id] = snapshot

    def set_edge_active(self, from_id: str, to_id: str, active: bool):
        edge = self._edges.get(edge_key(from_id, to_id))
        if edge is None:
            raise InvalidOperationError(f"No edge {from_id} -> {to_id}")
        edge.is_active = active

    def isolate_node(self, node_id: str) -> DigitalTwinNode:
        node = self.require_node(node_id)
        node.status = NodeStatus.ISOLATED
        for key in self._outgoing[node_id] + self._incoming[node_id]:
            self._edges[key].is_active = False
        return node

    def clear_isolation(self, node_id: str) -> DigitalTwinNode:
        """Lift node and cyber isolation and reconnect edges to non-isolated peers."""
        node = self.require_node(node_id)
        if node.status == NodeStatus.ISOLATED:
            node.status = NodeStatus.ONLINE
        if node.cyber_status == CyberStatus.ISOLATED:
            node.cyber_status = CyberStatus.SECURE
        for key in self._outgoing[node_id] + self._incoming[node_id]:
            edge = self._edges[key]
            other = edge.to_id if edge.from_id == node_id else edge.from_id
            if self._nodes[other].status != NodeStatus.ISOLATED:
                edge.is_active = True
        self.refresh_status(node)
        return node

    # -------------------------------------------------------------------------
    # Metric mutation
    # -------------------------------------------------------------------------

    def apply_metric_deltas(self, node: DigitalTwinNode, deltas: Dict[str, float]) -> Dict[str, float]:
        """
        Add deltas to node metrics, clamped to each metric's bounds.

        Returns:
            The deltas actually applied after clamping
        """
        applied = {}
        for metric, delta in deltas.items():
            low, high = metric_bounds(node, metric)
            before = getattr(node, metric)
            if metric == "failed_auth_count":
                after = int(clamp(before + round(delta), low, high))
            else:
                after = clamp(before + delta, low, high)
            setattr(node, metric, after)
            applied[metric] = after - before
        if "load_ratio" in applied:
            node.current_load = node.load_ratio * node.rated_capacity
        return applied

    def apply_threat_to_nodes(self, node_ids: Iterable[str], threat_type: ThreatType,
                              severity: float, scale: float = 1.0) -> Dict[str, Dict[str, float]]:
        """
        Perturb metrics of the given nodes according to the threat type.

        Args:
            node_ids: Nodes to perturb; unknown ids are skipped
            threat_type: Selects the metric response table
            severity: Threat severity in [0, 1]
            scale: Fraction of the full response to apply (per-tick bias uses less)

        Returns:
            Applied deltas per node id
        """
        effects = THREAT_EFFECTS[threat_type]
        bump = THREAT_RISK_BUMP[threat_type] * severity * scale
        applied: Dict[str, Dict[str, float]] = {}
        for node_id in node_ids:
            node = self._nodes.get(node_id)
            if node is None or node.status == NodeStatus.ISOLATED:
                continue
            deltas = {metric: per_unit * severity * scale for metric, per_unit in effects.items()}
            applied[node_id] = self.apply_metric_deltas(node, deltas)
            node.risk_score = clamp(node.risk_score + bump)
            self.refresh_status(node)
        return applied

    def revert_deltas(self, deltas: Dict[str, Dict[str, float]]):
        """Undo previously applied threat deltas, skipping nodes that no longer exist."""
        for node_id, metrics in deltas.items():
            node = self._nodes.get(node_id)
            if node is None:
                continue
            self.apply_metric_deltas(node, {m: -d for m, d in metrics.items()})
            self.refresh_status(node)

    def apply_damage(self, node_id: str, risk_increase: float, health_loss: float) -> DigitalTwinNode:
        node = self.require_node(node_id)
        node.risk_score = clamp(node.risk_score + risk_increase)
        node.health = clamp(node.health - health_loss)
        self.refresh_status(node)
        return node

    def validate_mitigation(self, node_id: str, action_type: ActionType) -> DigitalTwinNode:
        """
        Check that an action may be applied without mutating anything.

        Raises:
            NodeNotFoundError: Unknown node
            InvalidOperationError: Node is isolated and the action needs it connected
            ApplyFailedError: Action is not valid for the node category
        """
        node = self.require_node(node_id)
        if node.status == NodeStatus.ISOLATED and action_type not in ISOLATION_EXEMPT_ACTIONS:
            raise InvalidOperationError(f"Node {node_id} is isolated; {action_type.value} not applicable")
        if node.category in ACTION_INVALID_CATEGORIES.get(action_type, set()):
            raise ApplyFailedError(f"{action_type.value} is not valid for {node.category} node {node_id}")
        return node

    def apply_mitigation_to_node(self, node_id: str, action_type: ActionType,
                                 params: Optional[MitigationParams] = None) -> DigitalTwinNode:
        """Apply the physical effect of a mitigation action to a node."""
        node = self.validate_mitigation(node_id, action_type)
        if params is None and action_type in DEFAULT_ACTION_PARAMS:
            params = DEFAULT_ACTION_PARAMS[action_type]()

        if action_type == ActionType.ISOLATE:
            self.isolate_node(node_id)
        elif action_type == ActionType.LOAD_SHED:
            node.load_ratio = _lowered(node.load_ratio, params.fraction, params.floor)
            node.current_load = node.load_ratio * node.rated_capacity
        elif action_type == ActionType.REROUTE:
            node.load_ratio = _lowered(node.load_ratio, params.fraction, params.floor)
            node.current_load = node.load_ratio * node.rated_capacity
        elif action_type == ActionType.ENABLE_COOLING:
            node.temperature = _lowered(node.temperature, params.degrees, params.floor)
        elif action_type == ActionType.CYBER_LOCKDOWN:
            node.cyber_status = CyberStatus.ISOLATED
            node.cyber_health = clamp(node.cyber_health + 0.2)
            node.tamper_signal = clamp(node.tamper_signal - 0.3)
        elif action_type == ActionType.ACTIVATE_BACKUP:
            node.health = clamp(node.health + params.health_boost)
        elif action_type == ActionType.DISPATCH_MAINTENANCE:
            node.health = clamp(node.health + params.health_boost)
            node.hours_since_maintenance = 0.0
        elif action_type == ActionType.MANUAL_OVERRIDE:
            self.clear_isolation(node_id)
        else:
            raise ApplyFailedError(f"Unsupported action {action_type}")

        self.refresh_status(node)
        return node
