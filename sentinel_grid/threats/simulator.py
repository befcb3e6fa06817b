#!/usr/bin/env python3
"""
Threat Injection - Synthetic Attacks and Physical Stress
========================================================

Injects time-bounded threats into the twin:
- Cyber attacks with ten subtypes (ransomware, DoS, GPS spoofing, ...)
- Sensor spoofing, overload, telecom outage, equipment failure,
  weather stress and physical intrusion
- Immediate metric perturbation proportional to severity
- Per-tick drift bias and neighbour propagation while active
- Exact reversal of the threat's own deltas on expiry

Cascade damage caused while a threat was active is never reverted.
"""

from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Union

from ..common import LogCategory, logger
from ..context import SimulationContext
from ..digital_twin.models import (
    CyberAttackSubtype,
    DigitalTwinNode,
    ThreatSimulation,
    ThreatType,
)
from ..exceptions import ThreatNotFoundError, ValidationError

DEFAULT_DURATION_SECONDS = 120
CYBER_ATTACK_DURATION_SECONDS = 180

# Base spread rate per threat type, scaled by severity
PROPAGATION_RATES = {
    ThreatType.CYBER_ATTACK: 0.4,
    ThreatType.SENSOR_SPOOFING: 0.2,
    ThreatType.OVERLOAD: 0.5,
    ThreatType.TELECOM_OUTAGE: 0.4,
    ThreatType.EQUIPMENT_FAILURE: 0.3,
    ThreatType.WEATHER_STRESS: 0.6,
    ThreatType.PHYSICAL_INTRUSION: 0.1,
}

CYBER_SUBTYPE_DESCRIPTIONS = {
    CyberAttackSubtype.RANSOMWARE: "Ransomware encrypting operational systems",
    CyberAttackSubtype.DOS_ATTACK: "Denial of service flooding control channels",
    CyberAttackSubtype.COMMAND_INJECTION: "Malicious commands injected into SCADA",
    CyberAttackSubtype.CREDENTIAL_THEFT: "Operator credentials compromised",
    CyberAttackSubtype.MAN_IN_MIDDLE: "Communications intercepted and altered",
    CyberAttackSubtype.FALSE_DATA_INJECTION: "Sensor readings manipulated",
    CyberAttackSubtype.GPS_SPOOFING: "Time synchronization disrupted",
    CyberAttackSubtype.FIRMWARE_ATTACK: "Device firmware compromised",
    CyberAttackSubtype.VOLTAGE_MANIPULATION: "Voltage setpoints altered",
    CyberAttackSubtype.FREQUENCY_DEVIATION: "Grid frequency destabilized",
}

# Spoofed reading -> (metric, offset per unit severity)
SPOOFED_READINGS = {
    "temperature": ("temperature", 20.0),
    "voltage": ("voltage", 15.0),
    "frequency": ("frequency", 0.3),
    "load": ("load_ratio", 0.25),
}

TELECOM_OUTAGE_CATEGORIES = ("telecom", "control", "datacenter")

DRIFT_BIAS_FACTOR = 0.1
PROPAGATION_CHANCE_FACTOR = 0.1
PROPAGATED_SEVERITY_FACTOR = 0.7
UNTARGETED_SHARE = 0.2

INCIDENT_MIN_SEVERITY = 0.6
INCIDENT_MIN_NODES = 3


def _merge_deltas(into: Dict[str, Dict[str, float]], new: Dict[str, Dict[str, float]]):
    for node_id, metrics in new.items():
        bucket = into.setdefault(node_id, {})
        for metric, delta in metrics.items():
            bucket[metric] = bucket.get(metric, 0.0) + delta


def parse_threat_type(value: Union[str, ThreatType]) -> ThreatType:
    if isinstance(value, ThreatType):
        return value
    try:
        return ThreatType(value)
    except ValueError as e:
        raise ValidationError(f"Unknown threat type: {value}") from e


def _parse_subtype(value: Union[str, CyberAttackSubtype, None]) -> Optional[CyberAttackSubtype]:
    if value is None or isinstance(value, CyberAttackSubtype):
        return value
    try:
        return CyberAttackSubtype(value)
    except ValueError as e:
        raise ValidationError(f"Unknown cyber attack subtype: {value}") from e


def region_exposure(context: SimulationContext, region: str) -> float:
    """Severity-weighted share of the region's nodes under active threats."""
    region_size = sum(1 for n in context.graph.get_all_nodes() if n.region == region)
    if not region_size:
        return 0.0
    exposure = 0.0
    for threat in context.threats.values():
        if not threat.active:
            continue
        in_region = 0
        for nid in threat.affected_nodes:
            affected = context.graph.get_node_by_id(nid)
            if affected is not None and affected.region == region:
                in_region += 1
        exposure += threat.severity * in_region / region_size
    return min(1.0, exposure)


def threat_exposure(context: SimulationContext, node: DigitalTwinNode) -> float:
    """
    Environmental exposure of a node to active threats.

    A node that is itself affected is exposed to at least the threat's
    severity, otherwise to its region's exposure.
    """
    direct = max((t.severity for t in context.threats.values()
                  if t.active and node.id in t.affected_nodes), default=0.0)
    return max(region_exposure(context, node.region), direct)


class ThreatInjector:
    """Creates, evolves and expires threats against the twin graph."""

    def __init__(self, context: SimulationContext):
        self.context = context

    @property
    def graph(self):
        return self.context.graph

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_threat(self, threat_type: Union[str, ThreatType], target: Optional[str] = None,
                      region: Optional[str] = None, severity: float = 0.6,
                      duration_seconds: Optional[float] = None,
                      subtype: Union[str, CyberAttackSubtype, None] = None) -> ThreatSimulation:
        """
        Inject a threat against a node, a region, or a random sample of the graph.

        Args:
            threat_type: Kind of threat
            target: Node id; the node and a severity-scaled share of its
                neighbours are affected. Unknown ids yield a threat with no
                affected nodes.
            region: Region name; a severity-scaled sample of its nodes is affected
            severity: In [0, 1]
            duration_seconds: Lifetime before automatic expiry
            subtype: Cyber attack subtype, only meaningful for cyber attacks

        Returns:
            The registered ThreatSimulation

        Raises:
            ValidationError: Severity, duration, region or type is invalid
        """
        threat_type = parse_threat_type(threat_type)
        subtype = _parse_subtype(subtype)
        self._validate(severity, duration_seconds, region)
        if duration_seconds is None:
            duration_seconds = (CYBER_ATTACK_DURATION_SECONDS if threat_type == ThreatType.CYBER_ATTACK
                                else DEFAULT_DURATION_SECONDS)

        with self.context.lock:
            node_ids = self._select_targets(target, region, severity)
            return self._launch(threat_type, node_ids, severity, duration_seconds,
                                subtype=subtype, target=target, region=region)

    def create_cyber_attack(self, target: str, subtype: Union[str, CyberAttackSubtype],
                            severity: float = 0.7) -> ThreatSimulation:
        subtype = _parse_subtype(subtype)
        if subtype is None:
            raise ValidationError("Cyber attack subtype is required")
        threat = self.create_threat(ThreatType.CYBER_ATTACK, target=target, severity=severity,
                                    duration_seconds=CYBER_ATTACK_DURATION_SECONDS, subtype=subtype)
        self.context.log.simulation(
            LogCategory.THREAT,
            f"Cyber attack on {target}: {CYBER_SUBTYPE_DESCRIPTIONS[subtype]}",
            {"threat_id": threat.id, "subtype": subtype.value, "severity": severity},
        )
        return threat

    def create_sensor_spoof(self, target: str, spoof_type: str = "temperature",
                            severity: float = 0.5) -> ThreatSimulation:
        """Sensor spoofing on one node, with a falsified reading of the given kind."""
        if spoof_type not in SPOOFED_READINGS:
            raise ValidationError(f"Unknown spoof type: {spoof_type}")
        self._validate(severity, None, None)
        with self.context.lock:
            node_ids = [target] if target in self.graph else []
            if not node_ids:
                logger.warning(f"Sensor spoof target {target} not found; threat has no effect")
            threat = self._launch(ThreatType.SENSOR_SPOOFING, node_ids, severity,
                                  DEFAULT_DURATION_SECONDS, target=target)
            if node_ids:
                metric, offset = SPOOFED_READINGS[spoof_type]
                node = self.graph.require_node(target)
                applied = self.graph.apply_metric_deltas(node, {metric: offset * severity})
                _merge_deltas(threat.applied_deltas, {target: applied})
                self.graph.refresh_status(node)
            return threat

    def create_overload(self, targets: Iterable[str], severity: float = 0.5) -> ThreatSimulation:
        self._validate(severity, None, None)
        with self.context.lock:
            node_ids = []
            for node_id in targets:
                if node_id in self.graph:
                    node_ids.append(node_id)
                else:
                    logger.warning(f"Overload target {node_id} not found; skipping")
            return self._launch(ThreatType.OVERLOAD, node_ids, severity, DEFAULT_DURATION_SECONDS)

    def create_telecom_outage(self, region: str, severity: float = 0.6) -> ThreatSimulation:
        self._validate(severity, None, region)
        with self.context.lock:
            node_ids = [n.id for n in self.graph.get_nodes_by_region(region)
                        if n.category in TELECOM_OUTAGE_CATEGORIES]
            return self._launch(ThreatType.TELECOM_OUTAGE, node_ids, severity,
                                DEFAULT_DURATION_SECONDS, region=region)

    def _validate(self, severity: float, duration_seconds: Optional[float], region: Optional[str]):
        if not 0.0 <= severity <= 1.0:
            raise ValidationError(f"Severity must be in [0, 1], got {severity}")
        if duration_seconds is not None and duration_seconds <= 0:
            raise ValidationError(f"Duration must be positive, got {duration_seconds}")
        if region is not None and region not in self.graph.regions():
            raise ValidationError(f"Unknown region: {region}")

    def _select_targets(self, target: Optional[str], region: Optional[str], severity: float) -> List[str]:
        rng = self.context.rng
        if target is not None:
            node = self.graph.get_node_by_id(target)
            if node is None:
                logger.warning(f"Threat target {target} not found; threat has no affected nodes")
                return []
            spread = int(len(node.connections) * severity)
            return [target] + node.connections[:spread]
        if region is not None:
            nodes = self.graph.get_nodes_by_region(region)
            if not nodes:
                return []
            count = min(len(nodes), max(1, int(len(nodes) * severity)))
            return [n.id for n in rng.sample(nodes, count)]
        nodes = self.graph.get_all_nodes()
        count = min(len(nodes), int(len(nodes) * severity * UNTARGETED_SHARE))
        return [n.id for n in rng.sample(nodes, count)]

    def _launch(self, threat_type: ThreatType, node_ids: List[str], severity: float,
                duration_seconds: float, subtype: Optional[CyberAttackSubtype] = None,
                target: Optional[str] = None, region: Optional[str] = None) -> ThreatSimulation:
        now = self.context.now()
        threat = ThreatSimulation(
            id=self.context.ids.next("threat"),
            type=threat_type,
            subtype=subtype,
            severity=severity,
            target=target,
            region=region,
            started_at=now,
            ends_at=now + timedelta(seconds=duration_seconds),
            propagation_rate=PROPAGATION_RATES[threat_type] * severity,
        )
        threat.applied_deltas = self.graph.apply_threat_to_nodes(node_ids, threat_type, severity)
        threat.affected_nodes = list(threat.applied_deltas)
        self.context.threats[threat.id] = threat

        self.context.log.simulation(
            LogCategory.THREAT,
            f"{threat_type.value} injected (severity {severity:.2f}) affecting {len(threat.affected_nodes)} nodes",
            {"threat_id": threat.id, "target": target, "region": region},
        )
        if severity >= INCIDENT_MIN_SEVERITY and len(threat.affected_nodes) >= INCIDENT_MIN_NODES:
            self.context.open_incident(
                severity=severity,
                affected_nodes=threat.affected_nodes,
                summary=f"{threat_type.value.replace('_', ' ').title()} affecting "
                        f"{len(threat.affected_nodes)} nodes",
                root_cause=CYBER_SUBTYPE_DESCRIPTIONS.get(subtype, threat_type.value),
                threat_type=threat_type,
                threat_id=threat.id,
            )
        return threat

    # -------------------------------------------------------------------------
    # Per-tick evolution
    # -------------------------------------------------------------------------

    def apply_drift_bias(self):
        """Keep pushing affected nodes while their threats are active."""
        with self.context.lock:
            for threat in self.get_active_threats():
                deltas = self.graph.apply_threat_to_nodes(
                    threat.affected_nodes, threat.type, threat.severity, scale=DRIFT_BIAS_FACTOR)
                _merge_deltas(threat.applied_deltas, deltas)

    def propagate_threats(self) -> int:
        """
        Spread active threats to neighbours of affected nodes.

        Returns:
            Number of newly affected nodes
        """
        spread = 0
        with self.context.lock:
            rng = self.context.rng
            for threat in self.get_active_threats():
                if threat.propagation_rate <= 0:
                    continue
                chance = threat.propagation_rate * PROPAGATION_CHANCE_FACTOR
                for node_id in list(threat.affected_nodes):
                    node = self.graph.get_node_by_id(node_id)
                    if node is None:
                        continue
                    for neighbor_id in node.connections:
                        if neighbor_id in threat.affected_nodes or rng.random() >= chance:
                            continue
                        deltas = self.graph.apply_threat_to_nodes(
                            [neighbor_id], threat.type, threat.severity * PROPAGATED_SEVERITY_FACTOR)
                        if deltas:
                            _merge_deltas(threat.applied_deltas, deltas)
                            threat.affected_nodes.append(neighbor_id)
                            spread += 1
        if spread:
            logger.debug(f"Threats spread to {spread} additional nodes")
        return spread

    # -------------------------------------------------------------------------
    # Expiry
    # -------------------------------------------------------------------------

    def expire_threats(self, now=None) -> List[ThreatSimulation]:
        with self.context.lock:
            now = now or self.context.now()
            expired = [t for t in self.get_active_threats() if t.ends_at <= now]
            for threat in expired:
                self._end(threat, "expired")
            return expired

    def end_threat(self, threat_id: str) -> ThreatSimulation:
        with self.context.lock:
            threat = self.context.threats.get(threat_id)
            if threat is None:
                raise ThreatNotFoundError(threat_id)
            if threat.active:
                self._end(threat, "ended by operator")
            return threat

    def end_all_threats(self) -> int:
        with self.context.lock:
            active = self.get_active_threats()
            for threat in active:
                self._end(threat, "ended by operator")
            return len(active)

    def _end(self, threat: ThreatSimulation, reason: str):
        self.graph.revert_deltas(threat.applied_deltas)
        threat.active = False
        self.context.log.simulation(LogCategory.THREAT, f"Threat {threat.id} {reason}",
                                    {"type": threat.type.value})

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_active_threats(self) -> List[ThreatSimulation]:
        with self.context.lock:
            return [t for t in self.context.threats.values() if t.active]

    def get_threat(self, threat_id: str) -> Optional[ThreatSimulation]:
        return self.context.threats.get(threat_id)

    def get_threats_affecting_node(self, node_id: str) -> List[ThreatSimulation]:
        with self.context.lock:
            return [t for t in self.context.threats.values() if t.active and node_id in t.affected_nodes]

    def is_node_under_threat(self, node_id: str) -> bool:
        return bool(self.get_threats_affecting_node(node_id))

    def region_exposure(self, region: str) -> float:
        if region not in self.graph.regions():
            raise ValidationError(f"Unknown region: {region}")
        with self.context.lock:
            return region_exposure(self.context, region)
