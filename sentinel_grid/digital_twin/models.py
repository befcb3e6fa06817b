#!/usr/bin/env python3
"""
Digital Twin - Data Model
=========================

Records shared by every component of the risk loop: twin nodes and
dependency edges, risk scores, predictions, threats, mitigation
recommendations, incidents, cascade events and alerts.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


# =============================================================================
# Twin Graph
# =============================================================================

class NodeStatus(Enum):
    """Node operational status."""
    ONLINE = "online"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    OFFLINE = "offline"
    ISOLATED = "isolated"


class CyberStatus(Enum):
    SECURE = "secure"
    WARNING = "warning"
    COMPROMISED = "compromised"
    ISOLATED = "isolated"


class EdgeType(Enum):
    POWER = "power"
    DATA = "data"
    CONTROL = "control"
    BACKUP = "backup"
    THERMAL = "thermal"


FAILED_STATUSES = (NodeStatus.CRITICAL, NodeStatus.OFFLINE)


@dataclass
class DigitalTwinNode:
    """A single infrastructure asset and its live metrics."""
    id: str
    name: str
    type: str
    category: str
    region: str
    coordinates: Tuple[float, float]
    status: NodeStatus = NodeStatus.ONLINE
    risk_score: float = 0.0
    health: float = 1.0

    # Physical
    load_ratio: float = 0.5
    temperature: float = 40.0  # Celsius
    power_draw: float = 0.0  # MW
    voltage: float = 230.0  # V
    frequency: float = 60.0  # Hz
    rated_capacity: float = 100.0
    current_load: float = 50.0
    thermal_limit: float = 85.0

    # Cyber
    cyber_status: CyberStatus = CyberStatus.SECURE
    cyber_health: float = 1.0
    packet_loss: float = 0.0  # fraction
    latency: float = 20.0  # ms
    tamper_signal: float = 0.0
    failed_auth_count: int = 0

    # Operational age proxy
    hours_since_maintenance: float = 0.0

    connections: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)  # upstream providers
    dependents: List[str] = field(default_factory=list)  # downstream consumers
    last_seen: Optional[datetime] = None


@dataclass
class DependencyEdge:
    """Directed dependency: failures flow from from_id to to_id."""
    from_id: str
    to_id: str
    type: EdgeType
    weight: float  # coupling strength in (0, 1]
    latency: float = 10.0  # ms
    bandwidth: float = 100.0  # Mbps
    is_active: bool = True

    @property
    def key(self) -> str:
        return edge_key(self.from_id, self.to_id)


def edge_key(from_id: str, to_id: str) -> str:
    return f"{from_id}->{to_id}"


# =============================================================================
# Risk and Prediction
# =============================================================================

class Trend(Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


class FailureMode(Enum):
    THERMAL_STRESS = "thermal_stress"
    OVERLOAD = "overload"
    CYBER_VULNERABILITY = "cyber_vulnerability"
    CASCADE_FAILURE = "cascade_failure"
    EQUIPMENT_FAILURE = "equipment_failure"
    ENVIRONMENTAL_STRESS = "environmental_stress"


class PredictionStatus(Enum):
    ACTIVE = "active"
    MITIGATED = "mitigated"
    EXPIRED = "expired"
    OCCURRED = "occurred"


@dataclass
class RiskComponents:
    physical: float = 0.0
    cyber: float = 0.0
    operational: float = 0.0
    environmental: float = 0.0
    cascading: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "physical": self.physical,
            "cyber": self.cyber,
            "operational": self.operational,
            "environmental": self.environmental,
            "cascading": self.cascading,
        }


@dataclass
class LeadingFactor:
    name: str
    contribution: float
    value: float
    threshold: float
    trend: Trend
    explanation: str


@dataclass
class RiskScore:
    """Point-in-time risk assessment for one node."""
    node_id: str
    overall: float
    probability: float
    severity: float
    time_to_failure: float  # hours
    confidence_interval: Tuple[float, float]
    trend: Trend
    components: RiskComponents
    leading_factors: List[LeadingFactor] = field(default_factory=list)


@dataclass
class PredictionReasoning:
    root_cause: str
    leading_signals: List[str]
    historical_pattern: str
    risk_shift: str
    confidence_driver: str
    recommended_mitigation: str
    pattern_match: float


@dataclass
class ContributingFactor:
    factor: str
    weight: float
    current_value: float
    threshold: float
    trend: Trend
    explanation: str


@dataclass
class SuggestedAction:
    action: str
    priority: str
    expected_risk_reduction: float
    estimated_time_minutes: int
    automatable: bool


@dataclass
class EnhancedPrediction:
    """A forecast that a node will fail in a given mode within a horizon."""
    id: str
    node_id: str
    node_name: str
    node_type: str
    prediction_type: FailureMode
    probability: float
    confidence: float
    severity: float
    risk_score: float
    predicted_time: datetime
    hours_to_event: float
    created_at: datetime
    reasoning: PredictionReasoning
    contributing_factors: List[ContributingFactor] = field(default_factory=list)
    suggested_actions: List[SuggestedAction] = field(default_factory=list)
    cascade_path: List[str] = field(default_factory=list)
    affected_downstream: List[str] = field(default_factory=list)
    status: PredictionStatus = PredictionStatus.ACTIVE
    node_status_at_creation: NodeStatus = NodeStatus.ONLINE
    was_accurate: Optional[bool] = None
    actual_outcome: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.status != PredictionStatus.ACTIVE


# =============================================================================
# Threats
# =============================================================================

class ThreatType(Enum):
    CYBER_ATTACK = "cyber_attack"
    SENSOR_SPOOFING = "sensor_spoofing"
    OVERLOAD = "overload"
    TELECOM_OUTAGE = "telecom_outage"
    EQUIPMENT_FAILURE = "equipment_failure"
    WEATHER_STRESS = "weather_stress"
    PHYSICAL_INTRUSION = "physical_intrusion"


class CyberAttackSubtype(Enum):
    RANSOMWARE = "ransomware"
    DOS_ATTACK = "dos_attack"
    COMMAND_INJECTION = "command_injection"
    CREDENTIAL_THEFT = "credential_theft"
    MAN_IN_MIDDLE = "man_in_middle"
    FALSE_DATA_INJECTION = "false_data_injection"
    GPS_SPOOFING = "gps_spoofing"
    FIRMWARE_ATTACK = "firmware_attack"
    VOLTAGE_MANIPULATION = "voltage_manipulation"
    FREQUENCY_DEVIATION = "frequency_deviation"


@dataclass
class ThreatSimulation:
    id: str
    type: ThreatType
    severity: float
    started_at: datetime
    ends_at: datetime
    propagation_rate: float
    subtype: Optional[CyberAttackSubtype] = None
    target: Optional[str] = None
    region: Optional[str] = None
    active: bool = True
    affected_nodes: List[str] = field(default_factory=list)
    # node id -> metric -> net delta caused by this threat
    applied_deltas: Dict[str, Dict[str, float]] = field(default_factory=dict)


# =============================================================================
# Mitigation
# =============================================================================

class ActionType(Enum):
    ISOLATE = "isolate"
    LOAD_SHED = "load_shed"
    REROUTE = "reroute"
    ACTIVATE_BACKUP = "activate_backup"
    DISPATCH_MAINTENANCE = "dispatch_maintenance"
    ENABLE_COOLING = "enable_cooling"
    CYBER_LOCKDOWN = "cyber_lockdown"
    MANUAL_OVERRIDE = "manual_override"


class Priority(Enum):
    IMMEDIATE = "immediate"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_ORDER = {
    Priority.IMMEDIATE: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class RecommendationStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class MitigationRecommendation:
    id: str
    node_id: str
    action_type: ActionType
    priority: Priority
    description: str
    expected_risk_reduction: float
    estimated_time_minutes: int
    automatable: bool
    requires_approval: bool
    created_at: datetime
    dependencies: List[ActionType] = field(default_factory=list)
    prediction_id: Optional[str] = None
    incident_id: Optional[str] = None
    status: RecommendationStatus = RecommendationStatus.PENDING
    approved_by: Optional[str] = None
    executed_at: Optional[datetime] = None


@dataclass
class MitigationResult:
    node_id: str
    action_type: ActionType
    success: bool
    risk_reduction: float
    previous_risk: float
    new_risk: float
    message: str


@dataclass
class BatchMitigationResult:
    success_count: int = 0
    failed_count: int = 0
    total_risk_reduction: float = 0.0
    results: List[MitigationResult] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class LoadShedParams:
    fraction: float = 0.3
    floor: float = 0.2


@dataclass
class RerouteParams:
    fraction: float = 0.2
    floor: float = 0.3


@dataclass
class CoolingParams:
    degrees: float = 15.0
    floor: float = 30.0


@dataclass
class BackupParams:
    health_boost: float = 0.3


@dataclass
class MaintenanceParams:
    health_boost: float = 0.1


# =============================================================================
# Incidents and Cascades
# =============================================================================

class IncidentStatus(Enum):
    OPEN = "open"
    MITIGATED = "mitigated"
    CLOSED = "closed"


@dataclass
class Incident:
    id: str
    started_at: datetime
    severity: float
    affected_nodes: List[str]
    summary: str
    root_cause: str
    status: IncidentStatus = IncidentStatus.OPEN
    threat_type: Optional[ThreatType] = None
    threat_id: Optional[str] = None
    cascade_event_id: Optional[str] = None
    mitigation_actions: List[str] = field(default_factory=list)


@dataclass
class CascadeHop:
    from_id: str
    to_id: str
    hop: int
    severity: float  # severity delivered to to_id


@dataclass
class CascadeEvent:
    id: str
    origin_id: str
    severity: float
    started_at: datetime
    affected_nodes: List[str] = field(default_factory=list)
    impact_score: float = 0.0
    propagation_path: List[CascadeHop] = field(default_factory=list)
    hops: int = 0
    incident_id: Optional[str] = None


# =============================================================================
# Alerts
# =============================================================================

class AlertStatus(Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertKind(Enum):
    THRESHOLD_BREACH = "threshold_breach"
    PREDICTION_TRIGGERED = "prediction_triggered"
    CASCADE_DETECTED = "cascade_detected"
    SYSTEM_DEGRADATION = "system_degradation"


@dataclass
class ActiveAlert:
    """An alert raised by a rule against one node, prediction, cascade or the whole system."""
    alert_id: str
    rule_id: str
    subject_id: str
    kind: AlertKind
    severity: Severity
    title: str
    message: str
    metric: str
    current_value: float
    threshold: float
    triggered_at: datetime
    node_ids: List[str] = field(default_factory=list)
    status: AlertStatus = AlertStatus.OPEN
    prediction_id: Optional[str] = None
    cascade_event_id: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_reason: Optional[str] = None


# =============================================================================
# System State
# =============================================================================

@dataclass
class SystemState:
    """Read-only aggregate of the whole simulation."""
    total_nodes: int = 0
    online: int = 0
    degraded: int = 0
    critical: int = 0
    offline: int = 0
    isolated: int = 0
    compromised: int = 0
    average_health: float = 0.0
    average_risk: float = 0.0
    max_risk: float = 0.0
    active_threats: int = 0
    active_predictions: int = 0
    pending_recommendations: int = 0
    open_incidents: int = 0
    active_alerts: int = 0
    running: bool = False
    tick_count: int = 0
