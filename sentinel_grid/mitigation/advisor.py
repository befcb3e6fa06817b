#!/usr/bin/env python3
"""
Mitigation - Recommendations and Execution
==========================================

Maps failure modes and incidents to concrete operator actions, and applies
those actions to the twin:
- Fixed action profiles: expected risk reduction, time to effect,
  automatability and prerequisite actions
- Recommendation lifecycle (pending -> approved -> executing ->
  completed / failed)
- Single, batch and automatic mitigation of critical nodes

Executing an action never raises a node's risk or lowers its health, so
automatic mitigation cannot increase the number of critical nodes.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from ..common import LogCategory, LogSource, clamp
from ..context import SimulationContext
from ..digital_twin.graph import ACTION_INVALID_CATEGORIES, MitigationParams
from ..digital_twin.models import (
    PRIORITY_ORDER,
    ActionType,
    BatchMitigationResult,
    CyberStatus,
    DigitalTwinNode,
    EnhancedPrediction,
    FailureMode,
    Incident,
    IncidentStatus,
    MitigationRecommendation,
    MitigationResult,
    NodeStatus,
    PredictionStatus,
    Priority,
    RecommendationStatus,
)
from ..exceptions import (
    InvalidOperationError,
    NotFoundError,
    PredictionNotFoundError,
    RecommendationNotFoundError,
    SentinelGridError,
    ValidationError,
)


@dataclass(frozen=True)
class ActionProfile:
    """Static characteristics of a mitigation action."""
    expected_risk_reduction: float  # advisory estimate shown to operators
    estimated_time_minutes: int
    automatable: bool
    executor_risk_reduction: float  # applied to the node's risk on execution
    description: str
    dependencies: Tuple[ActionType, ...] = field(default_factory=tuple)


ACTION_PROFILES: Dict[ActionType, ActionProfile] = {
    ActionType.ISOLATE: ActionProfile(
        0.6, 1, False, 0.5, "Isolate node from the network",
        dependencies=(ActionType.REROUTE,)),
    ActionType.LOAD_SHED: ActionProfile(
        0.4, 2, True, 0.3, "Shed non-critical load"),
    ActionType.REROUTE: ActionProfile(
        0.35, 5, False, 0.25, "Reroute flow through alternate paths"),
    ActionType.ACTIVATE_BACKUP: ActionProfile(
        0.45, 3, True, 0.35, "Switch to backup systems"),
    ActionType.DISPATCH_MAINTENANCE: ActionProfile(
        0.2, 30, False, 0.15, "Dispatch a maintenance crew"),
    ActionType.ENABLE_COOLING: ActionProfile(
        0.3, 1, True, 0.2, "Enable emergency cooling"),
    ActionType.CYBER_LOCKDOWN: ActionProfile(
        0.5, 2, False, 0.4, "Lock down network access",
        dependencies=(ActionType.ISOLATE,)),
    ActionType.MANUAL_OVERRIDE: ActionProfile(
        0.25, 10, False, 0.2, "Operator manual override"),
}

FAILURE_MODE_ACTIONS: Dict[FailureMode, List[Tuple[ActionType, Priority]]] = {
    FailureMode.THERMAL_STRESS: [
        (ActionType.ENABLE_COOLING, Priority.IMMEDIATE),
        (ActionType.LOAD_SHED, Priority.HIGH),
    ],
    FailureMode.OVERLOAD: [
        (ActionType.LOAD_SHED, Priority.IMMEDIATE),
        (ActionType.REROUTE, Priority.HIGH),
        (ActionType.ACTIVATE_BACKUP, Priority.MEDIUM),
    ],
    FailureMode.CYBER_VULNERABILITY: [
        (ActionType.CYBER_LOCKDOWN, Priority.IMMEDIATE),
        (ActionType.ISOLATE, Priority.HIGH),
    ],
    FailureMode.CASCADE_FAILURE: [
        (ActionType.ISOLATE, Priority.IMMEDIATE),
        (ActionType.ACTIVATE_BACKUP, Priority.HIGH),
        (ActionType.REROUTE, Priority.HIGH),
    ],
    FailureMode.EQUIPMENT_FAILURE: [
        (ActionType.DISPATCH_MAINTENANCE, Priority.HIGH),
        (ActionType.ACTIVATE_BACKUP, Priority.MEDIUM),
    ],
    FailureMode.ENVIRONMENTAL_STRESS: [
        (ActionType.ENABLE_COOLING, Priority.HIGH),
        (ActionType.ACTIVATE_BACKUP, Priority.MEDIUM),
    ],
}

STATUS_PRIORITY = {
    NodeStatus.CRITICAL: Priority.IMMEDIATE,
    NodeStatus.OFFLINE: Priority.IMMEDIATE,
    NodeStatus.DEGRADED: Priority.HIGH,
}

INCIDENT_LOAD_THRESHOLD = 0.85
AUTO_SHED_LOAD = 0.9
AUTO_COOLING_SHARE = 0.95

OPEN_RECOMMENDATION_STATUSES = (
    RecommendationStatus.PENDING,
    RecommendationStatus.APPROVED,
    RecommendationStatus.EXECUTING,
)


def parse_action_type(value: Union[str, ActionType]) -> ActionType:
    if isinstance(value, ActionType):
        return value
    try:
        return ActionType(value)
    except ValueError as e:
        raise ValidationError(f"Unknown action type: {value}") from e


def action_applies_to(node: DigitalTwinNode, action_type: ActionType) -> bool:
    return node.category not in ACTION_INVALID_CATEGORIES.get(action_type, set())


class MitigationAdvisor:
    """Builds and tracks mitigation recommendations."""

    def __init__(self, context: SimulationContext, executor: Optional["MitigationExecutor"] = None):
        self.context = context
        self.executor = executor or MitigationExecutor(context)

    def _recommend(self, node: DigitalTwinNode, action_type: ActionType, priority: Priority,
                   prediction_id: Optional[str] = None,
                   incident_id: Optional[str] = None) -> MitigationRecommendation:
        for rec in self.context.recommendations.values():
            if (rec.node_id == node.id and rec.action_type == action_type
                    and rec.status in (RecommendationStatus.PENDING, RecommendationStatus.APPROVED)):
                if PRIORITY_ORDER[priority] < PRIORITY_ORDER[rec.priority]:
                    rec.priority = priority
                rec.prediction_id = rec.prediction_id or prediction_id
                rec.incident_id = rec.incident_id or incident_id
                return rec

        profile = ACTION_PROFILES[action_type]
        rec = MitigationRecommendation(
            id=self.context.ids.next("rec"),
            node_id=node.id,
            action_type=action_type,
            priority=priority,
            description=f"{profile.description} at {node.name}",
            expected_risk_reduction=profile.expected_risk_reduction,
            estimated_time_minutes=profile.estimated_time_minutes,
            automatable=profile.automatable,
            requires_approval=not profile.automatable,
            created_at=self.context.now(),
            dependencies=list(profile.dependencies),
            prediction_id=prediction_id,
            incident_id=incident_id,
        )
        self.context.recommendations[rec.id] = rec
        return rec

    def generate_recommendations_for_prediction(self, prediction: Union[str, EnhancedPrediction]
                                                ) -> List[MitigationRecommendation]:
        """
        Recommend the playbook actions for a prediction's failure mode.

        Actions not valid for the node's category are left out, and an open
        recommendation for the same node and action is reused.
        """
        with self.context.lock:
            if isinstance(prediction, str):
                found = self.context.predictions.get(prediction)
                if found is None:
                    raise PredictionNotFoundError(prediction)
                prediction = found
            node = self.context.graph.require_node(prediction.node_id)
            recs = [
                self._recommend(node, action_type, priority, prediction_id=prediction.id)
                for action_type, priority in FAILURE_MODE_ACTIONS[prediction.prediction_type]
                if action_applies_to(node, action_type)
            ]
            self.context.log.system(
                LogCategory.MITIGATION,
                f"{len(recs)} recommendations for {prediction.prediction_type.value} on {node.name}",
                {"prediction_id": prediction.id},
            )
            return self.order_recommendations(recs)

    def generate_recommendations_for_incident(self, incident: Union[str, Incident]
                                              ) -> List[MitigationRecommendation]:
        with self.context.lock:
            if isinstance(incident, str):
                found = self.context.incidents.get(incident)
                if found is None:
                    raise NotFoundError(f"Incident {incident} not found")
                incident = found

            recs = []
            for node_id in incident.affected_nodes:
                node = self.context.graph.get_node_by_id(node_id)
                if node is None or node.status == NodeStatus.ISOLATED:
                    continue
                priority = STATUS_PRIORITY.get(node.status, Priority.MEDIUM)
                if node.status == NodeStatus.CRITICAL:
                    recs.append(self._recommend(node, ActionType.ISOLATE, priority, incident_id=incident.id))
                if node.load_ratio > INCIDENT_LOAD_THRESHOLD and action_applies_to(node, ActionType.LOAD_SHED):
                    recs.append(self._recommend(node, ActionType.LOAD_SHED, priority, incident_id=incident.id))
                if node.cyber_status not in (CyberStatus.SECURE, CyberStatus.ISOLATED):
                    recs.append(self._recommend(node, ActionType.CYBER_LOCKDOWN, priority, incident_id=incident.id))
            return self.order_recommendations(recs)

    def order_recommendations(self, recs: Iterable[MitigationRecommendation]) -> List[MitigationRecommendation]:
        """
        Order by priority while placing prerequisite actions for the same node first.

        Ordering is advisory; execution does not enforce it.
        """
        recs = sorted(recs, key=lambda r: (PRIORITY_ORDER[r.priority], r.created_at, r.id))
        by_key = {(r.node_id, r.action_type): r for r in recs}
        ordered: List[MitigationRecommendation] = []
        placed = set()

        def place(rec: MitigationRecommendation, trail: Tuple[str, ...] = ()):
            if rec.id in placed or rec.id in trail:
                return
            for dependency in rec.dependencies:
                prerequisite = by_key.get((rec.node_id, dependency))
                if prerequisite is not None:
                    place(prerequisite, trail + (rec.id,))
            placed.add(rec.id)
            ordered.append(rec)

        for rec in recs:
            place(rec)
        return ordered

    def get_execution_plan(self, node_id: str) -> List[MitigationRecommendation]:
        return self.order_recommendations(
            r for r in self.get_recommendations_for_node(node_id)
            if r.status in (RecommendationStatus.PENDING, RecommendationStatus.APPROVED))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _require(self, recommendation_id: str) -> MitigationRecommendation:
        rec = self.context.recommendations.get(recommendation_id)
        if rec is None:
            raise RecommendationNotFoundError(recommendation_id)
        return rec

    def approve_recommendation(self, recommendation_id: str, approved_by: str = "operator") -> MitigationRecommendation:
        with self.context.lock:
            rec = self._require(recommendation_id)
            if rec.status != RecommendationStatus.PENDING:
                raise InvalidOperationError(f"Recommendation {rec.id} is {rec.status.value}, not pending")
            rec.status = RecommendationStatus.APPROVED
            rec.approved_by = approved_by
            self.context.log.operator(LogCategory.MITIGATION,
                                      f"{approved_by} approved {rec.action_type.value} on {rec.node_id}",
                                      {"recommendation_id": rec.id})
            return rec

    def execute_recommendation(self, recommendation_id: str, operator: Optional[str] = None) -> MitigationResult:
        """
        Run an approved (or automatable) recommendation.

        Raises:
            InvalidOperationError: Approval is required but missing, or the
                recommendation is no longer open
        """
        with self.context.lock:
            rec = self._require(recommendation_id)
            if rec.status not in (RecommendationStatus.PENDING, RecommendationStatus.APPROVED):
                raise InvalidOperationError(f"Recommendation {rec.id} is {rec.status.value}")
            if rec.requires_approval and rec.status != RecommendationStatus.APPROVED:
                raise InvalidOperationError(f"Recommendation {rec.id} requires approval")
            rec.status = RecommendationStatus.EXECUTING
            try:
                return self.executor.execute_mitigation(rec.node_id, rec.action_type,
                                                        operator=operator or rec.approved_by)
            except SentinelGridError:
                rec.status = RecommendationStatus.FAILED
                raise

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_recommendation(self, recommendation_id: str) -> Optional[MitigationRecommendation]:
        return self.context.recommendations.get(recommendation_id)

    def get_recommendations_for_node(self, node_id: str) -> List[MitigationRecommendation]:
        with self.context.lock:
            return [r for r in self.context.recommendations.values() if r.node_id == node_id]

    def get_recommendations_for_prediction(self, prediction_id: str) -> List[MitigationRecommendation]:
        with self.context.lock:
            return [r for r in self.context.recommendations.values() if r.prediction_id == prediction_id]

    def get_recommendations_for_incident(self, incident_id: str) -> List[MitigationRecommendation]:
        with self.context.lock:
            return [r for r in self.context.recommendations.values() if r.incident_id == incident_id]

    def get_pending_recommendations(self) -> List[MitigationRecommendation]:
        with self.context.lock:
            return self.order_recommendations(
                r for r in self.context.recommendations.values()
                if r.status == RecommendationStatus.PENDING)


class MitigationExecutor:
    """Applies mitigation actions to the twin and closes out what they resolve."""

    def __init__(self, context: SimulationContext):
        self.context = context

    def execute_mitigation(self, node_id: str, action_type: Union[str, ActionType],
                           params: Optional[MitigationParams] = None,
                           operator: Optional[str] = None) -> MitigationResult:
        """
        Apply one action to one node.

        Args:
            node_id: Target node
            action_type: Action to apply
            params: Typed parameters for the action, defaults when omitted
            operator: Name logged as the acting operator; None means the system

        Returns:
            MitigationResult with the risk before and after

        Raises:
            NodeNotFoundError: Unknown node
            InvalidOperationError: Action not applicable in the node's state
            ApplyFailedError: Action not valid for the node's category
        """
        action_type = parse_action_type(action_type)
        with self.context.lock:
            graph = self.context.graph
            node = graph.validate_mitigation(node_id, action_type)
            previous = node.risk_score

            node = graph.apply_mitigation_to_node(node_id, action_type, params)
            node.risk_score = clamp(previous - ACTION_PROFILES[action_type].executor_risk_reduction)
            graph.refresh_status(node)

            self._close_out(node, action_type)
            result = MitigationResult(
                node_id=node_id,
                action_type=action_type,
                success=True,
                risk_reduction=previous - node.risk_score,
                previous_risk=previous,
                new_risk=node.risk_score,
                message=f"{action_type.value} applied to {node.name}",
            )
            source = LogSource.OPERATOR if operator else LogSource.SYSTEM
            self.context.log.add(
                source, LogCategory.MITIGATION,
                f"{action_type.value} on {node.name}: risk {previous:.2f} -> {node.risk_score:.2f}",
                {"node_id": node_id, "operator": operator},
            )
            return result

    def _close_out(self, node: DigitalTwinNode, action_type: ActionType):
        now = self.context.now()
        prediction_ids = set()
        for rec in self.context.recommendations.values():
            if (rec.node_id == node.id and rec.action_type == action_type
                    and rec.status in OPEN_RECOMMENDATION_STATUSES):
                rec.status = RecommendationStatus.COMPLETED
                rec.executed_at = now
                if rec.prediction_id:
                    prediction_ids.add(rec.prediction_id)

        for prediction in self.context.predictions.values():
            if prediction.status != PredictionStatus.ACTIVE or prediction.node_id != node.id:
                continue
            suggested = {a.action for a in prediction.suggested_actions}
            if prediction.id in prediction_ids or action_type.value in suggested:
                prediction.status = PredictionStatus.MITIGATED
                prediction.resolved_at = now
                prediction.actual_outcome = f"Mitigated by {action_type.value}"

        for incident in self.context.incidents.values():
            if incident.status != IncidentStatus.OPEN or node.id not in incident.affected_nodes:
                continue
            incident.mitigation_actions.append(f"{action_type.value}:{node.id}")
            statuses = [self.context.graph.get_node_by_id(nid) for nid in incident.affected_nodes]
            if all(n is None or n.status not in (NodeStatus.CRITICAL, NodeStatus.OFFLINE) for n in statuses):
                incident.status = IncidentStatus.MITIGATED

    def execute_batch_mitigation(self, node_ids: Iterable[str], action_type: Union[str, ActionType],
                                 params: Optional[MitigationParams] = None,
                                 operator: Optional[str] = None) -> BatchMitigationResult:
        """Apply one action to many nodes; failures are collected, not raised."""
        action_type = parse_action_type(action_type)
        batch = BatchMitigationResult()
        with self.context.lock:
            for node_id in node_ids:
                try:
                    result = self.execute_mitigation(node_id, action_type, params, operator)
                except SentinelGridError as e:
                    batch.failed_count += 1
                    batch.errors[node_id] = str(e)
                    continue
                batch.success_count += 1
                batch.total_risk_reduction += result.risk_reduction
                batch.results.append(result)
        return batch

    def choose_auto_action(self, node: DigitalTwinNode) -> ActionType:
        if node.load_ratio > AUTO_SHED_LOAD and action_applies_to(node, ActionType.LOAD_SHED):
            return ActionType.LOAD_SHED
        if node.temperature > node.thermal_limit * AUTO_COOLING_SHARE:
            return ActionType.ENABLE_COOLING
        return ActionType.ACTIVATE_BACKUP

    def auto_mitigate_critical_nodes(self) -> BatchMitigationResult:
        """Apply the automatable action best suited to each critical node."""
        batch = BatchMitigationResult()
        with self.context.lock:
            for node in self.context.graph.get_critical_nodes():
                action_type = self.choose_auto_action(node)
                try:
                    result = self.execute_mitigation(node.id, action_type)
                except SentinelGridError as e:
                    batch.failed_count += 1
                    batch.errors[node.id] = str(e)
                    continue
                batch.success_count += 1
                batch.total_risk_reduction += result.risk_reduction
                batch.results.append(result)
            self.context.log.system(
                LogCategory.MITIGATION,
                f"Auto-mitigation: {batch.success_count} succeeded, {batch.failed_count} failed",
                {"risk_reduction": round(batch.total_risk_reduction, 3)},
            )
        return batch
