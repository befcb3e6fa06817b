#!/usr/bin/env python3
"""
Predictive Risk Analysis - Risk Scoring and Failure Prediction
==============================================================

Scores every twin node on five risk components and turns high scores into
explainable failure predictions:
- Physical, cyber, operational, environmental and cascading components
- Fixed component weights; the overall score is their weighted sum
- Confidence interval that widens with recent score volatility
- Trend and time-to-failure from the risk velocity between ticks
- Leading factors, historical pattern match and suggested actions
- Prediction lifecycle (active -> mitigated / expired / occurred) with
  accuracy tracking per failure mode

Scoring is a pure function of the twin state; only rescore_node and the
prediction registry mutate anything.
"""

import statistics
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple, Union

from ..common import LogCategory, clamp, logger
from ..context import SimulationContext
from ..cascading_failure.propagation import DEFAULT_PROPAGATION, plan_propagation
from ..digital_twin.graph import ACTION_INVALID_CATEGORIES
from ..digital_twin.models import (
    FAILED_STATUSES,
    PRIORITY_ORDER,
    ActionType,
    ContributingFactor,
    CyberStatus,
    DigitalTwinNode,
    EnhancedPrediction,
    FailureMode,
    LeadingFactor,
    NodeStatus,
    PredictionReasoning,
    PredictionStatus,
    Priority,
    RiskComponents,
    RiskScore,
    SuggestedAction,
    Trend,
)
from ..exceptions import PredictionNotFoundError, ValidationError
from ..mitigation.advisor import ACTION_PROFILES, FAILURE_MODE_ACTIONS
from ..threats.simulator import threat_exposure

COMPONENT_WEIGHTS = {
    "physical": 0.25,
    "cyber": 0.30,
    "operational": 0.15,
    "environmental": 0.10,
    "cascading": 0.20,
}

PREDICTION_THRESHOLD = 0.3
CASCADE_PATH_THRESHOLD = 0.6
TREND_EPSILON = 0.02
FAILURE_LEVEL = 0.9
MIN_VELOCITY = 0.005
MAINTENANCE_INTERVAL_HOURS = 2000.0
MAX_FACTORS = 5
MAX_ACTIONS = 5
DEFAULT_PREDICTION_LIMIT = 20

# (overall floor, hours) used when risk is not rising
TIME_TO_FAILURE_BANDS = [(0.8, 0.5), (0.6, 2.0), (0.4, 6.0), (0.2, 24.0)]
DEFAULT_TIME_TO_FAILURE = 48.0

SEVERITY_BANDS = [(0.8, 0.9), (0.6, 0.7), (0.4, 0.5)]
DEFAULT_SEVERITY = 0.3

HISTORICAL_PATTERNS = {
    FailureMode.THERMAL_STRESS: {
        "name": "Summer Peak Thermal Runaway",
        "description": "Sustained high load drove transformer temperatures past rated limits before insulation failure",
        "base_match": 0.55,
    },
    FailureMode.OVERLOAD: {
        "name": "Regional Demand Surge",
        "description": "Demand spike exceeded rated capacity and tripped protection relays",
        "base_match": 0.5,
    },
    FailureMode.CYBER_VULNERABILITY: {
        "name": "Coordinated SCADA Intrusion",
        "description": "Repeated authentication failures and tamper alarms preceded remote breaker manipulation",
        "base_match": 0.5,
    },
    FailureMode.CASCADE_FAILURE: {
        "name": "Generation Loss Cascade",
        "description": "Loss of upstream generation propagated through dependent substations and control sites",
        "base_match": 0.45,
    },
    FailureMode.EQUIPMENT_FAILURE: {
        "name": "Deferred Maintenance Breakdown",
        "description": "Aging equipment past its maintenance window failed under normal load",
        "base_match": 0.4,
    },
    FailureMode.ENVIRONMENTAL_STRESS: {
        "name": "Severe Weather Exposure",
        "description": "Regional storm conditions stressed exposed assets across the service area",
        "base_match": 0.4,
    },
}


def _band(value: float, bands: List[Tuple[float, float]], default: float) -> float:
    for floor, result in bands:
        if value >= floor:
            return result
    return default


def physical_risks(node: DigitalTwinNode) -> Dict[str, float]:
    return {
        "thermal": clamp((node.temperature - 25) / max(1.0, node.thermal_limit - 25)),
        "load": clamp((node.load_ratio - 0.3) / 0.65),
        "voltage": clamp(abs(node.voltage - 230) / 23),
        "frequency": clamp(abs(node.frequency - 60) / 0.5),
    }


def cyber_risks(node: DigitalTwinNode) -> Dict[str, float]:
    return {
        "tamper": clamp(node.tamper_signal),
        "latency": clamp((node.latency - 20) / 300),
        "packet_loss": clamp(node.packet_loss / 0.2),
        "auth": clamp(max(0, node.failed_auth_count - 2) / 6),
        "integrity": clamp(1 - node.cyber_health),
    }


class RiskScorer:
    """Risk scoring and prediction registry for one simulation context."""

    def __init__(self, context: SimulationContext):
        self.context = context

    @property
    def graph(self):
        return self.context.graph

    def _resolve_node(self, node: Union[str, DigitalTwinNode]) -> DigitalTwinNode:
        if isinstance(node, DigitalTwinNode):
            return node
        return self.graph.require_node(node)

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    def compute_components(self, node: DigitalTwinNode) -> RiskComponents:
        physical = physical_risks(node)
        cyber = cyber_risks(node)

        survival = 1.0
        for risk in cyber.values():
            survival *= 1 - risk

        maintenance_age = min(1.0, node.hours_since_maintenance / MAINTENANCE_INTERVAL_HOURS)

        return RiskComponents(
            physical=clamp(0.35 * physical["thermal"] + 0.35 * physical["load"]
                           + 0.15 * physical["voltage"] + 0.15 * physical["frequency"]),
            cyber=clamp(1 - survival),
            operational=clamp(0.6 * (1 - node.health) + 0.4 * maintenance_age),
            environmental=threat_exposure(self.context, node),
            cascading=self._upstream_failure_share(node),
        )

    def _upstream_failure_share(self, node: DigitalTwinNode) -> float:
        upstream = [e.from_id for e in self.graph.incoming_edges(node.id) if e.is_active]
        if not upstream:
            return 0.0
        failed = 0
        for nid in upstream:
            provider = self.graph.get_node_by_id(nid)
            if provider is not None and provider.status in FAILED_STATUSES:
                failed += 1
        return failed / len(upstream)

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def calculate_risk_score(self, node: Union[str, DigitalTwinNode]) -> RiskScore:
        """
        Score a node without mutating anything.

        Args:
            node: Node or node id

        Returns:
            RiskScore whose overall value is the weighted sum of its components

        Raises:
            NodeNotFoundError: Unknown node id
        """
        node = self._resolve_node(node)
        components = self.compute_components(node)
        overall = clamp(sum(COMPONENT_WEIGHTS[k] * v for k, v in components.as_dict().items()))

        history = list(self.context.risk_history.get(node.id, ()))
        previous = history[-1] if history else node.risk_score
        volatility = statistics.pstdev(history) if len(history) >= 2 else 0.0
        half_width = 1.96 * (0.05 + volatility)

        if overall > previous + TREND_EPSILON:
            trend = Trend.INCREASING
        elif overall < previous - TREND_EPSILON:
            trend = Trend.DECREASING
        else:
            trend = Trend.STABLE

        return RiskScore(
            node_id=node.id,
            overall=overall,
            probability=min(1.0, overall * 1.2),
            severity=_band(overall, SEVERITY_BANDS, DEFAULT_SEVERITY),
            time_to_failure=self._time_to_failure(overall, previous),
            confidence_interval=(max(0.0, overall - half_width), min(1.0, overall + half_width)),
            trend=trend,
            components=components,
            leading_factors=self.get_leading_factors(node, components, trend),
        )

    def _time_to_failure(self, overall: float, previous: float) -> float:
        if overall >= FAILURE_LEVEL:
            return 0.5
        velocity = (overall - previous) / self.context.settings.tick_hours
        if velocity > MIN_VELOCITY:
            return clamp((FAILURE_LEVEL - overall) / velocity, 0.5, 168.0)
        return _band(overall, TIME_TO_FAILURE_BANDS, DEFAULT_TIME_TO_FAILURE)

    def rescore_node(self, node: Union[str, DigitalTwinNode]) -> RiskScore:
        """Score a node and write the result back to the twin."""
        with self.context.lock:
            node = self._resolve_node(node)
            score = self.calculate_risk_score(node)
            node.risk_score = score.overall
            self.context.risk_history[node.id].append(score.overall)
            self.context.latest_scores[node.id] = score
            self.graph.refresh_status(node)
            return score

    def get_leading_factors(self, node: DigitalTwinNode, components: RiskComponents,
                            trend: Trend = Trend.STABLE) -> List[LeadingFactor]:
        """Top contributors to the overall score, largest first."""
        physical = physical_risks(node)
        cyber = cyber_risks(node)
        cyber_total = sum(cyber.values()) or 1.0
        w = COMPONENT_WEIGHTS

        candidates = [
            ("Thermal Stress", w["physical"] * 0.35 * physical["thermal"], node.temperature, node.thermal_limit,
             f"Temperature {node.temperature:.1f}C against a {node.thermal_limit:.0f}C limit"),
            ("Load Overload", w["physical"] * 0.35 * physical["load"], node.load_ratio, 0.85,
             f"Running at {node.load_ratio:.0%} of rated capacity"),
            ("Voltage Deviation", w["physical"] * 0.15 * physical["voltage"], node.voltage, 230.0,
             f"Voltage {node.voltage:.1f}V off nominal"),
            ("Frequency Deviation", w["physical"] * 0.15 * physical["frequency"], node.frequency, 60.0,
             f"Frequency {node.frequency:.3f}Hz off nominal"),
            ("Cyber Tampering", w["cyber"] * components.cyber * cyber["tamper"] / cyber_total,
             node.tamper_signal, 0.3, f"Tamper signal at {node.tamper_signal:.2f}"),
            ("Network Latency", w["cyber"] * components.cyber * cyber["latency"] / cyber_total,
             node.latency, 100.0, f"Control latency {node.latency:.0f}ms"),
            ("Packet Loss", w["cyber"] * components.cyber * cyber["packet_loss"] / cyber_total,
             node.packet_loss, 0.05, f"Packet loss {node.packet_loss:.1%}"),
            ("Authentication Failures", w["cyber"] * components.cyber * cyber["auth"] / cyber_total,
             node.failed_auth_count, 3, f"{node.failed_auth_count} failed authentication attempts"),
            ("Cyber Integrity Loss", w["cyber"] * components.cyber * cyber["integrity"] / cyber_total,
             node.cyber_health, 0.7, f"Cyber health at {node.cyber_health:.0%}"),
            ("Equipment Wear", w["operational"] * components.operational, node.health, 0.5,
             f"Health {node.health:.0%}, {node.hours_since_maintenance:.0f}h since maintenance"),
            ("Regional Threat Exposure", w["environmental"] * components.environmental,
             components.environmental, 0.5, f"Active threats in the {node.region} region"),
            ("Neighbor Risk Propagation", w["cascading"] * components.cascading,
             components.cascading, 0.4, f"{components.cascading:.0%} of upstream dependencies failing"),
        ]

        factors = [
            LeadingFactor(name=name, contribution=contribution, value=value,
                          threshold=threshold, trend=trend, explanation=explanation)
            for name, contribution, value, threshold, explanation in candidates
            if contribution > 0.005
        ]
        factors.sort(key=lambda f: f.contribution, reverse=True)
        return factors[:MAX_FACTORS]

    # -------------------------------------------------------------------------
    # Cascade forecast
    # -------------------------------------------------------------------------

    def predict_cascade_path(self, origin_id: str, severity: Optional[float] = None) -> List[str]:
        """
        Forecast which nodes a failure at origin_id would reach.

        Uses the same propagation rules as the cascade engine and never
        mutates the twin.

        Returns:
            Node ids in visit order, origin first
        """
        with self.context.lock:
            origin = self.graph.require_node(origin_id)
            if severity is None:
                severity = max(origin.risk_score, DEFAULT_PROPAGATION.floor)
            return [impact.node_id for impact in plan_propagation(self.graph, origin_id, severity)]

    # -------------------------------------------------------------------------
    # Predictions
    # -------------------------------------------------------------------------

    def classify_failure_mode(self, node: DigitalTwinNode, components: RiskComponents) -> FailureMode:
        weighted = {k: COMPONENT_WEIGHTS[k] * v for k, v in components.as_dict().items()}
        dominant = max(weighted, key=weighted.get)
        if dominant == "physical":
            physical = physical_risks(node)
            return FailureMode.THERMAL_STRESS if physical["thermal"] >= physical["load"] else FailureMode.OVERLOAD
        return {
            "cyber": FailureMode.CYBER_VULNERABILITY,
            "operational": FailureMode.EQUIPMENT_FAILURE,
            "environmental": FailureMode.ENVIRONMENTAL_STRESS,
            "cascading": FailureMode.CASCADE_FAILURE,
        }[dominant]

    def generate_prediction(self, node: Union[str, DigitalTwinNode]) -> Optional[EnhancedPrediction]:
        """
        Build a prediction for a node without registering it.

        Returns:
            None when the node's risk is below the generation threshold
        """
        with self.context.lock:
            node = self._resolve_node(node)
            score = self.calculate_risk_score(node)
            if score.overall < PREDICTION_THRESHOLD:
                return None
            return self._build_prediction(node, score, self.context.ids.next("pred"))

    def _build_prediction(self, node: DigitalTwinNode, score: RiskScore, prediction_id: str) -> EnhancedPrediction:
        now = self.context.now()
        mode = self.classify_failure_mode(node, score.components)
        lo, hi = score.confidence_interval

        cascade_path = []
        if score.overall > CASCADE_PATH_THRESHOLD:
            cascade_path = [nid for nid in self.predict_cascade_path(node.id, score.overall) if nid != node.id]
        downstream = [e.to_id for e in self.graph.outgoing_edges(node.id) if e.is_active]

        return EnhancedPrediction(
            id=prediction_id,
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            prediction_type=mode,
            probability=score.probability,
            confidence=clamp(1 - (hi - lo), 0.5, 0.99),
            severity=score.severity,
            risk_score=score.overall,
            predicted_time=now + timedelta(hours=score.time_to_failure),
            hours_to_event=score.time_to_failure,
            created_at=now,
            reasoning=self._build_reasoning(node, score, mode),
            contributing_factors=[
                ContributingFactor(factor=f.name, weight=f.contribution, current_value=f.value,
                                   threshold=f.threshold, trend=f.trend, explanation=f.explanation)
                for f in score.leading_factors
            ],
            suggested_actions=self.suggest_actions(node, mode, score.components),
            cascade_path=cascade_path,
            affected_downstream=downstream,
            node_status_at_creation=node.status,
        )

    def _build_reasoning(self, node: DigitalTwinNode, score: RiskScore, mode: FailureMode) -> PredictionReasoning:
        pattern = HISTORICAL_PATTERNS[mode]
        dominant = max(score.components.as_dict().values())
        top = score.leading_factors[0] if score.leading_factors else None
        lo, hi = score.confidence_interval
        actions = FAILURE_MODE_ACTIONS[mode]

        return PredictionReasoning(
            root_cause=(f"{top.name} on {node.name}: {top.explanation}" if top
                        else f"Elevated {mode.value.replace('_', ' ')} risk on {node.name}"),
            leading_signals=[f.explanation for f in score.leading_factors],
            historical_pattern=f"{pattern['name']}: {pattern['description']}",
            risk_shift=f"Risk {score.trend.value} at {score.overall:.2f}",
            confidence_driver=(f"Confidence interval {lo:.2f}-{hi:.2f} from recent score volatility"),
            recommended_mitigation=actions[0][0].value if actions else "monitor",
            pattern_match=clamp(pattern["base_match"] + 0.3 * dominant, 0.0, 0.95),
        )

    def suggest_actions(self, node: DigitalTwinNode, mode: FailureMode,
                        components: RiskComponents) -> List[SuggestedAction]:
        """Playbook actions for the failure mode plus node-specific extras, most urgent first."""
        wanted = list(FAILURE_MODE_ACTIONS[mode])
        if node.load_ratio > 0.85:
            wanted.append((ActionType.LOAD_SHED, Priority.HIGH))
        if node.cyber_status != CyberStatus.SECURE:
            wanted.append((ActionType.CYBER_LOCKDOWN, Priority.HIGH))
        if components.cascading > 0.4:
            wanted.append((ActionType.ISOLATE, Priority.HIGH))

        seen = set()
        actions = []
        for action_type, priority in wanted:
            if action_type in seen or node.category in ACTION_INVALID_CATEGORIES.get(action_type, set()):
                continue
            seen.add(action_type)
            profile = ACTION_PROFILES[action_type]
            actions.append(SuggestedAction(
                action=action_type.value,
                priority=priority.value,
                expected_risk_reduction=profile.expected_risk_reduction,
                estimated_time_minutes=profile.estimated_time_minutes,
                automatable=profile.automatable,
            ))
        actions.sort(key=lambda a: PRIORITY_ORDER[Priority(a.priority)])
        return actions[:MAX_ACTIONS]

    def generate_all_predictions(self, limit: int = DEFAULT_PREDICTION_LIMIT,
                                 skip: Optional[Set[str]] = None) -> List[EnhancedPrediction]:
        """
        Score every connected node and register predictions above the threshold.

        An active prediction for the same node and failure mode is refreshed
        in place rather than duplicated. Nodes in skip, and nodes whose scoring
        raises, are left without a new prediction.

        Returns:
            The generated predictions, most severe and most probable first
        """
        with self.context.lock:
            generated = []
            for node in self.graph.get_all_nodes():
                if node.status == NodeStatus.ISOLATED or (skip and node.id in skip):
                    continue
                try:
                    score = self.calculate_risk_score(node)
                except Exception as e:
                    logger.error(f"Scoring {node.id} failed, no prediction this round: {e}")
                    continue
                if score.overall < PREDICTION_THRESHOLD:
                    continue
                mode = self.classify_failure_mode(node, score.components)
                existing = self._active_prediction(node.id, mode)
                if existing is not None:
                    refreshed = self._build_prediction(node, score, existing.id)
                    refreshed.created_at = existing.created_at
                    refreshed.node_status_at_creation = existing.node_status_at_creation
                    self.context.predictions[existing.id] = refreshed
                    generated.append(refreshed)
                else:
                    prediction = self._build_prediction(node, score, self.context.ids.next("pred"))
                    self.context.predictions[prediction.id] = prediction
                    generated.append(prediction)
                    self.context.log.simulation(
                        LogCategory.PREDICTION,
                        f"{mode.value} predicted for {node.name} "
                        f"(p={prediction.probability:.2f}, {prediction.hours_to_event:.1f}h)",
                        {"prediction_id": prediction.id, "node_id": node.id},
                    )
            generated.sort(key=lambda p: (p.severity, p.probability), reverse=True)
            return generated[:limit]

    def _active_prediction(self, node_id: str, mode: Optional[FailureMode] = None) -> Optional[EnhancedPrediction]:
        for prediction in self.context.predictions.values():
            if (prediction.node_id == node_id and prediction.status == PredictionStatus.ACTIVE
                    and (mode is None or prediction.prediction_type == mode)):
                return prediction
        return None

    def has_active_prediction(self, node_id: str) -> bool:
        with self.context.lock:
            return self._active_prediction(node_id) is not None

    def sweep_predictions(self, now: Optional[datetime] = None) -> List[EnhancedPrediction]:
        """
        Resolve active predictions against the current twin state.

        A prediction occurs once its node has worsened to critical or
        offline since creation. At its horizon it occurs if the node is
        failed and expires otherwise.
        """
        with self.context.lock:
            now = now or self.context.now()
            resolved = []
            for prediction in list(self.context.predictions.values()):
                if prediction.status != PredictionStatus.ACTIVE:
                    continue
                node = self.graph.get_node_by_id(prediction.node_id)
                failed = node is not None and node.status in FAILED_STATUSES
                if failed and prediction.node_status_at_creation not in FAILED_STATUSES:
                    self._resolve(prediction, PredictionStatus.OCCURRED, True, f"Node {node.status.value}", now)
                elif now >= prediction.predicted_time:
                    if failed:
                        self._resolve(prediction, PredictionStatus.OCCURRED, True, f"Node {node.status.value}", now)
                    else:
                        self._resolve(prediction, PredictionStatus.EXPIRED, False, "No failure observed", now)
                else:
                    continue
                resolved.append(prediction)
            return resolved

    def _resolve(self, prediction: EnhancedPrediction, status: PredictionStatus, was_accurate: bool,
                 outcome: str, now: datetime):
        prediction.status = status
        prediction.was_accurate = was_accurate
        prediction.actual_outcome = outcome
        prediction.resolved_at = now
        self.context.accuracy.record(prediction.id, prediction.prediction_type, was_accurate)
        logger.info(f"Prediction {prediction.id} {status.value}: {outcome}")

    def record_prediction_outcome(self, prediction_id: str, was_accurate: bool,
                                  failure_type: Union[str, FailureMode, None] = None,
                                  actual_outcome: Optional[str] = None) -> bool:
        """
        Record an externally observed outcome.

        Recording is idempotent per prediction id and a resolved prediction
        is never changed.

        Returns:
            True if the outcome was counted

        Raises:
            PredictionNotFoundError: Unknown id and no failure type to count it under
            ValidationError: Unknown failure type
        """
        with self.context.lock:
            prediction = self.context.predictions.get(prediction_id)
            if prediction is not None:
                if prediction.is_resolved:
                    return False
                status = PredictionStatus.OCCURRED if was_accurate else PredictionStatus.EXPIRED
                self._resolve(prediction, status, was_accurate,
                              actual_outcome or ("Failure confirmed" if was_accurate else "No failure observed"),
                              self.context.now())
                return True
            if failure_type is None:
                raise PredictionNotFoundError(prediction_id)
            try:
                mode = FailureMode(failure_type) if not isinstance(failure_type, FailureMode) else failure_type
            except ValueError as e:
                raise ValidationError(f"Unknown failure type: {failure_type}") from e
            return self.context.accuracy.record(prediction_id, mode, was_accurate)

    def record_missed_failure(self, node: Union[str, DigitalTwinNode]):
        """Count a node failure that no active prediction anticipated."""
        with self.context.lock:
            node = self._resolve_node(node)
            score = self.context.latest_scores.get(node.id)
            mode = (self.classify_failure_mode(node, score.components) if score is not None
                    else FailureMode.EQUIPMENT_FAILURE)
            self.context.accuracy.record_missed(mode)
            logger.info(f"Missed failure on {node.id} ({mode.value})")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_accuracy_stats(self, failure_type: Optional[FailureMode] = None) -> Dict:
        with self.context.lock:
            return self.context.accuracy.stats(failure_type)

    def get_prediction(self, prediction_id: str) -> Optional[EnhancedPrediction]:
        return self.context.predictions.get(prediction_id)

    def get_active_predictions(self) -> List[EnhancedPrediction]:
        with self.context.lock:
            active = [p for p in self.context.predictions.values() if p.status == PredictionStatus.ACTIVE]
            active.sort(key=lambda p: (p.severity, p.probability), reverse=True)
            return active

    def get_predictions_for_node(self, node_id: str) -> List[EnhancedPrediction]:
        with self.context.lock:
            return [p for p in self.context.predictions.values() if p.node_id == node_id]
