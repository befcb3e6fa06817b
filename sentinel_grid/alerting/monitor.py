#!/usr/bin/env python3
"""
Alerting - Rule Evaluation and Alert Lifecycle
==============================================

Evaluates alert rules against the twin once per tick:
- Node thresholds (risk, health, load, temperature)
- Urgent predictions (short horizon, high probability)
- Newly recorded cascade events
- System-wide health degradation

Each rule carries a cooldown. System rules cool down per rule, every other
rule per node. Alerts move open -> acknowledged -> resolved; node and system alerts
resolve themselves once their condition clears.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterator, List, Optional, Union

from ..common import LogCategory, logger
from ..context import SimulationContext
from ..digital_twin.models import (
    FAILED_STATUSES,
    ActiveAlert,
    AlertKind,
    AlertStatus,
    NodeStatus,
    PredictionStatus,
    Severity,
)
from ..exceptions import ValidationError


class AlertTarget(Enum):
    """What a rule is evaluated against."""
    NODE = "node"
    PREDICTION = "prediction"
    CASCADE = "cascade"
    SYSTEM = "system"


CONDITIONS = {
    "greater_than": lambda value, threshold: value > threshold,
    "less_than": lambda value, threshold: value < threshold,
    "equals": lambda value, threshold: value == threshold,
    "not_equals": lambda value, threshold: value != threshold,
    "greater_than_or_equals": lambda value, threshold: value >= threshold,
    "less_than_or_equals": lambda value, threshold: value <= threshold,
}

TARGET_METRICS = {
    AlertTarget.NODE: {"risk_score", "health", "load_ratio", "temperature"},
    AlertTarget.PREDICTION: {"probability", "hours_to_event", "confidence", "severity", "risk_score"},
    AlertTarget.CASCADE: {"severity", "impact_score", "affected_count", "hops"},
    AlertTarget.SYSTEM: {"system_health", "max_risk", "average_risk", "critical_count"},
}

TARGET_KINDS = {
    AlertTarget.NODE: AlertKind.THRESHOLD_BREACH,
    AlertTarget.PREDICTION: AlertKind.PREDICTION_TRIGGERED,
    AlertTarget.CASCADE: AlertKind.CASCADE_DETECTED,
    AlertTarget.SYSTEM: AlertKind.SYSTEM_DEGRADATION,
}

# Targets whose alerts resolve once the condition stops holding
AUTO_RESOLVE_TARGETS = (AlertTarget.NODE, AlertTarget.SYSTEM)

SYSTEM_SUBJECT = "system"

SEVERITY_ORDER = {
    Severity.CRITICAL: 0,
    Severity.ERROR: 1,
    Severity.WARNING: 2,
    Severity.INFO: 3,
}


def evaluate_condition(value: float, condition: str, threshold: float) -> bool:
    """Evaluate an alert condition."""
    check = CONDITIONS.get(condition)
    return check(value, threshold) if check else False


@dataclass
class AlertCondition:
    metric: str
    condition: str
    threshold: float


@dataclass
class AlertRule:
    """Alert rule configuration."""
    rule_id: str
    name: str
    target: AlertTarget
    conditions: List[AlertCondition]
    cooldown_minutes: float
    enabled: bool = True
    last_triggered: Optional[datetime] = None

    def matches(self, metrics: Dict[str, float]) -> bool:
        return all(c.metric in metrics and evaluate_condition(metrics[c.metric], c.condition, c.threshold)
                   for c in self.conditions)


@dataclass
class AlertSubject:
    """One thing a rule can fire on, with the metrics it exposes."""
    subject_id: str
    name: str
    cooldown_key: str
    metrics: Dict[str, float]
    node_ids: List[str] = field(default_factory=list)
    prediction_id: Optional[str] = None
    cascade_event_id: Optional[str] = None


def default_alert_rules() -> List[AlertRule]:
    return [
        AlertRule(
            rule_id="alert_critical_risk",
            name="Critical Risk Threshold",
            target=AlertTarget.NODE,
            conditions=[AlertCondition("risk_score", "greater_than", 0.8)],
            cooldown_minutes=5,
        ),
        AlertRule(
            rule_id="alert_prediction_urgent",
            name="Urgent Prediction",
            target=AlertTarget.PREDICTION,
            conditions=[
                AlertCondition("hours_to_event", "less_than", 6),
                AlertCondition("probability", "greater_than", 0.7),
            ],
            cooldown_minutes=15,
        ),
        AlertRule(
            rule_id="alert_cascade_detected",
            name="Cascade Event Detected",
            target=AlertTarget.CASCADE,
            conditions=[AlertCondition("affected_count", "greater_than_or_equals", 1)],
            cooldown_minutes=10,
        ),
        AlertRule(
            rule_id="alert_system_degradation",
            name="System Health Degradation",
            target=AlertTarget.SYSTEM,
            conditions=[AlertCondition("system_health", "less_than", 0.6)],
            cooldown_minutes=30,
        ),
    ]


class AlertMonitor:
    """
    Alert rule engine for one simulation context.

    Alerts live in the context so a reset clears them together with the
    rest of the run.
    """

    def __init__(self, context: SimulationContext, rules: Optional[List[AlertRule]] = None):
        self.context = context
        self.rules: Dict[str, AlertRule] = {}
        for rule in (rules if rules is not None else default_alert_rules()):
            self.set_rule(rule)

        self.stats = {
            "checks": 0,
            "alerts_triggered": 0,
            "alerts_resolved": 0,
        }

    @property
    def graph(self):
        return self.context.graph

    # -------------------------------------------------------------------------
    # Rule configuration
    # -------------------------------------------------------------------------

    def get_rules(self) -> List[AlertRule]:
        return list(self.rules.values())

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self.rules.get(rule_id)

    def set_rule(self, rule: AlertRule):
        """
        Add or replace a rule.

        Raises:
            ValidationError: No conditions, an unknown condition, a metric the
                target does not expose, or a negative cooldown
        """
        if not rule.conditions:
            raise ValidationError(f"Rule {rule.rule_id} has no conditions")
        for condition in rule.conditions:
            if condition.condition not in CONDITIONS:
                raise ValidationError(f"Unknown condition: {condition.condition}")
            if condition.metric not in TARGET_METRICS[rule.target]:
                raise ValidationError(f"Metric {condition.metric} is not available for {rule.target.value} rules")
        if rule.cooldown_minutes < 0:
            raise ValidationError(f"Cooldown must not be negative, got {rule.cooldown_minutes}")
        with self.context.lock:
            self.rules[rule.rule_id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        with self.context.lock:
            return self.rules.pop(rule_id, None) is not None

    def toggle_rule(self, rule_id: str, enabled: bool) -> bool:
        with self.context.lock:
            rule = self.rules.get(rule_id)
            if rule is None:
                return False
            rule.enabled = enabled
            return True

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def evaluate(self, now: Optional[datetime] = None) -> List[ActiveAlert]:
        """
        Check every enabled rule and raise alerts for new breaches.

        Returns:
            Alerts triggered by this evaluation
        """
        with self.context.lock:
            now = now or self.context.now()
            self.stats["checks"] += 1
            triggered = []

            for rule in self.rules.values():
                if not rule.enabled:
                    continue
                for subject in self._subjects(rule.target):
                    existing = self._open_alert(rule.rule_id, subject.subject_id)
                    if rule.matches(subject.metrics):
                        if existing is not None:
                            existing.current_value = subject.metrics[rule.conditions[0].metric]
                            continue
                        if self._cooling_down(rule, subject, now):
                            continue
                        alert = self._build_alert(rule, subject, now)
                        self.trigger_alert(alert, rule, subject, now)
                        triggered.append(alert)
                    elif existing is not None and rule.target in AUTO_RESOLVE_TARGETS:
                        self._resolve(existing, "Condition no longer met", now)

            self.context.alerted_cascades.update(self.context.cascades)
            for alert in self.get_active_alerts():
                prediction = self.context.predictions.get(alert.prediction_id) if alert.prediction_id else None
                if prediction is not None and prediction.status != PredictionStatus.ACTIVE:
                    self._resolve(alert, f"Prediction {prediction.status.value}", now)
            return triggered

    def _subjects(self, target: AlertTarget) -> Iterator[AlertSubject]:
        if target == AlertTarget.NODE:
            for node in self.graph.get_all_nodes():
                if node.status == NodeStatus.ISOLATED:
                    continue
                yield AlertSubject(
                    subject_id=node.id,
                    name=node.name,
                    cooldown_key=node.id,
                    metrics={"risk_score": node.risk_score, "health": node.health,
                             "load_ratio": node.load_ratio, "temperature": node.temperature},
                    node_ids=[node.id],
                )
        elif target == AlertTarget.PREDICTION:
            for prediction in self.context.predictions.values():
                if prediction.status != PredictionStatus.ACTIVE:
                    continue
                yield AlertSubject(
                    subject_id=prediction.id,
                    name=prediction.node_name,
                    cooldown_key=prediction.node_id,
                    metrics={"probability": prediction.probability, "hours_to_event": prediction.hours_to_event,
                             "confidence": prediction.confidence, "severity": prediction.severity,
                             "risk_score": prediction.risk_score},
                    node_ids=[prediction.node_id],
                    prediction_id=prediction.id,
                )
        elif target == AlertTarget.CASCADE:
            for event in self.context.cascades.values():
                if event.id in self.context.alerted_cascades:
                    continue
                origin = self.graph.get_node_by_id(event.origin_id)
                yield AlertSubject(
                    subject_id=event.id,
                    name=origin.name if origin else event.origin_id,
                    cooldown_key=event.origin_id,
                    metrics={"severity": event.severity, "impact_score": event.impact_score,
                             "affected_count": len(event.affected_nodes), "hops": event.hops},
                    node_ids=list(event.affected_nodes),
                    cascade_event_id=event.id,
                )
        elif target == AlertTarget.SYSTEM:
            nodes = self.graph.get_all_nodes()
            if not nodes:
                return
            failing = [n.id for n in nodes if n.status in FAILED_STATUSES]
            yield AlertSubject(
                subject_id=SYSTEM_SUBJECT,
                name="System",
                cooldown_key=SYSTEM_SUBJECT,
                metrics={"system_health": sum(n.health for n in nodes) / len(nodes),
                         "max_risk": max(n.risk_score for n in nodes),
                         "average_risk": sum(n.risk_score for n in nodes) / len(nodes),
                         "critical_count": len(failing)},
                node_ids=failing,
            )

    def _cooling_down(self, rule: AlertRule, subject: AlertSubject, now: datetime) -> bool:
        last = self.context.alert_cooldowns.get(f"{rule.rule_id}:{subject.cooldown_key}")
        return last is not None and now - last < timedelta(minutes=rule.cooldown_minutes)

    def _open_alert(self, rule_id: str, subject_id: str) -> Optional[ActiveAlert]:
        for alert in self.context.alerts.values():
            if (alert.rule_id == rule_id and alert.subject_id == subject_id
                    and alert.status != AlertStatus.RESOLVED):
                return alert
        return None

    def _build_alert(self, rule: AlertRule, subject: AlertSubject, now: datetime) -> ActiveAlert:
        metrics = subject.metrics
        first = rule.conditions[0]

        if rule.target == AlertTarget.NODE:
            risk = metrics["risk_score"]
            severity = Severity.CRITICAL if risk > 0.9 else Severity.ERROR if risk > 0.8 else Severity.WARNING
            message = (f"Node {subject.name} has risk score {risk:.0%} "
                       f"and health {metrics['health']:.0%}")
        elif rule.target == AlertTarget.PREDICTION:
            prediction = self.context.predictions[subject.prediction_id]
            severity = _prediction_severity(prediction.severity)
            message = (f"{prediction.prediction_type.value} predicted for {subject.name} within "
                       f"{prediction.hours_to_event:.1f} hours ({prediction.probability:.0%} probability)")
        elif rule.target == AlertTarget.CASCADE:
            severity = Severity.CRITICAL if metrics["severity"] >= 0.8 else Severity.ERROR
            message = (f"Cascade from {subject.name} reached {int(metrics['affected_count'])} nodes "
                       f"(impact {metrics['impact_score']:.2f}, depth {int(metrics['hops'])})")
        else:
            health = metrics["system_health"]
            severity = Severity.CRITICAL if health < 0.4 else Severity.WARNING
            message = (f"System health at {health:.0%}. "
                       f"{int(metrics['critical_count'])} critical nodes detected.")

        return ActiveAlert(
            alert_id=self.context.ids.next("alert"),
            rule_id=rule.rule_id,
            subject_id=subject.subject_id,
            kind=TARGET_KINDS[rule.target],
            severity=severity,
            title=rule.name if rule.target == AlertTarget.SYSTEM else f"{rule.name}: {subject.name}",
            message=message,
            metric=first.metric,
            current_value=metrics[first.metric],
            threshold=first.threshold,
            triggered_at=now,
            node_ids=list(subject.node_ids),
            prediction_id=subject.prediction_id,
            cascade_event_id=subject.cascade_event_id,
        )

    def trigger_alert(self, alert: ActiveAlert, rule: AlertRule, subject: AlertSubject, now: datetime):
        """Register a new alert and start its rule's cooldown."""
        self.context.alerts[alert.alert_id] = alert
        self.context.alert_cooldowns[f"{rule.rule_id}:{subject.cooldown_key}"] = now
        rule.last_triggered = now
        self.stats["alerts_triggered"] += 1
        self.context.log.simulation(
            LogCategory.ALERT,
            f"{alert.severity.value.upper()}: {alert.title} - {alert.message}",
            {"alert_id": alert.alert_id, "rule_id": rule.rule_id, "nodes": len(alert.node_ids)},
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def acknowledge_alert(self, alert_id: str, acknowledged_by: Optional[str] = None) -> bool:
        """Acknowledge an open alert. Returns False if it is unknown or not open."""
        with self.context.lock:
            alert = self.context.alerts.get(alert_id)
            if alert is None or alert.status != AlertStatus.OPEN:
                return False
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_at = self.context.now()
            alert.acknowledged_by = acknowledged_by
            self.context.log.operator(LogCategory.ALERT, f"Alert {alert_id} acknowledged",
                                      {"by": acknowledged_by})
            return True

    def resolve_alert(self, alert_id: str, reason: str = "Resolved by operator") -> bool:
        """Resolve an alert. Returns False if it is unknown or already resolved."""
        with self.context.lock:
            alert = self.context.alerts.get(alert_id)
            if alert is None or alert.status == AlertStatus.RESOLVED:
                return False
            self._resolve(alert, reason, self.context.now())
            return True

    def _resolve(self, alert: ActiveAlert, reason: str, now: datetime):
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = now
        alert.resolution_reason = reason
        self.stats["alerts_resolved"] += 1
        logger.info(f"Alert {alert.alert_id} resolved: {reason}")

    def clear_old_alerts(self, max_age_hours: float = 24.0) -> int:
        """
        Drop alerts older than max_age_hours unless they are still open.

        Returns:
            Number of alerts removed
        """
        with self.context.lock:
            cutoff = self.context.now() - timedelta(hours=max_age_hours)
            stale = [a.alert_id for a in self.context.alerts.values()
                     if a.triggered_at <= cutoff and a.status != AlertStatus.OPEN]
            for alert_id in stale:
                del self.context.alerts[alert_id]
            return len(stale)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_alerts(self, status: Union[str, AlertStatus, None] = None) -> List[ActiveAlert]:
        if isinstance(status, str):
            try:
                status = AlertStatus(status)
            except ValueError as e:
                raise ValidationError(f"Unknown alert status: {status}") from e
        with self.context.lock:
            return [a for a in self.context.alerts.values() if status is None or a.status == status]

    def get_alert(self, alert_id: str) -> Optional[ActiveAlert]:
        return self.context.alerts.get(alert_id)

    def get_active_alerts(self) -> List[ActiveAlert]:
        """Open and acknowledged alerts, critical first."""
        with self.context.lock:
            active = [a for a in self.context.alerts.values() if a.status != AlertStatus.RESOLVED]
            active.sort(key=lambda a: (SEVERITY_ORDER[a.severity], a.triggered_at))
            return active


def _prediction_severity(value: float) -> Severity:
    if value >= 0.9:
        return Severity.CRITICAL
    if value >= 0.7:
        return Severity.ERROR
    if value >= 0.5:
        return Severity.WARNING
    return Severity.INFO


# =============================================================================
# Reporting
# =============================================================================

def print_alert_report(monitor: AlertMonitor, limit: int = 10):
    """Print monitor statistics and the active alerts."""
    active = monitor.get_active_alerts()
    print(f"\n ACTIVE ALERTS ({len(active)}):")
    print("-" * 80)
    print(f" Checks: {monitor.stats['checks']} | Triggered: {monitor.stats['alerts_triggered']} | "
          f"Resolved: {monitor.stats['alerts_resolved']}")
    if not active:
        print(" No active alerts")
        return
    for alert in active[:limit]:
        status = "ACK" if alert.status == AlertStatus.ACKNOWLEDGED else alert.status.value.upper()
        print(f" [{alert.severity.value.upper()[:4]}] {alert.title[:48]:<48} "
              f"{alert.metric[:14]:<14} = {alert.current_value:>7.2f} | {status}")
