import pytest

from sentinel_grid.cascading_failure.simulation import CascadeEngine
from sentinel_grid.common import LogCategory
from sentinel_grid.digital_twin.models import AlertKind, AlertStatus, Severity
from sentinel_grid.exceptions import ValidationError
from sentinel_grid.alerting.monitor import (
    SYSTEM_SUBJECT,
    AlertCondition,
    AlertMonitor,
    AlertRule,
    AlertTarget,
    default_alert_rules,
    evaluate_condition,
    print_alert_report,
)
from sentinel_grid.predictive.analysis import RiskScorer
from sentinel_grid.threats.simulator import ThreatInjector


def _monitor(context, *targets):
    return AlertMonitor(context, [r for r in default_alert_rules() if r.target in targets])


@pytest.fixture
def calm_graph(graph):
    for node in graph.get_all_nodes():
        node.risk_score = 0.1
        node.health = 1.0
    return graph


def test_default_rules():
    rules = default_alert_rules()
    assert [r.rule_id for r in rules] == [
        "alert_critical_risk",
        "alert_prediction_urgent",
        "alert_cascade_detected",
        "alert_system_degradation",
    ]
    assert {r.target for r in rules} == set(AlertTarget)


def test_evaluate_condition():
    assert evaluate_condition(0.9, "greater_than", 0.8)
    assert not evaluate_condition(0.8, "greater_than", 0.8)
    assert evaluate_condition(0.8, "greater_than_or_equals", 0.8)
    assert evaluate_condition(3, "not_equals", 4)
    assert not evaluate_condition(0.9, "roughly", 0.8)


def test_node_alert_raised_once_and_resolved_when_risk_drops(context, calm_graph):
    monitor = _monitor(context, AlertTarget.NODE)
    node = calm_graph.get_all_nodes()[0]
    node.risk_score = 0.85

    alerts = monitor.evaluate()
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.subject_id == node.id
    assert alert.kind == AlertKind.THRESHOLD_BREACH
    assert alert.severity == Severity.ERROR
    assert alert.node_ids == [node.id]
    assert alert.metric == "risk_score"
    assert alert.threshold == 0.8
    assert len(context.log.entries(LogCategory.ALERT)) == 1

    assert monitor.evaluate() == []
    node.risk_score = 0.95
    monitor.evaluate()
    assert alert.current_value == 0.95
    assert alert.status == AlertStatus.OPEN

    node.risk_score = 0.5
    monitor.evaluate()
    assert alert.status == AlertStatus.RESOLVED
    assert alert.resolution_reason == "Condition no longer met"


def test_cooldown_is_per_rule_and_node(context, calm_graph, clock):
    monitor = _monitor(context, AlertTarget.NODE)
    first, second = calm_graph.get_all_nodes()[:2]
    first.risk_score = 0.85
    monitor.evaluate()
    first.risk_score = 0.5
    monitor.evaluate()

    first.risk_score = 0.85
    assert monitor.evaluate() == []

    second.risk_score = 0.92
    alerts = monitor.evaluate()
    assert [a.subject_id for a in alerts] == [second.id]
    assert alerts[0].severity == Severity.CRITICAL

    clock.advance(minutes=6)
    alerts = monitor.evaluate()
    assert [a.subject_id for a in alerts] == [first.id]


def test_active_alerts_sorted_by_severity(context, calm_graph):
    monitor = _monitor(context, AlertTarget.NODE)
    first, second = calm_graph.get_all_nodes()[:2]
    first.risk_score = 0.85
    second.risk_score = 0.95
    monitor.evaluate()
    assert [a.severity for a in monitor.get_active_alerts()] == [Severity.CRITICAL, Severity.ERROR]


def test_urgent_prediction_alert_follows_prediction_status(context, graph):
    target = graph.get_all_nodes()[0]
    ThreatInjector(context).create_cyber_attack(target.id, "ransomware", severity=0.9)
    scorer = RiskScorer(context)
    scorer.generate_all_predictions()
    for prediction in context.predictions.values():
        prediction.hours_to_event = 24.0
    prediction = scorer.get_predictions_for_node(target.id)[0]
    prediction.hours_to_event = 2.0
    prediction.probability = 0.9

    monitor = _monitor(context, AlertTarget.PREDICTION)
    alerts = monitor.evaluate()
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.kind == AlertKind.PREDICTION_TRIGGERED
    assert alert.prediction_id == prediction.id
    assert alert.node_ids == [target.id]

    scorer.record_prediction_outcome(prediction.id, False)
    monitor.evaluate()
    assert alert.status == AlertStatus.RESOLVED
    assert alert.resolution_reason == "Prediction expired"


def test_cascade_alert_raised_once_per_event(context, origin_id, clock):
    monitor = _monitor(context, AlertTarget.CASCADE)
    engine = CascadeEngine(context)
    event = engine.trigger_cascade(origin_id, 0.9)

    alerts = monitor.evaluate()
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.kind == AlertKind.CASCADE_DETECTED
    assert alert.severity == Severity.CRITICAL
    assert alert.cascade_event_id == event.id
    assert alert.node_ids == event.affected_nodes
    assert monitor.evaluate() == []
    assert event.id in context.alerted_cascades

    # same origin inside its cooldown
    clock.advance(minutes=1)
    engine.trigger_cascade(origin_id, 0.5)
    assert monitor.evaluate() == []

    clock.advance(minutes=10)
    engine.trigger_cascade(origin_id, 0.5)
    alerts = monitor.evaluate()
    assert [a.severity for a in alerts] == [Severity.ERROR]


def test_system_degradation_alert(context, graph):
    monitor = _monitor(context, AlertTarget.SYSTEM)
    for node in graph.get_all_nodes():
        node.health = 0.3

    alerts = monitor.evaluate()
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.subject_id == SYSTEM_SUBJECT
    assert alert.kind == AlertKind.SYSTEM_DEGRADATION
    assert alert.severity == Severity.CRITICAL
    assert alert.title == "System Health Degradation"

    for node in graph.get_all_nodes():
        node.health = 0.9
    assert monitor.evaluate() == []
    assert alert.status == AlertStatus.RESOLVED


def test_acknowledge_and_resolve_lifecycle(context, calm_graph):
    monitor = _monitor(context, AlertTarget.NODE)
    calm_graph.get_all_nodes()[0].risk_score = 0.85
    alert = monitor.evaluate()[0]

    assert monitor.acknowledge_alert(alert.alert_id, "alice")
    assert alert.status == AlertStatus.ACKNOWLEDGED
    assert alert.acknowledged_by == "alice"
    assert not monitor.acknowledge_alert(alert.alert_id)
    assert monitor.get_active_alerts() == [alert]
    assert monitor.get_alerts("acknowledged") == [alert]

    assert monitor.resolve_alert(alert.alert_id)
    assert alert.resolution_reason == "Resolved by operator"
    assert not monitor.resolve_alert(alert.alert_id)
    assert not monitor.resolve_alert("alert_99999")
    assert not monitor.acknowledge_alert("alert_99999")
    assert monitor.get_active_alerts() == []
    assert monitor.get_alerts(AlertStatus.RESOLVED) == [alert]
    assert monitor.stats == {"checks": 1, "alerts_triggered": 1, "alerts_resolved": 1}

    with pytest.raises(ValidationError):
        monitor.get_alerts("snoozed")


@pytest.mark.parametrize("rule", [
    AlertRule("alert_custom", "No conditions", AlertTarget.NODE, [], 5),
    AlertRule("alert_custom", "Unknown condition", AlertTarget.NODE,
              [AlertCondition("risk_score", "roughly", 0.5)], 5),
    AlertRule("alert_custom", "Wrong metric", AlertTarget.SYSTEM,
              [AlertCondition("temperature", "greater_than", 80)], 5),
    AlertRule("alert_custom", "Negative cooldown", AlertTarget.NODE,
              [AlertCondition("risk_score", "greater_than", 0.5)], -1),
])
def test_invalid_rules_rejected(context, rule):
    monitor = AlertMonitor(context)
    with pytest.raises(ValidationError):
        monitor.set_rule(rule)
    assert monitor.get_rule("alert_custom") is None


def test_custom_and_disabled_rules(context, calm_graph):
    monitor = AlertMonitor(context)
    monitor.set_rule(AlertRule("alert_node_exhausted", "Node Health Exhausted", AlertTarget.NODE,
                               [AlertCondition("health", "less_than_or_equals", 0.05)], 0))
    assert monitor.toggle_rule("alert_critical_risk", False)
    assert not monitor.toggle_rule("alert_missing", True)

    node = calm_graph.get_all_nodes()[0]
    node.risk_score = 0.95
    node.health = 0.05
    alerts = monitor.evaluate()
    assert [a.rule_id for a in alerts] == ["alert_node_exhausted"]
    assert alerts[0].metric == "health"

    assert monitor.remove_rule("alert_node_exhausted")
    assert not monitor.remove_rule("alert_node_exhausted")


def test_clear_old_alerts_keeps_open_ones(context, calm_graph, clock):
    monitor = _monitor(context, AlertTarget.NODE)
    first, second = calm_graph.get_all_nodes()[:2]
    first.risk_score = 0.85
    second.risk_score = 0.85
    alerts = {a.subject_id: a for a in monitor.evaluate()}
    monitor.acknowledge_alert(alerts[first.id].alert_id)

    clock.advance(hours=25)
    assert monitor.clear_old_alerts() == 1
    assert monitor.get_alert(alerts[first.id].alert_id) is None
    assert monitor.get_alert(alerts[second.id].alert_id) is alerts[second.id]


def test_reset_clears_alert_state(context, calm_graph, origin_id):
    monitor = AlertMonitor(context)
    calm_graph.get_all_nodes()[0].risk_score = 0.85
    CascadeEngine(context).trigger_cascade(origin_id, 0.6)
    assert monitor.evaluate()

    context.reset()
    assert context.alerts == {}
    assert context.alert_cooldowns == {}
    assert context.alerted_cascades == set()


def test_alert_report(context, calm_graph, capsys):
    monitor = _monitor(context, AlertTarget.NODE)
    print_alert_report(monitor)
    assert "No active alerts" in capsys.readouterr().out

    calm_graph.get_all_nodes()[0].risk_score = 0.85
    monitor.evaluate()
    print_alert_report(monitor)
    out = capsys.readouterr().out
    assert "ACTIVE ALERTS (1)" in out
    assert "Critical Risk Threshold" in out
