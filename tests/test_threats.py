import pytest

from sentinel_grid.digital_twin.models import CyberAttackSubtype, ThreatType
from sentinel_grid.exceptions import ThreatNotFoundError, ValidationError
from sentinel_grid.threats.simulator import (
    TELECOM_OUTAGE_CATEGORIES,
    ThreatInjector,
    threat_exposure,
)

CYBER_METRICS = ("cyber_health", "tamper_signal", "latency", "packet_loss", "failed_auth_count")


@pytest.fixture
def injector(context):
    return ThreatInjector(context)


def _largest_region(graph):
    return max(graph.regions(), key=lambda r: len(graph.get_nodes_by_region(r)))


@pytest.mark.parametrize("kwargs", [
    {"severity": 1.5},
    {"severity": -0.1},
    {"duration_seconds": 0},
    {"region": "Atlantis"},
])
def test_invalid_threat_arguments(injector, context, kwargs):
    with pytest.raises(ValidationError):
        injector.create_threat("overload", **kwargs)
    assert context.threats == {}


def test_unknown_threat_type_and_subtype(injector):
    with pytest.raises(ValidationError):
        injector.create_threat("meteor_strike")
    with pytest.raises(ValidationError):
        injector.create_cyber_attack("node_0000", "telepathy")


def test_unknown_target_yields_empty_threat(injector):
    threat = injector.create_threat("cyber_attack", target="node_9999", severity=0.5)
    assert threat.active
    assert threat.affected_nodes == []
    assert injector.get_threat(threat.id) is threat


def test_cyber_attack_perturbs_target(injector, graph):
    target = graph.get_all_nodes()[0]
    cyber_health, tamper = target.cyber_health, target.tamper_signal
    threat = injector.create_cyber_attack(target.id, CyberAttackSubtype.RANSOMWARE, severity=0.7)
    assert threat.type == ThreatType.CYBER_ATTACK
    assert threat.subtype == CyberAttackSubtype.RANSOMWARE
    assert threat.affected_nodes[0] == target.id
    assert target.cyber_health < cyber_health
    assert target.tamper_signal > tamper
    assert injector.is_node_under_threat(target.id)


def test_expiry_reverts_threat_deltas(injector, graph, clock):
    target = graph.get_all_nodes()[0]
    threat = injector.create_threat("cyber_attack", target=target.id, severity=0.7, duration_seconds=60)
    before = {nid: {m: getattr(graph.get_node_by_id(nid), m) - threat.applied_deltas[nid].get(m, 0.0)
                    for m in CYBER_METRICS}
              for nid in threat.affected_nodes}

    assert injector.expire_threats() == []
    clock.advance(seconds=61)
    expired = injector.expire_threats()

    assert expired == [threat]
    assert not threat.active
    for nid, metrics in before.items():
        node = graph.get_node_by_id(nid)
        for metric, value in metrics.items():
            assert getattr(node, metric) == pytest.approx(value)
    assert not injector.is_node_under_threat(target.id)


def test_end_threat_reverts_and_unknown_raises(injector, graph):
    target = graph.get_all_nodes()[1]
    load = target.load_ratio
    threat = injector.create_overload([target.id, "node_9999"], severity=0.5)
    assert threat.affected_nodes == [target.id]
    injector.end_threat(threat.id)
    assert target.load_ratio == pytest.approx(load)
    with pytest.raises(ThreatNotFoundError):
        injector.end_threat("threat_99999")


def test_region_threat_samples_region(injector, graph):
    region = _largest_region(graph)
    in_region = graph.get_nodes_by_region(region)
    threat = injector.create_threat("weather_stress", region=region, severity=0.5)
    assert len(threat.affected_nodes) == max(1, int(len(in_region) * 0.5))
    assert all(graph.get_node_by_id(nid).region == region for nid in threat.affected_nodes)


def test_severe_region_threat_opens_incident(injector, graph, context):
    region = _largest_region(graph)
    threat = injector.create_threat("physical_intrusion", region=region, severity=0.8)
    assert len(threat.affected_nodes) >= 3
    incidents = context.get_open_incidents()
    assert len(incidents) == 1
    assert incidents[0].threat_id == threat.id
    assert incidents[0].threat_type == ThreatType.PHYSICAL_INTRUSION


def test_telecom_outage_targets_communication_assets(injector, graph):
    region = _largest_region(graph)
    threat = injector.create_telecom_outage(region, severity=0.6)
    for nid in threat.affected_nodes:
        node = graph.get_node_by_id(nid)
        assert node.region == region
        assert node.category in TELECOM_OUTAGE_CATEGORIES


def test_sensor_spoof_offsets_reading(injector, graph):
    target = graph.get_all_nodes()[2]
    temperature = target.temperature
    injector.create_sensor_spoof(target.id, "temperature", severity=0.5)
    assert target.temperature > temperature
    with pytest.raises(ValidationError):
        injector.create_sensor_spoof(target.id, "humidity")


def test_isolated_nodes_are_not_perturbed(injector, graph):
    target = graph.get_all_nodes()[0]
    graph.isolate_node(target.id)
    cyber_health = target.cyber_health
    threat = injector.create_threat("cyber_attack", target=target.id, severity=0.9)
    assert target.id not in threat.affected_nodes
    assert target.cyber_health == cyber_health


def test_drift_bias_keeps_pushing_affected_nodes(injector, graph):
    target = graph.get_all_nodes()[0]
    injector.create_threat("cyber_attack", target=target.id, severity=0.5)
    tamper = target.tamper_signal
    injector.apply_drift_bias()
    assert target.tamper_signal > tamper


def test_threat_exposure_is_direct_severity_for_affected_node(injector, graph, context):
    target = graph.get_all_nodes()[0]
    assert threat_exposure(context, target) == 0.0
    injector.create_threat("weather_stress", target=target.id, severity=0.6)
    assert threat_exposure(context, target) == pytest.approx(0.6)


def test_end_all_threats(injector, graph):
    injector.create_threat("overload", target=graph.get_all_nodes()[0].id, severity=0.3)
    injector.create_threat("weather_stress", severity=0.3)
    assert injector.end_all_threats() == 2
    assert injector.get_active_threats() == []


def test_region_exposure_counts_share_of_region_under_threat(injector, graph):
    region = _largest_region(graph)
    size = len(graph.get_nodes_by_region(region))
    assert injector.region_exposure(region) == 0.0

    threat = injector.create_threat("weather_stress", region=region, severity=0.5)

    assert injector.region_exposure(region) == pytest.approx(0.5 * len(threat.affected_nodes) / size)
    for other in graph.regions():
        if other != region:
            assert injector.region_exposure(other) == 0.0
    with pytest.raises(ValidationError):
        injector.region_exposure("Atlantis")
