import asyncio
import json

import pytest

from sentinel_grid.common import SimulationSettings
from sentinel_grid.context import SimulationContext
from sentinel_grid.digital_twin.models import NodeStatus, SystemState
from sentinel_grid.exceptions import InvalidOperationError
from sentinel_grid.broadcast import WebSocketBroadcaster
from sentinel_grid.simulation import Notifier, SimulationOrchestrator
from sentinel_grid.storage import HttpSnapshotStore, InMemorySnapshotStore, SnapshotError, SnapshotStore


class RecordingNotifier:
    def __init__(self):
        self.states = []

    def notify(self, state):
        self.states.append(state)


class BrokenNotifier:
    def notify(self, state):
        raise RuntimeError("dashboard unreachable")


class BrokenStore(SnapshotStore):
    def insert(self, snapshot_id, payload):
        raise SnapshotError("service unavailable")


def test_tick_requires_initialized_twin(settings, clock):
    orchestrator = SimulationOrchestrator(SimulationContext(settings, clock=clock))
    with pytest.raises(InvalidOperationError):
        orchestrator.tick()


def test_tick_returns_consistent_state(orchestrator):
    state = orchestrator.tick()
    assert isinstance(state, SystemState)
    assert state.tick_count == 1
    assert state.total_nodes == 60
    assert state.online + state.degraded + state.critical + state.offline + state.isolated == 60
    assert 0.0 <= state.average_risk <= state.max_risk <= 1.0
    assert not state.running


def test_same_seed_gives_same_run(settings, clock):
    runs = []
    for _ in range(2):
        orch = SimulationOrchestrator(SimulationContext(
            SimulationSettings(seed=settings.seed, node_count=40, snapshot_every=0), clock=clock))
        orch.initialize()
        orch.run_ticks(5)
        runs.append([(n.id, n.risk_score, n.health, n.status) for n in orch.twin.get_all_nodes()])
    assert runs[0] == runs[1]


def test_failed_rescore_keeps_pre_tick_state(orchestrator, monkeypatch):
    bad = orchestrator.twin.get_all_nodes()[0]
    load, temperature = bad.load_ratio, bad.temperature
    rescore = orchestrator.scorer.rescore_node

    def flaky(node):
        if node.id == bad.id:
            raise RuntimeError("sensor feed corrupted")
        return rescore(node)

    monkeypatch.setattr(orchestrator.scorer, "rescore_node", flaky)
    state = orchestrator.tick()

    restored = orchestrator.twin.get_node_by_id(bad.id)
    assert restored.load_ratio == load
    assert restored.temperature == temperature
    assert state.tick_count == 1
    history = orchestrator.context.risk_history
    assert len(history[bad.id]) == 1
    assert len(history[orchestrator.twin.get_all_nodes()[1].id]) == 2


def test_scoring_error_never_escapes_tick(settings, clock, monkeypatch):
    notifier = RecordingNotifier()
    orchestrator = SimulationOrchestrator(SimulationContext(settings, clock=clock), notifier=notifier)
    orchestrator.initialize()
    nodes = orchestrator.twin.get_all_nodes()
    bad, other = nodes[0], nodes[1]
    threat = orchestrator.threats.create_threat("overload", target=other.id, severity=0.5, duration_seconds=60)
    score = orchestrator.scorer.calculate_risk_score

    def flaky(node):
        if getattr(node, "id", node) == bad.id:
            raise RuntimeError("sensor feed corrupted")
        return score(node)

    monkeypatch.setattr(orchestrator.scorer, "calculate_risk_score", flaky)
    clock.advance(seconds=61)
    state = orchestrator.tick()

    assert state.tick_count == 1
    assert not threat.active
    assert [s.tick_count for s in notifier.states] == [1]
    assert not orchestrator.scorer.has_active_prediction(bad.id)
    assert len(orchestrator.context.risk_history[other.id]) == 2


def test_failed_rescore_drops_this_ticks_threat_bias(orchestrator, monkeypatch):
    bad = orchestrator.twin.get_all_nodes()[0]
    threat = orchestrator.threats.create_cyber_attack(bad.id, "credential_theft", severity=0.7)
    tamper = orchestrator.twin.get_node_by_id(bad.id).tamper_signal
    deltas = dict(threat.applied_deltas[bad.id])
    rescore = orchestrator.scorer.rescore_node

    def flaky(node):
        if node.id == bad.id:
            raise RuntimeError("sensor feed corrupted")
        return rescore(node)

    monkeypatch.setattr(orchestrator.scorer, "rescore_node", flaky)
    orchestrator.tick()

    assert orchestrator.twin.get_node_by_id(bad.id).tamper_signal == tamper
    assert threat.applied_deltas[bad.id] == deltas
    assert bad.id in threat.affected_nodes


def test_notifier_and_store_protocols():
    assert isinstance(RecordingNotifier(), Notifier)
    assert isinstance(WebSocketBroadcaster(), Notifier)
    assert isinstance(InMemorySnapshotStore(), SnapshotStore)
    assert isinstance(HttpSnapshotStore("http://snapshots.local"), SnapshotStore)
    assert not isinstance(object(), Notifier)
    assert not isinstance(object(), SnapshotStore)


def test_tick_raises_alerts_for_new_cascades(orchestrator):
    twin = orchestrator.twin
    origin_id = next(n.id for n in twin.get_all_nodes() if twin.outgoing_edges(n.id))
    event = orchestrator.trigger_cascade(origin_id, 0.9)
    state = orchestrator.tick()

    cascade_alerts = [a for a in orchestrator.get_alerts() if a.cascade_event_id == event.id]
    assert len(cascade_alerts) == 1
    assert state.active_alerts >= 1
    assert orchestrator.acknowledge_alert(cascade_alerts[0].alert_id, "operator")
    assert orchestrator.resolve_alert(cascade_alerts[0].alert_id)
    orchestrator.tick()
    assert [a for a in orchestrator.get_alerts() if a.cascade_event_id == event.id] == cascade_alerts


def test_run_scenario_through_orchestrator(orchestrator):
    run = orchestrator.run_scenario("tpl-generator-loss", "low")
    assert run.severity == 0.4
    assert run.threat_id in orchestrator.context.threats
    assert len(run.cascade_event_ids) == 1
    assert orchestrator.tick().active_threats >= 1


def test_notifier_called_every_tick(settings, clock):
    notifier = RecordingNotifier()
    orchestrator = SimulationOrchestrator(SimulationContext(settings, clock=clock), notifier=notifier)
    orchestrator.initialize()
    orchestrator.run_ticks(3)
    assert [s.tick_count for s in notifier.states] == [1, 2, 3]


def test_notifier_errors_do_not_stop_ticks(settings, clock):
    orchestrator = SimulationOrchestrator(SimulationContext(settings, clock=clock), notifier=BrokenNotifier())
    orchestrator.initialize()
    assert orchestrator.run_ticks(2).tick_count == 2


def test_periodic_snapshots(clock):
    settings = SimulationSettings(seed=42, node_count=30, snapshot_every=2)
    store = InMemorySnapshotStore()
    orchestrator = SimulationOrchestrator(SimulationContext(settings, clock=clock), store=store)
    orchestrator.initialize()
    orchestrator.run_ticks(5)

    assert store.list_ids() == ["tick_000002", "tick_000004"]
    snapshot = store.get("tick_000004")
    assert snapshot["tick"] == 4
    assert len(snapshot["nodes"]) == 30
    assert snapshot["state"]["tick_count"] == 4
    json.dumps(snapshot)


def test_snapshot_failures_are_contained(clock):
    settings = SimulationSettings(seed=42, node_count=30, snapshot_every=1)
    orchestrator = SimulationOrchestrator(SimulationContext(settings, clock=clock), store=BrokenStore())
    orchestrator.initialize()
    assert orchestrator.run_ticks(2).tick_count == 2


def test_threats_expire_during_ticks(orchestrator, clock):
    node = orchestrator.twin.get_all_nodes()[0]
    threat = orchestrator.threats.create_threat("overload", target=node.id, severity=0.5, duration_seconds=60)
    orchestrator.tick()
    assert threat.active
    clock.advance(seconds=61)
    state = orchestrator.tick()
    assert not threat.active
    assert state.active_threats == 0


def test_unpredicted_failure_counts_as_missed(orchestrator):
    node = next(n for n in orchestrator.twin.get_all_nodes() if n.status == NodeStatus.ONLINE)
    assert not orchestrator.scorer.has_active_prediction(node.id)
    node.health = 0.05
    orchestrator.tick()
    assert node.status == NodeStatus.OFFLINE
    assert orchestrator.scorer.get_accuracy_stats()["missed"] >= 1


def test_start_stop_and_reset_rules(orchestrator):
    async def scenario():
        orchestrator.start()
        assert orchestrator.is_running
        with pytest.raises(InvalidOperationError):
            orchestrator.start()
        with pytest.raises(InvalidOperationError):
            orchestrator.reset()
        await asyncio.sleep(0)
        orchestrator.stop()
        orchestrator.stop()
        await asyncio.sleep(0)

    asyncio.run(scenario())
    assert not orchestrator.is_running
    assert orchestrator.context.tick_count >= 1

    orchestrator.reset()
    assert not orchestrator.twin.is_initialized
    assert orchestrator.get_system_state().total_nodes == 0


def test_reset_then_initialize_restores_seeded_twin(orchestrator):
    first = [(n.id, n.type, n.region) for n in orchestrator.twin.get_all_nodes()]
    orchestrator.run_ticks(2)
    orchestrator.reset()
    orchestrator.initialize()
    assert [(n.id, n.type, n.region) for n in orchestrator.twin.get_all_nodes()] == first
    assert orchestrator.context.tick_count == 0
    assert orchestrator.context.predictions == {}


def test_default_grid_is_reproducible(clock):
    results = []
    for _ in range(2):
        orch = SimulationOrchestrator(SimulationContext(
            SimulationSettings(seed=12345, node_count=150, snapshot_every=0), clock=clock))
        orch.initialize()
        state = orch.tick()
        results.append((state.total_nodes, state.max_risk, state.average_risk))
    assert results[0] == results[1]
    assert results[0][0] == 150


def test_facade_queries_and_actions(orchestrator):
    node = orchestrator.get_all_nodes()[0]
    assert orchestrator.get_node_by_id(node.id) is node
    assert node in orchestrator.get_nodes_by_region(node.region)
    assert node in orchestrator.get_nodes_by_category(node.category)
    assert orchestrator.get_all_edges()

    deltas = orchestrator.apply_threat_to_nodes([node.id], "overload", 0.5)
    assert list(deltas) == [node.id]
    assert orchestrator.get_system_state().active_threats == 0

    orchestrator.create_threat("overload", target=node.id, severity=0.4)
    assert orchestrator.end_all_threats() == 1

    assert orchestrator.apply_mitigation_to_node(node.id, "dispatch_maintenance") is node
    assert orchestrator.execute_mitigation(node.id, "dispatch_maintenance").success
    snapshot = orchestrator.snapshot()
    assert snapshot["tick"] == 0
    json.dumps(snapshot)
