#!/usr/bin/env python3
"""
Sentinel Grid - Simulation Orchestrator
=======================================

Drives the closed risk loop on a fixed interval:

    threat bias and spread -> twin drift -> risk rescoring ->
    prediction sweep and regeneration -> alert evaluation ->
    threat expiry -> state push -> periodic snapshot

The orchestrator is a Stopped/Running state machine around one
SimulationContext. Every tick holds the context lock for its whole duration,
so operator actions (threats, cascades, mitigations) interleave with ticks
but never observe a half-applied one.

Usage:
    python -m sentinel_grid.simulation --ticks 24
    python -m sentinel_grid.simulation --ticks 12 --threat cyber_attack --target node_0003
    python -m sentinel_grid.simulation --ticks 12 --cascade node_0001 --auto-mitigate
    python -m sentinel_grid.simulation --scenario tpl-line-outage --level high
"""

import argparse
import asyncio
import copy
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Union, runtime_checkable

from .common import LogCategory, SimulationSettings, get_settings, logger, to_payload
from .context import SimulationContext
from .alerting.monitor import AlertMonitor, print_alert_report
from .cascading_failure.simulation import CascadeEngine, print_cascade_report
from .digital_twin.graph import MitigationParams
from .digital_twin.models import (
    FAILED_STATUSES,
    ActionType,
    ActiveAlert,
    AlertStatus,
    BatchMitigationResult,
    CascadeEvent,
    CyberStatus,
    DependencyEdge,
    DigitalTwinNode,
    EnhancedPrediction,
    FailureMode,
    MitigationResult,
    NodeStatus,
    RecommendationStatus,
    SystemState,
    ThreatSimulation,
    ThreatType,
)
from .exceptions import InvalidOperationError, ValidationError
from .mitigation.advisor import MitigationAdvisor, MitigationExecutor, parse_action_type
from .predictive.analysis import DEFAULT_PREDICTION_LIMIT, RiskScorer
from .storage import HttpSnapshotStore, SnapshotError, SnapshotStore
from .threats.scenarios import ScenarioRun, ScenarioRunner, print_scenario_templates
from .threats.simulator import ThreatInjector, parse_threat_type


class RunState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@runtime_checkable
class Notifier(Protocol):
    """Receives the system state once per tick."""

    def notify(self, state: SystemState):
        ...


class SimulationOrchestrator:
    """
    Owns the tick loop and wires every component to one context.

    Components are exposed as attributes (twin, threats, scorer, cascades,
    advisor, executor, alerts, scenarios) for direct use by operators and
    transports.
    """

    def __init__(self, context: Optional[SimulationContext] = None,
                 notifier: Optional[Notifier] = None,
                 store: Optional[SnapshotStore] = None):
        self.context = context or SimulationContext(get_settings())
        self.threats = ThreatInjector(self.context)
        self.scorer = RiskScorer(self.context)
        self.cascades = CascadeEngine(self.context)
        self.executor = MitigationExecutor(self.context)
        self.advisor = MitigationAdvisor(self.context, self.executor)
        self.alerts = AlertMonitor(self.context)
        self.scenarios = ScenarioRunner(self.context, self.threats, self.cascades)
        self.notifier = notifier
        self.store = store
        self.state = RunState.STOPPED
        self._task: Optional[asyncio.Task] = None

    @property
    def twin(self):
        return self.context.graph

    @property
    def settings(self) -> SimulationSettings:
        return self.context.settings

    @property
    def is_running(self) -> bool:
        return self.state == RunState.RUNNING

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self, node_count: Optional[int] = None, seed: Optional[int] = None):
        """Build the twin and give every node an initial risk score."""
        with self.context.lock:
            self.context.initialize(node_count=node_count, seed=seed)
            for node in self.twin.get_all_nodes():
                self.scorer.rescore_node(node)

    def start(self):
        """
        Begin ticking on the running event loop.

        Raises:
            InvalidOperationError: Already running
            RuntimeError: Called outside a running event loop
        """
        with self.context.lock:
            if self.state == RunState.RUNNING:
                raise InvalidOperationError("Simulation is already running")
            if not self.twin.is_initialized:
                self.initialize()
            loop = asyncio.get_running_loop()
            self.state = RunState.RUNNING
            self._task = loop.create_task(self._run())
            self.context.log.system(LogCategory.CONFIG, "Simulation started",
                                    {"interval": self.settings.tick_interval})

    def stop(self):
        """Stop ticking. Waits for an in-flight tick; calling it when stopped is a no-op."""
        with self.context.lock:
            if self.state != RunState.RUNNING:
                return
            self.state = RunState.STOPPED
            task, self._task = self._task, None
            self.context.log.system(LogCategory.CONFIG, "Simulation stopped")
        if task is not None and not task.done():
            task.get_loop().call_soon_threadsafe(task.cancel)

    def reset(self):
        """
        Discard all simulation state.

        Raises:
            InvalidOperationError: The simulation is running
        """
        with self.context.lock:
            if self.state == RunState.RUNNING:
                raise InvalidOperationError("Stop the simulation before resetting")
            self.context.reset()
            self.context.log.system(LogCategory.CONFIG, "Simulation reset")

    def dispose(self):
        self.stop()
        self.context.dispose()

    async def _run(self):
        while self.state == RunState.RUNNING:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Tick failed: {e}")
            await asyncio.sleep(self.settings.tick_interval)

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def tick(self) -> SystemState:
        """
        Advance the simulation by one step.

        A node whose rescoring fails keeps its pre-tick metrics and gets no
        prediction this tick; the rest of the tick carries on.

        Raises:
            InvalidOperationError: The twin has not been initialized
        """
        with self.context.lock:
            if not self.twin.is_initialized:
                raise InvalidOperationError("Initialize the simulation before ticking")

            ctx = self.context
            ctx.tick_count += 1
            now = ctx.now()

            before: Dict[str, DigitalTwinNode] = {n.id: copy.copy(n) for n in self.twin.get_all_nodes()}
            threat_marks = {t.id: (set(t.affected_nodes), copy.deepcopy(t.applied_deltas))
                            for t in self.threats.get_active_threats()}

            self.threats.apply_drift_bias()
            self.threats.propagate_threats()
            self.twin.tick(ctx.rng, ctx.hour_of_day, self.settings.tick_hours, now)

            failed: Set[str] = set()
            for node in self.twin.get_all_nodes():
                try:
                    self.scorer.rescore_node(node)
                except Exception as e:
                    logger.error(f"Rescoring {node.id} failed, keeping pre-tick state: {e}")
                    self._restore_node(before[node.id], threat_marks)
                    failed.add(node.id)

            for node in self.twin.get_all_nodes():
                newly_failed = (node.status in FAILED_STATUSES
                                and before[node.id].status not in FAILED_STATUSES)
                if newly_failed and not self.scorer.has_active_prediction(node.id):
                    self.scorer.record_missed_failure(node)

            self.scorer.sweep_predictions(now)
            self.scorer.generate_all_predictions(skip=failed)
            self.alerts.evaluate(now)
            self.threats.expire_threats(now)

            state = self.get_system_state()

        self._notify(state)
        self._maybe_snapshot()
        return state

    def _restore_node(self, snapshot: DigitalTwinNode, threat_marks: Dict[str, tuple]):
        """Put a node back to its pre-tick copy, dropping this tick's threat deltas on it."""
        self.twin.restore_node(snapshot)
        for threat in self.threats.get_active_threats():
            affected, deltas = threat_marks.get(threat.id, (set(), {}))
            if snapshot.id in deltas:
                threat.applied_deltas[snapshot.id] = deltas[snapshot.id]
            else:
                threat.applied_deltas.pop(snapshot.id, None)
            if snapshot.id not in affected and snapshot.id in threat.affected_nodes:
                threat.affected_nodes.remove(snapshot.id)

    def run_ticks(self, count: int) -> SystemState:
        state = self.get_system_state()
        for _ in range(count):
            state = self.tick()
        return state

    def _notify(self, state: SystemState):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(state)
        except Exception as e:
            logger.warning(f"State notification failed: {e}")

    def _maybe_snapshot(self):
        every = self.settings.snapshot_every
        if self.store is None or every <= 0 or self.context.tick_count % every:
            return
        snapshot_id = f"tick_{self.context.tick_count:06d}"
        try:
            self.store.insert(snapshot_id, self.snapshot())
        except SnapshotError as e:
            logger.warning(f"Snapshot {snapshot_id} not stored: {e}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_all_nodes(self) -> List[DigitalTwinNode]:
        with self.context.lock:
            return self.twin.get_all_nodes()

    def get_node_by_id(self, node_id: str) -> Optional[DigitalTwinNode]:
        with self.context.lock:
            return self.twin.get_node_by_id(node_id)

    def get_nodes_by_region(self, region: str) -> List[DigitalTwinNode]:
        with self.context.lock:
            return self.twin.get_nodes_by_region(region)

    def get_nodes_by_category(self, category: str) -> List[DigitalTwinNode]:
        with self.context.lock:
            return self.twin.get_nodes_by_category(category)

    def get_critical_nodes(self) -> List[DigitalTwinNode]:
        with self.context.lock:
            return self.twin.get_critical_nodes()

    def get_compromised_nodes(self) -> List[DigitalTwinNode]:
        with self.context.lock:
            return self.twin.get_compromised_nodes()

    def get_all_edges(self) -> List[DependencyEdge]:
        with self.context.lock:
            return self.twin.get_all_edges()

    def get_neighbors(self, node_id: str) -> List[DigitalTwinNode]:
        with self.context.lock:
            return self.twin.get_neighbors(node_id)

    def get_dependencies(self, node_id: str) -> List[DigitalTwinNode]:
        with self.context.lock:
            return self.twin.get_dependencies(node_id)

    def get_dependents(self, node_id: str) -> List[DigitalTwinNode]:
        with self.context.lock:
            return self.twin.get_dependents(node_id)

    # -------------------------------------------------------------------------
    # Mutators
    # -------------------------------------------------------------------------

    def apply_threat_to_nodes(self, node_ids: Iterable[str], threat_type: Union[str, ThreatType],
                              severity: float) -> Dict[str, Dict[str, float]]:
        """One-off perturbation outside any registered threat; nothing reverts it."""
        if not 0.0 <= severity <= 1.0:
            raise ValidationError(f"Severity must be in [0, 1], got {severity}")
        threat_type = parse_threat_type(threat_type)
        with self.context.lock:
            return self.twin.apply_threat_to_nodes(node_ids, threat_type, severity)

    def create_threat(self, threat_type, **kwargs) -> ThreatSimulation:
        return self.threats.create_threat(threat_type, **kwargs)

    def end_all_threats(self) -> int:
        return self.threats.end_all_threats()

    def trigger_cascade(self, origin_id: str, severity: float) -> CascadeEvent:
        return self.cascades.trigger_cascade(origin_id, severity)

    def apply_mitigation_to_node(self, node_id: str, action_type: Union[str, ActionType],
                                 params: Optional[MitigationParams] = None) -> DigitalTwinNode:
        """Physical effect of an action only; risk and recommendations are untouched."""
        with self.context.lock:
            return self.twin.apply_mitigation_to_node(node_id, parse_action_type(action_type), params)

    def execute_mitigation(self, node_id: str, action_type, params=None, operator=None) -> MitigationResult:
        return self.executor.execute_mitigation(node_id, action_type, params, operator)

    def execute_batch_mitigation(self, node_ids, action_type, params=None, operator=None) -> BatchMitigationResult:
        return self.executor.execute_batch_mitigation(node_ids, action_type, params, operator)

    def auto_mitigate_critical_nodes(self) -> BatchMitigationResult:
        return self.executor.auto_mitigate_critical_nodes()

    def run_scenario(self, template_id: str, level: Optional[str] = None,
                     horizon_hours: Optional[float] = None) -> ScenarioRun:
        return self.scenarios.run_scenario(template_id, level, horizon_hours)

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    def get_alerts(self, status: Union[str, AlertStatus, None] = None) -> List[ActiveAlert]:
        return self.alerts.get_alerts(status)

    def acknowledge_alert(self, alert_id: str, acknowledged_by: Optional[str] = None) -> bool:
        return self.alerts.acknowledge_alert(alert_id, acknowledged_by)

    def resolve_alert(self, alert_id: str) -> bool:
        return self.alerts.resolve_alert(alert_id)

    # -------------------------------------------------------------------------
    # Predictions
    # -------------------------------------------------------------------------

    def generate_prediction(self, node_id: str) -> Optional[EnhancedPrediction]:
        return self.scorer.generate_prediction(node_id)

    def generate_all_predictions(self, limit: int = DEFAULT_PREDICTION_LIMIT) -> List[EnhancedPrediction]:
        return self.scorer.generate_all_predictions(limit)

    def record_prediction_outcome(self, prediction_id: str, was_accurate: bool, **kwargs) -> bool:
        return self.scorer.record_prediction_outcome(prediction_id, was_accurate, **kwargs)

    def get_accuracy_stats(self, failure_type: Optional[FailureMode] = None) -> Dict:
        return self.scorer.get_accuracy_stats(failure_type)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def get_system_state(self) -> SystemState:
        """Aggregate view of the simulation; valid in any run state."""
        with self.context.lock:
            nodes = self.twin.get_all_nodes()
            counts = {status: 0 for status in NodeStatus}
            for node in nodes:
                counts[node.status] += 1
            total = len(nodes)
            return SystemState(
                total_nodes=total,
                online=counts[NodeStatus.ONLINE],
                degraded=counts[NodeStatus.DEGRADED],
                critical=counts[NodeStatus.CRITICAL],
                offline=counts[NodeStatus.OFFLINE],
                isolated=counts[NodeStatus.ISOLATED],
                compromised=sum(1 for n in nodes if n.cyber_status == CyberStatus.COMPROMISED),
                average_health=sum(n.health for n in nodes) / total if total else 0.0,
                average_risk=sum(n.risk_score for n in nodes) / total if total else 0.0,
                max_risk=max((n.risk_score for n in nodes), default=0.0),
                active_threats=sum(1 for t in self.context.threats.values() if t.active),
                active_predictions=len(self.scorer.get_active_predictions()),
                pending_recommendations=sum(1 for r in self.context.recommendations.values()
                                            if r.status == RecommendationStatus.PENDING),
                open_incidents=len(self.context.get_open_incidents()),
                active_alerts=len(self.alerts.get_active_alerts()),
                running=self.is_running,
                tick_count=self.context.tick_count,
            )

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe dump of the current simulation state."""
        with self.context.lock:
            return {
                "tick": self.context.tick_count,
                "timestamp": self.context.now().isoformat(),
                "state": to_payload(self.get_system_state()),
                "nodes": to_payload(self.twin.get_all_nodes()),
                "edges": to_payload(self.twin.get_all_edges()),
                "threats": to_payload([t for t in self.context.threats.values() if t.active]),
                "predictions": to_payload(self.scorer.get_active_predictions()),
                "incidents": to_payload(self.context.get_open_incidents()),
                "alerts": to_payload(self.alerts.get_active_alerts()),
            }


# =============================================================================
# Reporting
# =============================================================================

def print_system_report(orchestrator: SimulationOrchestrator, top: int = 10):
    """Print system status, riskiest nodes and active predictions."""
    state = orchestrator.get_system_state()
    nodes: List[DigitalTwinNode] = sorted(orchestrator.twin.get_all_nodes(),
                                          key=lambda n: n.risk_score, reverse=True)

    print("\n" + "=" * 80)
    print(f" SENTINEL GRID STATUS - tick {state.tick_count}")
    print("=" * 80)

    print("\n SYSTEM SUMMARY")
    print("-" * 80)
    print(f" Nodes:            {state.total_nodes}")
    print(f" Online/Degraded:  {state.online} / {state.degraded}")
    print(f" Critical/Offline: {state.critical} / {state.offline}")
    print(f" Isolated:         {state.isolated}")
    print(f" Cyber Compromised:{state.compromised:>3}")
    print(f" Average Health:   {state.average_health:.1%}")
    print(f" Average Risk:     {state.average_risk:.3f} (max {state.max_risk:.3f})")
    print(f" Active Threats:   {state.active_threats}")
    print(f" Open Incidents:   {state.open_incidents}")
    print(f" Active Alerts:    {state.active_alerts}")

    print(f"\n HIGHEST RISK NODES (top {top}):")
    print("-" * 80)
    print(f" {'Node':<11} {'Name':<32} {'Status':<10} {'Risk':>6} {'Health':>7}")
    for node in nodes[:top]:
        print(f" {node.id:<11} {node.name[:32]:<32} {node.status.value:<10} "
              f"{node.risk_score:>6.3f} {node.health:>7.1%}")

    predictions = orchestrator.scorer.get_active_predictions()
    print(f"\n ACTIVE PREDICTIONS ({len(predictions)}):")
    print("-" * 80)
    for prediction in predictions[:top]:
        print(f" {prediction.node_id:<11} {prediction.prediction_type.value:<22} "
              f"p={prediction.probability:.2f} in {prediction.hours_to_event:5.1f}h "
              f"-> {prediction.reasoning.recommended_mitigation}")

    print_alert_report(orchestrator.alerts, top)

    stats = orchestrator.scorer.get_accuracy_stats()
    print("\n PREDICTION ACCURACY:")
    print("-" * 80)
    print(f" Resolved: {stats['total']}  Accurate: {stats['accurate']}  Missed: {stats['missed']}")
    print(f" Precision: {stats['precision']:.1%}  Recall: {stats['recall']:.1%}")
    print("\n" + "=" * 80)


def main():
    parser = argparse.ArgumentParser(description="Sentinel Grid Simulation")
    parser.add_argument("--ticks", type=int, default=12, help="Number of ticks to run")
    parser.add_argument("--nodes", type=int, help="Number of nodes")
    parser.add_argument("--seed", type=int, help="Topology seed")
    parser.add_argument("--threat", help="Inject a threat of this type before running")
    parser.add_argument("--target", help="Threat target node")
    parser.add_argument("--region", help="Threat target region")
    parser.add_argument("--severity", type=float, default=0.7, help="Threat or cascade severity")
    parser.add_argument("--cascade", help="Trigger a cascade from this node after running")
    parser.add_argument("--auto-mitigate", action="store_true",
                        help="Auto-mitigate critical nodes at the end")
    parser.add_argument("--scenario", help="Run this scenario template before running")
    parser.add_argument("--level", help="Scenario severity level (low, medium, high, critical)")
    parser.add_argument("--list-scenarios", action="store_true", help="List scenario templates and exit")
    parser.add_argument("--snapshot-url", help="Snapshot service URL")
    args = parser.parse_args()

    if args.list_scenarios:
        print_scenario_templates()
        return

    settings = get_settings()
    store = None
    snapshot_url = args.snapshot_url or settings.snapshot_url
    if snapshot_url:
        store = HttpSnapshotStore(snapshot_url, settings.api_key)

    orchestrator = SimulationOrchestrator(SimulationContext(settings), store=store)
    orchestrator.initialize(node_count=args.nodes, seed=args.seed)

    if args.threat:
        orchestrator.threats.create_threat(args.threat, target=args.target, region=args.region,
                                           severity=args.severity)

    if args.scenario:
        run = orchestrator.run_scenario(args.scenario, args.level)
        print(f"Scenario '{run.name}' at {run.level} ({run.severity:.2f}): "
              f"threat {run.threat_id or '-'}, {len(run.cascade_event_ids)} cascades")

    print(f"Running {args.ticks} ticks...")
    orchestrator.run_ticks(args.ticks)

    if args.cascade:
        event = orchestrator.cascades.trigger_cascade(args.cascade, args.severity)
        print_cascade_report(event, orchestrator.context)

    if args.auto_mitigate:
        batch = orchestrator.executor.auto_mitigate_critical_nodes()
        print(f"\nAuto-mitigation: {batch.success_count} applied, {batch.failed_count} failed, "
              f"risk reduced by {batch.total_risk_reduction:.2f}")

    print_system_report(orchestrator)


if __name__ == "__main__":
    main()
