"""
Shared simulation state.

One SimulationContext owns the twin graph, the RNG and every registry
(threats, predictions, recommendations, incidents, cascades, alerts). Components
receive the context instead of reaching for module globals, and all of them
serialize mutations through its single re-entrant lock.
"""

import random
import threading
from collections import defaultdict, deque
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Set

from .common import IdGenerator, LogCategory, SimulationLog, SimulationSettings, logger, utc_now
from .digital_twin.graph import TwinGraph
from .digital_twin.models import (
    ActiveAlert,
    CascadeEvent,
    EnhancedPrediction,
    Incident,
    IncidentStatus,
    MitigationRecommendation,
    RiskScore,
    ThreatSimulation,
)
from .predictive.accuracy import AccuracyTracker

RISK_HISTORY_LENGTH = 20


class SimulationContext:
    """Everything one simulation run owns, behind one lock."""

    def __init__(self, settings: Optional[SimulationSettings] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 log: Optional[SimulationLog] = None):
        self.settings = settings or SimulationSettings()
        self.clock = clock or utc_now
        self.log = log or SimulationLog()
        self.lock = threading.RLock()
        self.graph = TwinGraph()
        self.rng = random.Random(self.settings.seed)
        self.ids = IdGenerator()
        self.threats: Dict[str, ThreatSimulation] = {}
        self.predictions: Dict[str, EnhancedPrediction] = {}
        self.recommendations: Dict[str, MitigationRecommendation] = {}
        self.incidents: Dict[str, Incident] = {}
        self.cascades: Dict[str, CascadeEvent] = {}
        self.alerts: Dict[str, ActiveAlert] = {}
        self.alert_cooldowns: Dict[str, datetime] = {}
        self.alerted_cascades: Set[str] = set()
        self.accuracy = AccuracyTracker()
        self.risk_history: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=RISK_HISTORY_LENGTH))
        self.latest_scores: Dict[str, RiskScore] = {}
        self.tick_count = 0

    def now(self) -> datetime:
        return self.clock()

    @property
    def hour_of_day(self) -> int:
        return int(self.tick_count * self.settings.tick_hours) % 24

    def initialize(self, node_count: Optional[int] = None, seed: Optional[int] = None):
        """Build a fresh twin. Same seed and node count give the same starting state."""
        with self.lock:
            if node_count is not None:
                self.settings.node_count = node_count
            if seed is not None:
                self.settings.seed = seed
            self._clear_registries()
            self.graph.initialize(self.settings.node_count, self.settings.seed, self.now())
            self.log.system(LogCategory.CONFIG,
                            f"Initialized twin with {self.settings.node_count} nodes",
                            {"seed": self.settings.seed})

    def reset(self):
        """Discard all state; the graph must be initialized again before use."""
        with self.lock:
            self._clear_registries()
            self.graph.reset()
            logger.info("Simulation context reset")

    def dispose(self):
        with self.lock:
            self.reset()
            self.log.clear()

    def _clear_registries(self):
        self.rng = random.Random(self.settings.seed)
        self.ids.reset()
        self.threats.clear()
        self.predictions.clear()
        self.recommendations.clear()
        self.incidents.clear()
        self.cascades.clear()
        self.alerts.clear()
        self.alert_cooldowns.clear()
        self.alerted_cascades.clear()
        self.accuracy.reset()
        self.risk_history.clear()
        self.latest_scores.clear()
        self.tick_count = 0

    # -------------------------------------------------------------------------
    # Incidents
    # -------------------------------------------------------------------------

    def open_incident(self, severity: float, affected_nodes: List[str], summary: str,
                      root_cause: str, **links) -> Incident:
        with self.lock:
            incident = Incident(
                id=self.ids.next("incident"),
                started_at=self.now(),
                severity=severity,
                affected_nodes=list(affected_nodes),
                summary=summary,
                root_cause=root_cause,
                **links,
            )
            self.incidents[incident.id] = incident
            self.log.simulation(LogCategory.INCIDENT, summary,
                                {"incident_id": incident.id, "affected": len(affected_nodes)})
            return incident

    def get_open_incidents(self) -> List[Incident]:
        with self.lock:
            return [i for i in self.incidents.values() if i.status == IncidentStatus.OPEN]
