#!/usr/bin/env python3
"""
Threat Injection - Scenario Templates
=====================================

Named, preset disturbances an operator can run in one call:
- tpl-storm-severe: regional weather stress, with a follow-up cascade at high severity
- tpl-line-outage: equipment failure on a substation or transformer, then a cascade
- tpl-generator-loss: equipment failure on a generator, then a cascade
- tpl-cascade-stress: one to three staggered cascades across the target regions

Severity is chosen by level (low, medium, high, critical) and the horizon
sets how long the scenario's threat stays active.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..common import LogCategory, logger
from ..context import SimulationContext
from ..cascading_failure.simulation import CascadeEngine
from ..digital_twin.models import DigitalTwinNode, NodeStatus, ThreatType
from ..exceptions import ValidationError
from .simulator import ThreatInjector

SEVERITY_LEVELS = {
    "low": 0.4,
    "medium": 0.65,
    "high": 0.9,
    "critical": 1.0,
}

MIN_HORIZON_HOURS = 0.5
MAX_HORIZON_HOURS = 48.0

STORM_CASCADE_FACTOR = 0.8
STORM_RISK_FLOOR = 0.5
STRESS_CASCADES = {"low": 1, "medium": 2, "high": 3, "critical": 3}


@dataclass
class ScenarioTemplate:
    id: str
    name: str
    description: str
    type: str
    default_level: str
    default_horizon_hours: float
    target_regions: List[str] = field(default_factory=list)


@dataclass
class ScenarioRun:
    """What one scenario run injected."""
    template_id: str
    name: str
    level: str
    severity: float
    horizon_hours: float
    threat_id: Optional[str] = None
    cascade_event_ids: List[str] = field(default_factory=list)


SCENARIO_TEMPLATES = {
    t.id: t for t in [
        ScenarioTemplate(
            id="tpl-storm-severe",
            name="Severe Storm Event",
            description="Major storm stressing exposed assets with high wind and lightning risk",
            type="storm",
            default_level="high",
            default_horizon_hours=6,
            target_regions=["North", "Central"],
        ),
        ScenarioTemplate(
            id="tpl-line-outage",
            name="Transmission Line Outage",
            description="Critical transmission line failure causing load redistribution",
            type="line_outage",
            default_level="medium",
            default_horizon_hours=2,
            target_regions=["Central", "South"],
        ),
        ScenarioTemplate(
            id="tpl-generator-loss",
            name="Generator Trip Event",
            description="Sudden loss of major generation capacity requiring emergency response",
            type="generator_loss",
            default_level="high",
            default_horizon_hours=1,
            target_regions=["West", "Central"],
        ),
        ScenarioTemplate(
            id="tpl-cascade-stress",
            name="Cascade Stress Test",
            description="Progressive stress test of cascade failure resilience",
            type="cascade_stress",
            default_level="medium",
            default_horizon_hours=4,
            target_regions=["North", "South", "East", "West"],
        ),
    ]
}


def get_scenario_templates() -> List[ScenarioTemplate]:
    return list(SCENARIO_TEMPLATES.values())


class ScenarioRunner:
    """Runs scenario templates through the threat injector and cascade engine."""

    def __init__(self, context: SimulationContext, threats: ThreatInjector, cascades: CascadeEngine):
        self.context = context
        self.threats = threats
        self.cascades = cascades

    def run_scenario(self, template_id: str, level: Optional[str] = None,
                     horizon_hours: Optional[float] = None) -> ScenarioRun:
        """
        Run a scenario template.

        Args:
            template_id: One of SCENARIO_TEMPLATES
            level: low, medium, high or critical; defaults to the template's level
            horizon_hours: Threat lifetime in [0.5, 48]; defaults to the template's horizon

        Raises:
            ValidationError: Unknown template or level, or horizon out of range
        """
        template = SCENARIO_TEMPLATES.get(template_id)
        if template is None:
            raise ValidationError(f"Unknown scenario template: {template_id}")
        level = level or template.default_level
        if level not in SEVERITY_LEVELS:
            raise ValidationError(f"Unknown severity level: {level}")
        horizon = horizon_hours if horizon_hours is not None else template.default_horizon_hours
        if not MIN_HORIZON_HOURS <= horizon <= MAX_HORIZON_HOURS:
            raise ValidationError(f"Horizon must be in [{MIN_HORIZON_HOURS}, {MAX_HORIZON_HOURS}] hours, got {horizon}")

        severity = SEVERITY_LEVELS[level]
        run = ScenarioRun(template_id=template.id, name=template.name, level=level,
                          severity=severity, horizon_hours=horizon)
        duration = horizon * 3600

        with self.context.lock:
            targets = self._targets(template)
            if template.type == "storm":
                regions = [r for r in template.target_regions if r in self.context.graph.regions()]
                if regions:
                    threat = self.threats.create_threat(ThreatType.WEATHER_STRESS, region=regions[0],
                                                        severity=severity, duration_seconds=duration)
                    run.threat_id = threat.id
                if level in ("high", "critical") and targets:
                    origin = next((n for n in targets if n.risk_score > STORM_RISK_FLOOR), targets[0])
                    self._cascade(run, origin.id, severity * STORM_CASCADE_FACTOR)

            elif template.type in ("line_outage", "generator_loss"):
                wanted = ("substation", "transformer") if template.type == "line_outage" else ("generator",)
                origin = next((n for n in targets if n.type in wanted), targets[0] if targets else None)
                if origin is not None:
                    threat = self.threats.create_threat(ThreatType.EQUIPMENT_FAILURE, target=origin.id,
                                                        severity=severity, duration_seconds=duration)
                    run.threat_id = threat.id
                    self._cascade(run, origin.id, severity)

            elif template.type == "cascade_stress":
                count = STRESS_CASCADES[level]
                for i in range(count):
                    if not targets:
                        break
                    origin = targets[int(i / count * len(targets))]
                    self._cascade(run, origin.id, min(1.0, severity * (0.6 + i * 0.15)))

            if run.threat_id is None and not run.cascade_event_ids:
                logger.warning(f"Scenario {template.id} found no eligible nodes in {template.target_regions}")

            self.context.log.operator(
                LogCategory.SCENARIO,
                f"Scenario '{template.name}' started",
                {"template_id": template.id, "level": level, "horizon_hours": horizon,
                 "threat_id": run.threat_id, "cascades": len(run.cascade_event_ids)},
            )
        return run

    def _targets(self, template: ScenarioTemplate) -> List[DigitalTwinNode]:
        nodes = [n for n in self.context.graph.get_all_nodes() if n.status != NodeStatus.ISOLATED]
        if template.target_regions:
            nodes = [n for n in nodes if n.region in template.target_regions]
        return nodes

    def _cascade(self, run: ScenarioRun, origin_id: str, severity: float):
        event = self.cascades.trigger_cascade(origin_id, severity)
        run.cascade_event_ids.append(event.id)


def print_scenario_templates():
    print("\n" + "=" * 80)
    print(" SCENARIO TEMPLATES")
    print("=" * 80)
    for template in get_scenario_templates():
        print(f" {template.id:<20} {template.name:<26} {template.default_level:<7} "
              f"{template.default_horizon_hours:>4.1f}h  {', '.join(template.target_regions)}")
        print(f"   {template.description}")
    print(f"\n Levels: {', '.join(f'{k}={v}' for k, v in SEVERITY_LEVELS.items())}")

