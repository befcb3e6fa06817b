from datetime import timedelta

import pytest

from sentinel_grid.cascading_failure.simulation import CascadeEngine
from sentinel_grid.common import LogCategory, LogSource
from sentinel_grid.digital_twin.models import ThreatType
from sentinel_grid.exceptions import ValidationError
from sentinel_grid.threats.scenarios import (
    SCENARIO_TEMPLATES,
    SEVERITY_LEVELS,
    ScenarioRunner,
    get_scenario_templates,
    print_scenario_templates,
)
from sentinel_grid.threats.simulator import ThreatInjector


@pytest.fixture
def runner(context):
    return ScenarioRunner(context, ThreatInjector(context), CascadeEngine(context))


def test_templates():
    assert [t.id for t in get_scenario_templates()] == [
        "tpl-storm-severe",
        "tpl-line-outage",
        "tpl-generator-loss",
        "tpl-cascade-stress",
    ]
    for template in get_scenario_templates():
        assert template.default_level in SEVERITY_LEVELS
        assert template.target_regions


def test_line_outage_fails_equipment_then_cascades(runner, context):
    run = runner.run_scenario("tpl-line-outage", "high")
    assert run.severity == SEVERITY_LEVELS["high"]
    assert run.horizon_hours == 2

    threat = context.threats[run.threat_id]
    assert threat.type == ThreatType.EQUIPMENT_FAILURE
    assert threat.ends_at - threat.started_at == timedelta(hours=2)
    origin = context.graph.get_node_by_id(threat.target)
    assert origin.region in SCENARIO_TEMPLATES["tpl-line-outage"].target_regions

    assert len(run.cascade_event_ids) == 1
    assert context.cascades[run.cascade_event_ids[0]].origin_id == threat.target


def test_horizon_override(runner, context):
    run = runner.run_scenario("tpl-generator-loss", horizon_hours=0.5)
    assert run.level == "high"
    threat = context.threats[run.threat_id]
    assert threat.ends_at - threat.started_at == timedelta(minutes=30)


@pytest.mark.parametrize("level,cascades", [("medium", 0), ("high", 1)])
def test_storm_cascades_only_when_severe(runner, context, level, cascades):
    run = runner.run_scenario("tpl-storm-severe", level)
    threat = context.threats[run.threat_id]
    assert threat.type == ThreatType.WEATHER_STRESS
    assert threat.region == "North"
    assert len(run.cascade_event_ids) == cascades


@pytest.mark.parametrize("level,cascades", [("low", 1), ("medium", 2), ("high", 3)])
def test_cascade_stress_scales_with_level(runner, context, level, cascades):
    run = runner.run_scenario("tpl-cascade-stress", level)
    assert run.threat_id is None
    assert len(run.cascade_event_ids) == cascades
    severities = [context.cascades[c].severity for c in run.cascade_event_ids]
    assert severities == sorted(severities)
    assert all(0.0 < s <= 1.0 for s in severities)


@pytest.mark.parametrize("kwargs", [
    {"template_id": "tpl-alien-invasion"},
    {"template_id": "tpl-line-outage", "level": "apocalyptic"},
    {"template_id": "tpl-line-outage", "horizon_hours": 0.1},
    {"template_id": "tpl-line-outage", "horizon_hours": 72},
])
def test_invalid_scenarios_inject_nothing(runner, context, kwargs):
    with pytest.raises(ValidationError):
        runner.run_scenario(**kwargs)
    assert context.threats == {}
    assert context.cascades == {}


def test_scenario_is_logged_as_operator_action(runner, context):
    run = runner.run_scenario("tpl-line-outage")
    entries = context.log.entries(LogCategory.SCENARIO)
    assert len(entries) == 1
    assert entries[0].source == LogSource.OPERATOR
    assert entries[0].metadata["threat_id"] == run.threat_id
    assert entries[0].metadata["level"] == "medium"


def test_scenario_listing(capsys):
    print_scenario_templates()
    out = capsys.readouterr().out
    assert "SCENARIO TEMPLATES" in out
    assert "tpl-cascade-stress" in out
