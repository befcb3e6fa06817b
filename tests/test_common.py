import json
from datetime import datetime, timezone

import pytest

from sentinel_grid.common import (
    IdGenerator,
    LogCategory,
    LogSource,
    SimulationLog,
    clamp,
    get_settings,
    to_payload,
)
from sentinel_grid.digital_twin.models import CascadeHop, NodeStatus
from sentinel_grid.exceptions import ValidationError


def test_clamp():
    assert clamp(1.5) == 1.0
    assert clamp(-0.5) == 0.0
    assert clamp(5, 0, 10) == 5


def test_id_generator_counts_per_prefix():
    ids = IdGenerator()
    assert ids.next("threat") == "threat_00001"
    assert ids.next("threat") == "threat_00002"
    assert ids.next("pred") == "pred_00001"
    ids.reset()
    assert ids.next("threat") == "threat_00001"


def test_to_payload_is_json_safe():
    payload = to_payload({
        "status": NodeStatus.CRITICAL,
        "at": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "hops": [CascadeHop(from_id="a", to_id="b", hop=1, severity=0.5)],
        "coords": (1.0, 2.0),
    })
    assert payload["status"] == "critical"
    assert payload["at"] == "2026-01-01T00:00:00+00:00"
    assert payload["hops"][0] == {"from_id": "a", "to_id": "b", "hop": 1, "severity": 0.5}
    assert payload["coords"] == [1.0, 2.0]
    json.dumps(payload)


def test_simulation_log_is_bounded_and_filterable():
    log = SimulationLog(max_entries=3)
    log.simulation(LogCategory.THREAT, "one")
    log.operator(LogCategory.MITIGATION, "two")
    log.system(LogCategory.CONFIG, "three")
    log.simulation(LogCategory.THREAT, "four")

    assert len(log) == 3
    assert [e.message for e in log.entries()] == ["two", "three", "four"]
    assert [e.message for e in log.entries(LogCategory.THREAT)] == ["four"]
    assert log.entries(limit=1)[0].message == "four"
    assert log.entries(LogCategory.MITIGATION)[0].source == LogSource.OPERATOR


def test_settings_defaults(monkeypatch):
    for name in ("SENTINEL_SEED", "SENTINEL_NODE_COUNT", "SENTINEL_TICK_INTERVAL",
                 "SENTINEL_SNAPSHOT_URL", "SENTINEL_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    settings = get_settings()
    assert settings.seed == 12345
    assert settings.node_count == 150
    assert settings.tick_interval == 3.0
    assert settings.snapshot_url is None


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SENTINEL_SEED", "7")
    monkeypatch.setenv("SENTINEL_NODE_COUNT", "30")
    monkeypatch.setenv("SENTINEL_SNAPSHOT_URL", "http://snapshots.test")
    settings = get_settings()
    assert settings.seed == 7
    assert settings.node_count == 30
    assert settings.snapshot_url == "http://snapshots.test"


@pytest.mark.parametrize("name,value", [
    ("SENTINEL_SEED", "abc"),
    ("SENTINEL_NODE_COUNT", "0"),
    ("SENTINEL_TICK_INTERVAL", "-1"),
])
def test_invalid_settings(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        get_settings()
