import asyncio
import json

import httpx
import pytest

from sentinel_grid.broadcast import WebSocketBroadcaster, handle_command
from sentinel_grid.digital_twin.models import SystemState
from sentinel_grid.exceptions import NotFoundError
from sentinel_grid.storage import HttpSnapshotStore, InMemorySnapshotStore, SnapshotError


# =============================================================================
# Snapshot stores
# =============================================================================

def test_in_memory_store_copies_payloads():
    store = InMemorySnapshotStore()
    payload = {"tick": 1, "nodes": [{"id": "node_0000"}]}
    store.insert("tick_000001", payload)
    payload["nodes"].clear()

    fetched = store.get("tick_000001")
    assert fetched["nodes"] == [{"id": "node_0000"}]
    fetched["tick"] = 99
    assert store.get("tick_000001")["tick"] == 1

    with pytest.raises(NotFoundError):
        store.get("tick_999999")


def test_in_memory_store_evicts_oldest():
    store = InMemorySnapshotStore(max_snapshots=2)
    for tick in range(1, 4):
        store.insert(f"tick_{tick:06d}", {"tick": tick})
    assert store.list_ids() == ["tick_000002", "tick_000003"]


def _mock_store(handler, api_key="secret"):
    return HttpSnapshotStore("http://snapshots.test", api_key=api_key,
                             transport=httpx.MockTransport(handler))


def test_http_store_round_trip():
    stored = {}
    seen_auth = []

    def handler(request):
        seen_auth.append(request.headers.get("Authorization"))
        path = request.url.path
        if request.method == "PUT":
            stored[path.rsplit("/", 1)[-1]] = json.loads(request.content)
            return httpx.Response(204)
        if path == "/snapshots":
            return httpx.Response(200, json={"ids": list(stored)})
        snapshot_id = path.rsplit("/", 1)[-1]
        if snapshot_id not in stored:
            return httpx.Response(404)
        return httpx.Response(200, json=stored[snapshot_id])

    with _mock_store(handler) as store:
        store.insert("tick_000010", {"tick": 10})
        assert store.get("tick_000010") == {"tick": 10}
        assert store.list_ids() == ["tick_000010"]
        with pytest.raises(NotFoundError):
            store.get("tick_000011")

    assert set(seen_auth) == {"Bearer secret"}


def test_http_store_wraps_transport_errors():
    def handler(request):
        return httpx.Response(500)

    store = _mock_store(handler, api_key=None)
    with pytest.raises(SnapshotError):
        store.insert("tick_000001", {"tick": 1})
    with pytest.raises(SnapshotError):
        store.list_ids()
    store.close()


# =============================================================================
# WebSocket broadcast
# =============================================================================

class FakeClient:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(json.loads(message))


class DeadClient:
    async def send(self, message):
        raise ConnectionError("client went away")


def test_broadcast_drops_failed_clients():
    broadcaster = WebSocketBroadcaster()
    alive, dead = FakeClient(), DeadClient()
    broadcaster.clients.update({alive, dead})

    asyncio.run(broadcaster.broadcast({"type": "ping"}))

    assert alive.sent == [{"type": "ping"}]
    assert broadcaster.clients == {alive}


def test_notify_without_clients_keeps_latest_state():
    broadcaster = WebSocketBroadcaster()
    assert broadcaster.notify(SystemState(tick_count=3)) is False
    assert broadcaster.last_message["state"]["tick_count"] == 3


def test_notify_schedules_throttled_pushes():
    now = [0.0]
    broadcaster = WebSocketBroadcaster(min_interval=10.0, clock=lambda: now[0])
    client = FakeClient()
    broadcaster.clients.add(client)

    async def scenario():
        assert broadcaster.notify(SystemState(tick_count=1)) is True
        now[0] = 5.0
        assert broadcaster.notify(SystemState(tick_count=2)) is False
        now[0] = 11.0
        assert broadcaster.notify(SystemState(tick_count=3)) is True
        await asyncio.gather(*list(broadcaster._pending))

    asyncio.run(scenario())
    assert [m["state"]["tick_count"] for m in client.sent] == [1, 3]


def test_notify_outside_event_loop_is_skipped():
    broadcaster = WebSocketBroadcaster()
    broadcaster.clients.add(FakeClient())
    assert broadcaster.notify(SystemState()) is False


# =============================================================================
# Commands
# =============================================================================

def _command(orchestrator, data):
    return asyncio.run(handle_command(orchestrator, data))


@pytest.fixture
def origin_id(orchestrator):
    twin = orchestrator.twin
    return next(n.id for n in twin.get_all_nodes() if twin.outgoing_edges(n.id))


def test_tick_command_returns_state(orchestrator):
    reply = _command(orchestrator, {"type": "tick"})
    assert reply["type"] == "state"
    assert reply["state"]["tick_count"] == 1


def test_threat_and_cascade_commands(orchestrator, origin_id):
    reply = _command(orchestrator, {"type": "threat", "threat_type": "overload",
                                    "target": origin_id, "severity": 0.4})
    assert reply["type"] == "threat"
    assert reply["threat"]["type"] == "overload"

    reply = _command(orchestrator, {"type": "cascade", "origin": origin_id, "severity": 0.5})
    assert reply["type"] == "cascade"
    assert reply["cascade"]["affected_nodes"][0] == origin_id


def test_mitigate_and_auto_mitigate_commands(orchestrator):
    node_id = orchestrator.twin.get_all_nodes()[0].id
    reply = _command(orchestrator, {"type": "mitigate", "node_id": node_id, "action": "dispatch_maintenance"})
    assert reply["type"] == "mitigation"
    assert reply["result"]["success"] is True

    reply = _command(orchestrator, {"type": "auto_mitigate"})
    assert reply["type"] == "mitigation"


@pytest.mark.parametrize("data", [
    {"type": "teleport"},
    {"type": "cascade", "origin": "node_9999"},
    {"type": "mitigate", "action": "load_shed"},
    {"type": "threat", "threat_type": "meteor_strike"},
])
def test_bad_commands_return_errors(orchestrator, data):
    reply = _command(orchestrator, data)
    assert reply["type"] == "error"
    assert reply["message"]


def test_reset_command_reinitializes(orchestrator):
    orchestrator.run_ticks(2)
    reply = _command(orchestrator, {"type": "reset"})
    assert reply["type"] == "state"
    assert reply["state"]["tick_count"] == 0
    assert reply["state"]["total_nodes"] == 60


def test_scenario_command(orchestrator):
    reply = _command(orchestrator, {"type": "scenario", "template_id": "tpl-line-outage",
                                    "level": "high", "horizon_hours": "3"})
    assert reply["type"] == "scenario"
    assert reply["run"]["severity"] == 0.9
    assert reply["run"]["horizon_hours"] == 3.0
    assert len(reply["run"]["cascade_event_ids"]) == 1

    reply = _command(orchestrator, {"type": "scenario", "template_id": "tpl-unknown"})
    assert reply["type"] == "error"


def test_alert_commands(orchestrator, origin_id):
    orchestrator.trigger_cascade(origin_id, 0.9)
    orchestrator.tick()
    alert = next(a for a in orchestrator.get_alerts() if a.cascade_event_id is not None)

    reply = _command(orchestrator, {"type": "acknowledge_alert", "alert_id": alert.alert_id})
    assert reply == {"type": "alert", "alert_id": alert.alert_id, "updated": True}
    assert alert.acknowledged_by == "dashboard"

    reply = _command(orchestrator, {"type": "resolve_alert", "alert_id": alert.alert_id})
    assert reply["updated"] is True
    reply = _command(orchestrator, {"type": "resolve_alert", "alert_id": alert.alert_id})
    assert reply["updated"] is False

    assert _command(orchestrator, {"type": "acknowledge_alert"})["type"] == "error"
