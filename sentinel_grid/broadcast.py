#!/usr/bin/env python3
"""
Sentinel Grid - Live State Broadcast
====================================

Pushes the system state to dashboard clients over a WebSocket after every
simulation tick and accepts a small set of operator commands:

    {"type": "start"} / {"type": "stop"} / {"type": "reset"} / {"type": "tick"}
    {"type": "threat", "threat_type": "cyber_attack", "target": "node_0001", "severity": 0.7}
    {"type": "cascade", "origin": "node_0001", "severity": 0.8}
    {"type": "mitigate", "node_id": "node_0001", "action": "load_shed"}
    {"type": "auto_mitigate"}
    {"type": "scenario", "template_id": "tpl-line-outage", "level": "high"}
    {"type": "acknowledge_alert", "alert_id": "alert_00001"} / {"type": "resolve_alert", "alert_id": "alert_00001"}

Requirements:
    pip install websockets

Usage:
    python -m sentinel_grid.broadcast --port 8765
    python -m sentinel_grid.broadcast --port 8765 --interval 1.0 --nodes 200
"""

import argparse
import asyncio
import json
import time
from typing import Any, Callable, Dict, Optional, Set

import websockets

from .common import get_settings, logger, to_payload
from .context import SimulationContext
from .exceptions import SentinelGridError
from .simulation import SimulationOrchestrator


class WebSocketBroadcaster:
    """
    Tick notifier that fans the system state out to connected clients.

    notify() is called synchronously from the tick; the actual sends run as
    tasks on the event loop. Sends closer together than min_interval are
    dropped, the latest state is always kept for newly connected clients.
    """

    def __init__(self, min_interval: float = 0.0, clock: Callable[[], float] = time.monotonic):
        self.clients: Set = set()
        self.min_interval = min_interval
        self.last_message: Optional[Dict[str, Any]] = None
        self._clock = clock
        self._last_sent: Optional[float] = None
        self._pending: Set[asyncio.Task] = set()

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients."""
        if not self.clients:
            return
        msg = json.dumps(message)
        clients = list(self.clients)
        results = await asyncio.gather(*[client.send(msg) for client in clients], return_exceptions=True)
        for client, result in zip(clients, results):
            if isinstance(result, Exception):
                logger.info(f"Dropping client after failed send: {result}")
                self.clients.discard(client)

    def notify(self, state) -> bool:
        """
        Queue a state push.

        Returns:
            True if a broadcast was scheduled
        """
        message = {"type": "state", "state": to_payload(state)}
        self.last_message = message
        if not self.clients:
            return False
        now = self._clock()
        if self._last_sent is not None and now - self._last_sent < self.min_interval:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; state push skipped")
            return False
        self._last_sent = now
        task = loop.create_task(self.broadcast(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True


async def handle_command(orchestrator, data: dict) -> dict:
    """Apply one client command and build the reply."""
    command = data.get("type")
    try:
        if command == "start":
            orchestrator.start()
        elif command == "stop":
            orchestrator.stop()
        elif command == "reset":
            orchestrator.reset()
            orchestrator.initialize()
        elif command == "tick":
            orchestrator.tick()
        elif command == "threat":
            threat = orchestrator.threats.create_threat(
                data.get("threat_type", "cyber_attack"),
                target=data.get("target"),
                region=data.get("region"),
                severity=float(data.get("severity", 0.6)),
            )
            return {"type": "threat", "threat": to_payload(threat)}
        elif command == "cascade":
            event = orchestrator.cascades.trigger_cascade(data["origin"], float(data.get("severity", 0.8)))
            return {"type": "cascade", "cascade": to_payload(event)}
        elif command == "mitigate":
            result = orchestrator.executor.execute_mitigation(
                data["node_id"], data["action"], operator=data.get("operator", "dashboard"))
            return {"type": "mitigation", "result": to_payload(result)}
        elif command == "auto_mitigate":
            batch = orchestrator.executor.auto_mitigate_critical_nodes()
            return {"type": "mitigation", "result": to_payload(batch)}
        elif command == "scenario":
            horizon = data.get("horizon_hours")
            run = orchestrator.run_scenario(data["template_id"], data.get("level"),
                                            float(horizon) if horizon is not None else None)
            return {"type": "scenario", "run": to_payload(run)}
        elif command == "acknowledge_alert":
            ok = orchestrator.acknowledge_alert(data["alert_id"], data.get("operator", "dashboard"))
            return {"type": "alert", "alert_id": data["alert_id"], "updated": ok}
        elif command == "resolve_alert":
            ok = orchestrator.resolve_alert(data["alert_id"])
            return {"type": "alert", "alert_id": data["alert_id"], "updated": ok}
        else:
            return {"type": "error", "message": f"Unknown command: {command}"}
    except (SentinelGridError, KeyError, ValueError) as e:
        return {"type": "error", "message": str(e)}
    return {"type": "state", "state": to_payload(orchestrator.get_system_state())}


def make_handler(orchestrator, broadcaster: WebSocketBroadcaster):
    async def handle_websocket(websocket):
        """Handle WebSocket connections."""
        broadcaster.clients.add(websocket)
        logger.info(f"Client connected. Total: {len(broadcaster.clients)}")
        try:
            await websocket.send(json.dumps({
                "type": "init",
                "state": to_payload(orchestrator.get_system_state()),
                "nodes": to_payload(orchestrator.context.graph.get_all_nodes()),
                "edges": to_payload(orchestrator.context.graph.get_all_edges()),
            }))
            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    await websocket.send(json.dumps({"type": "error", "message": "Invalid JSON"}))
                    continue
                await websocket.send(json.dumps(await handle_command(orchestrator, data)))
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            broadcaster.clients.discard(websocket)
            logger.info(f"Client disconnected. Total: {len(broadcaster.clients)}")

    return handle_websocket


async def serve(port: int, node_count: Optional[int] = None, seed: Optional[int] = None,
                interval: Optional[float] = None):
    settings = get_settings()
    if interval is not None:
        settings.tick_interval = interval
    broadcaster = WebSocketBroadcaster(min_interval=settings.tick_interval / 2)
    orchestrator = SimulationOrchestrator(SimulationContext(settings), notifier=broadcaster)
    orchestrator.initialize(node_count=node_count, seed=seed)
    orchestrator.start()

    print(f"\n{'=' * 60}")
    print("  Sentinel Grid - Live Twin")
    print(f"{'=' * 60}")
    print(f"  WebSocket: ws://localhost:{port}")
    print(f"  Nodes: {len(orchestrator.context.graph)}")
    print(f"  Tick interval: {settings.tick_interval}s")
    print(f"{'=' * 60}\n")

    try:
        async with websockets.serve(make_handler(orchestrator, broadcaster), "", port):
            await asyncio.Future()  # Run forever
    finally:
        orchestrator.stop()


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Sentinel Grid live WebSocket server")
    parser.add_argument("--port", type=int, default=settings.ws_port, help="WebSocket port")
    parser.add_argument("--nodes", type=int, help="Number of nodes")
    parser.add_argument("--seed", type=int, help="Topology seed")
    parser.add_argument("--interval", type=float, help="Seconds between ticks")
    args = parser.parse_args()

    try:
        asyncio.run(serve(args.port, args.nodes, args.seed, args.interval))
    except KeyboardInterrupt:
        print("\nShutdown requested")


if __name__ == "__main__":
    main()
