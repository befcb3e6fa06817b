# Copyright 2026-2026 Penserai Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Common utilities for the Sentinel Grid simulation.

This module provides shared functionality for all components,
including logging setup, settings, the simulation log sink and
serialization helpers.

Configuration:
    Set the following environment variables to configure the simulation:

    SENTINEL_SEED: Topology and drift seed (default: 12345)
    SENTINEL_NODE_COUNT: Number of twin nodes (default: 150)
    SENTINEL_TICK_INTERVAL: Seconds between ticks when running (default: 3.0)
    SENTINEL_TICK_HOURS: Simulated hours advanced per tick (default: 1.0)
    SENTINEL_SNAPSHOT_URL: Snapshot service URL (optional)
    SENTINEL_API_KEY: Bearer token for the snapshot service (optional)
    SENTINEL_SNAPSHOT_EVERY: Ticks between snapshots (default: 10)
    SENTINEL_WS_PORT: WebSocket port for live dashboards (default: 8765)
    SENTINEL_LOG_LEVEL: Logging level (default: INFO)
"""

import os
import logging
import itertools
from collections import defaultdict, deque
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .exceptions import ValidationError

DEFAULT_SEED = 12345
DEFAULT_NODE_COUNT = 150
DEFAULT_TICK_INTERVAL = 3.0
DEFAULT_TICK_HOURS = 1.0
DEFAULT_SNAPSHOT_EVERY = 10
DEFAULT_WS_PORT = 8765

# Configure logging
logging.basicConfig(
    level=os.environ.get("SENTINEL_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("sentinel-grid")


# =============================================================================
# Settings
# =============================================================================

@dataclass
class SimulationSettings:
    """Runtime settings, normally read from the environment."""
    seed: int = DEFAULT_SEED
    node_count: int = DEFAULT_NODE_COUNT
    tick_interval: float = DEFAULT_TICK_INTERVAL  # wall-clock seconds
    tick_hours: float = DEFAULT_TICK_HOURS  # simulated hours per tick
    snapshot_url: Optional[str] = None
    api_key: Optional[str] = None
    snapshot_every: int = DEFAULT_SNAPSHOT_EVERY
    ws_port: int = DEFAULT_WS_PORT


def _env(name: str, default, cast):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ValidationError(f"Invalid value for {name}: {raw!r}") from e


def get_settings() -> SimulationSettings:
    """
    Build settings from SENTINEL_* environment variables.

    Returns:
        SimulationSettings with defaults for anything unset

    Raises:
        ValidationError: If a variable is set but cannot be parsed or is out of range
    """
    settings = SimulationSettings(
        seed=_env("SENTINEL_SEED", DEFAULT_SEED, int),
        node_count=_env("SENTINEL_NODE_COUNT", DEFAULT_NODE_COUNT, int),
        tick_interval=_env("SENTINEL_TICK_INTERVAL", DEFAULT_TICK_INTERVAL, float),
        tick_hours=_env("SENTINEL_TICK_HOURS", DEFAULT_TICK_HOURS, float),
        snapshot_url=os.environ.get("SENTINEL_SNAPSHOT_URL") or None,
        api_key=os.environ.get("SENTINEL_API_KEY") or None,
        snapshot_every=_env("SENTINEL_SNAPSHOT_EVERY", DEFAULT_SNAPSHOT_EVERY, int),
        ws_port=_env("SENTINEL_WS_PORT", DEFAULT_WS_PORT, int),
    )
    if settings.node_count <= 0:
        raise ValidationError("SENTINEL_NODE_COUNT must be positive")
    if settings.tick_interval <= 0 or settings.tick_hours <= 0:
        raise ValidationError("Tick interval and tick hours must be positive")
    return settings


# =============================================================================
# Helpers
# =============================================================================

def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IdGenerator:
    """Sequential, per-prefix identifiers (threat_00001, pred_00001, ...)."""

    def __init__(self):
        self._counters: Dict[str, itertools.count] = defaultdict(lambda: itertools.count(1))

    def next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._counters[prefix]):05d}"

    def reset(self):
        self._counters.clear()


def to_payload(obj: Any) -> Any:
    """
    Convert dataclasses, enums and datetimes into JSON-safe structures.

    Used for WebSocket pushes and snapshot persistence.
    """
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_payload(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(to_payload(k)): to_payload(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, deque)):
        return [to_payload(v) for v in obj]
    return obj


# =============================================================================
# Simulation Log Sink
# =============================================================================

class LogSource(Enum):
    SYSTEM = "system"
    OPERATOR = "operator"
    SIMULATION = "simulation"


class LogCategory(Enum):
    PREDICTION = "prediction"
    ALERT = "alert"
    INCIDENT = "incident"
    MITIGATION = "mitigation"
    CONFIG = "config"
    SCENARIO = "scenario"
    THREAT = "threat"
    CASCADE = "cascade"


@dataclass
class LogEntry:
    timestamp: datetime
    source: LogSource
    category: LogCategory
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class SimulationLog:
    """
    Bounded in-memory history of simulation events.

    Every entry is also written to the module logger so console output and
    the dashboard history stay in step.
    """

    def __init__(self, max_entries: int = 1000):
        self._entries: Deque[LogEntry] = deque(maxlen=max_entries)

    def add(self, source: LogSource, category: LogCategory, message: str,
            metadata: Optional[Dict[str, Any]] = None) -> LogEntry:
        entry = LogEntry(
            timestamp=utc_now(),
            source=source,
            category=category,
            message=message,
            metadata=dict(metadata or {}),
        )
        self._entries.append(entry)
        level = logging.WARNING if category in (LogCategory.ALERT, LogCategory.INCIDENT) else logging.INFO
        logger.log(level, f"[{source.value}/{category.value}] {message}")
        return entry

    def simulation(self, category: LogCategory, message: str, metadata: Optional[Dict] = None) -> LogEntry:
        return self.add(LogSource.SIMULATION, category, message, metadata)

    def operator(self, category: LogCategory, message: str, metadata: Optional[Dict] = None) -> LogEntry:
        return self.add(LogSource.OPERATOR, category, message, metadata)

    def system(self, category: LogCategory, message: str, metadata: Optional[Dict] = None) -> LogEntry:
        return self.add(LogSource.SYSTEM, category, message, metadata)

    def entries(self, category: Optional[LogCategory] = None, limit: Optional[int] = None) -> List[LogEntry]:
        items = [e for e in self._entries if category is None or e.category == category]
        if limit is not None:
            items = items[-limit:]
        return items

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
