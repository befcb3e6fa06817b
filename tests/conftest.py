"""Shared fixtures for the Sentinel Grid tests."""
from datetime import datetime, timedelta, timezone

import pytest

from sentinel_grid.common import SimulationSettings
from sentinel_grid.context import SimulationContext
from sentinel_grid.simulation import SimulationOrchestrator

TEST_SEED = 42
TEST_NODE_COUNT = 60


class FakeClock:
    """Settable clock so expiry and horizons can be tested without sleeping."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return SimulationSettings(seed=TEST_SEED, node_count=TEST_NODE_COUNT, snapshot_every=0)


@pytest.fixture
def context(settings, clock):
    ctx = SimulationContext(settings, clock=clock)
    ctx.initialize()
    return ctx


@pytest.fixture
def graph(context):
    return context.graph


@pytest.fixture
def orchestrator(settings, clock):
    orch = SimulationOrchestrator(SimulationContext(settings, clock=clock))
    orch.initialize()
    return orch


@pytest.fixture
def origin_id(graph):
    """A node with at least one active outgoing dependency edge."""
    for node in graph.get_all_nodes():
        if any(e.is_active for e in graph.outgoing_edges(node.id)):
            return node.id
    pytest.fail("seeded graph has no node with dependents")
