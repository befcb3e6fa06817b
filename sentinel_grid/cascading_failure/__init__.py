"""
Cascading Failure Propagation for the Infrastructure Twin

Failures at one asset flow along active dependency edges to the assets
that depend on it, losing strength at every hop:
- Shared propagation rules for forecasting and execution
- Deterministic breadth-first cascade with exact all-or-nothing application
- Incident creation and cascade reporting

Modules:
    propagation.py - Decay, floor and hop limit plus the shared BFS planner
    simulation.py - Cascade engine and command-line report
"""

__all__ = ["propagation", "simulation"]
