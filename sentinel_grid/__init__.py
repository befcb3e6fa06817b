"""
Sentinel Grid Twin

Live digital twin of interdependent critical infrastructure (power, telecom,
water and data-center assets) with a closed risk loop:

- digital_twin: seeded topology, node metrics and their per-tick drift
- threats: threat injection, drift bias, propagation and expiry
- predictive: risk scoring, failure prediction and accuracy tracking
- cascading_failure: dependency-aware cascade propagation
- mitigation: recommendation tables and mitigation execution
- alerting: alert rules, cooldowns and alert lifecycle

Usage:
    # Run a headless simulation and print the system report
    python -m sentinel_grid.simulation --ticks 20

    # Trigger a cascade from a node
    python -m sentinel_grid.cascading_failure.simulation --trigger node_0001

    # Serve live state to dashboard clients over a WebSocket
    python -m sentinel_grid.broadcast --port 8765
"""

__version__ = "1.0.0"

AVAILABLE_COMPONENTS = [
    "digital_twin",
    "threats",
    "predictive",
    "cascading_failure",
    "mitigation",
    "alerting",
]
