"""
Digital Twin of Interdependent Infrastructure

A live graph of power, telecom, water and data-center assets whose metrics
drift every tick and respond to threats and mitigations.

Modules:
    models.py - Node, edge, risk, prediction, threat and mitigation records
    seed.py - Reproducible topology generator
    graph.py - Live twin graph: queries, drift, status and metric mutation
"""

__all__ = ["models", "seed", "graph"]
