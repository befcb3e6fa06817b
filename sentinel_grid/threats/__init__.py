"""
Threat Injection for the Infrastructure Twin

Synthetic cyber and physical threats that perturb node metrics while they
are active and are reverted when they expire.

Modules:
    simulator.py - Threat creation, drift bias, propagation and expiry
    scenarios.py - Preset scenario templates run at a chosen severity level
"""

__all__ = ["simulator", "scenarios"]
