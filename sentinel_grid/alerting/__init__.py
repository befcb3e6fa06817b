"""
Alerting for the Infrastructure Twin

Rule-based alerts raised from node thresholds, urgent predictions, cascade
events and system health, with acknowledge and resolve lifecycle.

Modules:
    monitor.py - Alert rules, per-tick evaluation, cooldowns and lifecycle
"""

__all__ = ["monitor"]
