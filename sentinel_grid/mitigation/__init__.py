"""
Mitigation for the Infrastructure Twin

Turns predictions and incidents into ranked operator actions and applies
them to the twin.

Modules:
    advisor.py - Action profiles, recommendation lifecycle and execution
"""

__all__ = ["advisor"]
