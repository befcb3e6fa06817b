"""
Predictive Risk Analysis for the Infrastructure Twin

Turns live node metrics into explainable risk scores and failure
predictions, and keeps score on how well those predictions hold up.

Modules:
    analysis.py - Risk scoring, leading factors and failure prediction
    accuracy.py - Outcome bookkeeping per failure mode
"""

__all__ = ["analysis", "accuracy"]
