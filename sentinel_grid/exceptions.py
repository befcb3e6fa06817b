"""
Error types raised by the simulation components.

Every operation validates its inputs before touching the twin, so any of
these errors means the graph was left exactly as it was.
"""


class SentinelGridError(Exception):
    """Base class for all simulation errors."""


class NotFoundError(SentinelGridError):
    """A referenced entity does not exist."""


class NodeNotFoundError(NotFoundError):
    def __init__(self, node_id: str):
        super().__init__(f"Node {node_id} not found")
        self.node_id = node_id


class ThreatNotFoundError(NotFoundError):
    def __init__(self, threat_id: str):
        super().__init__(f"Threat {threat_id} not found")
        self.threat_id = threat_id


class PredictionNotFoundError(NotFoundError):
    def __init__(self, prediction_id: str):
        super().__init__(f"Prediction {prediction_id} not found")
        self.prediction_id = prediction_id


class RecommendationNotFoundError(NotFoundError):
    def __init__(self, recommendation_id: str):
        super().__init__(f"Recommendation {recommendation_id} not found")
        self.recommendation_id = recommendation_id


class ValidationError(SentinelGridError, ValueError):
    """An argument is outside its allowed range or set."""


class InvalidOperationError(SentinelGridError):
    """The operation is not allowed in the current state."""


class ApplyFailedError(InvalidOperationError):
    """The twin rejected a mutation, e.g. an action invalid for the node category."""
