"""
Prediction accuracy bookkeeping.

Resolved predictions are counted once. Accurate outcomes are true
positives, inaccurate ones false positives, and failures that happened
with no active prediction are counted as missed (false negatives).
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Optional, Set

from ..digital_twin.models import FailureMode


@dataclass
class AccuracyCounts:
    total: int = 0
    accurate: int = 0
    missed: int = 0

    @property
    def accuracy(self) -> float:
        return self.accurate / self.total if self.total else 0.0

    @property
    def precision(self) -> float:
        return self.accuracy

    @property
    def recall(self) -> float:
        found = self.accurate + self.missed
        return self.accurate / found if found else 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "total": self.total,
            "accurate": self.accurate,
            "missed": self.missed,
            "accuracy": self.accuracy,
            "precision": self.precision,
            "recall": self.recall,
        }


class AccuracyTracker:
    """Running accuracy per failure mode plus an overall total."""

    def __init__(self):
        self.overall = AccuracyCounts()
        self.by_type: Dict[FailureMode, AccuracyCounts] = defaultdict(AccuracyCounts)
        self._recorded: Set[str] = set()

    def record(self, prediction_id: str, failure_type: FailureMode, was_accurate: bool) -> bool:
        """
        Count one prediction outcome.

        Returns:
            False if this prediction id was already counted
        """
        if prediction_id in self._recorded:
            return False
        self._recorded.add(prediction_id)
        for counts in (self.overall, self.by_type[failure_type]):
            counts.total += 1
            if was_accurate:
                counts.accurate += 1
        return True

    def record_missed(self, failure_type: FailureMode):
        self.overall.missed += 1
        self.by_type[failure_type].missed += 1

    def is_recorded(self, prediction_id: str) -> bool:
        return prediction_id in self._recorded

    def stats(self, failure_type: Optional[FailureMode] = None) -> Dict:
        if failure_type is not None:
            return self.by_type[failure_type].as_dict() if failure_type in self.by_type \
                else AccuracyCounts().as_dict()
        result = self.overall.as_dict()
        result["by_type"] = {mode.value: counts.as_dict() for mode, counts in self.by_type.items()}
        return result

    def reset(self):
        self.overall = AccuracyCounts()
        self.by_type.clear()
        self._recorded.clear()
