import pytest

from sentinel_grid.digital_twin.models import FailureMode
from sentinel_grid.predictive.accuracy import AccuracyCounts, AccuracyTracker


def test_empty_counts_are_zero():
    counts = AccuracyCounts()
    assert counts.accuracy == 0.0
    assert counts.precision == 0.0
    assert counts.recall == 0.0


def test_each_prediction_counted_once():
    tracker = AccuracyTracker()
    assert tracker.record("pred_00001", FailureMode.OVERLOAD, True) is True
    assert tracker.record("pred_00001", FailureMode.OVERLOAD, False) is False
    assert tracker.is_recorded("pred_00001")
    stats = tracker.stats()
    assert stats["total"] == 1
    assert stats["accurate"] == 1


def test_precision_and_recall():
    tracker = AccuracyTracker()
    tracker.record("pred_00001", FailureMode.THERMAL_STRESS, True)
    tracker.record("pred_00002", FailureMode.THERMAL_STRESS, False)
    tracker.record("pred_00003", FailureMode.CYBER_VULNERABILITY, True)
    tracker.record_missed(FailureMode.THERMAL_STRESS)

    stats = tracker.stats()
    assert stats["precision"] == pytest.approx(2 / 3)
    assert stats["recall"] == pytest.approx(2 / 3)
    assert stats["missed"] == 1

    thermal = tracker.stats(FailureMode.THERMAL_STRESS)
    assert thermal["total"] == 2
    assert thermal["precision"] == pytest.approx(0.5)
    assert thermal["recall"] == pytest.approx(0.5)
    assert set(stats["by_type"]) == {"thermal_stress", "cyber_vulnerability"}


def test_unseen_failure_type_has_empty_stats():
    tracker = AccuracyTracker()
    assert tracker.stats(FailureMode.OVERLOAD)["total"] == 0
    assert "overload" not in tracker.stats()["by_type"]


def test_reset():
    tracker = AccuracyTracker()
    tracker.record("pred_00001", FailureMode.OVERLOAD, True)
    tracker.reset()
    assert tracker.stats()["total"] == 0
    assert not tracker.is_recorded("pred_00001")
