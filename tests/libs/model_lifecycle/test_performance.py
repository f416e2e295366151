"""Tests for PerformanceTracker."""

import csv
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from libs.common.exceptions import PredictionNotFoundError, StateError
from libs.model_lifecycle.performance import (
    RETRAIN_RECOMMENDATION,
    PerformanceTracker,
    compute_snapshot,
    confidence_bucket,
)
from libs.model_lifecycle.state_store import JsonFileStateStore

T0 = datetime(2024, 1, 15, 8, 30, tzinfo=UTC)


@pytest.fixture
def tracker(tmp_path: Path) -> PerformanceTracker:
    return PerformanceTracker(JsonFileStateStore(tmp_path / "predictions.json"))


def _log_and_resolve(
    tracker: PerformanceTracker, outcomes: list[bool], resolved_at: datetime, confidence: float = 0.7
) -> None:
    for correct in outcomes:
        record = tracker.log_prediction("AAPL", "bullish", confidence, 100.0, "v1", now=T0)
        tracker.resolve_prediction(
            record.id, "bullish" if correct else "bearish", actual_return=0.01, now=resolved_at
        )


def test_log_prediction_persists_record(tracker: PerformanceTracker) -> None:
    record = tracker.log_prediction("AAPL", "bullish", 0.72, 185.5, "v20240115_083000_1a2b3c", now=T0)

    assert record.id.startswith(f"pred_{int(T0.timestamp() * 1000)}_")
    assert record.resolved is False
    assert record.correct is None
    assert tracker.get_prediction(record.id) == record


def test_log_prediction_validates_input(tracker: PerformanceTracker) -> None:
    with pytest.raises(ValueError):
        tracker.log_prediction("AAPL", "sideways", 0.5)
    with pytest.raises(ValueError):
        tracker.log_prediction("AAPL", "bullish", 1.5)


def test_history_is_capped(tmp_path: Path) -> None:
    tracker = PerformanceTracker(JsonFileStateStore(tmp_path / "p.json"), max_history=3)
    ids = [
        tracker.log_prediction("AAPL", "bullish", 0.6, now=T0 + timedelta(minutes=i)).id
        for i in range(5)
    ]

    remaining = [r.id for r in tracker.get_recent_predictions(10)]

    assert sorted(remaining) == sorted(ids[2:])


def test_resolve_prediction_sets_outcome_and_metrics(tracker: PerformanceTracker) -> None:
    record = tracker.log_prediction("AAPL", "bullish", 0.7, 100.0, now=T0)

    resolved = tracker.resolve_prediction(
        record.id, "bullish", actual_price=105.0, actual_return=0.05, now=T0 + timedelta(days=7)
    )

    assert resolved.resolved is True
    assert resolved.correct is True
    assert resolved.resolved_at == T0 + timedelta(days=7)
    metrics = tracker.get_metrics()
    assert metrics.resolved_predictions == 1
    assert metrics.accuracy == 1.0


def test_resolve_is_idempotent(tracker: PerformanceTracker) -> None:
    record = tracker.log_prediction("AAPL", "bullish", 0.7, now=T0)
    first = tracker.resolve_prediction(record.id, "bullish", now=T0 + timedelta(days=1))

    second = tracker.resolve_prediction(record.id, "bearish", now=T0 + timedelta(days=2))

    assert second == first
    assert tracker.get_prediction(record.id).actual_outcome == "bullish"
    assert tracker.get_metrics().correct == 1


def test_resolve_strict_raises_on_second_resolution(tracker: PerformanceTracker) -> None:
    record = tracker.log_prediction("AAPL", "bullish", 0.7, now=T0)
    tracker.resolve_prediction(record.id, "bullish", now=T0)

    with pytest.raises(StateError):
        tracker.resolve_prediction(record.id, "bullish", strict=True)


def test_resolve_unknown_prediction(tracker: PerformanceTracker) -> None:
    with pytest.raises(PredictionNotFoundError):
        tracker.resolve_prediction("pred_0_deadbeef", "bullish")


def test_resolve_from_market_data_respects_window(tracker: PerformanceTracker) -> None:
    old = tracker.log_prediction("AAPL", "bullish", 0.7, 100.0, now=T0)
    fresh = tracker.log_prediction("AAPL", "bullish", 0.7, 100.0, now=T0 + timedelta(days=6))
    no_price = tracker.log_prediction("MSFT", "bearish", 0.6, None, now=T0)
    missing_symbol = tracker.log_prediction("NVDA", "bullish", 0.6, 50.0, now=T0)

    summary = tracker.resolve_from_market_data(
        {"AAPL": 95.0, "MSFT": {"current_price": 400.0}}, now=T0 + timedelta(days=8)
    )

    assert (summary.processed, summary.resolved, summary.remaining) == (4, 1, 3)
    resolved = tracker.get_prediction(old.id)
    assert resolved.actual_outcome == "bearish"
    assert resolved.actual_return == pytest.approx(-0.05)
    assert resolved.correct is False
    for pending in (fresh, no_price, missing_symbol):
        assert tracker.get_prediction(pending.id).resolved is False


def test_snapshot_buckets_and_versions(tracker: PerformanceTracker) -> None:
    for confidence, label, outcome, version in [
        (0.15, "bullish", "bullish", "v1"),
        (0.55, "bullish", "bearish", "v1"),
        (0.95, "bearish", "bearish", "v2"),
        (1.0, "bearish", "bearish", "v2"),
    ]:
        record = tracker.log_prediction("SPY", label, confidence, 100.0, version, now=T0)
        tracker.resolve_prediction(record.id, outcome, actual_return=0.02, now=T0)

    metrics = tracker.get_metrics()

    assert set(metrics.confidence_buckets) == {"0-20%", "40-60%", "80-100%"}
    assert metrics.confidence_buckets["80-100%"].count == 2
    assert metrics.confidence_buckets["40-60%"].accuracy == 0.0
    assert metrics.version_metrics["v1"].accuracy == 0.5
    assert metrics.version_metrics["v2"].accuracy == 1.0
    assert metrics.average_return == pytest.approx(0.02)


def test_confidence_bucket_edges() -> None:
    assert confidence_bucket(0.0) == "0-20%"
    assert confidence_bucket(0.2) == "20-40%"
    assert confidence_bucket(0.7999) == "60-80%"
    assert confidence_bucket(1.0) == "80-100%"


def test_compute_snapshot_without_resolved_predictions(tracker: PerformanceTracker) -> None:
    tracker.log_prediction("AAPL", "bullish", 0.7, now=T0)

    assert compute_snapshot(tracker.get_recent_predictions(), T0) is None
    assert tracker.update_metrics(now=T0) is None
    assert tracker.get_summary()["status"] == "no_data"


def test_weekly_accuracy_is_keyed_on_resolution_time(tracker: PerformanceTracker) -> None:
    _log_and_resolve(tracker, [True] * 10, resolved_at=T0)
    _log_and_resolve(tracker, [True] * 3 + [False] * 7, resolved_at=T0 + timedelta(days=20))

    metrics = tracker.get_metrics()

    assert metrics.accuracy == pytest.approx(0.65)
    assert metrics.weekly_accuracy == pytest.approx(0.30)
    assert metrics.monthly_accuracy == pytest.approx(0.65)


def test_detect_degradation_high_severity(tracker: PerformanceTracker) -> None:
    _log_and_resolve(tracker, [True] * 10, resolved_at=T0)
    _log_and_resolve(tracker, [True] * 3 + [False] * 7, resolved_at=T0 + timedelta(days=20))

    report = tracker.detect_degradation()

    assert report.degraded is True
    assert report.severity == "high"
    assert report.drop == pytest.approx(0.35)
    assert report.recommendation == RETRAIN_RECOMMENDATION


def test_detect_degradation_medium_severity(tracker: PerformanceTracker) -> None:
    _log_and_resolve(tracker, [True] * 8 + [False] * 2, resolved_at=T0)
    _log_and_resolve(tracker, [True] * 7 + [False] * 3, resolved_at=T0 + timedelta(days=20))

    report = tracker.detect_degradation(threshold=0.04)

    # overall 0.75, weekly 0.70
    assert report.degraded is True
    assert report.severity == "medium"


def test_detect_degradation_not_degraded(tracker: PerformanceTracker) -> None:
    _log_and_resolve(tracker, [True] * 6 + [False] * 4, resolved_at=T0)

    report = tracker.detect_degradation()

    assert report.degraded is False
    assert report.drop == pytest.approx(0.0)


def test_detect_degradation_insufficient_data(tracker: PerformanceTracker) -> None:
    report = tracker.detect_degradation()

    assert report.degraded is False
    assert report.reason == "Insufficient data for comparison"


def test_get_summary_formats_percentages(tracker: PerformanceTracker) -> None:
    _log_and_resolve(tracker, [True, True, True, False], resolved_at=T0)

    summary = tracker.get_summary()

    assert summary["status"] == "ok"
    assert summary["overall_accuracy"] == "75.0%"
    assert summary["resolved"] == 4


def test_unresolved_and_recent_ordering(tracker: PerformanceTracker) -> None:
    first = tracker.log_prediction("A", "bullish", 0.6, now=T0)
    second = tracker.log_prediction("B", "bullish", 0.6, now=T0 + timedelta(hours=1))
    tracker.resolve_prediction(first.id, "bullish", now=T0)
    third = tracker.log_prediction("C", "bullish", 0.6, now=T0 + timedelta(hours=2))

    assert [r.id for r in tracker.get_unresolved_predictions()] == [second.id, third.id]
    assert [r.id for r in tracker.get_recent_predictions(2)] == [third.id, second.id]


def test_clean_old_predictions(tracker: PerformanceTracker) -> None:
    ids = [
        tracker.log_prediction("A", "bullish", 0.6, now=T0 + timedelta(minutes=i)).id
        for i in range(5)
    ]

    assert tracker.clean_old_predictions(keep=2) == 3
    assert {r.id for r in tracker.get_recent_predictions()} == set(ids[3:])
    assert tracker.clean_old_predictions(keep=2) == 0


def test_export_to_csv_writes_resolved_only(tracker: PerformanceTracker, tmp_path: Path) -> None:
    record = tracker.log_prediction("AAPL", "bullish", 0.71234, 185.456, "v1", now=T0)
    tracker.resolve_prediction(
        record.id, "bearish", actual_price=180.0, actual_return=-0.0294, now=T0 + timedelta(days=7)
    )
    tracker.log_prediction("MSFT", "bullish", 0.6, now=T0)

    output = tmp_path / "exports" / "predictions.csv"
    rows = tracker.export_to_csv(output)

    assert rows == 1
    with open(output, newline="") as f:
        reader = csv.DictReader(f)
        assert reader.fieldnames == [
            "id",
            "timestamp",
            "symbol",
            "prediction",
            "confidence",
            "price",
            "modelVersion",
            "outcome",
            "actualReturn",
            "actualPrice",
            "resolvedAt",
        ]
        (row,) = list(reader)
    assert row["symbol"] == "AAPL"
    assert row["outcome"] == "incorrect"
    assert float(row["confidence"]) == pytest.approx(0.7123)
    assert float(row["price"]) == pytest.approx(185.46)
