"""
Live prediction tracking and accuracy aggregation.

Every production prediction is logged, later resolved against market data,
and the PerformanceSnapshot is recomputed wholesale after each resolution
event. Weekly/monthly accuracy windows are keyed on resolution time.
"""

from __future__ import annotations

import logging
import secrets
from collections import defaultdict
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import numpy as np
import polars as pl

from libs.common.exceptions import PredictionNotFoundError, StateError
from libs.model_lifecycle.state_store import StateStore
from libs.model_lifecycle.types import (
    BucketStats,
    DegradationReport,
    PerformanceSnapshot,
    PredictionLabel,
    PredictionRecord,
    ResolutionSummary,
    VersionStats,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 10_000
DEFAULT_RESOLUTION_WINDOW_DAYS = 7
DEFAULT_DEGRADATION_THRESHOLD = 0.05
RETRAIN_RECOMMENDATION = "Consider retraining models with latest data"

# (label, upper bound exclusive); the last bucket also holds confidence == 1.0
CONFIDENCE_BUCKETS: tuple[tuple[str, float], ...] = (
    ("0-20%", 0.20),
    ("20-40%", 0.40),
    ("40-60%", 0.60),
    ("60-80%", 0.80),
    ("80-100%", float("inf")),
)

CSV_COLUMNS = [
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


def generate_prediction_id(now: datetime) -> str:
    return f"pred_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def confidence_bucket(confidence: float) -> str:
    for label, upper in CONFIDENCE_BUCKETS:
        if confidence < upper:
            return label
    return CONFIDENCE_BUCKETS[-1][0]


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if values else 0.0


def _accuracy(records: Sequence[PredictionRecord]) -> float | None:
    if not records:
        return None
    return sum(1 for r in records if r.correct) / len(records)


def compute_snapshot(
    records: Sequence[PredictionRecord], now: datetime | None = None
) -> PerformanceSnapshot | None:
    """Recompute every aggregate from the full prediction list.

    Returns None when no prediction is resolved.
    """
    now = now or datetime.now(UTC)
    resolved = [r for r in records if r.resolved]
    if not resolved:
        return None

    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)
    weekly = [r for r in resolved if r.resolved_at is not None and r.resolved_at >= week_ago]
    monthly = [r for r in resolved if r.resolved_at is not None and r.resolved_at >= month_ago]

    buckets: dict[str, list[PredictionRecord]] = defaultdict(list)
    versions: dict[str, list[PredictionRecord]] = defaultdict(list)
    for record in resolved:
        buckets[confidence_bucket(record.confidence)].append(record)
        versions[record.model_version].append(record)

    confidence_buckets = {
        label: BucketStats(
            count=len(buckets[label]),
            accuracy=_accuracy(buckets[label]) or 0.0,
            avg_confidence=_mean([r.confidence for r in buckets[label]]),
        )
        for label, _ in CONFIDENCE_BUCKETS
        if buckets[label]
    }
    version_metrics = {
        version: VersionStats(
            count=len(group),
            accuracy=_accuracy(group) or 0.0,
            avg_confidence=_mean([r.confidence for r in group]),
            avg_return=_mean([r.actual_return for r in group if r.actual_return is not None]),
        )
        for version, group in versions.items()
    }

    correct = sum(1 for r in resolved if r.correct)
    return PerformanceSnapshot(
        last_updated=now,
        total_predictions=len(records),
        resolved_predictions=len(resolved),
        unresolved_predictions=len(records) - len(resolved),
        accuracy=correct / len(resolved),
        weekly_accuracy=_accuracy(weekly),
        monthly_accuracy=_accuracy(monthly),
        confidence_buckets=confidence_buckets,
        version_metrics=version_metrics,
        correct=correct,
        incorrect=len(resolved) - correct,
        average_confidence=_mean([r.confidence for r in resolved]),
        average_return=_mean([r.actual_return for r in resolved if r.actual_return is not None]),
    )


def _snapshot_price(value: Any) -> float | None:
    """Accept a bare price or a mapping carrying ``current_price``."""
    if isinstance(value, Mapping):
        value = value.get("current_price", value.get("currentPrice"))
    if value is None:
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


class PerformanceTracker:
    """Tracks production predictions and their realised outcomes.

    State is one document ``{"predictions": [...], "metrics": {...}}`` in the
    given StateStore; every mutation goes through a single transaction.
    """

    def __init__(
        self,
        state_store: StateStore,
        *,
        max_history: int = DEFAULT_MAX_HISTORY,
        resolution_window_days: int = DEFAULT_RESOLUTION_WINDOW_DAYS,
        degradation_threshold: float = DEFAULT_DEGRADATION_THRESHOLD,
    ) -> None:
        if max_history < 1:
            raise ValueError(f"max_history must be >= 1, got {max_history}")
        self._store = state_store
        self.max_history = max_history
        self.resolution_window = timedelta(days=resolution_window_days)
        self.degradation_threshold = degradation_threshold

    @staticmethod
    def _records(state: Mapping[str, Any]) -> list[PredictionRecord]:
        return [PredictionRecord.model_validate(p) for p in state.get("predictions", [])]

    @staticmethod
    def _dump(records: Sequence[PredictionRecord]) -> list[dict[str, Any]]:
        return [r.model_dump(mode="json") for r in records]

    def _store_metrics(
        self, state: dict[str, Any], records: Sequence[PredictionRecord], now: datetime
    ) -> PerformanceSnapshot | None:
        snapshot = compute_snapshot(records, now)
        state["metrics"] = snapshot.model_dump(mode="json") if snapshot else None
        return snapshot

    # =========================================================================
    # Logging & resolution
    # =========================================================================

    def log_prediction(
        self,
        symbol: str,
        predicted_label: str,
        confidence: float,
        price: float | None = None,
        model_version: str = "unknown",
        *,
        now: datetime | None = None,
    ) -> PredictionRecord:
        """Record a production prediction; persisted before returning.

        Raises:
            ValueError: If the label is not bullish/bearish or confidence is
                outside [0, 1].
        """
        label = PredictionLabel(predicted_label).value
        now = now or datetime.now(UTC)
        record = PredictionRecord(
            id=generate_prediction_id(now),
            timestamp=now,
            symbol=symbol,
            predicted_label=label,
            confidence=confidence,
            price=price,
            model_version=model_version,
        )

        with self._store.transaction() as state:
            predictions = state.setdefault("predictions", [])
            predictions.append(record.model_dump(mode="json"))
            if len(predictions) > self.max_history:
                pruned = len(predictions) - self.max_history
                del predictions[:pruned]
                logger.debug("Pruned prediction history", extra={"pruned": pruned})

        logger.info(
            "Logged prediction",
            extra={
                "prediction_id": record.id,
                "symbol": symbol,
                "prediction": label,
                "confidence": confidence,
                "model_version": model_version,
            },
        )
        return record

    def resolve_prediction(
        self,
        prediction_id: str,
        actual_outcome: str,
        *,
        actual_price: float | None = None,
        actual_return: float | None = None,
        strict: bool = False,
        now: datetime | None = None,
    ) -> PredictionRecord:
        """Attach the realised outcome to a prediction and refresh metrics.

        Resolving an already-resolved prediction leaves it unchanged and logs
        a warning (or raises StateError when ``strict``).

        Raises:
            PredictionNotFoundError: If the id is unknown.
            StateError: If already resolved and ``strict`` is set.
        """
        outcome = PredictionLabel(actual_outcome).value
        now = now or datetime.now(UTC)

        with self._store.transaction() as state:
            records = self._records(state)
            index = next((i for i, r in enumerate(records) if r.id == prediction_id), None)
            if index is None:
                raise PredictionNotFoundError(prediction_id)

            existing = records[index]
            if existing.resolved:
                if strict:
                    raise StateError(f"Prediction already resolved: {prediction_id}")
                logger.warning(
                    "Prediction already resolved; ignoring",
                    extra={"prediction_id": prediction_id},
                )
                return existing

            resolved = existing.model_copy(
                update={
                    "resolved": True,
                    "actual_outcome": outcome,
                    "actual_price": actual_price,
                    "actual_return": actual_return,
                    "resolved_at": now,
                }
            )
            records[index] = resolved
            state["predictions"] = self._dump(records)
            self._store_metrics(state, records, now)

        logger.info(
            "Resolved prediction",
            extra={
                "prediction_id": prediction_id,
                "correct": resolved.correct,
                "actual_return": actual_return,
            },
        )
        return resolved

    def resolve_from_market_data(
        self, snapshot: Mapping[str, Any], *, now: datetime | None = None
    ) -> ResolutionSummary:
        """Resolve every prediction older than the resolution window.

        ``snapshot`` maps symbol to a current price (float or a mapping with
        ``current_price``). Predictions without a usable recorded price, or
        whose symbol is absent from the snapshot, stay unresolved.
        """
        now = now or datetime.now(UTC)
        resolved_count = 0

        with self._store.transaction() as state:
            records = self._records(state)
            unresolved = [i for i, r in enumerate(records) if not r.resolved]
            for index in unresolved:
                record = records[index]
                if now - record.timestamp < self.resolution_window:
                    continue
                current_price = _snapshot_price(snapshot.get(record.symbol))
                if current_price is None or not record.price:
                    continue

                actual_return = (current_price - record.price) / record.price
                actual_outcome = (
                    PredictionLabel.bullish if actual_return > 0 else PredictionLabel.bearish
                )
                records[index] = record.model_copy(
                    update={
                        "resolved": True,
                        "actual_outcome": actual_outcome.value,
                        "actual_price": current_price,
                        "actual_return": actual_return,
                        "resolved_at": now,
                    }
                )
                resolved_count += 1

            if resolved_count:
                state["predictions"] = self._dump(records)
                self._store_metrics(state, records, now)

        summary = ResolutionSummary(
            processed=len(unresolved),
            resolved=resolved_count,
            remaining=len(unresolved) - resolved_count,
        )
        logger.info(
            "Resolved predictions from market data",
            extra={
                "processed": summary.processed,
                "resolved": summary.resolved,
                "remaining": summary.remaining,
            },
        )
        return summary

    # =========================================================================
    # Metrics
    # =========================================================================

    def update_metrics(self, *, now: datetime | None = None) -> PerformanceSnapshot | None:
        """Recompute and persist the snapshot; None when nothing is resolved."""
        now = now or datetime.now(UTC)
        with self._store.transaction() as state:
            return self._store_metrics(state, self._records(state), now)

    def get_metrics(self) -> PerformanceSnapshot | None:
        """Last persisted snapshot."""
        metrics = self._store.load().get("metrics")
        return PerformanceSnapshot.model_validate(metrics) if metrics else None

    def get_summary(self) -> dict[str, Any]:
        """Display-ready summary of the last snapshot."""
        metrics = self.get_metrics()
        if metrics is None:
            return {"status": "no_data", "message": "No resolved predictions yet"}

        def pct(value: float | None) -> str:
            return f"{value * 100:.1f}%" if value is not None else "N/A"

        return {
            "status": "ok",
            "total_predictions": metrics.total_predictions,
            "resolved": metrics.resolved_predictions,
            "unresolved": metrics.unresolved_predictions,
            "overall_accuracy": pct(metrics.accuracy),
            "weekly_accuracy": pct(metrics.weekly_accuracy),
            "monthly_accuracy": pct(metrics.monthly_accuracy),
            "correct": metrics.correct,
            "incorrect": metrics.incorrect,
            "average_confidence": pct(metrics.average_confidence),
            "average_return": f"{metrics.average_return * 100:.2f}%",
            "confidence_buckets": {
                label: stats.model_dump() for label, stats in metrics.confidence_buckets.items()
            },
            "last_updated": metrics.last_updated.isoformat(),
        }

    def detect_degradation(self, threshold: float | None = None) -> DegradationReport:
        """Compare weekly accuracy against overall accuracy.

        Severity is ``high`` when the drop exceeds twice the threshold.
        """
        threshold = self.degradation_threshold if threshold is None else threshold
        metrics = self.get_metrics()
        if metrics is None or metrics.weekly_accuracy is None:
            return DegradationReport(degraded=False, reason="Insufficient data for comparison")

        drop = metrics.accuracy - metrics.weekly_accuracy
        if drop > threshold:
            report = DegradationReport(
                degraded=True,
                severity="high" if drop > 2 * threshold else "medium",
                drop=drop,
                overall_accuracy=metrics.accuracy,
                weekly_accuracy=metrics.weekly_accuracy,
                reason=f"Weekly accuracy dropped by {drop * 100:.1f}%",
                recommendation=RETRAIN_RECOMMENDATION,
            )
            logger.warning(
                "Performance degradation detected",
                extra={
                    "severity": report.severity,
                    "drop": drop,
                    "overall_accuracy": metrics.accuracy,
                    "weekly_accuracy": metrics.weekly_accuracy,
                },
            )
            return report

        return DegradationReport(
            degraded=False,
            drop=drop,
            overall_accuracy=metrics.accuracy,
            weekly_accuracy=metrics.weekly_accuracy,
        )

    # =========================================================================
    # Queries & maintenance
    # =========================================================================

    def get_prediction(self, prediction_id: str) -> PredictionRecord:
        for record in self._records(self._store.load()):
            if record.id == prediction_id:
                return record
        raise PredictionNotFoundError(prediction_id)

    def get_unresolved_predictions(self, limit: int | None = None) -> list[PredictionRecord]:
        """Unresolved predictions, oldest first."""
        unresolved = [r for r in self._records(self._store.load()) if not r.resolved]
        unresolved.sort(key=lambda r: r.timestamp)
        return unresolved[:limit] if limit is not None else unresolved

    def get_recent_predictions(self, limit: int = 100) -> list[PredictionRecord]:
        """Most recent predictions, newest first."""
        records = self._records(self._store.load())
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:limit]

    def clean_old_predictions(self, keep: int = 5000) -> int:
        """Keep only the ``keep`` newest predictions; returns how many were removed."""
        if keep < 0:
            raise ValueError(f"keep must be >= 0, got {keep}")
        with self._store.transaction() as state:
            records = self._records(state)
            if len(records) <= keep:
                return 0
            records.sort(key=lambda r: r.timestamp)
            removed = len(records) - keep
            kept = records[removed:]
            state["predictions"] = self._dump(kept)
            self._store_metrics(state, kept, datetime.now(UTC))

        logger.info("Cleaned old predictions", extra={"removed": removed, "kept": keep})
        return removed

    def export_to_csv(self, output_path: Path) -> int:
        """Write resolved predictions to CSV; returns the number of rows."""
        resolved = [r for r in self._records(self._store.load()) if r.resolved]
        rows = [
            {
                "id": r.id,
                "timestamp": r.timestamp.isoformat(),
                "symbol": r.symbol,
                "prediction": r.predicted_label,
                "confidence": round(r.confidence, 4),
                "price": round(r.price, 2) if r.price is not None else None,
                "modelVersion": r.model_version,
                "outcome": "correct" if r.correct else "incorrect",
                "actualReturn": round(r.actual_return, 4) if r.actual_return is not None else None,
                "actualPrice": round(r.actual_price, 2) if r.actual_price is not None else None,
                "resolvedAt": r.resolved_at.isoformat() if r.resolved_at else None,
            }
            for r in resolved
        ]
        schema = {
            "id": pl.Utf8,
            "timestamp": pl.Utf8,
            "symbol": pl.Utf8,
            "prediction": pl.Utf8,
            "confidence": pl.Float64,
            "price": pl.Float64,
            "modelVersion": pl.Utf8,
            "outcome": pl.Utf8,
            "actualReturn": pl.Float64,
            "actualPrice": pl.Float64,
            "resolvedAt": pl.Utf8,
        }
        df = pl.DataFrame(rows, schema=schema)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        df.select(CSV_COLUMNS).write_csv(output_path)

        logger.info("Exported predictions", extra={"path": str(output_path), "rows": len(rows)})
        return len(rows)
