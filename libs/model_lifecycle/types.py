"""
Core data models for the model lifecycle subsystem.

This module provides:
- VersionMetadata / ModelVersion: immutable versioned ensemble artifacts
- ProductionPointer: one entry of the append-only production history
- PredictionRecord: live prediction with a derived ``correct`` field
- PerformanceSnapshot: wholesale-recomputed accuracy aggregates
- ShadowTest and its results: side-by-side production vs candidate run
- Result types returned by store, tracker and controller operations

Key design decisions:
- Pydantic models for everything that is persisted (JSON round-trip)
- Frozen models; state changes produce copies via ``model_copy(update=...)``
- All timestamps are timezone-aware UTC
- ``correct`` is computed from predicted vs actual label, never assigned
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, computed_field, field_validator

VERSION_ID_PATTERN = r"^v\d{8}_\d{6}_[0-9a-f]{6}$"


def _require_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")
    offset = v.utcoffset()
    if offset is None or offset.total_seconds() != 0:
        raise ValueError("timestamp must be UTC")
    return v


def _require_utc_or_none(v: datetime | None) -> datetime | None:
    return None if v is None else _require_utc(v)


class PredictionLabel(str, Enum):
    """Direction predicted by a model and observed in the market."""

    bullish = "bullish"
    bearish = "bearish"


class PointerAction(str, Enum):
    """How a production pointer entry was created."""

    promote = "promote"
    rollback = "rollback"


class ShadowTestStatus(str, Enum):
    """Shadow test lifecycle states.

    State transitions:
    - running -> completed (end_shadow_mode, exactly once)
    """

    running = "running"
    completed = "completed"


class ShadowArm(str, Enum):
    """Which side of a shadow test a prediction belongs to."""

    production = "production"
    candidate = "candidate"


class Decision(str, Enum):
    """Promotion recommendation."""

    DEPLOY = "DEPLOY"
    REJECT = "REJECT"


# =============================================================================
# Versions
# =============================================================================


class VersionMetadata(BaseModel):
    """Metadata sidecar written next to each version's artifacts.

    Unknown keys supplied at save time are preserved under ``extra``.
    """

    version_id: str = Field(..., pattern=VERSION_ID_PATTERN)
    timestamp: datetime = Field(..., description="Creation timestamp (UTC)")
    num_models: int = Field(..., ge=1)
    git_commit: str | None = None
    git_branch: str | None = None
    avg_accuracy: float | None = None
    min_accuracy: float | None = None
    max_accuracy: float | None = None
    member_accuracies: list[float | None] = Field(default_factory=list)
    training_duration_seconds: float | None = None
    notes: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("timestamp")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return _require_utc(v)


class ModelVersion(BaseModel):
    """An immutable, stored ensemble version."""

    version_id: str
    path: Path
    artifact_paths: list[Path]
    metadata: VersionMetadata
    created_at: datetime

    model_config = {"frozen": True}


class ProductionPointer(BaseModel):
    """One committed production pointer entry.

    The latest entry is the current production version.
    """

    sequence: int
    version_id: str
    action: PointerAction
    set_at: datetime
    changed_by: str = "unknown"

    model_config = {"frozen": True}


class StoreManifest(BaseModel):
    """Store-level manifest mirroring the production pointer for quick status checks."""

    store_version: str = Field("1.0.0", description="Schema version")
    created_at: datetime
    last_updated: datetime
    version_count: int = 0
    production_version_id: str | None = None
    production_set_at: datetime | None = None
    total_size_bytes: int = 0

    model_config = {"extra": "forbid"}

    @field_validator("created_at", "last_updated")
    @classmethod
    def validate_utc_manifest(cls, v: datetime) -> datetime:
        return _require_utc(v)


# =============================================================================
# Predictions & performance
# =============================================================================


class PredictionRecord(BaseModel):
    """A logged production prediction.

    Resolved exactly once; ``correct`` is derived from the labels.
    """

    id: str
    timestamp: datetime
    symbol: str
    predicted_label: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    price: float | None = Field(None, description="Price when the prediction was made")
    model_version: str = "unknown"
    resolved: bool = False
    actual_outcome: str | None = None
    actual_return: float | None = None
    actual_price: float | None = None
    resolved_at: datetime | None = None

    # extra="ignore" so the serialized ``correct`` is dropped on reload
    model_config = {"frozen": True, "extra": "ignore"}

    @field_validator("timestamp", "resolved_at")
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return _require_utc_or_none(v)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def correct(self) -> bool | None:
        if not self.resolved or self.actual_outcome is None:
            return None
        return self.predicted_label == self.actual_outcome


class BucketStats(BaseModel):
    count: int
    accuracy: float
    avg_confidence: float


class VersionStats(BaseModel):
    count: int
    accuracy: float
    avg_confidence: float
    avg_return: float


class PerformanceSnapshot(BaseModel):
    """Aggregate over all resolved predictions."""

    last_updated: datetime
    total_predictions: int
    resolved_predictions: int
    unresolved_predictions: int
    accuracy: float
    weekly_accuracy: float | None
    monthly_accuracy: float | None
    confidence_buckets: dict[str, BucketStats] = Field(default_factory=dict)
    version_metrics: dict[str, VersionStats] = Field(default_factory=dict)
    correct: int
    incorrect: int
    average_confidence: float
    average_return: float


# =============================================================================
# Shadow testing
# =============================================================================


class ShadowPrediction(BaseModel):
    """A prediction made by one arm of a shadow test."""

    timestamp: datetime
    symbol: str
    predicted_label: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    features: list[float] | dict[str, float] | None = None
    resolved: bool = False
    actual_price: float | None = None
    actual_outcome: str | None = None
    resolved_at: datetime | None = None

    model_config = {"frozen": True, "extra": "ignore"}

    @field_validator("timestamp", "resolved_at")
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return _require_utc_or_none(v)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def correct(self) -> bool | None:
        if not self.resolved or self.actual_outcome is None:
            return None
        return self.predicted_label == self.actual_outcome


class ArmPredictions(BaseModel):
    production: list[ShadowPrediction] = Field(default_factory=list)
    candidate: list[ShadowPrediction] = Field(default_factory=list)

    model_config = {"frozen": True}

    def for_arm(self, arm: ShadowArm) -> list[ShadowPrediction]:
        return self.production if arm is ShadowArm.production else self.candidate


class ArmMetrics(BaseModel):
    """Accuracy aggregate for one arm of a shadow test."""

    total_predictions: int = 0
    correct: int = 0
    incorrect: int = 0
    accuracy: float = 0.0
    avg_confidence: float = 0.0


class ComparisonResult(BaseModel):
    """Outcome of a two-proportion z-test between production and candidate."""

    production_n: int
    candidate_n: int
    production_correct: int
    candidate_correct: int
    production_accuracy: float
    candidate_accuracy: float
    accuracy_difference: float
    percent_improvement: float | None
    standard_error: float
    z_score: float
    p_value: float
    confidence_interval: tuple[float, float]
    significance_level: float
    significant: bool
    insufficient_data: bool = False
    reason: str | None = None


class Recommendation(BaseModel):
    """Promotion decision with every reason behind it."""

    decision: Decision
    reasons: list[str] = Field(default_factory=list)
    failed_checks: list[str] = Field(default_factory=list)
    production_accuracy: float
    candidate_accuracy: float
    accuracy_difference: float


class ShadowTestResults(BaseModel):
    production_metrics: ArmMetrics
    candidate_metrics: ArmMetrics
    comparison: ComparisonResult
    recommendation: Recommendation
    ended_at: datetime


class ShadowTest(BaseModel):
    """A time-boxed side-by-side run of production vs candidate."""

    test_id: str
    production_version_id: str
    candidate_version_id: str
    start_date: datetime
    end_date: datetime
    duration_days: float
    status: ShadowTestStatus = ShadowTestStatus.running
    predictions: ArmPredictions = Field(default_factory=ArmPredictions)
    ended_at: datetime | None = None
    results: ShadowTestResults | None = None
    deployed: bool = False
    deployed_at: datetime | None = None

    model_config = {"frozen": True}

    @property
    def is_running(self) -> bool:
        return self.status is ShadowTestStatus.running


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class CleanupResult:
    """Result of version cleanup."""

    deleted: int
    kept: int
    deleted_ids: list[str] = field(default_factory=list)
    retained_ids: list[str] = field(default_factory=list)


@dataclass
class ResolutionSummary:
    """Result of batch resolution against market data."""

    processed: int
    resolved: int
    remaining: int


@dataclass
class DegradationReport:
    """Result of comparing weekly accuracy with overall accuracy."""

    degraded: bool
    severity: str | None = None
    drop: float | None = None
    overall_accuracy: float | None = None
    weekly_accuracy: float | None = None
    reason: str | None = None
    recommendation: str | None = None


@dataclass
class DeploymentResult:
    """Result of an automatic deployment attempt."""

    deployed: bool
    test_id: str
    version_id: str | None = None
    previous_version_id: str | None = None
    reason: str | None = None
    reasons: list[str] = field(default_factory=list)
    already_deployed: bool = False
    deployed_at: datetime | None = None
