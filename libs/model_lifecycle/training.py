"""
Training orchestration for the N-model ensemble.

Training itself is delegated to a backend; the orchestrator isolates each
model (one failure or timeout never aborts the batch), summarizes the run
and applies the quality gates that decide whether a new version may be
stored and promoted.
"""

from __future__ import annotations

import importlib
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from libs.common.exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_NUM_MODELS = 5
DEFAULT_TIMEOUT_SECONDS = 3600.0
DEFAULT_MIN_ACCURACY = 0.70


@dataclass
class TrainingOutput:
    """What a backend returns for one trained model."""

    artifact_path: Path
    accuracy: float | None = None
    metrics: dict[str, Any] = field(default_factory=dict)


class TrainingBackend(Protocol):
    def train(self, model_index: int, samples: Any | None) -> TrainingOutput:
        """Train ensemble member ``model_index`` (1-based) and return its artifact."""
        ...


@dataclass
class ModelTrainingResult:
    model_index: int
    success: bool
    duration_seconds: float
    artifact_path: Path | None = None
    accuracy: float | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class TrainingSummary:
    total: int
    successful: int
    failed: int
    avg_accuracy: float | None
    min_accuracy: float | None
    max_accuracy: float | None
    total_duration_seconds: float


@dataclass
class TrainingRunResult:
    results: list[ModelTrainingResult]
    summary: TrainingSummary
    started_at: datetime
    finished_at: datetime

    @property
    def successful_results(self) -> list[ModelTrainingResult]:
        return [r for r in self.results if r.success]

    @property
    def failed_results(self) -> list[ModelTrainingResult]:
        return [r for r in self.results if not r.success]

    @property
    def artifact_paths(self) -> list[Path]:
        """Artifacts of successful models, in model order."""
        return [r.artifact_path for r in self.successful_results if r.artifact_path is not None]

    def to_metadata(self) -> dict[str, Any]:
        """Metadata for VersionStore.save_version."""
        return {
            "avg_accuracy": self.summary.avg_accuracy,
            "min_accuracy": self.summary.min_accuracy,
            "max_accuracy": self.summary.max_accuracy,
            "member_accuracies": [r.accuracy for r in self.successful_results],
            "training_duration_seconds": self.summary.total_duration_seconds,
            "failed_models": [r.model_index for r in self.failed_results],
        }


@dataclass
class ValidationReport:
    passed: bool
    issues: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)


def summarize(results: list[ModelTrainingResult], total_duration: float) -> TrainingSummary:
    accuracies = [r.accuracy for r in results if r.success and r.accuracy is not None]
    successful = sum(1 for r in results if r.success)
    return TrainingSummary(
        total=len(results),
        successful=successful,
        failed=len(results) - successful,
        avg_accuracy=sum(accuracies) / len(accuracies) if accuracies else None,
        min_accuracy=min(accuracies) if accuracies else None,
        max_accuracy=max(accuracies) if accuracies else None,
        total_duration_seconds=total_duration,
    )


def resolve_entry_point(target: str) -> Callable[..., Any]:
    """Import ``package.module:attribute``.

    Raises:
        ValueError: If the entry point is malformed or the attribute is missing.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Entry point must look like 'package.module:factory', got {target!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"Entry point {target!r} has no attribute {attr!r}") from e


class TrainingOrchestrator:
    """Trains models ``1..N`` sequentially or on a bounded thread pool.

    A per-model timeout is enforced by waiting on the model's future; a
    timed-out backend call keeps running in its worker thread until it
    returns, but its result is discarded.
    """

    def __init__(
        self,
        backend: TrainingBackend,
        *,
        num_models: int = DEFAULT_NUM_MODELS,
        parallel: bool = False,
        max_workers: int = 2,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        min_accuracy: float = DEFAULT_MIN_ACCURACY,
        min_successful_models: int | None = None,
    ) -> None:
        if num_models < 1:
            raise ValueError(f"num_models must be >= 1, got {num_models}")
        if min_successful_models is not None and not 1 <= min_successful_models <= num_models:
            raise ValueError(
                f"min_successful_models must be within 1..{num_models}, got {min_successful_models}"
            )
        self.backend = backend
        self.num_models = num_models
        self.parallel = parallel
        self.max_workers = max_workers
        self.timeout_seconds = timeout_seconds
        self.min_accuracy = min_accuracy
        self.min_successful_models = min_successful_models or num_models

    def _train_one(self, model_index: int, samples: Any | None) -> ModelTrainingResult:
        logger.info("Training model", extra={"model_index": model_index})
        start = time.monotonic()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"train-model-{model_index}")
        future = executor.submit(self.backend.train, model_index, samples)
        try:
            output = future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError:
            error = f"Training timed out after {self.timeout_seconds:g}s"
            logger.error(error, extra={"model_index": model_index})
            return ModelTrainingResult(
                model_index=model_index,
                success=False,
                duration_seconds=time.monotonic() - start,
                error=error,
            )
        except Exception as e:
            # Backend failures are isolated to this model
            logger.error(
                "Model training failed",
                extra={"model_index": model_index, "error": str(e)},
                exc_info=True,
            )
            return ModelTrainingResult(
                model_index=model_index,
                success=False,
                duration_seconds=time.monotonic() - start,
                error=str(e),
            )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        duration = time.monotonic() - start
        if output.accuracy is not None and not 0.0 <= output.accuracy <= 1.0:
            error = f"Backend reported accuracy outside [0, 1]: {output.accuracy}"
            logger.error(error, extra={"model_index": model_index})
            return ModelTrainingResult(
                model_index=model_index, success=False, duration_seconds=duration, error=error
            )

        logger.info(
            "Model trained",
            extra={
                "model_index": model_index,
                "accuracy": output.accuracy,
                "duration_seconds": round(duration, 3),
            },
        )
        return ModelTrainingResult(
            model_index=model_index,
            success=True,
            duration_seconds=duration,
            artifact_path=Path(output.artifact_path),
            accuracy=output.accuracy,
            metrics=dict(output.metrics),
        )

    def train_all(self, samples: Any | None = None) -> TrainingRunResult:
        """Train every ensemble member; failures are recorded, never raised."""
        started_at = datetime.now(UTC)
        start = time.monotonic()
        indices = range(1, self.num_models + 1)

        if self.parallel:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="train") as pool:
                results = list(pool.map(lambda i: self._train_one(i, samples), indices))
        else:
            results = [self._train_one(i, samples) for i in indices]

        summary = summarize(results, time.monotonic() - start)
        logger.info(
            "Training complete",
            extra={
                "successful": summary.successful,
                "failed": summary.failed,
                "avg_accuracy": summary.avg_accuracy,
                "duration_seconds": round(summary.total_duration_seconds, 3),
                "parallel": self.parallel,
            },
        )
        return TrainingRunResult(
            results=results,
            summary=summary,
            started_at=started_at,
            finished_at=datetime.now(UTC),
        )

    def check_minimum_successful(self, run: TrainingRunResult) -> None:
        """Raise if fewer than ``min_successful_models`` trained successfully.

        Raises:
            ValidationError: If the gate is not met.
        """
        if run.summary.successful < self.min_successful_models:
            failed = [(r.model_index, r.error) for r in run.failed_results]
            raise ValidationError(
                f"Only {run.summary.successful} of {run.summary.total} models trained successfully "
                f"(minimum {self.min_successful_models})",
                issues=[f"Model {i}: {error}" for i, error in failed],
            )

    def validate_models(self, run: TrainingRunResult) -> ValidationReport:
        """Check artifacts exist, nothing failed and average accuracy clears the gate."""
        issues: list[str] = []

        if run.failed_results:
            issues.append(
                f"{len(run.failed_results)} models failed to train: "
                f"{[r.model_index for r in run.failed_results]}"
            )

        for result in run.successful_results:
            if result.artifact_path is None or not result.artifact_path.exists():
                issues.append(f"Model {result.model_index} artifact missing: {result.artifact_path}")

        avg = run.summary.avg_accuracy
        if avg is None:
            issues.append("No accuracy reported by any model")
        elif avg < self.min_accuracy:
            issues.append(
                f"Average accuracy {avg * 100:.2f}% below minimum {self.min_accuracy * 100:.2f}%"
            )

        report = ValidationReport(
            passed=not issues,
            issues=issues,
            metrics={
                "avg_accuracy": avg,
                "min_accuracy": run.summary.min_accuracy,
                "max_accuracy": run.summary.max_accuracy,
                "successful": run.summary.successful,
                "failed": run.summary.failed,
            },
        )
        if report.passed:
            logger.info("Model validation passed", extra=report.metrics)
        else:
            logger.warning("Model validation failed", extra={"issues": issues, **report.metrics})
        return report
