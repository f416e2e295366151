"""
Weekly retrain pipeline.

Steps:
1. Refresh market data (abort when too many symbols fail)
2. Train all ensemble models
3. Minimum-successful-models gate
4. Validate (average accuracy gate; ``force`` bypasses it with a warning)
5. Save a new version with training/refresh metadata
6. Promote to production unless dry run
7. Clean up old versions
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from libs.common.exceptions import LifecycleError, ValidationError
from libs.model_lifecycle.alerts import AlertingService
from libs.model_lifecycle.training import (
    TrainingOrchestrator,
    TrainingSummary,
    ValidationReport,
)
from libs.model_lifecycle.types import CleanupResult
from libs.model_lifecycle.version_store import VersionStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_REFRESH_FAILURE_RATIO = 0.10
DEFAULT_KEEP_VERSIONS = 10


@dataclass
class RefreshSummary:
    total_symbols: int
    successful: int
    failed: int
    total_new_bars: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def failure_ratio(self) -> float:
        return self.failed / self.total_symbols if self.total_symbols else 0.0


class DataRefresher(Protocol):
    def refresh_all(self) -> RefreshSummary:
        """Incrementally update market data for every tracked symbol."""
        ...


@dataclass
class RetrainReport:
    version_id: str
    deployed: bool
    dry_run: bool
    forced: bool
    training: TrainingSummary
    validation: ValidationReport
    cleanup: CleanupResult
    refresh: RefreshSummary | None = None
    previous_version_id: str | None = None


class WeeklyRetrainPipeline:
    """Runs refresh -> train -> validate -> save -> promote -> cleanup."""

    def __init__(
        self,
        orchestrator: TrainingOrchestrator,
        version_store: VersionStore,
        *,
        refresher: DataRefresher | None = None,
        alerting: AlertingService | None = None,
        max_refresh_failure_ratio: float = DEFAULT_MAX_REFRESH_FAILURE_RATIO,
        keep_versions: int = DEFAULT_KEEP_VERSIONS,
    ) -> None:
        self.orchestrator = orchestrator
        self.version_store = version_store
        self.refresher = refresher
        self.alerting = alerting
        self.max_refresh_failure_ratio = max_refresh_failure_ratio
        self.keep_versions = keep_versions

    def _refresh(self) -> RefreshSummary | None:
        if self.refresher is None:
            logger.info("No data refresher configured; skipping data refresh")
            return None

        summary = self.refresher.refresh_all()
        logger.info(
            "Data refresh complete",
            extra={
                "total_symbols": summary.total_symbols,
                "successful": summary.successful,
                "failed": summary.failed,
                "new_bars": summary.total_new_bars,
            },
        )
        if summary.failure_ratio > self.max_refresh_failure_ratio:
            if self.alerting is not None:
                self.alerting.alert_data_refresh_failure(
                    summary.failed, summary.total_symbols, summary.errors
                )
            raise ValidationError(
                f"Too many data refresh failures: {summary.failed}/{summary.total_symbols}",
                issues=summary.errors,
            )
        return summary

    def run(self, *, dry_run: bool = False, force: bool = False, samples: Any | None = None) -> RetrainReport:
        """Execute the pipeline.

        Raises:
            ValidationError: On refresh failure ratio, too few successful
                models, or failed validation without ``force``.
            LifecycleError: If storing or promoting the version fails.
        """
        logger.info("Weekly retrain started", extra={"dry_run": dry_run, "force": force})

        refresh = self._refresh()

        run = self.orchestrator.train_all(samples)
        try:
            self.orchestrator.check_minimum_successful(run)
        except ValidationError:
            if self.alerting is not None:
                self.alerting.alert_training_failure(
                    run.summary.failed,
                    details={"errors": {r.model_index: r.error for r in run.failed_results}},
                )
            raise

        validation = self.orchestrator.validate_models(run)
        if not validation.passed:
            if not force:
                if self.alerting is not None:
                    self.alerting.alert_validation_failure(validation.issues)
                raise ValidationError("Validation failed. Use --force to deploy anyway.", validation.issues)
            logger.warning(
                "Validation failed but force specified; continuing",
                extra={"issues": validation.issues},
            )

        metadata: dict[str, Any] = {
            **run.to_metadata(),
            "validation_passed": validation.passed,
            "automated": True,
            "training_type": "weekly-retrain",
        }
        if refresh is not None:
            metadata["data_refresh"] = {
                "total_symbols": refresh.total_symbols,
                "new_bars": refresh.total_new_bars,
            }
        version = self.version_store.save_version(run.artifact_paths, metadata)
        self.version_store.save_performance_metrics(
            version.version_id,
            {
                "training": asdict(run.summary),
                "validation": asdict(validation),
                "data_refresh": asdict(refresh) if refresh is not None else None,
            },
        )

        pointer = self.version_store.get_production_pointer()
        previous_version_id = pointer.version_id if pointer else None
        deployed = False
        if dry_run:
            logger.info("Dry run: skipping production deployment", extra={"version_id": version.version_id})
        else:
            try:
                self.version_store.set_production(version.version_id, changed_by="weekly_retrain")
            except LifecycleError as e:
                if self.alerting is not None:
                    self.alerting.alert_deployment_failure(
                        f"Failed to deploy {version.version_id}: {e}",
                        details={"version_id": version.version_id},
                    )
                raise
            deployed = True

        cleanup = self.version_store.cleanup_old_versions(self.keep_versions)

        logger.info(
            "Weekly retrain complete",
            extra={
                "version_id": version.version_id,
                "deployed": deployed,
                "previous_version_id": previous_version_id,
                "avg_accuracy": run.summary.avg_accuracy,
                "versions_deleted": cleanup.deleted,
            },
        )
        return RetrainReport(
            version_id=version.version_id,
            deployed=deployed,
            dry_run=dry_run,
            forced=force and not validation.passed,
            training=run.summary,
            validation=validation,
            cleanup=cleanup,
            refresh=refresh,
            previous_version_id=previous_version_id,
        )
