"""
Model lifecycle and deployment decisions for the ensemble predictor.

This module provides:
- VersionStore: DuckDB-catalogued immutable versions plus a production pointer
- PerformanceTracker: live prediction logging, resolution and accuracy metrics
- StatisticalComparator: two-proportion z-test between production and candidate
- ShadowTestManager / PromotionPolicy: shadow-mode runs and DEPLOY/REJECT decisions
- DeploymentController: single-shot promotion and rollback
- TrainingOrchestrator / WeeklyRetrainPipeline: N-model training and gating
- EnsembleConsensusEngine: N model confidences -> BUY/HOLD

Example Usage:

    from pathlib import Path

    from libs.model_lifecycle import (
        DeploymentController,
        JsonFileStateStore,
        ShadowTestManager,
        VersionStore,
    )

    store = VersionStore(Path("data/lifecycle/models"))
    version = store.save_version(
        [Path("build/model-1"), Path("build/model-2")],
        {"avg_accuracy": 0.74},
    )

    shadow = ShadowTestManager(store, JsonFileStateStore(Path("data/lifecycle/data/shadow-tests.json")))
    test = shadow.start_shadow_mode(version.version_id, duration_days=7)
    # ... log and resolve predictions for both arms ...
    results = shadow.end_shadow_mode(test.test_id)

    DeploymentController(store, shadow).auto_deploy(test.test_id)
"""

from libs.model_lifecycle.alerts import (
    Alert,
    AlertingService,
    AlertSeverity,
    AlertType,
    SlackNotifier,
)
from libs.model_lifecycle.deployment import DeploymentController
from libs.model_lifecycle.ensemble import (
    ConsensusConfig,
    ConsensusSignal,
    EnsembleConsensusEngine,
    Signal,
)
from libs.model_lifecycle.performance import PerformanceTracker, compute_snapshot
from libs.model_lifecycle.retrain import RefreshSummary, RetrainReport, WeeklyRetrainPipeline
from libs.model_lifecycle.shadow import PromotionPolicy, ShadowTestManager
from libs.model_lifecycle.state_store import DuckDBStateStore, JsonFileStateStore, StateStore
from libs.model_lifecycle.statistics import StatisticalComparator, normal_cdf
from libs.model_lifecycle.training import (
    TrainingOrchestrator,
    TrainingOutput,
    TrainingRunResult,
    TrainingSummary,
    ValidationReport,
)
from libs.model_lifecycle.types import (
    ComparisonResult,
    Decision,
    DeploymentResult,
    ModelVersion,
    PerformanceSnapshot,
    PredictionRecord,
    ProductionPointer,
    Recommendation,
    ShadowArm,
    ShadowPrediction,
    ShadowTest,
    ShadowTestResults,
    ShadowTestStatus,
    VersionMetadata,
)
from libs.model_lifecycle.version_store import VersionStore

__all__ = [
    # Storage
    "VersionStore",
    "StateStore",
    "JsonFileStateStore",
    "DuckDBStateStore",
    # Types
    "ModelVersion",
    "VersionMetadata",
    "ProductionPointer",
    "PredictionRecord",
    "PerformanceSnapshot",
    "ShadowArm",
    "ShadowPrediction",
    "ShadowTest",
    "ShadowTestStatus",
    "ShadowTestResults",
    "ComparisonResult",
    "Recommendation",
    "Decision",
    "DeploymentResult",
    # Components
    "PerformanceTracker",
    "compute_snapshot",
    "StatisticalComparator",
    "normal_cdf",
    "ShadowTestManager",
    "PromotionPolicy",
    "DeploymentController",
    "TrainingOrchestrator",
    "TrainingOutput",
    "TrainingRunResult",
    "TrainingSummary",
    "ValidationReport",
    "WeeklyRetrainPipeline",
    "RefreshSummary",
    "RetrainReport",
    "EnsembleConsensusEngine",
    "ConsensusConfig",
    "ConsensusSignal",
    "Signal",
    # Alerts
    "AlertingService",
    "Alert",
    "AlertType",
    "SlackNotifier",
    "AlertSeverity",
]
