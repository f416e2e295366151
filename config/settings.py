"""
Lifecycle settings loaded from environment variables.

Uses Pydantic Settings for type-safe configuration with validation.
All settings can be overridden via environment variables or .env file.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Model lifecycle configuration.

    All settings are loaded from environment variables or .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    lifecycle_root: Path = Field(
        default=Path("data/lifecycle"),
        description="Root directory holding the version store, shadow tests and predictions",
    )

    # Shadow testing / promotion gate
    shadow_duration_days: int = Field(
        default=7,
        ge=1,
        le=90,
        description="Default shadow test duration in days",
    )
    significance_level: float = Field(
        default=0.05,
        gt=0.0,
        lt=1.0,
        description="p-value threshold for the two-proportion z-test",
    )
    min_improvement: float = Field(
        default=0.01,
        ge=0.0,
        le=1.0,
        description="Minimum accuracy improvement (fraction, 0.01 = 1 point) for promotion",
    )

    # Performance tracking
    resolution_window_days: int = Field(
        default=7,
        ge=0,
        description="Minimum prediction age before it is resolved against market data",
    )
    max_prediction_history: int = Field(
        default=10_000,
        ge=1,
        description="Retention cap for tracked predictions (oldest pruned first)",
    )
    degradation_threshold: float = Field(
        default=0.05,
        gt=0.0,
        le=1.0,
        description="Overall-minus-weekly accuracy drop that counts as degradation",
    )

    # Training
    num_models: int = Field(default=5, ge=1, description="Ensemble size")
    min_training_accuracy: float = Field(
        default=0.70,
        ge=0.0,
        le=1.0,
        description="Validation gate on average ensemble accuracy",
    )
    min_successful_models: int | None = Field(
        default=None,
        ge=1,
        description="Minimum models that must train successfully (default: all)",
    )
    parallel_training: bool = Field(default=False, description="Train models concurrently")
    max_training_workers: int = Field(default=2, ge=1, description="Bounded training pool size")
    training_timeout_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Per-model training timeout; exceeding it fails only that model",
    )
    training_backend: str | None = Field(
        default=None,
        description="Dotted path 'package.module:factory' returning a training backend",
    )
    data_refresher: str | None = Field(
        default=None,
        description="Dotted path 'package.module:factory' returning a market data refresher",
    )
    max_refresh_failure_ratio: float = Field(
        default=0.10,
        ge=0.0,
        le=1.0,
        description="Abort the retrain when more than this fraction of symbols fail to refresh",
    )
    keep_versions: int = Field(default=10, ge=1, description="Versions kept by cleanup")

    # Ensemble consensus
    min_individual_confidence: float = Field(default=0.45, ge=0.0, le=1.0)
    min_average_confidence: float = Field(default=0.50, ge=0.0, le=1.0)
    max_disagreement: float = Field(default=0.15, ge=0.0, le=1.0)

    # Alerting
    slack_webhook_url: str | None = Field(
        default=None,
        description="Slack incoming webhook that receives every alert (disabled when unset)",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    @model_validator(mode="after")
    def validate_min_successful(self) -> "Settings":
        """Reject a successful-model gate larger than the ensemble."""
        if self.min_successful_models is not None and self.min_successful_models > self.num_models:
            raise ValueError(
                f"min_successful_models ({self.min_successful_models}) "
                f"exceeds num_models ({self.num_models})"
            )
        return self

    @property
    def versions_dir(self) -> Path:
        return self.lifecycle_root / "models"

    @property
    def shadow_state_path(self) -> Path:
        return self.lifecycle_root / "data" / "shadow-tests.json"

    @property
    def predictions_state_path(self) -> Path:
        return self.lifecycle_root / "data" / "predictions.json"

    @property
    def alerts_state_path(self) -> Path:
        return self.lifecycle_root / "data" / "alert-log.json"

    @property
    def logs_dir(self) -> Path:
        return self.lifecycle_root / "logs"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()
