"""
Exception hierarchy for the model lifecycle subsystem.

Lifecycle-breaking errors (NotFoundError, StateError) abort the calling
operation and surface to the operator with a non-zero exit code. Data-quality
problems are tolerated up to configured ratios by the callers and raise
ValidationError only when a gate is crossed.
"""

from datetime import datetime


class LifecycleError(Exception):
    """
    Base exception for all model lifecycle errors.

    Example:
        >>> try:
        ...     store.set_production("v20240101_000000_abcdef")
        ... except LifecycleError as e:
        ...     logger.error(f"Lifecycle error: {e}")
    """

    pass


class NotFoundError(LifecycleError):
    """Raised when a version, shadow test or prediction id is unknown."""

    pass


class VersionNotFoundError(NotFoundError):
    """Raised when a model version does not exist in the store."""

    def __init__(self, version_id: str) -> None:
        self.version_id = version_id
        super().__init__(f"Version not found: {version_id}")


class TestNotFoundError(NotFoundError):
    """Raised when a shadow test id is unknown."""

    __test__ = False  # not a pytest test class

    def __init__(self, test_id: str) -> None:
        self.test_id = test_id
        super().__init__(f"Shadow test not found: {test_id}")


class PredictionNotFoundError(NotFoundError):
    """Raised when a tracked prediction id is unknown."""

    def __init__(self, prediction_id: str) -> None:
        self.prediction_id = prediction_id
        super().__init__(f"Prediction not found: {prediction_id}")


class StateError(LifecycleError):
    """
    Raised when an operation is invalid for the current state.

    Example:
        >>> manager.end_shadow_mode(test_id)
        >>> manager.end_shadow_mode(test_id)  # raises StateError
    """

    pass


class AlreadyDeployedError(StateError):
    """Raised when a shadow test's candidate has already been deployed."""

    def __init__(self, test_id: str, deployed_at: datetime | None = None) -> None:
        self.test_id = test_id
        self.deployed_at = deployed_at
        super().__init__(f"Shadow test {test_id} was already deployed")


class NoPriorVersionError(StateError):
    """Raised when a rollback is requested but no earlier production version exists."""

    def __init__(self, message: str = "No previous production version available for rollback") -> None:
        super().__init__(message)


class ValidationError(LifecycleError):
    """
    Raised when training output fails a quality gate.

    Covers the minimum-accuracy gate, the minimum-successful-models gate and
    the data refresh failure ratio.
    """

    def __init__(self, message: str, issues: list[str] | None = None) -> None:
        self.issues = list(issues or [])
        super().__init__(message)


class StorageError(LifecycleError):
    """Raised when the underlying persistence layer fails or would overwrite data."""

    pass


class InsufficientDataError(LifecycleError):
    """Raised when a statistical computation has no observations to work with."""

    pass
