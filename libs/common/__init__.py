"""Common utilities and exceptions."""

from libs.common.exceptions import (
    AlreadyDeployedError,
    InsufficientDataError,
    LifecycleError,
    NoPriorVersionError,
    NotFoundError,
    PredictionNotFoundError,
    StateError,
    StorageError,
    TestNotFoundError,
    ValidationError,
    VersionNotFoundError,
)

__all__ = [
    "LifecycleError",
    "NotFoundError",
    "VersionNotFoundError",
    "TestNotFoundError",
    "PredictionNotFoundError",
    "StateError",
    "NoPriorVersionError",
    "AlreadyDeployedError",
    "ValidationError",
    "StorageError",
    "InsufficientDataError",
]
