"""
Shadow-mode testing of a candidate version against production.

This module provides:
- PromotionPolicy: turns a ComparisonResult into a DEPLOY/REJECT recommendation
- ShadowTestManager: RUNNING -> COMPLETED state machine for shadow tests

Both arms log predictions on the same inputs while only production drives
trading. Shadow tests never end on their own; ``end_shadow_mode`` is an
explicit operator action at or after ``end_date``.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import numpy as np

from libs.common.exceptions import AlreadyDeployedError, StateError, TestNotFoundError
from libs.model_lifecycle.state_store import StateStore
from libs.model_lifecycle.statistics import StatisticalComparator
from libs.model_lifecycle.types import (
    ArmMetrics,
    ArmPredictions,
    ComparisonResult,
    Decision,
    Recommendation,
    ShadowArm,
    ShadowPrediction,
    ShadowTest,
    ShadowTestResults,
    ShadowTestStatus,
)
from libs.model_lifecycle.version_store import VersionStore

logger = logging.getLogger(__name__)

DEFAULT_SHADOW_DURATION_DAYS = 7
DEFAULT_MIN_IMPROVEMENT = 0.01
# Float noise in accuracy differences (0.61 - 0.60 == 0.010000000000000009)
IMPROVEMENT_TOLERANCE = 1e-9

CHECK_SIGNIFICANCE = "significance"
CHECK_MIN_IMPROVEMENT = "min_improvement"
CHECK_CANDIDATE_WORSE = "candidate_worse"


@dataclass(frozen=True)
class PromotionPolicy:
    """DEPLOY iff significant, improved by at least ``min_improvement`` and not worse.

    Every failing clause contributes one reason, in the order
    significance, minimum improvement, candidate worse.
    """

    min_improvement: float = DEFAULT_MIN_IMPROVEMENT

    def evaluate(self, comparison: ComparisonResult) -> Recommendation:
        reasons: list[str] = []
        failed_checks: list[str] = []
        difference = comparison.accuracy_difference

        if not comparison.significant:
            failed_checks.append(CHECK_SIGNIFICANCE)
            if comparison.insufficient_data and comparison.reason:
                reasons.append(comparison.reason)
            else:
                reasons.append(
                    f"Not statistically significant (p={comparison.p_value:.4f} "
                    f">= {comparison.significance_level:g})"
                )

        if difference < self.min_improvement - IMPROVEMENT_TOLERANCE:
            failed_checks.append(CHECK_MIN_IMPROVEMENT)
            reasons.append(
                f"Improvement too small ({difference * 100:.2f}% < {self.min_improvement * 100:.2f}%)"
            )

        if comparison.candidate_accuracy < comparison.production_accuracy:
            failed_checks.append(CHECK_CANDIDATE_WORSE)
            reasons.append("Candidate performs worse than production")

        decision = Decision.REJECT if failed_checks else Decision.DEPLOY
        if decision is Decision.DEPLOY:
            if comparison.percent_improvement is not None:
                improvement = f"Improvement: {comparison.percent_improvement:.2f}%"
            else:
                improvement = f"Improvement: {difference * 100:.2f} percentage points"
            reasons = [
                "Candidate significantly better than production",
                improvement,
                f"Statistically significant (p={comparison.p_value:.4f})",
            ]

        return Recommendation(
            decision=decision,
            reasons=reasons,
            failed_checks=failed_checks,
            production_accuracy=comparison.production_accuracy,
            candidate_accuracy=comparison.candidate_accuracy,
            accuracy_difference=difference,
        )


def generate_test_id(now: datetime) -> str:
    return f"test_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def arm_metrics(predictions: Sequence[ShadowPrediction]) -> ArmMetrics:
    """Accuracy aggregate over resolved predictions of one arm."""
    if not predictions:
        return ArmMetrics()
    correct = sum(1 for p in predictions if p.correct)
    return ArmMetrics(
        total_predictions=len(predictions),
        correct=correct,
        incorrect=len(predictions) - correct,
        accuracy=correct / len(predictions),
        avg_confidence=float(np.mean([p.confidence for p in predictions])),
    )


def _coerce_prediction(prediction: ShadowPrediction | Mapping[str, Any], now: datetime) -> ShadowPrediction:
    if isinstance(prediction, ShadowPrediction):
        return prediction
    data = dict(prediction)
    if "predicted_label" not in data and "prediction" in data:
        data["predicted_label"] = data.pop("prediction")
    data.setdefault("timestamp", now)
    # Outcomes are attached only through resolve_shadow_predictions
    for key in ("resolved", "actual_price", "actual_outcome", "resolved_at"):
        data.pop(key, None)
    return ShadowPrediction.model_validate(data)


class ShadowTestManager:
    """Runs shadow tests and produces promotion recommendations.

    Tests live in one StateStore document ``{"tests": [...]}``. At most one
    RUNNING test exists per production version. Versions referenced by
    RUNNING tests are protected from VersionStore cleanup.
    """

    def __init__(
        self,
        version_store: VersionStore,
        state_store: StateStore,
        *,
        comparator: StatisticalComparator | None = None,
        policy: PromotionPolicy | None = None,
        duration_days: float = DEFAULT_SHADOW_DURATION_DAYS,
    ) -> None:
        self.version_store = version_store
        self._store = state_store
        self.comparator = comparator or StatisticalComparator()
        self.policy = policy or PromotionPolicy()
        self.duration_days = duration_days
        version_store.register_retention_guard(self.running_version_ids)

    @staticmethod
    def _tests(state: Mapping[str, Any]) -> list[ShadowTest]:
        return [ShadowTest.model_validate(t) for t in state.get("tests", [])]

    @staticmethod
    def _save(state: dict[str, Any], tests: Iterable[ShadowTest]) -> None:
        state["tests"] = [t.model_dump(mode="json") for t in tests]

    @staticmethod
    def _index(tests: Sequence[ShadowTest], test_id: str) -> int:
        for i, test in enumerate(tests):
            if test.test_id == test_id:
                return i
        raise TestNotFoundError(test_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start_shadow_mode(
        self,
        candidate_version_id: str,
        duration_days: float | None = None,
        *,
        now: datetime | None = None,
    ) -> ShadowTest:
        """Start a shadow test of ``candidate_version_id`` against production.

        Raises:
            VersionNotFoundError: If the candidate does not exist.
            StateError: If there is no production version, the candidate is
                production, or a test is already running against production.
        """
        duration = self.duration_days if duration_days is None else duration_days
        if duration <= 0:
            raise ValueError(f"duration_days must be positive, got {duration}")

        # Cleanup cannot run between the candidate check and the commit
        with self.version_store.writer_lock():
            self.version_store.get_version(candidate_version_id)
            pointer = self.version_store.get_production_pointer()
            if pointer is None:
                raise StateError("No production version set; cannot start a shadow test")
            if pointer.version_id == candidate_version_id:
                raise StateError(
                    f"Candidate {candidate_version_id} is already the production version"
                )

            now = now or datetime.now(UTC)
            test = ShadowTest(
                test_id=generate_test_id(now),
                production_version_id=pointer.version_id,
                candidate_version_id=candidate_version_id,
                start_date=now,
                end_date=now + timedelta(days=duration),
                duration_days=duration,
            )

            with self._store.transaction() as state:
                tests = self._tests(state)
                for existing in tests:
                    if existing.is_running and existing.production_version_id == pointer.version_id:
                        raise StateError(
                            f"Shadow test {existing.test_id} is already running against "
                            f"production {pointer.version_id}"
                        )
                tests.append(test)
                self._save(state, tests)

        logger.info(
            "Started shadow mode",
            extra={
                "test_id": test.test_id,
                "production_version_id": test.production_version_id,
                "candidate_version_id": candidate_version_id,
                "end_date": test.end_date.isoformat(),
            },
        )
        return test

    def log_shadow_prediction(
        self,
        test_id: str,
        arm: ShadowArm | str,
        prediction: ShadowPrediction | Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> ShadowPrediction:
        """Append a prediction to one arm of a RUNNING test.

        Raises:
            ValueError: If ``arm`` is not production/candidate.
            TestNotFoundError: If the test id is unknown.
            StateError: If the test is not RUNNING.
        """
        arm = ShadowArm(arm)
        record = _coerce_prediction(prediction, now or datetime.now(UTC))

        with self._store.transaction() as state:
            tests = self._tests(state)
            index = self._index(tests, test_id)
            test = tests[index]
            if not test.is_running:
                raise StateError(f"Shadow test {test_id} is not running (status: {test.status.value})")
            arm_list = [*test.predictions.for_arm(arm), record]
            predictions = test.predictions.model_copy(update={arm.value: arm_list})
            tests[index] = test.model_copy(update={"predictions": predictions})
            self._save(state, tests)

        logger.debug(
            "Logged shadow prediction",
            extra={"test_id": test_id, "arm": arm.value, "symbol": record.symbol},
        )
        return record

    def resolve_shadow_predictions(
        self,
        symbol: str,
        actual_price: float | None,
        actual_outcome: str,
        *,
        now: datetime | None = None,
    ) -> int:
        """Resolve every unresolved prediction for ``symbol`` across RUNNING tests.

        Returns:
            Number of predictions resolved.
        """
        now = now or datetime.now(UTC)
        resolved = 0

        def resolve(predictions: list[ShadowPrediction]) -> list[ShadowPrediction]:
            nonlocal resolved
            out = []
            for p in predictions:
                if p.symbol == symbol and not p.resolved:
                    p = p.model_copy(
                        update={
                            "resolved": True,
                            "actual_price": actual_price,
                            "actual_outcome": actual_outcome,
                            "resolved_at": now,
                        }
                    )
                    resolved += 1
                out.append(p)
            return out

        with self._store.transaction() as state:
            tests = self._tests(state)
            for i, test in enumerate(tests):
                if not test.is_running:
                    continue
                predictions = ArmPredictions(
                    production=resolve(test.predictions.production),
                    candidate=resolve(test.predictions.candidate),
                )
                tests[i] = test.model_copy(update={"predictions": predictions})
            self._save(state, tests)

        logger.info(
            "Resolved shadow predictions",
            extra={"symbol": symbol, "resolved": resolved, "actual_outcome": actual_outcome},
        )
        return resolved

    def end_shadow_mode(
        self,
        test_id: str,
        *,
        force: bool = False,
        now: datetime | None = None,
    ) -> ShadowTestResults:
        """Compare both arms, record a recommendation and complete the test.

        Raises:
            TestNotFoundError: If the test id is unknown.
            StateError: If the test is not RUNNING, or ``end_date`` has not
                been reached and ``force`` is not set.
        """
        now = now or datetime.now(UTC)

        with self._store.transaction() as state:
            tests = self._tests(state)
            index = self._index(tests, test_id)
            test = tests[index]
            if not test.is_running:
                raise StateError(f"Shadow test {test_id} is not running (status: {test.status.value})")
            if now < test.end_date and not force:
                raise StateError(
                    f"Shadow test {test_id} runs until {test.end_date.isoformat()}; "
                    "use force to end it early"
                )

            production = [p for p in test.predictions.production if p.resolved]
            candidate = [p for p in test.predictions.candidate if p.resolved]
            comparison = self.comparator.compare(production, candidate)
            recommendation = self.policy.evaluate(comparison)
            results = ShadowTestResults(
                production_metrics=arm_metrics(production),
                candidate_metrics=arm_metrics(candidate),
                comparison=comparison,
                recommendation=recommendation,
                ended_at=now,
            )
            tests[index] = test.model_copy(
                update={
                    "status": ShadowTestStatus.completed,
                    "ended_at": now,
                    "results": results,
                }
            )
            self._save(state, tests)

        logger.info(
            "Ended shadow mode",
            extra={
                "test_id": test_id,
                "decision": recommendation.decision.value,
                "reasons": recommendation.reasons,
                "production_accuracy": comparison.production_accuracy,
                "candidate_accuracy": comparison.candidate_accuracy,
                "p_value": comparison.p_value,
                "forced": force and now < test.end_date,
            },
        )
        return results

    def mark_deployed(self, test_id: str, *, now: datetime | None = None) -> ShadowTest:
        """Stamp a COMPLETED test as deployed; allowed once per test.

        Raises:
            AlreadyDeployedError: If the test was already deployed.
            StateError: If the test is not COMPLETED.
        """
        now = now or datetime.now(UTC)
        with self._store.transaction() as state:
            tests = self._tests(state)
            index = self._index(tests, test_id)
            test = tests[index]
            if test.status is not ShadowTestStatus.completed:
                raise StateError("Test must be completed before deployment")
            if test.deployed:
                raise AlreadyDeployedError(test_id, test.deployed_at)
            test = test.model_copy(update={"deployed": True, "deployed_at": now})
            tests[index] = test
            self._save(state, tests)
        return test

    # =========================================================================
    # Queries
    # =========================================================================

    def get_test(self, test_id: str) -> ShadowTest:
        tests = self._tests(self._store.load())
        return tests[self._index(tests, test_id)]

    def get_active_test(self) -> ShadowTest | None:
        """Most recently started RUNNING test, if any."""
        running = [t for t in self._tests(self._store.load()) if t.is_running]
        return max(running, key=lambda t: t.start_date) if running else None

    def get_test_history(self, limit: int = 10) -> list[ShadowTest]:
        tests = self._tests(self._store.load())
        tests.sort(key=lambda t: t.start_date, reverse=True)
        return tests[:limit]

    def running_version_ids(self) -> set[str]:
        """Version ids referenced by RUNNING tests."""
        ids: set[str] = set()
        for test in self._tests(self._store.load()):
            if test.is_running:
                ids.add(test.production_version_id)
                ids.add(test.candidate_version_id)
        return ids

    def cleanup_old_predictions(self, days_to_keep: int = 30, *, now: datetime | None = None) -> int:
        """Drop predictions older than ``days_to_keep`` from COMPLETED tests.

        Results already stored on the test record are unaffected.
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(days=days_to_keep)
        removed = 0
        with self._store.transaction() as state:
            tests = self._tests(state)
            for i, test in enumerate(tests):
                if test.is_running:
                    continue
                production = [p for p in test.predictions.production if p.timestamp > cutoff]
                candidate = [p for p in test.predictions.candidate if p.timestamp > cutoff]
                removed += (
                    len(test.predictions.production)
                    + len(test.predictions.candidate)
                    - len(production)
                    - len(candidate)
                )
                tests[i] = test.model_copy(
                    update={"predictions": ArmPredictions(production=production, candidate=candidate)}
                )
            self._save(state, tests)

        logger.info("Cleaned old shadow predictions", extra={"removed": removed})
        return removed
