"""Tests for DeploymentController, including end-to-end promotion flows."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from libs.common.exceptions import NoPriorVersionError, StateError, VersionNotFoundError
from libs.model_lifecycle.alerts import AlertingService, AlertType
from libs.model_lifecycle.deployment import DeploymentController
from libs.model_lifecycle.shadow import ShadowTestManager
from libs.model_lifecycle.state_store import JsonFileStateStore
from libs.model_lifecycle.types import Decision, PointerAction
from libs.model_lifecycle.version_store import VersionStore

T0 = datetime(2024, 1, 15, 8, 30, tzinfo=UTC)
END = T0 + timedelta(days=7)


@pytest.fixture
def alerting(tmp_path: Path) -> AlertingService:
    return AlertingService(JsonFileStateStore(tmp_path / "state" / "alert-log.json"))


@pytest.fixture
def controller(
    store: VersionStore, shadow_manager: ShadowTestManager, alerting: AlertingService
) -> DeploymentController:
    return DeploymentController(store, shadow_manager, alerting=alerting)


@pytest.fixture
def run_shadow_test(shadow_manager: ShadowTestManager, production_and_candidate, seed_arm):
    """Run a complete shadow test with the given per-arm (correct, total) counts."""

    def _run(production_arm: tuple[int, int], candidate_arm: tuple[int, int]):
        _, candidate = production_and_candidate
        test = shadow_manager.start_shadow_mode(candidate.version_id, now=T0)
        if production_arm[1]:
            seed_arm(test.test_id, "production", *production_arm)
        if candidate_arm[1]:
            seed_arm(test.test_id, "candidate", *candidate_arm)
        shadow_manager.resolve_shadow_predictions("SPY", 470.0, "bullish", now=END)
        results = shadow_manager.end_shadow_mode(test.test_id, now=END)
        return test, results

    return _run


# =============================================================================
# End-to-end promotion
# =============================================================================


def test_significant_improvement_is_deployed(
    controller: DeploymentController, store: VersionStore, production_and_candidate, run_shadow_test
) -> None:
    production, candidate = production_and_candidate
    test, results = run_shadow_test((600, 1000), (680, 1000))

    assert results.production_metrics.accuracy == pytest.approx(0.60)
    assert results.candidate_metrics.accuracy == pytest.approx(0.68)
    assert results.recommendation.decision is Decision.DEPLOY
    assert results.recommendation.reasons == [
        "Candidate significantly better than production",
        "Improvement: 13.33%",
        f"Statistically significant (p={results.comparison.p_value:.4f})",
    ]

    outcome = controller.auto_deploy(test.test_id)

    assert outcome.deployed is True
    assert outcome.version_id == candidate.version_id
    assert outcome.previous_version_id == production.version_id
    assert store.get_production_pointer().version_id == candidate.version_id
    assert store.get_production_pointer().changed_by == "auto_deploy"

    again = controller.auto_deploy(test.test_id)
    assert again.already_deployed is True
    assert again.deployed_at == outcome.deployed_at
    # no second promote entry
    assert len(store.production_history()) == 2


def test_auto_deploy_after_concurrent_deploy_is_a_no_op(
    controller: DeploymentController,
    store: VersionStore,
    shadow_manager: ShadowTestManager,
    shadow_state: JsonFileStateStore,
    alerting: AlertingService,
    run_shadow_test,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test, _ = run_shadow_test((600, 1000), (680, 1000))
    # the second caller read the test before the first one stamped it
    stale = shadow_manager.get_test(test.test_id)
    late_manager = ShadowTestManager(store, shadow_state)
    monkeypatch.setattr(late_manager, "get_test", lambda test_id: stale)
    late_controller = DeploymentController(store, late_manager, alerting=alerting)

    first = controller.auto_deploy(test.test_id)
    second = late_controller.auto_deploy(test.test_id)

    assert second.deployed is True
    assert second.already_deployed is True
    assert second.deployed_at == first.deployed_at
    assert alerting.get_recent_alerts() == []
    assert len(store.production_history()) == 2


def test_rollback_after_deployment_restores_production(
    controller: DeploymentController, store: VersionStore, production_and_candidate, run_shadow_test
) -> None:
    production, _ = production_and_candidate
    test, _ = run_shadow_test((600, 1000), (680, 1000))
    controller.auto_deploy(test.test_id)

    restored = controller.rollback()

    assert restored.version_id == production.version_id
    pointer = store.get_production_pointer()
    assert pointer.action is PointerAction.rollback
    assert pointer.changed_by == "operator"


def test_small_sample_is_rejected(
    controller: DeploymentController, store: VersionStore, production_and_candidate, run_shadow_test
) -> None:
    production, _ = production_and_candidate
    test, results = run_shadow_test((60, 100), (68, 100))

    assert results.recommendation.decision is Decision.REJECT
    assert results.recommendation.reasons == [
        f"Not statistically significant (p={results.comparison.p_value:.4f} >= 0.05)"
    ]

    outcome = controller.auto_deploy(test.test_id)

    assert outcome.deployed is False
    assert outcome.reason == "Recommendation is REJECT"
    assert outcome.reasons == results.recommendation.reasons
    assert store.get_production_pointer().version_id == production.version_id


def test_worse_candidate_is_rejected(controller: DeploymentController, run_shadow_test) -> None:
    test, results = run_shadow_test((680, 1000), (600, 1000))

    assert results.recommendation.decision is Decision.REJECT
    assert results.recommendation.reasons == [
        "Improvement too small (-8.00% < 1.00%)",
        "Candidate performs worse than production",
    ]
    assert controller.auto_deploy(test.test_id).deployed is False


def test_no_resolved_predictions_is_rejected(controller: DeploymentController, run_shadow_test) -> None:
    test, results = run_shadow_test((0, 0), (0, 0))

    assert results.comparison.insufficient_data is True
    assert results.recommendation.reasons == [
        "Insufficient data: production has 0 and candidate has 0 resolved predictions",
        "Improvement too small (0.00% < 1.00%)",
    ]
    assert controller.auto_deploy(test.test_id).deployed is False


# =============================================================================
# Guards
# =============================================================================


def test_running_test_cannot_be_deployed(
    controller: DeploymentController, shadow_manager: ShadowTestManager, production_and_candidate
) -> None:
    _, candidate = production_and_candidate
    test = shadow_manager.start_shadow_mode(candidate.version_id, now=T0)

    with pytest.raises(StateError, match="Test must be completed before deployment"):
        controller.auto_deploy(test.test_id)


def test_production_changed_during_test(
    controller: DeploymentController,
    store: VersionStore,
    make_artifacts,
    run_shadow_test,
) -> None:
    test, _ = run_shadow_test((600, 1000), (680, 1000))
    hotfix = store.save_version(make_artifacts(1))
    store.set_production(hotfix.version_id, changed_by="operator")

    outcome = controller.auto_deploy(test.test_id)

    assert outcome.deployed is False
    assert "Production changed since shadow test started" in outcome.reason
    assert store.get_production_pointer().version_id == hotfix.version_id


def test_interrupted_deployment_is_completed(
    controller: DeploymentController,
    store: VersionStore,
    shadow_manager: ShadowTestManager,
    production_and_candidate,
    run_shadow_test,
) -> None:
    _, candidate = production_and_candidate
    test, _ = run_shadow_test((600, 1000), (680, 1000))
    # pointer moved but the test was never stamped
    store.set_production(candidate.version_id, changed_by="auto_deploy")

    outcome = controller.auto_deploy(test.test_id)

    assert outcome.deployed is True
    assert shadow_manager.get_test(test.test_id).deployed is True
    assert store.get_production_pointer().version_id == candidate.version_id
    assert len(store.production_history()) == 2


def test_deleted_candidate_raises_and_alerts(
    controller: DeploymentController,
    store: VersionStore,
    alerting: AlertingService,
    production_and_candidate,
    make_artifacts,
    run_shadow_test,
) -> None:
    production, candidate = production_and_candidate
    test, _ = run_shadow_test((600, 1000), (680, 1000))
    store.save_version(make_artifacts(1))
    store.cleanup_old_versions(keep=1)
    assert store.find_version(candidate.version_id) is None

    with pytest.raises(VersionNotFoundError):
        controller.auto_deploy(test.test_id)

    (alert,) = alerting.get_recent_alerts()
    assert alert.type is AlertType.DEPLOYMENT_FAILURE
    assert alert.details == {"test_id": test.test_id}
    assert store.get_production_pointer().version_id == production.version_id


# =============================================================================
# Manual rollback
# =============================================================================


def test_rollback_to_explicit_version(
    controller: DeploymentController, store: VersionStore, production_and_candidate
) -> None:
    production, candidate = production_and_candidate
    store.set_production(candidate.version_id)

    restored = controller.rollback(production.version_id, changed_by="alice")

    assert restored.version_id == production.version_id
    pointer = store.get_production_pointer()
    assert pointer.action is PointerAction.promote
    assert pointer.changed_by == "alice"


def test_rollback_without_history(controller: DeploymentController, production_and_candidate) -> None:
    with pytest.raises(NoPriorVersionError):
        controller.rollback()


def test_rollback_to_unknown_version(controller: DeploymentController, production_and_candidate) -> None:
    with pytest.raises(VersionNotFoundError):
        controller.rollback("v20240101_000000_abcdef")
