"""
Promotion of shadow-tested candidates and manual rollback.

The controller is the only component that moves the production pointer on
behalf of a shadow test. Deployment is single-shot per test.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from libs.common.exceptions import AlreadyDeployedError, LifecycleError, StateError
from libs.model_lifecycle.alerts import AlertingService
from libs.model_lifecycle.shadow import ShadowTestManager
from libs.model_lifecycle.types import (
    Decision,
    DeploymentResult,
    ModelVersion,
    ShadowTest,
    ShadowTestStatus,
)
from libs.model_lifecycle.version_store import VersionStore

logger = logging.getLogger(__name__)


class DeploymentController:
    """Applies shadow test recommendations to the version store."""

    def __init__(
        self,
        version_store: VersionStore,
        shadow_manager: ShadowTestManager,
        *,
        alerting: AlertingService | None = None,
    ) -> None:
        self.version_store = version_store
        self.shadow_manager = shadow_manager
        self.alerting = alerting

    def auto_deploy(self, test_id: str, *, changed_by: str = "auto_deploy") -> DeploymentResult:
        """Promote the candidate of a COMPLETED test if it was recommended.

        Calling again after a successful deployment returns the earlier
        outcome with ``already_deployed=True``.

        Raises:
            TestNotFoundError: If the test id is unknown.
            StateError: If the test is not COMPLETED.
        """
        test = self.shadow_manager.get_test(test_id)
        if test.status is not ShadowTestStatus.completed or test.results is None:
            raise StateError("Test must be completed before deployment")

        if test.deployed:
            return self._already_deployed(test, test.deployed_at)

        recommendation = test.results.recommendation
        if recommendation.decision is not Decision.DEPLOY:
            logger.info(
                "Candidate not deployed",
                extra={"test_id": test_id, "reasons": recommendation.reasons},
            )
            return DeploymentResult(
                deployed=False,
                test_id=test_id,
                reason="Recommendation is REJECT",
                reasons=list(recommendation.reasons),
            )

        pointer = self.version_store.get_production_pointer()
        current = pointer.version_id if pointer else None
        # A crash between set_production and mark_deployed leaves the pointer
        # already on the candidate; finishing the stamp is then safe.
        if current not in (test.production_version_id, test.candidate_version_id):
            reason = (
                f"Production changed since shadow test started "
                f"(expected {test.production_version_id}, found {current})"
            )
            logger.warning(reason, extra={"test_id": test_id})
            return DeploymentResult(deployed=False, test_id=test_id, reason=reason)

        try:
            self.version_store.set_production(test.candidate_version_id, changed_by=changed_by)
            deployed_test = self.shadow_manager.mark_deployed(test_id, now=datetime.now(UTC))
        except AlreadyDeployedError as e:
            # Another caller stamped the test between our read and this write
            return self._already_deployed(test, e.deployed_at)
        except LifecycleError as e:
            logger.error(
                "Deployment failed",
                extra={"test_id": test_id, "version_id": test.candidate_version_id, "error": str(e)},
            )
            if self.alerting is not None:
                self.alerting.alert_deployment_failure(
                    f"Failed to deploy {test.candidate_version_id}: {e}",
                    details={"test_id": test_id},
                )
            raise

        logger.info(
            "Deployed candidate",
            extra={
                "test_id": test_id,
                "version_id": test.candidate_version_id,
                "previous_version_id": test.production_version_id,
            },
        )
        return DeploymentResult(
            deployed=True,
            test_id=test_id,
            version_id=test.candidate_version_id,
            previous_version_id=test.production_version_id,
            reasons=list(recommendation.reasons),
            deployed_at=deployed_test.deployed_at,
        )

    def _already_deployed(self, test: ShadowTest, deployed_at: datetime | None) -> DeploymentResult:
        logger.info("Shadow test already deployed", extra={"test_id": test.test_id})
        return DeploymentResult(
            deployed=True,
            test_id=test.test_id,
            version_id=test.candidate_version_id,
            previous_version_id=test.production_version_id,
            already_deployed=True,
            deployed_at=deployed_at,
        )

    def rollback(self, version_id: str | None = None, *, changed_by: str = "operator") -> ModelVersion:
        """Roll production back to the previous version, or to ``version_id``.

        Raises:
            NoPriorVersionError: If no earlier production version exists.
            VersionNotFoundError: If ``version_id`` does not exist.
        """
        if version_id is None:
            return self.version_store.rollback(changed_by=changed_by)
        self.version_store.set_production(version_id, changed_by=changed_by)
        return self.version_store.get_version(version_id)
