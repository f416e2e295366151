"""
Operational alerts for the model lifecycle.

Alerts are appended to a capped log kept in a StateStore and emitted through
the standard logger at a level matching their severity, so the JSON log
stream and the alert log tell the same story. When a Slack webhook is
configured each alert is also posted there; delivery failures are logged
and never interrupt the operation that raised the alert.
"""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from libs.model_lifecycle.state_store import StateStore
from libs.model_lifecycle.types import DegradationReport

logger = logging.getLogger(__name__)

DEFAULT_MAX_ALERTS = 1000
CRITICAL_DEGRADATION_DROP = 0.10


class AlertType(str, Enum):
    PERFORMANCE_DEGRADATION = "PERFORMANCE_DEGRADATION"
    DATA_REFRESH_FAILURE = "DATA_REFRESH_FAILURE"
    TRAINING_FAILURE = "TRAINING_FAILURE"
    VALIDATION_FAILURE = "VALIDATION_FAILURE"
    DEPLOYMENT_FAILURE = "DEPLOYMENT_FAILURE"
    INFO = "INFO"


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


class Alert(BaseModel):
    id: str
    timestamp: datetime
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    recommendation: str | None = None

    model_config = {"frozen": True}


# =============================================================================
# Slack delivery
# =============================================================================

SLACK_TIMEOUT = 10  # seconds

_SLACK_COLORS = {
    AlertSeverity.INFO: "#36a64f",
    AlertSeverity.WARNING: "#ffcc00",
    AlertSeverity.ERROR: "#ff0000",
    AlertSeverity.CRITICAL: "#9900ff",
}


def mask_webhook(url: str) -> str:
    """Show only the last 4 characters of a webhook URL."""
    return f"***{url[-4:]}" if len(url) >= 4 else "***"


def build_slack_payload(alert: Alert) -> dict[str, Any]:
    fields = [
        {"title": "Type", "value": alert.type.value, "short": True},
        {"title": "Time", "value": alert.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC"), "short": True},
    ]
    if alert.recommendation:
        fields.append({"title": "Recommendation", "value": alert.recommendation, "short": False})
    return {
        "attachments": [
            {
                "color": _SLACK_COLORS[alert.severity],
                "title": f"{alert.severity.value}: {alert.title}",
                "text": alert.message,
                "fields": fields,
                "footer": "Model Lifecycle",
                "ts": int(alert.timestamp.timestamp()),
            }
        ]
    }


class SlackNotifier:
    """Posts alerts to a Slack incoming webhook.

    Args:
        webhook_url: Incoming webhook URL
        client: Optional shared httpx client (a short-lived one is opened
            per alert otherwise)
        timeout: Request timeout in seconds
    """

    def __init__(
        self, webhook_url: str, *, client: httpx.Client | None = None, timeout: float = SLACK_TIMEOUT
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client

    def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(self.webhook_url, json=payload, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(self.webhook_url, json=payload)

    def send(self, alert: Alert) -> bool:
        """Deliver ``alert``; returns False (after logging) on any failure."""
        masked = mask_webhook(self.webhook_url)
        try:
            response = self._post(build_slack_payload(alert))
        except httpx.TimeoutException:
            logger.error("Slack alert timed out", extra={"alert_id": alert.id, "webhook": masked})
            return False
        except httpx.RequestError as exc:
            logger.error(
                "Slack alert delivery failed",
                extra={
                    "alert_id": alert.id,
                    "webhook": masked,
                    "error": str(exc).replace(self.webhook_url, masked),
                },
            )
            return False

        if response.status_code != 200:
            logger.error(
                "Slack alert rejected",
                extra={"alert_id": alert.id, "webhook": masked, "status": response.status_code},
            )
            return False

        logger.debug("Slack alert sent", extra={"alert_id": alert.id})
        return True


class AlertingService:
    """Records and logs lifecycle alerts, forwarding them to Slack when configured."""

    def __init__(
        self,
        state_store: StateStore,
        *,
        max_alerts: int = DEFAULT_MAX_ALERTS,
        notifier: SlackNotifier | None = None,
    ) -> None:
        self._store = state_store
        self.max_alerts = max_alerts
        self.notifier = notifier

    def send_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        recommendation: str | None = None,
    ) -> Alert:
        now = datetime.now(UTC)
        alert = Alert(
            id=f"alert_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}",
            timestamp=now,
            type=alert_type,
            severity=severity,
            title=title,
            message=message,
            details=details or {},
            recommendation=recommendation,
        )

        with self._store.transaction() as state:
            alerts = state.setdefault("alerts", [])
            alerts.append(alert.model_dump(mode="json"))
            if len(alerts) > self.max_alerts:
                del alerts[: len(alerts) - self.max_alerts]

        logger.log(
            _LOG_LEVELS[severity],
            f"ALERT {alert_type.value}: {message}",
            extra={
                "alert_id": alert.id,
                "alert_type": alert_type.value,
                "severity": severity.value,
                "recommendation": recommendation,
            },
        )
        if self.notifier is not None:
            self.notifier.send(alert)
        return alert

    def alert_performance_degradation(self, report: DegradationReport) -> Alert:
        drop = report.drop or 0.0
        overall = report.overall_accuracy or 0.0
        weekly = report.weekly_accuracy or 0.0
        severity = (
            AlertSeverity.CRITICAL if drop > CRITICAL_DEGRADATION_DROP else AlertSeverity.WARNING
        )
        return self.send_alert(
            AlertType.PERFORMANCE_DEGRADATION,
            severity,
            "Model Performance Degradation Detected",
            f"Weekly accuracy dropped by {drop * 100:.1f}% "
            f"({overall * 100:.1f}% -> {weekly * 100:.1f}%)",
            details={
                "drop": drop,
                "overall_accuracy": overall,
                "weekly_accuracy": weekly,
                "severity": report.severity,
            },
            recommendation=report.recommendation,
        )

    def alert_data_refresh_failure(self, failed: int, total: int, errors: list[str] | None = None) -> Alert:
        return self.send_alert(
            AlertType.DATA_REFRESH_FAILURE,
            AlertSeverity.ERROR,
            "Data Refresh Failed",
            f"Failed to refresh data for {failed} of {total} symbols",
            details={"failed": failed, "total": total, "errors": list(errors or [])[:20]},
            recommendation="Check network connectivity and market data provider status",
        )

    def alert_training_failure(self, failed_models: int, details: dict[str, Any] | None = None) -> Alert:
        return self.send_alert(
            AlertType.TRAINING_FAILURE,
            AlertSeverity.CRITICAL,
            "Model Training Failed",
            f"Failed to train {failed_models} models",
            details=details,
            recommendation="Check training logs and compute availability",
        )

    def alert_validation_failure(self, issues: list[str]) -> Alert:
        return self.send_alert(
            AlertType.VALIDATION_FAILURE,
            AlertSeverity.WARNING,
            "Model Validation Failed",
            f"New models failed validation ({'; '.join(issues)})",
            details={"issues": issues},
            recommendation="Models not deployed. Review training data and hyperparameters",
        )

    def alert_deployment_failure(self, message: str, details: dict[str, Any] | None = None) -> Alert:
        return self.send_alert(
            AlertType.DEPLOYMENT_FAILURE,
            AlertSeverity.CRITICAL,
            "Model Deployment Failed",
            message,
            details=details,
            recommendation="Check model validation results and rollback if necessary",
        )

    def get_recent_alerts(self, limit: int = 10) -> list[Alert]:
        """Most recent alerts, newest first."""
        alerts = [Alert.model_validate(a) for a in self._store.load().get("alerts", [])]
        alerts.sort(key=lambda a: a.timestamp, reverse=True)
        return alerts[:limit]
