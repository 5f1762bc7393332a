"""
Operator alerting.

Alerts are always logged at critical/warning level and counted; when
ALERT_WEBHOOK_URL is configured they are also posted as JSON.
"""

from datetime import datetime
from typing import Any

import httpx

from schema_compat.core.config import settings
from schema_compat.core.metrics import ALERTS
from schema_compat.log.logging import logger


async def raise_alert(
    category: str,
    message: str,
    severity: str = "critical",
    **context: Any,
) -> bool:
    """
    Raise an operator alert.

    Args:
        category: Alert category (e.g. "rollback", "executor_failed").
        message: Human-readable alert message.
        severity: "warning" or "critical".
        **context: Extra structured context.

    Returns:
        True if the webhook accepted the alert (or no webhook is configured).
    """
    ALERTS.labels(severity=severity, category=category).inc()
    log = logger.critical if severity == "critical" else logger.warning
    log(
        "ALERT [{category}] {alert_message}",
        category=category,
        alert_message=message,
        severity=severity,
        event_type="operator_alert",
        **context,
    )

    if not settings.alert_webhook_url:
        return True

    body = {
        "service": settings.service_name,
        "environment": settings.environment,
        "severity": severity,
        "category": category,
        "message": message,
        "context": {k: str(v) for k, v in context.items()},
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }

    try:
        async with httpx.AsyncClient(timeout=settings.alert_timeout_seconds) as client:
            response = await client.post(settings.alert_webhook_url, json=body)
        if response.status_code < 300:
            return True
        logger.error(
            "Alert webhook rejected alert",
            status_code=response.status_code,
            event_type="alert_delivery_failed",
        )
        return False

    except httpx.HTTPError as e:
        logger.error("Alert webhook delivery failed", error=str(e), event_type="alert_delivery_failed")
        return False
