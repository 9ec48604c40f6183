"""
Security alert delivery.

Transport (email, paging, SIEM) lives outside this package; the default sink
writes each alert to the structured log.
"""

from typing import Protocol, runtime_checkable

import structlog

from schemas.geo import SecurityAlert

logger = structlog.get_logger(__name__)


@runtime_checkable
class SecurityAlertSink(Protocol):
    """Receives security alerts raised during verification."""

    async def send_alert(self, alert: SecurityAlert) -> None: ...


class LoggingAlertSink:
    """Emits alerts as structured warnings."""

    async def send_alert(self, alert: SecurityAlert) -> None:
        logger.warning(
            "security_alert",
            title=alert.title,
            user_id=alert.user_id,
            severity=alert.severity.value,
            environment=alert.environment,
            timestamp=alert.timestamp.isoformat(),
            **alert.attributes,
        )
