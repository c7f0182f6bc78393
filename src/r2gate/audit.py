"""Access logging and audit events for r2gate.

``AccessLogger`` appends one access-log record per gateway operation and
one audit event per security-relevant change. Persisting a record is best
effort: a failed write is logged at WARNING and counted, and never
propagates to the operation being recorded.
"""

import logging
from typing import Any

from r2gate import metrics as _metrics
from r2gate.metadata.store import MetadataStore
from r2gate.models import (
    AccessLogEntry,
    AuditEvent,
    Clock,
    RequestInfo,
    RiskLevel,
    utc_now,
)

logger = logging.getLogger(__name__)

# Audit event type -> risk level
AUDIT_RISK_LEVELS: dict[str, RiskLevel] = {
    "access_created": RiskLevel.LOW,
    "access_updated": RiskLevel.LOW,
    "access_deleted": RiskLevel.MEDIUM,
    "credentials_regenerated": RiskLevel.MEDIUM,
    "token_created": RiskLevel.LOW,
    "token_revoked": RiskLevel.LOW,
    "invalid_key": RiskLevel.MEDIUM,
    "access_denied": RiskLevel.MEDIUM,
    "usage_reset": RiskLevel.HIGH,
}


def _record_failure() -> None:
    if _metrics.access_log_failures_total is not None:
        _metrics.access_log_failures_total.inc()


class AccessLogger:
    """Records access attempts and audit events.

    Attributes:
        metadata: The store the records are appended to.
        enabled: When False, records are only emitted to the process log.
    """

    def __init__(
        self, metadata: MetadataStore, enabled: bool = True, clock: Clock = utc_now
    ) -> None:
        self.metadata = metadata
        self.enabled = enabled
        self._clock = clock

    async def log_access(
        self,
        user_id: int | None,
        access_id: int | None,
        operation: str,
        *,
        resource_path: str,
        status_code: int,
        bytes_transferred: int = 0,
        response_time_ms: int = 0,
        request: RequestInfo | None = None,
        error: str | None = None,
    ) -> AccessLogEntry:
        """Append one access-log record.

        Returns:
            The entry, whether or not it could be persisted.
        """
        request = request or RequestInfo()
        entry = AccessLogEntry(
            user_id=user_id,
            grant_id=access_id,
            operation=operation,
            resource_path=resource_path,
            status_code=status_code,
            bytes_transferred=bytes_transferred,
            response_time_ms=response_time_ms,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            error_message=error,
            created_at=self._clock(),
        )

        logger.info(
            "%s %s -> %d",
            operation,
            resource_path,
            status_code,
            extra={
                "user_id": user_id,
                "access_id": access_id,
                "operation": operation,
                "resource_path": resource_path,
                "status": status_code,
                "duration_ms": response_time_ms,
            },
        )

        if not self.enabled:
            return entry
        try:
            await self.metadata.append_access_log(entry.to_row())
        except Exception:
            logger.warning(
                "Failed to persist access log for %s %s", operation, resource_path, exc_info=True
            )
            _record_failure()
        return entry

    async def log_audit_event(
        self,
        user_id: int | None,
        event_type: str,
        *,
        access_id: int | None = None,
        details: dict[str, Any] | None = None,
        request: RequestInfo | None = None,
    ) -> AuditEvent:
        """Append one audit event; the risk level follows the event type."""
        request = request or RequestInfo()
        event = AuditEvent(
            user_id=user_id,
            grant_id=access_id,
            event_type=event_type,
            risk_level=AUDIT_RISK_LEVELS.get(event_type, RiskLevel.MEDIUM),
            details=details or {},
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            created_at=self._clock(),
        )

        level = logging.WARNING if event.risk_level is not RiskLevel.LOW else logging.INFO
        logger.log(
            level,
            "audit %s (%s)",
            event_type,
            event.risk_level.value,
            extra={"user_id": user_id, "access_id": access_id},
        )

        if not self.enabled:
            return event
        try:
            await self.metadata.append_audit_event(event.to_row())
        except Exception:
            logger.warning("Failed to persist audit event %s", event_type, exc_info=True)
            _record_failure()
        return event
