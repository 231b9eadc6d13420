"""
Audit events for IMEI access.
"""

from abc import ABC, abstractmethod
from typing import Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector


class AuditActions:
    """Audit action names."""
    IMEI_ACCESS = "ImeiAccess"
    IMEI_ACCESS_DENIED = "ImeiAccessDenied"
    IMEI_VERIFICATION = "ImeiVerification"


class AuditSink(ABC):
    """Receives audit events from the access service."""

    @abstractmethod
    async def log(self, user_id: Optional[int], action: str, entity_type: str, entity_id: str) -> None:
        """Record one audit event."""


class StructlogAuditSink(AuditSink):
    """Writes audit events as structured log lines."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("imei_access.audit")
        self.metrics = metrics

    async def log(self, user_id: Optional[int], action: str, entity_type: str, entity_id: str) -> None:
        self.logger.info(
            "Audit event",
            event_type=action,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id
        )
        if self.metrics is not None:
            self.metrics.increment_counter("audit_events_total", action=action)
