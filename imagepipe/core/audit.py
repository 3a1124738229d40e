"""
Audit Event Sink

Fire-and-forget notifications for job lifecycle events. Recording an
event must never abort the pipeline, so emit_audit() logs and swallows
sink failures.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from imagepipe.core.logging import get_logger

logger = get_logger(__name__)


class AuditEvent:
    JOB_CREATED = "job_created"
    ANALYSIS_COMPLETED = "analysis_completed"
    VERSIONS_GENERATED = "versions_generated"
    JOB_FAILED = "job_failed"


class AuditSink(ABC):
    """Receives lifecycle events."""

    @abstractmethod
    async def record(self, event: str, job_id: str, data: Dict[str, Any]) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit events to the structured log."""

    def __init__(self):
        self._logger = get_logger("imagepipe.audit")

    async def record(self, event: str, job_id: str, data: Dict[str, Any]) -> None:
        self._logger.info("audit_event", audit_event=event, job_id=job_id, **data)


async def emit_audit(
    sink: Optional[AuditSink],
    event: str,
    job_id: str,
    data: Optional[Dict[str, Any]] = None
) -> None:
    if sink is None:
        return
    try:
        await sink.record(event, job_id, data or {})
    except Exception as e:
        logger.warning(
            "audit_event_failed",
            audit_event=event,
            job_id=job_id,
            error=str(e),
            error_type=type(e).__name__
        )
