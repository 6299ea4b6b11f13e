"""Best-effort audit trail for import jobs."""
import logging
from typing import Any, Dict, Optional

from routine_import_api.services.repository import ImportRepository

logger = logging.getLogger(__name__)

AUDIT_EVENTS = (
    "job_created",
    "ready",
    "failed",
    "draft_updated",
    "commit_failed",
    "commit_success",
    "rollback_success",
)


class AuditService:
    """Writes audit events. A failed write never fails the caller."""

    def __init__(self, repository: ImportRepository):
        self.repository = repository

    def log(
        self,
        job_id: str,
        trainer_id: str,
        client_id: Optional[str],
        event: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self.repository.insert_audit_event(job_id, trainer_id, client_id, event, payload or {})
        except Exception as e:
            logger.warning(f"Failed to write audit event {event} for job {job_id}: {e}")
