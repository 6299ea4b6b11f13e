"""
Import worker.

Leases queued jobs, parses their artifacts and stores the validated draft.
A tick is driven externally (the internal worker-tick endpoint); every job
is processed independently so one bad payload never stalls the batch.
"""

import logging
import secrets
from typing import Optional

from routine_import_api.constants import (
    WORKER_DEFAULT_LEASE_SECONDS,
    WORKER_DEFAULT_LIMIT,
    WORKER_MAX_LEASE_SECONDS,
    WORKER_MAX_LIMIT,
    WORKER_MIN_LEASE_SECONDS,
)
from routine_import_api.errors import (
    KILL_SWITCH_ENABLED,
    NO_EXERCISES_DETECTED,
    PDF_LAYOUT_UNRESOLVED,
    PROCESSING_FAILED,
)
from routine_import_api.models import ImportJob, Issue, WorkerTickResponse
from routine_import_api.parsers import parse_payload
from routine_import_api.services.artifact_store import ArtifactStore
from routine_import_api.services.audit_service import AuditService
from routine_import_api.services.repository import ImportRepository, is_tenant_kill_switched
from routine_import_api.services.validation import PDF_COVERAGE_CODES, build_draft_bundle, has_issue_code

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_CHARS = 500


def clamp_limit(value: Optional[int]) -> int:
    if value is None:
        return WORKER_DEFAULT_LIMIT
    return max(1, min(WORKER_MAX_LIMIT, int(value)))


def clamp_lease_seconds(value: Optional[int]) -> int:
    if value is None:
        return WORKER_DEFAULT_LEASE_SECONDS
    return max(WORKER_MIN_LEASE_SECONDS, min(WORKER_MAX_LEASE_SECONDS, int(value)))


def make_worker_id() -> str:
    return f"worker-{secrets.token_hex(3)}"


def _first_issue_message(issues, code: str, default: str) -> str:
    issue: Optional[Issue] = next((i for i in issues if i.code == code), None)
    return issue.message if issue is not None else default


class ImportWorker:
    """Runs leased import jobs through parse and validation."""

    def __init__(self, repository: ImportRepository):
        self.repository = repository
        self.artifacts = ArtifactStore(repository)
        self.audit = AuditService(repository)

    def process_import_jobs(
        self,
        worker_id: Optional[str] = None,
        limit: Optional[int] = WORKER_DEFAULT_LIMIT,
        lease_seconds: Optional[int] = WORKER_DEFAULT_LEASE_SECONDS,
    ) -> WorkerTickResponse:
        """Claim and process one batch.

        ``processed`` counts jobs that reached ``ready``; ``failed`` counts
        jobs that ended ``failed``, whether by a gate or an exception.
        """
        worker_id = worker_id or make_worker_id()
        jobs = self.repository.claim_jobs(worker_id, clamp_limit(limit), clamp_lease_seconds(lease_seconds))
        result = WorkerTickResponse(worker_id=worker_id, claimed=len(jobs))

        for job in jobs:
            try:
                if self._process_job(job):
                    result.processed += 1
                else:
                    result.failed += 1
            except Exception as e:
                logger.exception(f"Import job {job.id} failed in worker {worker_id}")
                result.failed += 1
                message = str(e)[:MAX_ERROR_MESSAGE_CHARS] or "Error inesperado al procesar la importación."
                try:
                    self._fail(job, PROCESSING_FAILED, message)
                except Exception:
                    logger.exception(f"Could not mark import job {job.id} as failed")

        logger.info(
            "Worker %s tick: claimed=%d processed=%d failed=%d",
            worker_id, result.claimed, result.processed, result.failed,
        )
        return result

    def _process_job(self, job: ImportJob) -> bool:
        if is_tenant_kill_switched(self.repository, job.trainer_id):
            self._fail(job, KILL_SWITCH_ENABLED, "La carga de rutinas está desactivada para esta cuenta.")
            return False

        artifact = self.artifacts.get(job.id)
        if artifact is None:
            self._fail(job, PROCESSING_FAILED, "No encontramos el archivo original de la importación.")
            return False

        self.repository.update_job_status(job.id, "processing", "extracting", 20)
        draft = parse_payload(job.source_type, artifact.payload)

        self.repository.update_job_status(job.id, "processing", "validating", 70)
        bundle = build_draft_bundle(draft)
        self.repository.save_draft_bundle(job.id, bundle)

        if has_issue_code(bundle.issues, "no_exercises_detected"):
            message = _first_issue_message(
                bundle.issues, "no_exercises_detected", "No pudimos reconocer ejercicios válidos."
            )
            self._fail(job, NO_EXERCISES_DETECTED, message, bundle.issues)
            return False

        if has_issue_code(bundle.issues, *PDF_COVERAGE_CODES):
            self._fail(
                job,
                PDF_LAYOUT_UNRESOLVED,
                "No pudimos interpretar el PDF con suficiente confianza. Probá pegando el texto.",
                bundle.issues,
            )
            return False

        self.repository.update_job_status(job.id, "ready", "ready", 100, clear_lease=True)
        self.audit.log(job.id, job.trainer_id, job.client_id, "ready", bundle.stats.model_dump())
        return True

    def _fail(self, job: ImportJob, code: str, message: str, issues=None) -> None:
        self.repository.update_job_status(
            job.id, "failed", "failed", 100,
            error_code=code,
            error_message=message,
            clear_lease=True,
        )
        self.audit.log(job.id, job.trainer_id, job.client_id, "failed", {
            "code": code,
            "issue_codes": [issue.code for issue in issues or []],
        })
