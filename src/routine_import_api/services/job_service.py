"""
Import job service.

Accepts pasted text or uploaded files, deduplicates them by content hash and
queues a job for the worker. Also serves the job view and draft edits the
editor makes before committing.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from routine_import_api.config import is_import_enabled, is_pdf_import_enabled
from routine_import_api.constants import (
    ARTIFACT_TTL_HOURS,
    EXTRACTOR_VERSION,
    MAX_FILE_SIZE_BYTES,
    MAX_RAW_TEXT_CHARS,
    PARSER_VERSION,
    RULESET_VERSION,
    SOURCE_MIME_BY_TYPE,
    SOURCE_TYPES,
)
from routine_import_api.errors import (
    FILE_TOO_LARGE,
    INVALID_FILE_TYPE,
    INVALID_PAYLOAD,
    INVALID_SCOPE,
    JOB_NOT_FOUND,
    KILL_SWITCH_ENABLED,
    UNSUPPORTED_SOURCE,
    ImportServiceError,
)
from routine_import_api.models import Draft, DraftBundle, ImportJob, JobView
from routine_import_api.services.artifact_store import ArtifactStore
from routine_import_api.services.audit_service import AuditService
from routine_import_api.services.repository import ImportRepository, is_tenant_kill_switched
from routine_import_api.services.validation import build_draft_bundle
from routine_import_api.utils import add_hours_iso, infer_source_type_from_name, make_id, sha256_hex

logger = logging.getLogger(__name__)

JOB_SCOPES = ("client", "template")
EDITABLE_STATUSES = ("ready", "failed")
LOG_PREVIEW_CHARS = 80


class JobService:
    """Creates import jobs and serves their drafts."""

    def __init__(self, repository: ImportRepository):
        self.repository = repository
        self.artifacts = ArtifactStore(repository)
        self.audit = AuditService(repository)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _ensure_enabled(self, trainer_id: str) -> None:
        if not is_import_enabled():
            raise ImportServiceError(503, INVALID_PAYLOAD, "La importación está deshabilitada temporalmente.")
        if is_tenant_kill_switched(self.repository, trainer_id):
            raise ImportServiceError(
                403, KILL_SWITCH_ENABLED, "La carga de rutinas está desactivada para esta cuenta."
            )

    @staticmethod
    def _ensure_scope(scope: str, client_id: Optional[str]) -> None:
        if scope not in JOB_SCOPES:
            raise ImportServiceError(400, INVALID_SCOPE, "El destino de la importación no es válido.")
        if scope == "client" and not client_id:
            raise ImportServiceError(400, INVALID_SCOPE, "Elegí un alumno para importar la rutina.")

    @staticmethod
    def _resolve_file_source_type(
        file_name: Optional[str],
        mime_type: Optional[str],
        payload: bytes,
        source_type: Optional[str],
    ) -> str:
        resolved = source_type or infer_source_type_from_name(file_name or "")
        if resolved not in SOURCE_TYPES:
            raise ImportServiceError(
                400,
                INVALID_FILE_TYPE,
                "El formato del archivo no está soportado. Probá con TXT, CSV, XLSX, DOCX o PDF.",
            )
        if resolved == "pdf" and not payload.startswith(b"%PDF"):
            raise ImportServiceError(400, INVALID_FILE_TYPE, "El archivo no tiene cabecera PDF válida.")
        if mime_type:
            declared = mime_type.lower()
            if not any(allowed in declared for allowed in SOURCE_MIME_BY_TYPE[resolved]):
                raise ImportServiceError(
                    400, INVALID_FILE_TYPE, "El archivo parece tener un formato distinto al esperado."
                )
        return resolved

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    def create_job_from_text(
        self,
        trainer_id: str,
        client_id: Optional[str],
        scope: str,
        raw_text: str,
    ) -> Tuple[ImportJob, bool]:
        """Queue a job for pasted routine text.

        Returns:
            Tuple of (job, reused) where ``reused`` is True when an identical
            job was already in flight
        """
        self._ensure_enabled(trainer_id)
        self._ensure_scope(scope, client_id)

        text = (raw_text or "").strip()
        if not text:
            raise ImportServiceError(400, INVALID_PAYLOAD, "El texto a importar no puede estar vacío.")
        if len(raw_text) > MAX_RAW_TEXT_CHARS:
            raise ImportServiceError(
                400, INVALID_PAYLOAD, f"El texto supera el máximo de {MAX_RAW_TEXT_CHARS} caracteres."
            )

        logger.debug("Text import for trainer %s: %r", trainer_id, text[:LOG_PREVIEW_CHARS])
        payload = raw_text.encode("utf-8")
        return self._create_or_reuse(
            trainer_id=trainer_id,
            client_id=client_id,
            scope=scope,
            source_type="text",
            payload=payload,
            mime_type="text/plain",
            file_name=None,
            file_meta={"size_bytes": len(payload), "mode": "raw_text"},
        )

    def create_job_from_file(
        self,
        trainer_id: str,
        client_id: Optional[str],
        scope: str,
        file_name: Optional[str],
        mime_type: Optional[str],
        payload: bytes,
        source_type: Optional[str] = None,
    ) -> Tuple[ImportJob, bool]:
        """Queue a job for an uploaded file."""
        self._ensure_enabled(trainer_id)
        self._ensure_scope(scope, client_id)

        if not payload:
            raise ImportServiceError(400, INVALID_PAYLOAD, "El archivo está vacío.")
        if len(payload) > MAX_FILE_SIZE_BYTES:
            raise ImportServiceError(
                413,
                FILE_TOO_LARGE,
                "El archivo es demasiado pesado. El máximo permitido es 12 MB.",
                meta={"max_bytes": MAX_FILE_SIZE_BYTES, "size_bytes": len(payload)},
            )

        resolved = self._resolve_file_source_type(file_name, mime_type, payload, source_type)
        if resolved == "pdf" and not is_pdf_import_enabled():
            raise ImportServiceError(
                503, UNSUPPORTED_SOURCE, "La importación de PDF está deshabilitada temporalmente."
            )

        return self._create_or_reuse(
            trainer_id=trainer_id,
            client_id=client_id,
            scope=scope,
            source_type=resolved,
            payload=payload,
            mime_type=mime_type,
            file_name=file_name,
            file_meta={
                "size_bytes": len(payload),
                "file_name": file_name,
                "mime_type": mime_type,
                "mode": "file",
            },
        )

    def _create_or_reuse(
        self,
        trainer_id: str,
        client_id: Optional[str],
        scope: str,
        source_type: str,
        payload: bytes,
        mime_type: Optional[str],
        file_name: Optional[str],
        file_meta: Dict[str, Any],
    ) -> Tuple[ImportJob, bool]:
        file_hash = sha256_hex(payload)
        existing = self.repository.find_reusable_job(
            trainer_id=trainer_id,
            scope=scope,
            file_hash_sha256=file_hash,
            parser_version=PARSER_VERSION,
            ruleset_version=RULESET_VERSION,
            extractor_version=EXTRACTOR_VERSION,
            client_id=client_id,
        )
        if existing is not None:
            logger.info("Reusing import job %s for hash %s", existing.id, file_hash[:12])
            return existing, True

        job_id = make_id()
        job = self.repository.create_job(ImportJob(
            id=job_id,
            trainer_id=trainer_id,
            client_id=client_id,
            scope=scope,
            status="queued",
            source_type=source_type,
            file_hash_sha256=file_hash,
            storage_path=f"import-artifacts/{job_id}",
            file_meta=file_meta,
            parser_version=PARSER_VERSION,
            ruleset_version=RULESET_VERSION,
            extractor_version=EXTRACTOR_VERSION,
            progress_stage="queued",
            progress_percent=0,
            expires_at=add_hours_iso(ARTIFACT_TTL_HOURS),
        ))
        self.artifacts.put(job.id, payload, mime_type=mime_type, file_name=file_name)
        self.audit.log(job.id, trainer_id, client_id, "job_created", {
            "source_type": source_type,
            "file_hash_sha256": file_hash,
        })
        logger.info("Queued %s import job %s for trainer %s", source_type, job.id, trainer_id)
        return job, False

    # ------------------------------------------------------------------
    # Job view and draft edits
    # ------------------------------------------------------------------

    def _get_owned_job(self, job_id: str, trainer_id: str) -> ImportJob:
        job = self.repository.get_job_for_trainer(job_id, trainer_id)
        if job is None:
            raise ImportServiceError(404, JOB_NOT_FOUND, "No encontramos la importación.")
        return job

    def get_job_view(self, job_id: str, trainer_id: str) -> JobView:
        job = self._get_owned_job(job_id, trainer_id)
        stored = self.repository.get_draft_bundle(job.id)
        if stored is None:
            return JobView(job=job)

        # Issues always reflect the current ruleset
        bundle = build_draft_bundle(stored.draft)
        if bundle.model_dump(mode="json") != stored.model_dump(mode="json"):
            logger.info("Revalidated draft for job %s changed, persisting", job.id)
            self.repository.save_draft_bundle(job.id, bundle)

        return JobView(
            job=job,
            draft=bundle.draft,
            issues=bundle.issues,
            stats=bundle.stats,
            derived_plan=bundle.derived_plan,
        )

    def patch_draft(self, job_id: str, trainer_id: str, draft: Draft) -> DraftBundle:
        job = self._get_owned_job(job_id, trainer_id)
        if job.status not in EDITABLE_STATUSES:
            raise ImportServiceError(
                409,
                INVALID_PAYLOAD,
                "El borrador solo se puede editar cuando la importación está lista o falló.",
                meta={"status": job.status},
            )

        bundle = build_draft_bundle(draft)
        self.repository.save_draft_bundle(job.id, bundle)
        self.repository.update_job_status(job.id, "ready", "ready", 100, clear_lease=True)
        self.audit.log(job.id, trainer_id, job.client_id, "draft_updated", {
            "issues_total": bundle.stats.issues_total,
            "blocking_issues": bundle.stats.blocking_issues,
        })
        return bundle
