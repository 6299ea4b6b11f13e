"""
Commit and rollback of imported routines.

A commit writes the job's derived plan over the client's live routine in
one atomic repository call that also stores a backup of what it replaced.
Concurrent editors are caught by the expected routine version; retries of
the same request are absorbed by the idempotency key.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from routine_import_api.constants import WEEK_DAY_KEYS
from routine_import_api.errors import (
    BLOCKING_ISSUES,
    CLIENT_MISMATCH,
    INTERNAL_ERROR,
    INVALID_COMMIT_POLICY,
    INVALID_PAYLOAD,
    JOB_NOT_FOUND,
    OPTIMISTIC_LOCK_CONFLICT,
    IdempotencyKeyReused,
    ImportServiceError,
    OptimisticLockConflict,
)
from routine_import_api.models import (
    CommitResult,
    DraftBundle,
    ImportJob,
    RollbackResult,
    RoutineBackup,
    UiMeta,
)
from routine_import_api.services.audit_service import AuditService
from routine_import_api.services.repository import ImportRepository

logger = logging.getLogger(__name__)

COMMIT_POLICIES = ("overwrite_all", "overwrite_days")
MAX_BACKUPS_LISTED = 50

_EXERCISE_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "routine-import/exercise")


def committed_exercise_id(job_id: str, exercise_id: str) -> str:
    """Globally unique exercise id, stable across retries of the same job."""
    return str(uuid.uuid5(_EXERCISE_ID_NAMESPACE, f"{job_id}:{exercise_id}"))


def build_commit_plan(job_id: str, bundle: DraftBundle) -> Dict[str, Any]:
    plan = {}
    for day_key, day in bundle.derived_plan.items():
        day_dict = day.model_dump(mode="json")
        for exercise in day_dict["exercises"]:
            exercise["id"] = committed_exercise_id(job_id, exercise["id"])
        plan[day_key] = day_dict
    return plan


def resolve_ui_meta(ui_meta: Optional[UiMeta], bundle: DraftBundle) -> Dict[str, Any]:
    requested = ui_meta or UiMeta()
    return {
        "day_label_mode": requested.day_label_mode or bundle.draft.presentation.day_label_mode,
        "hide_empty_days_in_sequential": (
            requested.hide_empty_days_in_sequential
            if requested.hide_empty_days_in_sequential is not None
            else True
        ),
    }


class CommitService:
    """Applies import drafts to live routines and undoes them."""

    def __init__(self, repository: ImportRepository):
        self.repository = repository
        self.audit = AuditService(repository)

    def _get_job_for_client(self, job_id: str, trainer_id: str, client_id: str) -> ImportJob:
        job = self.repository.get_job_for_trainer(job_id, trainer_id)
        if job is None:
            raise ImportServiceError(404, JOB_NOT_FOUND, "No encontramos la importación.")
        if job.client_id != client_id:
            raise ImportServiceError(403, CLIENT_MISMATCH, "La importación pertenece a otro alumno.")
        return job

    @staticmethod
    def _validate_policy(policy: str, overwrite_days: Optional[Sequence[str]]) -> Optional[List[str]]:
        if policy not in COMMIT_POLICIES:
            raise ImportServiceError(400, INVALID_COMMIT_POLICY, "La política de guardado no es válida.")
        if policy == "overwrite_all":
            return None
        days = list(dict.fromkeys(overwrite_days or []))
        if not days or any(day not in WEEK_DAY_KEYS for day in days):
            raise ImportServiceError(
                400,
                INVALID_COMMIT_POLICY,
                "Elegí al menos un día válido para sobrescribir.",
                meta={"overwrite_days": list(overwrite_days or [])},
            )
        return days

    def _reset_after_failure(self, job: ImportJob, code: str, message: str) -> None:
        self.repository.update_job_status(
            job.id, "ready", "ready", 100,
            error_code=code,
            error_message=message,
            clear_lease=True,
        )

    def commit_import_job(
        self,
        job_id: str,
        trainer_id: str,
        client_id: str,
        policy: str,
        overwrite_days: Optional[Sequence[str]],
        routine_version_expected: int,
        idempotency_key: str,
        ui_meta: Optional[UiMeta] = None,
    ) -> CommitResult:
        job = self._get_job_for_client(job_id, trainer_id, client_id)

        bundle = self.repository.get_draft_bundle(job.id)
        if bundle is None:
            raise ImportServiceError(
                409, INVALID_PAYLOAD, "La importación todavía no tiene un borrador para confirmar."
            )
        if bundle.has_blocking_issues:
            raise ImportServiceError(
                422,
                BLOCKING_ISSUES,
                "Hay problemas pendientes que resolver antes de confirmar.",
                meta={"blocking_issues": sum(1 for issue in bundle.issues if issue.is_blocking)},
            )
        days = self._validate_policy(policy, overwrite_days)

        self.repository.update_job_status(job.id, "committing", "committing", 95)
        next_ui_meta = resolve_ui_meta(ui_meta, bundle)

        try:
            result = self.repository.apply_commit(
                job_id=job.id,
                trainer_id=trainer_id,
                client_id=client_id,
                policy=policy,
                overwrite_days=days,
                routine_version_expected=routine_version_expected,
                idempotency_key=idempotency_key,
                next_plan=build_commit_plan(job.id, bundle),
                next_ui_meta=next_ui_meta,
            )
        except OptimisticLockConflict as e:
            routine = self.repository.get_routine(client_id)
            meta = {
                "expected_version": e.expected_version,
                "current_version": e.current_version,
                "last_saved_at": routine.last_saved_at if routine else None,
            }
            message = "La rutina cambió mientras revisabas la importación. Recargá y volvé a intentar."
            self._reset_after_failure(job, OPTIMISTIC_LOCK_CONFLICT, message)
            self.audit.log(job.id, trainer_id, client_id, "commit_failed", {
                "code": OPTIMISTIC_LOCK_CONFLICT, **meta,
            })
            raise ImportServiceError(409, OPTIMISTIC_LOCK_CONFLICT, message, meta=meta) from e
        except IdempotencyKeyReused as e:
            message = "La clave de confirmación ya se usó con otro contenido."
            self._reset_after_failure(job, INVALID_PAYLOAD, message)
            self.audit.log(job.id, trainer_id, client_id, "commit_failed", {"code": INVALID_PAYLOAD})
            raise ImportServiceError(409, INVALID_PAYLOAD, message) from e
        except Exception as e:
            logger.exception(f"Commit of import job {job.id} failed")
            message = "No pudimos guardar la rutina. Probá de nuevo."
            self._reset_after_failure(job, INTERNAL_ERROR, message)
            self.audit.log(job.id, trainer_id, client_id, "commit_failed", {
                "code": INTERNAL_ERROR, "error": str(e)[:300],
            })
            raise ImportServiceError(500, INTERNAL_ERROR, message) from e

        self.repository.update_job_status(job.id, "committed", "committed", 100, clear_lease=True)
        self.audit.log(job.id, trainer_id, client_id, "commit_success", {
            "commit_id": result.commit_id,
            "routine_version_after": result.routine_version_after,
            "backup_id": result.backup_id,
            "policy": policy,
            "overwrite_days": days,
            "ui_meta": next_ui_meta,
        })
        logger.info("Import job %s committed as routine version %d", job.id, result.routine_version_after)
        return result

    def rollback_import_job(
        self,
        job_id: str,
        trainer_id: str,
        client_id: str,
        backup_id: Optional[str] = None,
    ) -> RollbackResult:
        job = self._get_job_for_client(job_id, trainer_id, client_id)
        try:
            result = self.repository.rollback_commit(
                job_id=job.id,
                trainer_id=trainer_id,
                client_id=client_id,
                backup_id=backup_id,
            )
        except Exception as e:
            logger.exception(f"Rollback of import job {job.id} failed")
            raise ImportServiceError(
                500, INTERNAL_ERROR, "No pudimos restaurar la rutina anterior."
            ) from e

        self.repository.update_job_status(job.id, "rolled_back", "rolled_back", 100, clear_lease=True)
        self.audit.log(job.id, trainer_id, client_id, "rollback_success", {
            "backup_id": result.backup_id,
            "routine_version_after": result.routine_version_after,
        })
        logger.info("Import job %s rolled back to backup %s", job.id, result.backup_id)
        return result

    def list_backups(self, client_id: str, trainer_id: str, limit: int = 20) -> List[RoutineBackup]:
        """Backups of ``client_id`` written by this trainer's commits."""
        limit = max(1, min(MAX_BACKUPS_LISTED, limit))
        return self.repository.list_backups(client_id, limit, created_by=trainer_id)
