"""
Supabase-backed import repository.

Plain reads and writes go through the table API; the operations that must be
atomic (lease claim, commit with backup, rollback, purge) are Postgres RPCs.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from supabase import Client, create_client

from routine_import_api.constants import BACKUP_MAX_PER_CLIENT
from routine_import_api.errors import IdempotencyKeyReused, OptimisticLockConflict, RepositoryError
from routine_import_api.models import (
    Artifact,
    CommitResult,
    DraftBundle,
    ImportJob,
    RollbackResult,
    Routine,
    RoutineBackup,
)
from routine_import_api.services.repository import REUSABLE_STATUSES, ImportRepository
from routine_import_api.services.retry import store_retry
from routine_import_api.utils import from_base64, now_iso, to_base64, to_int, utc_now

logger = logging.getLogger(__name__)

JOBS_TABLE = "import_jobs"
ARTIFACTS_TABLE = "import_job_artifacts"
DRAFTS_TABLE = "import_drafts"
AUDIT_TABLE = "import_audit"
TENANT_LIMITS_TABLE = "import_tenant_limits"
ROUTINES_TABLE = "routines"
BACKUPS_TABLE = "routine_backups"

_EXPECTED_VERSION = re.compile(r"expected_version\D*(\d+)")
_CURRENT_VERSION = re.compile(r"current_version\D*(\d+)")


def _first_row(data: Any) -> Optional[Dict[str, Any]]:
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


def parse_lock_conflict(message: str) -> Optional[Dict[str, Optional[int]]]:
    """Pull ``expected_version``/``current_version`` out of an RPC error."""
    if "optimistic_lock_conflict" not in message:
        return None
    expected = _EXPECTED_VERSION.search(message)
    current = _CURRENT_VERSION.search(message)
    return {
        "expected_version": to_int(expected.group(1)) if expected else None,
        "current_version": to_int(current.group(1)) if current else None,
    }


class SupabaseImportRepository(ImportRepository):
    """Repository backed by Supabase tables and RPCs."""

    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_settings(cls, settings) -> "SupabaseImportRepository":
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise RepositoryError("Supabase credentials not configured")
        return cls(create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY))

    @store_retry
    def _rpc(self, name: str, params: Dict[str, Any]) -> Any:
        return self.client.rpc(name, params).execute().data

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, job: ImportJob) -> ImportJob:
        row = job.model_dump(exclude_none=True)
        try:
            result = self.client.table(JOBS_TABLE).insert(row).execute()
        except Exception as e:
            raise RepositoryError(f"Failed to create import job: {e}") from e
        created = _first_row(result.data)
        logger.info("Created import job %s (%s)", job.id, job.source_type)
        return ImportJob(**created) if created else job

    def get_job(self, job_id: str) -> Optional[ImportJob]:
        result = self.client.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1).execute()
        row = _first_row(result.data)
        return ImportJob(**row) if row else None

    def get_job_for_trainer(self, job_id: str, trainer_id: str) -> Optional[ImportJob]:
        result = self.client.table(JOBS_TABLE) \
            .select("*") \
            .eq("id", job_id) \
            .eq("trainer_id", trainer_id) \
            .limit(1) \
            .execute()
        row = _first_row(result.data)
        return ImportJob(**row) if row else None

    def find_reusable_job(
        self,
        trainer_id: str,
        scope: str,
        file_hash_sha256: str,
        parser_version: str,
        ruleset_version: str,
        extractor_version: str,
        client_id: Optional[str] = None,
    ) -> Optional[ImportJob]:
        query = self.client.table(JOBS_TABLE) \
            .select("*") \
            .eq("trainer_id", trainer_id) \
            .eq("scope", scope) \
            .eq("file_hash_sha256", file_hash_sha256) \
            .eq("parser_version", parser_version) \
            .eq("ruleset_version", ruleset_version) \
            .eq("extractor_version", extractor_version) \
            .in_("status", list(REUSABLE_STATUSES))
        if client_id:
            query = query.eq("client_id", client_id)
        result = query.order("created_at", desc=True).limit(1).execute()
        row = _first_row(result.data)
        return ImportJob(**row) if row else None

    def update_job_status(
        self,
        job_id: str,
        status: str,
        progress_stage: str,
        progress_percent: int,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        clear_lease: bool = False,
    ) -> None:
        now = now_iso()
        update: Dict[str, Any] = {
            "status": status,
            "progress_stage": progress_stage,
            "progress_percent": progress_percent,
            "error_code": error_code,
            "error_message": error_message,
            "updated_at": now,
        }
        if error_code:
            update.update(last_error_code=error_code, last_error_message=error_message, last_error_at=now)
        if clear_lease:
            update.update(lease_owner=None, lease_expires_at=None)
        try:
            self.client.table(JOBS_TABLE).update(update).eq("id", job_id).execute()
        except Exception as e:
            raise RepositoryError(f"Failed to update job {job_id}: {e}") from e
        logger.info("Job %s -> %s (%s %d%%)", job_id, status, progress_stage, progress_percent)

    def claim_jobs(self, worker_id: str, limit: int, lease_seconds: int) -> List[ImportJob]:
        try:
            rows = self._rpc("claim_import_jobs", {
                "p_worker_id": worker_id,
                "p_limit": limit,
                "p_lease_seconds": lease_seconds,
            })
        except Exception as e:
            raise RepositoryError(f"Failed to claim import jobs: {e}") from e
        jobs = [ImportJob(**row) for row in rows or []]
        if jobs:
            logger.info("Worker %s claimed %d job(s)", worker_id, len(jobs))
        return jobs

    # ------------------------------------------------------------------
    # Artifacts and drafts
    # ------------------------------------------------------------------

    def save_artifact(self, artifact: Artifact) -> None:
        row = {
            "job_id": artifact.job_id,
            "payload_base64": to_base64(artifact.payload),
            "mime_type": artifact.mime_type,
            "file_name": artifact.file_name,
            "expires_at": artifact.expires_at,
        }
        try:
            self.client.table(ARTIFACTS_TABLE).upsert(row, on_conflict="job_id").execute()
        except Exception as e:
            raise RepositoryError(f"Failed to store artifact for job {artifact.job_id}: {e}") from e

    def get_artifact(self, job_id: str) -> Optional[Artifact]:
        result = self.client.table(ARTIFACTS_TABLE).select("*").eq("job_id", job_id).limit(1).execute()
        row = _first_row(result.data)
        if not row or not row.get("payload_base64"):
            return None
        return Artifact(
            job_id=job_id,
            payload=from_base64(row["payload_base64"]),
            mime_type=row.get("mime_type"),
            file_name=row.get("file_name"),
            expires_at=row.get("expires_at"),
        )

    def save_draft_bundle(self, job_id: str, bundle: DraftBundle) -> None:
        row = bundle.model_dump(mode="json")
        row.update(job_id=job_id, updated_at=now_iso())
        try:
            self.client.table(DRAFTS_TABLE).upsert(row, on_conflict="job_id").execute()
        except Exception as e:
            raise RepositoryError(f"Failed to store draft for job {job_id}: {e}") from e

    def get_draft_bundle(self, job_id: str) -> Optional[DraftBundle]:
        result = self.client.table(DRAFTS_TABLE).select("*").eq("job_id", job_id).limit(1).execute()
        row = _first_row(result.data)
        if not row or not row.get("draft"):
            return None
        return DraftBundle(
            draft=row["draft"],
            issues=row.get("issues") or [],
            derived_plan=row.get("derived_plan") or {},
            stats=row.get("stats") or {},
        )

    # ------------------------------------------------------------------
    # Routines
    # ------------------------------------------------------------------

    def apply_commit(
        self,
        job_id: str,
        trainer_id: str,
        client_id: str,
        policy: str,
        overwrite_days: Optional[Sequence[str]],
        routine_version_expected: int,
        idempotency_key: str,
        next_plan: Dict[str, Any],
        next_ui_meta: Optional[Dict[str, Any]],
    ) -> CommitResult:
        params = {
            "p_job_id": job_id,
            "p_trainer_id": trainer_id,
            "p_client_id": client_id,
            "p_policy": policy,
            "p_overwrite_days": list(overwrite_days) if policy == "overwrite_days" else None,
            "p_routine_version_expected": routine_version_expected,
            "p_commit_idempotency_key": idempotency_key,
            "p_next_plan": next_plan,
            "p_next_ui_meta": next_ui_meta,
        }
        try:
            data = self._rpc("apply_import_commit", params)
        except Exception as e:
            self._raise_commit_error(e, client_id, routine_version_expected)
        row = _first_row(data)
        if not row:
            raise RepositoryError("apply_import_commit returned no result")
        return CommitResult(**row)

    def _raise_commit_error(self, error: Exception, client_id: str, routine_version_expected: int):
        message = str(error)
        conflict = parse_lock_conflict(message)
        if conflict is not None:
            current_version = conflict["current_version"]
            if current_version is None:
                routine = self.get_routine(client_id)
                current_version = routine.version if routine else None
            raise OptimisticLockConflict(
                conflict["expected_version"] or routine_version_expected, current_version
            ) from error
        if "idempotency" in message.lower():
            raise IdempotencyKeyReused(message) from error
        raise RepositoryError(f"apply_import_commit failed: {message}") from error

    def rollback_commit(
        self,
        job_id: str,
        trainer_id: str,
        client_id: str,
        backup_id: Optional[str] = None,
    ) -> RollbackResult:
        try:
            data = self._rpc("rollback_import_commit", {
                "p_job_id": job_id,
                "p_trainer_id": trainer_id,
                "p_client_id": client_id,
                "p_backup_id": backup_id,
            })
        except Exception as e:
            raise RepositoryError(f"rollback_import_commit failed: {e}") from e
        row = _first_row(data)
        if not row:
            raise RepositoryError("rollback_import_commit returned no result")
        return RollbackResult(**row)

    def get_routine(self, client_id: str) -> Optional[Routine]:
        result = self.client.table(ROUTINES_TABLE) \
            .select("client_id, plan, ui_meta, version, last_saved_at") \
            .eq("client_id", client_id) \
            .limit(1) \
            .execute()
        row = _first_row(result.data)
        return Routine(**row) if row else None

    def list_backups(
        self,
        client_id: str,
        limit: int = BACKUP_MAX_PER_CLIENT,
        created_by: Optional[str] = None,
    ) -> List[RoutineBackup]:
        query = self.client.table(BACKUPS_TABLE).select("*").eq("client_id", client_id)
        if created_by is not None:
            query = query.eq("created_by", created_by)
        result = query.order("created_at", desc=True).limit(limit).execute()
        return [RoutineBackup(**row) for row in result.data or []]

    # ------------------------------------------------------------------
    # Audit, tenant limits and housekeeping
    # ------------------------------------------------------------------

    def insert_audit_event(
        self,
        job_id: str,
        trainer_id: str,
        client_id: Optional[str],
        event: str,
        payload: Dict[str, Any],
    ) -> None:
        try:
            self.client.table(AUDIT_TABLE).insert({
                "job_id": job_id,
                "trainer_id": trainer_id,
                "client_id": client_id,
                "event": event,
                "payload": payload,
            }).execute()
        except Exception as e:
            raise RepositoryError(f"Failed to insert audit event {event}: {e}") from e

    def is_kill_switched(self, trainer_id: str) -> bool:
        result = self.client.table(TENANT_LIMITS_TABLE) \
            .select("kill_switch") \
            .eq("trainer_id", trainer_id) \
            .limit(1) \
            .execute()
        row = _first_row(result.data)
        return bool(row and row.get("kill_switch"))

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        try:
            data = self._rpc("purge_import_data", {"p_now": (now or utc_now()).isoformat()})
        except Exception as e:
            raise RepositoryError(f"purge_import_data failed: {e}") from e
        row = _first_row(data) or {}
        counts = {
            key: int(row.get(key) or 0)
            for key in ("artifacts_deleted", "jobs_expired", "jobs_deleted", "backups_deleted")
        }
        logger.info("Purged import data: %s", counts)
        return counts
