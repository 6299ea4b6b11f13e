"""
Import persistence.

``ImportRepository`` is the contract every backing store honors; the job,
worker and commit services only talk to it. ``InMemoryImportRepository``
keeps everything in process memory behind a single lock and is used for
local development and tests. The Supabase implementation lives in
``supabase_repository``.
"""

import copy
import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from routine_import_api.constants import BACKUP_MAX_AGE_DAYS, BACKUP_MAX_PER_CLIENT
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
from routine_import_api.utils import make_id, now_iso, parse_iso, utc_now

logger = logging.getLogger(__name__)

REUSABLE_STATUSES = ("queued", "processing", "ready")
EXPIRABLE_STATUSES = ("queued", "processing", "ready", "failed")


def commit_fingerprint(
    job_id: str,
    policy: str,
    overwrite_days: Optional[Sequence[str]],
    routine_version_expected: int,
    next_plan: Dict[str, Any],
    next_ui_meta: Optional[Dict[str, Any]],
) -> str:
    """Stable hash of a commit request, used to tell replays from key reuse."""
    body = json.dumps(
        {
            "job_id": job_id,
            "policy": policy,
            "overwrite_days": list(overwrite_days or []),
            "routine_version_expected": routine_version_expected,
            "plan": next_plan,
            "ui_meta": next_ui_meta,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def merge_plan(
    current_plan: Dict[str, Any],
    next_plan: Dict[str, Any],
    policy: str,
    overwrite_days: Optional[Sequence[str]],
) -> Dict[str, Any]:
    if policy == "overwrite_all":
        return copy.deepcopy(next_plan)
    merged = copy.deepcopy(current_plan)
    for day_key in overwrite_days or []:
        if day_key in next_plan:
            merged[day_key] = copy.deepcopy(next_plan[day_key])
    return merged


class ImportRepository(ABC):
    """Storage contract for import jobs, drafts, artifacts and routine commits."""

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @abstractmethod
    def create_job(self, job: ImportJob) -> ImportJob:
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[ImportJob]:
        pass

    @abstractmethod
    def get_job_for_trainer(self, job_id: str, trainer_id: str) -> Optional[ImportJob]:
        pass

    @abstractmethod
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
        """Newest job in queued, processing or ready with the same inputs."""

    @abstractmethod
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
        """Move a job to a new status.

        ``error_code``/``error_message`` always overwrite the current values,
        so a transition without them clears the job error. A non-empty error
        code is also recorded as the job's last error.
        """

    @abstractmethod
    def claim_jobs(self, worker_id: str, limit: int, lease_seconds: int) -> List[ImportJob]:
        """Atomically lease up to ``limit`` jobs to ``worker_id``."""

    # ------------------------------------------------------------------
    # Artifacts and drafts
    # ------------------------------------------------------------------

    @abstractmethod
    def save_artifact(self, artifact: Artifact) -> None:
        pass

    @abstractmethod
    def get_artifact(self, job_id: str) -> Optional[Artifact]:
        pass

    @abstractmethod
    def save_draft_bundle(self, job_id: str, bundle: DraftBundle) -> None:
        pass

    @abstractmethod
    def get_draft_bundle(self, job_id: str) -> Optional[DraftBundle]:
        pass

    # ------------------------------------------------------------------
    # Routines
    # ------------------------------------------------------------------

    @abstractmethod
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
        """Back up the live routine and replace it in one atomic step.

        Raises:
            OptimisticLockConflict: live version differs from the expected one
            IdempotencyKeyReused: key already used with a different payload
            RepositoryError: any other store failure
        """

    @abstractmethod
    def rollback_commit(
        self,
        job_id: str,
        trainer_id: str,
        client_id: str,
        backup_id: Optional[str] = None,
    ) -> RollbackResult:
        """Restore a backup (the job's latest one when no id is given)."""

    @abstractmethod
    def get_routine(self, client_id: str) -> Optional[Routine]:
        pass

    @abstractmethod
    def list_backups(
        self,
        client_id: str,
        limit: int = BACKUP_MAX_PER_CLIENT,
        created_by: Optional[str] = None,
    ) -> List[RoutineBackup]:
        """Backups for a client, newest first, optionally only those written by one trainer."""

    # ------------------------------------------------------------------
    # Audit, tenant limits and housekeeping
    # ------------------------------------------------------------------

    @abstractmethod
    def insert_audit_event(
        self,
        job_id: str,
        trainer_id: str,
        client_id: Optional[str],
        event: str,
        payload: Dict[str, Any],
    ) -> None:
        pass

    @abstractmethod
    def is_kill_switched(self, trainer_id: str) -> bool:
        pass

    @abstractmethod
    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Expire stale jobs, drop expired artifacts and old backups.

        Returns:
            Counts keyed ``artifacts_deleted``, ``jobs_expired``,
            ``jobs_deleted`` and ``backups_deleted``
        """


class InMemoryImportRepository(ImportRepository):
    """Process-local repository. Every operation runs under one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[str, ImportJob] = {}
        self._artifacts: Dict[str, Artifact] = {}
        self._bundles: Dict[str, DraftBundle] = {}
        self._routines: Dict[str, Routine] = {}
        self._backups: Dict[str, RoutineBackup] = {}
        self._commit_ledger: Dict[Tuple[str, str], Tuple[str, CommitResult]] = {}
        self._kill_switched: set = set()
        self.audit_events: List[Dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Test and development helpers
    # ------------------------------------------------------------------

    def seed_routine(
        self,
        client_id: str,
        plan: Optional[Dict[str, Any]] = None,
        version: int = 1,
        ui_meta: Optional[Dict[str, Any]] = None,
    ) -> Routine:
        routine = Routine(
            client_id=client_id,
            plan=copy.deepcopy(plan or {}),
            ui_meta=ui_meta,
            version=version,
            last_saved_at=now_iso(),
        )
        with self._lock:
            self._routines[client_id] = routine
        return routine.model_copy(deep=True)

    def set_kill_switch(self, trainer_id: str, enabled: bool = True) -> None:
        with self._lock:
            if enabled:
                self._kill_switched.add(trainer_id)
            else:
                self._kill_switched.discard(trainer_id)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, job: ImportJob) -> ImportJob:
        now = now_iso()
        stored = job.model_copy(update={
            "created_at": job.created_at or now,
            "updated_at": now,
        })
        with self._lock:
            if stored.id in self._jobs:
                raise RepositoryError(f"Job {stored.id} already exists")
            self._jobs[stored.id] = stored
        logger.info("Created import job %s (%s)", stored.id, stored.source_type)
        return stored.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[ImportJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def get_job_for_trainer(self, job_id: str, trainer_id: str) -> Optional[ImportJob]:
        job = self.get_job(job_id)
        if job is None or job.trainer_id != trainer_id:
            return None
        return job

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
        with self._lock:
            candidates = [
                job for job in self._jobs.values()
                if job.trainer_id == trainer_id
                and job.scope == scope
                and job.file_hash_sha256 == file_hash_sha256
                and job.parser_version == parser_version
                and job.ruleset_version == ruleset_version
                and job.extractor_version == extractor_version
                and job.status in REUSABLE_STATUSES
                and (client_id is None or job.client_id == client_id)
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda job: job.created_at or "")
            return newest.model_copy(deep=True)

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

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise RepositoryError(f"Job {job_id} not found")
            self._jobs[job_id] = job.model_copy(update=update)
        logger.info("Job %s -> %s (%s %d%%)", job_id, status, progress_stage, progress_percent)

    def claim_jobs(self, worker_id: str, limit: int, lease_seconds: int) -> List[ImportJob]:
        now = utc_now()
        lease_expires_at = (now + timedelta(seconds=lease_seconds)).isoformat()
        claimed: List[ImportJob] = []

        with self._lock:
            ordered = sorted(self._jobs.values(), key=lambda job: job.created_at or "")
            for job in ordered:
                if len(claimed) >= limit:
                    break
                if not self._is_claimable(job, now):
                    continue
                leased = job.model_copy(update={
                    "status": "processing",
                    "progress_stage": "processing",
                    "progress_percent": max(job.progress_percent, 5),
                    "lease_owner": worker_id,
                    "lease_expires_at": lease_expires_at,
                    "attempts": job.attempts + 1,
                    "updated_at": now.isoformat(),
                })
                self._jobs[job.id] = leased
                claimed.append(leased.model_copy(deep=True))

        if claimed:
            logger.info("Worker %s claimed %d job(s)", worker_id, len(claimed))
        return claimed

    @staticmethod
    def _is_claimable(job: ImportJob, now: datetime) -> bool:
        if job.attempts >= job.max_attempts:
            return False
        if job.status == "queued":
            return True
        if job.status == "processing":
            lease_expires_at = parse_iso(job.lease_expires_at)
            return lease_expires_at is None or lease_expires_at <= now
        return False

    # ------------------------------------------------------------------
    # Artifacts and drafts
    # ------------------------------------------------------------------

    def save_artifact(self, artifact: Artifact) -> None:
        with self._lock:
            self._artifacts[artifact.job_id] = artifact.model_copy(deep=True)

    def get_artifact(self, job_id: str) -> Optional[Artifact]:
        with self._lock:
            artifact = self._artifacts.get(job_id)
            return artifact.model_copy(deep=True) if artifact else None

    def save_draft_bundle(self, job_id: str, bundle: DraftBundle) -> None:
        with self._lock:
            self._bundles[job_id] = bundle.model_copy(deep=True)

    def get_draft_bundle(self, job_id: str) -> Optional[DraftBundle]:
        with self._lock:
            bundle = self._bundles.get(job_id)
            return bundle.model_copy(deep=True) if bundle else None

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
        fingerprint = commit_fingerprint(
            job_id, policy, overwrite_days, routine_version_expected, next_plan, next_ui_meta
        )
        ledger_key = (client_id, idempotency_key)

        with self._lock:
            previous = self._commit_ledger.get(ledger_key)
            if previous is not None:
                previous_fingerprint, previous_result = previous
                if previous_fingerprint != fingerprint:
                    raise IdempotencyKeyReused(
                        f"Idempotency key {idempotency_key} was already used with a different payload"
                    )
                logger.info("Replayed commit %s for client %s", previous_result.commit_id, client_id)
                return previous_result.model_copy()

            current = self._routines.get(client_id) or Routine(client_id=client_id)
            if current.version != routine_version_expected:
                raise OptimisticLockConflict(routine_version_expected, current.version)

            now = now_iso()
            backup = RoutineBackup(
                id=make_id(),
                client_id=client_id,
                job_id=job_id,
                created_by=trainer_id,
                plan=copy.deepcopy(current.plan),
                ui_meta=copy.deepcopy(current.ui_meta),
                routine_version=current.version,
                created_at=now,
            )
            self._backups[backup.id] = backup
            self._routines[client_id] = Routine(
                client_id=client_id,
                plan=merge_plan(current.plan, next_plan, policy, overwrite_days),
                ui_meta=copy.deepcopy(next_ui_meta),
                version=current.version + 1,
                last_saved_at=now,
            )
            self._enforce_backup_retention(client_id)

            result = CommitResult(
                commit_id=make_id(),
                routine_version_after=current.version + 1,
                backup_id=backup.id,
            )
            self._commit_ledger[ledger_key] = (fingerprint, result)

        logger.info(
            "Committed job %s to client %s (version %d -> %d)",
            job_id, client_id, routine_version_expected, result.routine_version_after,
        )
        return result.model_copy()

    def rollback_commit(
        self,
        job_id: str,
        trainer_id: str,
        client_id: str,
        backup_id: Optional[str] = None,
    ) -> RollbackResult:
        with self._lock:
            if backup_id:
                backup = self._backups.get(backup_id)
                if backup is None or backup.client_id != client_id:
                    raise RepositoryError(f"Backup {backup_id} not found for client {client_id}")
            else:
                job_backups = [
                    b for b in self._backups.values()
                    if b.client_id == client_id and b.job_id == job_id
                ]
                if not job_backups:
                    raise RepositoryError(f"No backup available for job {job_id}")
                backup = max(job_backups, key=lambda b: b.created_at)

            current = self._routines.get(client_id) or Routine(client_id=client_id)
            version_after = current.version + 1
            self._routines[client_id] = Routine(
                client_id=client_id,
                plan=copy.deepcopy(backup.plan),
                ui_meta=copy.deepcopy(backup.ui_meta),
                version=version_after,
                last_saved_at=now_iso(),
            )

        logger.info("Rolled back client %s to backup %s (version %d)", client_id, backup.id, version_after)
        return RollbackResult(backup_id=backup.id, routine_version_after=version_after)

    def get_routine(self, client_id: str) -> Optional[Routine]:
        with self._lock:
            routine = self._routines.get(client_id)
            return routine.model_copy(deep=True) if routine else None

    def list_backups(
        self,
        client_id: str,
        limit: int = BACKUP_MAX_PER_CLIENT,
        created_by: Optional[str] = None,
    ) -> List[RoutineBackup]:
        with self._lock:
            backups = [
                b for b in self._backups.values()
                if b.client_id == client_id and (created_by is None or b.created_by == created_by)
            ]
        backups.sort(key=lambda b: b.created_at, reverse=True)
        return [b.model_copy(deep=True) for b in backups[:limit]]

    def _enforce_backup_retention(self, client_id: str, now: Optional[datetime] = None) -> int:
        """Drop backups beyond the per-client cap or age limit. Caller holds the lock."""
        cutoff = (now or utc_now()) - timedelta(days=BACKUP_MAX_AGE_DAYS)
        backups = sorted(
            (b for b in self._backups.values() if b.client_id == client_id),
            key=lambda b: b.created_at,
            reverse=True,
        )
        removed = 0
        for index, backup in enumerate(backups):
            created_at = parse_iso(backup.created_at)
            too_old = created_at is not None and created_at < cutoff
            if index >= BACKUP_MAX_PER_CLIENT or too_old:
                del self._backups[backup.id]
                removed += 1
        return removed

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
        with self._lock:
            self.audit_events.append({
                "job_id": job_id,
                "trainer_id": trainer_id,
                "client_id": client_id,
                "event": event,
                "payload": copy.deepcopy(payload),
                "created_at": now_iso(),
            })

    def is_kill_switched(self, trainer_id: str) -> bool:
        with self._lock:
            return trainer_id in self._kill_switched

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utc_now()
        deleted_cutoff = now - timedelta(days=BACKUP_MAX_AGE_DAYS)
        counts = {"artifacts_deleted": 0, "jobs_expired": 0, "jobs_deleted": 0, "backups_deleted": 0}

        with self._lock:
            for job_id, artifact in list(self._artifacts.items()):
                expires_at = parse_iso(artifact.expires_at)
                if expires_at is not None and expires_at <= now:
                    del self._artifacts[job_id]
                    counts["artifacts_deleted"] += 1

            for job_id, job in list(self._jobs.items()):
                expires_at = parse_iso(job.expires_at)
                if expires_at is None or expires_at > now:
                    continue
                if job.status in EXPIRABLE_STATUSES:
                    self._jobs[job_id] = job.model_copy(update={
                        "status": "expired",
                        "progress_stage": "expired",
                        "lease_owner": None,
                        "lease_expires_at": None,
                        "updated_at": now.isoformat(),
                    })
                    counts["jobs_expired"] += 1
                elif job.status == "expired" and expires_at <= deleted_cutoff:
                    del self._jobs[job_id]
                    self._bundles.pop(job_id, None)
                    counts["jobs_deleted"] += 1

            for client_id in {b.client_id for b in self._backups.values()}:
                counts["backups_deleted"] += self._enforce_backup_retention(client_id, now)

        logger.info("Purged import data: %s", counts)
        return counts


def is_tenant_kill_switched(repository: ImportRepository, trainer_id: str) -> bool:
    """Kill-switch lookup that treats a failed lookup as not switched."""
    try:
        return repository.is_kill_switched(trainer_id)
    except Exception as e:
        logger.warning(f"Kill switch lookup failed for trainer {trainer_id}: {e}")
        return False


_repository: Optional[ImportRepository] = None


def get_repository() -> ImportRepository:
    """Process-wide repository selected by ``IMPORT_REPOSITORY``."""
    global _repository
    if _repository is None:
        from routine_import_api.config import settings

        if settings.IMPORT_REPOSITORY == "supabase":
            from routine_import_api.services.supabase_repository import SupabaseImportRepository
            _repository = SupabaseImportRepository.from_settings(settings)
        else:
            _repository = InMemoryImportRepository()
        logger.info("Using %s import repository", type(_repository).__name__)
    return _repository


def set_repository(repository: Optional[ImportRepository]) -> None:
    global _repository
    _repository = repository
