"""
Routine Import API Routes

Trainer-facing endpoints drive one import job through its lifecycle:
1. Create - paste text or upload a file (queued for the worker)
2. Review - fetch the draft, issues and derived plan; edit the draft
3. Commit - write the plan over the client's routine (with backup)
4. Rollback - restore the routine from a backup

Internal endpoints run the worker and the housekeeping purge.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from routine_import_api.auth import get_current_user, require_internal_secret
from routine_import_api.errors import INVALID_PAYLOAD, ImportServiceError
from routine_import_api.models import (
    BundleResponse,
    CommitRequest,
    CommitResult,
    CreateJobRequest,
    CreateJobResponse,
    JobView,
    PatchDraftRequest,
    PurgeResponse,
    RollbackRequest,
    RollbackResult,
    RoutineBackup,
    WorkerTickResponse,
)
from routine_import_api.services.commit_service import CommitService
from routine_import_api.services.job_service import JobService
from routine_import_api.services.repository import ImportRepository, get_repository
from routine_import_api.services.worker import ImportWorker
from routine_import_api.utils import now_iso

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/import", tags=["Routine Import"])
internal_router = APIRouter(
    prefix="/api/internal/import",
    tags=["Routine Import (internal)"],
    dependencies=[Depends(require_internal_secret)],
)


def get_job_service(repository: ImportRepository = Depends(get_repository)) -> JobService:
    return JobService(repository)


def get_commit_service(repository: ImportRepository = Depends(get_repository)) -> CommitService:
    return CommitService(repository)


def get_import_worker(repository: ImportRepository = Depends(get_repository)) -> ImportWorker:
    return ImportWorker(repository)


def _http_error(error: ImportServiceError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_detail())


def _bad_request(message: str) -> HTTPException:
    return _http_error(ImportServiceError(400, INVALID_PAYLOAD, message))


# ============================================================================
# Jobs
# ============================================================================

@router.post("/jobs", response_model=CreateJobResponse, status_code=201)
async def create_import_job(
    request: Request,
    response: Response,
    user_id: str = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
):
    """
    Create an import job.

    Accepts either JSON ``{client_id?, scope, source_type?, raw_text}`` or
    multipart/form-data with ``file``, ``client_id``, ``scope`` and
    ``source_type``. Returns 201 for a new job and 200 when an identical job
    is already queued, processing or ready.
    """
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("multipart/form-data"):
            form = await request.form()
            upload = form.get("file")
            if upload is None or isinstance(upload, str):
                raise _bad_request("Falta el archivo a importar.")
            payload = await upload.read()
            job, reused = await run_in_threadpool(
                service.create_job_from_file,
                trainer_id=user_id,
                client_id=form.get("client_id") or None,
                scope=form.get("scope") or "client",
                file_name=upload.filename,
                mime_type=upload.content_type,
                payload=payload,
                source_type=form.get("source_type") or None,
            )
        else:
            try:
                body = CreateJobRequest.model_validate(await request.json())
            except ValidationError as e:
                raise RequestValidationError(e.errors())
            except ValueError:
                raise _bad_request("El cuerpo de la solicitud no es JSON válido.")
            job, reused = await run_in_threadpool(
                service.create_job_from_text,
                trainer_id=user_id,
                client_id=body.client_id,
                scope=body.scope,
                raw_text=body.raw_text,
            )
    except ImportServiceError as e:
        raise _http_error(e) from e

    response.status_code = 200 if reused else 201
    return CreateJobResponse(job_id=job.id, reused=reused)


@router.get("/jobs/{job_id}", response_model=JobView)
def get_import_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
):
    """Job status plus its draft, issues, stats and derived plan."""
    try:
        return service.get_job_view(job_id, user_id)
    except ImportServiceError as e:
        raise _http_error(e) from e


@router.patch("/jobs/{job_id}/draft", response_model=BundleResponse)
def patch_import_draft(
    job_id: str,
    body: PatchDraftRequest,
    user_id: str = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
):
    """Replace the draft with the editor's version and revalidate it."""
    try:
        bundle = service.patch_draft(job_id, user_id, body.draft)
    except ImportServiceError as e:
        raise _http_error(e) from e
    return BundleResponse(
        draft=bundle.draft,
        issues=bundle.issues,
        stats=bundle.stats,
        derived_plan=bundle.derived_plan,
    )


# ============================================================================
# Commit / rollback
# ============================================================================

@router.post("/jobs/{job_id}/commit", response_model=CommitResult)
def commit_import_job(
    job_id: str,
    body: CommitRequest,
    user_id: str = Depends(get_current_user),
    service: CommitService = Depends(get_commit_service),
):
    try:
        return service.commit_import_job(
            job_id=job_id,
            trainer_id=user_id,
            client_id=body.client_id,
            policy=body.policy,
            overwrite_days=body.overwrite_days,
            routine_version_expected=body.routine_version_expected,
            idempotency_key=body.commit_idempotency_key,
            ui_meta=body.ui_meta,
        )
    except ImportServiceError as e:
        raise _http_error(e) from e


@router.post("/jobs/{job_id}/rollback", response_model=RollbackResult)
def rollback_import_job(
    job_id: str,
    body: RollbackRequest,
    user_id: str = Depends(get_current_user),
    service: CommitService = Depends(get_commit_service),
):
    try:
        return service.rollback_import_job(
            job_id=job_id,
            trainer_id=user_id,
            client_id=body.client_id,
            backup_id=body.backup_id,
        )
    except ImportServiceError as e:
        raise _http_error(e) from e


@router.get("/clients/{client_id}/backups", response_model=List[RoutineBackup])
def list_routine_backups(
    client_id: str,
    limit: int = Query(20),
    user_id: str = Depends(get_current_user),
    service: CommitService = Depends(get_commit_service),
):
    """Routine backups for a client written by the calling trainer, newest first."""
    return service.list_backups(client_id, user_id, limit)


# ============================================================================
# Internal
# ============================================================================

@internal_router.post("/worker-tick", response_model=WorkerTickResponse)
def run_worker_tick(
    limit: Optional[int] = Query(None),
    lease_seconds: Optional[int] = Query(None),
    worker: ImportWorker = Depends(get_import_worker),
):
    """Claim and process one batch of queued jobs."""
    return worker.process_import_jobs(limit=limit, lease_seconds=lease_seconds)


@internal_router.post("/purge", response_model=PurgeResponse)
def purge_import_data(repository: ImportRepository = Depends(get_repository)):
    """Expire stale jobs and delete expired artifacts and old backups."""
    counts = repository.purge_expired()
    return PurgeResponse(ok=True, run_at=now_iso(), **counts)
