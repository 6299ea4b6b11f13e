"""
Test fixtures for routine-import-api.

Every test runs against a fresh in-memory repository, so the job, worker
and commit services can be exercised end to end without Supabase.
"""

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

# Make src/ importable so tests can do `import routine_import_api...`
for p in {ROOT, SRC}:
    p_str = str(p)
    if p_str not in sys.path:
        sys.path.insert(0, p_str)

from routine_import_api.auth import get_current_user
from routine_import_api.main import app
from routine_import_api.parsers import build_parser_context
from routine_import_api.services.commit_service import CommitService
from routine_import_api.services.job_service import JobService
from routine_import_api.services.repository import InMemoryImportRepository, get_repository, set_repository
from routine_import_api.services.worker import ImportWorker


# ---------------------------------------------------------------------------
# Auth Mock
# ---------------------------------------------------------------------------


TEST_USER_ID = "trainer-123"
TEST_CLIENT_ID = "client-1"


async def mock_get_current_user() -> str:
    """Mock auth dependency that returns a test trainer."""
    return TEST_USER_ID


# ---------------------------------------------------------------------------
# Sample routines
# ---------------------------------------------------------------------------


SAMPLE_ROUTINE = (
    "Lunes\n"
    "Sentadilla 4x8\n"
    "Press banca 3x8-10\n"
    "\n"
    "Martes\n"
    "Dominadas 3xAMRAP\n"
    "Remo 8,8,8\n"
)

SAMPLE_CSV = (
    "dia,ejercicio,series,repeticiones\n"
    "Lunes,Sentadilla,4,8-10\n"
    "Lunes,Press banca,3,AMRAP\n"
    "Martes,Remo,3,12\n"
)


@pytest.fixture
def sample_routine() -> str:
    return SAMPLE_ROUTINE


@pytest.fixture
def sample_csv() -> bytes:
    return SAMPLE_CSV.encode("utf-8")


@pytest.fixture
def text_context():
    return build_parser_context("text")


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def clean_import_env(monkeypatch):
    """Feature flags and secrets default to their unset values."""
    for name in (
        "IMPORT_V1_ENABLED",
        "IMPORT_PDF_DIGITAL_ENABLED",
        "IMPORT_INTERNAL_SECRET",
        "IMPORT_REPOSITORY",
        "API_KEYS",
    ):
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Repository and services
# ---------------------------------------------------------------------------


@pytest.fixture
def repository():
    repo = InMemoryImportRepository()
    set_repository(repo)
    yield repo
    set_repository(None)


@pytest.fixture
def job_service(repository) -> JobService:
    return JobService(repository)


@pytest.fixture
def worker(repository) -> ImportWorker:
    return ImportWorker(repository)


@pytest.fixture
def commit_service(repository) -> CommitService:
    return CommitService(repository)


@pytest.fixture
def make_ready_job(job_service, worker):
    """Create a text job and run one worker tick over it."""

    def _make(raw_text: str = SAMPLE_ROUTINE, client_id: str = TEST_CLIENT_ID, scope: str = "client"):
        job, _ = job_service.create_job_from_text(TEST_USER_ID, client_id, scope, raw_text)
        worker.process_import_jobs(worker_id="worker-test", limit=20)
        return job.id

    return _make


# ---------------------------------------------------------------------------
# Core Test Client
# ---------------------------------------------------------------------------


@pytest.fixture
def client(repository) -> TestClient:
    """Per-test FastAPI TestClient bound to the in-memory repository."""
    app.dependency_overrides[get_current_user] = mock_get_current_user
    app.dependency_overrides[get_repository] = lambda: repository
    yield TestClient(app)
    app.dependency_overrides.clear()
