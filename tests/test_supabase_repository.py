"""
Tests for the Supabase repository against a mocked client.

Table queries are chained builders, so a single mock that returns itself
from every builder method stands in for the query.
"""

from unittest.mock import MagicMock

import pytest

from routine_import_api.errors import IdempotencyKeyReused, OptimisticLockConflict, RepositoryError
from routine_import_api.models import Artifact
from routine_import_api.services.supabase_repository import SupabaseImportRepository, parse_lock_conflict


def _query(rows):
    query = MagicMock()
    for method in ("select", "eq", "in_", "order", "limit", "insert", "update", "upsert"):
        getattr(query, method).return_value = query
    query.execute.return_value = MagicMock(data=rows)
    return query


def _job_row(**overrides):
    row = {
        "id": "job-1",
        "trainer_id": "trainer-123",
        "client_id": "client-1",
        "scope": "client",
        "status": "queued",
        "source_type": "text",
        "file_hash_sha256": "abc",
        "parser_version": "p1",
        "ruleset_version": "r1",
        "extractor_version": "e1",
    }
    row.update(overrides)
    return row


def _commit_args():
    return {
        "job_id": "job-1",
        "trainer_id": "trainer-123",
        "client_id": "client-1",
        "policy": "overwrite_all",
        "overwrite_days": None,
        "routine_version_expected": 4,
        "idempotency_key": "key-1",
        "next_plan": {},
        "next_ui_meta": None,
    }


@pytest.fixture
def supabase_client():
    return MagicMock()


@pytest.fixture
def repo(supabase_client):
    return SupabaseImportRepository(supabase_client)


class TestParseLockConflict:
    def test_versions_are_extracted(self):
        assert parse_lock_conflict("optimistic_lock_conflict expected_version=4 current_version=5") == {
            "expected_version": 4,
            "current_version": 5,
        }

    def test_missing_versions(self):
        assert parse_lock_conflict("optimistic_lock_conflict") == {
            "expected_version": None,
            "current_version": None,
        }

    def test_other_errors(self):
        assert parse_lock_conflict("duplicate key value") is None


class TestFromSettings:
    def test_missing_credentials(self):
        settings = MagicMock(SUPABASE_URL=None, SUPABASE_SERVICE_ROLE_KEY=None)
        with pytest.raises(RepositoryError):
            SupabaseImportRepository.from_settings(settings)


class TestTables:
    def test_get_job(self, repo, supabase_client):
        supabase_client.table.return_value = _query([_job_row()])

        job = repo.get_job("job-1")

        supabase_client.table.assert_called_with("import_jobs")
        assert job.id == "job-1"
        assert job.status == "queued"

    def test_get_missing_job(self, repo, supabase_client):
        supabase_client.table.return_value = _query([])
        assert repo.get_job("job-1") is None

    def test_find_reusable_job_filters_client(self, repo, supabase_client):
        query = _query([_job_row()])
        supabase_client.table.return_value = query

        job = repo.find_reusable_job("trainer-123", "client", "abc", "p1", "r1", "e1", client_id="client-1")

        assert job.id == "job-1"
        query.in_.assert_called_with("status", ["queued", "processing", "ready"])
        query.eq.assert_any_call("client_id", "client-1")
        query.order.assert_called_with("created_at", desc=True)

    def test_update_job_status_clears_lease(self, repo, supabase_client):
        query = _query([])
        supabase_client.table.return_value = query

        repo.update_job_status("job-1", "failed", "failed", 100, error_code="processing_failed", clear_lease=True)

        update = query.update.call_args[0][0]
        assert update["status"] == "failed"
        assert update["last_error_code"] == "processing_failed"
        assert update["lease_owner"] is None
        query.eq.assert_called_with("id", "job-1")

    def test_update_failure_is_wrapped(self, repo, supabase_client):
        query = _query([])
        query.execute.side_effect = Exception("permission denied")
        supabase_client.table.return_value = query

        with pytest.raises(RepositoryError):
            repo.update_job_status("job-1", "ready", "ready", 100)

    def test_artifact_round_trips_through_base64(self, repo, supabase_client):
        query = _query([])
        supabase_client.table.return_value = query
        repo.save_artifact(Artifact(job_id="job-1", payload=b"%PDF-1.4", mime_type="application/pdf"))

        row = query.upsert.call_args[0][0]
        assert "payload" not in row
        supabase_client.table.return_value = _query([row])

        artifact = repo.get_artifact("job-1")
        assert artifact.payload == b"%PDF-1.4"
        assert artifact.mime_type == "application/pdf"

    def test_list_backups_filters_by_trainer(self, repo, supabase_client):
        query = _query([{"id": "b1", "client_id": "client-1", "created_by": "trainer-123",
                         "routine_version": 4, "created_at": "2026-01-01T00:00:00+00:00"}])
        supabase_client.table.return_value = query

        backups = repo.list_backups("client-1", 10, created_by="trainer-123")

        supabase_client.table.assert_called_with("routine_backups")
        query.eq.assert_any_call("client_id", "client-1")
        query.eq.assert_any_call("created_by", "trainer-123")
        query.limit.assert_called_with(10)
        assert [backup.created_by for backup in backups] == ["trainer-123"]

    def test_kill_switch(self, repo, supabase_client):
        supabase_client.table.return_value = _query([{"kill_switch": True}])
        assert repo.is_kill_switched("trainer-123") is True

        supabase_client.table.return_value = _query([])
        assert repo.is_kill_switched("trainer-123") is False


class TestRpcs:
    def test_claim_jobs(self, repo, supabase_client):
        supabase_client.rpc.return_value.execute.return_value.data = [_job_row(status="processing", lease_owner="w1")]

        jobs = repo.claim_jobs("w1", 3, 180)

        supabase_client.rpc.assert_called_with("claim_import_jobs", {
            "p_worker_id": "w1",
            "p_limit": 3,
            "p_lease_seconds": 180,
        })
        assert [job.lease_owner for job in jobs] == ["w1"]

    def test_apply_commit(self, repo, supabase_client):
        supabase_client.rpc.return_value.execute.return_value.data = [
            {"commit_id": "c1", "routine_version_after": 5, "backup_id": "b1"}
        ]

        result = repo.apply_commit(**_commit_args())

        assert result.routine_version_after == 5
        params = supabase_client.rpc.call_args[0][1]
        assert params["p_overwrite_days"] is None
        assert params["p_commit_idempotency_key"] == "key-1"

    def test_lock_conflict(self, repo, supabase_client):
        supabase_client.rpc.return_value.execute.side_effect = Exception(
            "optimistic_lock_conflict expected_version=4 current_version=5"
        )

        with pytest.raises(OptimisticLockConflict) as exc_info:
            repo.apply_commit(**_commit_args())

        assert exc_info.value.expected_version == 4
        assert exc_info.value.current_version == 5

    def test_lock_conflict_reads_current_version(self, repo, supabase_client):
        supabase_client.rpc.return_value.execute.side_effect = Exception("optimistic_lock_conflict")
        supabase_client.table.return_value = _query([{"client_id": "client-1", "plan": {}, "version": 7}])

        with pytest.raises(OptimisticLockConflict) as exc_info:
            repo.apply_commit(**_commit_args())

        assert exc_info.value.expected_version == 4
        assert exc_info.value.current_version == 7

    def test_idempotency_key_reused(self, repo, supabase_client):
        supabase_client.rpc.return_value.execute.side_effect = Exception("idempotency_key_reused")
        with pytest.raises(IdempotencyKeyReused):
            repo.apply_commit(**_commit_args())

    def test_other_commit_failure(self, repo, supabase_client):
        supabase_client.rpc.return_value.execute.side_effect = Exception("permission denied for table routines")
        with pytest.raises(RepositoryError, match="apply_import_commit failed"):
            repo.apply_commit(**_commit_args())

    def test_empty_commit_result(self, repo, supabase_client):
        supabase_client.rpc.return_value.execute.return_value.data = []
        with pytest.raises(RepositoryError):
            repo.apply_commit(**_commit_args())

    def test_rollback(self, repo, supabase_client):
        supabase_client.rpc.return_value.execute.return_value.data = {"backup_id": "b1", "routine_version_after": 6}
        result = repo.rollback_commit("job-1", "trainer-123", "client-1")
        assert (result.backup_id, result.routine_version_after) == ("b1", 6)

    def test_purge_counts(self, repo, supabase_client):
        supabase_client.rpc.return_value.execute.return_value.data = [{"artifacts_deleted": 2, "jobs_expired": 1}]
        assert repo.purge_expired() == {
            "artifacts_deleted": 2,
            "jobs_expired": 1,
            "jobs_deleted": 0,
            "backups_deleted": 0,
        }
