"""
Tests for import job creation, the job view and draft edits.
"""

from unittest.mock import patch

import pytest

from routine_import_api.constants import MAX_FILE_SIZE_BYTES, MAX_RAW_TEXT_CHARS
from routine_import_api.errors import ImportServiceError
from routine_import_api.parsers import parse_payload

TEST_USER_ID = "trainer-123"
TEST_CLIENT_ID = "client-1"


def _events(repository, event):
    return [e for e in repository.audit_events if e["event"] == event]


class TestCreateJobFromText:
    def test_queues_job_and_artifact(self, job_service, repository, sample_routine):
        job, reused = job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", sample_routine)

        assert reused is False
        assert job.status == "queued"
        assert job.source_type == "text"
        assert job.storage_path == f"import-artifacts/{job.id}"
        assert job.expires_at is not None
        assert job.file_meta["mode"] == "raw_text"
        assert repository.get_artifact(job.id).payload == sample_routine.encode("utf-8")
        assert len(_events(repository, "job_created")) == 1

    def test_identical_text_reuses_job(self, job_service, sample_routine):
        first, _ = job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", sample_routine)
        second, reused = job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", sample_routine)

        assert reused is True
        assert second.id == first.id

    def test_other_client_gets_new_job(self, job_service, sample_routine):
        first, _ = job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", sample_routine)
        second, reused = job_service.create_job_from_text(TEST_USER_ID, "client-2", "client", sample_routine)

        assert reused is False
        assert second.id != first.id

    @pytest.mark.parametrize("raw_text", ["", "   \n  "])
    def test_empty_text(self, job_service, raw_text):
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", raw_text)
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "invalid_payload"

    def test_text_too_long(self, job_service):
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", "a" * (MAX_RAW_TEXT_CHARS + 1))
        assert exc_info.value.status_code == 400

    def test_client_scope_needs_client(self, job_service, sample_routine):
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_text(TEST_USER_ID, None, "client", sample_routine)
        assert exc_info.value.code == "invalid_scope"

    def test_template_scope_without_client(self, job_service, sample_routine):
        job, _ = job_service.create_job_from_text(TEST_USER_ID, None, "template", sample_routine)
        assert job.scope == "template"
        assert job.client_id is None

    def test_import_disabled(self, job_service, sample_routine, monkeypatch):
        monkeypatch.setenv("IMPORT_V1_ENABLED", "0")
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", sample_routine)
        assert exc_info.value.status_code == 503

    def test_kill_switch(self, job_service, repository, sample_routine):
        repository.set_kill_switch(TEST_USER_ID)
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", sample_routine)
        assert exc_info.value.status_code == 403
        assert exc_info.value.code == "kill_switch_enabled"

    def test_kill_switch_lookup_failure_is_ignored(self, job_service, repository, sample_routine):
        with patch.object(repository, "is_kill_switched", side_effect=RuntimeError("db down")):
            job, reused = job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", sample_routine)
        assert job.status == "queued"
        assert reused is False


class TestCreateJobFromFile:
    def test_csv_upload(self, job_service, sample_csv):
        job, _ = job_service.create_job_from_file(
            TEST_USER_ID, TEST_CLIENT_ID, "client", "rutina.csv", "text/csv", sample_csv
        )
        assert job.source_type == "csv"
        assert job.file_meta["file_name"] == "rutina.csv"

    def test_explicit_source_type(self, job_service, sample_csv):
        job, _ = job_service.create_job_from_file(
            TEST_USER_ID, TEST_CLIENT_ID, "client", "export", None, sample_csv, source_type="csv"
        )
        assert job.source_type == "csv"

    def test_unknown_extension(self, job_service):
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_file(TEST_USER_ID, TEST_CLIENT_ID, "client", "rutina.png", "image/png", b"x")
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "invalid_file_type"

    def test_pdf_without_header(self, job_service):
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_file(
                TEST_USER_ID, TEST_CLIENT_ID, "client", "rutina.pdf", "application/pdf", b"hello"
            )
        assert exc_info.value.code == "invalid_file_type"

    def test_mime_mismatch(self, job_service):
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_file(
                TEST_USER_ID, TEST_CLIENT_ID, "client", "rutina.xlsx", "image/png", b"PK\x03\x04"
            )
        assert exc_info.value.code == "invalid_file_type"

    def test_pdf_disabled(self, job_service, monkeypatch):
        monkeypatch.setenv("IMPORT_PDF_DIGITAL_ENABLED", "0")
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_file(
                TEST_USER_ID, TEST_CLIENT_ID, "client", "rutina.pdf", "application/pdf", b"%PDF-1.4"
            )
        assert exc_info.value.status_code == 503
        assert exc_info.value.code == "unsupported_source"

    def test_file_too_large(self, job_service):
        payload = b"x" * (MAX_FILE_SIZE_BYTES + 1)
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_file(TEST_USER_ID, TEST_CLIENT_ID, "client", "rutina.txt", "text/plain", payload)
        assert exc_info.value.status_code == 413
        assert exc_info.value.code == "file_too_large"
        assert exc_info.value.meta["max_bytes"] == MAX_FILE_SIZE_BYTES

    def test_empty_file(self, job_service):
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.create_job_from_file(TEST_USER_ID, TEST_CLIENT_ID, "client", "rutina.txt", "text/plain", b"")
        assert exc_info.value.code == "invalid_payload"


class TestJobView:
    def test_unknown_job(self, job_service):
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.get_job_view("missing", TEST_USER_ID)
        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "job_not_found"

    def test_other_trainer_cannot_see_job(self, job_service, make_ready_job):
        job_id = make_ready_job()
        with pytest.raises(ImportServiceError) as exc_info:
            job_service.get_job_view(job_id, "another-trainer")
        assert exc_info.value.status_code == 404

    def test_queued_job_has_no_draft(self, job_service, sample_routine):
        job, _ = job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", sample_routine)
        view = job_service.get_job_view(job.id, TEST_USER_ID)

        assert view.job.status == "queued"
        assert view.draft is None
        assert view.issues == []

    def test_ready_job(self, job_service, make_ready_job):
        view = job_service.get_job_view(make_ready_job(), TEST_USER_ID)

        assert view.job.status == "ready"
        assert view.stats.exercises_parsed == 4
        assert len(view.derived_plan["monday"].exercises) == 2


class TestPatchDraft:
    def test_edit_recomputes_issues(self, job_service, repository, make_ready_job):
        job_id = make_ready_job()
        draft = job_service.get_job_view(job_id, TEST_USER_ID).draft
        draft.days[0].blocks[0].nodes[0].sets = None

        bundle = job_service.patch_draft(job_id, TEST_USER_ID, draft)

        assert [issue.code for issue in bundle.issues] == ["missing_sets"]
        assert bundle.stats.blocking_issues == 1
        assert repository.get_draft_bundle(job_id).draft.days[0].blocks[0].nodes[0].sets is None
        assert repository.get_job(job_id).status == "ready"
        assert len(_events(repository, "draft_updated")) == 1

    def test_failed_job_can_be_fixed(self, job_service, repository, make_ready_job, sample_routine):
        job_id = make_ready_job("Hola profe")
        assert repository.get_job(job_id).status == "failed"

        fixed = parse_payload("text", sample_routine.encode("utf-8"))
        bundle = job_service.patch_draft(job_id, TEST_USER_ID, fixed)

        assert bundle.issues == []
        assert repository.get_job(job_id).status == "ready"
        assert repository.get_job(job_id).error_code is None

    def test_queued_job_cannot_be_edited(self, job_service, sample_routine):
        job, _ = job_service.create_job_from_text(TEST_USER_ID, TEST_CLIENT_ID, "client", sample_routine)
        draft = parse_payload("text", sample_routine.encode("utf-8"))

        with pytest.raises(ImportServiceError) as exc_info:
            job_service.patch_draft(job.id, TEST_USER_ID, draft)
        assert exc_info.value.status_code == 409
        assert exc_info.value.meta == {"status": "queued"}
