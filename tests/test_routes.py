"""
End-to-end tests for the import HTTP API.

Auth is overridden to a fixed trainer and the repository is the per-test
in-memory store, so a job can be created, processed, reviewed, committed
and rolled back through the routes alone.
"""

import pytest

INTERNAL_SECRET = "s3cret"
INTERNAL_HEADERS = {"Authorization": f"Bearer {INTERNAL_SECRET}"}


@pytest.fixture
def internal_secret(monkeypatch):
    monkeypatch.setenv("IMPORT_INTERNAL_SECRET", INTERNAL_SECRET)
    return INTERNAL_SECRET


def _create_text_job(client, raw_text, client_id="client-1"):
    return client.post("/api/import/jobs", json={"client_id": client_id, "scope": "client", "raw_text": raw_text})


def _run_worker(client):
    response = client.post("/api/internal/import/worker-tick", headers=INTERNAL_HEADERS)
    assert response.status_code == 200
    return response.json()


def _commit_body(version_expected, key="commit-1", **overrides):
    body = {
        "client_id": "client-1",
        "policy": "overwrite_all",
        "routine_version_expected": version_expected,
        "commit_idempotency_key": key,
    }
    body.update(overrides)
    return body


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


class TestCreateJob:
    def test_text_job_is_created(self, client, sample_routine):
        response = _create_text_job(client, sample_routine)

        assert response.status_code == 201
        data = response.json()
        assert data["job_id"]
        assert data["reused"] is False

    def test_identical_job_is_reused(self, client, sample_routine):
        first = _create_text_job(client, sample_routine).json()
        response = _create_text_job(client, sample_routine)

        assert response.status_code == 200
        assert response.json() == {"job_id": first["job_id"], "reused": True}

    def test_multipart_csv_upload(self, client, sample_csv):
        response = client.post(
            "/api/import/jobs",
            data={"client_id": "client-1", "scope": "client"},
            files={"file": ("rutina.csv", sample_csv, "text/csv")},
        )
        assert response.status_code == 201

    def test_multipart_without_file(self, client):
        response = client.post(
            "/api/import/jobs",
            data={"client_id": "client-1"},
            files={"other": ("x.txt", b"x", "text/plain")},
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_payload"

    def test_unsupported_file_type(self, client):
        response = client.post(
            "/api/import/jobs",
            data={"client_id": "client-1"},
            files={"file": ("foto.png", b"\x89PNG", "image/png")},
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_file_type"

    def test_empty_text_is_rejected(self, client):
        response = _create_text_job(client, "")
        assert response.status_code == 422

    def test_invalid_json(self, client):
        response = client.post(
            "/api/import/jobs",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_missing_client_for_client_scope(self, client, sample_routine):
        response = client.post("/api/import/jobs", json={"scope": "client", "raw_text": sample_routine})
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_scope"

    def test_import_disabled(self, client, sample_routine, monkeypatch):
        monkeypatch.setenv("IMPORT_V1_ENABLED", "0")
        response = _create_text_job(client, sample_routine)
        assert response.status_code == 503


class TestJobLifecycle:
    def test_create_process_review_commit_rollback(self, client, repository, internal_secret, sample_routine):
        job_id = _create_text_job(client, sample_routine).json()["job_id"]

        queued = client.get(f"/api/import/jobs/{job_id}").json()
        assert queued["job"]["status"] == "queued"
        assert queued["draft"] is None

        tick = _run_worker(client)
        assert (tick["claimed"], tick["processed"], tick["failed"]) == (1, 1, 0)

        view = client.get(f"/api/import/jobs/{job_id}").json()
        assert view["job"]["status"] == "ready"
        assert view["stats"]["exercises_parsed"] == 4
        assert view["issues"] == []
        assert len(view["derived_plan"]) == 7

        commit = client.post(f"/api/import/jobs/{job_id}/commit", json=_commit_body(1))
        assert commit.status_code == 200
        assert commit.json()["routine_version_after"] == 2

        backups = client.get("/api/import/clients/client-1/backups").json()
        assert len(backups) == 1
        assert backups[0]["id"] == commit.json()["backup_id"]

        rollback = client.post(f"/api/import/jobs/{job_id}/rollback", json={"client_id": "client-1"})
        assert rollback.status_code == 200
        assert rollback.json()["routine_version_after"] == 3
        assert client.get(f"/api/import/jobs/{job_id}").json()["job"]["status"] == "rolled_back"

    def test_patch_draft_revalidates(self, client, internal_secret, sample_routine):
        job_id = _create_text_job(client, sample_routine).json()["job_id"]
        _run_worker(client)
        draft = client.get(f"/api/import/jobs/{job_id}").json()["draft"]
        draft["days"][0]["blocks"][0]["nodes"][0]["sets"] = None

        response = client.patch(f"/api/import/jobs/{job_id}/draft", json={"draft": draft})

        assert response.status_code == 200
        data = response.json()
        assert [issue["code"] for issue in data["issues"]] == ["missing_sets"]
        assert data["stats"]["blocking_issues"] == 1

        commit = client.post(f"/api/import/jobs/{job_id}/commit", json=_commit_body(1))
        assert commit.status_code == 422
        assert commit.json()["detail"]["code"] == "blocking_issues"

    def test_commit_conflict(self, client, repository, internal_secret, sample_routine):
        repository.seed_routine("client-1", version=5)
        job_id = _create_text_job(client, sample_routine).json()["job_id"]
        _run_worker(client)

        response = client.post(f"/api/import/jobs/{job_id}/commit", json=_commit_body(4))

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "optimistic_lock_conflict"
        assert detail["meta"]["expected_version"] == 4
        assert detail["meta"]["current_version"] == 5

    def test_commit_request_validation(self, client, internal_secret, sample_routine):
        job_id = _create_text_job(client, sample_routine).json()["job_id"]
        _run_worker(client)

        response = client.post(f"/api/import/jobs/{job_id}/commit", json=_commit_body(0))
        assert response.status_code == 422

    def test_unknown_job(self, client):
        response = client.get("/api/import/jobs/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "job_not_found"


class TestInternalEndpoints:
    def test_secret_not_configured(self, client):
        response = client.post("/api/internal/import/worker-tick", headers=INTERNAL_HEADERS)
        assert response.status_code == 401

    def test_missing_secret(self, client, internal_secret):
        response = client.post("/api/internal/import/worker-tick")
        assert response.status_code == 401

    def test_wrong_secret(self, client, internal_secret):
        response = client.post("/api/internal/import/worker-tick", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_worker_tick_with_params(self, client, internal_secret):
        response = client.post(
            "/api/internal/import/worker-tick?limit=100&lease_seconds=5",
            headers=INTERNAL_HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["claimed"] == 0

    def test_purge(self, client, internal_secret):
        response = client.post("/api/internal/import/purge", headers=INTERNAL_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["jobs_expired"] == 0
        assert data["run_at"]
