"""
Tests for FastAPI Endpoints

Integration tests for the gateway API, wired to the test gateway.
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from tollgate.api.server import AppState, app, create_app, get_state


@pytest.fixture
def client(gateway):
    """Test client whose state uses the test gateway."""
    state = AppState(gateway=gateway)
    app.dependency_overrides[get_state] = lambda: state
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def caller(funded_user):
    return {"X-User-Email": funded_user}


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": "test-admin-key"}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert "uptime_seconds" in data


class TestReadyEndpoint:
    """Test the readiness endpoint."""

    def test_ready_reports_provider_and_model(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["provider"] == "groq"
        assert data["model"] == "groq-default"


class TestCors:
    """Test CORS origins come from configuration."""

    def preflight(self, client, origin):
        return client.options("/health", headers={"Origin": origin, "Access-Control-Request-Method": "GET"})

    def test_configured_origins(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")
        cors_client = TestClient(create_app())

        allowed = self.preflight(cors_client, "https://b.example")
        assert allowed.status_code == 200
        assert allowed.headers["access-control-allow-origin"] == "https://b.example"

        assert self.preflight(cors_client, "https://evil.example").status_code == 400


class TestCompleteEndpoint:
    """Test unbilled completion."""

    def test_complete(self, client, fake_providers):
        response = client.post("/api/v1/llm/complete", json={"prompt": "Hello", "provider": "openai"})

        assert response.status_code == 200
        data = response.json()
        assert data["text"] == "fake completion"
        assert data["provider"] == "openai"
        assert data["model"] == "openai-default"
        assert "tokens_in" in data

    def test_missing_prompt(self, client):
        response = client.post("/api/v1/llm/complete", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_prompt"

    def test_all_providers_fail(self, client, fake_providers, temp_db):
        for provider in fake_providers.values():
            provider.fail = True

        response = client.post("/api/v1/llm/complete", json={"prompt": "Hello"})

        assert response.status_code == 502
        data = response.json()
        assert data["error"] == "upstream_error"
        assert "raw upstream body" not in data["message"]
        assert data["attempts"] == ["groq", "workers_ai", "openai"]
        assert temp_db.execute("SELECT COUNT(*) as count FROM usage_event")[0]["count"] == 0


class TestSkillsEndpoints:
    """Test skill listing and invocation."""

    def test_list_skills(self, client):
        response = client.get("/skills")

        assert response.status_code == 200
        keys = [s["key"] for s in response.json()["skills"]]
        assert "summarize" in keys
        assert "sketch_to_app" in keys

    def test_ask_charges_and_sets_headers(self, client, caller, fake_providers):
        fake_providers["groq"].text = "y" * 80

        response = client.post(
            "/skills/ask",
            json={"skill": "summarize", "input": "x" * 160},
            headers={**caller, "X-Request-Id": "req-api-1"},
        )

        assert response.status_code == 200
        assert response.headers["X-Request-Id"] == "req-api-1"
        assert Decimal(response.headers["X-Credits-Used"]) == Decimal("0.060")
        assert Decimal(response.headers["X-Credits-Balance"]) == Decimal("9.940")
        data = response.json()
        assert data["result"]["content"] == "y" * 80
        assert data["usage"] == {"tokens_in": 40, "tokens_out": 20}

    def test_ask_without_email(self, client):
        response = client.post("/skills/ask", json={"skill": "summarize", "input": "hello"})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_email"

    def test_ask_insufficient_credits(self, client, fake_providers):
        response = client.post(
            "/skills/ask",
            json={"skill": "summarize", "input": "hello"},
            headers={"X-User-Email": "broke@example.com"},
        )

        assert response.status_code == 402
        assert response.json()["error"] == "insufficient_credits"
        assert fake_providers["groq"].calls == []

    def test_ask_unknown_skill(self, client, caller):
        response = client.post("/skills/ask", json={"skill": "poetry", "input": "hello"}, headers=caller)

        assert response.status_code == 400
        assert response.json()["error"] == "unknown_skill"

    def test_duplicate_request_id(self, client, caller):
        body = {"skill": "summarize", "input": "hello"}
        headers = {**caller, "X-Request-Id": "same-id"}

        assert client.post("/skills/ask", json=body, headers=headers).status_code == 200
        response = client.post("/skills/ask", json=body, headers=headers)

        assert response.status_code == 409
        assert response.json()["error"] == "duplicate_request"

    def test_ask_queued_skill(self, client, caller, gateway):
        response = client.post(
            "/skills/ask",
            json={"skill": "sketch_to_app", "input": "A recipe app"},
            headers=caller,
        )

        assert response.status_code == 202
        job_id = response.json()["job_id"]
        assert response.headers["X-Job-Id"] == job_id
        assert gateway.get_job(job_id).payload["spec"] == "A recipe app"


class TestJobEndpoints:
    """Test job submission, status and download."""

    def test_enqueue_runs_eager_trigger(self, client, caller):
        response = client.post("/api/jobs", json={"type": "sketch_to_app", "payload": {"spec": "A blog"}},
                               headers=caller)

        assert response.status_code == 202
        job_id = response.json()["job_id"]
        assert response.json()["status"] == "queued"

        status = client.get(f"/api/jobs/{job_id}")
        assert status.status_code == 200
        job = status.json()["job"]
        assert job["status"] == "done"
        assert job["progress"] == 100
        assert job["result_ref"] == f"jobs/{job_id}/README.md"

    def test_download(self, client, caller):
        job_id = client.post("/api/jobs", json={"payload": {"spec": "A blog"}}, headers=caller).json()["job_id"]

        response = client.get(f"/api/jobs/{job_id}/download")

        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="README.md"'
        assert response.headers["cache-control"] == "no-store"
        assert "A blog" in response.text

    def test_unknown_job(self, client):
        response = client.get("/api/jobs/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_enqueue_without_email(self, client):
        response = client.post("/api/jobs", json={"payload": {"spec": "A blog"}})

        assert response.status_code == 400


class TestUploadEndpoint:
    """Test file upload and its queued job."""

    def test_upload_queues_and_processes_job(self, client, caller, object_store):
        response = client.post(
            "/v1/files/upload",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            data={"prompt": "A recipe box"},
            headers=caller,
        )

        assert response.status_code == 202
        data = response.json()
        assert data["ok"] is True
        assert data["key"].startswith("uploads/")
        assert data["key"].endswith(".txt")
        assert data["size"] == 5
        assert response.headers["x-job-id"] == data["job_id"]
        assert object_store.get(data["key"]).data == b"hello"

        job = client.get(f"/api/jobs/{data['job_id']}").json()["job"]
        assert job["status"] == "done"
        assert job["result"]["source_key"] == data["key"]

    def test_upload_too_large(self, client, caller, gateway):
        gateway.config.max_upload_bytes = 3

        response = client.post(
            "/v1/files/upload",
            files={"file": ("big.txt", b"too large", "text/plain")},
            headers=caller,
        )

        assert response.status_code == 413
        assert response.json()["error"] == "payload_too_large"
        assert gateway.jobs.count_by_status() == {}

    def test_upload_without_file(self, client, caller):
        response = client.post("/v1/files/upload", data={"prompt": "nothing"}, headers=caller)

        assert response.status_code == 400
        assert response.json()["error"] == "file_missing"

    def test_upload_without_email(self, client):
        response = client.post("/v1/files/upload", files={"file": ("a.txt", b"x", "text/plain")})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_email"


class TestAdminEndpoints:
    """Test operator endpoints."""

    def test_process_one_forbidden(self, client):
        response = client.post("/admin/process-one")

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_process_one_empty_queue(self, client, admin_headers):
        response = client.post("/admin/process-one", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "processed": 0}

    def test_process_one_with_task_secret(self, client, gateway, funded_user):
        job = gateway.enqueue_job(funded_user, "sketch_to_app", {"spec": "A shop"})

        response = client.post("/admin/process-one", headers={"X-Admin-Task": "test-task-secret"})

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["job_id"] == job.id
        assert data["r2_key"] == f"jobs/{job.id}/README.md"

    def test_topup(self, client, admin_headers):
        response = client.post(
            "/admin/credits/topup",
            json={"email": "new@example.com", "amount": "12.5"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["balance"] == 12.5

    def test_topup_requires_admin(self, client):
        response = client.post("/admin/credits/topup", json={"email": "new@example.com", "amount": "5"},
                               headers={"X-Admin-Key": "wrong"})

        assert response.status_code == 403

    def test_topup_rejects_non_positive(self, client, admin_headers):
        response = client.post("/admin/credits/topup", json={"email": "new@example.com", "amount": "0"},
                               headers=admin_headers)

        assert response.status_code == 422


class TestBillingEndpoints:
    """Test balance and usage."""

    def test_balance(self, client, caller):
        response = client.get("/api/billing/balance", headers=caller)

        assert response.status_code == 200
        assert response.json()["balance"] == 10.0
        assert response.json()["low"] is False
        assert Decimal(response.headers["X-Credits-Balance"]) == Decimal("10")

    def test_balance_by_query(self, client, funded_user):
        response = client.get("/api/billing/balance", params={"email": funded_user})

        assert response.json()["email"] == funded_user

    def test_usage(self, client, caller):
        for i in range(3):
            client.post("/skills/ask", json={"skill": "summarize", "input": "hello"},
                        headers={**caller, "X-Request-Id": f"u-{i}"})

        response = client.get("/api/billing/usage", params={"limit": 2}, headers=caller)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert [item["request_id"] for item in data["items"]] == ["u-2", "u-1"]
