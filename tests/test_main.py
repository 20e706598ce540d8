import pytest
from fastapi.testclient import TestClient

from main import create_app
from conftest import (
    SITE, TEST_API_KEY, FakeSite, RecordingNotifier, default_responder, make_ai, page_html, sitemap_xml,
)


@pytest.fixture
def site():
    urls = [f"{SITE}/", f"{SITE}/about"]
    routes = {f"{SITE}/sitemap.xml": (200, sitemap_xml(urls))}
    for url in urls:
        routes[url] = (200, page_html())
    return FakeSite(routes)


@pytest.fixture
def app(settings, site):
    ai, _ = make_ai(default_responder)
    return create_app(settings, ai=ai, notifier=RecordingNotifier(), transport=site.transport)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        c.app.state.pipeline.records.insert("projects", {"id": "p1", "name": "Example", "url": SITE})
        yield c


@pytest.fixture
def api_headers():
    return {"access_token": TEST_API_KEY}


def test_health_check(client):
    """Test basic health check"""
    response = client.get("/health/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"


def test_detailed_health_check(client):
    """Database is checked even when Redis is down"""
    response = client.get("/health/detailed")
    assert response.status_code in [200, 503]
    data = response.json() if response.status_code == 200 else response.json()["detail"]
    assert data["checks"]["database"]["status"] == "healthy"
    assert "redis" in data["checks"]
    assert data["checks"]["dispatcher"]["ai_configured"] is True


def test_liveness(client):
    assert client.get("/health/live").json() == {"status": "alive"}


def test_stage_options_preflight(client):
    response = client.options("/functions/v1/perform-audit")
    assert response.status_code == 200
    assert response.text == "ok"
    assert response.headers["access-control-allow-origin"] == "*"


def test_stage_without_auth(client):
    response = client.post("/functions/v1/perform-audit", json={"project_id": "p1", "job_id": "j"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_stage_missing_fields(client, api_headers):
    response = client.post("/functions/v1/perform-audit", json={"project_id": "p1"}, headers=api_headers)
    assert response.status_code == 400
    assert "job_id" in response.json()["error"]


def test_stage_error_is_500(client, api_headers):
    response = client.post("/functions/v1/onboarding", json={"project_id": "missing"}, headers=api_headers)
    assert response.status_code == 500
    assert "Project not found" in response.json()["error"]


def test_audit_over_http(client, api_headers):
    response = client.post(
        "/functions/v1/perform-audit",
        json={"project_id": "p1", "job_id": "job-1", "url": SITE},
        headers=api_headers
    )
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = client.get("/jobs/job-1")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["progress"] == {"processed": 2, "total": 2}
    assert data["cursor"]["sitemap_fetched"] is True
    assert data["next_stage"] == "generate-report"

    logs = client.get("/jobs/job-1/logs").json()
    assert logs[0]["function_name"] == "perform-audit"
    assert any("Audit completed" in entry["message"] for entry in logs)


def test_onboarding_triggers_audit(app, site, api_headers):
    with TestClient(app) as c:
        c.app.state.pipeline.records.insert("projects", {"id": "p1", "name": "Example", "url": SITE})
        response = c.post("/functions/v1/onboarding", json={"project_id": "p1"}, headers=api_headers)
        assert response.status_code == 200
        job_id = response.json()["job_id"]
        assert c.get(f"/jobs/{job_id}").json()["next_stage"] == "perform-audit"

    # Shutdown drains background triggers
    assert site.triggered("perform-audit") == [{"project_id": "p1", "url": SITE, "job_id": job_id}]


def test_job_status_not_found(client):
    """Test job status for non-existent job"""
    assert client.get("/jobs/non-existent-job").status_code == 404
    assert client.get("/jobs/non-existent-job/logs").status_code == 404


def test_list_jobs_without_auth(client):
    """Test jobs list without authentication"""
    response = client.get("/jobs")
    assert response.status_code in [401, 403]


def test_list_jobs_with_auth(client, api_headers):
    """Test jobs list with authentication"""
    client.app.state.pipeline.jobs.create_job("p1")
    response = client.get("/jobs", headers=api_headers)
    assert response.status_code == 200
    data = response.json()
    assert isinstance(data["jobs"], list)
    assert data["jobs"][0]["project_id"] == "p1"


def test_reset_job(client, api_headers):
    jobs = client.app.state.pipeline.jobs
    job = jobs.create_job("p1")
    jobs.update_status(job["id"], "processing")
    jobs.update_status(job["id"], "failed", "boom")

    assert client.post(f"/jobs/{job['id']}/reset").status_code == 401
    response = client.post(f"/jobs/{job['id']}/reset", headers={"access_token": "wrong"})
    assert response.status_code == 403

    response = client.post(f"/jobs/{job['id']}/reset", headers=api_headers)
    assert response.status_code == 200
    assert client.get(f"/jobs/{job['id']}").json()["status"] == "queued"


def test_metrics_endpoint(client, api_headers):
    client.post("/functions/v1/perform-audit", json={"project_id": "p1"}, headers=api_headers)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "pipeline_stage_runs_total" in response.text


class TestSecurity:
    """Security-focused tests"""

    def test_sql_injection_protection(self, client, api_headers):
        """Hostile identifiers are stored as plain values"""
        response = client.post(
            "/functions/v1/perform-audit",
            json={"project_id": "p1", "job_id": "'; DROP TABLE jobs; --", "url": "not a url"},
            headers=api_headers
        )
        assert response.status_code == 400
        assert client.get("/jobs", headers=api_headers).status_code == 200

    def test_bearer_token_accepted(self, client):
        response = client.post(
            "/functions/v1/process-ai",
            json={"project_id": "p1"},
            headers={"Authorization": f"Bearer {TEST_API_KEY}"}
        )
        assert response.status_code == 200
        assert response.json()["processed"] == 0


if __name__ == "__main__":
    pytest.main([__file__])
