"""HTTP tests for the import and search endpoints."""

import time

import pytest
from fastapi.testclient import TestClient

from pants.core.import_pipeline import ImportOrchestrator
from pants.main import app

from conftest import FakeExtractor, RecordingSleep

POCKET_CSV = """title,url,time_added,tags,status
First,https://example.com/1,1700000000,ai,unread
Second,https://example.com/2,1700000001,,unread
Broken,https://down.example.com/3,1700000002,,unread
"""

FINISHED = {"completed", "failed", "cancelled"}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "pants.db"))
    monkeypatch.setenv("EMBEDDING_PROVIDER", "none")
    monkeypatch.setenv("MAX_IMPORT_URLS", "5")
    monkeypatch.delenv("FIRECRAWL_API_KEY", raising=False)

    with TestClient(app) as c:
        state = app.state
        state.fake_extractor = FakeExtractor(failing={"https://down.example.com/3"})
        state.orchestrator = ImportOrchestrator(
            state.db, state.fake_extractor, state.embedding_store, state.detector, sleep=RecordingSleep()
        )
        yield c


def _wait_for_job(client, job_id):
    for _ in range(200):
        job = client.get(f"/api/pocket/jobs/{job_id}").json()
        if job["status"] in FINISHED:
            return job
        time.sleep(0.01)
    raise AssertionError(f"Job {job_id} did not finish")


def _import(client, csv=POCKET_CSV, **options):
    response = client.post(
        "/api/pocket/import",
        json={"csvContent": csv, "userId": "alice", "options": {"delayBetweenBatches": 0, **options}},
    )
    assert response.status_code == 200, response.text
    return _wait_for_job(client, response.json()["job_id"])


def test_health(client):
    data = client.get("/health").json()
    assert data["ok"] is True
    assert data["stats"]["archives"] == 0


def test_validate_rejects_bad_csv(client):
    response = client.post("/api/pocket/validate", json={"csvContent": "name,link\nx,y\n"})
    assert response.status_code == 400
    assert response.json()["valid"] is False

    assert client.post("/api/pocket/validate", json={}).status_code == 400


def test_validate_previews_new_and_duplicates(client):
    _import(client)

    data = client.post("/api/pocket/validate", json={"csvContent": POCKET_CSV, "userId": "alice"}).json()

    assert data["valid"] is True
    assert data["total_urls"] == 3
    assert data["duplicate_urls"] == 2
    assert [p["url"] for p in data["preview"]] == ["https://down.example.com/3"]
    assert data["has_more"] is False


def test_import_job_runs_to_completion(client):
    job = _import(client, batchSize=2, maxRetries=1)

    assert job["status"] == "completed"
    assert job["items_total"] == 3
    assert job["items_successful"] == 2
    assert job["items_failed"] == 1
    assert {r["url"] for r in job["results"] if r["success"]} == {
        "https://example.com/1",
        "https://example.com/2",
    }
    assert app.state.fake_extractor.attempts["https://down.example.com/3"] == 2


def test_second_import_reports_duplicates(client):
    _import(client)
    job = _import(client)

    assert job["items_duplicates"] == 3 - 1
    assert job["items_successful"] == 0


def test_import_validation_errors(client):
    assert client.post("/api/pocket/import", json={"csvContent": POCKET_CSV}).status_code == 400

    bad_options = client.post(
        "/api/pocket/import",
        json={"csvContent": POCKET_CSV, "userId": "alice", "options": {"batchSize": 0}},
    )
    assert bad_options.status_code == 400

    rows = "".join(f"Row {n},https://example.com/many/{n}\n" for n in range(6))
    too_many = client.post("/api/pocket/import", json={"csvContent": f"title,url\n{rows}", "userId": "alice"})
    assert too_many.status_code == 429
    assert too_many.json()["limit"] == 5


def test_unknown_job(client):
    assert client.get("/api/pocket/jobs/nope").status_code == 404
    assert client.post("/api/pocket/jobs/nope/cancel").status_code == 404


def test_status_lists_recent_archives_and_jobs(client):
    _import(client)

    data = client.get("/api/pocket/status/alice").json()

    assert data["recentImports"] == 2
    assert len(data["jobs"]) == 1
    assert client.get("/api/pocket/status/bob").json()["recentImports"] == 0


def test_search_after_import(client):
    _import(client)

    response = client.post("/api/search", json={"query": "gemini embeddings", "userId": "alice"})
    data = response.json()

    assert response.status_code == 200
    assert data["mode"] == "text"
    assert data["metadata"]["semantic_enabled"] is False
    assert data["total_count"] == 2
    assert "**Gemini**" in data["results"][0]["snippet"]


def test_search_requires_query_and_user(client):
    assert client.post("/api/search", json={"query": "x"}).status_code == 400
    assert client.post("/api/search", json={"query": "  ", "userId": "alice"}).status_code == 400
    assert client.post("/api/search", json={"query": "x", "userId": "alice", "limit": 0}).status_code == 400
    assert client.post("/api/search", json={"query": "x", "userId": "alice", "limit": -3}).status_code == 400


def test_reprocess_embeddings_without_provider(client):
    _import(client)

    data = client.post("/api/admin/reprocess-embeddings", json={"userId": "alice"}).json()

    assert data["processed_count"] == 2
    assert data["processed"] == 0
    assert data["remaining"] > 0


def test_dedupe(client):
    _import(client)

    data = client.post("/api/admin/dedupe", json={"userId": "alice"}).json()

    assert data["duplicatesRemoved"] == 0
    assert data["finalCount"] == 2
    assert client.post("/api/admin/dedupe", json={}).status_code == 400


def test_providers_health(client):
    data = client.get("/api/providers/health").json()
    assert data["providers"][0]["provider"] == "none"
    assert data["providers"][0]["healthy"] is False
