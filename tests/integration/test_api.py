"""Integration tests for sketchworks.api.main — FastAPI REST API endpoints.

All tests use the FastAPI TestClient against an application whose runtime is
built with fake providers, a scripted moderation detector and in-memory
storage, so no network access occurs.  The worker pool is not started; jobs
stay queued unless a test drives them.  Tests cover every endpoint:

- ``GET /api/health`` — Liveness.
- ``POST /api/generate`` — Submission and admission errors.
- ``GET /api/assets/{id}/status`` — Asset polling.
- ``DELETE /api/assets/{id}`` — Asset removal.
- ``GET /api/projects/{id}/assets`` — Project listing.
- ``DELETE /api/jobs/{id}`` — Job cancellation.
- ``GET /api/queue`` — Queue counts.
- ``GET /api/budget`` — Budget snapshot.
- ``GET /api/providers`` — Capability table.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from sketchworks.api.main import create_app


@pytest.fixture
def test_client(test_config, make_runtime) -> Generator[TestClient, None, None]:
    """TestClient with the lifespan running (database open, channels started)."""
    app = create_app(test_config, runtime_factory=lambda cfg: make_runtime(config=cfg))
    with TestClient(app) as client:
        yield client


@pytest.fixture
def runtime(test_client: TestClient):
    return test_client.app.state.runtime


def _submit(client: TestClient, image_data: str, **extra):
    body = {"projectId": "proj-1", "imageData": image_data, **extra}
    return client.post("/api/generate", json=body)


# ---------------------------------------------------------------------------
# Health.
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, test_client):
        resp = test_client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "ok"
        assert data["database"] is True
        assert data["workers"] is False
        assert "version" in data


# ---------------------------------------------------------------------------
# Generation endpoint tests.
# ---------------------------------------------------------------------------


class TestGenerate:
    """Test POST /api/generate — sketch submission."""

    def test_generate_queues_job(self, test_client, png_data_url):
        resp = _submit(test_client, png_data_url, prompt="ink wash")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert set(body["data"]) == {"assetId", "jobId", "estimatedTimeMs"}
        assert body["data"]["estimatedTimeMs"] == 30_000

    def test_generated_asset_is_pending(self, test_client, png_data_url):
        asset_id = _submit(test_client, png_data_url).json()["data"]["assetId"]

        resp = test_client.get(f"/api/assets/{asset_id}/status")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["id"] == asset_id
        assert data["projectId"] == "proj-1"
        assert data["status"] == "pending"
        assert data["storageUrl"] is None

    def test_snake_case_fields_accepted(self, test_client, png_base64):
        resp = test_client.post(
            "/api/generate", json={"project_id": "proj-1", "image_data": png_base64}
        )
        assert resp.status_code == 200

    def test_missing_fields(self, test_client):
        resp = test_client.post("/api/generate", json={"projectId": "proj-1"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "MISSING_REQUIRED_FIELDS"

    def test_invalid_encoding(self, test_client):
        resp = _submit(test_client, "%%% not base64 %%%")
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_IMAGE_ENCODING"

    def test_priority_out_of_range(self, test_client, png_base64):
        resp = _submit(test_client, png_base64, priority=11)
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "INVALID_REQUEST"
        assert body["details"]

    def test_provider_field_recorded_on_job(self, test_client, runtime, png_base64):
        receipt = _submit(test_client, png_base64, provider="stability").json()["data"]
        assert runtime.queue.get(receipt["jobId"]).preferred_provider == "stability"

    def test_unknown_provider(self, test_client, png_base64):
        resp = _submit(test_client, png_base64, provider="midjourney")
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_REQUEST"

    def test_budget_exhausted(self, test_client, runtime, png_base64):
        runtime.ledger.record("seed", runtime.config.monthly_budget_cents)

        resp = _submit(test_client, png_base64)
        assert resp.status_code == 503
        body = resp.json()
        assert body["error"] == "SERVICE_TEMPORARILY_UNAVAILABLE"
        assert body["retryAfter"] > 0
        assert resp.headers["Retry-After"] == str(body["retryAfter"])
        assert body["budget"]["usagePercent"] == 100.0


# ---------------------------------------------------------------------------
# Asset endpoints.
# ---------------------------------------------------------------------------


class TestAssets:
    def test_unknown_asset(self, test_client):
        resp = test_client.get("/api/assets/missing/status")
        assert resp.status_code == 404
        assert resp.json()["error"] == "ASSET_NOT_FOUND"

    def test_delete_asset(self, test_client, runtime, png_base64):
        receipt = _submit(test_client, png_base64).json()["data"]

        resp = test_client.delete(f"/api/assets/{receipt['assetId']}")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"id": receipt["assetId"], "deleted": True}
        assert runtime.queue.state_of(receipt["jobId"]) == "cancelled"
        assert test_client.get(f"/api/assets/{receipt['assetId']}/status").status_code == 404

    def test_delete_unknown_asset(self, test_client):
        assert test_client.delete("/api/assets/missing").status_code == 404

    def test_project_listing(self, test_client, png_base64):
        first = _submit(test_client, png_base64).json()["data"]["assetId"]
        second = _submit(test_client, png_base64).json()["data"]["assetId"]
        test_client.post("/api/generate", json={"projectId": "other", "imageData": png_base64})

        resp = test_client.get("/api/projects/proj-1/assets")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["count"] == 2
        assert {asset["id"] for asset in data["assets"]} == {first, second}

    def test_project_listing_limit_validated(self, test_client):
        resp = test_client.get("/api/projects/proj-1/assets", params={"limit": 0})
        assert resp.status_code == 400

    def test_completed_asset_after_processing(self, test_client, runtime, png_base64):
        asset_id = _submit(test_client, png_base64).json()["data"]["assetId"]
        assert test_client.portal.call(runtime.pool.process_next) is True

        data = test_client.get(f"/api/assets/{asset_id}/status").json()["data"]
        assert data["status"] == "completed"
        assert data["storageUrl"] == f"/static/assets/2025-01-01/{asset_id}.png"
        assert data["generationSeed"] == 42
        assert data["aiModelVersion"] == "gemini-2.5-flash-image"


# ---------------------------------------------------------------------------
# Jobs and queue.
# ---------------------------------------------------------------------------


class TestJobs:
    def test_cancel_waiting_job(self, test_client, png_base64):
        receipt = _submit(test_client, png_base64).json()["data"]

        resp = test_client.delete(f"/api/jobs/{receipt['jobId']}")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"jobId": receipt["jobId"], "outcome": "removed"}

        status = test_client.get(f"/api/assets/{receipt['assetId']}/status").json()["data"]
        assert status["status"] == "failed"
        assert status["errorCode"] == "CANCELLED"

    def test_cancel_unknown_job(self, test_client):
        resp = test_client.delete("/api/jobs/missing")
        assert resp.status_code == 404
        assert resp.json()["error"] == "JOB_NOT_FOUND"

    def test_queue_counts(self, test_client, png_base64):
        _submit(test_client, png_base64)
        _submit(test_client, png_base64)

        data = test_client.get("/api/queue").json()["data"]
        assert data["counts"]["waiting"] == 2
        assert data["counts"]["active"] == 0
        assert data["activeRequests"] == []


# ---------------------------------------------------------------------------
# Budget and providers.
# ---------------------------------------------------------------------------


class TestBudgetAndProviders:
    def test_budget(self, test_client, runtime):
        runtime.ledger.record("seed", 250_000)

        data = test_client.get("/api/budget").json()["data"]
        assert data["totalCents"] == runtime.config.monthly_budget_cents
        assert data["usedCents"] == 250_000
        assert data["monthYear"] == "2025-01"

    def test_providers(self, test_client):
        data = test_client.get("/api/providers").json()["data"]
        assert data["total"] == 4
        assert data["available"] == ["gemini-tuzi"]
        by_id = {provider["id"]: provider for provider in data["providers"]}
        assert set(by_id) == {"gemini-tuzi", "openai", "stability", "google"}
        assert by_id["gemini-tuzi"]["available"] is True
        assert by_id["openai"]["available"] is False
        assert "image-to-image" in by_id["stability"]["operations"]
