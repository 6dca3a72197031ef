"""Integration tests for pageforge.api.main: FastAPI REST API endpoints.

All tests use the FastAPI TestClient with the offline placeholder backend
and temporary data/storage directories, so no network access occurs.
Tests cover every endpoint:

- ``GET /api/config``: configuration delivery.
- ``POST /api/pages/generate``: single-page generation.
- ``POST /api/books/generate``: whole-book generation and cancellation.
- ``POST /api/jobs/{job_id}/cancel``: cancelling a running book.
- ``POST /api/projects/{pid}/pages/{index}/regenerate``: regeneration.
- ``GET /api/artifacts/{id}`` and cache management endpoints.
- ``GET|DELETE /api/usage`` and ``GET /api/cost/estimate``.
"""

from __future__ import annotations

import io

import pytest
from PIL import Image

from pageforge.core.backend import BackendResult
from pageforge.core.cancellation import CancellationToken, GenerationCancelled
from pageforge.core.models import BatchResult


def _runtime(test_client):
    return test_client.app.state.runtime


def _page_payload(**overrides) -> dict:
    payload = {
        "prompt": "A fox reading under a tree.",
        "style": "Cozy",
        "complexity": "Moderate",
        "audience": "kids",
    }
    payload.update(overrides)
    return payload


def _book_payload(page_count: int = 3, **overrides) -> dict:
    payload = {
        "project_id": "book-1",
        "style": "Cozy",
        "complexity": "Simple",
        "audience": "kids",
        "page_size": "portrait",
        "pages": [{"prompt": f"Scene {i}", "page_index": i} for i in range(page_count)],
        "delay_between_items": 0,
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Configuration endpoint tests.
# ---------------------------------------------------------------------------


class TestGetConfig:
    """Test GET /api/config."""

    def test_config_returns_version(self, test_client):
        resp = test_client.get("/api/config")
        assert resp.status_code == 200
        assert "version" in resp.json()

    def test_config_reports_backend(self, test_client):
        data = test_client.get("/api/config").json()
        assert data["backend"]["name"] == "placeholder"
        assert data["backend"]["is_configured"] is True
        assert {"placeholder", "gemini"} <= set(data["available_backends"])

    def test_config_returns_vocabularies(self, test_client):
        data = test_client.get("/api/config").json()
        assert "Cozy" in data["styles"]
        assert data["complexities"][0] == "Very Simple"
        assert data["audiences"]["toddlers"]["max_complexity"] == "Very Simple"
        assert data["page_sizes"]["letter"] == "17:22"


# ---------------------------------------------------------------------------
# Single page tests.
# ---------------------------------------------------------------------------


class TestGeneratePage:
    """Test POST /api/pages/generate."""

    def test_generate_success(self, test_client):
        resp = test_client.post("/api/pages/generate", json=_page_payload())
        assert resp.status_code == 200
        data = resp.json()
        assert data["result"]["success"] is True
        assert data["result"]["attempts"] == 1
        assert data["result"]["estimated_cost"] == pytest.approx(0.04)
        assert data["result"]["image_url"] == f"/api/artifacts/{data['result']['artifact_id']}"
        assert data["persistence"]["saved"] is False

    def test_generated_image_is_retrievable(self, test_client):
        data = test_client.post("/api/pages/generate", json=_page_payload(page_size="landscape")).json()
        resp = test_client.get(data["result"]["image_url"])
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        with Image.open(io.BytesIO(resp.content)) as image:
            assert image.width > image.height

    def test_generate_with_project_persists(self, test_client):
        data = test_client.post(
            "/api/pages/generate", json=_page_payload(project_id="book-1", page_index=0)
        ).json()
        assert data["persistence"]["saved"] is True
        assert data["persistence"]["storage_key"].startswith("projects/book-1/")

    def test_generate_with_enhancement_override(self, test_client):
        data = test_client.post(
            "/api/pages/generate", json=_page_payload(enable_enhancement=True)
        ).json()
        assert data["result"]["enhanced_prompt"] is not None

    def test_missing_prompt_is_rejected(self, test_client):
        resp = test_client.post("/api/pages/generate", json=_page_payload(prompt=""))
        assert resp.status_code == 422

    def test_unconfigured_backend_reports_failure(self, test_client, monkeypatch):
        runtime = _runtime(test_client)
        monkeypatch.setattr(type(runtime.backend), "is_configured", property(lambda self: False))
        data = test_client.post("/api/pages/generate", json=_page_payload()).json()
        assert data["result"]["success"] is False
        assert data["result"]["attempts"] == 0
        assert data["result"]["estimated_cost"] == 0.0


# ---------------------------------------------------------------------------
# Book tests.
# ---------------------------------------------------------------------------


class TestGenerateBook:
    """Test POST /api/books/generate."""

    def test_generate_book_sequential(self, test_client):
        resp = test_client.post("/api/books/generate", json=_book_payload(3))
        assert resp.status_code == 200
        data = resp.json()
        assert data["success_count"] == 3
        assert data["failure_count"] == 0
        assert list(data["pages"]) == ["0", "1", "2"]
        assert len(data["artifact_ids"]) == 3
        assert data["has_session_reference"] is True
        assert data["total_cost"] == pytest.approx(0.06)
        assert all(page["persistence"]["saved"] for page in data["pages"].values())

    def test_generate_book_concurrent(self, test_client):
        data = test_client.post("/api/books/generate", json=_book_payload(4, concurrency=2)).json()
        assert data["success_count"] == 4
        assert data["has_session_reference"] is False

    def test_duplicate_page_indexes_rejected(self, test_client):
        payload = _book_payload(pages=[{"prompt": "a", "page_index": 0}, {"prompt": "b", "page_index": 0}])
        assert test_client.post("/api/books/generate", json=payload).status_code == 422

    def test_concurrency_bounds(self, test_client):
        assert test_client.post("/api/books/generate", json=_book_payload(concurrency=0)).status_code == 422
        assert test_client.post("/api/books/generate", json=_book_payload(concurrency=17)).status_code == 422

    def test_cancelled_book_returns_409(self, test_client, monkeypatch):
        async def cancelled_run(job, config=None):
            raise GenerationCancelled(partial=BatchResult())

        monkeypatch.setattr(_runtime(test_client).scheduler, "run", cancelled_run)
        resp = test_client.post("/api/books/generate", json=_book_payload(job_id="job-1"))
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["message"] == "Generation cancelled"
        assert detail["partial"]["success_count"] == 0
        assert "job-1" not in _runtime(test_client).jobs

    def test_running_job_id_conflicts(self, test_client):
        _runtime(test_client).jobs["busy"] = CancellationToken()
        resp = test_client.post("/api/books/generate", json=_book_payload(job_id="busy"))
        assert resp.status_code == 409


class TestCancelJob:
    """Test POST /api/jobs/{job_id}/cancel."""

    def test_cancel_unknown_job(self, test_client):
        assert test_client.post("/api/jobs/nope/cancel").status_code == 404

    def test_cancel_running_job(self, test_client):
        token = CancellationToken()
        _runtime(test_client).jobs["job-7"] = token
        resp = test_client.post("/api/jobs/job-7/cancel")
        assert resp.status_code == 200
        assert resp.json() == {"job_id": "job-7", "cancelled": True}
        assert token.cancelled


class TestRegeneratePage:
    """Test POST /api/projects/{project_id}/pages/{page_index}/regenerate."""

    def test_regenerate_stored_page(self, test_client):
        book = test_client.post("/api/books/generate", json=_book_payload(2)).json()
        resp = test_client.post(
            "/api/projects/book-1/pages/1/regenerate",
            json={"style": "Cozy", "complexity": "Simple", "audience": "kids"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["result"]["success"] is True
        assert data["result"]["page_index"] == 1
        assert data["result"]["artifact_id"] not in book["artifact_ids"]

    def test_regenerate_unknown_page(self, test_client):
        resp = test_client.post(
            "/api/projects/book-1/pages/5/regenerate",
            json={"style": "Cozy", "complexity": "Simple", "audience": "kids"},
        )
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Artifact and cache tests.
# ---------------------------------------------------------------------------


class TestArtifactsAndCache:
    """Test artifact retrieval and cache management endpoints."""

    def test_unknown_artifact(self, test_client):
        assert test_client.get("/api/artifacts/missing").status_code == 404

    def test_stored_artifact_survives_cache_invalidation(self, test_client):
        data = test_client.post(
            "/api/pages/generate", json=_page_payload(project_id="book-2", page_index=0)
        ).json()
        artifact_id = data["result"]["artifact_id"]

        resp = test_client.delete(f"/api/artifacts/{artifact_id}/cache")
        assert resp.json()["invalidated"] is True
        assert test_client.get(f"/api/artifacts/{artifact_id}").status_code == 200

    def test_unstored_artifact_gone_after_invalidation(self, test_client):
        artifact_id = test_client.post("/api/pages/generate", json=_page_payload()).json()["result"][
            "artifact_id"
        ]
        test_client.delete(f"/api/artifacts/{artifact_id}/cache")
        assert test_client.get(f"/api/artifacts/{artifact_id}").status_code == 404

    def test_unstored_artifact_served_with_backend_mime_type(self, test_client, monkeypatch):
        async def jpeg_generate(prompt, **kwargs):
            return BackendResult(success=True, data=b"jpeg-bytes", mime_type="image/jpeg")

        monkeypatch.setattr(_runtime(test_client).backend, "generate", jpeg_generate)
        image_url = test_client.post("/api/pages/generate", json=_page_payload()).json()["result"][
            "image_url"
        ]
        resp = test_client.get(image_url)
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/jpeg"
        assert resp.content == b"jpeg-bytes"

    def test_preload(self, test_client):
        data = test_client.post(
            "/api/pages/generate", json=_page_payload(project_id="book-3", page_index=0)
        ).json()
        artifact_id = data["result"]["artifact_id"]
        test_client.delete("/api/cache")

        resp = test_client.post(f"/api/artifacts/{artifact_id}/preload")
        assert resp.status_code == 200
        assert test_client.get("/api/cache").json()["count"] == 1
        assert test_client.post("/api/artifacts/missing/preload").status_code == 404

    def test_cache_stats_and_clear(self, test_client):
        test_client.post("/api/pages/generate", json=_page_payload())
        stats = test_client.get("/api/cache").json()
        assert stats["count"] == 1
        assert stats["total_bytes"] > 0
        assert stats["max_bytes"] == 500 * 1024 * 1024

        assert test_client.delete("/api/cache").json() == {"cleared": True}
        assert test_client.get("/api/cache").json()["count"] == 0


# ---------------------------------------------------------------------------
# Usage and cost tests.
# ---------------------------------------------------------------------------


class TestUsageAndCosts:
    """Test usage statistics and cost estimation endpoints."""

    def test_usage_counts_generations(self, test_client):
        test_client.post("/api/pages/generate", json=_page_payload())
        test_client.post("/api/pages/generate", json=_page_payload(style="Mandala"))
        usage = test_client.get("/api/usage").json()
        assert usage["total_generations"] == 2
        assert usage["success_rate"] == 1.0
        assert usage["by_style"] == {"Cozy": 1, "Mandala": 1}

    def test_usage_reset(self, test_client):
        test_client.post("/api/pages/generate", json=_page_payload())
        assert test_client.delete("/api/usage").json() == {"reset": True}
        assert test_client.get("/api/usage").json()["total_generations"] == 0

    def test_cost_estimate(self, test_client):
        resp = test_client.get("/api/cost/estimate", params={"page_count": 10, "complexity": "Extreme Detail"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["resolution"] == "4K"
        assert data["estimated_cost"] == pytest.approx(1.2)

    def test_cost_estimate_requires_page_count(self, test_client):
        assert test_client.get("/api/cost/estimate").status_code == 422
