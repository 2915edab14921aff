"""
Hotspot API Router Tests

Tests for signal processing, hotspot generation, listing, memberships and
re-ranking endpoints. Storage and pipeline dependencies are overridden with
in-memory versions.
Run with: pytest tests/test_hotspots_router.py -v
"""

import pytest
from fastapi.testclient import TestClient

from signal_intel.api.deps import get_pipeline, get_storage
from signal_intel.api.main import app
from signal_intel.db.hotspot_storage import InMemoryHotspotStorage, StorageError
from signal_intel.pipeline import SignalIntelligencePipeline


pytestmark = pytest.mark.medium


class UnavailableStorage(InMemoryHotspotStorage):
    def list_hotspots(self, status=None):
        raise StorageError("connection refused")

    def list_signals(self, signal_ids=None):
        raise StorageError("connection refused")


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def pipeline(memory_storage, hashed_provider):
    return SignalIntelligencePipeline(
        storage=memory_storage,
        embedding_provider=hashed_provider,
        deadline_seconds=30,
    )


@pytest.fixture
def client(memory_storage, pipeline):
    """Test client with in-memory storage and a hashed-embedding pipeline."""
    app.dependency_overrides[get_storage] = lambda: memory_storage
    app.dependency_overrides[get_pipeline] = lambda: pipeline

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def unavailable_client(hashed_provider):
    storage = UnavailableStorage()
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_pipeline] = lambda: SignalIntelligencePipeline(
        storage=storage, embedding_provider=hashed_provider, deadline_seconds=30
    )

    yield TestClient(app)

    app.dependency_overrides.clear()


# -----------------------------------------------------------------------------
# Generation
# -----------------------------------------------------------------------------


class TestGenerateHotspotsEndpoint:
    """Tests for POST /api/hotspots/generate."""

    def test_generate_success(self, client):
        response = client.post("/api/hotspots/generate", json={"targetClusterCount": 5})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "SUCCESS"
        assert data["persisted"] is True
        assert len(data["hotspots"]) >= 1
        assert data["hotspots"][0]["root_cause"] == "PROCESS"
        assert data["clustering"]["method"] == "hybrid-hdbscan"
        assert data["batch"]["total"] == 12

    def test_generate_with_defaults(self, client):
        response = client.post("/api/hotspots/generate", json={})

        assert response.status_code == 200
        assert response.json()["status"] == "SUCCESS"

    @pytest.mark.parametrize("body", [
        {"targetClusterCount": 3},
        {"targetClusterCount": 7},
        {"minClusterSize": 3, "minSamples": 5},
        {"qualityThreshold": 0},
        {"signalIds": []},
    ])
    def test_invalid_options_rejected(self, client, memory_storage, body):
        """Invalid options are a 422 and nothing is processed."""
        response = client.post("/api/hotspots/generate", json=body)

        assert response.status_code == 422
        assert memory_storage.get_annotations(["p00"]) == {}

    def test_insufficient_input_is_200(self, client):
        """Logical outcomes are reported in the body, not the HTTP status."""
        response = client.post("/api/hotspots/generate", json={"signalIds": ["p00", "p01"]})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "INSUFFICIENT_INPUT"
        assert data["hotspots"] == []

    def test_storage_failure_is_internal_error_status(self, unavailable_client):
        response = unavailable_client.post("/api/hotspots/generate", json={})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "INTERNAL_ERROR"
        assert data["failed_stage"] == "load_signals"


# -----------------------------------------------------------------------------
# Processing
# -----------------------------------------------------------------------------


class TestProcessSignalsEndpoint:
    """Tests for POST /api/signals/process."""

    def test_process_all(self, client):
        response = client.post("/api/signals/process", json={})

        assert response.status_code == 200
        data = response.json()
        assert data["succeeded"] == 12
        assert data["stats"]["root_cause_distribution"]["PROCESS"] == 10
        assert data["embedding_provider"] == "hashed-bow-v1:64"

    def test_process_subset_then_reuse(self, client):
        client.post("/api/signals/process", json={"signalIds": ["p00", "t00"]})

        response = client.post("/api/signals/process", json={"signalIds": ["p00", "t00"]})

        data = response.json()
        assert data["total"] == 2
        assert data["skipped"] == 2

    def test_force_regenerate(self, client):
        client.post("/api/signals/process", json={"signalIds": ["p00"]})

        response = client.post(
            "/api/signals/process", json={"signalIds": ["p00"], "forceRegenerate": True}
        )

        assert response.json()["succeeded"] == 1

    def test_empty_signal_ids_rejected(self, client):
        response = client.post("/api/signals/process", json={"signalIds": []})
        assert response.status_code == 422

    def test_storage_unavailable(self, unavailable_client):
        response = unavailable_client.post("/api/signals/process", json={})
        assert response.status_code == 503


# -----------------------------------------------------------------------------
# Listing, memberships, re-ranking
# -----------------------------------------------------------------------------


class TestHotspotReadEndpoints:
    """Tests for GET /api/hotspots and GET /api/hotspots/{id}/memberships."""

    def test_list_empty(self, client):
        response = client.get("/api/hotspots")

        assert response.status_code == 200
        assert response.json() == {"hotspots": [], "total": 0}

    def test_list_after_generate(self, client):
        generated = client.post("/api/hotspots/generate", json={}).json()

        response = client.get("/api/hotspots", params={"status": "OPEN"})

        data = response.json()
        assert data["total"] == len(generated["hotspots"])
        assert {h["id"] for h in data["hotspots"]} == {h["id"] for h in generated["hotspots"]}
        scores = [h["rank_score"] for h in data["hotspots"]]
        assert scores == sorted(scores, reverse=True)

    def test_memberships(self, client):
        generated = client.post("/api/hotspots/generate", json={}).json()
        hotspot = generated["hotspots"][0]

        response = client.get(f"/api/hotspots/{hotspot['id']}/memberships")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == hotspot["signal_count"]
        strengths = [m["membership_strength"] for m in data["memberships"]]
        assert strengths == sorted(strengths, reverse=True)

    def test_memberships_unknown_hotspot(self, client):
        response = client.get("/api/hotspots/does-not-exist/memberships")
        assert response.status_code == 404

    def test_list_storage_unavailable(self, unavailable_client):
        response = unavailable_client.get("/api/hotspots")

        assert response.status_code == 503
        assert "connection refused" in response.json()["detail"]

    def test_rerank(self, client):
        client.post("/api/hotspots/generate", json={})

        response = client.post("/api/hotspots/rerank")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] >= 1
        assert all("recency" in h["rank_breakdown"] for h in data["hotspots"])


class TestHealthEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness_counts_signals(self, client, memory_storage):
        response = client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["ready"] is True
        assert data["can_generate"] is True
        assert data["signals"] == len(memory_storage.list_signals())
        assert data["annotated_signals"] == 0
        assert data["hotspots"] == 0

    def test_readiness_after_generation(self, client):
        client.post("/api/hotspots/generate", json={})

        data = client.get("/health/ready").json()

        assert data["annotated_signals"] == data["signals"]
        assert data["hotspots"] >= 1

    def test_readiness_storage_unavailable(self, unavailable_client):
        response = unavailable_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["ready"] is False
        assert "connection refused" in response.json()["error"]

    def test_root(self, client):
        assert client.get("/").json()["name"] == "Signal Intelligence API"
