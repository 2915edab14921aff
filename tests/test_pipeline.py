"""
Tests for SignalIntelligencePipeline.

Runs the full pipeline against InMemoryHotspotStorage with the hashed
embedding provider; failure modes are injected with small storage /
provider subclasses and patches.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from signal_intel.db.hotspot_storage import InMemoryHotspotStorage, StorageError
from signal_intel.db.models import Hotspot
from signal_intel.domain_classifier import DomainClassifier
from signal_intel.pipeline import (
    PipelineStatus,
    SignalIntelligencePipeline,
    _parse_env_int,
)
from signal_intel.services.embedding_service import (
    EmbeddingProvider,
    EmbeddingServiceError,
    HashedEmbeddingProvider,
)
from signal_intel.services.hybrid_clustering_service import HybridClusteringService
from signal_intel.utils.deadline import Deadline, DeadlineExceeded

from conftest import NOW, field_report_signals, scenario_a_signals


class FailingProvider(EmbeddingProvider):
    """Primary provider that is always down."""

    identity = "openai:text-embedding-3-small:1536"
    dimensions = 1536

    def embed_texts(self, texts):
        raise EmbeddingServiceError("connection refused")


class FailingUpsertStorage(InMemoryHotspotStorage):
    def upsert_hotspot(self, hotspot):
        raise StorageError("database is read-only")


class SelectiveFailureClassifier(DomainClassifier):
    """Raises for one signal id to simulate a per-signal fault."""

    def __init__(self, bad_id):
        super().__init__()
        self.bad_id = bad_id

    def classify(self, signal):
        if signal.id == self.bad_id:
            raise RuntimeError("malformed signal payload")
        return super().classify(signal)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def pipeline(memory_storage, hashed_provider):
    return SignalIntelligencePipeline(
        storage=memory_storage,
        embedding_provider=hashed_provider,
        concurrency=3,
        deadline_seconds=30,
    )


class TestProcessSignals:
    """Classification + feature engineering batch stage."""

    def test_processes_every_signal(self, pipeline, process_signals):
        batch = pipeline.process_signals(process_signals)

        assert batch.total == 12
        assert batch.succeeded == 12
        assert batch.failed == 0
        assert batch.embedding_provider == "hashed-bow-v1:64"
        assert batch.stats["root_cause_distribution"] == {"PROCESS": 10, "TECHNOLOGY": 2}

    def test_annotations_persisted(self, pipeline, memory_storage, process_signals):
        pipeline.process_signals(process_signals)

        stored = memory_storage.get_annotations([s.id for s in process_signals])
        assert len(stored) == 12
        assert stored["p00"].classification.root_cause == "PROCESS"
        assert stored["p00"].classification.business_context.department_priority == "PROJECT_MGMT"

    def test_existing_annotations_reused(self, pipeline, process_signals):
        pipeline.process_signals(process_signals)

        second = pipeline.process_signals(process_signals)

        assert second.skipped == 12
        assert second.succeeded == 0
        assert len(second.annotations) == 12

    def test_force_regenerate_rebuilds(self, pipeline, process_signals):
        pipeline.process_signals(process_signals)

        second = pipeline.process_signals(process_signals, force_regenerate=True)

        assert second.succeeded == 12
        assert second.skipped == 0

    def test_annotations_from_other_provider_rebuilt(self, pipeline, memory_storage, process_signals):
        """A provider change invalidates stored feature vectors."""
        pipeline.process_signals(process_signals)
        other = SignalIntelligencePipeline(
            storage=memory_storage,
            embedding_provider=HashedEmbeddingProvider(dimensions=32),
            deadline_seconds=30,
        )

        batch = other.process_signals(process_signals)

        assert batch.succeeded == 12
        assert batch.embedding_provider == "hashed-bow-v1:32"

    def test_per_signal_failure_isolated(self, memory_storage, hashed_provider, process_signals):
        pipeline = SignalIntelligencePipeline(
            storage=memory_storage,
            embedding_provider=hashed_provider,
            classifier=SelectiveFailureClassifier("p03"),
            deadline_seconds=30,
        )

        batch = pipeline.process_signals(process_signals)

        assert batch.failed == 1
        assert batch.succeeded == 11
        assert batch.failures[0].signal_id == "p03"
        assert "malformed" in batch.failures[0].error
        assert "p03" not in batch.annotations

    def test_provider_failure_falls_back_to_hashed(self, memory_storage, process_signals):
        pipeline = SignalIntelligencePipeline(
            storage=memory_storage,
            embedding_provider=FailingProvider(),
            fallback_provider=HashedEmbeddingProvider(dimensions=64),
            deadline_seconds=30,
        )

        batch = pipeline.process_signals(process_signals)

        assert batch.degraded is True
        assert "connection refused" in batch.degradation_reason
        assert batch.embedding_provider == "hashed-bow-v1:64"
        assert batch.succeeded == 12

    def test_expired_deadline_skips_unstarted_signals(self, pipeline, process_signals):
        clock = FakeClock()
        deadline = Deadline(1.0, clock=clock)
        clock.now = 5.0

        batch = pipeline.process_signals(process_signals, deadline=deadline)

        assert batch.skipped == 12
        assert not batch.annotations


class TestGenerateHotspots:
    """Full runs."""

    def test_process_heavy_set_produces_hotspots(self, pipeline):
        result = pipeline.generate_hotspots()

        assert result.status == PipelineStatus.SUCCESS
        assert result.persisted is True
        assert len(result.hotspots) >= 1
        assert all(h.root_cause == "PROCESS" for h in result.hotspots)
        assert result.hotspots[0].title.startswith("Project Management Process Breakdown")
        scores = [h.rank_score for h in result.hotspots]
        assert scores == sorted(scores, reverse=True)

    def test_everyday_wording_produces_hotspots(self, hashed_provider):
        """Reports with one or two rule terms each still clear the quality gate."""
        storage = InMemoryHotspotStorage(field_report_signals())
        pipeline = SignalIntelligencePipeline(
            storage=storage,
            embedding_provider=hashed_provider,
            concurrency=3,
            deadline_seconds=30,
        )

        result = pipeline.generate_hotspots()

        assert result.status == PipelineStatus.SUCCESS
        assert result.clustering.stage_metrics["domain_partition"]["clusters"] >= 1
        assert len(result.hotspots) >= 1
        assert {h.root_cause for h in result.hotspots} <= {"PROCESS", "RESOURCE"}

    def test_hotspot_fields(self, pipeline):
        result = pipeline.generate_hotspots()
        hotspot = result.hotspots[0]

        assert hotspot.id
        assert hotspot.status == "OPEN"
        assert hotspot.signal_count >= 3
        assert hotspot.confidence * hotspot.cohesion > 0.7
        assert hotspot.clustering_method == "hybrid-hdbscan"
        assert set(hotspot.rank_breakdown) == {
            "severity", "volume", "confidence", "cohesion", "business_impact", "recency",
        }
        assert "Recommended action" in hotspot.summary

    def test_memberships_stamped_with_hotspot_id(self, pipeline, memory_storage):
        result = pipeline.generate_hotspots()

        for hotspot in result.hotspots:
            rows = result.memberships[hotspot.title]
            assert rows
            assert all(m.hotspot_id == hotspot.id for m in rows)
            stored = memory_storage.get_memberships(hotspot.id)
            assert sorted(m.signal_id for m in stored) == sorted(m.signal_id for m in rows)

    def test_rerun_is_idempotent(self, pipeline, memory_storage):
        """Same input twice: same hotspots, same ids, no duplicate memberships."""
        first = pipeline.generate_hotspots()
        second = pipeline.generate_hotspots()

        assert [h.title for h in second.hotspots] == [h.title for h in first.hotspots]
        assert [h.id for h in second.hotspots] == [h.id for h in first.hotspots]
        assert len(memory_storage.list_hotspots()) == len(first.hotspots)
        for hotspot in second.hotspots:
            ids = [m.signal_id for m in memory_storage.get_memberships(hotspot.id)]
            assert len(ids) == len(set(ids))
        assert second.batch.skipped == 12

    def test_too_few_signals_is_insufficient_input(self, hashed_provider):
        storage = InMemoryHotspotStorage(scenario_a_signals()[:2])
        pipeline = SignalIntelligencePipeline(
            storage=storage, embedding_provider=hashed_provider, deadline_seconds=30
        )

        result = pipeline.generate_hotspots()

        assert result.status == PipelineStatus.INSUFFICIENT_INPUT
        assert result.hotspots == []
        assert result.errors == []
        assert storage.list_hotspots() == []

    def test_signal_subset(self, pipeline):
        result = pipeline.generate_hotspots({"signalIds": ["p00", "p01"]})

        assert result.status == PipelineStatus.INSUFFICIENT_INPUT
        assert result.batch.total == 2

    def test_invalid_options_rejected_before_work(self, pipeline, memory_storage):
        with pytest.raises(ValidationError):
            pipeline.generate_hotspots({"targetClusterCount": 9})

        assert memory_storage.get_annotations(["p00"]) == {}

    def test_embedding_fallback_marks_degraded(self, memory_storage):
        pipeline = SignalIntelligencePipeline(
            storage=memory_storage,
            embedding_provider=FailingProvider(),
            fallback_provider=HashedEmbeddingProvider(dimensions=64),
            deadline_seconds=30,
        )

        result = pipeline.generate_hotspots()

        assert result.status == PipelineStatus.DEGRADED
        assert result.embedding_provider == "hashed-bow-v1:64"
        assert result.hotspots
        assert any("Embedding provider unavailable" in w for w in result.warnings)

    def test_clustering_fallback_marks_degraded(self, pipeline):
        with patch.object(
            HybridClusteringService, "_density_partition", side_effect=RuntimeError("hdbscan broke")
        ):
            result = pipeline.generate_hotspots()

        assert result.status == PipelineStatus.DEGRADED
        assert result.clustering.method == "hybrid-kmeans-fallback"

    def test_write_back_failure_keeps_computed_hotspots(self, hashed_provider):
        storage = FailingUpsertStorage(scenario_a_signals())
        pipeline = SignalIntelligencePipeline(
            storage=storage, embedding_provider=hashed_provider, deadline_seconds=30
        )

        result = pipeline.generate_hotspots()

        assert result.status == PipelineStatus.INTERNAL_ERROR
        assert result.failed_stage == "write_back"
        assert result.persisted is False
        assert result.hotspots
        assert "read-only" in result.errors[0]

    def test_timeout_reports_stage(self, pipeline):
        clock = FakeClock()
        deadline = Deadline(1.0, clock=clock)
        clock.now = 5.0

        with patch.object(pipeline, "new_deadline", return_value=deadline):
            result = pipeline.generate_hotspots()

        assert result.status == PipelineStatus.TIMEOUT
        assert result.failed_stage == "load_signals"
        assert result.hotspots == []

    def test_timeout_inside_clustering(self, pipeline):
        with patch.object(
            HybridClusteringService,
            "cluster",
            side_effect=DeadlineExceeded("semantic_refinement", 30),
        ):
            result = pipeline.generate_hotspots()

        assert result.status == PipelineStatus.TIMEOUT
        assert result.failed_stage == "semantic_refinement"

    def test_unexpected_error_is_internal_error(self, pipeline):
        with patch.object(HybridClusteringService, "cluster", side_effect=RuntimeError("boom")):
            result = pipeline.generate_hotspots()

        assert result.status == PipelineStatus.INTERNAL_ERROR
        assert result.failed_stage == "clustering"
        assert "RuntimeError: boom" in result.errors

    def test_result_serializes(self, pipeline):
        payload = pipeline.generate_hotspots().to_dict()

        assert payload["status"] == "SUCCESS"
        assert payload["clustering"]["candidates"] >= 4
        assert payload["batch"]["total"] == 12
        assert isinstance(payload["hotspots"][0]["last_clustered_at"], str)


class TestRerank:

    def test_rerank_updates_stored_scores(self, pipeline, memory_storage):
        generated = pipeline.generate_hotspots()
        before = {h.id: h.rank_score for h in generated.hotspots}

        reranked = pipeline.rerank_hotspots(now=NOW + timedelta(days=1))

        assert {h.id for h in reranked} == set(before)
        stored = {h.id: h.rank_score for h in memory_storage.list_hotspots()}
        assert stored == {h.id: h.rank_score for h in reranked}
        # Signals are two days old at the reference time: recency contributes
        assert all(h.rank_breakdown["recency"] > 0 for h in reranked)

    def test_rerank_without_memberships_keeps_score(self, pipeline, memory_storage):
        stored = memory_storage.upsert_hotspot(Hotspot(title="Orphan", rank_score=0.4, confidence=0.5))

        reranked = pipeline.rerank_hotspots(now=NOW)

        assert [h.rank_score for h in reranked if h.id == stored.id] == [0.4]


class TestParseEnvInt:

    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("SIGNAL_PIPELINE_CONCURRENCY", raising=False)
        assert _parse_env_int("SIGNAL_PIPELINE_CONCURRENCY", 3, 1, 32) == 3

    def test_out_of_bounds_uses_default(self, monkeypatch):
        monkeypatch.setenv("SIGNAL_PIPELINE_CONCURRENCY", "500")
        assert _parse_env_int("SIGNAL_PIPELINE_CONCURRENCY", 3, 1, 32) == 3

    def test_invalid_uses_default(self, monkeypatch):
        monkeypatch.setenv("SIGNAL_PIPELINE_CONCURRENCY", "many")
        assert _parse_env_int("SIGNAL_PIPELINE_CONCURRENCY", 3, 1, 32) == 3

    def test_valid_value(self, monkeypatch):
        monkeypatch.setenv("SIGNAL_PIPELINE_CONCURRENCY", "8")
        assert _parse_env_int("SIGNAL_PIPELINE_CONCURRENCY", 3, 1, 32) == 8
