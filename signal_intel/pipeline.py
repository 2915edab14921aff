"""
Signal Intelligence Pipeline

Orchestrates: domain classification -> feature engineering -> hybrid
clustering -> membership scoring -> hotspot ranking -> write-back.

Per-signal work (classification + feature extraction) runs with bounded
concurrency; results are keyed by signal id so completion order never
matters. The whole run shares one Deadline that is checked between stages
and inside the clustering loops.

Usage:
    from signal_intel.pipeline import SignalIntelligencePipeline

    pipeline = SignalIntelligencePipeline(storage=InMemoryHotspotStorage(signals))
    result = pipeline.generate_hotspots({"targetClusterCount": 5})
    print(result.status, [h.title for h in result.hotspots])
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from signal_intel.db.hotspot_storage import HotspotStorage, StorageError
from signal_intel.db.models import (
    ClusteringOptions,
    Hotspot,
    Membership,
    Signal,
    SignalAnnotation,
)
from signal_intel.domain_classifier import DomainClassifier
from signal_intel.feature_engineer import FeatureEngineer
from signal_intel.hotspot_formatter import format_hotspot_text
from signal_intel.hotspot_ranker import HotspotRanker, RankInput
from signal_intel.services.embedding_service import (
    EmbeddingProvider,
    EmbeddingServiceError,
    HashedEmbeddingProvider,
    get_embedding_provider,
)
from signal_intel.services.hybrid_clustering_service import (
    CLUSTERING_VERSION,
    ClusteringResult,
    EmbeddingProviderMismatchError,
    HybridClusteringService,
    cluster_confidence,
)
from signal_intel.utils.deadline import Deadline, DeadlineExceeded

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_SECONDS = 30
DEFAULT_CONCURRENCY = 3


def _parse_env_int(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds checking.

    Args:
        name: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value (inclusive)
        max_val: Maximum allowed value (inclusive)

    Returns:
        Parsed integer within bounds, or default if invalid
    """
    try:
        val = int(os.getenv(name, str(default)))
        if not (min_val <= val <= max_val):
            logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
            return default
        return val
    except ValueError:
        logger.warning(f"{name} invalid, using {default}")
        return default


class PipelineStatus(str, Enum):
    SUCCESS = "SUCCESS"
    INSUFFICIENT_INPUT = "INSUFFICIENT_INPUT"
    DEGRADED = "DEGRADED"
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# =============================================================================
# Results
# =============================================================================


@dataclass
class SignalProcessingResult:
    """Outcome for one signal in a batch."""

    signal_id: str
    status: str  # success | error | skipped
    duration_ms: int = 0
    root_cause: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[str] = None


@dataclass
class BatchProcessingResult:
    """Classification + feature engineering over a batch of signals."""

    results: Dict[str, SignalProcessingResult] = field(default_factory=dict)
    annotations: Dict[str, SignalAnnotation] = field(default_factory=dict)
    embedding_provider: Optional[str] = None
    degraded: bool = False
    degradation_reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results.values() if r.status == "success")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results.values() if r.status == "error")

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results.values() if r.status == "skipped")

    @property
    def failures(self) -> List[SignalProcessingResult]:
        return [r for r in sorted(self.results.values(), key=lambda r: r.signal_id) if r.status == "error"]

    @property
    def stats(self) -> Dict[str, Any]:
        """Aggregate statistics over every annotated signal (new or reused)."""
        classifications = [a.classification for a in self.annotations.values()]
        distribution: Dict[str, int] = {}
        for c in classifications:
            distribution[c.root_cause] = distribution.get(c.root_cause, 0) + 1
        average = (
            round(sum(c.confidence for c in classifications) / len(classifications), 6)
            if classifications else 0.0
        )
        return {
            "root_cause_distribution": dict(sorted(distribution.items())),
            "average_confidence": average,
            "flagged_for_review": sum(1 for c in classifications if c.ai_enhancement_needed),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "embedding_provider": self.embedding_provider,
            "degraded": self.degraded,
            "degradation_reason": self.degradation_reason,
            "duration_ms": self.duration_ms,
            "stats": self.stats,
            "results": [
                {
                    "signal_id": r.signal_id,
                    "status": r.status,
                    "duration_ms": r.duration_ms,
                    "root_cause": r.root_cause,
                    "confidence": r.confidence,
                    "error": r.error,
                }
                for r in sorted(self.results.values(), key=lambda r: r.signal_id)
            ],
            "warnings": list(self.warnings),
        }


@dataclass
class PipelineResult:
    """Result of one hotspot generation run."""

    status: PipelineStatus = PipelineStatus.SUCCESS
    hotspots: List[Hotspot] = field(default_factory=list)
    memberships: Dict[str, List[Membership]] = field(default_factory=dict)  # by hotspot title
    batch: Optional[BatchProcessingResult] = None
    clustering: Optional[ClusteringResult] = None
    embedding_provider: Optional[str] = None
    failed_stage: Optional[str] = None
    persisted: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        clustering = None
        if self.clustering is not None:
            clustering = {
                "method": self.clustering.method,
                "degraded": self.clustering.degraded,
                "degradation_reason": self.clustering.degradation_reason,
                "candidates": len(self.clustering.candidates),
                "accepted": len(self.clustering.clusters),
                "rejected": [
                    {
                        "signal_ids": c.signal_ids,
                        "hotspot_potential": c.hotspot_potential,
                        "reason": c.rejection_reason,
                    }
                    for c in self.clustering.rejected
                ],
                "noise_signal_ids": list(self.clustering.noise_signal_ids),
                "stage_metrics": self.clustering.stage_metrics,
            }
        return {
            "status": self.status.value,
            "hotspots": [h.model_dump(mode="json") for h in self.hotspots],
            "memberships": {
                title: [m.model_dump(mode="json") for m in rows]
                for title, rows in self.memberships.items()
            },
            "batch": self.batch.to_dict() if self.batch else None,
            "clustering": clustering,
            "embedding_provider": self.embedding_provider,
            "failed_stage": self.failed_stage,
            "persisted": self.persisted,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "duration_ms": self.duration_ms,
        }


# =============================================================================
# Pipeline
# =============================================================================


class SignalIntelligencePipeline:
    """Runs the signal -> hotspot pipeline against a HotspotStorage."""

    def __init__(
        self,
        storage: HotspotStorage,
        embedding_provider: Optional[EmbeddingProvider] = None,
        classifier: Optional[DomainClassifier] = None,
        ranker: Optional[HotspotRanker] = None,
        concurrency: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        fallback_provider: Optional[EmbeddingProvider] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            storage: Signal source and hotspot store
            embedding_provider: Primary provider (defaults to EMBEDDING_PROVIDER config)
            classifier: Domain classifier (defaults to the bundled rules)
            ranker: Hotspot ranker (gate parameters are taken per run from options)
            concurrency: Max concurrent per-signal workers (SIGNAL_PIPELINE_CONCURRENCY)
            deadline_seconds: Run budget (SIGNAL_PIPELINE_DEADLINE_SECONDS)
            fallback_provider: Used when the primary provider fails
        """
        self.storage = storage
        self.embedding_provider = embedding_provider or get_embedding_provider()
        self.fallback_provider = fallback_provider or HashedEmbeddingProvider()
        self.classifier = classifier or DomainClassifier()
        self.ranker = ranker or HotspotRanker()
        self.concurrency = concurrency or _parse_env_int(
            "SIGNAL_PIPELINE_CONCURRENCY", DEFAULT_CONCURRENCY, 1, 32
        )
        self.deadline_seconds = deadline_seconds or _parse_env_int(
            "SIGNAL_PIPELINE_DEADLINE_SECONDS", DEFAULT_DEADLINE_SECONDS, 1, 3600
        )

    def new_deadline(self) -> Deadline:
        return Deadline(self.deadline_seconds)

    # =========================================================================
    # Stage: classification + feature engineering
    # =========================================================================

    def process_signals(
        self,
        signals: List[Signal],
        force_regenerate: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> BatchProcessingResult:
        """Classify and featurize signals (sync wrapper)."""
        return asyncio.run(self.process_signals_async(signals, force_regenerate, deadline))

    async def process_signals_async(
        self,
        signals: List[Signal],
        force_regenerate: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> BatchProcessingResult:
        """
        Classify and featurize a batch of signals.

        Existing annotations are reused (status "skipped") unless
        force_regenerate is set or they were built with a different embedding
        provider. If the primary provider fails, every signal is embedded with
        the hashed fallback and the batch is marked degraded.

        Args:
            signals: Signals to process
            force_regenerate: Ignore existing annotations
            deadline: Run budget; signals not started before it expires are skipped

        Returns:
            BatchProcessingResult keyed by signal id
        """
        deadline = deadline or self.new_deadline()
        start = time.perf_counter()
        batch = BatchProcessingResult()

        existing: Dict[str, SignalAnnotation] = {}
        if signals and not force_regenerate:
            try:
                existing = self.storage.get_annotations([s.id for s in signals])
            except StorageError as e:
                logger.warning(f"Could not load existing annotations, regenerating: {e}")
                batch.warnings.append(f"Existing annotations unavailable: {e}")

        provider = self.embedding_provider
        pending = self._pending_signals(signals, existing, provider.identity)
        try:
            embeddings = provider.embed_texts([s.text for s in pending]) if pending else []
        except EmbeddingServiceError as e:
            logger.warning(f"Embedding provider {provider.identity} failed, using fallback: {e}")
            batch.degraded = True
            batch.degradation_reason = f"Embedding provider unavailable: {e}"
            provider = self.fallback_provider
            pending = self._pending_signals(signals, existing, provider.identity)
            embeddings = provider.embed_texts([s.text for s in pending]) if pending else []

        batch.embedding_provider = provider.identity
        pending_embeddings = {s.id: emb for s, emb in zip(pending, embeddings)}

        for signal in signals:
            if signal.id not in pending_embeddings:
                annotation = existing[signal.id]
                batch.annotations[signal.id] = annotation
                batch.results[signal.id] = SignalProcessingResult(
                    signal_id=signal.id,
                    status="skipped",
                    root_cause=annotation.classification.root_cause,
                    confidence=annotation.classification.confidence,
                )

        engineer = FeatureEngineer(provider)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def process_one(signal: Signal) -> SignalProcessingResult:
            async with semaphore:
                if deadline.expired():
                    return SignalProcessingResult(
                        signal_id=signal.id,
                        status="skipped",
                        error="deadline exceeded before processing",
                    )
                signal_start = time.perf_counter()
                try:
                    annotation = await asyncio.to_thread(
                        self._annotate,
                        engineer,
                        signal,
                        pending_embeddings[signal.id],
                        provider.identity,
                    )
                except Exception as e:
                    logger.warning(f"Signal {signal.id} failed: {e}")
                    return SignalProcessingResult(
                        signal_id=signal.id,
                        status="error",
                        duration_ms=int((time.perf_counter() - signal_start) * 1000),
                        error=str(e),
                    )
                batch.annotations[signal.id] = annotation
                return SignalProcessingResult(
                    signal_id=signal.id,
                    status="success",
                    duration_ms=int((time.perf_counter() - signal_start) * 1000),
                    root_cause=annotation.classification.root_cause,
                    confidence=annotation.classification.confidence,
                )

        outcomes = await asyncio.gather(*(process_one(s) for s in pending))
        for outcome in outcomes:
            batch.results[outcome.signal_id] = outcome

        batch.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"Processed {batch.total} signals: {batch.succeeded} succeeded, "
            f"{batch.failed} failed, {batch.skipped} skipped "
            f"(provider={batch.embedding_provider}, {batch.duration_ms}ms)"
        )
        return batch

    def _pending_signals(
        self,
        signals: List[Signal],
        existing: Dict[str, SignalAnnotation],
        provider_identity: str,
    ) -> List[Signal]:
        """Signals without a reusable annotation for this provider."""
        return [
            s for s in signals
            if s.id not in existing
            or existing[s.id].feature_vector.embedding_provider != provider_identity
        ]

    def _annotate(
        self,
        engineer: FeatureEngineer,
        signal: Signal,
        embedding: List[float],
        provider_identity: str,
    ) -> SignalAnnotation:
        classification = self.classifier.classify(signal)
        vector = engineer.build(
            signal,
            classification,
            embedding=embedding,
            embedding_provider=provider_identity,
        )
        annotation = SignalAnnotation(
            signal_id=signal.id,
            classification=classification,
            feature_vector=vector,
        )
        self.storage.save_annotation(annotation)
        return annotation

    # =========================================================================
    # Full run
    # =========================================================================

    def generate_hotspots(
        self,
        options: Union[ClusteringOptions, Dict[str, Any], None] = None,
    ) -> PipelineResult:
        """
        Run the full pipeline and persist hotspots.

        Args:
            options: ClusteringOptions or a dict (camelCase or snake_case keys)

        Returns:
            PipelineResult; the status carries the logical outcome

        Raises:
            pydantic.ValidationError: Invalid options (before any work starts)
        """
        if not isinstance(options, ClusteringOptions):
            options = ClusteringOptions.model_validate(options or {})

        deadline = self.new_deadline()
        result = PipelineResult()
        stage = "load_signals"

        logger.info(
            f"Hotspot generation started: target={options.target_cluster_count}, "
            f"min_cluster_size={options.min_cluster_size}, "
            f"quality_threshold={options.quality_threshold}"
        )

        try:
            signals = self.storage.list_signals(options.signal_ids)
            deadline.check(stage)

            stage = "process_signals"
            batch = asyncio.run(
                self.process_signals_async(signals, options.force_regenerate, deadline)
            )
            result.batch = batch
            result.embedding_provider = batch.embedding_provider
            result.warnings.extend(batch.warnings)
            if batch.failed:
                result.warnings.append(f"{batch.failed} signals failed processing")
            deadline.check(stage)

            eligible = [batch.annotations[s.id] for s in signals if s.id in batch.annotations]
            if len(eligible) < options.min_cluster_size:
                result.status = PipelineStatus.INSUFFICIENT_INPUT
                result.warnings.append(
                    f"{len(eligible)} eligible signals, need at least {options.min_cluster_size}"
                )
                logger.info(f"Insufficient input: {len(eligible)} eligible signals")
                return result

            stage = "clustering"
            service = HybridClusteringService.from_options(options)
            clustering = service.cluster([a.feature_vector for a in eligible], deadline)
            result.clustering = clustering
            result.warnings.extend(clustering.warnings)

            stage = "ranking"
            signals_by_id = {s.id: s for s in signals}
            hotspots, memberships = self._build_hotspots(
                clustering, signals_by_id, batch.annotations, options
            )
            deadline.check(stage)

            stage = "write_back"
            # Computed hotspots are kept on the result even if write-back fails
            result.hotspots, result.memberships = hotspots, memberships
            result.hotspots = self._write_back(hotspots, memberships)
            result.memberships = {
                h.title: [m.model_copy(update={"hotspot_id": h.id}) for m in memberships[h.title]]
                for h in result.hotspots
            }
            result.persisted = True

            if batch.degraded or clustering.degraded:
                result.status = PipelineStatus.DEGRADED
                for reason in (batch.degradation_reason, clustering.degradation_reason):
                    if reason:
                        result.warnings.append(reason)

        except DeadlineExceeded as e:
            logger.warning(f"Hotspot generation timed out: {e}")
            result.status = PipelineStatus.TIMEOUT
            result.failed_stage = e.stage
            result.errors.append(str(e))
        except StorageError as e:
            logger.error(f"Storage failure during {stage}: {e}")
            result.status = PipelineStatus.INTERNAL_ERROR
            result.failed_stage = stage
            result.errors.append(f"Storage failure during {stage}: {e}")
        except EmbeddingProviderMismatchError as e:
            logger.error(f"Refusing to cluster: {e}")
            result.status = PipelineStatus.INTERNAL_ERROR
            result.failed_stage = stage
            result.errors.append(str(e))
        except Exception as e:
            logger.error(f"Hotspot generation failed during {stage}: {e}", exc_info=True)
            result.status = PipelineStatus.INTERNAL_ERROR
            result.failed_stage = stage
            result.errors.append(f"{type(e).__name__}: {e}")
        finally:
            result.duration_ms = deadline.elapsed_ms()

        logger.info(
            f"Hotspot generation finished: status={result.status.value}, "
            f"{len(result.hotspots)} hotspots in {result.duration_ms}ms"
        )
        return result

    def _build_hotspots(
        self,
        clustering: ClusteringResult,
        signals_by_id: Dict[str, Signal],
        annotations: Dict[str, SignalAnnotation],
        options: ClusteringOptions,
    ) -> tuple[List[Hotspot], Dict[str, List[Membership]]]:
        """Rank accepted clusters, give them titles, and order them for output."""
        ranker = HotspotRanker(
            weights=self.ranker.weights,
            min_cluster_size=options.min_cluster_size,
            quality_threshold=options.quality_threshold,
        )
        now = datetime.now(timezone.utc)

        ranked = []
        for candidate in clustering.clusters:
            members = [signals_by_id[i] for i in candidate.signal_ids]
            rank = ranker.rank(
                RankInput(signals=members, confidence=candidate.confidence, cohesion=candidate.cohesion),
                now=now,
            )
            ranked.append((candidate, members, rank))

        # Title suffixes follow rank order so they are stable for identical input
        ranked.sort(key=lambda item: (-item[2].rank_score, -item[0].size, item[0].signal_ids[0]))

        used_titles: set = set()
        hotspots: List[Hotspot] = []
        memberships: Dict[str, List[Membership]] = {}
        for candidate, members, rank in ranked:
            text = format_hotspot_text(
                root_cause=candidate.dominant_root_cause,
                departments=[
                    annotations[i].classification.business_context.department_priority
                    for i in candidate.signal_ids
                ],
                signals=members,
                confidence=candidate.confidence,
                cohesion=candidate.cohesion,
                used_titles=used_titles,
            )
            hotspot = Hotspot(
                title=text["title"],
                summary=text["summary"],
                rank_score=rank.rank_score,
                confidence=candidate.confidence,
                cohesion=candidate.cohesion,
                signal_count=candidate.size,
                root_cause=candidate.dominant_root_cause,
                clustering_method=clustering.method,
                clustering_version=CLUSTERING_VERSION,
                linked_entities=text["linked_entities"],
                rank_breakdown=rank.breakdown,
                last_clustered_at=now,
            )
            hotspots.append(hotspot)
            memberships[hotspot.title] = list(candidate.memberships)

        hotspots.sort(key=lambda h: (-h.rank_score, -h.signal_count, h.title))
        return hotspots, memberships

    def _write_back(
        self,
        hotspots: List[Hotspot],
        memberships: Dict[str, List[Membership]],
    ) -> List[Hotspot]:
        """Upsert hotspots by title, then replace each one's memberships."""
        stored = []
        for hotspot in hotspots:
            saved = self.storage.upsert_hotspot(hotspot)
            count = self.storage.replace_memberships(saved.id, memberships[hotspot.title])
            logger.debug(f"Stored hotspot {saved.id} '{saved.title}' with {count} members")
            stored.append(saved)
        return stored

    # =========================================================================
    # Re-ranking
    # =========================================================================

    def rerank_hotspots(self, now: Optional[datetime] = None) -> List[Hotspot]:
        """
        Recompute rank scores for every stored hotspot.

        Confidence comes from member annotations (scaled by root-cause
        agreement, as at clustering time), cohesion from stored
        membership strengths. Hotspots without memberships keep their score.
        """
        now = now or datetime.now(timezone.utc)
        updated = []

        for hotspot in self.storage.list_hotspots():
            memberships = self.storage.get_memberships(hotspot.id)
            if not memberships:
                logger.warning(f"Hotspot {hotspot.id} has no memberships, skipping re-rank")
                updated.append(hotspot)
                continue

            signal_ids = [m.signal_id for m in memberships]
            signals = self.storage.list_signals(signal_ids)
            annotations = self.storage.get_annotations(signal_ids)
            classifications = [annotations[i].classification for i in signal_ids if i in annotations]
            confidence = hotspot.confidence
            if classifications:
                confidence, _ = cluster_confidence(
                    [c.confidence for c in classifications],
                    [c.root_cause for c in classifications],
                )
            cohesion = sum(m.membership_strength for m in memberships) / len(memberships)

            rank = self.ranker.rank(
                RankInput(signals=signals, confidence=confidence, cohesion=cohesion),
                now=now,
            )
            self.storage.update_hotspot_rank(hotspot.id, rank.rank_score, rank.breakdown)
            updated.append(
                hotspot.model_copy(update={"rank_score": rank.rank_score, "rank_breakdown": rank.breakdown})
            )

        updated.sort(key=lambda h: (-h.rank_score, -h.signal_count, h.title))
        logger.info(f"Re-ranked {len(updated)} hotspots")
        return updated


__all__ = [
    "BatchProcessingResult",
    "PipelineResult",
    "PipelineStatus",
    "SignalIntelligencePipeline",
    "SignalProcessingResult",
]
