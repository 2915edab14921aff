"""
HybridClusteringService: turn signal feature vectors into 4-6 executive clusters.

This service implements a three-stage clustering algorithm:

Stage 1 - Domain Partition:
    Density-based clustering (HDBSCAN, cosine distance) over the full
    clustering vector. Produces any number of clusters plus noise points.
    If HDBSCAN fails or overruns its share of the run budget, the stage
    degrades to KMeans centroid grouping and the result is marked degraded.

Stage 2 - Semantic Refinement:
    Re-scores clusters on the semantic embedding + root-cause soft scores
    only. Clusters whose mean pairwise similarity is below the cohesion floor
    are split at their weakest seam; near-duplicate clusters (centroid cosine
    above the merge threshold) are merged.

Stage 3 - Executive Optimization:
    Noise points join their nearest cluster, undersized clusters are absorbed,
    then the count is forced into [4, target]: smallest / least impactful
    clusters merge into their nearest neighbour, the largest cluster is split
    at its weakest seam. Each final candidate is gated: size must reach
    min_cluster_size and confidence x cohesion must exceed the quality
    threshold, otherwise the candidate is rejected rather than forced.

Determinism:
    Inputs are ordered by signal id and every tie-break is index based, so
    identical feature vectors always yield the same partition.
"""

import logging
import multiprocessing
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.cluster import HDBSCAN, KMeans
from sklearn.metrics.pairwise import cosine_similarity

from signal_intel.db.models import (
    MIN_TARGET_CLUSTERS,
    ROOT_CAUSES,
    ClusteringOptions,
    FeatureVector,
    Membership,
)
from signal_intel.feature_engineer import scale_block
from signal_intel.membership_classifier import MembershipClassifier
from signal_intel.utils.deadline import Deadline

logger = logging.getLogger(__name__)


# Defaults (mirror ClusteringOptions)
DEFAULT_MIN_CLUSTER_SIZE = 3
DEFAULT_MIN_SAMPLES = 2
DEFAULT_TARGET_CLUSTER_COUNT = 5
DEFAULT_QUALITY_THRESHOLD = 0.7

# Semantic refinement
COHESION_FLOOR = 0.5  # mean pairwise similarity below this triggers a split
MERGE_SIMILARITY_THRESHOLD = 0.85  # centroid cosine above this merges clusters
MAX_MERGED_CLUSTER_SIZE = 12  # stage 2 never merges beyond this size
REFINE_SEMANTIC_WEIGHT = 0.5
REFINE_DOMAIN_WEIGHT = 0.5

# Share of the remaining run budget the density stage may use before falling back
DENSITY_STAGE_BUDGET_FRACTION = 0.5
DENSITY_WORKER_MIN_SIGNALS = 200  # smaller inputs run HDBSCAN inline

CLUSTERING_VERSION = "v1"
METHOD_HYBRID = "hybrid-hdbscan"
METHOD_FALLBACK = "hybrid-kmeans-fallback"


class EmbeddingProviderMismatchError(ValueError):
    """Raised when feature vectors from different embedding providers are mixed."""
    pass


@dataclass
class CandidateCluster:
    """A finished cluster with membership scores and the gate decision."""

    index: int
    signal_ids: List[str] = field(default_factory=list)
    memberships: List[Membership] = field(default_factory=list)
    cohesion: float = 0.0
    confidence: float = 0.0
    hotspot_potential: float = 0.0
    dominant_root_cause: str = "UNKNOWN"
    business_impact: float = 0.0
    accepted: bool = False
    rejection_reason: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.signal_ids)


@dataclass
class ClusteringResult:
    """Result of one hybrid clustering pass."""

    total_signals: int
    embedding_provider: Optional[str] = None
    method: str = METHOD_HYBRID
    clusters: List[CandidateCluster] = field(default_factory=list)  # accepted
    rejected: List[CandidateCluster] = field(default_factory=list)
    noise_signal_ids: List[str] = field(default_factory=list)  # stage 1 noise
    stage_metrics: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    degraded: bool = False
    degradation_reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    # Distribution stats for logging/monitoring
    cluster_size_distribution: Dict[int, int] = field(default_factory=dict)  # size -> count

    @property
    def candidates(self) -> List[CandidateCluster]:
        """Every stage-3 cluster, accepted or not, in index order."""
        return sorted(self.clusters + self.rejected, key=lambda c: c.index)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0 and self.total_signals > 0


@dataclass
class _ClusterInputs:
    """Row-aligned arrays for one clustering pass (rows ordered by signal id)."""

    signal_ids: List[str]
    matrix: np.ndarray  # full clustering vectors
    refine_matrix: np.ndarray  # semantic + soft root-cause scores
    confidences: np.ndarray
    business_impacts: np.ndarray
    root_causes: List[str]

    @classmethod
    def from_vectors(cls, vectors: Sequence[FeatureVector]) -> "_ClusterInputs":
        refine_rows = [
            scale_block(fv.semantic_embedding, REFINE_SEMANTIC_WEIGHT)
            + scale_block([fv.root_cause_scores[rc] for rc in ROOT_CAUSES], REFINE_DOMAIN_WEIGHT)
            for fv in vectors
        ]
        return cls(
            signal_ids=[fv.signal_id for fv in vectors],
            matrix=np.array([fv.values for fv in vectors], dtype=np.float64),
            refine_matrix=np.array(refine_rows, dtype=np.float64),
            confidences=np.array([fv.quality_score for fv in vectors], dtype=np.float64),
            business_impacts=np.array([fv.business_impact for fv in vectors], dtype=np.float64),
            root_causes=[ROOT_CAUSES[int(np.argmax(fv.domain_vector))] for fv in vectors],
        )


class HybridClusteringService:
    """
    Service for three-stage hybrid clustering of signal feature vectors.

    1. Domain partition: HDBSCAN with cosine distance (KMeans fallback)
    2. Semantic refinement: cohesion-floor splits, near-duplicate merges
    3. Executive optimization: force 4..target clusters, then quality gate
    """

    def __init__(
        self,
        min_cluster_size: int = DEFAULT_MIN_CLUSTER_SIZE,
        min_samples: int = DEFAULT_MIN_SAMPLES,
        target_cluster_count: int = DEFAULT_TARGET_CLUSTER_COUNT,
        quality_threshold: float = DEFAULT_QUALITY_THRESHOLD,
        cohesion_floor: float = COHESION_FLOOR,
        merge_threshold: float = MERGE_SIMILARITY_THRESHOLD,
        membership_classifier: Optional[MembershipClassifier] = None,
        worker_min_signals: int = DENSITY_WORKER_MIN_SIGNALS,
    ):
        """
        Initialize the hybrid clustering service.

        Args:
            min_cluster_size: Minimum members for a density cluster and a hotspot
            min_samples: HDBSCAN min_samples (core-distance neighbourhood)
            target_cluster_count: Upper bound of the executive band (4-6)
            quality_threshold: Gate on confidence x cohesion
            cohesion_floor: Stage 2 split threshold (mean pairwise similarity)
            merge_threshold: Stage 2 merge threshold (centroid cosine)
            membership_classifier: Scores members of finished clusters
            worker_min_signals: Input size from which a timed HDBSCAN run
                moves to a terminable worker process
        """
        if not MIN_TARGET_CLUSTERS <= target_cluster_count:
            raise ValueError(
                f"target_cluster_count must be at least {MIN_TARGET_CLUSTERS}, "
                f"got {target_cluster_count}"
            )
        if min_cluster_size < 2:
            raise ValueError(f"min_cluster_size must be at least 2, got {min_cluster_size}")

        self.min_cluster_size = min_cluster_size
        self.min_samples = min_samples
        self.target_cluster_count = target_cluster_count
        self.quality_threshold = quality_threshold
        self.cohesion_floor = cohesion_floor
        self.merge_threshold = merge_threshold
        self.membership_classifier = membership_classifier or MembershipClassifier()
        self.worker_min_signals = worker_min_signals

    @classmethod
    def from_options(
        cls,
        options: ClusteringOptions,
        membership_classifier: Optional[MembershipClassifier] = None,
    ) -> "HybridClusteringService":
        return cls(
            min_cluster_size=options.min_cluster_size,
            min_samples=options.min_samples,
            target_cluster_count=options.target_cluster_count,
            quality_threshold=options.quality_threshold,
            membership_classifier=membership_classifier,
        )

    # =========================================================================
    # Entry point
    # =========================================================================

    def cluster(
        self,
        feature_vectors: Sequence[FeatureVector],
        deadline: Optional[Deadline] = None,
    ) -> ClusteringResult:
        """
        Run all three stages over a set of feature vectors.

        Args:
            feature_vectors: One vector per signal, all from one embedding provider
            deadline: Run budget, checked between stages and inside stage loops

        Returns:
            ClusteringResult with accepted and rejected candidates

        Raises:
            EmbeddingProviderMismatchError: Vectors come from different providers
            DeadlineExceeded: The run budget ran out at a checkpoint
        """
        deadline = deadline or Deadline.unbounded()
        result = ClusteringResult(total_signals=len(feature_vectors))

        if not feature_vectors:
            result.warnings.append("No feature vectors to cluster")
            return result

        result.embedding_provider = self._check_single_provider(feature_vectors)

        ids = [fv.signal_id for fv in feature_vectors]
        if len(set(ids)) != len(ids):
            raise ValueError("Duplicate signal ids in clustering input")

        if len(feature_vectors) < self.min_cluster_size:
            result.warnings.append(
                f"{len(feature_vectors)} signals is below min_cluster_size={self.min_cluster_size}"
            )
            return result

        # Sort for deterministic ordering
        ordered = sorted(feature_vectors, key=lambda fv: fv.signal_id)
        inputs = _ClusterInputs.from_vectors(ordered)

        # Stage 1: Domain partition
        start = time.perf_counter()
        labels = self._run_density_stage(inputs.matrix, deadline, result)
        clusters, noise = _groups_from_labels(labels)
        result.noise_signal_ids = [inputs.signal_ids[i] for i in noise]
        result.stage_metrics["domain_partition"] = {
            "method": "kmeans" if result.degraded else "hdbscan",
            "clusters": len(clusters),
            "noise": len(noise),
            "duration_ms": _elapsed_ms(start),
        }
        deadline.check("domain_partition")

        # Stage 2: Semantic refinement
        start = time.perf_counter()
        clusters, splits, merges = self._semantic_refinement(clusters, inputs, deadline)
        result.stage_metrics["semantic_refinement"] = {
            "clusters": len(clusters),
            "splits": splits,
            "merges": merges,
            "duration_ms": _elapsed_ms(start),
        }
        deadline.check("semantic_refinement")

        # Stage 3: Executive optimization
        start = time.perf_counter()
        clusters, stage3_metrics = self._executive_optimization(clusters, noise, inputs, deadline)

        for index, members in enumerate(clusters):
            candidate = self.evaluate_candidate(
                index=index,
                signal_ids=[inputs.signal_ids[i] for i in members],
                vectors=inputs.matrix[members],
                confidences=inputs.confidences[members],
                root_causes=[inputs.root_causes[i] for i in members],
                business_impacts=inputs.business_impacts[members],
            )
            if candidate.accepted:
                result.clusters.append(candidate)
            else:
                result.rejected.append(candidate)

            result.cluster_size_distribution[candidate.size] = (
                result.cluster_size_distribution.get(candidate.size, 0) + 1
            )

        stage3_metrics.update(
            clusters=len(clusters),
            accepted=len(result.clusters),
            rejected=len(result.rejected),
            duration_ms=_elapsed_ms(start),
        )
        result.stage_metrics["executive_optimization"] = stage3_metrics

        if len(clusters) < MIN_TARGET_CLUSTERS:
            result.warnings.append(
                f"Only {len(clusters)} clusters from {len(ordered)} signals "
                f"(need {MIN_TARGET_CLUSTERS * self.min_cluster_size} for {MIN_TARGET_CLUSTERS})"
            )
        if not result.clusters:
            result.warnings.append("No cluster passed the hotspot quality gate")

        self._log_clustering_results(result)

        return result

    def _check_single_provider(self, feature_vectors: Sequence[FeatureVector]) -> str:
        providers = sorted({fv.embedding_provider for fv in feature_vectors})
        if len(providers) > 1:
            raise EmbeddingProviderMismatchError(
                f"Refusing to cluster vectors from multiple embedding providers: {providers}"
            )
        dims = {fv.dimensions for fv in feature_vectors}
        if len(dims) > 1:
            raise EmbeddingProviderMismatchError(
                f"Feature vectors have inconsistent dimensions: {sorted(dims)}"
            )
        return providers[0]

    # =========================================================================
    # Stage 1: Domain partition
    # =========================================================================

    def _run_density_stage(
        self,
        matrix: np.ndarray,
        deadline: Deadline,
        result: ClusteringResult,
    ) -> np.ndarray:
        """HDBSCAN within its budget share, else KMeans (recorded as degraded)."""
        remaining = deadline.remaining()
        stage_budget = None if remaining is None else remaining * DENSITY_STAGE_BUDGET_FRACTION

        try:
            return self._density_partition(matrix, timeout=stage_budget)
        except multiprocessing.TimeoutError:
            reason = f"Density clustering exceeded its {stage_budget:.2f}s budget"
        except Exception as e:
            logger.warning(f"Density clustering failed: {e}", exc_info=True)
            reason = f"Density clustering failed: {e}"

        logger.warning(f"{reason}; degrading to centroid-based grouping")
        result.degraded = True
        result.degradation_reason = reason
        result.method = METHOD_FALLBACK
        return self._centroid_partition(matrix)

    def _density_partition(self, matrix: np.ndarray, timeout: Optional[float] = None) -> np.ndarray:
        """
        HDBSCAN over the precomputed cosine distance matrix.

        Inputs of at least worker_min_signals rows with a timeout run in a
        worker process that is terminated when the timeout passes. Smaller
        inputs run inline; HDBSCAN over a few hundred precomputed distances
        finishes in milliseconds.

        Returns:
            Array of labels, -1 for noise

        Raises:
            multiprocessing.TimeoutError: worker did not finish within timeout

        Performance Notes:
            - Memory: O(n^2) for the distance matrix; fine for a few hundred signals
        """
        distance = np.clip(1.0 - cosine_similarity(matrix), 0.0, 2.0)
        distance = (distance + distance.T) / 2.0
        np.fill_diagonal(distance, 0.0)

        args = (distance, self.min_cluster_size, min(self.min_samples, len(matrix)))
        if timeout is not None and len(matrix) >= self.worker_min_signals:
            labels = run_with_timeout(hdbscan_labels, args, timeout)
        else:
            labels = hdbscan_labels(*args)

        logger.debug(
            f"Density clustering: {len(matrix)} signals -> "
            f"{len(set(labels) - {-1})} clusters, {int(np.sum(labels == -1))} noise"
        )
        return labels

    def _centroid_partition(self, matrix: np.ndarray) -> np.ndarray:
        """KMeans on L2-normalized vectors (approximates cosine grouping)."""
        n_clusters = max(1, min(self.target_cluster_count, len(matrix) // self.min_cluster_size))
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0.0] = 1.0
        model = KMeans(n_clusters=n_clusters, n_init=10, random_state=0)
        return model.fit_predict(matrix / norms)

    # =========================================================================
    # Stage 2: Semantic refinement
    # =========================================================================

    def _semantic_refinement(
        self,
        clusters: List[List[int]],
        inputs: _ClusterInputs,
        deadline: Deadline,
    ) -> Tuple[List[List[int]], int, int]:
        """Split incoherent clusters, then merge near-duplicates."""
        space = inputs.refine_matrix
        splits = 0

        queue = list(clusters)
        refined: List[List[int]] = []
        while queue:
            deadline.check("semantic_refinement")
            members = queue.pop(0)
            if (
                len(members) >= 2 * self.min_cluster_size
                and pairwise_cohesion(space[members]) < self.cohesion_floor
            ):
                parts = self._seam_split(members, space, 2)
                if len(parts) == 2:
                    queue.extend(parts)
                    splits += 1
                    continue
            refined.append(members)

        merges = 0
        while len(refined) > 1:
            deadline.check("semantic_refinement")
            best: Optional[Tuple[float, int, int]] = None
            centroids = [_centroid(space[c]) for c in refined]
            for i in range(len(refined)):
                for j in range(i + 1, len(refined)):
                    if len(refined[i]) + len(refined[j]) > MAX_MERGED_CLUSTER_SIZE:
                        continue
                    similarity = _cosine(centroids[i], centroids[j])
                    if similarity > self.merge_threshold and (best is None or similarity > best[0]):
                        best = (similarity, i, j)
            if best is None:
                break
            _, i, j = best
            refined[i] = sorted(refined[i] + refined[j])
            del refined[j]
            merges += 1

        return _canonical(refined), splits, merges

    # =========================================================================
    # Stage 3: Executive optimization
    # =========================================================================

    def _executive_optimization(
        self,
        clusters: List[List[int]],
        noise: List[int],
        inputs: _ClusterInputs,
        deadline: Deadline,
    ) -> Tuple[List[List[int]], Dict[str, Any]]:
        """Assign noise, absorb undersized clusters, force the count into [4, target]."""
        space = inputs.matrix
        clusters = [list(c) for c in clusters]
        metrics: Dict[str, Any] = {
            "noise_attached": 0,
            "undersized_absorbed": 0,
            "merges": 0,
            "splits": 0,
            "rebalanced": False,
        }

        # Noise joins the nearest cluster; membership scoring flags it as outlier if far
        if noise:
            if not clusters:
                clusters = [sorted(noise)]
            else:
                centroids = [_centroid(space[c]) for c in clusters]
                for idx in noise:
                    nearest = int(np.argmax([_cosine(space[idx], c) for c in centroids]))
                    clusters[nearest].append(idx)
            metrics["noise_attached"] = len(noise)
        clusters = _canonical(clusters)

        # Undersized clusters (possible after KMeans fallback) merge into their nearest neighbour
        while len(clusters) > 1:
            deadline.check("executive_optimization")
            undersized = [i for i, c in enumerate(clusters) if len(c) < self.min_cluster_size]
            if not undersized:
                break
            victim = min(undersized, key=lambda i: (len(clusters[i]), clusters[i][0]))
            clusters = self._merge_into_nearest(clusters, victim, space)
            metrics["undersized_absorbed"] += 1

        # Too many: merge smallest / least impactful into nearest centroid
        while len(clusters) > self.target_cluster_count:
            deadline.check("executive_optimization")
            victim = min(
                range(len(clusters)),
                key=lambda i: (
                    len(clusters[i]),
                    float(np.mean(inputs.business_impacts[clusters[i]])),
                    clusters[i][0],
                ),
            )
            clusters = self._merge_into_nearest(clusters, victim, space)
            metrics["merges"] += 1

        # Too few: split the largest at its weakest seam (only with enough signals)
        total = sum(len(c) for c in clusters)
        if total >= MIN_TARGET_CLUSTERS * self.min_cluster_size:
            while len(clusters) < MIN_TARGET_CLUSTERS:
                deadline.check("executive_optimization")
                splittable = [c for c in clusters if len(c) >= 2 * self.min_cluster_size]
                if splittable:
                    largest = max(splittable, key=lambda c: (len(c), -c[0]))
                    clusters.remove(largest)
                    clusters.extend(self._seam_split(largest, space, 2))
                    clusters = _canonical(clusters)
                    metrics["splits"] += 1
                else:
                    # No single cluster can be split without going undersized
                    pooled = sorted(i for c in clusters for i in c)
                    clusters = _canonical(self._seam_split(pooled, space, MIN_TARGET_CLUSTERS))
                    metrics["rebalanced"] = True
                    break

        return _canonical(clusters), metrics

    def _merge_into_nearest(
        self,
        clusters: List[List[int]],
        victim: int,
        space: np.ndarray,
    ) -> List[List[int]]:
        victim_centroid = _centroid(space[clusters[victim]])
        others = [i for i in range(len(clusters)) if i != victim]
        nearest = max(
            others,
            key=lambda i: (_cosine(victim_centroid, _centroid(space[clusters[i]])), -i),
        )
        merged = [list(c) for c in clusters]
        merged[nearest] = merged[nearest] + merged[victim]
        del merged[victim]
        return _canonical(merged)

    def _seam_split(self, members: List[int], space: np.ndarray, parts: int) -> List[List[int]]:
        """
        Split members into `parts` groups along their weakest internal seam.

        Seeds are the most distant pair; members are ordered by how much closer
        they sit to one seed than the other and cut at the natural boundary,
        clamped so every group keeps at least min_cluster_size members.
        """
        members = sorted(members)
        if parts <= 1 or len(members) < parts * self.min_cluster_size:
            return [members]

        distance = 1.0 - cosine_similarity(space[members])
        seed_a, seed_b = divmod(int(np.argmax(distance)), len(members))
        seam = distance[:, seed_a] - distance[:, seed_b]  # <= 0: closer to seed_a

        order = sorted(range(len(members)), key=lambda k: (float(seam[k]), members[k]))
        natural_cut = int(np.sum(seam <= 0.0))

        left_parts = parts // 2
        right_parts = parts - left_parts
        cut = min(
            max(natural_cut, left_parts * self.min_cluster_size),
            len(members) - right_parts * self.min_cluster_size,
        )

        left = sorted(members[k] for k in order[:cut])
        right = sorted(members[k] for k in order[cut:])
        return self._seam_split(left, space, left_parts) + self._seam_split(right, space, right_parts)

    # =========================================================================
    # Gate
    # =========================================================================

    def evaluate_candidate(
        self,
        index: int,
        signal_ids: List[str],
        vectors: np.ndarray,
        confidences: Sequence[float],
        root_causes: Sequence[str],
        business_impacts: Sequence[float],
    ) -> CandidateCluster:
        """
        Score members and apply the hotspot gate to one finished cluster.

        hotspot_potential = cluster confidence x cohesion, where cohesion is
        the mean membership strength. A cluster made of outliers therefore
        cannot pass, and neither can one padded with other root causes.
        """
        scored = self.membership_classifier.score_cluster(signal_ids, vectors)
        confidence, dominant = cluster_confidence(confidences, root_causes)
        potential = round(confidence * scored.cohesion, 6)

        candidate = CandidateCluster(
            index=index,
            signal_ids=list(signal_ids),
            memberships=scored.memberships,
            cohesion=scored.cohesion,
            confidence=confidence,
            hotspot_potential=potential,
            dominant_root_cause=dominant,
            business_impact=round(float(np.mean(business_impacts)), 6) if len(business_impacts) else 0.0,
        )

        if candidate.size < self.min_cluster_size:
            candidate.rejection_reason = (
                f"size {candidate.size} below min_cluster_size {self.min_cluster_size}"
            )
        elif potential <= self.quality_threshold:
            candidate.rejection_reason = (
                f"hotspot potential {potential:.3f} does not exceed "
                f"quality threshold {self.quality_threshold}"
            )
        else:
            candidate.accepted = True

        return candidate

    def _log_clustering_results(self, result: ClusteringResult) -> None:
        """Log clustering results summary."""
        logger.info(
            f"Hybrid clustering complete: {result.total_signals} signals -> "
            f"{len(result.candidates)} candidates, {len(result.clusters)} accepted "
            f"(method={result.method}, provider={result.embedding_provider})"
        )

        if result.degraded:
            logger.warning(f"Clustering degraded: {result.degradation_reason}")

        for candidate in result.rejected:
            logger.info(f"  Candidate {candidate.index} rejected: {candidate.rejection_reason}")

        if result.cluster_size_distribution:
            sizes = sorted(result.cluster_size_distribution.items())
            logger.debug(f"  Size distribution: {dict(sizes)}")


# ============================================================================
# Helpers
# ============================================================================


def hdbscan_labels(distance: np.ndarray, min_cluster_size: int, min_samples: int) -> np.ndarray:
    """
    HDBSCAN labels for a precomputed distance matrix.

    allow_single_cluster keeps one dominant dense group (a batch that is
    mostly one root cause) as a cluster instead of dissolving it into noise.
    """
    model = HDBSCAN(
        min_cluster_size=min_cluster_size,
        min_samples=min_samples,
        metric="precomputed",
        allow_single_cluster=True,
    )
    return model.fit_predict(distance)


def run_with_timeout(func, args: Tuple, timeout: float):
    """
    Run func(*args) in a single worker process.

    The worker is terminated as soon as the call returns, fails or times out,
    so an overrunning computation never keeps consuming CPU after the caller
    has moved on. func and args must be picklable.

    Raises:
        multiprocessing.TimeoutError: func did not finish within timeout
    """
    pool = multiprocessing.get_context("spawn").Pool(processes=1)
    try:
        return pool.apply_async(func, args).get(timeout=timeout)
    finally:
        pool.terminate()
        pool.join()


def cluster_confidence(
    confidences: Sequence[float],
    root_causes: Sequence[str],
) -> Tuple[float, str]:
    """
    Classification confidence of a cluster and its dominant root cause.

    Mean member confidence scaled by the share of members carrying the
    dominant root cause; ties go to the earlier root cause in ROOT_CAUSES.
    """
    if not len(confidences) or not root_causes:
        return 0.0, "UNKNOWN"
    counts = Counter(root_causes)
    dominant = min(counts, key=lambda rc: (-counts[rc], ROOT_CAUSES.index(rc)))
    agreement = counts[dominant] / len(root_causes)
    return round(float(np.mean(confidences)) * agreement, 6), dominant


def pairwise_cohesion(vectors: np.ndarray) -> float:
    """Mean off-diagonal cosine similarity; 1.0 for fewer than two vectors."""
    n = len(vectors)
    if n < 2:
        return 1.0
    similarity = cosine_similarity(vectors)
    return float((similarity.sum() - np.trace(similarity)) / (n * (n - 1)))


def _groups_from_labels(labels: np.ndarray) -> Tuple[List[List[int]], List[int]]:
    groups: Dict[int, List[int]] = {}
    noise: List[int] = []
    for idx, label in enumerate(labels):
        if label < 0:
            noise.append(idx)
        else:
            groups.setdefault(int(label), []).append(idx)
    return _canonical(list(groups.values())), noise


def _canonical(clusters: List[List[int]]) -> List[List[int]]:
    """Sort members and order clusters by their first member."""
    return sorted((sorted(c) for c in clusters if c), key=lambda c: c[0])


def _centroid(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return (vectors / norms).mean(axis=0)


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
