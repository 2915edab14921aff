"""
Membership scoring for finished clusters.

Strength is a member's cosine similarity to the cluster centroid, clamped
to [0, 1]. Labels use fixed cutoffs, not percentiles:

    strength >= 0.8        core
    0.5 <= strength < 0.8  peripheral
    strength < 0.5         outlier (is_outlier=True)

Strengths are independent per-signal confidences; they are not
renormalized within a cluster.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from signal_intel.db.models import Membership

logger = logging.getLogger(__name__)

CORE_THRESHOLD = 0.8
OUTLIER_THRESHOLD = 0.5


@dataclass
class ClusterMembership:
    """Membership scores for every member of one cluster."""

    memberships: List[Membership] = field(default_factory=list)
    cohesion: float = 0.0  # mean membership strength

    @property
    def core_count(self) -> int:
        return sum(1 for m in self.memberships if m.label == "core")

    @property
    def outlier_count(self) -> int:
        return sum(1 for m in self.memberships if m.is_outlier)


class MembershipClassifier:
    """Scores and labels cluster members by similarity to the centroid."""

    def __init__(
        self,
        core_threshold: float = CORE_THRESHOLD,
        outlier_threshold: float = OUTLIER_THRESHOLD,
    ):
        if not 0.0 <= outlier_threshold <= core_threshold <= 1.0:
            raise ValueError(
                "Thresholds must satisfy 0 <= outlier_threshold <= core_threshold <= 1"
            )
        self.core_threshold = core_threshold
        self.outlier_threshold = outlier_threshold

    def label(self, strength: float) -> str:
        if strength >= self.core_threshold:
            return "core"
        if strength >= self.outlier_threshold:
            return "peripheral"
        return "outlier"

    @staticmethod
    def centroid(vectors: np.ndarray) -> np.ndarray:
        """Mean of the L2-normalized member vectors."""
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0.0] = 1.0
        return (vectors / norms).mean(axis=0)

    @staticmethod
    def strengths(vectors: np.ndarray, centroid: np.ndarray) -> np.ndarray:
        """Cosine similarity of each vector to the centroid, clamped to [0, 1]."""
        centroid_norm = np.linalg.norm(centroid)
        if centroid_norm == 0.0:
            return np.zeros(len(vectors))
        norms = np.linalg.norm(vectors, axis=1)
        norms[norms == 0.0] = np.inf  # zero vectors get strength 0
        similarity = (vectors @ centroid) / (norms * centroid_norm)
        return np.clip(similarity, 0.0, 1.0)

    def score_cluster(
        self,
        signal_ids: Sequence[str],
        vectors: np.ndarray,
        hotspot_id: Optional[str] = None,
    ) -> ClusterMembership:
        """
        Score every member of a cluster.

        Args:
            signal_ids: Member ids, aligned with vectors rows
            vectors: Member feature vectors (n_members, dims)
            hotspot_id: Optional hotspot id to stamp on each membership

        Returns:
            ClusterMembership with per-signal memberships and cohesion
        """
        if len(signal_ids) == 0:
            return ClusterMembership()
        if len(signal_ids) != len(vectors):
            raise ValueError(
                f"Got {len(signal_ids)} signal ids for {len(vectors)} vectors"
            )

        vectors = np.asarray(vectors, dtype=np.float64)
        strengths = self.strengths(vectors, self.centroid(vectors))

        memberships = []
        for signal_id, strength in zip(signal_ids, strengths):
            strength = round(float(strength), 6)
            label = self.label(strength)
            memberships.append(
                Membership(
                    hotspot_id=hotspot_id,
                    signal_id=signal_id,
                    membership_strength=strength,
                    is_outlier=label == "outlier",
                    label=label,
                )
            )

        cohesion = round(float(np.mean([m.membership_strength for m in memberships])), 6)
        return ClusterMembership(memberships=memberships, cohesion=cohesion)
