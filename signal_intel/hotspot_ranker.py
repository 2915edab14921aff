#!/usr/bin/env python3
"""
Hotspot Ranker.

Computes a single rank score (0-1) for an accepted cluster from six named
sub-scores, plus the same accept/reject gate the clustering engine applies.
Invocable standalone to re-rank stored hotspots.

Usage:
    from signal_intel.hotspot_ranker import HotspotRanker, RankInput

    ranker = HotspotRanker()
    rank = ranker.rank(RankInput(signals=[...], confidence=0.85, cohesion=0.9))
    # rank.rank_score, rank.sub_scores, rank.breakdown
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from signal_intel.db.models import SEVERITY_ORDINAL, Signal

# ============================================================================
# RANKING WEIGHTS - business policy, must sum to 1.0
# ============================================================================

RANK_WEIGHTS: Dict[str, float] = {
    "severity": 0.25,
    "volume": 0.20,
    "confidence": 0.20,
    "cohesion": 0.15,
    "business_impact": 0.10,
    "recency": 0.10,
}

VOLUME_SATURATION = 10  # members at which the volume score reaches 1.0
RECENCY_WINDOW_DAYS = 7
IMPACT_TAG = "impact"

# Gate (mirrors the clustering engine defaults)
DEFAULT_MIN_CLUSTER_SIZE = 3
DEFAULT_QUALITY_THRESHOLD = 0.7

MAX_SEVERITY_ORDINAL = max(SEVERITY_ORDINAL.values())

# ============================================================================
# DATA CLASSES
# ============================================================================


@dataclass
class RankInput:
    """A cluster (or stored hotspot) to rank."""

    signals: List[Signal] = field(default_factory=list)
    confidence: float = 0.0  # mean classification confidence of members
    cohesion: float = 0.0  # mean membership strength


@dataclass
class HotspotRank:
    """Output from ranking."""

    rank_score: float
    sub_scores: Dict[str, float]
    breakdown: Dict[str, float]  # weighted contribution per sub-score
    accepted: bool
    rejection_reason: Optional[str] = None


# ============================================================================
# RANKER CLASS
# ============================================================================


class HotspotRanker:
    """Weighted multi-factor ranking of hotspot candidates."""

    def __init__(
        self,
        weights: Optional[Dict[str, float]] = None,
        min_cluster_size: int = DEFAULT_MIN_CLUSTER_SIZE,
        quality_threshold: float = DEFAULT_QUALITY_THRESHOLD,
    ):
        weights = dict(RANK_WEIGHTS if weights is None else weights)
        if set(weights) != set(RANK_WEIGHTS):
            raise ValueError(f"Rank weights must name exactly {sorted(RANK_WEIGHTS)}")
        if not math.isclose(sum(weights.values()), 1.0, abs_tol=1e-9):
            raise ValueError(f"Rank weights must sum to 1.0, got {sum(weights.values())}")
        self.weights = weights
        self.min_cluster_size = min_cluster_size
        self.quality_threshold = quality_threshold

    def rank(self, input_data: RankInput, now: Optional[datetime] = None) -> HotspotRank:
        """
        Rank one cluster.

        Args:
            input_data: Member signals plus cluster confidence and cohesion
            now: Reference time for recency (defaults to current UTC time)

        Returns:
            HotspotRank with the composite score and per-factor breakdown
        """
        now = now or datetime.now(timezone.utc)
        signals = input_data.signals

        sub_scores = {
            "severity": self.severity_score(signals),
            "volume": self.volume_score(signals),
            "confidence": _clamp(input_data.confidence),
            "cohesion": _clamp(input_data.cohesion),
            "business_impact": self.business_impact_score(signals),
            "recency": self.recency_score(signals, now),
        }
        breakdown = {
            name: round(self.weights[name] * score, 6) for name, score in sub_scores.items()
        }
        rank_score = round(_clamp(sum(breakdown.values())), 6)

        accepted, reason = self.gate(len(signals), input_data.confidence, input_data.cohesion)

        return HotspotRank(
            rank_score=rank_score,
            sub_scores={name: round(score, 6) for name, score in sub_scores.items()},
            breakdown=breakdown,
            accepted=accepted,
            rejection_reason=reason,
        )

    def gate(self, size: int, confidence: float, cohesion: float) -> tuple[bool, Optional[str]]:
        """Accept when size >= min_cluster_size and confidence x cohesion > threshold."""
        if size < self.min_cluster_size:
            return False, f"size {size} below min_cluster_size {self.min_cluster_size}"
        potential = confidence * cohesion
        if potential <= self.quality_threshold:
            return False, (
                f"hotspot potential {potential:.3f} does not exceed "
                f"quality threshold {self.quality_threshold}"
            )
        return True, None

    # ------------------------------------------------------------------------
    # Sub-scores (each in [0, 1])
    # ------------------------------------------------------------------------

    @staticmethod
    def severity_score(signals: List[Signal]) -> float:
        """Average member severity, LOW=0.25 .. CRITICAL=1.0."""
        if not signals:
            return 0.0
        total = sum(s.severity_ordinal for s in signals)
        return total / (len(signals) * MAX_SEVERITY_ORDINAL)

    @staticmethod
    def volume_score(signals: List[Signal]) -> float:
        return min(1.0, len(signals) / VOLUME_SATURATION)

    @staticmethod
    def business_impact_score(signals: List[Signal]) -> float:
        """Fraction of members carrying metrics or an impact tag."""
        if not signals:
            return 0.0
        with_impact = sum(1 for s in signals if s.metrics or s.tags.get(IMPACT_TAG))
        return with_impact / len(signals)

    @staticmethod
    def recency_score(signals: List[Signal], now: datetime) -> float:
        """Mean linear decay over the recency window; older signals contribute 0."""
        if not signals:
            return 0.0
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        total = 0.0
        for s in signals:
            created = s.created_at
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            age_days = max(0.0, (now - created).total_seconds() / 86400)
            total += max(0.0, 1.0 - age_days / RECENCY_WINDOW_DAYS)
        return total / len(signals)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
