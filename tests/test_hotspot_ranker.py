"""
Tests for HotspotRanker.

Sub-scores are checked individually, then the weighted composite and the
accept/reject gate.
"""

from datetime import datetime, timedelta

import pytest

from signal_intel.hotspot_ranker import (
    RANK_WEIGHTS,
    HotspotRanker,
    RankInput,
)

from conftest import NOW, make_signal


@pytest.fixture
def ranker():
    return HotspotRanker()


def _signals(n, severity="HIGH", age_days=1.0, **kwargs):
    return [
        make_signal(f"s{i}", "Approval delay", severity=severity, created_at=NOW - timedelta(days=age_days), **kwargs)
        for i in range(n)
    ]


class TestWeights:
    """Rank weights are business policy and must sum to 1."""

    def test_default_weights_sum_to_one(self):
        assert sum(RANK_WEIGHTS.values()) == pytest.approx(1.0)
        assert RANK_WEIGHTS["severity"] == 0.25

    def test_rejects_weights_not_summing_to_one(self):
        weights = dict(RANK_WEIGHTS, severity=0.5)
        with pytest.raises(ValueError, match="sum to 1.0"):
            HotspotRanker(weights=weights)

    def test_rejects_unknown_factor(self):
        weights = {"severity": 0.5, "volume": 0.5}
        with pytest.raises(ValueError, match="must name exactly"):
            HotspotRanker(weights=weights)

    def test_accepts_custom_weights(self):
        weights = {name: 0.0 for name in RANK_WEIGHTS}
        weights["volume"] = 1.0

        rank = HotspotRanker(weights=weights).rank(RankInput(_signals(5), 0.9, 0.9), now=NOW)

        assert rank.rank_score == pytest.approx(0.5)


class TestSubScores:

    def test_severity_score(self):
        signals = _signals(2, severity="CRITICAL") + _signals(2, severity="LOW")
        assert HotspotRanker.severity_score(signals) == pytest.approx((4 + 4 + 1 + 1) / 16)

    def test_volume_saturates(self):
        assert HotspotRanker.volume_score(_signals(3)) == pytest.approx(0.3)
        assert HotspotRanker.volume_score(_signals(15)) == 1.0

    def test_business_impact_from_metrics_or_tag(self):
        signals = [
            make_signal("a", metrics={"cost": 12000}),
            make_signal("b", tags={"impact": "schedule"}),
            make_signal("c"),
            make_signal("d", tags={"impact": ""}),
        ]
        assert HotspotRanker.business_impact_score(signals) == pytest.approx(0.5)

    @pytest.mark.parametrize("age_days,expected", [
        (0.0, 1.0),
        (3.5, 0.5),
        (7.0, 0.0),
        (30.0, 0.0),
    ])
    def test_recency_linear_decay(self, age_days, expected):
        signals = _signals(1, age_days=age_days)
        assert HotspotRanker.recency_score(signals, NOW) == pytest.approx(expected)

    def test_recency_future_signal_capped(self):
        """A clock-skewed future timestamp counts as brand new, not above 1."""
        signals = _signals(1, age_days=-2.0)
        assert HotspotRanker.recency_score(signals, NOW) == 1.0

    def test_recency_accepts_naive_datetimes(self):
        signal = make_signal("a", created_at=datetime(2024, 6, 9, 12, 0))
        naive_now = datetime(2024, 6, 10, 12, 0)

        assert HotspotRanker.recency_score([signal], naive_now) == pytest.approx(6 / 7)

    def test_empty_signals(self):
        assert HotspotRanker.severity_score([]) == 0.0
        assert HotspotRanker.business_impact_score([]) == 0.0
        assert HotspotRanker.recency_score([], NOW) == 0.0


class TestRank:
    """Weighted composite."""

    def test_composite_matches_breakdown(self, ranker):
        signals = _signals(5, severity="HIGH", age_days=3.5, metrics={"delay_days": 4})

        rank = ranker.rank(RankInput(signals, confidence=0.9, cohesion=0.8), now=NOW)

        assert rank.sub_scores == {
            "severity": 0.75,
            "volume": 0.5,
            "confidence": 0.9,
            "cohesion": 0.8,
            "business_impact": 1.0,
            "recency": 0.5,
        }
        expected = 0.25 * 0.75 + 0.2 * 0.5 + 0.2 * 0.9 + 0.15 * 0.8 + 0.1 * 1.0 + 0.1 * 0.5
        assert rank.rank_score == pytest.approx(expected)
        assert sum(rank.breakdown.values()) == pytest.approx(rank.rank_score)
        assert rank.accepted is True

    def test_rank_score_in_unit_interval(self, ranker):
        signals = _signals(20, severity="CRITICAL", age_days=0.0, metrics={"cost": 1})

        rank = ranker.rank(RankInput(signals, confidence=1.0, cohesion=1.0), now=NOW)

        assert rank.rank_score == pytest.approx(1.0)

    def test_out_of_range_inputs_clamped(self, ranker):
        rank = ranker.rank(RankInput(_signals(3), confidence=1.4, cohesion=-0.2), now=NOW)

        assert rank.sub_scores["confidence"] == 1.0
        assert rank.sub_scores["cohesion"] == 0.0

    def test_more_severe_cluster_ranks_higher(self, ranker):
        low = ranker.rank(RankInput(_signals(4, severity="LOW"), 0.9, 0.9), now=NOW)
        high = ranker.rank(RankInput(_signals(4, severity="CRITICAL"), 0.9, 0.9), now=NOW)

        assert high.rank_score > low.rank_score


class TestGate:
    """Accept when size >= min_cluster_size and confidence x cohesion > threshold."""

    def test_accepts_confident_cohesive_cluster(self, ranker):
        assert ranker.gate(3, 0.9, 0.9) == (True, None)

    def test_rejects_small_cluster(self, ranker):
        accepted, reason = ranker.gate(2, 1.0, 1.0)

        assert accepted is False
        assert "min_cluster_size" in reason

    def test_rejects_low_potential(self, ranker):
        accepted, reason = ranker.gate(5, 0.8, 0.8)

        assert accepted is False
        assert "0.640" in reason

    def test_threshold_is_strict(self):
        ranker = HotspotRanker(quality_threshold=0.5)
        assert ranker.gate(3, 1.0, 0.5)[0] is False

    def test_rank_reports_gate(self, ranker):
        rank = ranker.rank(RankInput(_signals(3), confidence=0.5, cohesion=0.5), now=NOW)

        assert rank.accepted is False
        assert rank.rejection_reason
