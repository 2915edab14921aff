#!/usr/bin/env python3
"""
Feature Engineer for classified signals.

Converts a signal + its Classification into a FeatureVector with named,
fixed-dimension sub-components and a weighted concatenation used for
clustering.

Usage:
    from signal_intel.feature_engineer import FeatureEngineer

    engineer = FeatureEngineer(HashedEmbeddingProvider())
    vector = engineer.build(signal, classification)

Clustering vector layout (block weights apply to the L2-normalized block):
    domain     (0.6)  root-cause one-hot + root-cause soft scores
    semantic   (0.3)  text embedding
    executive  (0.1)  org context, urgency, text metrics, business scalars

Each block is scaled by sqrt(weight), so the cosine similarity of two
clustering vectors is the weight-averaged cosine of their blocks.
Feature generation is deterministic.
"""

import logging
import math
import re
from typing import Dict, List, Optional

import numpy as np

from signal_intel.db.models import (
    DEPARTMENTS,
    ROOT_CAUSES,
    Classification,
    FeatureVector,
    Signal,
)
from signal_intel.services.embedding_service import EmbeddingProvider

logger = logging.getLogger(__name__)

FEATURE_VERSION = "v1"

# ============================================================================
# BLOCK WEIGHTS
# ============================================================================

DOMAIN_BLOCK_WEIGHT = 0.6
SEMANTIC_BLOCK_WEIGHT = 0.3
EXECUTIVE_BLOCK_WEIGHT = 0.1

# ============================================================================
# LOOKUP TABLES
# ============================================================================

# Soft root-cause scores: winner vs. every other category
ROOT_CAUSE_WINNER_SCORE = 0.8
ROOT_CAUSE_BASELINE_SCORE = 0.1

SEVERITY_SCORES = {
    "CRITICAL": 1.0,
    "HIGH": 0.75,
    "MEDIUM": 0.5,
    "LOW": 0.25,
}

# Damped copies of the urgency scalar
URGENCY_DECAY_FACTORS = (1.0, 0.8, 0.6)

ROOT_CAUSE_IMPACT = {
    "QUALITY": 0.9,
    "RESOURCE": 0.8,
    "PROCESS": 0.7,
    "TECHNOLOGY": 0.7,
    "COMMUNICATION": 0.6,
    "TRAINING": 0.5,
    "UNKNOWN": 0.3,
}

ACTIONABILITY_BY_ROOT_CAUSE = {
    "TRAINING": 0.9,
    "PROCESS": 0.8,
    "COMMUNICATION": 0.8,
    "TECHNOLOGY": 0.7,
    "QUALITY": 0.7,
    "RESOURCE": 0.6,
    "UNKNOWN": 0.4,
}
ACTIONABILITY_PROJECT_MGMT_BONUS = 0.2

STRATEGIC_PRIORITY_BY_ROOT_CAUSE = {
    "QUALITY": 0.8,
    "RESOURCE": 0.7,
    "PROCESS": 0.6,
    "TECHNOLOGY": 0.6,
    "COMMUNICATION": 0.5,
    "TRAINING": 0.5,
    "UNKNOWN": 0.3,
}
STRATEGIC_ENTERPRISE_CLIENT_BONUS = 0.2
STRATEGIC_CRITICAL_URGENCY_BONUS = 0.1

# Domain-specific vocabulary for terminology density
DOMAIN_TERMS = [
    "construction", "building", "design", "architecture", "structural",
    "foundation", "concrete", "steel", "permits", "inspection",
    "compliance", "code", "safety", "client", "project",
    "schedule", "budget", "quality", "rework", "coordination",
]

# Complexity proxy: words per sentence relative to this many words
COMPLEXITY_WORDS_PER_SENTENCE = 10

_WORD_PATTERN = re.compile(r"[a-z0-9]+")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


# ============================================================================
# ENGINEER
# ============================================================================


class FeatureEngineer:
    """Builds FeatureVectors from classified signals."""

    def __init__(self, embedding_provider: EmbeddingProvider):
        self.embedding_provider = embedding_provider

    def build(
        self,
        signal: Signal,
        classification: Classification,
        embedding: Optional[List[float]] = None,
        embedding_provider: Optional[str] = None,
        quality_override: Optional[float] = None,
    ) -> FeatureVector:
        """
        Build the feature vector for one signal.

        Args:
            signal: The signal
            classification: Its classification
            embedding: Precomputed semantic embedding (computed here when None)
            embedding_provider: Identity of the provider that produced `embedding`
            quality_override: Replaces the inherited classification confidence

        Returns:
            FeatureVector
        """
        if embedding is None:
            embedding = self.embedding_provider.embed_text(signal.text)
            embedding_provider = self.embedding_provider.identity
        elif embedding_provider is None:
            embedding_provider = self.embedding_provider.identity

        context = classification.business_context
        text = signal.text

        domain_vector = self.domain_vector(classification.root_cause)
        root_cause_scores = self.root_cause_scores(classification.root_cause)
        org_context_vector = self.org_context_vector(signal, context.department_priority)
        urgency_vector = self.urgency_vector(context.urgency_level)
        terminology_density = self.terminology_density(text)
        complexity = self.complexity(text)
        business_impact = self.business_impact(signal.severity, classification.root_cause)
        actionability = self.actionability(classification.root_cause, context.department_priority)
        strategic_priority = self.strategic_priority(
            classification.root_cause, context.client_tier, context.urgency_level
        )

        domain_block = domain_vector + [root_cause_scores[rc] for rc in ROOT_CAUSES]
        executive_parts = (
            org_context_vector,
            urgency_vector,
            [terminology_density, complexity],
            [business_impact, actionability, strategic_priority],
        )
        executive_scaled = scale_block(
            [x for part in executive_parts for x in part], EXECUTIVE_BLOCK_WEIGHT
        )

        # Split the scaled executive block back around the semantic block
        offsets = np.cumsum([len(p) for p in executive_parts])[:-1]
        org_s, urgency_s, scalars_s, business_s = np.split(np.asarray(executive_scaled), offsets)

        values = (
            scale_block(domain_block, DOMAIN_BLOCK_WEIGHT)
            + org_s.tolist()
            + urgency_s.tolist()
            + scale_block(embedding, SEMANTIC_BLOCK_WEIGHT)
            + scalars_s.tolist()
            + business_s.tolist()
        )

        quality = classification.confidence if quality_override is None else quality_override

        return FeatureVector(
            signal_id=signal.id,
            domain_vector=domain_vector,
            root_cause_scores=root_cause_scores,
            org_context_vector=org_context_vector,
            urgency_vector=urgency_vector,
            semantic_embedding=list(embedding),
            terminology_density=terminology_density,
            complexity=complexity,
            business_impact=business_impact,
            actionability=actionability,
            strategic_priority=strategic_priority,
            values=[round(v, 10) for v in values],
            quality_score=quality,
            embedding_provider=embedding_provider,
            feature_version=FEATURE_VERSION,
        )

    # ------------------------------------------------------------------------
    # Sub-vectors
    # ------------------------------------------------------------------------

    @staticmethod
    def domain_vector(root_cause: str) -> List[float]:
        return [1.0 if rc == root_cause else 0.0 for rc in ROOT_CAUSES]

    @staticmethod
    def root_cause_scores(root_cause: str) -> Dict[str, float]:
        return {
            rc: ROOT_CAUSE_WINNER_SCORE if rc == root_cause else ROOT_CAUSE_BASELINE_SCORE
            for rc in ROOT_CAUSES
        }

    @staticmethod
    def org_context_vector(signal: Signal, department_priority: str) -> List[float]:
        """Department one-hot + presence indicators for department/team/category."""
        department_one_hot = [1.0 if d == department_priority else 0.0 for d in DEPARTMENTS]
        presence = [
            1.0 if signal.department else 0.0,
            1.0 if signal.team else 0.0,
            1.0 if signal.category else 0.0,
        ]
        return department_one_hot + presence

    @staticmethod
    def urgency_vector(urgency_level: str) -> List[float]:
        score = SEVERITY_SCORES.get(urgency_level, SEVERITY_SCORES["MEDIUM"])
        return [round(score * f, 6) for f in URGENCY_DECAY_FACTORS]

    @staticmethod
    def terminology_density(text: str) -> float:
        """Fraction of DOMAIN_TERMS present in the text."""
        words = set(_WORD_PATTERN.findall((text or "").lower()))
        found = sum(1 for term in DOMAIN_TERMS if term in words)
        return min(1.0, found / len(DOMAIN_TERMS))

    @staticmethod
    def complexity(text: str) -> float:
        """Word count / (sentence count x 10), capped at 1."""
        words = len((text or "").split())
        if words == 0:
            return 0.0
        sentences = len([s for s in _SENTENCE_SPLIT.split(text) if s.strip()]) or 1
        return min(1.0, words / (sentences * COMPLEXITY_WORDS_PER_SENTENCE))

    @staticmethod
    def business_impact(severity: str, root_cause: str) -> float:
        severity_impact = SEVERITY_SCORES.get(severity, SEVERITY_SCORES["MEDIUM"])
        return round((severity_impact + ROOT_CAUSE_IMPACT[root_cause]) / 2, 6)

    @staticmethod
    def actionability(root_cause: str, department_priority: str) -> float:
        score = ACTIONABILITY_BY_ROOT_CAUSE[root_cause]
        if department_priority == "PROJECT_MGMT":
            score += ACTIONABILITY_PROJECT_MGMT_BONUS
        return round(min(1.0, score), 6)

    @staticmethod
    def strategic_priority(root_cause: str, client_tier: str, urgency_level: str) -> float:
        score = STRATEGIC_PRIORITY_BY_ROOT_CAUSE[root_cause]
        if client_tier == "ENTERPRISE":
            score += STRATEGIC_ENTERPRISE_CLIENT_BONUS
        if urgency_level == "CRITICAL":
            score += STRATEGIC_CRITICAL_URGENCY_BONUS
        return round(min(1.0, score), 6)


def scale_block(values: List[float], weight: float) -> List[float]:
    """L2-normalize a block and scale it by sqrt(weight); zero blocks stay zero."""
    arr = np.asarray(values, dtype=np.float64)
    norm = np.linalg.norm(arr)
    if norm == 0.0:
        return arr.tolist()
    return (arr / norm * math.sqrt(weight)).tolist()
