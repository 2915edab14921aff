"""
Domain Classifier

Assigns each signal a root-cause category and business context using weighted
keyword rules loaded from config/domain_rules.yaml.

Architecture:
- Input: signal title + description + optional metadata (department, severity)
- Rules: per root cause, keywords / strong indicators / contextual boosts / exclusions
- Output: Classification (root cause, confidence, business context, diagnostics)

The classifier is total: any input, including empty or malformed text,
produces a Classification. It never raises.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Pattern

import yaml

from signal_intel.db.models import (
    ROOT_CAUSES,
    SEVERITY_ORDINAL,
    BusinessContext,
    Classification,
    Signal,
)

logger = logging.getLogger(__name__)

# Configuration
DOMAIN_RULES_PATH = Path(__file__).parent / "config" / "domain_rules.yaml"
CLASSIFIER_VERSION = "rules-v2"

# Scoring
STRONG_INDICATOR_WEIGHT = 3.0
KEYWORD_WEIGHT = 1.0
EXCLUSION_PENALTY = 0.5
SCORE_DAMPING = 0.1  # score = w / (1 + 0.1w); one plain keyword ~0.91
COVERAGE_BONUS = 0.3  # up to 30% bonus for keyword coverage
STRONG_MATCH_SCORE = 0.7  # rules above this count as strong matches
MIN_RULE_SCORE = 0.4  # best rule below this falls back to UNKNOWN

# Confidence
CONFIDENCE_BASE = 0.85
CONFIDENCE_MARGIN_WEIGHT = 0.15
MAX_RULE_CONFIDENCE = 0.95  # rule-based output never claims certainty
AI_ENHANCEMENT_THRESHOLD = 0.6
DEFAULT_CONFIDENCE = 0.3  # empty/malformed/no-match text


def _term_pattern(term: str) -> Pattern:
    """
    Case-insensitive matcher anchored at a word start.

    The term may run on into a longer word, so "delay" matches "delays" and
    "delayed" while "cad" does not match "decade".
    """
    return re.compile(r"(?<![a-z0-9])" + re.escape(term.lower()), re.IGNORECASE)


@dataclass
class DomainRule:
    """One root-cause rule compiled from the rules file."""

    root_cause: str
    weight: float
    keywords: List[str]
    strong_indicators: List[str] = field(default_factory=list)
    contextual_boosts: Dict[str, float] = field(default_factory=dict)
    exclusions: List[str] = field(default_factory=list)
    description: str = ""


@dataclass
class RuleMatch:
    """Result of evaluating one rule against a text."""

    root_cause: str
    score: float  # clamped to [0, 1]
    evidence: float  # unclamped score, used for ranking and margin
    weight: float
    matched_terms: List[str] = field(default_factory=list)
    exclusions_triggered: List[str] = field(default_factory=list)


class DomainClassifier:
    """
    Rule-based root-cause classifier.

    Ties between rules resolve to the earlier root cause in ROOT_CAUSES
    (PROCESS first). Signals with confidence below AI_ENHANCEMENT_THRESHOLD
    are flagged ai_enhancement_needed; the flag is advisory only.
    """

    def __init__(self, rules_path: Path = DOMAIN_RULES_PATH, rules: Optional[dict] = None):
        """
        Initialize the classifier.

        Args:
            rules_path: YAML rules file (ignored when rules is given)
            rules: Already-parsed rules mapping, mainly for tests
        """
        config = rules if rules is not None else self._load_rules(rules_path)
        self.rules = self._build_rules(config.get("root_causes", {}))
        self.phase_rules = config.get("project_phases", {})
        self.department_rules = config.get("departments", {})
        self.urgency_rules = config.get("urgency_keywords", {})
        self.client_tier_rules = config.get("client_tiers", {})
        self._patterns: Dict[str, Pattern] = {}

    def _load_rules(self, path: Path) -> dict:
        """Load the domain rules YAML."""
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded domain rules with {len(config.get('root_causes', {}))} root causes")
        return config

    def _build_rules(self, raw_rules: dict) -> List[DomainRule]:
        rules = []
        for root_cause in ROOT_CAUSES:
            if root_cause not in raw_rules:
                continue
            raw = raw_rules[root_cause]
            if not raw.get("keywords"):
                raise ValueError(f"Rule {root_cause} has no keywords")
            rules.append(
                DomainRule(
                    root_cause=root_cause,
                    weight=float(raw.get("weight", 1.0)),
                    keywords=list(raw["keywords"]),
                    strong_indicators=list(raw.get("strong_indicators", [])),
                    contextual_boosts={
                        k: float(v) for k, v in (raw.get("contextual_boosts") or {}).items()
                    },
                    exclusions=list(raw.get("exclusions", [])),
                    description=raw.get("description", ""),
                )
            )
        unknown = set(raw_rules) - set(ROOT_CAUSES)
        if unknown:
            raise ValueError(f"Unknown root causes in rules: {sorted(unknown)}")
        return rules

    def _matches(self, term: str, text: str) -> bool:
        pattern = self._patterns.get(term)
        if pattern is None:
            pattern = _term_pattern(term)
            self._patterns[term] = pattern
        return pattern.search(text) is not None

    # =========================================================================
    # Public API
    # =========================================================================

    def classify(self, signal: Signal) -> Classification:
        """Classify a signal. Never raises."""
        return self.classify_text(
            signal.text,
            signal_id=signal.id,
            department=signal.department,
            severity=signal.severity,
        )

    def classify_text(
        self,
        text: Optional[str],
        signal_id: str = "",
        department: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> Classification:
        """
        Classify free text with optional metadata. Never raises.

        Returns:
            Classification; UNKNOWN with DEFAULT_CONFIDENCE for empty,
            malformed or unmatched text.
        """
        try:
            normalized = text.lower().strip() if isinstance(text, str) else ""

            context = self.extract_business_context(normalized, department, severity)

            if not normalized:
                return self._default_classification(signal_id, context)

            matches = [self._score_rule(normalized, rule) for rule in self.rules]
            return self._select_best(signal_id, matches, context)

        except Exception as e:
            logger.error(f"Classification failed for signal {signal_id}: {e}", exc_info=True)
            return self._default_classification(signal_id, BusinessContext())

    # =========================================================================
    # Rule scoring
    # =========================================================================

    def _score_rule(self, text: str, rule: DomainRule) -> RuleMatch:
        """Evaluate one rule: weighted matches, boosts, exclusions, coverage."""
        matched_terms: List[str] = []
        total_weight = 0.0

        for indicator in rule.strong_indicators:
            if self._matches(indicator, text):
                matched_terms.append(indicator)
                total_weight += STRONG_INDICATOR_WEIGHT

        boost = sum(
            factor - 1.0
            for context, factor in rule.contextual_boosts.items()
            if self._matches(context, text)
        )

        for keyword in rule.keywords:
            if self._matches(keyword, text):
                matched_terms.append(keyword)
                total_weight += KEYWORD_WEIGHT + boost

        exclusions = [e for e in rule.exclusions if self._matches(e, text)]
        total_weight *= EXCLUSION_PENALTY ** len(exclusions)

        base_score = total_weight * rule.weight
        evidence = 0.0
        if base_score > 0:
            coverage = min(1.0, len(matched_terms) / len(rule.keywords))
            evidence = base_score / (1.0 + base_score * SCORE_DAMPING) + coverage * COVERAGE_BONUS

        return RuleMatch(
            root_cause=rule.root_cause,
            score=min(1.0, evidence),
            evidence=evidence,
            weight=total_weight,
            matched_terms=matched_terms,
            exclusions_triggered=exclusions,
        )

    def _select_best(
        self,
        signal_id: str,
        matches: List[RuleMatch],
        context: BusinessContext,
    ) -> Classification:
        """
        Pick the winning rule; ties go to the higher-priority root cause.

        Rules are ranked on unclamped evidence so two rules that both reach a
        score of 1.0 are still told apart. Confidence is the winner's score,
        discounted by up to 15% as its margin over the runner-up shrinks.
        """
        ranked = sorted(
            matches,
            key=lambda m: (-round(m.evidence, 9), ROOT_CAUSES.index(m.root_cause)),
        )

        if not ranked or ranked[0].score < MIN_RULE_SCORE:
            return self._default_classification(signal_id, context)

        best = ranked[0]
        runner_up = ranked[1].evidence if len(ranked) > 1 else 0.0
        margin_ratio = (best.evidence - runner_up) / best.evidence

        confidence = best.score * (CONFIDENCE_BASE + CONFIDENCE_MARGIN_WEIGHT * margin_ratio)
        confidence = max(0.0, min(MAX_RULE_CONFIDENCE, confidence))

        return Classification(
            signal_id=signal_id,
            root_cause=best.root_cause,
            confidence=round(confidence, 6),
            business_context=context,
            ai_enhancement_needed=confidence < AI_ENHANCEMENT_THRESHOLD,
            matched_terms=best.matched_terms,
            rule_scores={m.root_cause: round(m.score, 6) for m in matches},
            strong_matches=sum(1 for m in matches if m.score > STRONG_MATCH_SCORE),
            weak_matches=sum(1 for m in matches if 0.0 < m.score <= STRONG_MATCH_SCORE),
            classifier_version=CLASSIFIER_VERSION,
        )

    def _default_classification(self, signal_id: str, context: BusinessContext) -> Classification:
        return Classification(
            signal_id=signal_id,
            root_cause="UNKNOWN",
            confidence=DEFAULT_CONFIDENCE,
            business_context=context,
            ai_enhancement_needed=True,
            rule_scores={rule.root_cause: 0.0 for rule in self.rules},
            classifier_version=CLASSIFIER_VERSION,
        )

    # =========================================================================
    # Business context
    # =========================================================================

    def extract_business_context(
        self,
        text: str,
        department: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> BusinessContext:
        return BusinessContext(
            project_phase=self.detect_project_phase(text),
            department_priority=self.detect_department(text, department),
            urgency_level=self.detect_urgency(text, severity),
            client_tier=self.detect_client_tier(text),
        )

    def detect_project_phase(self, text: str) -> str:
        for phase, keywords in self.phase_rules.items():
            if any(self._matches(k, text) for k in keywords):
                return phase
        return "UNKNOWN"

    def detect_department(self, text: str, metadata_department: Optional[str] = None) -> str:
        """Department from metadata first, then from content keywords."""
        if metadata_department and metadata_department.strip():
            normalized = metadata_department.strip().lower()
            for dept, keywords in self.department_rules.items():
                if normalized.replace(" ", "_") == dept.lower():
                    return dept
                if any(self._matches(k, normalized) for k in keywords):
                    return dept

        for dept, keywords in self.department_rules.items():
            if any(self._matches(k, text) for k in keywords):
                return dept
        return "UNKNOWN"

    def detect_urgency(self, text: str, severity: Optional[str] = None) -> str:
        """
        Declared severity, upgraded by urgency keywords.

        Keywords can raise the level but never lower it.
        """
        declared = severity.upper() if severity and severity.upper() in SEVERITY_ORDINAL else "MEDIUM"
        level = declared

        for tier, keywords in self.urgency_rules.items():
            if tier not in SEVERITY_ORDINAL:
                continue
            if SEVERITY_ORDINAL[tier] <= SEVERITY_ORDINAL[level]:
                continue
            if any(self._matches(k, text) for k in keywords):
                level = tier

        return level

    def detect_client_tier(self, text: str) -> str:
        for tier, keywords in self.client_tier_rules.items():
            if any(self._matches(k, text) for k in keywords):
                return tier
        return "STANDARD"

