"""
Hotspot formatting - titles, summaries and linked entities.

All hotspot prose is template based so that titles are stable across runs
(hotspots are upserted by title).

Format:
- Title: "{Department} {Root-cause theme}: {Recurring keyword}"
- Summary: counts, severity mix, confidence/cohesion, recommended action
- Linked entities: tag values and org references shared by >= 2 members
"""

import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Set

from signal_intel.db.models import LinkedEntity, Signal

ROOT_CAUSE_THEMES = {
    "PROCESS": "Process Breakdown",
    "RESOURCE": "Resource Constraint",
    "COMMUNICATION": "Communication Gap",
    "TECHNOLOGY": "Technology Disruption",
    "TRAINING": "Skills Gap",
    "QUALITY": "Quality Failure",
    "UNKNOWN": "Emerging Issue",
}

DEPARTMENT_LABELS = {
    "STRUCTURAL": "Structural",
    "ARCHITECTURAL": "Architectural",
    "MEP": "MEP",
    "PROJECT_MGMT": "Project Management",
    "QC": "Quality Control",
    "CLIENT": "Client-Facing",
}

EXECUTIVE_ACTION_TEMPLATES = {
    "PROCESS": "Review the approval and hand-off workflow and remove the blocking step.",
    "RESOURCE": "Rebalance staffing or budget allocation for the affected teams.",
    "COMMUNICATION": "Set a single coordination channel and response owner with stakeholders.",
    "TECHNOLOGY": "Stabilize the affected tools and confirm file/version compatibility.",
    "TRAINING": "Schedule targeted training and pair junior staff with a mentor.",
    "QUALITY": "Add a review checkpoint before submission and track rework causes.",
    "UNKNOWN": "Triage the member signals to establish a root cause.",
}

MIN_KEYWORD_LENGTH = 4
MIN_RECURRENCE = 2  # keyword / entity must appear in this many members
MAX_LINKED_ENTITIES = 5
ORG_REFERENCE_FIELDS = ("department", "team", "category")

STOPWORDS = frozenset(
    """
    about above after again against also among because been before being below
    between both cannot could does doing down during each from further have
    having here into itself just more most needs once only other over same
    should some still such than that their them then there these they this
    those through under until very were what when where which while will with
    would your
    """.split()
)

_TOKEN_PATTERN = re.compile(r"[a-z][a-z0-9\-]+")


def recurring_keyword(signals: Iterable[Signal]) -> Optional[str]:
    """
    Most frequent title keyword shared by at least two members.

    Counted once per signal; ties resolve alphabetically.
    """
    counts: Counter = Counter()
    for signal in signals:
        tokens = {
            t for t in _TOKEN_PATTERN.findall((signal.title or "").lower())
            if len(t) >= MIN_KEYWORD_LENGTH and t not in STOPWORDS
        }
        counts.update(tokens)

    candidates = [(token, n) for token, n in counts.items() if n >= MIN_RECURRENCE]
    if not candidates:
        return None
    token, _ = min(candidates, key=lambda item: (-item[1], item[0]))
    return token


def build_title(
    root_cause: str,
    department: Optional[str],
    signals: List[Signal],
) -> str:
    """Executive title from dominant department, root-cause theme and keyword."""
    theme = ROOT_CAUSE_THEMES.get(root_cause, ROOT_CAUSE_THEMES["UNKNOWN"])
    label = DEPARTMENT_LABELS.get(department or "")
    title = f"{label} {theme}" if label else theme

    keyword = recurring_keyword(signals)
    if keyword:
        title = f"{title}: {keyword.replace('-', ' ').title()}"
    return title


def unique_title(title: str, used: Set[str]) -> str:
    """Append " (2)", " (3)", ... until the title is unused in this run."""
    candidate = title
    suffix = 2
    while candidate in used:
        candidate = f"{title} ({suffix})"
        suffix += 1
    used.add(candidate)
    return candidate


def build_summary(
    root_cause: str,
    signals: List[Signal],
    confidence: float,
    cohesion: float,
    linked_entities: Optional[List[LinkedEntity]] = None,
) -> str:
    """
    Narrative summary for a hotspot.

    Args:
        root_cause: Dominant root cause of the members
        signals: Member signals
        confidence: Mean classification confidence
        cohesion: Mean membership strength
        linked_entities: Recurring entities to mention

    Returns:
        Plain-text summary
    """
    theme = ROOT_CAUSE_THEMES.get(root_cause, ROOT_CAUSE_THEMES["UNKNOWN"]).lower()
    severity_counts = Counter(s.severity for s in signals)
    severity_mix = ", ".join(
        f"{severity_counts[level]} {level.lower()}"
        for level in ("CRITICAL", "HIGH", "MEDIUM", "LOW")
        if severity_counts[level]
    )

    lines = [
        f"{len(signals)} related signals point to a {theme} ({severity_mix}).",
        f"Classification confidence {confidence:.0%}, cluster cohesion {cohesion:.0%}.",
    ]
    if linked_entities:
        names = ", ".join(e.name for e in linked_entities)
        lines.append(f"Recurring references: {names}.")
    lines.append(f"Recommended action: {EXECUTIVE_ACTION_TEMPLATES.get(root_cause, EXECUTIVE_ACTION_TEMPLATES['UNKNOWN'])}")
    return " ".join(lines)


def extract_linked_entities(signals: Iterable[Signal]) -> List[LinkedEntity]:
    """
    Tag values and org references recurring in at least two members.

    Sorted by count (desc) then name; at most MAX_LINKED_ENTITIES.
    """
    counts: Counter = Counter()
    for signal in signals:
        seen = set()
        for key, value in signal.tags.items():
            if isinstance(value, (str, int, float)) and not isinstance(value, bool) and str(value).strip():
                seen.add((str(key), str(value).strip()))
        for field_name in ORG_REFERENCE_FIELDS:
            value = getattr(signal, field_name)
            if value and value.strip():
                seen.add((field_name, value.strip()))
        counts.update(seen)

    recurring = [
        LinkedEntity(type=entity_type, name=name, count=n)
        for (entity_type, name), n in counts.items()
        if n >= MIN_RECURRENCE
    ]
    recurring.sort(key=lambda e: (-e.count, e.name, e.type))
    return recurring[:MAX_LINKED_ENTITIES]


def dominant_value(values: Iterable[Optional[str]]) -> Optional[str]:
    """Most common non-empty, non-UNKNOWN value; ties resolve alphabetically."""
    counts = Counter(v for v in values if v and v != "UNKNOWN")
    if not counts:
        return None
    return min(counts, key=lambda v: (-counts[v], v))


def format_hotspot_text(
    root_cause: str,
    departments: List[Optional[str]],
    signals: List[Signal],
    confidence: float,
    cohesion: float,
    used_titles: Set[str],
) -> Dict[str, object]:
    """Title (unique within used_titles), summary and linked entities for one cluster."""
    entities = extract_linked_entities(signals)
    title = unique_title(build_title(root_cause, dominant_value(departments), signals), used_titles)
    return {
        "title": title,
        "summary": build_summary(root_cause, signals, confidence, cohesion, entities),
        "linked_entities": entities,
    }
