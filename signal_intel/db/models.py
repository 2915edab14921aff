"""Pydantic models for signals, derived annotations, hotspots and memberships."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Root-cause categories, in tie-break priority order (PROCESS wins ties)
RootCause = Literal[
    "PROCESS", "RESOURCE", "COMMUNICATION",
    "TECHNOLOGY", "TRAINING", "QUALITY", "UNKNOWN"
]
ROOT_CAUSES: List[str] = [
    "PROCESS", "RESOURCE", "COMMUNICATION",
    "TECHNOLOGY", "TRAINING", "QUALITY", "UNKNOWN",
]

Severity = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
SEVERITY_ORDINAL = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}

UrgencyLevel = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]

ProjectPhase = Literal["DESIGN", "CONSTRUCTION", "CLOSEOUT", "UNKNOWN"]

DepartmentPriority = Literal[
    "STRUCTURAL", "ARCHITECTURAL", "MEP",
    "PROJECT_MGMT", "QC", "CLIENT", "UNKNOWN"
]
DEPARTMENTS: List[str] = [
    "STRUCTURAL", "ARCHITECTURAL", "MEP",
    "PROJECT_MGMT", "QC", "CLIENT", "UNKNOWN",
]

ClientTier = Literal["ENTERPRISE", "MID_MARKET", "RESIDENTIAL", "STANDARD"]

HotspotStatus = Literal["OPEN", "APPROVED", "IN_PROGRESS", "RESOLVED", "ARCHIVED"]

MembershipLabel = Literal["core", "peripheral", "outlier"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Signal(BaseModel):
    """A reported observation/issue. Immutable once ingested."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    title: str = ""
    description: str = ""
    severity: Severity = "MEDIUM"

    # Organizational context (optional references)
    department: Optional[str] = None
    team: Optional[str] = None
    category: Optional[str] = None

    tags: Dict[str, Any] = Field(default_factory=dict)
    metrics: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utc_now)

    @property
    def severity_ordinal(self) -> int:
        return SEVERITY_ORDINAL[self.severity]

    @property
    def text(self) -> str:
        """Title and description joined, as used for classification and embedding."""
        return f"{self.title or ''} {self.description or ''}".strip()


class BusinessContext(BaseModel):
    """Business context extracted alongside the root cause."""

    project_phase: ProjectPhase = "UNKNOWN"
    department_priority: DepartmentPriority = "UNKNOWN"
    urgency_level: UrgencyLevel = "MEDIUM"
    client_tier: ClientTier = "STANDARD"


class Classification(BaseModel):
    """Domain classifier output for one signal."""

    model_config = ConfigDict(from_attributes=True)

    signal_id: str
    root_cause: RootCause
    confidence: float = Field(ge=0.0, le=1.0)
    business_context: BusinessContext = Field(default_factory=BusinessContext)
    ai_enhancement_needed: bool = False

    # Diagnostics
    matched_terms: List[str] = Field(default_factory=list)
    rule_scores: Dict[str, float] = Field(default_factory=dict)
    strong_matches: int = 0
    weak_matches: int = 0

    classifier_version: str = "rules-v2"
    classified_at: datetime = Field(default_factory=utc_now)


# Fixed sub-vector dimensions (semantic embedding dimension depends on provider)
DOMAIN_VECTOR_DIMENSIONS = len(ROOT_CAUSES)
ORG_CONTEXT_DIMENSIONS = len(DEPARTMENTS) + 3  # department one-hot + has_department/team/category
URGENCY_VECTOR_DIMENSIONS = 3
SCALAR_METRIC_DIMENSIONS = 2  # terminology density, complexity
BUSINESS_SCALAR_DIMENSIONS = 3  # business impact, actionability, strategic priority


class FeatureVector(BaseModel):
    """Fixed-layout numeric representation of a classified signal."""

    model_config = ConfigDict(from_attributes=True)

    signal_id: str

    # Named sub-components
    domain_vector: List[float]
    root_cause_scores: Dict[str, float]
    org_context_vector: List[float]
    urgency_vector: List[float]
    semantic_embedding: List[float]
    terminology_density: float = Field(ge=0.0, le=1.0)
    complexity: float = Field(ge=0.0, le=1.0)
    business_impact: float = Field(ge=0.0, le=1.0)
    actionability: float = Field(ge=0.0, le=1.0)
    strategic_priority: float = Field(ge=0.0, le=1.0)

    # Weighted concatenation used for clustering
    values: List[float]

    # Quality metadata
    quality_score: float = Field(ge=0.0, le=1.0)
    embedding_provider: str
    feature_version: str = "v1"
    generated_at: datetime = Field(default_factory=utc_now)

    @field_validator("domain_vector")
    @classmethod
    def validate_domain_vector(cls, v: List[float]) -> List[float]:
        if len(v) != DOMAIN_VECTOR_DIMENSIONS:
            raise ValueError(
                f"Domain vector must have {DOMAIN_VECTOR_DIMENSIONS} dimensions, got {len(v)}"
            )
        return v

    @field_validator("org_context_vector")
    @classmethod
    def validate_org_context_vector(cls, v: List[float]) -> List[float]:
        if len(v) != ORG_CONTEXT_DIMENSIONS:
            raise ValueError(
                f"Org context vector must have {ORG_CONTEXT_DIMENSIONS} dimensions, got {len(v)}"
            )
        return v

    @field_validator("urgency_vector")
    @classmethod
    def validate_urgency_vector(cls, v: List[float]) -> List[float]:
        if len(v) != URGENCY_VECTOR_DIMENSIONS:
            raise ValueError(
                f"Urgency vector must have {URGENCY_VECTOR_DIMENSIONS} dimensions, got {len(v)}"
            )
        return v

    @field_validator("root_cause_scores")
    @classmethod
    def validate_root_cause_scores(cls, v: Dict[str, float]) -> Dict[str, float]:
        if set(v) != set(ROOT_CAUSES):
            raise ValueError("Root-cause scores must cover every root-cause category")
        return v

    @model_validator(mode="after")
    def validate_layout(self) -> "FeatureVector":
        expected = expected_vector_dimensions(len(self.semantic_embedding))
        if len(self.values) != expected:
            raise ValueError(
                f"Feature vector must have {expected} dimensions, got {len(self.values)}"
            )
        return self

    @property
    def dimensions(self) -> int:
        return len(self.values)


def expected_vector_dimensions(embedding_dimensions: int) -> int:
    """Total clustering-vector length for a given semantic embedding size."""
    return (
        DOMAIN_VECTOR_DIMENSIONS  # one-hot
        + len(ROOT_CAUSES)  # soft scores
        + ORG_CONTEXT_DIMENSIONS
        + URGENCY_VECTOR_DIMENSIONS
        + embedding_dimensions
        + SCALAR_METRIC_DIMENSIONS
        + BUSINESS_SCALAR_DIMENSIONS
    )


class SignalAnnotation(BaseModel):
    """Derived annotations attached to a signal by the pipeline."""

    signal_id: str
    classification: Classification
    feature_vector: FeatureVector
    processed_at: datetime = Field(default_factory=utc_now)


class LinkedEntity(BaseModel):
    """A named item recurring across a hotspot's member signals."""

    type: str
    name: str
    count: int = Field(ge=1)


class Hotspot(BaseModel):
    """Persisted, ranked grouping of related signals."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    title: str
    summary: str = ""
    status: HotspotStatus = "OPEN"
    rank_score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    cohesion: float = Field(default=0.0, ge=0.0, le=1.0)
    signal_count: int = Field(default=0, ge=0)
    root_cause: RootCause = "UNKNOWN"
    clustering_method: str = "hybrid-hdbscan"
    clustering_version: str = "v1"
    linked_entities: List[LinkedEntity] = Field(default_factory=list)
    rank_breakdown: Dict[str, float] = Field(default_factory=dict)
    last_clustered_at: datetime = Field(default_factory=utc_now)


class Membership(BaseModel):
    """Join between a signal and the hotspot it was grouped into."""

    model_config = ConfigDict(from_attributes=True)

    hotspot_id: Optional[str] = None
    signal_id: str
    membership_strength: float = Field(ge=0.0, le=1.0)
    is_outlier: bool
    label: MembershipLabel


# Executive target band for the number of clusters
MIN_TARGET_CLUSTERS = 4
MAX_TARGET_CLUSTERS = 6


class ClusteringOptions(BaseModel):
    """Options for a hotspot generation run. Invalid combinations are rejected."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    signal_ids: Optional[List[str]] = Field(
        default=None,
        description="Restrict the run to this subset of signal ids",
    )
    force_regenerate: bool = Field(
        default=False,
        description="Ignore existing classifications/feature vectors and rebuild them",
    )
    target_cluster_count: int = Field(
        default=5,
        ge=MIN_TARGET_CLUSTERS,
        le=MAX_TARGET_CLUSTERS,
        description="Upper bound for the executive cluster count (4-6)",
    )
    min_cluster_size: int = Field(default=3, ge=2, description="Minimum members per hotspot")
    min_samples: int = Field(default=2, ge=1, description="Density-stage min_samples")
    quality_threshold: float = Field(
        default=0.7,
        gt=0.0,
        le=1.0,
        description="confidence x cohesion must exceed this for a cluster to become a hotspot",
    )

    @field_validator("signal_ids")
    @classmethod
    def normalize_signal_ids(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        if not v:
            raise ValueError("signal_ids must not be empty when provided")
        return sorted(set(v))

    @model_validator(mode="after")
    def validate_density_parameters(self) -> "ClusteringOptions":
        if self.min_samples > self.min_cluster_size:
            raise ValueError(
                f"min_samples ({self.min_samples}) must not exceed "
                f"min_cluster_size ({self.min_cluster_size})"
            )
        return self
