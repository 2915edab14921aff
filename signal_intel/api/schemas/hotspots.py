"""
Hotspot API Schemas

Pydantic models for signal processing and hotspot generation requests and
responses. Generation options reuse ClusteringOptions so the API and the
pipeline validate the same way.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from signal_intel.db.models import ClusteringOptions, Hotspot, Membership

GenerateHotspotsRequest = ClusteringOptions


class ProcessSignalsRequest(BaseModel):
    """Request to classify and featurize signals."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    signal_ids: Optional[List[str]] = Field(
        default=None,
        description="Restrict processing to these signal ids (all signals when omitted)",
    )
    force_regenerate: bool = Field(
        default=False,
        description="Ignore existing annotations and rebuild them",
    )

    @field_validator("signal_ids")
    @classmethod
    def validate_signal_ids(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and not v:
            raise ValueError("signal_ids must not be empty when provided")
        return v


class SignalResult(BaseModel):
    """Per-signal processing outcome."""

    signal_id: str
    status: Literal["success", "error", "skipped"]
    duration_ms: int = 0
    root_cause: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[str] = None


class BatchStats(BaseModel):
    """Aggregate statistics over a processed batch."""

    root_cause_distribution: Dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0
    flagged_for_review: int = 0


class ProcessSignalsResponse(BaseModel):
    """Batch result summary."""

    total: int
    succeeded: int
    failed: int
    skipped: int
    embedding_provider: Optional[str] = None
    degraded: bool = False
    degradation_reason: Optional[str] = None
    duration_ms: int = 0
    stats: BatchStats
    results: List[SignalResult] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class RejectedCandidate(BaseModel):
    """A cluster that did not pass the hotspot gate."""

    signal_ids: List[str]
    hotspot_potential: float
    reason: Optional[str] = None


class ClusteringSummary(BaseModel):
    """Clustering diagnostics for a generation run."""

    method: str
    degraded: bool = False
    degradation_reason: Optional[str] = None
    candidates: int = 0
    accepted: int = 0
    rejected: List[RejectedCandidate] = Field(default_factory=list)
    noise_signal_ids: List[str] = Field(default_factory=list)
    stage_metrics: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class GenerateHotspotsResponse(BaseModel):
    """Result of a hotspot generation run. `status` carries the logical outcome."""

    status: Literal["SUCCESS", "INSUFFICIENT_INPUT", "DEGRADED", "TIMEOUT", "INTERNAL_ERROR"]
    hotspots: List[Hotspot] = Field(default_factory=list)
    memberships: Dict[str, List[Membership]] = Field(default_factory=dict)
    batch: Optional[ProcessSignalsResponse] = None
    clustering: Optional[ClusteringSummary] = None
    embedding_provider: Optional[str] = None
    failed_stage: Optional[str] = None
    persisted: bool = False
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    duration_ms: int = 0


class HotspotListResponse(BaseModel):
    """Stored hotspots ordered by rank."""

    hotspots: List[Hotspot]
    total: int


class MembershipListResponse(BaseModel):
    """Members of one hotspot ordered by strength."""

    hotspot_id: str
    memberships: List[Membership]
    total: int
