"""
Health Check Endpoints

Liveness for load balancers and a readiness check that reports whether the
signal store is reachable and holds enough signals to generate hotspots.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from signal_intel.api.deps import get_storage
from signal_intel.db.hotspot_storage import HotspotStorage, StorageError
from signal_intel.services.hybrid_clustering_service import DEFAULT_MIN_CLUSTER_SIZE


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime


class ReadinessResponse(BaseModel):
    """Signal store reachability and annotation coverage."""
    ready: bool
    can_generate: bool = False
    signals: int = 0
    annotated_signals: int = 0
    hotspots: int = 0
    latency_ms: Optional[float] = None
    error: Optional[str] = None


@router.get("/health", response_model=HealthResponse)
def health_check():
    """
    Basic health check endpoint.

    Returns 200 OK if the API is running. Does not touch storage.
    """
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc))


@router.get("/health/ready", response_model=ReadinessResponse)
def readiness_check(storage: HotspotStorage = Depends(get_storage)):
    """
    Count signals, annotated signals and stored hotspots.

    can_generate is true once the store holds at least one cluster's worth
    of signals. An unreachable store reports ready=false rather than failing.
    """
    try:
        start = time.time()
        signal_ids = [s.id for s in storage.list_signals()]
        annotated = storage.get_annotations(signal_ids) if signal_ids else {}
        hotspots = storage.list_hotspots()
        latency = (time.time() - start) * 1000
    except StorageError as e:
        logger.warning(f"Readiness check failed: {e}")
        return ReadinessResponse(ready=False, error=str(e))

    return ReadinessResponse(
        ready=True,
        can_generate=len(signal_ids) >= DEFAULT_MIN_CLUSTER_SIZE,
        signals=len(signal_ids),
        annotated_signals=len(annotated),
        hotspots=len(hotspots),
        latency_ms=round(latency, 2),
    )
