"""
Hotspot Endpoints

Batch signal processing, hotspot generation, listing and re-ranking.

Generation always answers 200 with a logical `status` in the body
(SUCCESS, INSUFFICIENT_INPUT, DEGRADED, TIMEOUT, INTERNAL_ERROR); invalid
options are rejected with 422 before any work starts.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from signal_intel.api.deps import get_pipeline, get_storage
from signal_intel.api.schemas.hotspots import (
    GenerateHotspotsRequest,
    GenerateHotspotsResponse,
    HotspotListResponse,
    MembershipListResponse,
    ProcessSignalsRequest,
    ProcessSignalsResponse,
)
from signal_intel.db.hotspot_storage import HotspotStorage, StorageError
from signal_intel.pipeline import SignalIntelligencePipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["hotspots"])


def _storage_unavailable(e: StorageError) -> HTTPException:
    logger.error(f"Storage unavailable: {e}")
    return HTTPException(status_code=503, detail=f"Storage unavailable: {e}")


@router.post("/signals/process", response_model=ProcessSignalsResponse)
def process_signals(
    request: ProcessSignalsRequest,
    pipeline: SignalIntelligencePipeline = Depends(get_pipeline),
):
    """
    Classify and featurize signals.

    Per-signal failures are reported in `results`; they never fail the request.
    """
    try:
        signals = pipeline.storage.list_signals(request.signal_ids)
    except StorageError as e:
        raise _storage_unavailable(e)

    batch = pipeline.process_signals(signals, force_regenerate=request.force_regenerate)
    return ProcessSignalsResponse(**batch.to_dict())


@router.post("/hotspots/generate", response_model=GenerateHotspotsResponse)
def generate_hotspots(
    options: GenerateHotspotsRequest,
    pipeline: SignalIntelligencePipeline = Depends(get_pipeline),
):
    """Run the full pipeline and persist hotspots."""
    result = pipeline.generate_hotspots(options)
    return GenerateHotspotsResponse(**result.to_dict())


@router.get("/hotspots", response_model=HotspotListResponse)
def list_hotspots(
    status: Optional[str] = Query(default=None, description="Filter by hotspot status"),
    storage: HotspotStorage = Depends(get_storage),
):
    """Stored hotspots ordered by rank score."""
    try:
        hotspots = storage.list_hotspots(status=status)
    except StorageError as e:
        raise _storage_unavailable(e)
    return HotspotListResponse(hotspots=hotspots, total=len(hotspots))


@router.get("/hotspots/{hotspot_id}/memberships", response_model=MembershipListResponse)
def get_hotspot_memberships(
    hotspot_id: str,
    storage: HotspotStorage = Depends(get_storage),
):
    """Members of one hotspot ordered by membership strength."""
    try:
        if not any(h.id == hotspot_id for h in storage.list_hotspots()):
            raise HTTPException(status_code=404, detail=f"Hotspot {hotspot_id} not found")
        memberships = storage.get_memberships(hotspot_id)
    except StorageError as e:
        raise _storage_unavailable(e)
    return MembershipListResponse(
        hotspot_id=hotspot_id,
        memberships=memberships,
        total=len(memberships),
    )


@router.post("/hotspots/rerank", response_model=HotspotListResponse)
def rerank_hotspots(pipeline: SignalIntelligencePipeline = Depends(get_pipeline)):
    """Recompute rank scores for every stored hotspot."""
    try:
        hotspots = pipeline.rerank_hotspots()
    except StorageError as e:
        raise _storage_unavailable(e)
    return HotspotListResponse(hotspots=hotspots, total=len(hotspots))
