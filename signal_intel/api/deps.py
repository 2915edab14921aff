"""
FastAPI Dependency Injection

Provides storage and the pipeline to API endpoints
using FastAPI's dependency injection system. Tests override get_storage /
get_pipeline with in-memory versions.
"""

from fastapi import Depends

from signal_intel.db.hotspot_storage import HotspotStorage, PostgresHotspotStorage
from signal_intel.pipeline import SignalIntelligencePipeline


def get_storage() -> HotspotStorage:
    """Hotspot storage backed by DATABASE_URL."""
    return PostgresHotspotStorage()


def get_pipeline(storage: HotspotStorage = Depends(get_storage)) -> SignalIntelligencePipeline:
    """Pipeline configured from the environment (embedding provider, budget, concurrency)."""
    return SignalIntelligencePipeline(storage=storage)
