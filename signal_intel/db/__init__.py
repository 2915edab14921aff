"""Database module for signal intelligence."""

from .connection import get_connection, init_db
from .hotspot_storage import (
    HotspotStorage,
    InMemoryHotspotStorage,
    PostgresHotspotStorage,
    StorageError,
)
from .models import ClusteringOptions, Hotspot, Membership, Signal, SignalAnnotation

__all__ = [
    "ClusteringOptions",
    "Hotspot",
    "HotspotStorage",
    "InMemoryHotspotStorage",
    "Membership",
    "PostgresHotspotStorage",
    "Signal",
    "SignalAnnotation",
    "StorageError",
    "get_connection",
    "init_db",
]
