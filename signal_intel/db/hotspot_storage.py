"""
Storage for signals, derived annotations, hotspots and memberships.

The pipeline only talks to the HotspotStorage interface. Two backends:

- InMemoryHotspotStorage: thread-safe dicts, for tests and offline CLI runs
- PostgresHotspotStorage: psycopg2 against schema.sql

Write-back semantics:
- Hotspots are upserted by title; an existing hotspot keeps its id and status.
- Memberships are replaced per hotspot (delete then bulk insert), so
  re-running the same clustering never duplicates rows.
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor, execute_values

from signal_intel.db.connection import get_connection
from signal_intel.db.models import (
    Classification,
    FeatureVector,
    Hotspot,
    LinkedEntity,
    Membership,
    Signal,
    SignalAnnotation,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the backing store is unreachable or a write fails."""
    pass


def new_hotspot_id() -> str:
    return uuid.uuid4().hex


class HotspotStorage(ABC):
    """Interface the pipeline uses for all reads and write-back."""

    @abstractmethod
    def list_signals(self, signal_ids: Optional[Iterable[str]] = None) -> List[Signal]:
        """Signals ordered by id, optionally restricted to signal_ids."""

    @abstractmethod
    def save_annotation(self, annotation: SignalAnnotation) -> None:
        """Insert or replace the annotation for one signal."""

    @abstractmethod
    def get_annotations(self, signal_ids: Iterable[str]) -> Dict[str, SignalAnnotation]:
        """Existing annotations keyed by signal id (missing ids are omitted)."""

    @abstractmethod
    def upsert_hotspot(self, hotspot: Hotspot) -> Hotspot:
        """Insert or update by title; returns the stored hotspot with its id."""

    @abstractmethod
    def replace_memberships(self, hotspot_id: str, memberships: List[Membership]) -> int:
        """Delete the hotspot's memberships and insert the given ones. Returns count."""

    @abstractmethod
    def list_hotspots(self, status: Optional[str] = None) -> List[Hotspot]:
        """Hotspots ordered by rank_score desc, then title."""

    @abstractmethod
    def get_memberships(self, hotspot_id: str) -> List[Membership]:
        """Memberships of one hotspot ordered by strength desc, then signal id."""

    @abstractmethod
    def update_hotspot_rank(
        self,
        hotspot_id: str,
        rank_score: float,
        rank_breakdown: Dict[str, float],
    ) -> None:
        """Store a new rank score for an existing hotspot."""


def _sort_hotspots(hotspots: Iterable[Hotspot]) -> List[Hotspot]:
    return sorted(hotspots, key=lambda h: (-h.rank_score, h.title))


def _sort_memberships(memberships: Iterable[Membership]) -> List[Membership]:
    return sorted(memberships, key=lambda m: (-m.membership_strength, m.signal_id))


# =============================================================================
# In-memory backend
# =============================================================================


class InMemoryHotspotStorage(HotspotStorage):
    """Dict-backed storage. Safe to share between threads."""

    def __init__(self, signals: Optional[Iterable[Signal]] = None):
        self._lock = threading.Lock()
        self._signals: Dict[str, Signal] = {}
        self._annotations: Dict[str, SignalAnnotation] = {}
        self._hotspots: Dict[str, Hotspot] = {}  # id -> hotspot
        self._memberships: Dict[str, List[Membership]] = {}  # hotspot id -> rows
        if signals:
            self.add_signals(signals)

    def add_signals(self, signals: Iterable[Signal]) -> int:
        with self._lock:
            count = 0
            for signal in signals:
                self._signals[signal.id] = signal
                count += 1
            return count

    def list_signals(self, signal_ids: Optional[Iterable[str]] = None) -> List[Signal]:
        with self._lock:
            if signal_ids is None:
                selected = list(self._signals.values())
            else:
                selected = [self._signals[i] for i in set(signal_ids) if i in self._signals]
        return sorted(selected, key=lambda s: s.id)

    def save_annotation(self, annotation: SignalAnnotation) -> None:
        with self._lock:
            self._annotations[annotation.signal_id] = annotation.model_copy(deep=True)

    def get_annotations(self, signal_ids: Iterable[str]) -> Dict[str, SignalAnnotation]:
        with self._lock:
            return {
                i: self._annotations[i].model_copy(deep=True)
                for i in signal_ids
                if i in self._annotations
            }

    def upsert_hotspot(self, hotspot: Hotspot) -> Hotspot:
        with self._lock:
            existing = next((h for h in self._hotspots.values() if h.title == hotspot.title), None)
            if existing is not None:
                stored = hotspot.model_copy(update={"id": existing.id, "status": existing.status})
            else:
                stored = hotspot.model_copy(update={"id": hotspot.id or new_hotspot_id()})
            self._hotspots[stored.id] = stored
            return stored.model_copy()

    def replace_memberships(self, hotspot_id: str, memberships: List[Membership]) -> int:
        with self._lock:
            if hotspot_id not in self._hotspots:
                raise StorageError(f"Unknown hotspot {hotspot_id}")
            self._memberships[hotspot_id] = [
                m.model_copy(update={"hotspot_id": hotspot_id}) for m in memberships
            ]
            return len(memberships)

    def list_hotspots(self, status: Optional[str] = None) -> List[Hotspot]:
        with self._lock:
            hotspots = [
                h.model_copy() for h in self._hotspots.values()
                if status is None or h.status == status
            ]
        return _sort_hotspots(hotspots)

    def get_memberships(self, hotspot_id: str) -> List[Membership]:
        with self._lock:
            rows = [m.model_copy() for m in self._memberships.get(hotspot_id, [])]
        return _sort_memberships(rows)

    def update_hotspot_rank(
        self,
        hotspot_id: str,
        rank_score: float,
        rank_breakdown: Dict[str, float],
    ) -> None:
        with self._lock:
            if hotspot_id not in self._hotspots:
                raise StorageError(f"Unknown hotspot {hotspot_id}")
            self._hotspots[hotspot_id] = self._hotspots[hotspot_id].model_copy(
                update={"rank_score": rank_score, "rank_breakdown": dict(rank_breakdown)}
            )


# =============================================================================
# PostgreSQL backend
# =============================================================================


class PostgresHotspotStorage(HotspotStorage):
    """psycopg2 storage against the tables in schema.sql."""

    def list_signals(self, signal_ids: Optional[Iterable[str]] = None) -> List[Signal]:
        sql = """
            SELECT id, title, description, severity, department, team, category,
                   tags, metrics, created_at
            FROM signals
        """
        params: tuple = ()
        if signal_ids is not None:
            sql += " WHERE id = ANY(%s)"
            params = (sorted(set(signal_ids)),)
        sql += " ORDER BY id"

        rows = self._fetch(sql, params)
        return [Signal(**row) for row in rows]

    def save_annotation(self, annotation: SignalAnnotation) -> None:
        sql = """
            INSERT INTO signal_annotations (
                signal_id, root_cause, confidence, embedding_provider,
                classification, feature_vector, processed_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (signal_id) DO UPDATE SET
                root_cause = EXCLUDED.root_cause,
                confidence = EXCLUDED.confidence,
                embedding_provider = EXCLUDED.embedding_provider,
                classification = EXCLUDED.classification,
                feature_vector = EXCLUDED.feature_vector,
                processed_at = EXCLUDED.processed_at
        """
        self._execute(sql, (
            annotation.signal_id,
            annotation.classification.root_cause,
            annotation.classification.confidence,
            annotation.feature_vector.embedding_provider,
            Json(annotation.classification.model_dump(mode="json")),
            Json(annotation.feature_vector.model_dump(mode="json")),
            annotation.processed_at,
        ))

    def get_annotations(self, signal_ids: Iterable[str]) -> Dict[str, SignalAnnotation]:
        ids = sorted(set(signal_ids))
        if not ids:
            return {}
        rows = self._fetch(
            """
            SELECT signal_id, classification, feature_vector, processed_at
            FROM signal_annotations
            WHERE signal_id = ANY(%s)
            """,
            (ids,),
        )
        # Schema validation at the storage boundary
        return {
            row["signal_id"]: SignalAnnotation(
                signal_id=row["signal_id"],
                classification=Classification.model_validate(_json(row["classification"])),
                feature_vector=FeatureVector.model_validate(_json(row["feature_vector"])),
                processed_at=row["processed_at"],
            )
            for row in rows
        }

    def upsert_hotspot(self, hotspot: Hotspot) -> Hotspot:
        sql = """
            INSERT INTO hotspots (
                id, title, summary, status, rank_score, confidence, cohesion,
                signal_count, root_cause, clustering_method, clustering_version,
                linked_entities, rank_breakdown, last_clustered_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (title) DO UPDATE SET
                summary = EXCLUDED.summary,
                rank_score = EXCLUDED.rank_score,
                confidence = EXCLUDED.confidence,
                cohesion = EXCLUDED.cohesion,
                signal_count = EXCLUDED.signal_count,
                root_cause = EXCLUDED.root_cause,
                clustering_method = EXCLUDED.clustering_method,
                clustering_version = EXCLUDED.clustering_version,
                linked_entities = EXCLUDED.linked_entities,
                rank_breakdown = EXCLUDED.rank_breakdown,
                last_clustered_at = EXCLUDED.last_clustered_at
            RETURNING id, status
        """
        params = (
            hotspot.id or new_hotspot_id(),
            hotspot.title,
            hotspot.summary,
            hotspot.status,
            hotspot.rank_score,
            hotspot.confidence,
            hotspot.cohesion,
            hotspot.signal_count,
            hotspot.root_cause,
            hotspot.clustering_method,
            hotspot.clustering_version,
            Json([e.model_dump(mode="json") for e in hotspot.linked_entities]),
            Json(hotspot.rank_breakdown),
            hotspot.last_clustered_at,
        )
        rows = self._fetch(sql, params)
        return hotspot.model_copy(update={"id": rows[0]["id"], "status": rows[0]["status"]})

    def replace_memberships(self, hotspot_id: str, memberships: List[Membership]) -> int:
        values = [
            (hotspot_id, m.signal_id, m.membership_strength, m.is_outlier, m.label)
            for m in memberships
        ]
        try:
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM hotspot_memberships WHERE hotspot_id = %s",
                        (hotspot_id,),
                    )
                    if values:
                        execute_values(
                            cur,
                            """
                            INSERT INTO hotspot_memberships (
                                hotspot_id, signal_id, membership_strength, is_outlier, label
                            ) VALUES %s
                            """,
                            values,
                        )
        except psycopg2.Error as e:
            raise StorageError(f"Failed to replace memberships for {hotspot_id}: {e}") from e

        logger.debug(f"Replaced {len(values)} memberships for hotspot {hotspot_id}")
        return len(values)

    def list_hotspots(self, status: Optional[str] = None) -> List[Hotspot]:
        sql = "SELECT * FROM hotspots"
        params: tuple = ()
        if status is not None:
            sql += " WHERE status = %s"
            params = (status,)
        sql += " ORDER BY rank_score DESC, title"

        rows = self._fetch(sql, params)
        return [
            Hotspot(
                **{
                    **row,
                    "linked_entities": [
                        LinkedEntity(**e) for e in _json(row["linked_entities"]) or []
                    ],
                    "rank_breakdown": _json(row["rank_breakdown"]) or {},
                }
            )
            for row in rows
        ]

    def get_memberships(self, hotspot_id: str) -> List[Membership]:
        rows = self._fetch(
            """
            SELECT hotspot_id, signal_id, membership_strength, is_outlier, label
            FROM hotspot_memberships
            WHERE hotspot_id = %s
            ORDER BY membership_strength DESC, signal_id
            """,
            (hotspot_id,),
        )
        return [Membership(**row) for row in rows]

    def update_hotspot_rank(
        self,
        hotspot_id: str,
        rank_score: float,
        rank_breakdown: Dict[str, float],
    ) -> None:
        self._execute(
            "UPDATE hotspots SET rank_score = %s, rank_breakdown = %s WHERE id = %s",
            (rank_score, Json(rank_breakdown), hotspot_id),
        )

    # -------------------------------------------------------------------------

    def _fetch(self, sql: str, params: tuple = ()) -> List[dict]:
        try:
            with get_connection() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(sql, params)
                    return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise StorageError(f"Query failed: {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> None:
        try:
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
        except psycopg2.Error as e:
            raise StorageError(f"Write failed: {e}") from e


def _json(value):
    """JSONB columns come back decoded; TEXT fallbacks come back as strings."""
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


__all__ = [
    "HotspotStorage",
    "InMemoryHotspotStorage",
    "PostgresHotspotStorage",
    "StorageError",
    "new_hotspot_id",
]
