"""
PatternStore - persistence boundary for learned query patterns.

The learner depends on two operations only, upsert_pattern() and
find_similar(); get_pattern() and list_patterns() serve feedback and
reporting. Concrete backends live behind the PatternStore interface:
InMemoryPatternStore here, FilePatternStore in wallet_query.storage.
"""

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import numpy as np


@dataclass
class PatternRecord:
    """A learned mapping from a natural-language query shape to a plan."""

    id: str
    natural_query: str
    decomposed_query: dict[str, Any]  # plan_to_dict(plan, include_provenance=False)
    embedding: list[float]
    query_hash: str
    created_at: datetime
    last_used_at: datetime
    variations: list[str] = field(default_factory=list)
    entity_shape: list[str] = field(default_factory=list)
    corrections: list[str] = field(default_factory=list)
    usage_count: int = 1
    success_count: int = 1
    success_rate: float = 1.0
    confidence: float = 0.5
    average_latency_ms: float | None = None
    intent: str | None = None
    active: bool = True
    merged_into: str | None = None
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "natural_query": self.natural_query,
            "decomposed_query": self.decomposed_query,
            "embedding": self.embedding,
            "query_hash": self.query_hash,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
            "variations": self.variations,
            "entity_shape": self.entity_shape,
            "corrections": self.corrections,
            "usage_count": self.usage_count,
            "success_count": self.success_count,
            "success_rate": self.success_rate,
            "confidence": self.confidence,
            "average_latency_ms": self.average_latency_ms,
            "intent": self.intent,
            "active": self.active,
            "merged_into": self.merged_into,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PatternRecord":
        return cls(
            id=data["id"],
            natural_query=data["natural_query"],
            decomposed_query=data["decomposed_query"],
            embedding=[float(v) for v in data["embedding"]],
            query_hash=data["query_hash"],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_used_at=datetime.fromisoformat(data["last_used_at"]),
            variations=list(data.get("variations", [])),
            entity_shape=list(data.get("entity_shape", [])),
            corrections=list(data.get("corrections", [])),
            usage_count=int(data.get("usage_count", 1)),
            success_count=int(data.get("success_count", 1)),
            success_rate=float(data.get("success_rate", 1.0)),
            confidence=float(data.get("confidence", 0.5)),
            average_latency_ms=data.get("average_latency_ms"),
            intent=data.get("intent"),
            active=bool(data.get("active", True)),
            merged_into=data.get("merged_into"),
            version=int(data.get("version", 1)),
        )


@dataclass(frozen=True)
class PatternMatch:
    record: PatternRecord
    similarity: float


class PatternStore(ABC):
    """
    Abstract base class for pattern persistence.

    Implementations raise ExternalStoreUnavailable when the backing store
    cannot be reached.
    """

    @abstractmethod
    def upsert_pattern(self, record: PatternRecord) -> PatternRecord:
        """
        Insert or replace a pattern record by id.

        Returns:
            The stored record
        """
        pass

    @abstractmethod
    def find_similar(
        self,
        embedding: list[float],
        top_k: int,
        min_similarity: float,
        min_confidence: float = 0.0,
        intent: str | None = None,
    ) -> list[PatternMatch]:
        """
        Nearest-neighbour search by cosine similarity over active records.

        Records below min_confidence, or learned under a different intent
        when one is given, are excluded before ranking.

        Returns:
            Up to top_k matches with similarity >= min_similarity, most
            similar first
        """
        pass

    @abstractmethod
    def get_pattern(self, pattern_id: str) -> PatternRecord | None:
        pass

    @abstractmethod
    def list_patterns(self) -> list[PatternRecord]:
        pass


def rank_by_similarity(
    records: list[PatternRecord],
    embedding: list[float],
    top_k: int,
    min_similarity: float,
    min_confidence: float = 0.0,
    intent: str | None = None,
) -> list[PatternMatch]:
    """Cosine-rank eligible records against an embedding (shared by store backends)."""
    query = np.asarray(embedding, dtype=float)
    query_norm = np.linalg.norm(query)
    candidates = [
        r
        for r in records
        if r.active
        and r.confidence >= min_confidence
        and (intent is None or r.intent == intent)
        and len(r.embedding) == len(query)
    ]
    if not candidates or query_norm == 0:
        return []

    matrix = np.asarray([r.embedding for r in candidates], dtype=float)
    norms = np.linalg.norm(matrix, axis=1) * query_norm
    norms[norms == 0] = np.inf
    similarities = matrix @ query / norms

    order = np.argsort(-similarities, kind="stable")
    matches = []
    for idx in order[:top_k]:
        similarity = float(similarities[idx])
        if similarity < min_similarity:
            break
        matches.append(PatternMatch(record=copy.deepcopy(candidates[idx]), similarity=similarity))
    return matches


class InMemoryPatternStore(PatternStore):
    """Process-local pattern store, safe for use from background threads."""

    def __init__(self) -> None:
        self._records: dict[str, PatternRecord] = {}
        self._lock = threading.Lock()

    def upsert_pattern(self, record: PatternRecord) -> PatternRecord:
        with self._lock:
            self._records[record.id] = copy.deepcopy(record)
        return record

    def find_similar(
        self,
        embedding: list[float],
        top_k: int,
        min_similarity: float,
        min_confidence: float = 0.0,
        intent: str | None = None,
    ) -> list[PatternMatch]:
        with self._lock:
            records = list(self._records.values())
        return rank_by_similarity(records, embedding, top_k, min_similarity, min_confidence, intent)

    def get_pattern(self, pattern_id: str) -> PatternRecord | None:
        with self._lock:
            record = self._records.get(pattern_id)
        return copy.deepcopy(record) if record is not None else None

    def list_patterns(self) -> list[PatternRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._records.values()]

    def __len__(self) -> int:
        return len(self._records)
