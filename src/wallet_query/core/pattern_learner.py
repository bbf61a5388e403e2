"""
PatternLearner - learns which question shapes map to which plans.

Owns every write to the pattern store. The decomposer only reads through
find_match().

Confidence Rule:
    confidence <- confidence + rate * weight * (target - confidence)
    with target 1.0 on a successful use or positive feedback and 0.0 on
    negative feedback, clamped below by confidence_floor. Records are never
    deleted; low-confidence and merged-away records simply stop being
    retrieved.
"""

import hashlib
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

import structlog

from wallet_query.core.embeddings import Embedder
from wallet_query.core.entities import EntityBag
from wallet_query.core.pattern_store import PatternMatch, PatternRecord, PatternStore
from wallet_query.core.query_config import QueryConfig
from wallet_query.core.query_plan import StructuredQuery, plan_to_dict

logger = structlog.get_logger()


def query_hash(text: str) -> str:
    """sha256 of the normalized query text, used for exact-duplicate merges."""
    normalized = " ".join(text.strip().split()).lower()
    return hashlib.sha256(normalized.encode()).hexdigest()


def shape_similarity(left: list[str], right: list[str]) -> float:
    """Jaccard similarity of two entity shapes (1.0 when both are empty)."""
    a, b = set(left), set(right)
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


@dataclass(frozen=True)
class PatternStats:
    pattern_id: str
    natural_query: str
    usage_count: int
    success_rate: float
    confidence: float
    variation_count: int
    correction_count: int
    last_used_at: datetime


class PatternLearner:
    """
    Learns and retrieves (query -> plan) patterns.

    Args:
        store: Pattern persistence backend
        embedder: Injected embedding capability
        config: Thresholds and learning rates
        clock: Returns the current time (overridable in tests)
    """

    def __init__(
        self,
        store: PatternStore,
        embedder: Embedder,
        config: QueryConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config or QueryConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # Reads

    def find_match(
        self,
        text: str,
        entities: EntityBag,
        intent: str | None = None,
        min_confidence: float | None = None,
    ) -> PatternMatch | None:
        """
        Nearest stored pattern for the text.

        The store only ranks active records learned under the same intent with
        confidence of at least min_confidence (never below
        retrieval_min_confidence), so a more similar but weaker record cannot
        hide a qualifying one. Candidates with a different entity shape are
        skipped. Equal similarities are broken by usage_count, then by
        last_used_at (most recent first).

        Raises:
            EmbeddingServiceError: If the text cannot be embedded
            ExternalStoreUnavailable: If the store cannot be searched
        """
        floor = max(self.config.retrieval_min_confidence, min_confidence or 0.0)
        embedding = self.embedder.embed(text)
        candidates = self.store.find_similar(
            embedding,
            top_k=self.config.retrieval_top_k,
            min_similarity=self.config.cache_similarity_threshold,
            min_confidence=floor,
            intent=intent,
        )
        shape = entities.shape()
        eligible = [
            match
            for match in candidates
            if shape_similarity(shape, match.record.entity_shape) >= self.config.entity_shape_threshold
        ]
        if not eligible:
            logger.debug("pattern_match_none", candidates=len(candidates), query=text)
            return None

        best = max(
            eligible,
            key=lambda m: (round(m.similarity, 6), m.record.usage_count, m.record.last_used_at),
        )
        logger.debug(
            "pattern_match_found",
            pattern_id=best.record.id,
            similarity=best.similarity,
            confidence=best.record.confidence,
        )
        return best

    # Writes

    def learn(
        self,
        text: str,
        entities: EntityBag,
        plan: StructuredQuery,
        result: Any = None,
        latency_ms: float | None = None,
    ) -> PatternRecord:
        """
        Store or reinforce the pattern for a successfully executed query.

        A stored record whose embedding is at least merge_similarity_threshold
        similar (or whose normalized text is identical) absorbs the new
        phrasing as a variation instead of a duplicate being created.

        Raises:
            EmbeddingServiceError: If the text cannot be embedded
            ExternalStoreUnavailable: If the store cannot be read or written
        """
        embedding = self.embedder.embed(text)
        text_hash = query_hash(text)
        plan_data = plan_to_dict(plan, include_provenance=False)

        existing = self._find_merge_target(embedding, text_hash, plan.source_intent)
        if existing is not None:
            record = self._reinforce(existing, text, latency_ms, success=True)
            record = self.store.upsert_pattern(record)
            logger.info(
                "pattern_merged",
                pattern_id=record.id,
                usage_count=record.usage_count,
                confidence=record.confidence,
            )
            return record

        now = self._clock()
        record = PatternRecord(
            id=str(uuid.uuid4()),
            natural_query=text,
            decomposed_query=plan_data,
            embedding=embedding,
            query_hash=text_hash,
            created_at=now,
            last_used_at=now,
            variations=[text],
            entity_shape=entities.shape(),
            intent=plan.source_intent,
            confidence=self.config.initial_confidence,
            average_latency_ms=latency_ms,
        )
        record = self.store.upsert_pattern(record)
        logger.info(
            "pattern_created",
            pattern_id=record.id,
            query=text,
            kind=plan_data["kind"],
            matched_count=getattr(result, "matched_count", None),
        )
        return record

    def record_usage(
        self, pattern_id: str, success: bool = True, latency_ms: float | None = None, text: str | None = None
    ) -> PatternRecord | None:
        """Count a cache-hit use of a pattern and move its confidence."""
        record = self.store.get_pattern(pattern_id)
        if record is None:
            logger.warning("pattern_usage_unknown_pattern", pattern_id=pattern_id)
            return None
        record = self._reinforce(record, text, latency_ms, success=success)
        return self.store.upsert_pattern(record)

    def apply_feedback(
        self,
        pattern_id: str,
        positive: bool,
        weight: float = 1.0,
        correction_text: str | None = None,
    ) -> PatternRecord | None:
        """
        Move a pattern's confidence toward 1.0 (positive) or 0.0 (negative).

        Negative feedback also retracts one success from the success rate.
        """
        record = self.store.get_pattern(pattern_id)
        if record is None:
            logger.warning("pattern_feedback_unknown_pattern", pattern_id=pattern_id)
            return None

        success_count = record.success_count
        if not positive:
            success_count = max(0, success_count - 1)
        corrections = list(record.corrections)
        if correction_text:
            corrections = (corrections + [correction_text])[-self.config.max_corrections :]

        updated = replace(
            record,
            confidence=self._moved_confidence(record.confidence, 1.0 if positive else 0.0, weight),
            success_count=success_count,
            success_rate=success_count / record.usage_count if record.usage_count else 0.0,
            corrections=corrections,
            version=record.version + 1,
        )
        updated = self.store.upsert_pattern(updated)
        logger.info(
            "pattern_feedback_applied",
            pattern_id=pattern_id,
            positive=positive,
            weight=weight,
            confidence=updated.confidence,
        )
        return updated

    def merge_patterns(self, pattern_ids: list[str]) -> PatternRecord:
        """
        Fold several patterns into the most used one.

        The base keeps its plan and absorbs the others' variations and
        corrections. Usage counts are summed and the success rate is
        usage-weighted. The absorbed records are deactivated (never deleted)
        and point at the base through merged_into.

        Raises:
            ValueError: If fewer than two distinct ids are given or an id is unknown
            ExternalStoreUnavailable: If the store cannot be read or written
        """
        ids = list(dict.fromkeys(pattern_ids))
        if len(ids) < 2:
            raise ValueError("At least 2 patterns required for merging")

        records = [self.store.get_pattern(pattern_id) for pattern_id in ids]
        missing = [pattern_id for pattern_id, record in zip(ids, records) if record is None]
        if missing:
            raise ValueError(f"Unknown pattern ids: {', '.join(missing)}")

        base = max(records, key=lambda r: r.usage_count)
        others = [r for r in records if r.id != base.id]

        variations = list(dict.fromkeys(v for r in [base, *others] for v in r.variations))
        corrections = list(dict.fromkeys(c for r in [base, *others] for c in r.corrections))
        total_usage = sum(r.usage_count for r in records)
        if total_usage:
            success_rate = sum(r.success_rate * r.usage_count for r in records) / total_usage
        else:
            success_rate = base.success_rate

        merged = replace(
            base,
            variations=variations[: self.config.max_variations],
            corrections=corrections[-self.config.max_corrections :],
            usage_count=total_usage,
            success_count=round(success_rate * total_usage),
            success_rate=success_rate,
            last_used_at=max(r.last_used_at for r in records),
            version=base.version + 1,
        )
        merged = self.store.upsert_pattern(merged)
        for record in others:
            self.store.upsert_pattern(
                replace(
                    record,
                    active=False,
                    merged_into=base.id,
                    confidence=self.config.confidence_floor,
                    version=record.version + 1,
                )
            )

        logger.info(
            "patterns_merged",
            pattern_id=merged.id,
            merged_ids=[r.id for r in others],
            usage_count=merged.usage_count,
            success_rate=round(merged.success_rate, 4),
        )
        return merged

    def get_pattern_stats(self, pattern_id: str) -> PatternStats | None:
        record = self.store.get_pattern(pattern_id)
        if record is None:
            return None
        return PatternStats(
            pattern_id=record.id,
            natural_query=record.natural_query,
            usage_count=record.usage_count,
            success_rate=record.success_rate,
            confidence=record.confidence,
            variation_count=len(record.variations),
            correction_count=len(record.corrections),
            last_used_at=record.last_used_at,
        )

    # Internals

    def _find_merge_target(self, embedding: list[float], text_hash: str, intent: str) -> PatternRecord | None:
        matches = self.store.find_similar(
            embedding, top_k=1, min_similarity=self.config.merge_similarity_threshold, intent=intent
        )
        if matches:
            return matches[0].record
        for record in self.store.list_patterns():
            if record.active and record.intent == intent and record.query_hash == text_hash:
                return record
        return None

    def _reinforce(
        self, record: PatternRecord, text: str | None, latency_ms: float | None, success: bool
    ) -> PatternRecord:
        variations = list(record.variations)
        if text and text not in variations:
            variations = (variations + [text])[-self.config.max_variations :]

        usage_count = record.usage_count + 1
        success_count = record.success_count + (1 if success else 0)
        average_latency = record.average_latency_ms
        if latency_ms is not None:
            if average_latency is None:
                average_latency = latency_ms
            else:
                average_latency = (average_latency * record.usage_count + latency_ms) / usage_count

        return replace(
            record,
            variations=variations,
            usage_count=usage_count,
            success_count=success_count,
            success_rate=success_count / usage_count,
            confidence=self._moved_confidence(record.confidence, 1.0 if success else 0.0, 1.0),
            last_used_at=self._clock(),
            average_latency_ms=average_latency,
            version=record.version + 1,
        )

    def _moved_confidence(self, current: float, target: float, weight: float) -> float:
        rate = min(1.0, self.config.confidence_learning_rate * weight)
        moved = current + rate * (target - current)
        return min(1.0, max(self.config.confidence_floor, moved))
