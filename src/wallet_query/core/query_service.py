"""
QueryService - wallet question answering pipeline.

Per utterance, synchronously and in order:
1. Extract entities from the text
2. Gate on confidence (below threshold -> LLM fallback signal)
3. Decompose into a StructuredQuery (pattern cache first, then fresh)
4. Execute against the supplied record collection
5. Return the response

The query is tracked in memory before the response is returned. Log writes,
learning and feedback application run afterwards on the background
dispatcher and never delay or fail the response.
"""

import threading
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from wallet_query.core.config_loader import load_config
from wallet_query.core.conversation_context import ConversationContext, Turn
from wallet_query.core.dispatcher import BackgroundDispatcher
from wallet_query.core.embeddings import Embedder, SentenceTransformerEmbedder
from wallet_query.core.entities import EntityBag
from wallet_query.core.entity_extractor import EntityExtractor
from wallet_query.core.errors import (
    AmbiguousQueryError,
    EmbeddingServiceError,
    ExternalStoreUnavailable,
    UnresolvedFieldError,
)
from wallet_query.core.feedback_loop import FeedbackHeuristics, FeedbackLoop, FeedbackSignal, ImplicitSignalDetector
from wallet_query.core.pattern_learner import PatternLearner
from wallet_query.core.pattern_store import InMemoryPatternStore, PatternStore
from wallet_query.core.query_analytics import QueryAnalytics, QueryLogEntry
from wallet_query.core.query_config import QueryConfig
from wallet_query.core.query_decomposer import DEFAULT_INTENT, QueryDecomposer
from wallet_query.core.query_executor import QueryExecutor
from wallet_query.core.query_plan import ResolutionPath, StructuredQuery
from wallet_query.core.query_result import ExecutionResult
from wallet_query.storage.file_pattern_store import FilePatternStore
from wallet_query.storage.query_logger import QueryLogger

logger = structlog.get_logger()


@dataclass
class QueryResponse:
    """Answer for one utterance plus the metadata the presenter needs."""

    query_id: str
    result: ExecutionResult | None
    plan: StructuredQuery | None
    resolution_path: ResolutionPath
    latency_ms: float
    confidence: float
    requires_fallback: bool = False
    fallback_reason: str | None = None
    error: str | None = None
    entities: EntityBag | None = None

    @property
    def matched_count(self) -> int:
        return self.result.matched_count if self.result is not None else 0

    @property
    def excluded_count(self) -> int:
        return self.result.excluded_count if self.result is not None else 0

    @property
    def pattern_id(self) -> str | None:
        return self.plan.pattern_id if self.plan is not None else None

    def metadata(self) -> dict[str, Any]:
        return {
            "query_id": self.query_id,
            "resolution_path": self.resolution_path.value,
            "matched_count": self.matched_count,
            "excluded_count": self.excluded_count,
            "latency_ms": round(self.latency_ms, 3),
            "requires_fallback": self.requires_fallback,
            "fallback_reason": self.fallback_reason,
        }


class QueryService:
    """
    Entry point for asking questions about a card wallet.

    Collaborators default from config: an in-memory (or file) pattern store,
    a sentence-transformers embedder, a thread-pool dispatcher and, when
    query_log_dir is set, a JSONL query log.
    """

    def __init__(
        self,
        config: QueryConfig | None = None,
        pattern_store: PatternStore | None = None,
        embedder: Embedder | None = None,
        analytics: QueryAnalytics | None = None,
        dispatcher: BackgroundDispatcher | None = None,
        query_logger: QueryLogger | None = None,
        extractor: EntityExtractor | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or QueryConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        if pattern_store is None:
            if self.config.pattern_store_path:
                pattern_store = FilePatternStore(self.config.pattern_store_path)
            else:
                pattern_store = InMemoryPatternStore()
        if embedder is None:
            embedder = SentenceTransformerEmbedder(self.config.embedding_model)
        if query_logger is None and self.config.query_log_dir:
            query_logger = QueryLogger(self.config.query_log_dir)

        self.extractor = extractor or EntityExtractor()
        self.learner = PatternLearner(pattern_store, embedder, self.config, clock=self._clock)
        self.decomposer = QueryDecomposer(self.learner, self.config)
        self.executor = QueryExecutor(and_binds_tighter=self.config.and_binds_tighter)
        self.dispatcher = dispatcher or BackgroundDispatcher(max_workers=self.config.background_workers)
        self.analytics = analytics or QueryAnalytics(
            query_logger=query_logger,
            history_size=self.config.analytics_history_size,
            stats_ttl=self.config.stats_cache_ttl_seconds,
            clock=self._clock,
        )
        heuristics = FeedbackHeuristics.from_config(self.config)
        self.feedback = FeedbackLoop(
            self.learner,
            self.analytics,
            self.dispatcher,
            heuristics,
            wait_timeout=self.config.background_timeout_seconds,
        )
        self.signal_detector = ImplicitSignalDetector(heuristics)

        self._contexts: dict[str, ConversationContext] = {}
        self._contexts_lock = threading.Lock()

    @classmethod
    def from_config_file(cls, config_path: Path | None = None, **kwargs: Any) -> "QueryService":
        return cls(config=load_config(config_path), **kwargs)

    def ask(
        self,
        text: str,
        records: Iterable[Mapping[str, Any]],
        intent: str | None = DEFAULT_INTENT,
        session_id: str = "default",
    ) -> QueryResponse:
        """
        Answer one utterance against a read-only record collection.

        Decomposition failures and low confidence come back as a response
        with requires_fallback=True; they never raise.

        Raises:
            MalformedQueryError: If a built plan violates its invariants
        """
        started = time.perf_counter()
        query_id = str(uuid.uuid4())
        context = self.get_context(session_id)
        previous_turn = context.last_turn

        if not context.normalize_query(text):
            response = self._fallback(query_id, started, "empty_query", 0.0, None)
            self._finish(response, text, session_id, context, previous_turn)
            return response

        if context.is_reset_request(text):
            context.clear()
            previous_turn = None
            logger.info("conversation_reset", session_id=session_id)

        entities = self.extractor.extract(text)
        confidence = self.decomposer.assess_confidence(entities, intent)
        if confidence < self.config.fallback_confidence_threshold:
            response = self._fallback(query_id, started, "low_confidence", confidence, entities)
            self._finish(response, text, session_id, context, previous_turn)
            return response

        try:
            plan = self.decomposer.decompose(text, entities, intent, context)
        except UnresolvedFieldError as e:
            response = self._fallback(query_id, started, "unresolved_field", confidence, entities, str(e))
            self._finish(response, text, session_id, context, previous_turn)
            return response
        except AmbiguousQueryError as e:
            response = self._fallback(query_id, started, "ambiguous_query", confidence, entities, str(e))
            self._finish(response, text, session_id, context, previous_turn)
            return response

        result = self.executor.execute(plan, records)
        response = QueryResponse(
            query_id=query_id,
            result=result,
            plan=plan,
            resolution_path=plan.resolution_path,
            latency_ms=(time.perf_counter() - started) * 1000,
            confidence=confidence,
            entities=entities,
        )
        logger.info(
            "query_answered",
            query_id=query_id,
            session_id=session_id,
            resolution_path=plan.resolution_path.value,
            kind=plan.kind.value,
            matched_count=result.matched_count,
            excluded_count=result.excluded_count,
            latency_ms=round(response.latency_ms, 3),
        )
        self._finish(response, text, session_id, context, previous_turn)
        return response

    def record_feedback(
        self, query_id: str, signal: FeedbackSignal | str, correction_text: str | None = None
    ) -> bool:
        """Explicit feedback for a previous response."""
        if isinstance(signal, str):
            signal = FeedbackSignal(signal)
        return self.feedback.record_feedback(query_id, signal, correction_text=correction_text)

    def get_context(self, session_id: str = "default") -> ConversationContext:
        with self._contexts_lock:
            context = self._contexts.get(session_id)
            if context is None:
                context = ConversationContext(session_id, history_window=self.config.history_window)
                self._contexts[session_id] = context
            return context

    def reset_session(self, session_id: str = "default") -> None:
        self.get_context(session_id).clear()

    def close(self) -> None:
        """Wait (bounded) for background work, then stop the dispatcher."""
        self.dispatcher.drain(timeout=self.config.background_timeout_seconds)
        self.dispatcher.shutdown(wait=False)

    def __enter__(self) -> "QueryService":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # Internals

    def _fallback(
        self,
        query_id: str,
        started: float,
        reason: str,
        confidence: float,
        entities: EntityBag | None,
        error: str | None = None,
    ) -> QueryResponse:
        logger.info("query_fallback", query_id=query_id, reason=reason, confidence=confidence, error=error)
        return QueryResponse(
            query_id=query_id,
            result=None,
            plan=None,
            resolution_path=ResolutionPath.LLM_FALLBACK,
            latency_ms=(time.perf_counter() - started) * 1000,
            confidence=confidence,
            requires_fallback=True,
            fallback_reason=reason,
            error=error,
            entities=entities,
        )

    def _finish(
        self,
        response: QueryResponse,
        text: str,
        session_id: str,
        context: ConversationContext,
        previous_turn: Turn | None,
    ) -> None:
        """
        Record the turn and track the query, then hand log writes and learning
        to the dispatcher.

        The analytics entry exists before ask() returns, so feedback on the
        returned query id is accepted immediately. Feedback applied to the
        pattern waits for the query's learning task.
        """
        now = self._clock()
        signal = self.signal_detector.detect(previous_turn, text, response.plan, now)
        context.record_turn(
            response.query_id,
            text,
            response.plan,
            response.resolution_path,
            matched_count=response.matched_count if response.result is not None else None,
            timestamp=now,
        )
        entry = self.analytics.track_query(
            response.query_id,
            session_id,
            text,
            response.entities,
            response.plan,
            response.result,
            response.resolution_path,
            success=not response.requires_fallback,
            error=response.fallback_reason or response.error,
            latency_ms=response.latency_ms,
            write_log=False,
        )
        learning = self.dispatcher.submit(self._after_response, response, entry, text, task_name="after_response")
        self.feedback.watch(response.query_id, learning)

        if previous_turn is not None and signal is not None:
            self.feedback.record_feedback(previous_turn.query_id, signal)

    def _after_response(self, response: QueryResponse, entry: QueryLogEntry, text: str) -> None:
        self.analytics.log_entry(entry, response.result)

        plan = response.plan
        if plan is None or response.result is None:
            return
        if plan.resolution_path is ResolutionPath.PATTERN_CACHE and plan.pattern_id is not None:
            self.learner.record_usage(plan.pattern_id, success=True, latency_ms=response.latency_ms, text=text)
        elif self._should_learn(response):
            try:
                record = self.learner.learn(text, response.entities, plan, response.result, response.latency_ms)
            except (EmbeddingServiceError, ExternalStoreUnavailable) as e:
                logger.warning(
                    "learning_skipped", query_id=response.query_id, error_type=type(e).__name__, error=str(e)
                )
                return
            self.analytics.attach_pattern(response.query_id, record.id)

    def _should_learn(self, response: QueryResponse) -> bool:
        if not self.config.enable_learning or response.entities is None:
            return False
        return response.matched_count > 0 or self.config.learn_from_empty_results
