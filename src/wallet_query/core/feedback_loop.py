"""
FeedbackLoop - turns user reactions into pattern confidence changes.

Explicit signals (thumbs up/down, correction text) come from the UI.
Implicit signals are inferred from conversational timing:

- narrowing_follow_up: the next utterance arrives quickly and keeps every
  previous filter while adding more. The user is refining a useful answer.
- repeated_query: the same utterance is asked again shortly after. The
  answer probably did not satisfy.

Both heuristics are best-effort. Thresholds live in FeedbackHeuristics and
the detector can be replaced wholesale.
"""

import threading
from collections import Counter
from concurrent.futures import Future
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from wallet_query.core.conversation_context import ConversationContext, Turn
from wallet_query.core.dispatcher import BackgroundDispatcher, InlineDispatcher
from wallet_query.core.pattern_learner import PatternLearner, PatternStats
from wallet_query.core.query_analytics import QueryAnalytics
from wallet_query.core.query_config import QueryConfig
from wallet_query.core.query_plan import StructuredQuery

logger = structlog.get_logger()


class FeedbackSignal(Enum):
    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"
    CORRECTION = "correction"
    NARROWING_FOLLOW_UP = "narrowing_follow_up"
    REPEATED_QUERY = "repeated_query"

    @property
    def is_positive(self) -> bool:
        return self in (FeedbackSignal.THUMBS_UP, FeedbackSignal.NARROWING_FOLLOW_UP)

    @property
    def is_implicit(self) -> bool:
        return self in (FeedbackSignal.NARROWING_FOLLOW_UP, FeedbackSignal.REPEATED_QUERY)


@dataclass(frozen=True)
class FeedbackHeuristics:
    """Tunable thresholds for implicit feedback."""

    fast_follow_up_seconds: float = 30.0
    repeat_window_seconds: float = 60.0
    implicit_signal_weight: float = 0.5
    explicit_signal_weight: float = 1.0

    @classmethod
    def from_config(cls, config: QueryConfig) -> "FeedbackHeuristics":
        return cls(
            fast_follow_up_seconds=config.fast_follow_up_seconds,
            repeat_window_seconds=config.repeat_window_seconds,
            implicit_signal_weight=config.implicit_signal_weight,
        )

    def weight_for(self, signal: FeedbackSignal) -> float:
        return self.implicit_signal_weight if signal.is_implicit else self.explicit_signal_weight


class ImplicitSignalDetector:
    """Infers a feedback signal for the previous turn from the current one."""

    def __init__(self, heuristics: FeedbackHeuristics | None = None):
        self.heuristics = heuristics or FeedbackHeuristics()

    def detect(
        self,
        previous_turn: Turn | None,
        current_text: str,
        current_plan: StructuredQuery | None,
        now: datetime,
    ) -> FeedbackSignal | None:
        if previous_turn is None:
            return None
        elapsed = (now - previous_turn.timestamp).total_seconds()

        if (
            ConversationContext.normalize_query(current_text) == previous_turn.normalized_text
            and elapsed <= self.heuristics.repeat_window_seconds
        ):
            return FeedbackSignal.REPEATED_QUERY

        if (
            current_plan is not None
            and previous_turn.plan is not None
            and elapsed <= self.heuristics.fast_follow_up_seconds
            and _is_narrowing(previous_turn.plan, current_plan)
        ):
            return FeedbackSignal.NARROWING_FOLLOW_UP

        return None


def _is_narrowing(previous: StructuredQuery, current: StructuredQuery) -> bool:
    before = {replace(p, connector=None) for p in previous.predicates}
    after = {replace(p, connector=None) for p in current.predicates}
    return bool(before) and before < after


class FeedbackLoop:
    """
    Routes feedback to analytics and to the pattern learner.

    Signals are accepted on the caller's thread as soon as the query is
    tracked. Log writes and learner updates run on the dispatcher, and an
    update for a query waits for that query's own learning task (registered
    through watch()) so its pattern id is known before confidence moves.

    Args:
        learner: Pattern learner receiving confidence updates
        analytics: Query history used to find the pattern behind a query
        dispatcher: Background runner for learner writes
        heuristics: Signal weights and implicit-signal windows
        wait_timeout: Seconds a feedback task waits for the query's learning task
    """

    def __init__(
        self,
        learner: PatternLearner | None,
        analytics: QueryAnalytics,
        dispatcher: BackgroundDispatcher | None = None,
        heuristics: FeedbackHeuristics | None = None,
        wait_timeout: float = 5.0,
    ):
        self.learner = learner
        self.analytics = analytics
        self.dispatcher = dispatcher or InlineDispatcher()
        self.heuristics = heuristics or FeedbackHeuristics()
        self.wait_timeout = wait_timeout
        self._signals: dict[str, Counter] = {}
        self._pending: dict[str, Future] = {}
        self._lock = threading.Lock()

    def watch(self, query_id: str, future: Future) -> None:
        """Make feedback for query_id wait until future (its learning task) is done."""
        with self._lock:
            self._pending[query_id] = future
        future.add_done_callback(lambda done: self._release(query_id, done))

    def record_feedback(
        self,
        query_id: str,
        signal: FeedbackSignal,
        correction_text: str | None = None,
    ) -> bool:
        """
        Record a signal for a tracked query.

        Returns:
            False if the query is unknown (evicted from history or never tracked)
        """
        entry = self.analytics.get_entry(query_id)
        if entry is None:
            logger.warning("feedback_unknown_query", query_id=query_id, signal=signal.value)
            return False

        self.analytics.record_feedback(query_id, signal.value, correction_text=correction_text, write_log=False)
        logger.info("feedback_recorded", query_id=query_id, signal=signal.value)
        self.dispatcher.submit(self._deliver, query_id, signal, correction_text, task_name="apply_feedback")
        return True

    def get_feedback_stats(self, pattern_id: str) -> dict[str, Any]:
        with self._lock:
            counts = dict(self._signals.get(pattern_id, Counter()))
        positive = sum(n for name, n in counts.items() if FeedbackSignal(name).is_positive)
        stats: dict[str, Any] = {
            "pattern_id": pattern_id,
            "signals": counts,
            "positive": positive,
            "negative": sum(counts.values()) - positive,
        }
        pattern = self.learner.get_pattern_stats(pattern_id) if self.learner is not None else None
        if pattern is not None:
            stats.update(
                usage_count=pattern.usage_count,
                success_rate=pattern.success_rate,
                confidence=pattern.confidence,
            )
        return stats

    def identify_problem_patterns(self, threshold: float = 0.7, min_usage: int = 5) -> list[PatternStats]:
        """Patterns used at least min_usage times whose success rate is below threshold, worst first."""
        if self.learner is None:
            return []
        problems = []
        for record in self.learner.store.list_patterns():
            if record.active and record.usage_count >= min_usage and record.success_rate < threshold:
                stats = self.learner.get_pattern_stats(record.id)
                if stats is not None:
                    problems.append(stats)
        problems.sort(key=lambda s: (s.success_rate, -s.usage_count))
        return problems

    def _release(self, query_id: str, future: Future) -> None:
        with self._lock:
            if self._pending.get(query_id) is future:
                del self._pending[query_id]

    def _deliver(self, query_id: str, signal: FeedbackSignal, correction_text: str | None) -> None:
        with self._lock:
            learning = self._pending.get(query_id)
        if learning is not None:
            learning.result(timeout=self.wait_timeout)

        entry = self.analytics.get_entry(query_id)
        if entry is None:
            logger.warning("feedback_query_evicted", query_id=query_id, signal=signal.value)
            return
        self.analytics.log_feedback(entry, signal.value, correction_text)

        pattern_id = entry.pattern_id
        if pattern_id is None or self.learner is None:
            logger.debug("feedback_without_pattern", query_id=query_id, signal=signal.value)
            return

        with self._lock:
            self._signals.setdefault(pattern_id, Counter())[signal.value] += 1
        self.learner.apply_feedback(
            pattern_id,
            signal.is_positive,
            weight=self.heuristics.weight_for(signal),
            correction_text=correction_text if signal is FeedbackSignal.CORRECTION else None,
        )
