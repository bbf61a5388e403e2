"""
Tests for FeedbackLoop and implicit signal detection.
"""

from concurrent.futures import Future
from datetime import timedelta

import pytest

from wallet_query.core.conversation_context import Turn
from wallet_query.core.dispatcher import BackgroundDispatcher
from wallet_query.core.entities import Operator
from wallet_query.core.feedback_loop import (
    FeedbackHeuristics,
    FeedbackLoop,
    FeedbackSignal,
    ImplicitSignalDetector,
)
from wallet_query.core.field_map import CardField
from wallet_query.core.pattern_learner import PatternLearner
from wallet_query.core.query_analytics import QueryAnalytics
from wallet_query.core.query_config import QueryConfig
from wallet_query.core.query_decomposer import QueryDecomposer
from wallet_query.core.query_plan import FilterQuery, OutputFormat, Predicate, ResolutionPath

VISA = Predicate(CardField.CARD_NETWORK, Operator.EQ, "Visa")
BIG_BALANCE = Predicate(CardField.CURRENT_BALANCE, Operator.GT, 5000)


def filter_plan(*predicates):
    return FilterQuery(source_intent="query_card_data", output_format=OutputFormat.LIST, predicates=predicates)


def turn(text, plan, timestamp):
    return Turn(
        query_id="q1",
        text=text,
        normalized_text=" ".join(text.lower().split()),
        timestamp=timestamp,
        resolution_path=ResolutionPath.FRESH_DECOMPOSE,
        plan=plan,
    )


class TestFeedbackSignal:
    def test_polarity_and_implicitness(self):
        # Assert
        assert FeedbackSignal.THUMBS_UP.is_positive
        assert FeedbackSignal.NARROWING_FOLLOW_UP.is_positive
        assert not FeedbackSignal.CORRECTION.is_positive
        assert FeedbackSignal.REPEATED_QUERY.is_implicit
        assert not FeedbackSignal.THUMBS_DOWN.is_implicit

    def test_weights_from_config(self):
        # Arrange
        heuristics = FeedbackHeuristics.from_config(QueryConfig(implicit_signal_weight=0.25))

        # Act & Assert
        assert heuristics.weight_for(FeedbackSignal.REPEATED_QUERY) == 0.25
        assert heuristics.weight_for(FeedbackSignal.THUMBS_DOWN) == 1.0


class TestImplicitSignalDetector:
    @pytest.fixture
    def detector(self):
        return ImplicitSignalDetector()

    def test_same_query_within_window_is_repeated(self, detector, clock):
        # Arrange
        previous = turn("Visa cards", filter_plan(VISA), clock.now)

        # Act
        signal = detector.detect(previous, "visa  cards", filter_plan(VISA), clock.now + timedelta(seconds=45))

        # Assert
        assert signal is FeedbackSignal.REPEATED_QUERY

    def test_same_query_after_window_is_not_repeated(self, detector, clock):
        # Arrange
        previous = turn("visa cards", filter_plan(VISA), clock.now)

        # Act
        signal = detector.detect(previous, "visa cards", filter_plan(VISA), clock.now + timedelta(seconds=61))

        # Assert
        assert signal is None

    def test_quick_narrowing_follow_up(self, detector, clock):
        # Arrange
        previous = turn("visa cards", filter_plan(VISA), clock.now)

        # Act
        signal = detector.detect(
            previous, "with balance over 5000", filter_plan(BIG_BALANCE, VISA), clock.now + timedelta(seconds=10)
        )

        # Assert
        assert signal is FeedbackSignal.NARROWING_FOLLOW_UP

    def test_slow_narrowing_is_not_a_signal(self, detector, clock):
        # Arrange
        previous = turn("visa cards", filter_plan(VISA), clock.now)

        # Act
        signal = detector.detect(
            previous, "with balance over 5000", filter_plan(BIG_BALANCE, VISA), clock.now + timedelta(seconds=31)
        )

        # Assert
        assert signal is None

    def test_replacing_filters_is_not_narrowing(self, detector, clock):
        # Arrange
        previous = turn("visa cards", filter_plan(VISA), clock.now)

        # Act
        signal = detector.detect(previous, "balance over 5000", filter_plan(BIG_BALANCE), clock.now)

        # Assert
        assert signal is None

    def test_no_previous_turn(self, detector, clock):
        # Act & Assert
        assert detector.detect(None, "visa cards", filter_plan(VISA), clock.now) is None


class TestFeedbackLoop:
    @pytest.fixture
    def learner(self, pattern_store, embedder, clock):
        return PatternLearner(pattern_store, embedder, clock=clock)

    @pytest.fixture
    def analytics(self, clock):
        return QueryAnalytics(clock=clock)

    @pytest.fixture
    def loop(self, learner, analytics):
        return FeedbackLoop(learner, analytics)

    def learned_query(self, learner, analytics, extractor, query_id="q1", text="total balance by issuer"):
        entities = extractor.extract(text)
        plan = QueryDecomposer().decompose(text, entities, "query_card_data")
        analytics.track_query(query_id, "s1", text, entities, plan, None, plan.resolution_path)
        record = learner.learn(text, entities, plan)
        analytics.attach_pattern(query_id, record.id)
        return record

    def test_thumbs_down_lowers_pattern_confidence(self, loop, learner, analytics, extractor):
        # Arrange
        record = self.learned_query(learner, analytics, extractor)

        # Act
        accepted = loop.record_feedback("q1", FeedbackSignal.THUMBS_DOWN)

        # Assert
        assert accepted is True
        assert learner.store.get_pattern(record.id).confidence == pytest.approx(0.4)
        assert analytics.get_entry("q1").feedback == ["thumbs_down"]

    def test_implicit_signal_moves_at_half_weight(self, loop, learner, analytics, extractor):
        # Arrange
        record = self.learned_query(learner, analytics, extractor)

        # Act
        loop.record_feedback("q1", FeedbackSignal.NARROWING_FOLLOW_UP)

        # Assert
        assert learner.store.get_pattern(record.id).confidence == pytest.approx(0.55)

    def test_correction_text_is_stored(self, loop, learner, analytics, extractor):
        # Arrange
        record = self.learned_query(learner, analytics, extractor)

        # Act
        loop.record_feedback("q1", FeedbackSignal.CORRECTION, correction_text="I meant by network")

        # Assert
        assert learner.store.get_pattern(record.id).corrections == ["I meant by network"]

    def test_unknown_query_is_rejected(self, loop):
        # Act & Assert
        assert loop.record_feedback("missing", FeedbackSignal.THUMBS_UP) is False

    def test_query_without_pattern_only_reaches_analytics(self, loop, learner, analytics):
        # Arrange
        analytics.track_query("q9", "s1", "balence", None, None, None, ResolutionPath.LLM_FALLBACK, success=False)

        # Act
        accepted = loop.record_feedback("q9", FeedbackSignal.THUMBS_DOWN)

        # Assert
        assert accepted is True
        assert analytics.get_entry("q9").feedback == ["thumbs_down"]
        assert learner.store.list_patterns() == []

    def test_feedback_stats_tally_signals(self, loop, learner, analytics, extractor):
        # Arrange
        record = self.learned_query(learner, analytics, extractor)
        loop.record_feedback("q1", FeedbackSignal.THUMBS_UP)
        loop.record_feedback("q1", FeedbackSignal.THUMBS_DOWN)
        loop.record_feedback("q1", FeedbackSignal.REPEATED_QUERY)

        # Act
        stats = loop.get_feedback_stats(record.id)

        # Assert
        assert stats["positive"] == 1
        assert stats["negative"] == 2
        assert stats["signals"]["thumbs_down"] == 1
        assert stats["usage_count"] == 1

    def test_identify_problem_patterns_orders_worst_first(self, loop, learner, extractor):
        # Arrange
        good = self.learned_query(learner, loop.analytics, extractor, "q1", "total balance by issuer")
        bad = self.learned_query(learner, loop.analytics, extractor, "q2", "what are the different networks")
        for _ in range(5):
            learner.record_usage(good.id, success=True)
            learner.record_usage(bad.id, success=False)

        # Act
        problems = loop.identify_problem_patterns(threshold=0.7, min_usage=5)

        # Assert
        assert [p.pattern_id for p in problems] == [bad.id]
        assert problems[0].success_rate == pytest.approx(1 / 6)

    def test_feedback_waits_for_the_query_learning_task(self, learner, analytics, extractor):
        """Feedback accepted before the pattern is linked still reaches that pattern."""
        # Arrange
        dispatcher = BackgroundDispatcher(max_workers=1)
        loop = FeedbackLoop(learner, analytics, dispatcher, wait_timeout=5.0)
        text = "total balance by issuer"
        entities = extractor.extract(text)
        plan = QueryDecomposer().decompose(text, entities, "query_card_data")
        analytics.track_query("q1", "s1", text, entities, plan, None, plan.resolution_path)
        learning = Future()
        loop.watch("q1", learning)

        # Act
        accepted = loop.record_feedback("q1", FeedbackSignal.THUMBS_DOWN)
        record = learner.learn(text, entities, plan)
        analytics.attach_pattern("q1", record.id)
        learning.set_result(None)
        drained = dispatcher.drain(timeout=5.0)
        dispatcher.shutdown()

        # Assert
        assert accepted is True
        assert drained is True
        assert learner.store.get_pattern(record.id).confidence == pytest.approx(0.4)

    def test_merged_away_patterns_are_not_reported(self, loop, learner, extractor):
        # Arrange
        base = self.learned_query(learner, loop.analytics, extractor, "q1", "total balance by issuer")
        absorbed = self.learned_query(learner, loop.analytics, extractor, "q2", "what are the different networks")
        for _ in range(6):
            learner.record_usage(base.id, success=True)
        for _ in range(5):
            learner.record_usage(absorbed.id, success=False)
        learner.merge_patterns([base.id, absorbed.id])

        # Act
        problems = loop.identify_problem_patterns(threshold=0.7, min_usage=5)

        # Assert
        assert [p.pattern_id for p in problems] == [base.id]
        assert problems[0].usage_count == 13
        assert problems[0].success_rate == pytest.approx(8 / 13)
