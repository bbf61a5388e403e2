"""
Tests for QueryDecomposer: classification, field mapping, the pattern cache
fast path and conversation-context merging.
"""

from dataclasses import replace
from unittest.mock import Mock

import pytest

from wallet_query.core.conversation_context import ConversationContext
from wallet_query.core.embeddings import CallableEmbedder
from wallet_query.core.entities import (
    AggregationVerb,
    ComparisonEntity,
    ComparisonValue,
    EntityBag,
    LogicalConnector,
    Operator,
    SortDirection,
)
from wallet_query.core.errors import (
    AmbiguousQueryError,
    EmbeddingServiceError,
    ExternalStoreUnavailable,
    UnresolvedFieldError,
)
from wallet_query.core.field_map import CardField
from wallet_query.core.pattern_learner import PatternLearner
from wallet_query.core.pattern_store import PatternStore
from wallet_query.core.query_config import QueryConfig
from wallet_query.core.query_decomposer import (
    QueryDecomposer,
    flatten_groups,
    output_format_for,
    predicate_groups,
)
from wallet_query.core.query_plan import (
    AggregateQuery,
    DistinctQuery,
    FilterQuery,
    GroupedAggregateQuery,
    OutputFormat,
    PlanKind,
    Predicate,
    ResolutionPath,
    plan_to_json,
)

INTENT = "query_card_data"


@pytest.fixture
def decomposer():
    return QueryDecomposer()


def decompose(decomposer, extractor, text, context=None):
    return decomposer.decompose(text, extractor.extract(text), INTENT, context)


class TestFreshDecomposition:
    """Plans built directly from entities."""

    def test_distinct_issuers(self, decomposer, extractor):
        # Act
        plan = decompose(decomposer, extractor, "what are the different issuers in my wallet")

        # Assert
        assert isinstance(plan, DistinctQuery)
        assert plan.field is CardField.ISSUER
        assert plan.include_count is True
        assert plan.output_format is OutputFormat.LIST
        assert plan.resolution_path is ResolutionPath.FRESH_DECOMPOSE

    def test_total_balance_by_issuer(self, decomposer, extractor):
        # Act
        plan = decompose(decomposer, extractor, "total balance by issuer")

        # Assert
        assert isinstance(plan, GroupedAggregateQuery)
        assert plan.verb is AggregationVerb.SUM
        assert plan.field is CardField.CURRENT_BALANCE
        assert plan.group_field is CardField.ISSUER
        assert plan.output_format is OutputFormat.TABLE

    def test_compound_filter(self, decomposer, extractor):
        """Three comparisons map to three AND predicates rendered as a table."""
        # Act
        plan = decompose(decomposer, extractor, "visa cards with balance over 5000 and apr less than 25")

        # Assert
        assert isinstance(plan, FilterQuery)
        assert [(p.field, p.operator, p.value) for p in plan.predicates] == [
            (CardField.CARD_NETWORK, Operator.EQ, "Visa"),
            (CardField.CURRENT_BALANCE, Operator.GT, 5000),
            (CardField.APR, Operator.LT, 25),
        ]
        assert plan.connector is LogicalConnector.AND
        assert all(p.connector is None for p in plan.predicates)
        assert plan.output_format is OutputFormat.TABLE

    def test_single_predicate_filter_is_a_list(self, decomposer, extractor):
        # Act
        plan = decompose(decomposer, extractor, "visa cards")

        # Assert
        assert plan.output_format is OutputFormat.LIST

    def test_or_filter_uses_query_connector(self, decomposer, extractor):
        # Act
        plan = decompose(decomposer, extractor, "cards with balance over 5000 or apr under 18")

        # Assert
        assert plan.connector is LogicalConnector.OR
        assert all(p.connector is None for p in plan.predicates)

    def test_group_without_verb_counts(self, decomposer, extractor):
        # Act
        plan = decompose(decomposer, extractor, "cards by network")

        # Assert
        assert isinstance(plan, GroupedAggregateQuery)
        assert plan.verb is AggregationVerb.COUNT
        assert plan.field is None
        assert plan.group_field is CardField.CARD_NETWORK

    def test_count_is_aggregate_summary(self, decomposer, extractor):
        # Act
        plan = decompose(decomposer, extractor, "how many visa cards")

        # Assert
        assert isinstance(plan, AggregateQuery)
        assert plan.verb is AggregationVerb.COUNT
        assert plan.output_format is OutputFormat.SUMMARY

    def test_superlative_becomes_sorted_limited_filter(self, decomposer, extractor):
        # Act
        plan = decompose(decomposer, extractor, "which card has the highest apr")

        # Assert
        assert isinstance(plan, FilterQuery)
        assert plan.sort.field is CardField.APR
        assert plan.sort.direction is SortDirection.DESC
        assert plan.limit == 1

    def test_empty_bag_is_show_all(self, decomposer):
        # Act
        plan = decomposer.decompose("hello there", EntityBag(), INTENT)

        # Assert
        assert isinstance(plan, FilterQuery)
        assert plan.predicates == ()

    def test_decomposition_is_idempotent(self, decomposer, extractor):
        """The same input yields byte-identical plans."""
        # Arrange
        text = "visa cards with balance over 5000 and apr less than 25"

        # Act
        first = plan_to_json(decompose(decomposer, extractor, text))
        second = plan_to_json(decompose(decomposer, extractor, text))

        # Assert
        assert first == second


class TestDecompositionErrors:
    """Unresolvable and contradictory entities."""

    def test_typo_field_raises_unresolved(self, decomposer, extractor):
        # Act & Assert
        with pytest.raises(UnresolvedFieldError) as exc_info:
            decompose(decomposer, extractor, "cards with balence over 5000")
        assert exc_info.value.token == "balence"

    def test_two_verbs_raise_ambiguous(self, decomposer, extractor):
        # Act & Assert
        with pytest.raises(AmbiguousQueryError, match="multiple aggregation verbs"):
            decompose(decomposer, extractor, "average and total balance")

    def test_numeric_verb_on_text_field_raises_ambiguous(self, decomposer, extractor):
        # Act & Assert
        with pytest.raises(AmbiguousQueryError, match="non-numeric"):
            decompose(decomposer, extractor, "sum of issuer")

    def test_sum_without_field_raises_unresolved(self, decomposer, extractor):
        # Act & Assert
        with pytest.raises(UnresolvedFieldError):
            decompose(decomposer, extractor, "total")

    def test_text_value_against_numeric_field_raises_ambiguous(self, decomposer):
        """A lexicon value bound to a numeric field cannot be compared."""
        # Arrange
        entities = EntityBag(
            comparisons=[ComparisonEntity("balance", Operator.EQ, ComparisonValue.of_string("Visa", "visa"), 0, 4)]
        )

        # Act & Assert
        with pytest.raises(AmbiguousQueryError, match="not comparable"):
            decomposer.decompose("balance visa", entities, INTENT)


class TestConfidenceGate:
    """assess_confidence / requires_fallback."""

    def test_structured_entities_are_high_confidence(self, decomposer, extractor):
        # Act & Assert
        assert decomposer.assess_confidence(extractor.extract("total balance by issuer"), "small_talk") == 0.9

    def test_empty_bag_depends_on_intent(self, decomposer):
        # Act & Assert
        assert decomposer.requires_fallback(EntityBag(), INTENT) is False
        assert decomposer.requires_fallback(EntityBag(), "small_talk") is True
        assert decomposer.requires_fallback(EntityBag(), None) is True


class TestPredicateGroups:
    """predicate_groups / flatten_groups helpers."""

    def test_mixed_connectors_round_trip(self):
        # Arrange
        a = Predicate(CardField.CARD_NETWORK, Operator.EQ, "Visa")
        b = Predicate(CardField.CURRENT_BALANCE, Operator.GT, 5000, connector=LogicalConnector.AND)
        c = Predicate(CardField.APR, Operator.LT, 18, connector=LogicalConnector.OR)

        # Act
        groups = predicate_groups((a, b, c), LogicalConnector.AND)
        flat, connector = flatten_groups(groups)

        # Assert
        assert groups == [[a, replace(b, connector=None)], [replace(c, connector=None)]]
        assert flat == (a, b, c)
        assert connector is LogicalConnector.AND

    def test_output_format_rules(self):
        # Act & Assert
        assert output_format_for(PlanKind.DISTINCT, 3) is OutputFormat.LIST
        assert output_format_for(PlanKind.AGGREGATE, 0) is OutputFormat.SUMMARY
        assert output_format_for(PlanKind.GROUPED_AGGREGATE, 0) is OutputFormat.TABLE
        assert output_format_for(PlanKind.FILTER, 1) is OutputFormat.LIST
        assert output_format_for(PlanKind.FILTER, 2) is OutputFormat.TABLE


class TestPatternCache:
    """The learned-pattern fast path."""

    def learn_confident(self, learner, extractor, decomposer, text, confidence=0.9):
        entities = extractor.extract(text)
        plan = decomposer.decompose(text, entities, INTENT)
        record = learner.learn(text, entities, plan)
        learner.store.upsert_pattern(replace(record, confidence=confidence))
        return record

    def test_confident_pattern_is_used(self, pattern_store, embedder, extractor):
        # Arrange
        learner = PatternLearner(pattern_store, embedder)
        decomposer = QueryDecomposer(learner)
        record = self.learn_confident(learner, extractor, decomposer, "total balance by issuer")

        # Act
        plan = decompose(decomposer, extractor, "total balance by issuer")

        # Assert
        assert plan.resolution_path is ResolutionPath.PATTERN_CACHE
        assert plan.pattern_id == record.id
        assert plan.group_field is CardField.ISSUER

    def test_low_confidence_pattern_is_ignored(self, pattern_store, embedder, extractor):
        # Arrange
        learner = PatternLearner(pattern_store, embedder)
        decomposer = QueryDecomposer(learner)
        self.learn_confident(learner, extractor, decomposer, "total balance by issuer", confidence=0.5)

        # Act
        plan = decompose(decomposer, extractor, "total balance by issuer")

        # Assert
        assert plan.resolution_path is ResolutionPath.FRESH_DECOMPOSE
        assert plan.pattern_id is None

    def test_cached_plan_is_rebound_to_current_fields(self, pattern_store, extractor):
        """A similar phrasing reuses the plan shape but the current fields."""
        # Arrange
        learner = PatternLearner(pattern_store, CallableEmbedder(lambda text: [1.0, 0.0]))
        decomposer = QueryDecomposer(learner)
        self.learn_confident(learner, extractor, decomposer, "average balance by issuer")

        # Act
        plan = decompose(decomposer, extractor, "average apr by network")

        # Assert
        assert plan.resolution_path is ResolutionPath.PATTERN_CACHE
        assert plan.verb is AggregationVerb.AVG
        assert plan.field is CardField.APR
        assert plan.group_field is CardField.CARD_NETWORK

    def test_different_entity_shape_is_not_reused(self, pattern_store, extractor):
        """A distinct question never reuses a grouped-aggregate pattern."""
        # Arrange
        learner = PatternLearner(pattern_store, CallableEmbedder(lambda text: [1.0, 0.0]))
        decomposer = QueryDecomposer(learner)
        self.learn_confident(learner, extractor, decomposer, "average balance by issuer")

        # Act
        plan = decompose(decomposer, extractor, "what are the different networks")

        # Assert
        assert plan.resolution_path is ResolutionPath.FRESH_DECOMPOSE
        assert isinstance(plan, DistinctQuery)

    def test_qualifying_pattern_is_used_past_a_more_similar_unproven_one(self, pattern_store, extractor):
        # Arrange
        learner = PatternLearner(pattern_store, CallableEmbedder(lambda text: [1.0, 0.0]))
        decomposer = QueryDecomposer(learner)
        record = self.learn_confident(learner, extractor, decomposer, "total balance by issuer")
        pattern_store.upsert_pattern(replace(record, embedding=[0.9, 0.43589], confidence=0.9))
        pattern_store.upsert_pattern(replace(record, id="fresh", query_hash="fresh", confidence=0.5))

        # Act
        plan = decompose(decomposer, extractor, "total balance by issuer")

        # Assert
        assert plan.resolution_path is ResolutionPath.PATTERN_CACHE
        assert plan.pattern_id == record.id

    def test_cached_plan_of_another_kind_is_a_miss(self, pattern_store, embedder, extractor):
        """Adding a verb to a cached filter question yields an aggregate, not a record list."""
        # Arrange
        learner = PatternLearner(pattern_store, embedder)
        decomposer = QueryDecomposer(learner)
        self.learn_confident(
            learner,
            extractor,
            decomposer,
            "top 3 visa cards with balance over 5000 and apr under 25",
            confidence=0.95,
        )

        # Act
        plan = decompose(decomposer, extractor, "count top 3 visa cards with balance over 5000 and apr under 25")

        # Assert
        assert plan.resolution_path is ResolutionPath.FRESH_DECOMPOSE
        assert isinstance(plan, AggregateQuery)
        assert plan.verb is AggregationVerb.COUNT

    def test_pattern_learned_under_another_intent_is_not_used(self, pattern_store, embedder, extractor):
        # Arrange
        learner = PatternLearner(pattern_store, embedder)
        decomposer = QueryDecomposer(learner)
        self.learn_confident(learner, extractor, decomposer, "total balance by issuer")
        entities = extractor.extract("total balance by issuer")

        # Act
        plan = decomposer.decompose("total balance by issuer", entities, "query_transactions")

        # Assert
        assert plan.resolution_path is ResolutionPath.FRESH_DECOMPOSE

    def test_cache_disabled_by_config(self, pattern_store, embedder, extractor):
        # Arrange
        learner = PatternLearner(pattern_store, embedder)
        decomposer = QueryDecomposer(learner, QueryConfig(enable_pattern_cache=False))
        self.learn_confident(learner, extractor, decomposer, "total balance by issuer")

        # Act
        plan = decompose(decomposer, extractor, "total balance by issuer")

        # Assert
        assert plan.resolution_path is ResolutionPath.FRESH_DECOMPOSE

    def test_embedding_failure_degrades_to_fresh(self, pattern_store, extractor):
        # Arrange
        embedder = Mock()
        embedder.embed.side_effect = EmbeddingServiceError("model offline")
        decomposer = QueryDecomposer(PatternLearner(pattern_store, embedder))

        # Act
        plan = decompose(decomposer, extractor, "total balance by issuer")

        # Assert
        assert plan.resolution_path is ResolutionPath.FRESH_DECOMPOSE

    def test_store_failure_degrades_to_fresh(self, embedder, extractor):
        # Arrange
        store = Mock(spec=PatternStore)
        store.find_similar.side_effect = ExternalStoreUnavailable("connection refused")
        decomposer = QueryDecomposer(PatternLearner(store, embedder))

        # Act
        plan = decompose(decomposer, extractor, "total balance by issuer")

        # Assert
        assert plan.resolution_path is ResolutionPath.FRESH_DECOMPOSE
        store.find_similar.assert_called_once()


class TestContextMerge:
    """Merging prior-turn filters into follow-ups."""

    def context_after(self, decomposer, extractor, text):
        context = ConversationContext("s1")
        plan = decompose(decomposer, extractor, text)
        context.record_turn("q1", text, plan, plan.resolution_path)
        return context

    def test_follow_up_adds_prior_filters(self, decomposer, extractor):
        # Arrange
        context = self.context_after(decomposer, extractor, "visa cards")

        # Act
        plan = decompose(decomposer, extractor, "with balance over 5000", context)

        # Assert
        assert [(p.field, p.value) for p in plan.predicates] == [
            (CardField.CURRENT_BALANCE, 5000),
            (CardField.CARD_NETWORK, "Visa"),
        ]
        assert plan.connector is LogicalConnector.AND
        assert plan.output_format is OutputFormat.TABLE

    def test_current_turn_wins_on_same_field(self, decomposer, extractor):
        # Arrange
        context = self.context_after(decomposer, extractor, "visa cards")

        # Act
        plan = decompose(decomposer, extractor, "mastercard cards", context)

        # Assert
        assert [(p.field, p.value) for p in plan.predicates] == [(CardField.CARD_NETWORK, "Mastercard")]

    def test_prior_filters_scope_aggregates(self, decomposer, extractor):
        # Arrange
        context = self.context_after(decomposer, extractor, "visa cards")

        # Act
        plan = decompose(decomposer, extractor, "total balance", context)

        # Assert
        assert isinstance(plan, AggregateQuery)
        assert [p.field for p in plan.predicates] == [CardField.CARD_NETWORK]

    def test_retained_filters_distribute_over_or_groups(self, decomposer, extractor):
        """(balance > 5000 OR apr < 18) after 'visa cards' keeps visa on both sides."""
        # Arrange
        context = self.context_after(decomposer, extractor, "visa cards")

        # Act
        plan = decompose(decomposer, extractor, "cards with balance over 5000 or apr under 18", context)

        # Assert
        groups = predicate_groups(plan.predicates, plan.connector)
        assert [[p.field for p in group] for group in groups] == [
            [CardField.CURRENT_BALANCE, CardField.CARD_NETWORK],
            [CardField.APR, CardField.CARD_NETWORK],
        ]

    def test_never_mode_ignores_context(self, extractor):
        # Arrange
        decomposer = QueryDecomposer(config=QueryConfig(context_merge_mode="never"))
        context = self.context_after(decomposer, extractor, "visa cards")

        # Act
        plan = decompose(decomposer, extractor, "with balance over 5000", context)

        # Assert
        assert [p.field for p in plan.predicates] == [CardField.CURRENT_BALANCE]

    def test_follow_up_mode_merges_only_follow_ups(self, extractor):
        # Arrange
        decomposer = QueryDecomposer(config=QueryConfig(context_merge_mode="follow_up"))
        context = self.context_after(decomposer, extractor, "visa cards")

        # Act
        standalone = decompose(decomposer, extractor, "show me cards with balance over 5000 please", context)
        follow_up = decompose(decomposer, extractor, "and balance over 5000", context)

        # Assert
        assert [p.field for p in standalone.predicates] == [CardField.CURRENT_BALANCE]
        assert [p.field for p in follow_up.predicates] == [CardField.CURRENT_BALANCE, CardField.CARD_NETWORK]
