"""
Tests for StructuredQuery plans: validation, serialization and fingerprints.
"""

from datetime import date

import pytest

from wallet_query.core.entities import AggregationVerb, LogicalConnector, Operator, SortDirection
from wallet_query.core.errors import MalformedQueryError
from wallet_query.core.field_map import CardField
from wallet_query.core.query_plan import (
    AggregateQuery,
    DistinctQuery,
    FilterQuery,
    GroupedAggregateQuery,
    OutputFormat,
    PlanKind,
    Predicate,
    ResolutionPath,
    SortSpec,
    plan_fingerprint,
    plan_from_dict,
    plan_to_dict,
    plan_to_json,
    validate_plan,
)


def due_soon_filter() -> FilterQuery:
    return FilterQuery(
        source_intent="query_card_data",
        output_format=OutputFormat.TABLE,
        predicates=(
            Predicate(CardField.CARD_NETWORK, Operator.IN, ("Visa", "Mastercard")),
            Predicate(CardField.PAYMENT_DUE_DATE, Operator.BETWEEN, (date(2026, 3, 1), date(2026, 3, 15))),
        ),
        sort=SortSpec(CardField.CURRENT_BALANCE, SortDirection.DESC),
        limit=5,
    )


class TestPlanValidation:
    """Plans validate on construction."""

    def test_aggregate_sum_without_field_is_malformed(self):
        """Only count may omit its field."""
        # Act & Assert
        with pytest.raises(MalformedQueryError, match="sum requires a field"):
            AggregateQuery(source_intent="query_card_data", output_format=OutputFormat.SUMMARY, verb=AggregationVerb.SUM)

    def test_aggregate_count_without_field_is_valid(self):
        """Count without a field counts records."""
        # Act
        plan = AggregateQuery(
            source_intent="query_card_data", output_format=OutputFormat.SUMMARY, verb=AggregationVerb.COUNT
        )

        # Assert
        assert plan.kind is PlanKind.AGGREGATE
        assert plan.field is None

    def test_between_requires_pair(self):
        """BETWEEN needs exactly a (low, high) tuple."""
        # Act & Assert
        with pytest.raises(MalformedQueryError, match="between"):
            FilterQuery(
                source_intent="query_card_data",
                output_format=OutputFormat.LIST,
                predicates=(Predicate(CardField.APR, Operator.BETWEEN, 15),),
            )

    def test_in_requires_non_empty_tuple(self):
        # Act & Assert
        with pytest.raises(MalformedQueryError):
            FilterQuery(
                source_intent="query_card_data",
                output_format=OutputFormat.LIST,
                predicates=(Predicate(CardField.ISSUER, Operator.IN, ()),),
            )

    def test_distinct_field_must_be_card_field(self):
        """Raw tokens never reach a plan."""
        # Act & Assert
        with pytest.raises(MalformedQueryError):
            DistinctQuery(source_intent="query_card_data", output_format=OutputFormat.LIST, field="issuers")

    def test_negative_limit_is_malformed(self):
        # Act & Assert
        with pytest.raises(MalformedQueryError, match="limit"):
            FilterQuery(source_intent="query_card_data", output_format=OutputFormat.LIST, limit=-1)

    def test_validate_plan_catches_mutation_after_construction(self):
        """validate_plan re-checks a plan that was altered after it was built."""
        # Arrange
        plan = AggregateQuery(
            source_intent="query_card_data",
            output_format=OutputFormat.SUMMARY,
            verb=AggregationVerb.SUM,
            field=CardField.CURRENT_BALANCE,
        )
        object.__setattr__(plan, "field", None)

        # Act & Assert
        with pytest.raises(MalformedQueryError):
            validate_plan(plan)

    def test_malformed_query_error_lists_every_violation(self):
        """All violated constraints are reported together."""
        # Act
        with pytest.raises(MalformedQueryError) as exc_info:
            FilterQuery(
                source_intent="query_card_data",
                output_format="table",
                predicates=(Predicate(CardField.APR, Operator.BETWEEN, 15),),
                limit=-2,
            )

        # Assert
        assert len(exc_info.value.errors) == 3


class TestPlanSerialization:
    """Plans serialize to primitives and back."""

    def test_plan_round_trips_through_dict(self):
        """Dates, tuples, sort and limit survive plan_to_dict / plan_from_dict."""
        # Arrange
        plan = due_soon_filter()

        # Act
        rebuilt = plan_from_dict(plan_to_dict(plan))

        # Assert
        assert rebuilt == plan

    def test_plan_to_dict_can_omit_provenance(self):
        """Provenance is dropped when stored as a learned pattern."""
        # Arrange
        plan = due_soon_filter().with_provenance(ResolutionPath.PATTERN_CACHE, "p1")

        # Act
        data = plan_to_dict(plan, include_provenance=False)

        # Assert
        assert "resolution_path" not in data
        assert "pattern_id" not in data
        assert data["kind"] == "filter"

    def test_plan_from_dict_rejects_unknown_field(self):
        """Unknown canonical names raise MalformedQueryError."""
        # Arrange
        data = plan_to_dict(due_soon_filter())
        data["predicates"][0]["field"] = "colour"

        # Act & Assert
        with pytest.raises(MalformedQueryError, match="cannot rebuild plan"):
            plan_from_dict(data)

    def test_plan_to_json_is_canonical(self):
        """Equal plans serialize to identical JSON."""
        # Act & Assert
        assert plan_to_json(due_soon_filter()) == plan_to_json(due_soon_filter())

    def test_fingerprint_ignores_provenance(self):
        """The same plan from the cache or fresh decomposition fingerprints equally."""
        # Arrange
        fresh = due_soon_filter()
        cached = fresh.with_provenance(ResolutionPath.PATTERN_CACHE, "p1")

        # Act & Assert
        assert plan_fingerprint(fresh) == plan_fingerprint(cached)

    def test_fingerprint_changes_with_semantics(self):
        """Different connectors give different fingerprints."""
        # Arrange
        plan = due_soon_filter()
        alternative = FilterQuery(
            source_intent=plan.source_intent,
            output_format=plan.output_format,
            predicates=plan.predicates,
            connector=LogicalConnector.OR,
            sort=plan.sort,
            limit=plan.limit,
        )

        # Act & Assert
        assert plan_fingerprint(plan) != plan_fingerprint(alternative)

    def test_grouped_plan_serializes_group_field(self):
        # Arrange
        plan = GroupedAggregateQuery(
            source_intent="query_card_data",
            output_format=OutputFormat.TABLE,
            verb=AggregationVerb.SUM,
            field=CardField.CURRENT_BALANCE,
            group_field=CardField.ISSUER,
        )

        # Act
        data = plan_to_dict(plan)

        # Assert
        assert data["kind"] == "grouped_aggregate"
        assert data["group_field"] == "issuer"
        assert data["field"] == "current_balance"
        assert data["verb"] == "sum"
