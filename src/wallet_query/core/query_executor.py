"""
QueryExecutor - evaluates structured queries against card records.

Pure and synchronous: no I/O, records are never mutated. Values are coerced
in Python (see operators) and the counting and aggregation run in Polars.

Connector Precedence:
    With and_binds_tighter (the default) a predicate list
    P1 AND P2 OR P3 evaluates as (P1 AND P2) OR P3. With it disabled,
    predicates fold left to right.
"""

import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from typing import Any

import polars as pl
import structlog

from wallet_query.core.entities import AggregationVerb, LogicalConnector, SortDirection
from wallet_query.core.errors import CoercionError
from wallet_query.core.field_map import CardField, field_spec
from wallet_query.core.operators import coerce, evaluate_predicate, get_field_value, is_null, to_number, to_text
from wallet_query.core.query_plan import (
    AggregateQuery,
    DistinctQuery,
    FilterQuery,
    GroupedAggregateQuery,
    StructuredQuery,
    validate_plan,
)
from wallet_query.core.query_result import (
    DistinctResult,
    DistinctValue,
    ExecutionResult,
    FilterResult,
    GroupedResult,
    GroupRow,
    ScalarResult,
)

logger = structlog.get_logger()

Record = Mapping[str, Any]

_AGGREGATIONS = {
    AggregationVerb.SUM: lambda col: col.sum(),
    AggregationVerb.AVG: lambda col: col.mean(),
    AggregationVerb.MIN: lambda col: col.min(),
    AggregationVerb.MAX: lambda col: col.max(),
    AggregationVerb.COUNT: lambda col: col.count(),
}


class QueryExecutor:
    """
    Executes StructuredQuery plans.

    Args:
        and_binds_tighter: Give AND higher precedence than OR when a filter
            mixes connectors
    """

    def __init__(self, and_binds_tighter: bool = True):
        self.and_binds_tighter = and_binds_tighter

    def execute(self, query: StructuredQuery, records: Iterable[Record]) -> ExecutionResult:
        """
        Execute a plan.

        Zero matches is a valid result: an empty typed collection with
        matched_count 0.

        Raises:
            MalformedQueryError: If the plan violates its invariants
        """
        validate_plan(query)
        started = time.perf_counter()
        rows = list(records)
        matched, excluded = self.filter_records(query, rows)

        if isinstance(query, DistinctQuery):
            result: ExecutionResult = self._distinct(query, matched, excluded)
        elif isinstance(query, GroupedAggregateQuery):
            result = self._grouped(query, matched, excluded)
        elif isinstance(query, AggregateQuery):
            result = self._aggregate(query, matched, excluded)
        else:
            result = self._filter(query, matched, excluded)

        elapsed_ms = (time.perf_counter() - started) * 1000
        result = replace(result, elapsed_ms=elapsed_ms)
        logger.debug(
            "query_executed",
            kind=query.kind.value,
            input_count=len(rows),
            matched_count=result.matched_count,
            excluded_count=result.excluded_count,
            elapsed_ms=round(elapsed_ms, 3),
        )
        return result

    def filter_records(self, query: StructuredQuery, records: Sequence[Record]) -> tuple[list[Record], int]:
        """
        Apply the plan's predicates.

        Returns:
            (matching records, number of records excluded by coercion errors)
        """
        if not query.predicates:
            return list(records), 0
        matched = []
        excluded = 0
        for record in records:
            try:
                if self._matches(record, query):
                    matched.append(record)
            except CoercionError as e:
                excluded += 1
                logger.debug("record_excluded", reason=str(e))
        return matched, excluded

    def _matches(self, record: Record, query: StructuredQuery) -> bool:
        # Evaluate every predicate so a coercion error excludes the record
        # regardless of predicate order.
        outcomes = [evaluate_predicate(record, predicate) for predicate in query.predicates]
        connectors = [
            predicate.connector or query.connector for predicate in query.predicates[1:]
        ]

        if not self.and_binds_tighter:
            result = outcomes[0]
            for connector, outcome in zip(connectors, outcomes[1:]):
                result = (result or outcome) if connector is LogicalConnector.OR else (result and outcome)
            return result

        groups: list[list[bool]] = [[outcomes[0]]]
        for connector, outcome in zip(connectors, outcomes[1:]):
            if connector is LogicalConnector.OR:
                groups.append([outcome])
            else:
                groups[-1].append(outcome)
        return any(all(group) for group in groups)

    # Variants

    def _distinct(self, query: DistinctQuery, records: list[Record], excluded: int) -> DistinctResult:
        keys: list[str] = []
        displays: list[str] = []
        for record in records:
            raw = get_field_value(record, query.field)
            if is_null(raw):
                continue
            display = raw.strip() if isinstance(raw, str) else str(raw)
            keys.append(to_text(raw))
            displays.append(display)

        if not keys:
            return DistinctResult(field=query.field, values=(), matched_count=len(records), excluded_count=excluded)

        df = pl.DataFrame({"key": keys, "display": displays}, schema={"key": pl.Utf8, "display": pl.Utf8})
        counts = (
            df.group_by("key", maintain_order=True)
            .agg(pl.col("display").first(), pl.len().alias("count"))
            .sort(["count", "key"], descending=[True, False])
        )
        values = tuple(
            DistinctValue(value=row["display"], count=int(row["count"]) if query.include_count else None)
            for row in counts.iter_rows(named=True)
        )
        return DistinctResult(field=query.field, values=values, matched_count=len(records), excluded_count=excluded)

    def _aggregate(self, query: AggregateQuery, records: list[Record], excluded: int) -> ScalarResult:
        if query.field is None:
            return ScalarResult(
                verb=query.verb,
                field=None,
                value=len(records),
                considered_count=len(records),
                matched_count=len(records),
                excluded_count=excluded,
            )

        numbers: list[float] = []
        skipped = 0
        for record in records:
            number = self._aggregate_input(record, query.verb, query.field)
            if number is None:
                skipped += 1
            else:
                numbers.append(number)

        if query.verb is AggregationVerb.COUNT:
            value: float | int | None = len(numbers)
        elif not numbers:
            value = 0.0 if query.verb is AggregationVerb.SUM else None
        else:
            series = pl.Series("value", numbers, dtype=pl.Float64)
            value = float(_AGGREGATIONS[query.verb](series))

        return ScalarResult(
            verb=query.verb,
            field=query.field,
            value=value,
            considered_count=len(numbers),
            matched_count=len(records),
            excluded_count=excluded + skipped,
        )

    def _grouped(self, query: GroupedAggregateQuery, records: list[Record], excluded: int) -> GroupedResult:
        keys: list[str] = []
        displays: list[str] = []
        values: list[float | None] = []
        ungrouped = 0
        for record in records:
            group_raw = get_field_value(record, query.group_field)
            if is_null(group_raw):
                ungrouped += 1
                continue
            keys.append(to_text(group_raw))
            displays.append(group_raw.strip() if isinstance(group_raw, str) else str(group_raw))
            if query.field is None:
                values.append(1.0)
            else:
                values.append(self._aggregate_input(record, query.verb, query.field))

        if not keys:
            return GroupedResult(
                verb=query.verb,
                field=query.field,
                group_field=query.group_field,
                rows=(),
                matched_count=len(records),
                excluded_count=excluded + ungrouped,
            )

        df = pl.DataFrame(
            {"key": keys, "display": displays, "num": values},
            schema={"key": pl.Utf8, "display": pl.Utf8, "num": pl.Float64},
        )
        grouped = (
            df.group_by("key", maintain_order=True)
            .agg(
                pl.col("display").first(),
                _AGGREGATIONS[query.verb](pl.col("num")).alias("value"),
                pl.col("num").count().alias("considered"),
                pl.len().alias("size"),
            )
            .sort(["value", "key"], descending=[True, False], nulls_last=True)
        )

        rows = []
        skipped_total = 0
        for row in grouped.iter_rows(named=True):
            skipped = int(row["size"]) - int(row["considered"])
            skipped_total += skipped
            value = row["value"]
            if value is not None:
                value = int(value) if query.verb is AggregationVerb.COUNT else float(value)
            rows.append(
                GroupRow(
                    group=row["display"],
                    value=value,
                    considered_count=int(row["considered"]),
                    excluded_count=skipped,
                )
            )

        return GroupedResult(
            verb=query.verb,
            field=query.field,
            group_field=query.group_field,
            rows=tuple(rows),
            matched_count=len(records),
            excluded_count=excluded + ungrouped + skipped_total,
        )

    def _filter(self, query: FilterQuery, records: list[Record], excluded: int) -> FilterResult:
        ordered = records
        if query.sort is not None:
            ordered = self._sorted(records, query.sort.field, query.sort.direction)
        if query.limit is not None:
            ordered = ordered[: query.limit]
        return FilterResult(records=tuple(ordered), matched_count=len(records), excluded_count=excluded)

    # Helpers

    @staticmethod
    def _aggregate_input(record: Record, verb: AggregationVerb, card_field: CardField) -> float | None:
        """Numeric input for one record, or None when it must be left out."""
        raw = get_field_value(record, card_field)
        if is_null(raw):
            return None
        if verb is AggregationVerb.COUNT:
            return 1.0
        try:
            return to_number(raw)
        except CoercionError:
            return None

    @staticmethod
    def _sorted(records: list[Record], card_field: CardField, direction: SortDirection) -> list[Record]:
        """Stable sort; nulls and uncoercible values go last in either direction."""
        value_type = field_spec(card_field).value_type
        keyed = []
        missing = []
        for record in records:
            raw = get_field_value(record, card_field)
            if is_null(raw):
                missing.append(record)
                continue
            try:
                keyed.append((coerce(raw, value_type), record))
            except CoercionError:
                missing.append(record)
        keyed.sort(key=lambda pair: pair[0], reverse=direction is SortDirection.DESC)
        return [record for _, record in keyed] + missing
