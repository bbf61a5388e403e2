"""
Structured Query: the canonical, immutable plan for a card question.

A plan is one of four variants (distinct, aggregate, grouped aggregate,
filter). Every variant carries the intent it was built for, the output
format the presenter should use and the optional pre-filter predicates that
scope the records it runs over. Field references are always CardField
members; the executor never sees natural-language tokens.

Plans validate themselves on construction and raise MalformedQueryError
when an invariant is violated.
"""

import hashlib
import json
from dataclasses import dataclass, fields, replace
from datetime import date
from enum import Enum
from typing import Any, ClassVar

from wallet_query.core.entities import AggregationVerb, LogicalConnector, Operator, SortDirection
from wallet_query.core.errors import MalformedQueryError
from wallet_query.core.field_map import CardField, ValueType, field_spec


class PlanKind(Enum):
    DISTINCT = "distinct"
    AGGREGATE = "aggregate"
    GROUPED_AGGREGATE = "grouped_aggregate"
    FILTER = "filter"


class OutputFormat(Enum):
    TABLE = "table"
    LIST = "list"
    SUMMARY = "summary"


class ResolutionPath(Enum):
    """Which mechanism produced a turn's answer."""

    PATTERN_CACHE = "pattern_cache"
    FRESH_DECOMPOSE = "fresh_decompose"
    LLM_FALLBACK = "llm_fallback"


_MULTI_VALUE_OPERATORS = (Operator.IN, Operator.NOT_IN)


@dataclass(frozen=True)
class Predicate:
    """Single comparison against a canonical field."""

    field: CardField
    operator: Operator
    value: Any  # tuple for BETWEEN (low, high) and IN / NOT_IN
    connector: LogicalConnector | None = None  # joins to the previous predicate; None uses the query connector

    def validation_errors(self) -> list[str]:
        errors = []
        if not isinstance(self.field, CardField):
            errors.append(f"predicate field must be a CardField, got {self.field!r}")
        if not isinstance(self.operator, Operator):
            errors.append(f"predicate operator must be an Operator, got {self.operator!r}")
            return errors
        if self.operator is Operator.BETWEEN:
            if not isinstance(self.value, tuple) or len(self.value) != 2:
                errors.append("between requires a (low, high) tuple")
        elif self.operator in _MULTI_VALUE_OPERATORS:
            if not isinstance(self.value, tuple) or not self.value:
                errors.append(f"{self.operator.value} requires a non-empty tuple of values")
        if self.connector is not None and not isinstance(self.connector, LogicalConnector):
            errors.append(f"predicate connector must be a LogicalConnector, got {self.connector!r}")
        return errors


@dataclass(frozen=True)
class SortSpec:
    field: CardField
    direction: SortDirection = SortDirection.ASC


@dataclass(frozen=True, kw_only=True)
class StructuredQuery:
    """Fields shared by all plan variants."""

    source_intent: str
    output_format: OutputFormat
    predicates: tuple[Predicate, ...] = ()
    connector: LogicalConnector = LogicalConnector.AND
    resolution_path: ResolutionPath = ResolutionPath.FRESH_DECOMPOSE
    pattern_id: str | None = None

    kind: ClassVar[PlanKind]

    def __post_init__(self) -> None:
        errors = self.validation_errors()
        if errors:
            raise MalformedQueryError(errors)

    def validation_errors(self) -> list[str]:
        errors = []
        if not isinstance(self.output_format, OutputFormat):
            errors.append(f"output_format must be an OutputFormat, got {self.output_format!r}")
        if not isinstance(self.connector, LogicalConnector):
            errors.append(f"connector must be a LogicalConnector, got {self.connector!r}")
        if not isinstance(self.predicates, tuple):
            errors.append("predicates must be a tuple")
            return errors
        for predicate in self.predicates:
            if not isinstance(predicate, Predicate):
                errors.append(f"predicate must be a Predicate, got {predicate!r}")
                continue
            errors.extend(predicate.validation_errors())
        return errors

    def with_provenance(self, resolution_path: ResolutionPath, pattern_id: str | None = None) -> "StructuredQuery":
        return replace(self, resolution_path=resolution_path, pattern_id=pattern_id)


@dataclass(frozen=True, kw_only=True)
class DistinctQuery(StructuredQuery):
    field: CardField
    include_count: bool = True

    kind: ClassVar[PlanKind] = PlanKind.DISTINCT

    def validation_errors(self) -> list[str]:
        errors = super().validation_errors()
        if not isinstance(self.field, CardField):
            errors.append(f"distinct field must be a CardField, got {self.field!r}")
        return errors


@dataclass(frozen=True, kw_only=True)
class AggregateQuery(StructuredQuery):
    verb: AggregationVerb
    field: CardField | None = None  # None only for count: counts records

    kind: ClassVar[PlanKind] = PlanKind.AGGREGATE

    def validation_errors(self) -> list[str]:
        errors = super().validation_errors()
        errors.extend(_aggregate_errors(self.verb, self.field))
        return errors


@dataclass(frozen=True, kw_only=True)
class GroupedAggregateQuery(StructuredQuery):
    verb: AggregationVerb
    group_field: CardField
    field: CardField | None = None

    kind: ClassVar[PlanKind] = PlanKind.GROUPED_AGGREGATE

    def validation_errors(self) -> list[str]:
        errors = super().validation_errors()
        errors.extend(_aggregate_errors(self.verb, self.field))
        if not isinstance(self.group_field, CardField):
            errors.append(f"group_field must be a CardField, got {self.group_field!r}")
        return errors


@dataclass(frozen=True, kw_only=True)
class FilterQuery(StructuredQuery):
    sort: SortSpec | None = None
    limit: int | None = None

    kind: ClassVar[PlanKind] = PlanKind.FILTER

    def validation_errors(self) -> list[str]:
        errors = super().validation_errors()
        if self.sort is not None and not isinstance(self.sort.field, CardField):
            errors.append(f"sort field must be a CardField, got {self.sort.field!r}")
        if self.limit is not None and (not isinstance(self.limit, int) or self.limit < 0):
            errors.append(f"limit must be a non-negative integer, got {self.limit!r}")
        return errors


def _aggregate_errors(verb: Any, card_field: Any) -> list[str]:
    errors = []
    if not isinstance(verb, AggregationVerb):
        errors.append(f"verb must be an AggregationVerb, got {verb!r}")
        return errors
    if card_field is not None and not isinstance(card_field, CardField):
        errors.append(f"aggregate field must be a CardField, got {card_field!r}")
    if card_field is None and verb is not AggregationVerb.COUNT:
        errors.append(f"{verb.value} requires a field")
    return errors


PLAN_TYPES: dict[PlanKind, type[StructuredQuery]] = {
    PlanKind.DISTINCT: DistinctQuery,
    PlanKind.AGGREGATE: AggregateQuery,
    PlanKind.GROUPED_AGGREGATE: GroupedAggregateQuery,
    PlanKind.FILTER: FilterQuery,
}


def validate_plan(plan: StructuredQuery) -> None:
    """
    Re-check a plan's invariants.

    Raises:
        MalformedQueryError: If the plan violates any invariant
    """
    if not isinstance(plan, StructuredQuery) or type(plan) not in PLAN_TYPES.values():
        raise MalformedQueryError([f"not a structured query variant: {type(plan).__name__}"])
    errors = plan.validation_errors()
    if errors:
        raise MalformedQueryError(errors)


def _encode_value(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_encode_value(v) for v in value]
    return value


def _decode_value(value: Any, card_field: CardField) -> Any:
    if isinstance(value, list):
        return tuple(_decode_scalar(v, card_field) for v in value)
    return _decode_scalar(value, card_field)


def _decode_scalar(value: Any, card_field: CardField) -> Any:
    if isinstance(value, str) and field_spec(card_field).value_type is ValueType.DATE:
        try:
            return date.fromisoformat(value)
        except ValueError:
            return value
    return value


def plan_to_dict(plan: StructuredQuery, include_provenance: bool = True) -> dict[str, Any]:
    """Serialize a plan to JSON-compatible primitives."""
    data: dict[str, Any] = {"kind": plan.kind.value}
    for plan_field in fields(plan):
        name = plan_field.name
        if name in ("resolution_path", "pattern_id") and not include_provenance:
            continue
        value = getattr(plan, name)
        if name == "predicates":
            data[name] = [
                {
                    "field": p.field.value,
                    "operator": p.operator.value,
                    "value": _encode_value(p.value),
                    "connector": p.connector.value if p.connector else None,
                }
                for p in value
            ]
        elif name == "sort":
            data[name] = {"field": value.field.value, "direction": value.direction.value} if value else None
        elif isinstance(value, Enum):
            data[name] = value.value
        else:
            data[name] = value
    return data


def plan_from_dict(data: dict[str, Any]) -> StructuredQuery:
    """
    Rebuild a plan from plan_to_dict output.

    Raises:
        MalformedQueryError: If the data does not describe a valid plan
    """
    try:
        kind = PlanKind(data["kind"])
        kwargs: dict[str, Any] = {
            "source_intent": data["source_intent"],
            "output_format": OutputFormat(data["output_format"]),
            "connector": LogicalConnector(data.get("connector", "and")),
            "resolution_path": ResolutionPath(data.get("resolution_path", "fresh_decompose")),
            "pattern_id": data.get("pattern_id"),
        }
        predicates = []
        for raw in data.get("predicates", []):
            card_field = CardField(raw["field"])
            operator = Operator(raw["operator"])
            predicates.append(
                Predicate(
                    field=card_field,
                    operator=operator,
                    value=_decode_value(raw["value"], card_field),
                    connector=LogicalConnector(raw["connector"]) if raw.get("connector") else None,
                )
            )
        kwargs["predicates"] = tuple(predicates)

        if kind is PlanKind.DISTINCT:
            kwargs["field"] = CardField(data["field"])
            kwargs["include_count"] = bool(data.get("include_count", True))
        elif kind in (PlanKind.AGGREGATE, PlanKind.GROUPED_AGGREGATE):
            kwargs["verb"] = AggregationVerb(data["verb"])
            kwargs["field"] = CardField(data["field"]) if data.get("field") else None
            if kind is PlanKind.GROUPED_AGGREGATE:
                kwargs["group_field"] = CardField(data["group_field"])
        else:
            sort = data.get("sort")
            kwargs["sort"] = SortSpec(CardField(sort["field"]), SortDirection(sort["direction"])) if sort else None
            kwargs["limit"] = data.get("limit")
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedQueryError([f"cannot rebuild plan: {e}"]) from e

    return PLAN_TYPES[kind](**kwargs)


def plan_to_json(plan: StructuredQuery, include_provenance: bool = True) -> str:
    """Canonical JSON: identical plans serialize to identical bytes."""
    return json.dumps(plan_to_dict(plan, include_provenance), sort_keys=True, separators=(",", ":"))


def plan_fingerprint(plan: StructuredQuery) -> str:
    """Stable hash of the plan's semantics, ignoring provenance."""
    return hashlib.sha256(plan_to_json(plan, include_provenance=False).encode()).hexdigest()[:16]
