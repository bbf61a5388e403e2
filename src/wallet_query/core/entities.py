"""
Typed entity bag produced by the entity extractor.

The bag holds raw natural-language field tokens, never canonical fields:
mapping to CardField happens once, in the decomposer.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any


class Operator(Enum):
    """Comparison operators supported by predicates."""

    EQ = "="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not in"
    CONTAINS = "contains"


class AggregationVerb(Enum):
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"

    @property
    def is_numeric(self) -> bool:
        """Verbs that need a numeric field (everything except count)."""
        return self is not AggregationVerb.COUNT


class LogicalConnector(Enum):
    AND = "and"
    OR = "or"


class SortDirection(Enum):
    ASC = "asc"
    DESC = "desc"


class ValueKind(Enum):
    """Kind of literal a comparison value was parsed as."""

    NUMBER = "number"
    MONEY = "money"
    PERCENT = "percent"
    STRING = "string"
    DATE = "date"


@dataclass(frozen=True)
class ComparisonValue:
    """
    Typed literal taken from the text.

    For BETWEEN the value is a (low, high) tuple; for IN / NOT_IN a tuple of
    alternatives.
    """

    kind: ValueKind
    value: Any
    raw: str

    @classmethod
    def of_string(cls, value: str | tuple[str, ...], raw: str) -> "ComparisonValue":
        return cls(kind=ValueKind.STRING, value=value, raw=raw)

    @classmethod
    def of_date(cls, value: date, raw: str) -> "ComparisonValue":
        return cls(kind=ValueKind.DATE, value=value, raw=raw)


@dataclass(frozen=True)
class ComparisonEntity:
    """One filter-shaped entity: field token + operator + value."""

    field_token: str | None
    operator: Operator
    value: ComparisonValue
    start: int
    end: int
    connector: LogicalConnector | None = None  # joins this entity to the previous one


@dataclass(frozen=True)
class DistinctRequest:
    target_token: str | None
    include_count: bool = True


@dataclass(frozen=True)
class SortHint:
    field_token: str | None
    direction: SortDirection


@dataclass
class EntityBag:
    """
    Entities recognized in one utterance.

    Invariant: at most one aggregation verb. Any further, different verbs
    found in the same text are kept in conflicting_verbs so the decomposer can
    surface the contradiction instead of guessing.
    """

    field_reference: str | None = None
    comparisons: list[ComparisonEntity] = field(default_factory=list)
    aggregation_verb: AggregationVerb | None = None
    aggregation_field: str | None = None
    conflicting_verbs: list[AggregationVerb] = field(default_factory=list)
    distinct_request: DistinctRequest | None = None
    logical_connector: LogicalConnector | None = None
    group_by_field: str | None = None
    sort_spec: SortHint | None = None
    limit_spec: int | None = None
    field_tokens: list[str] = field(default_factory=list)

    @property
    def comparison_operator(self) -> Operator | None:
        return self.comparisons[0].operator if self.comparisons else None

    @property
    def comparison_value(self) -> ComparisonValue | None:
        return self.comparisons[0].value if self.comparisons else None

    @property
    def is_empty(self) -> bool:
        return not (
            self.field_reference
            or self.comparisons
            or self.aggregation_verb
            or self.distinct_request
            or self.group_by_field
            or self.sort_spec
            or self.field_tokens
        )

    def shape(self) -> list[str]:
        """Names of the entity slots present, used to compare query shapes."""
        slots = []
        if self.distinct_request:
            slots.append("distinct")
        if self.aggregation_verb:
            slots.append(f"verb:{self.aggregation_verb.value}")
        if self.group_by_field:
            slots.append("group_by")
        if self.comparisons:
            slots.append("filter")
        if len(self.comparisons) > 1:
            slots.append("compound_filter")
        if self.sort_spec:
            slots.append("sort")
        if self.limit_spec is not None:
            slots.append("limit")
        if self.field_reference and not slots:
            slots.append("field_only")
        return slots

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_reference": self.field_reference,
            "comparisons": [
                {
                    "field_token": c.field_token,
                    "operator": c.operator.value,
                    "value": c.value.raw,
                    "connector": c.connector.value if c.connector else None,
                }
                for c in self.comparisons
            ],
            "aggregation_verb": self.aggregation_verb.value if self.aggregation_verb else None,
            "aggregation_field": self.aggregation_field,
            "conflicting_verbs": [v.value for v in self.conflicting_verbs],
            "distinct_request": (
                {
                    "target": self.distinct_request.target_token,
                    "include_count": self.distinct_request.include_count,
                }
                if self.distinct_request
                else None
            ),
            "logical_connector": self.logical_connector.value if self.logical_connector else None,
            "group_by_field": self.group_by_field,
            "sort_spec": (
                {"field": self.sort_spec.field_token, "direction": self.sort_spec.direction.value}
                if self.sort_spec
                else None
            ),
            "limit_spec": self.limit_spec,
        }
