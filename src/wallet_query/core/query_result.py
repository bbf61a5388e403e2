"""
Typed execution results.

One result type per plan variant. Every result carries how many records
matched the plan's predicates, how many were excluded because a value could
not be coerced (or was null where a number was required), and the
execution time.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, ClassVar

from wallet_query.core.entities import AggregationVerb
from wallet_query.core.field_map import CardField
from wallet_query.core.query_plan import PlanKind


def _jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True, kw_only=True)
class ExecutionResult:
    matched_count: int
    excluded_count: int = 0
    elapsed_ms: float = 0.0

    kind: ClassVar[PlanKind]

    @property
    def size(self) -> int:
        """Number of rows the presenter will render."""
        raise NotImplementedError

    def metadata(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "matched_count": self.matched_count,
            "excluded_count": self.excluded_count,
            "elapsed_ms": round(self.elapsed_ms, 3),
        }

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class DistinctValue:
    value: str
    count: int | None = None


@dataclass(frozen=True, kw_only=True)
class DistinctResult(ExecutionResult):
    field: CardField
    values: tuple[DistinctValue, ...] = ()

    kind: ClassVar[PlanKind] = PlanKind.DISTINCT

    @property
    def size(self) -> int:
        return len(self.values)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.metadata(),
            "field": self.field.value,
            "values": [{"value": v.value, "count": v.count} for v in self.values],
        }


@dataclass(frozen=True, kw_only=True)
class ScalarResult(ExecutionResult):
    """Aggregate over all matching records."""

    verb: AggregationVerb
    field: CardField | None
    value: float | int | None
    considered_count: int

    kind: ClassVar[PlanKind] = PlanKind.AGGREGATE

    @property
    def size(self) -> int:
        return 1

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.metadata(),
            "verb": self.verb.value,
            "field": self.field.value if self.field else None,
            "value": self.value,
            "considered_count": self.considered_count,
        }


@dataclass(frozen=True)
class GroupRow:
    group: str
    value: float | int | None
    considered_count: int
    excluded_count: int = 0


@dataclass(frozen=True, kw_only=True)
class GroupedResult(ExecutionResult):
    verb: AggregationVerb
    field: CardField | None
    group_field: CardField
    rows: tuple[GroupRow, ...] = ()

    kind: ClassVar[PlanKind] = PlanKind.GROUPED_AGGREGATE

    @property
    def size(self) -> int:
        return len(self.rows)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.metadata(),
            "verb": self.verb.value,
            "field": self.field.value if self.field else None,
            "group_field": self.group_field.value,
            "rows": [
                {
                    "group": row.group,
                    "value": row.value,
                    "considered_count": row.considered_count,
                    "excluded_count": row.excluded_count,
                }
                for row in self.rows
            ],
        }


@dataclass(frozen=True, kw_only=True)
class FilterResult(ExecutionResult):
    """Matching records after sort and limit; matched_count is before the limit."""

    records: tuple[Mapping[str, Any], ...] = ()

    kind: ClassVar[PlanKind] = PlanKind.FILTER

    @property
    def size(self) -> int:
        return len(self.records)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.metadata(),
            "records": [_jsonable(record) for record in self.records],
        }
