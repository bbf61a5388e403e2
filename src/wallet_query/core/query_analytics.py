"""
QueryAnalytics - execution history and aggregate reporting.

Every answered (or fallen-back) utterance is tracked with its resolution
path, latency, result size and outcome. History is held in a bounded
in-memory buffer and, when a QueryLogger is configured, appended to the
session's JSONL log for audit.

Aggregates are computed with Polars over the buffered entries and cached
for stats_ttl seconds.
"""

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import polars as pl
import structlog

from wallet_query.core.entities import EntityBag
from wallet_query.core.query_plan import ResolutionPath, StructuredQuery, plan_to_dict
from wallet_query.core.query_result import ExecutionResult
from wallet_query.storage.query_logger import QueryLogger

logger = structlog.get_logger()

TOP_N = 10
_NEGATIVE_SIGNALS = frozenset({"thumbs_down", "correction", "repeated_query"})


@dataclass
class QueryLogEntry:
    """One tracked utterance."""

    query_id: str
    session_id: str
    query_text: str
    timestamp: datetime
    resolution_path: str
    success: bool
    latency_ms: float
    result_kind: str | None = None
    result_size: int = 0
    matched_count: int | None = None
    excluded_count: int = 0
    plan: dict[str, Any] | None = None
    entities: dict[str, Any] | None = None
    error: str | None = None
    pattern_id: str | None = None
    feedback: list[str] = field(default_factory=list)

    @property
    def normalized_text(self) -> str:
        return " ".join(self.query_text.strip().split()).lower()


@dataclass(frozen=True)
class QueryStats:
    total_queries: int
    successful_queries: int
    success_rate: float
    latency_mean_ms: float | None
    latency_median_ms: float | None
    latency_min_ms: float | None
    latency_max_ms: float | None
    resolution_paths: dict[str, int]
    pattern_usage_rate: float
    fallback_rate: float
    top_queries: list[tuple[str, int]]
    top_errors: list[tuple[str, int]]

    @classmethod
    def empty(cls) -> "QueryStats":
        return cls(
            total_queries=0,
            successful_queries=0,
            success_rate=0.0,
            latency_mean_ms=None,
            latency_median_ms=None,
            latency_min_ms=None,
            latency_max_ms=None,
            resolution_paths={},
            pattern_usage_rate=0.0,
            fallback_rate=0.0,
            top_queries=[],
            top_errors=[],
        )


class QueryAnalytics:
    """
    Tracks query executions and reports aggregates.

    Args:
        query_logger: Optional JSONL audit log
        history_size: Maximum number of entries kept in memory
        stats_ttl: Seconds a computed QueryStats stays cached
        clock: Returns the current time (overridable in tests)
    """

    def __init__(
        self,
        query_logger: QueryLogger | None = None,
        history_size: int = 1000,
        stats_ttl: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.query_logger = query_logger
        self.stats_ttl = stats_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: deque[QueryLogEntry] = deque(maxlen=history_size)
        self._index: dict[str, QueryLogEntry] = {}
        self._lock = threading.Lock()
        self._stats_cache: dict[datetime | None, tuple[datetime, QueryStats]] = {}

    def track_query(
        self,
        query_id: str,
        session_id: str,
        text: str,
        entities: EntityBag | None,
        plan: StructuredQuery | None,
        result: ExecutionResult | None,
        resolution_path: ResolutionPath,
        success: bool = True,
        error: str | None = None,
        latency_ms: float = 0.0,
        write_log: bool = True,
    ) -> QueryLogEntry:
        """
        Record one execution (or fallback) for later reporting.

        With write_log=False the entry is only registered in memory and the
        caller writes the audit log later through log_entry().
        """
        entry = QueryLogEntry(
            query_id=query_id,
            session_id=session_id,
            query_text=text,
            timestamp=self._clock(),
            resolution_path=resolution_path.value,
            success=success,
            latency_ms=latency_ms,
            result_kind=result.kind.value if result is not None else None,
            result_size=result.size if result is not None else 0,
            matched_count=result.matched_count if result is not None else None,
            excluded_count=result.excluded_count if result is not None else 0,
            plan=plan_to_dict(plan) if plan is not None else None,
            entities=entities.to_dict() if entities is not None else None,
            error=error,
            pattern_id=plan.pattern_id if plan is not None else None,
        )

        with self._lock:
            if self._entries.maxlen is not None and len(self._entries) == self._entries.maxlen:
                evicted = self._entries[0]
                self._index.pop(evicted.query_id, None)
            self._entries.append(entry)
            self._index[query_id] = entry

        if write_log:
            self.log_entry(entry, result)

        logger.debug(
            "query_tracked",
            query_id=query_id,
            resolution_path=entry.resolution_path,
            success=success,
            latency_ms=round(latency_ms, 3),
        )
        return entry

    def log_entry(self, entry: QueryLogEntry, result: ExecutionResult | None = None) -> None:
        """Append a tracked entry (query, plan and result events) to the session log."""
        if self.query_logger is None:
            return
        timestamp = entry.timestamp.isoformat()
        self.query_logger.log_query(entry.session_id, entry.query_text, timestamp=timestamp, query_id=entry.query_id)
        if entry.plan is not None:
            self.query_logger.log_execution(
                entry.session_id, entry.query_id, entry.plan, entry.latency_ms, timestamp=timestamp
            )
        if result is not None:
            self.query_logger.log_result(entry.session_id, entry.query_id, entry.result_kind, result.metadata(), timestamp)

    def get_entry(self, query_id: str) -> QueryLogEntry | None:
        with self._lock:
            return self._index.get(query_id)

    def attach_pattern(self, query_id: str, pattern_id: str) -> None:
        """Link a tracked query to the pattern learned from it."""
        with self._lock:
            entry = self._index.get(query_id)
            if entry is not None:
                entry.pattern_id = pattern_id

    def record_feedback(
        self, query_id: str, signal: str, correction_text: str | None = None, write_log: bool = True
    ) -> bool:
        """
        Attach a feedback signal to a tracked query.

        Returns:
            False if the query is no longer in history
        """
        with self._lock:
            entry = self._index.get(query_id)
            if entry is None:
                return False
            entry.feedback.append(signal)

        if write_log:
            self.log_feedback(entry, signal, correction_text)
        return True

    def log_feedback(self, entry: QueryLogEntry, signal: str, correction_text: str | None = None) -> None:
        if self.query_logger is not None:
            self.query_logger.log_feedback(
                entry.session_id,
                entry.query_id,
                signal,
                correction_text=correction_text,
                timestamp=self._clock().isoformat(),
            )

    def entries(self, since: datetime | None = None) -> list[QueryLogEntry]:
        with self._lock:
            entries = list(self._entries)
        if since is not None:
            entries = [e for e in entries if e.timestamp >= since]
        return entries

    def get_query_stats(self, since: datetime | None = None) -> QueryStats:
        """Aggregate statistics over tracked queries (optionally since a time)."""
        now = self._clock()
        cached = self._stats_cache.get(since)
        if cached is not None and (now - cached[0]).total_seconds() < self.stats_ttl:
            return cached[1]

        stats = self._compute_stats(self.entries(since))
        self._stats_cache[since] = (now, stats)
        return stats

    def get_pattern_metrics(self) -> dict[str, dict[str, Any]]:
        """Per-pattern usage, success and latency from tracked history."""
        entries = [e for e in self.entries() if e.pattern_id is not None]
        if not entries:
            return {}

        df = pl.DataFrame(
            {
                "pattern_id": [e.pattern_id for e in entries],
                "success": [e.success for e in entries],
                "latency_ms": [e.latency_ms for e in entries],
                "negative": [sum(1 for f in e.feedback if f in _NEGATIVE_SIGNALS) for e in entries],
            }
        )
        grouped = (
            df.group_by("pattern_id")
            .agg(
                pl.len().alias("usage_count"),
                pl.col("success").sum().alias("success_count"),
                pl.col("latency_ms").mean().alias("avg_latency_ms"),
                pl.col("negative").sum().alias("negative_feedback"),
            )
            .sort("pattern_id")
        )
        metrics = {}
        for row in grouped.iter_rows(named=True):
            usage = int(row["usage_count"])
            success = int(row["success_count"])
            metrics[row["pattern_id"]] = {
                "usage_count": usage,
                "success_count": success,
                "success_rate": success / usage if usage else 0.0,
                "avg_latency_ms": float(row["avg_latency_ms"]),
                "negative_feedback": int(row["negative_feedback"]),
            }
        return metrics

    @staticmethod
    def _compute_stats(entries: list[QueryLogEntry]) -> QueryStats:
        if not entries:
            return QueryStats.empty()

        df = pl.DataFrame(
            {
                "query": [e.normalized_text for e in entries],
                "resolution_path": [e.resolution_path for e in entries],
                "success": [e.success for e in entries],
                "latency_ms": [float(e.latency_ms) for e in entries],
                "error": [e.error for e in entries],
            },
            schema={
                "query": pl.Utf8,
                "resolution_path": pl.Utf8,
                "success": pl.Boolean,
                "latency_ms": pl.Float64,
                "error": pl.Utf8,
            },
        )
        total = df.height
        successful = int(df["success"].sum())
        latency = df["latency_ms"]

        paths = df.group_by("resolution_path").agg(pl.len().alias("count")).sort("resolution_path")
        path_counts = {row["resolution_path"]: int(row["count"]) for row in paths.iter_rows(named=True)}

        top_queries = (
            df.group_by("query")
            .agg(pl.len().alias("count"))
            .sort(["count", "query"], descending=[True, False])
            .head(TOP_N)
        )
        top_errors = (
            df.filter(pl.col("error").is_not_null())
            .group_by("error")
            .agg(pl.len().alias("count"))
            .sort(["count", "error"], descending=[True, False])
            .head(TOP_N)
        )

        return QueryStats(
            total_queries=total,
            successful_queries=successful,
            success_rate=successful / total,
            latency_mean_ms=float(latency.mean()),
            latency_median_ms=float(latency.median()),
            latency_min_ms=float(latency.min()),
            latency_max_ms=float(latency.max()),
            resolution_paths=path_counts,
            pattern_usage_rate=path_counts.get(ResolutionPath.PATTERN_CACHE.value, 0) / total,
            fallback_rate=path_counts.get(ResolutionPath.LLM_FALLBACK.value, 0) / total,
            top_queries=[(row["query"], int(row["count"])) for row in top_queries.iter_rows(named=True)],
            top_errors=[(row["error"], int(row["count"])) for row in top_errors.iter_rows(named=True)],
        )
