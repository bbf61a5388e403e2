"""
QueryLogger - JSONL audit log of wallet queries.

Architecture:
- One JSONL file per session: {session_id}_queries.jsonl
- Append-only (never rewrite entire file)
- Four event types: query, execution, result, feedback
"""

import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class QueryLogger:
    """
    Logs query events to JSONL files.

    Example Usage:
        >>> query_log = QueryLogger(Path("data/query_logs"))
        >>> query_log.log_query("session_1", "total balance by issuer", query_id="q1")
        >>> query_log.log_execution("session_1", "q1", {"kind": "grouped_aggregate"}, 3.2)
        >>> query_log.log_result("session_1", "q1", "grouped_aggregate", {"matched_count": 14})
    """

    def __init__(self, log_dir: Path | str):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"QueryLogger initialized with log directory: {self.log_dir}")

    def log_query(
        self,
        session_id: str,
        query_text: str,
        timestamp: str | None = None,
        query_id: str | None = None,
    ) -> None:
        """
        Log a user utterance.

        Args:
            session_id: Session identifier (scopes log file)
            query_text: Natural language query from user
            timestamp: ISO 8601 timestamp (auto-generated if not provided)
            query_id: Optional query identifier for correlation
        """
        entry = {
            "event_type": "query",
            "session_id": session_id,
            "query_text": query_text,
            "timestamp": timestamp or _now(),
        }
        if query_id:
            entry["query_id"] = query_id
        self._append_entry(session_id, entry)

    def log_execution(
        self,
        session_id: str,
        query_id: str,
        query_plan: dict[str, Any],
        execution_time_ms: float,
        timestamp: str | None = None,
    ) -> None:
        """Log the structured query that was executed and how long the turn took."""
        self._append_entry(
            session_id,
            {
                "event_type": "execution",
                "session_id": session_id,
                "query_id": query_id,
                "query_plan": query_plan,
                "execution_time_ms": execution_time_ms,
                "timestamp": timestamp or _now(),
            },
        )

    def log_result(
        self,
        session_id: str,
        query_id: str,
        result_type: str,
        result_summary: dict[str, Any],
        timestamp: str | None = None,
    ) -> None:
        self._append_entry(
            session_id,
            {
                "event_type": "result",
                "session_id": session_id,
                "query_id": query_id,
                "result_type": result_type,
                "result_summary": result_summary,
                "timestamp": timestamp or _now(),
            },
        )

    def log_feedback(
        self,
        session_id: str,
        query_id: str,
        signal: str,
        correction_text: str | None = None,
        timestamp: str | None = None,
    ) -> None:
        """Log an explicit or implicit feedback signal for a previous query."""
        entry = {
            "event_type": "feedback",
            "session_id": session_id,
            "query_id": query_id,
            "signal": signal,
            "timestamp": timestamp or _now(),
        }
        if correction_text:
            entry["correction_text"] = correction_text
        self._append_entry(session_id, entry)

    def get_query_history(self, session_id: str) -> list[dict[str, Any]]:
        """
        Retrieve all events for a session.

        Returns:
            List of event dicts in chronological order
        """
        log_file = self._get_log_file(session_id)

        if not log_file.exists():
            return []

        entries = []
        with open(log_file) as f:
            for line in f:
                if line.strip():
                    entries.append(json.loads(line))

        return entries

    def get_latest_queries(self, session_id: str, limit: int = 10) -> list[dict[str, Any]]:
        """
        Retrieve N most recent query events.

        Returns:
            List of query event dicts (newest first)
        """
        history = self.get_query_history(session_id)
        queries = [e for e in history if e["event_type"] == "query"]
        return list(reversed(queries[-limit:]))

    def _append_entry(self, session_id: str, entry: dict[str, Any]) -> None:
        log_file = self._get_log_file(session_id)

        # One JSON object per line
        with self._lock, open(log_file, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

        logger.debug(f"Logged {entry['event_type']} event to {log_file.name}")

    def _get_log_file(self, session_id: str) -> Path:
        return self.log_dir / f"{_UNSAFE_CHARS.sub('_', session_id)}_queries.jsonl"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
