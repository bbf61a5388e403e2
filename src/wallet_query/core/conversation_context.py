"""
ConversationContext - per-session memory of applied filters.

Holds the last applied filter set and the last structured query so a
follow-up ("...and also visa") can be merged into the next plan instead of
being re-specified. Updates are last-writer-wins per field; a context is
never shared between sessions.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from wallet_query.core.query_plan import (
    Predicate,
    ResolutionPath,
    StructuredQuery,
    plan_from_dict,
    plan_to_dict,
)

__all__ = ["Turn", "ConversationContext"]

_FOLLOW_UP_PREFIXES = ("and ", "also ", "what about ", "how about ", "only ", "just ", "now ", "but ", "same ")
_FOLLOW_UP_REFERENCES = re.compile(r"\b(?:those|these|them|that one|the same|ones|instead|too|as well)\b")
_RESET_PHRASES = re.compile(r"^(?:start over|reset|clear(?: all)? filters|new question|forget (?:that|it))\b")


@dataclass
class Turn:
    """One answered utterance in the session."""

    query_id: str
    text: str
    normalized_text: str
    timestamp: datetime
    resolution_path: ResolutionPath
    plan: StructuredQuery | None = None
    pattern_id: str | None = None
    matched_count: int | None = None


class ConversationContext:
    """
    Short-lived conversation state for one session.

    Args:
        session_id: Identifier of the owning session
        history_window: Number of recent turns kept
    """

    def __init__(self, session_id: str = "default", history_window: int = 5) -> None:
        self.session_id = session_id
        self.history_window = history_window
        self._turns: list[Turn] = []
        self._active_filters: tuple[Predicate, ...] = ()
        self._last_query: StructuredQuery | None = None

    @property
    def active_filters(self) -> tuple[Predicate, ...]:
        return self._active_filters

    @property
    def last_query(self) -> StructuredQuery | None:
        return self._last_query

    @property
    def last_turn(self) -> Turn | None:
        return self._turns[-1] if self._turns else None

    @property
    def history(self) -> list[Turn]:
        return self._turns.copy()

    def record_turn(
        self,
        query_id: str,
        text: str,
        plan: StructuredQuery | None,
        resolution_path: ResolutionPath,
        matched_count: int | None = None,
        timestamp: datetime | None = None,
    ) -> Turn:
        """
        Record an answered turn and make its filters the active set.

        The plan's predicates already include whatever was merged from the
        previous turn, so they replace the active set wholesale.
        """
        turn = Turn(
            query_id=query_id,
            text=text,
            normalized_text=self.normalize_query(text),
            timestamp=timestamp or datetime.now(timezone.utc),
            resolution_path=resolution_path,
            plan=plan,
            pattern_id=plan.pattern_id if plan is not None else None,
            matched_count=matched_count,
        )
        self._turns.append(turn)
        self._turns = self._turns[-self.history_window :]
        if plan is not None:
            self._last_query = plan
            self._active_filters = plan.predicates
        return turn

    def clear(self) -> None:
        """Clear filters, last query and history."""
        self._turns = []
        self._active_filters = ()
        self._last_query = None

    @staticmethod
    def normalize_query(q: str | None) -> str:
        """
        Normalize query text for comparisons.

        Collapses whitespace and lowercases; None becomes "".
        """
        if q is None:
            return ""
        return " ".join(q.strip().split()).lower()

    @staticmethod
    def is_reset_request(text: str) -> bool:
        return bool(_RESET_PHRASES.match(ConversationContext.normalize_query(text)))

    def is_follow_up(self, text: str) -> bool:
        """
        Heuristic: does the utterance build on the previous turn?

        True for connective openers ("and", "what about"), references to the
        previous result ("those", "them") and very short utterances, but only
        when there is a previous turn to build on.
        """
        if not self._turns:
            return False
        normalized = self.normalize_query(text)
        if normalized.startswith(_FOLLOW_UP_PREFIXES):
            return True
        if _FOLLOW_UP_REFERENCES.search(normalized):
            return True
        return len(normalized.split()) <= 3

    def serialize(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "session_id": self.session_id,
            "history_window": self.history_window,
            "turns": [
                {
                    "query_id": turn.query_id,
                    "text": turn.text,
                    "timestamp": turn.timestamp.isoformat(),
                    "resolution_path": turn.resolution_path.value,
                    "plan": plan_to_dict(turn.plan) if turn.plan is not None else None,
                    "matched_count": turn.matched_count,
                }
                for turn in self._turns
            ],
            "last_query": plan_to_dict(self._last_query) if self._last_query is not None else None,
        }

    @classmethod
    def deserialize(cls, data: dict[str, Any]) -> "ConversationContext":
        """Rebuild a context from serialize() output."""
        context = cls(
            session_id=data.get("session_id", "default"),
            history_window=data.get("history_window", 5),
        )
        for raw in data.get("turns", []):
            plan = plan_from_dict(raw["plan"]) if raw.get("plan") else None
            context._turns.append(
                Turn(
                    query_id=raw["query_id"],
                    text=raw["text"],
                    normalized_text=cls.normalize_query(raw["text"]),
                    timestamp=datetime.fromisoformat(raw["timestamp"]),
                    resolution_path=ResolutionPath(raw["resolution_path"]),
                    plan=plan,
                    pattern_id=plan.pattern_id if plan is not None else None,
                    matched_count=raw.get("matched_count"),
                )
            )
        if data.get("last_query"):
            context._last_query = plan_from_dict(data["last_query"])
            context._active_filters = context._last_query.predicates
        return context
