"""
Typed configuration for the wallet query pipeline.

Values come from config/wallet_query.yaml and environment overrides via
config_loader.load_config(); the dataclass defaults apply when neither sets
a key.
"""

from dataclasses import asdict, dataclass, fields
from typing import Any, Literal

ContextMergeMode = Literal["always", "follow_up", "never"]


@dataclass(frozen=True)
class QueryConfig:
    """Thresholds and switches for decomposition, learning and feedback."""

    # Pattern cache (decomposer fast path)
    enable_pattern_cache: bool = True
    cache_similarity_threshold: float = 0.85
    cache_confidence_threshold: float = 0.8
    entity_shape_threshold: float = 0.7
    retrieval_top_k: int = 5
    retrieval_min_confidence: float = 0.1

    # Pattern learner
    enable_learning: bool = True
    learn_from_empty_results: bool = False
    merge_similarity_threshold: float = 0.95
    initial_confidence: float = 0.5
    confidence_learning_rate: float = 0.2
    confidence_floor: float = 0.05
    max_variations: int = 20
    max_corrections: int = 10

    # Decomposer
    fallback_confidence_threshold: float = 0.5
    card_data_intents: str = "query_card_data,card_query,list_cards"
    context_merge_mode: str = "always"
    and_binds_tighter: bool = True

    # Conversation and feedback heuristics
    history_window: int = 5
    fast_follow_up_seconds: float = 30.0
    repeat_window_seconds: float = 60.0
    implicit_signal_weight: float = 0.5

    # Analytics, background work, storage
    analytics_history_size: int = 1000
    stats_cache_ttl_seconds: float = 60.0
    background_workers: int = 2
    background_timeout_seconds: float = 5.0
    query_log_dir: str = ""
    pattern_store_path: str = ""
    embedding_model: str = "all-MiniLM-L6-v2"

    @property
    def supported_intents(self) -> frozenset[str]:
        return frozenset(i.strip() for i in self.card_data_intents.split(",") if i.strip())

    def to_dict(self) -> dict[str, Any]:
        """Convert dataclass to dictionary."""
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "QueryConfig":
        """Build from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})
