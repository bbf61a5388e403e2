"""Storage module for the pattern store file backend and query logging."""

from wallet_query.storage.file_pattern_store import FilePatternStore
from wallet_query.storage.query_logger import QueryLogger

__all__ = ["FilePatternStore", "QueryLogger"]
