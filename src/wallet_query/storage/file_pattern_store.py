"""
FilePatternStore - JSON-file backed PatternStore.

The whole store is one JSON document ({"version": 1, "patterns": [...]})
loaded lazily on first use and rewritten atomically (temp file + rename) on
every upsert. Any filesystem failure surfaces as ExternalStoreUnavailable so
the pipeline can degrade to fresh decomposition.
"""

import json
import os
import tempfile
import threading
from pathlib import Path

import structlog

from wallet_query.core.errors import ExternalStoreUnavailable
from wallet_query.core.pattern_store import PatternMatch, PatternRecord, PatternStore, rank_by_similarity

logger = structlog.get_logger()

STORE_FORMAT_VERSION = 1


class FilePatternStore(PatternStore):
    """
    Pattern store persisted to a single JSON file.

    Args:
        path: JSON file location (created on first write)
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._records: dict[str, PatternRecord] | None = None
        self._lock = threading.Lock()

    def upsert_pattern(self, record: PatternRecord) -> PatternRecord:
        with self._lock:
            records = {**self._load(), record.id: record}
            self._write(records)
            self._records = records
        return record

    def find_similar(
        self,
        embedding: list[float],
        top_k: int,
        min_similarity: float,
        min_confidence: float = 0.0,
        intent: str | None = None,
    ) -> list[PatternMatch]:
        with self._lock:
            records = list(self._load().values())
        return rank_by_similarity(records, embedding, top_k, min_similarity, min_confidence, intent)

    def get_pattern(self, pattern_id: str) -> PatternRecord | None:
        with self._lock:
            record = self._load().get(pattern_id)
        return PatternRecord.from_dict(record.to_dict()) if record is not None else None

    def list_patterns(self) -> list[PatternRecord]:
        with self._lock:
            return [PatternRecord.from_dict(r.to_dict()) for r in self._load().values()]

    def _load(self) -> dict[str, PatternRecord]:
        if self._records is not None:
            return self._records
        if not self.path.exists():
            self._records = {}
            return self._records

        try:
            with open(self.path) as f:
                data = json.load(f)
            records = [PatternRecord.from_dict(item) for item in data.get("patterns", [])]
        except OSError as e:
            raise ExternalStoreUnavailable(f"Cannot read pattern store {self.path}: {e}") from e
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ExternalStoreUnavailable(f"Corrupt pattern store {self.path}: {e}") from e

        self._records = {r.id: r for r in records}
        logger.info("pattern_store_loaded", path=str(self.path), patterns=len(self._records))
        return self._records

    def _write(self, records: dict[str, PatternRecord]) -> None:
        payload = {
            "version": STORE_FORMAT_VERSION,
            "patterns": [r.to_dict() for r in records.values()],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".patterns-", suffix=".json")
        except OSError as e:
            raise ExternalStoreUnavailable(f"Cannot write pattern store {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f)
            os.replace(tmp_name, self.path)
        except (OSError, TypeError, ValueError) as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise ExternalStoreUnavailable(f"Cannot write pattern store {self.path}: {e}") from e

    def __len__(self) -> int:
        with self._lock:
            return len(self._load())
