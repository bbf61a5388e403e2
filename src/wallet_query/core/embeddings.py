"""
Embedding capability injected into the pattern learner.

The pipeline only needs `embed(text) -> vector`. Any failure inside an
embedder surfaces as EmbeddingServiceError so callers can degrade to a
cache miss or skip learning.
"""

from collections.abc import Callable, Sequence
from typing import Protocol

import numpy as np
import structlog

from wallet_query.core.errors import EmbeddingServiceError

logger = structlog.get_logger()


class Embedder(Protocol):
    def embed(self, text: str) -> list[float]: ...


class SentenceTransformerEmbedder:
    """
    Embedder backed by a sentence-transformers model.

    The model is loaded lazily on first use so constructing the pipeline
    stays cheap when the pattern cache is disabled.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self.encoder = None

    def embed(self, text: str) -> list[float]:
        try:
            # Lazy load encoder
            if self.encoder is None:
                from sentence_transformers import SentenceTransformer

                self.encoder = SentenceTransformer(self.model_name)

            vector = self.encoder.encode([text])[0]
        except Exception as e:
            logger.warning("embedding_failed", model=self.model_name, error=str(e))
            raise EmbeddingServiceError(f"{self.model_name} failed to embed text: {e}") from e

        return np.asarray(vector, dtype=float).tolist()


class CallableEmbedder:
    """Adapts a plain `embed(text)` callable (e.g. a remote service client)."""

    def __init__(self, embed_fn: Callable[[str], Sequence[float]]):
        self._embed_fn = embed_fn

    def embed(self, text: str) -> list[float]:
        try:
            vector = self._embed_fn(text)
        except EmbeddingServiceError:
            raise
        except Exception as e:
            raise EmbeddingServiceError(f"embedding call failed: {e}") from e
        if vector is None or len(vector) == 0:
            raise EmbeddingServiceError("embedding call returned an empty vector")
        return [float(v) for v in vector]

