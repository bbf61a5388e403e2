"""
Tests for embedders.
"""

from unittest.mock import Mock

import numpy as np
import pytest

from wallet_query.core.embeddings import CallableEmbedder, SentenceTransformerEmbedder
from wallet_query.core.errors import EmbeddingServiceError


class TestSentenceTransformerEmbedder:
    def test_embed_uses_loaded_encoder(self):
        # Arrange
        embedder = SentenceTransformerEmbedder()
        embedder.encoder = Mock()
        embedder.encoder.encode.return_value = np.array([[0.1, 0.2, 0.3]], dtype=np.float32)

        # Act
        vector = embedder.embed("total balance")

        # Assert
        embedder.encoder.encode.assert_called_once_with(["total balance"])
        assert vector == pytest.approx([0.1, 0.2, 0.3])
        assert all(isinstance(v, float) for v in vector)

    def test_encoder_failure_raises_embedding_error(self):
        # Arrange
        embedder = SentenceTransformerEmbedder("missing-model")
        embedder.encoder = Mock()
        embedder.encoder.encode.side_effect = RuntimeError("CUDA out of memory")

        # Act & Assert
        with pytest.raises(EmbeddingServiceError, match="missing-model"):
            embedder.embed("total balance")


class TestCallableEmbedder:
    def test_wraps_callable(self):
        # Act & Assert
        assert CallableEmbedder(lambda text: (1, 0)).embed("x") == [1.0, 0.0]

    def test_empty_vector_raises(self):
        # Act & Assert
        with pytest.raises(EmbeddingServiceError, match="empty vector"):
            CallableEmbedder(lambda text: []).embed("x")

    def test_callable_error_is_wrapped(self):
        # Arrange
        def timeout(text):
            raise TimeoutError("embedding service timed out")

        # Act & Assert
        with pytest.raises(EmbeddingServiceError, match="timed out"):
            CallableEmbedder(timeout).embed("x")

