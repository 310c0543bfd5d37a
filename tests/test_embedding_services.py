"""
Test suite for SentenceTransformerEmbedding result classification.

The model itself is never loaded: _encode is patched, so these tests check
how inputs and failures map onto tagged EmbeddingResults.
"""

import numpy as np
import pytest

from core.domain import EmbeddingStatus
from infrastructure.embedding_services import SentenceTransformerEmbedding


@pytest.fixture
def provider(monkeypatch) -> SentenceTransformerEmbedding:
    """Provider whose encoder returns unit vectors of length 3."""
    def fake_encode(self, texts):
        return np.array([[1.0, 0.0, 0.0] for _ in texts], dtype="float32")

    monkeypatch.setattr(SentenceTransformerEmbedding, "_encode", fake_encode)
    return SentenceTransformerEmbedding("test-model")


class TestEmbeddingClassification:
    """SUCCESS / RETRYABLE / FATAL mapping."""

    @pytest.mark.asyncio
    async def test_success(self, provider: SentenceTransformerEmbedding) -> None:
        result = await provider.embed("hello")
        assert result.status == EmbeddingStatus.SUCCESS
        assert result.vector == [1.0, 0.0, 0.0]

    @pytest.mark.asyncio
    async def test_blank_input_is_fatal_without_failing_batch(self, provider: SentenceTransformerEmbedding) -> None:
        results = await provider.embed_many(["first", "   ", "third"])
        assert [r.status for r in results] == [
            EmbeddingStatus.SUCCESS, EmbeddingStatus.FATAL, EmbeddingStatus.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_encoder_failure_is_retryable(self, monkeypatch) -> None:
        def broken_encode(self, texts):
            raise RuntimeError("CUDA out of memory")

        monkeypatch.setattr(SentenceTransformerEmbedding, "_encode", broken_encode)
        result = await SentenceTransformerEmbedding("test-model").embed("hello")

        assert result.status == EmbeddingStatus.RETRYABLE
        assert "out of memory" in (result.error or "")
