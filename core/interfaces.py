# core/interfaces.py
"""Core interfaces for the retrieval engine"""
import asyncio
from abc import ABC, abstractmethod
from typing import Iterable, List, Tuple

from core.domain import EmbeddingResult

# (chunk_id, score) pairs, best first
ScoredIds = List[Tuple[int, float]]

# ============= Embedding Service Interface =============
class IEmbeddingService(ABC):
    """
    Maps a text fragment to a fixed-length vector.

    Implementations never raise for provider trouble: they return an
    EmbeddingResult tagged SUCCESS, RETRYABLE or FATAL and the caller
    decides whether to retry from the tag alone.
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this provider returns"""
        pass

    @abstractmethod
    async def embed(self, text: str) -> EmbeddingResult:
        """Embed a single text"""
        pass

    async def embed_many(self, texts: List[str]) -> List[EmbeddingResult]:
        """Embed several texts; order of results matches input order."""
        return list(await asyncio.gather(*(self.embed(t) for t in texts)))

# ============= Index Interfaces =============
class ILexicalIndex(ABC):
    """Ranked keyword search over chunk text within one bucket."""

    @abstractmethod
    async def index(self, chunk_id: int, text: str) -> None:
        """Add (or replace) the lexical entry for a chunk"""
        pass

    @abstractmethod
    async def search(self, query_text: str, k: int) -> ScoredIds:
        """Top-k chunk ids by relevance, higher is better"""
        pass

    @abstractmethod
    async def remove(self, chunk_ids: Iterable[int]) -> None:
        pass


class IVectorIndex(ABC):
    """Similarity search over chunk embeddings within one bucket."""

    @abstractmethod
    async def insert(self, chunk_id: int, vector: List[float]) -> None:
        """Store the vector for a chunk, replacing any previous one"""
        pass

    @abstractmethod
    async def search(self, query_vector: List[float], k: int) -> ScoredIds:
        """Top-k chunk ids by cosine similarity, ties by insertion order"""
        pass

    @abstractmethod
    async def remove(self, chunk_ids: Iterable[int]) -> None:
        pass
