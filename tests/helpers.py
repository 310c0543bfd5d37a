"""
Deterministic embedding providers for tests.

No model downloads, no network: vectors come from hashing tokens into a
fixed number of buckets, with an optional synonym table that folds related
words into one concept so "semantic" similarity can be scripted.
"""

import asyncio
import re
import zlib
from typing import Dict, List, Optional

from core.domain import EmbeddingResult
from core.interfaces import IEmbeddingService

_TOKEN_RE = re.compile(r"[^\W_]+")

BIOLOGY_CONCEPTS: Dict[str, str] = {
    "mitochondria": "concept:mito",
    "mitochondrion": "concept:mito",
    "powerhouse": "concept:mito",
    "organelle": "concept:mito",
    "energy": "concept:energy",
    "atp": "concept:energy",
    "cell": "concept:cell",
    "cells": "concept:cell",
    "cellular": "concept:cell",
}


class ConceptEmbedding(IEmbeddingService):
    """Bag-of-concepts vectors: each token adds 1.0 at crc32(concept) % dim."""

    def __init__(self, dim: int = 256, synonyms: Optional[Dict[str, str]] = None):
        self._dim = dim
        self.synonyms = synonyms if synonyms is not None else dict(BIOLOGY_CONCEPTS)
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dim

    def vector_for(self, text: str) -> List[float]:
        vec = [0.0] * self._dim
        for token in _TOKEN_RE.findall(text.lower()):
            concept = self.synonyms.get(token, token)
            vec[zlib.crc32(concept.encode("utf-8")) % self._dim] += 1.0
        return vec

    async def embed(self, text: str) -> EmbeddingResult:
        self.calls += 1
        return EmbeddingResult.success(self.vector_for(text))


class FlakyEmbedding(IEmbeddingService):
    """Answers RETRYABLE for the first `failures` calls, then delegates."""

    def __init__(self, inner: IEmbeddingService, failures: int):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self.inner.dimension

    async def embed(self, text: str) -> EmbeddingResult:
        self.calls += 1
        if self.calls <= self.failures:
            return EmbeddingResult.retryable("provider warming up")
        return await self.inner.embed(text)


class UnavailableEmbedding(IEmbeddingService):
    """Provider that is always temporarily down."""

    def __init__(self, dim: int = 256):
        self._dim = dim
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dim

    async def embed(self, text: str) -> EmbeddingResult:
        self.calls += 1
        return EmbeddingResult.retryable("connection refused")


class RejectingEmbedding(IEmbeddingService):
    """Returns FATAL for any text containing `marker`, delegates otherwise."""

    def __init__(self, inner: IEmbeddingService, marker: str):
        self.inner = inner
        self.marker = marker

    @property
    def dimension(self) -> int:
        return self.inner.dimension

    async def embed(self, text: str) -> EmbeddingResult:
        if self.marker in text:
            return EmbeddingResult.fatal("input rejected")
        return await self.inner.embed(text)


class BlockingEmbedding(IEmbeddingService):
    """Signals `started` and then waits on `release` before answering."""

    def __init__(self, inner: IEmbeddingService):
        self.inner = inner
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    @property
    def dimension(self) -> int:
        return self.inner.dimension

    async def embed(self, text: str) -> EmbeddingResult:
        self.started.set()
        await self.release.wait()
        return await self.inner.embed(text)


class ListEmbedding(IEmbeddingService):
    """Returns pre-scripted vectors keyed by exact text."""

    def __init__(self, vectors: Dict[str, List[float]]):
        self.vectors = vectors

    @property
    def dimension(self) -> int:
        return len(next(iter(self.vectors.values())))

    async def embed(self, text: str) -> EmbeddingResult:
        if text not in self.vectors:
            return EmbeddingResult.fatal(f"no scripted vector for {text!r}")
        return EmbeddingResult.success(self.vectors[text])


def numbered_words(count: int, prefix: str = "token") -> str:
    """'token0000 token0001 ...' - distinct, searchable filler text."""
    return " ".join(f"{prefix}{i:04d}" for i in range(count))


class CountingEmbedding(IEmbeddingService):
    """Records the peak number of embed calls in flight at once."""

    def __init__(self, inner: IEmbeddingService):
        self.inner = inner
        self.in_flight = 0
        self.peak = 0

    @property
    def dimension(self) -> int:
        return self.inner.dimension

    async def embed(self, text: str) -> EmbeddingResult:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0)
            return await self.inner.embed(text)
        finally:
            self.in_flight -= 1
