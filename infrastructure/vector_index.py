# infrastructure/vector_index.py
import asyncio
import logging
from typing import Iterable, List

import faiss
import numpy as np
from sqlalchemy import select, update

from core.exceptions import ChunkNotFoundError, DimensionMismatchError
from core.interfaces import IVectorIndex, ScoredIds
from database.session import ChunkEntity
from infrastructure.repositories import SQLBucketMetaRepository
from config import settings
from utils.vectors import bytes_to_vector, l2_normalize, vector_to_bytes

logger = logging.getLogger(settings.LOGGER_NAME)


def _exact_inner_product(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Similarity of every row against the query via an exhaustive FAISS scan."""
    index = faiss.IndexFlatIP(matrix.shape[1])
    index.add(matrix)  # type: ignore
    scores, rows = index.search(query, matrix.shape[0])  # type: ignore
    sims = np.zeros(matrix.shape[0], dtype=np.float32)
    sims[rows[0]] = scores[0]
    return sims


class VectorIndex(IVectorIndex):
    """
    Exact cosine search over the embeddings persisted in one bucket.

    Vectors live in the chunks table (one BLOB per chunk), so an insert is
    part of the same transaction as the chunk rows and re-inserting simply
    overwrites. Search loads the embedded rows of the caller's snapshot,
    L2-normalizes them and scores them all with a flat inner-product index:
    for unit vectors the inner product is the cosine. Zero vectors stay zero
    after normalization and score 0 against everything.

    Ordering is by similarity descending, ties by chunk id (insertion order).
    Pending chunks (no embedding yet) are never candidates.
    """

    def __init__(self, session):
        self.session = session
        self._meta = SQLBucketMetaRepository(session)

    async def _check_dimension(self, actual: int, record_if_missing: bool) -> None:
        expected = await self._meta.get_embedding_dim()
        if expected is None:
            if record_if_missing:
                await self._meta.set_embedding_dim(actual)
                logger.info(f"[VECTOR] Bucket embedding dimension fixed at {actual}")
            return
        if actual != expected:
            raise DimensionMismatchError(expected, actual)

    async def insert(self, chunk_id: int, vector: List[float]) -> None:
        await self._check_dimension(len(vector), record_if_missing=True)
        result = await self.session.execute(
            update(ChunkEntity)
            .where(ChunkEntity.id == chunk_id)
            .values(embedding=vector_to_bytes(vector))
        )
        if (result.rowcount or 0) == 0:
            raise ChunkNotFoundError(chunk_id)

    async def search(self, query_vector: List[float], k: int) -> ScoredIds:
        if k <= 0:
            return []
        expected = await self._meta.get_embedding_dim()
        if expected is None:
            # Nothing embedded yet
            return []
        if len(query_vector) != expected:
            raise DimensionMismatchError(expected, len(query_vector))

        result = await self.session.execute(
            select(ChunkEntity.id, ChunkEntity.embedding)
            .where(ChunkEntity.embedding.is_not(None))
            .order_by(ChunkEntity.id)
        )
        rows = result.all()
        if not rows:
            return []

        chunk_ids = [int(r[0]) for r in rows]
        vectors = [bytes_to_vector(r[1]) for r in rows]
        for vec in vectors:
            if vec.shape[0] != expected:
                raise DimensionMismatchError(expected, int(vec.shape[0]))

        matrix = l2_normalize(np.vstack(vectors))
        query = l2_normalize(np.asarray(query_vector, dtype=np.float32).reshape(1, -1))
        sims = await asyncio.to_thread(_exact_inner_product, matrix, query)
        sims = np.clip(sims, -1.0, 1.0)

        # Stable sort on an id-ordered list keeps ties in insertion order
        order = sorted(range(len(chunk_ids)), key=lambda i: -float(sims[i]))
        return [(chunk_ids[i], float(sims[i])) for i in order[:k]]

    async def remove(self, chunk_ids: Iterable[int]) -> None:
        ids = list(chunk_ids)
        if not ids:
            return
        await self.session.execute(
            update(ChunkEntity).where(ChunkEntity.id.in_(ids)).values(embedding=None)
        )
