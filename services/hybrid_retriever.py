# services/hybrid_retriever.py
"""
Hybrid retrieval: lexical and vector rankings fused into one list.

Flow per query:
1. Validate the query and resolve the bucket from the caller's session
2. Embed the query (a provider failure fails the retrieval)
3. Within one read snapshot, run lexical and vector search for k * oversampling
   candidates each
4. Min-max normalize each list, combine with tunable weights
5. Order by fused score, then chunk ordinal, then document id; optionally drop
   near-duplicate chunks; truncate to k
"""
import logging
from typing import Dict, List, NamedTuple, Optional

from core.domain import (DocumentCitation, EmbeddingStatus, MediaKind, RetrievalResult,
                         RetrievedChunk, SessionContext)
from core.exceptions import (EmbeddingFatalError, EmbeddingRetryableError,
                             InvalidQueryError)
from core.interfaces import IEmbeddingService, ScoredIds
from services.bucket_registry import BucketRegistry
from config import settings
from utils.query_text import deduplicate, enhance_query

logger = logging.getLogger(settings.LOGGER_NAME)


class FusedScore(NamedTuple):
    chunk_id: int
    score: float
    lexical_score: float  # normalized, 0 when absent from the lexical list
    vector_score: float   # normalized, 0 when absent from the vector list


def min_max_normalize(scored: ScoredIds) -> Dict[int, float]:
    """
    Rescale scores to [0, 1] within one list.

    A single candidate, or a list whose scores are all equal, maps to 1.0:
    every candidate in it is as good as the best one.
    """
    if not scored:
        return {}
    values = [s for _, s in scored]
    low, high = min(values), max(values)
    spread = high - low
    if len(scored) == 1 or spread <= 1e-12:
        return {chunk_id: 1.0 for chunk_id, _ in scored}
    return {chunk_id: (s - low) / spread for chunk_id, s in scored}


def fuse_rankings(
    lexical: ScoredIds,
    vector: ScoredIds,
    lexical_weight: float = 0.5,
    vector_weight: float = 0.5,
) -> List[FusedScore]:
    """
    Weighted sum of independently normalized lexical and vector scores.

    A chunk found by only one search gets 0 for the other. Output is ordered
    by fused score descending, ties by chunk id.
    """
    lex = min_max_normalize(lexical)
    vec = min_max_normalize(vector)
    fused = []
    for chunk_id in set(lex) | set(vec):
        l_score = lex.get(chunk_id, 0.0)
        v_score = vec.get(chunk_id, 0.0)
        fused.append(FusedScore(
            chunk_id=chunk_id,
            score=lexical_weight * l_score + vector_weight * v_score,
            lexical_score=l_score,
            vector_score=v_score,
        ))
    fused.sort(key=lambda f: (-f.score, f.chunk_id))
    return fused


class HybridRetriever:
    def __init__(
        self,
        registry: BucketRegistry,
        embedding_service: IEmbeddingService,
        lexical_weight: float = settings.FUSION_LEXICAL_WEIGHT,
        vector_weight: float = settings.FUSION_VECTOR_WEIGHT,
        oversampling: int = settings.RETRIEVAL_OVERSAMPLING,
        top_k: int = settings.TOP_K,
        dedup_threshold: Optional[float] = settings.RETRIEVAL_DEDUP_THRESHOLD,
        enhance_queries: bool = settings.QUERY_ENHANCEMENT_ENABLED,
    ):
        if lexical_weight < 0 or vector_weight < 0 or (lexical_weight + vector_weight) == 0:
            raise ValueError("Fusion weights must be non-negative and not both zero")
        if oversampling < 1:
            raise ValueError("Oversampling factor must be at least 1")
        self.registry = registry
        self.embedding_service = embedding_service
        self.lexical_weight = lexical_weight
        self.vector_weight = vector_weight
        self.oversampling = oversampling
        self.top_k = top_k
        self.dedup_threshold = dedup_threshold
        self.enhance_queries = enhance_queries

    def _validate(self, query_text: str, k: int) -> None:
        if not isinstance(query_text, str) or not query_text.strip():
            raise InvalidQueryError("Query text is empty")
        if len(query_text) > settings.MAX_QUERY_LENGTH:
            raise InvalidQueryError(f"Query exceeds {settings.MAX_QUERY_LENGTH} characters")
        if not isinstance(k, int) or k < 1:
            raise InvalidQueryError(f"k must be a positive integer (got {k!r})")

    async def _embed_query(self, query_text: str) -> List[float]:
        result = await self.embedding_service.embed(query_text)
        if result.status == EmbeddingStatus.RETRYABLE:
            raise EmbeddingRetryableError(f"Query embedding failed: {result.error}")
        if result.status == EmbeddingStatus.FATAL or result.vector is None:
            raise EmbeddingFatalError(f"Query cannot be embedded: {result.error}")
        return result.vector

    async def retrieve(self, session: SessionContext, query_text: str,
                       k: Optional[int] = None) -> RetrievalResult:
        """
        Rank the chunks of the session's bucket against a query.

        Returns:
            At most k hits. An empty result with bucket_empty=True means the
            bucket holds no chunks; bucket_empty=False means nothing matched.

        Raises:
            InvalidQueryError: blank/oversized query or k < 1
            NoActiveBucketError: session targets no bucket
            EmbeddingRetryableError / EmbeddingFatalError: query embedding failed
            DimensionMismatchError: provider dimension differs from the bucket's
        """
        k = self.top_k if k is None else k
        self._validate(query_text, k)
        bucket = session.require_bucket()
        store = await self.registry.open_store(bucket)

        query_vector = await self._embed_query(query_text)
        lexical_query = enhance_query(query_text) if self.enhance_queries else query_text
        candidates = k * self.oversampling

        async with store.snapshot() as snap:
            total_chunks = await snap.chunks.count()
            if total_chunks == 0:
                logger.info(f"[SEARCH] Bucket '{bucket.name}' is empty")
                return RetrievalResult(hits=[], bucket=bucket.name, total_chunks=0)

            lexical_hits = await snap.lexical.search(lexical_query, candidates)
            vector_hits = await snap.vector.search(query_vector, candidates)
            fused = fuse_rankings(lexical_hits, vector_hits, self.lexical_weight, self.vector_weight)

            chunks = await snap.chunks.get_many([f.chunk_id for f in fused])
            documents = await snap.documents.get_many([c.document_id for c in chunks.values()])

        hits: List[RetrievedChunk] = []
        for f in fused:
            chunk = chunks.get(f.chunk_id)
            if chunk is None:
                continue
            doc = documents.get(chunk.document_id)
            citation = DocumentCitation(
                document_id=chunk.document_id,
                source=doc.source if doc else "",
                media_kind=doc.media_kind if doc else MediaKind.UNKNOWN,
                metadata=dict(doc.metadata) if doc else {},
            )
            hits.append(RetrievedChunk(
                chunk=chunk,
                score=f.score,
                citation=citation,
                lexical_score=f.lexical_score,
                vector_score=f.vector_score,
            ))

        hits.sort(key=lambda h: (-h.score, h.chunk.ordinal, h.chunk.document_id))
        if self.dedup_threshold is not None:
            hits = deduplicate(hits, self.dedup_threshold, text_of=lambda h: h.chunk.content)
        hits = hits[:k]

        logger.info(
            f"[SEARCH] bucket='{bucket.name}' lexical={len(lexical_hits)} vector={len(vector_hits)} "
            f"returned={len(hits)} of {total_chunks} chunks"
        )
        return RetrievalResult(hits=hits, bucket=bucket.name, total_chunks=total_chunks)
