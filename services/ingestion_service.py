# services/ingestion_service.py
"""
Ingestion pipeline: normalized text in, indexed chunks out.

Steps per document:
1. Normalize text and reject empty input (nothing written)
2. Skip exact duplicates already in the bucket (same content hash)
3. Chunk with the configured size/overlap
4. Embed chunks concurrently, retrying RETRYABLE results with backoff
5. Commit document, chunks, vectors and lexical entries in one transaction

A FATAL embedding result rejects the whole document. Chunks whose retries
run out are stored as pending (lexically searchable, picked up later by
reembed_pending) unless pending embeddings are disabled. Cancelling before
step 5 leaves no trace in the bucket.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from tenacity import (AsyncRetrying, retry_if_result, stop_after_attempt,
                      wait_exponential, wait_random)

from core.domain import (Chunk, Document, EmbeddingResult, EmbeddingStatus,
                         IngestionReport, IngestItem, MediaKind, SessionContext)
from core.exceptions import (EmbeddingFatalError, EmbeddingRetryableError,
                             EmptyTextError)
from core.interfaces import IEmbeddingService
from infrastructure.bucket_store import BucketStore
from infrastructure.text_chunker import chunk_text, validate_chunk_parameters
from services.bucket_registry import BucketRegistry
from config import settings
from utils.common import get_content_hash, infer_media_kind, normalize_text

logger = logging.getLogger(settings.LOGGER_NAME)


def _is_retryable(result: EmbeddingResult) -> bool:
    return result.status == EmbeddingStatus.RETRYABLE


class IngestionService:
    def __init__(
        self,
        registry: BucketRegistry,
        embedding_service: IEmbeddingService,
        chunk_size: int = settings.CHUNK_SIZE,
        chunk_overlap: int = settings.CHUNK_OVERLAP,
        concurrency: int = settings.EMBEDDING_CONCURRENCY,
        retry_attempts: int = settings.EMBED_RETRY_ATTEMPTS,
        retry_initial_wait: float = settings.EMBED_RETRY_INITIAL_WAIT,
        retry_max_wait: float = settings.EMBED_RETRY_MAX_WAIT,
        allow_pending: bool = settings.ALLOW_PENDING_EMBEDDINGS,
    ):
        validate_chunk_parameters(chunk_size, chunk_overlap)
        self.registry = registry
        self.embedding_service = embedding_service
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.retry_attempts = max(1, retry_attempts)
        self.retry_initial_wait = retry_initial_wait
        self.retry_max_wait = retry_max_wait
        self.allow_pending = allow_pending
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    # ============= Embedding =============

    def _log_retry(self, retry_state) -> None:
        result = retry_state.outcome.result()
        logger.warning(
            f"[EMBED] Retryable embedding failure, attempt {retry_state.attempt_number}/"
            f"{self.retry_attempts}: {result.error}"
        )

    async def _embed_once(self, text: str) -> EmbeddingResult:
        # Held per attempt only; backoff sleeps do not occupy a slot
        async with self._semaphore:
            return await self.embedding_service.embed(text)

    async def _embed_with_retry(self, text: str) -> EmbeddingResult:
        """
        Embed one chunk, retrying while the provider answers RETRYABLE.

        Returns the last result once attempts run out instead of raising, so
        the caller can decide between pending and failure.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=(
                wait_exponential(multiplier=self.retry_initial_wait, max=self.retry_max_wait)
                + wait_random(0, self.retry_initial_wait)
            ),
            retry=retry_if_result(_is_retryable),
            before_sleep=self._log_retry,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return await retrying(self._embed_once, text)

    async def _embed_all(self, texts: List[str]) -> List[EmbeddingResult]:
        return list(await asyncio.gather(*(self._embed_with_retry(t) for t in texts)))

    async def _embed_chunks(self, store: BucketStore, texts: List[str]) -> List[EmbeddingResult]:
        """
        Embed chunk texts in order.

        Whitespace-only chunks never reach the provider (which would reject
        them as FATAL). They get a zero vector, which scores 0 against every
        query, once the embedding dimension is known from this batch or the
        bucket; until then they stay pending.
        """
        blank = {i for i, text in enumerate(texts) if not text.strip()}
        embedded = iter(await self._embed_all([t for i, t in enumerate(texts) if i not in blank]))
        results = [None if i in blank else next(embedded) for i in range(len(texts))]
        if not blank:
            return results  # type: ignore

        dim = next((len(r.vector) for r in results if r is not None and r.ok and r.vector), None)
        if dim is None:
            dim = (await store.stats()).embedding_dim
        filler = (
            EmbeddingResult.success([0.0] * dim) if dim
            else EmbeddingResult.retryable("Whitespace-only chunk waits for the bucket's embedding dimension")
        )
        logger.info(f"[EMBED] {len(blank)} whitespace-only chunk(s) not sent to the provider")
        return [filler if r is None else r for r in results]

    # ============= Ingestion =============

    @staticmethod
    async def _duplicate_report(store: BucketStore, existing: Document, source: str) -> IngestionReport:
        existing_chunks = await store.get_chunks(existing.id)
        embedded = sum(1 for c in existing_chunks if c.embedding is not None)
        logger.info(f"[INGEST] '{source}' duplicates document {existing.id} in '{store.name}'; skipped")
        return IngestionReport(
            document_id=existing.id,
            bucket=store.name,
            chunk_count=len(existing_chunks),
            embedded_count=embedded,
            pending_count=len(existing_chunks) - embedded,
            duplicate=True,
        )

    async def ingest_text(
        self,
        session: SessionContext,
        text: str,
        source: str,
        media_kind: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> IngestionReport:
        """
        Ingest one extracted document into the session's bucket.

        A text already stored in the bucket (same content hash) is reported
        as a duplicate of the stored document and nothing is written, also
        when the copies arrive concurrently.

        Raises:
            NoActiveBucketError: session targets no bucket
            EmptyTextError: nothing left after normalization
            EmbeddingFatalError: provider rejected a chunk permanently
            EmbeddingRetryableError: provider kept failing and pending
                embeddings are disabled
            DimensionMismatchError / StorageError: commit failed, nothing written
        """
        bucket = session.require_bucket()
        normalized = normalize_text(text)
        if not normalized:
            raise EmptyTextError(source)

        store = await self.registry.open_store(bucket)
        content_hash = get_content_hash(normalized)
        # Cheap early exit; append_if_new re-checks under the write lock
        existing = await store.find_document_by_hash(content_hash)
        if existing is not None:
            return await self._duplicate_report(store, existing, source)

        fragments = chunk_text(normalized, self.chunk_size, self.chunk_overlap)
        document = Document(
            id=str(uuid.uuid4()),
            source=source,
            media_kind=MediaKind.from_string(media_kind or infer_media_kind(source)),
            text=normalized,
            content_hash=content_hash,
            ingested_at=datetime.now(timezone.utc),
            metadata=dict(metadata or {}),
        )
        logger.info(f"[INGEST] '{source}' -> {len(fragments)} chunks for bucket '{bucket.name}'")

        results = await self._embed_chunks(store, [f.text for f in fragments])

        for fragment, result in zip(fragments, results):
            if result.status == EmbeddingStatus.FATAL:
                raise EmbeddingFatalError(
                    f"Chunk {fragment.ordinal} of '{source}' rejected by embedding provider: {result.error}"
                )

        pending = sum(1 for r in results if not r.ok)
        if pending and not self.allow_pending:
            raise EmbeddingRetryableError(
                f"{pending} chunk(s) of '{source}' could not be embedded after {self.retry_attempts} attempts"
            )

        chunks = [
            Chunk(
                id=None,
                document_id=document.id,
                ordinal=fragment.ordinal,
                content=fragment.text,
                start_char=fragment.start,
                end_char=fragment.end,
                embedding=result.vector if result.ok else None,
            )
            for fragment, result in zip(fragments, results)
        ]
        existing = await store.append_if_new(document, chunks)
        if existing is not None:
            return await self._duplicate_report(store, existing, source)

        if pending:
            logger.warning(f"[INGEST] Document {document.id}: {pending} chunk(s) left pending embedding")
        return IngestionReport(
            document_id=document.id,
            bucket=bucket.name,
            chunk_count=len(chunks),
            embedded_count=len(chunks) - pending,
            pending_count=pending,
        )

    async def ingest_many(self, session: SessionContext, items: Sequence[IngestItem]) -> List[IngestionReport]:
        """
        Ingest several documents concurrently; each commits on its own.

        Every item runs to completion before the first failure (if any) is
        raised, so successful documents stay committed.
        """
        outcomes = await asyncio.gather(
            *(
                self.ingest_text(session, item.text, item.source, item.media_kind, item.metadata)
                for item in items
            ),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)  # type: ignore

    async def reembed_pending(self, session: SessionContext, limit: Optional[int] = None) -> int:
        """
        Retry embedding for chunks left pending by earlier ingestion.

        Returns:
            Number of chunks that now have an embedding
        """
        bucket = session.require_bucket()
        store = await self.registry.open_store(bucket)
        pending = await store.pending_chunks(limit)
        if not pending:
            return 0

        results = await self._embed_chunks(store, [c.content for c in pending])
        embeddings = {}
        for chunk, result in zip(pending, results):
            if result.ok and result.vector is not None:
                embeddings[chunk.id] = result.vector
            elif result.status == EmbeddingStatus.FATAL:
                logger.error(f"[EMBED] Chunk {chunk.id} permanently rejected by provider: {result.error}")

        stored = await store.set_embeddings(embeddings)
        logger.info(f"[INGEST] Re-embedded {stored}/{len(pending)} pending chunks in '{bucket.name}'")
        return stored

    async def delete_document(self, session: SessionContext, document_id: str) -> int:
        """Remove a document with its chunks and index entries; returns chunks removed."""
        bucket = session.require_bucket()
        store = await self.registry.open_store(bucket)
        return await store.delete_document(document_id)
