# infrastructure/bucket_store.py
import asyncio
import logging
import os
import shutil
import sqlite3
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from core.domain import BucketRef, BucketStats, Chunk, Document
from core.exceptions import (BucketNotFoundError, DimensionMismatchError,
                             DocumentNotFoundError, RetrievalEngineError,
                             StorageError)
from core.interfaces import ScoredIds
from database.session import (create_sqlite_engine, create_session_factory,
                              get_session, init_bucket_schema)
from infrastructure.lexical_index import LexicalIndex
from infrastructure.repositories import (SQLBucketMetaRepository,
                                         SQLChunkRepository,
                                         SQLDocumentRepository)
from infrastructure.vector_index import VectorIndex
from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

_DB_ERRORS = (SQLAlchemyError, sqlite3.Error, OSError)


async def remove_bucket_directory(path: Path) -> None:
    """
    Remove a bucket directory.

    The directory is first renamed to a tombstone (atomic on one filesystem),
    so a crash mid-removal never leaves a half-deleted bucket under its real
    name.
    """
    if not path.exists():
        return
    tombstone = path.with_name(f".{path.name}.deleted-{uuid.uuid4().hex[:8]}")
    try:
        os.replace(path, tombstone)
    except OSError as e:
        raise StorageError(f"Failed to delete bucket directory {path}: {e}") from e
    await asyncio.to_thread(shutil.rmtree, tombstone, True)


@dataclass
class BucketSnapshot:
    """
    Read view of a bucket inside one transaction.

    Every query made through it observes the same committed state, so a
    retrieval can never see a document's chunks without their index entries.
    """
    session: AsyncSession
    lexical: LexicalIndex
    vector: VectorIndex
    documents: SQLDocumentRepository
    chunks: SQLChunkRepository
    meta: SQLBucketMetaRepository


class BucketStore:
    """
    Owns all persisted state of one bucket: documents, chunks, embeddings and
    the lexical index, in a single SQLite database.

    Writes are serialized by an asyncio.Lock and each write is one
    transaction, so a document is either fully present (rows, vectors,
    lexical entries) or absent. Reads open their own transactions and run
    concurrently with writes.
    """

    def __init__(self, bucket: BucketRef, db_name: str = settings.BUCKET_DB_NAME):
        self.bucket = bucket
        self._db_path = Path(bucket.path) / db_name
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._lock = asyncio.Lock()  # Protects all mutations

    @property
    def name(self) -> str:
        return self.bucket.name

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    # ============= Lifecycle =============

    @classmethod
    async def open(cls, bucket: BucketRef, db_name: str = settings.BUCKET_DB_NAME) -> "BucketStore":
        """
        Open (creating on first use) the bucket database.

        Raises:
            BucketNotFoundError: bucket directory is missing
            StorageError: database cannot be opened or is corrupt
        """
        if not Path(bucket.path).is_dir():
            raise BucketNotFoundError(bucket.name)

        store = cls(bucket, db_name)
        engine = create_sqlite_engine(str(store._db_path))
        try:
            await init_bucket_schema(engine)
        except _DB_ERRORS as e:
            await engine.dispose()
            logger.error(f"[STORE] Failed to open bucket '{bucket.name}': {e}")
            raise StorageError(f"Cannot open storage for bucket '{bucket.name}': {e}") from e

        store._engine = engine
        store._session_factory = create_session_factory(engine)
        logger.info(f"[STORE] Opened bucket '{bucket.name}' at {store._db_path}")
        return store

    async def close(self) -> None:
        """Dispose the engine once in-flight writes finish."""
        async with self._lock:
            await self._close_locked()

    async def _close_locked(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info(f"[STORE] Closed bucket '{self.name}'")

    def _factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            raise BucketNotFoundError(self.name)
        return self._session_factory

    # ============= Transactions =============

    @asynccontextmanager
    async def _write(self) -> AsyncGenerator[AsyncSession, None]:
        """One serialized write transaction; storage failures become StorageError after rollback."""
        async with self._lock:
            try:
                async with get_session(self._factory()) as session:
                    yield session
            except RetrievalEngineError:
                raise
            except _DB_ERRORS as e:
                logger.error(f"[STORE] Write to bucket '{self.name}' rolled back: {e}")
                raise StorageError(f"Write to bucket '{self.name}' failed: {e}") from e

    @asynccontextmanager
    async def snapshot(self) -> AsyncGenerator[BucketSnapshot, None]:
        """Consistent read view; see BucketSnapshot."""
        try:
            async with get_session(self._factory()) as session:
                yield BucketSnapshot(
                    session=session,
                    lexical=LexicalIndex(session),
                    vector=VectorIndex(session),
                    documents=SQLDocumentRepository(session),
                    chunks=SQLChunkRepository(session),
                    meta=SQLBucketMetaRepository(session),
                )
        except RetrievalEngineError:
            raise
        except _DB_ERRORS as e:
            logger.error(f"[STORE] Read from bucket '{self.name}' failed: {e}")
            raise StorageError(f"Read from bucket '{self.name}' failed: {e}") from e

    # ============= Writes =============

    async def _append(self, session: AsyncSession, document: Document, chunks: List[Chunk]) -> List[int]:
        await SQLDocumentRepository(session).create(document)
        ordered_chunks = sorted(chunks, key=lambda c: c.ordinal)
        for c in ordered_chunks:
            c.document_id = document.id
        chunk_ids = await SQLChunkRepository(session).create_many(ordered_chunks)

        lexical = LexicalIndex(session)
        vector = VectorIndex(session)
        for chunk_id, chunk in zip(chunk_ids, ordered_chunks):
            chunk.id = chunk_id
            await lexical.index(chunk_id, chunk.content)
            if chunk.embedding is not None:
                await vector.insert(chunk_id, chunk.embedding)
        return chunk_ids

    def _log_append(self, document: Document, chunks: List[Chunk]) -> None:
        embedded = sum(1 for c in chunks if c.embedding is not None)
        logger.info(
            f"[STORE] Appended document {document.id} to '{self.name}': "
            f"{len(chunks)} chunks ({len(chunks) - embedded} pending)"
        )

    @staticmethod
    def _check_chunk_dimensions(chunks: List[Chunk]) -> None:
        dims = {len(c.embedding) for c in chunks if c.embedding is not None}
        if len(dims) > 1:
            ordered = sorted(dims)
            raise DimensionMismatchError(ordered[0], ordered[-1])

    async def append_document(self, document: Document, chunks: List[Chunk]) -> List[int]:
        """
        Persist a document with its chunks, vectors and lexical entries atomically.

        Chunks without an embedding are stored as pending: searchable
        lexically, invisible to vector search until set_embeddings.

        Returns:
            Assigned chunk ids in ordinal order

        Raises:
            DimensionMismatchError: vectors disagree with each other or the bucket
            StorageError: transaction failed and was rolled back
        """
        self._check_chunk_dimensions(chunks)
        async with self._write() as session:
            chunk_ids = await self._append(session, document, chunks)
        self._log_append(document, chunks)
        return chunk_ids

    async def append_if_new(self, document: Document, chunks: List[Chunk]) -> Optional[Document]:
        """
        Like append_document, unless a document with the same content hash is
        already stored.

        The hash lookup runs inside the write transaction, so concurrent
        appends of one text store it exactly once.

        Returns:
            The existing document (nothing written), or None once appended
        """
        self._check_chunk_dimensions(chunks)
        async with self._write() as session:
            existing = await SQLDocumentRepository(session).get_by_hash(document.content_hash)
            if existing is not None:
                return existing
            await self._append(session, document, chunks)
        self._log_append(document, chunks)
        return None

    async def set_embeddings(self, embeddings: Dict[int, List[float]]) -> int:
        """
        Attach vectors to existing chunks. Re-setting a vector replaces it.

        Chunks deleted since their ids were read are skipped.

        Returns:
            Number of vectors stored
        """
        if not embeddings:
            return 0
        async with self._write() as session:
            present = await SQLChunkRepository(session).get_many(list(embeddings))
            missing = [chunk_id for chunk_id in embeddings if chunk_id not in present]
            if missing:
                logger.info(f"[STORE] Skipping embeddings for {len(missing)} chunk(s) deleted from '{self.name}'")
            vector = VectorIndex(session)
            for chunk_id in present:
                await vector.insert(chunk_id, embeddings[chunk_id])
        logger.info(f"[STORE] Stored {len(present)} embeddings in '{self.name}'")
        return len(present)

    async def delete_document(self, document_id: str) -> int:
        """
        Remove a document and everything derived from it.

        Returns:
            Number of chunks removed

        Raises:
            DocumentNotFoundError: no such document in this bucket
        """
        async with self._write() as session:
            documents = SQLDocumentRepository(session)
            if await documents.get_by_id(document_id) is None:
                raise DocumentNotFoundError(document_id)
            chunk_ids = await SQLChunkRepository(session).ids_for_document(document_id)
            await LexicalIndex(session).remove(chunk_ids)
            await VectorIndex(session).remove(chunk_ids)
            # chunk rows go with the document via ON DELETE CASCADE
            await documents.delete(document_id)

        logger.info(f"[STORE] Deleted document {document_id} ({len(chunk_ids)} chunks) from '{self.name}'")
        return len(chunk_ids)

    async def delete_bucket(self) -> None:
        """Close the store and remove the bucket's directory with everything in it."""
        async with self._lock:
            await self._close_locked()
            await remove_bucket_directory(Path(self.bucket.path))
        logger.info(f"[STORE] Deleted bucket '{self.name}'")

    # ============= Reads =============

    async def lexical_search(self, query_text: str, k: int) -> ScoredIds:
        async with self.snapshot() as snap:
            return await snap.lexical.search(query_text, k)

    async def vector_search(self, query_vector: List[float], k: int) -> ScoredIds:
        async with self.snapshot() as snap:
            return await snap.vector.search(query_vector, k)

    async def get_document(self, document_id: str) -> Document:
        async with self.snapshot() as snap:
            document = await snap.documents.get_by_id(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    async def find_document_by_hash(self, content_hash: str) -> Optional[Document]:
        async with self.snapshot() as snap:
            return await snap.documents.get_by_hash(content_hash)

    async def list_documents(self) -> List[Document]:
        async with self.snapshot() as snap:
            return await snap.documents.list_all()

    async def get_chunks(self, document_id: str) -> List[Chunk]:
        async with self.snapshot() as snap:
            return await snap.chunks.list_for_document(document_id)

    async def get_chunks_by_id(self, chunk_ids: Sequence[int]) -> Dict[int, Chunk]:
        async with self.snapshot() as snap:
            return await snap.chunks.get_many(chunk_ids)

    async def pending_chunks(self, limit: Optional[int] = None) -> List[Chunk]:
        async with self.snapshot() as snap:
            return await snap.chunks.list_pending(limit)

    async def stats(self) -> BucketStats:
        async with self.snapshot() as snap:
            return await snap.meta.stats()
