# infrastructure/repositories.py
"""Database repository implementations for one bucket"""
import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain import BucketStats, Chunk, Document, MediaKind
from database.session import (EMBEDDING_DIM_KEY, BucketMetaEntity, ChunkEntity,
                              DocumentEntity)
from config import settings
from utils.vectors import bytes_to_vector

logger = logging.getLogger(settings.LOGGER_NAME)

class SQLDocumentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_domain(self, db_doc: Optional[DocumentEntity]) -> Optional[Document]:
        """Converts an SQLAlchemy entity to a domain model."""
        if db_doc is None:
            return None

        return Document(
            id=db_doc.id,  # type: ignore
            source=db_doc.source,  # type: ignore
            media_kind=MediaKind.from_string(db_doc.media_kind),  # type: ignore
            text=db_doc.text,  # type: ignore
            content_hash=db_doc.content_hash,  # type: ignore
            ingested_at=db_doc.ingested_at,  # type: ignore
            # Prevent accidental mutation of DB entity metadata
            metadata=dict(db_doc.meta or {}),
        )

    async def create(self, document: Document) -> None:
        self.session.add(DocumentEntity(
            id=document.id,
            source=document.source,
            media_kind=document.media_kind.value,
            text=document.text,
            content_hash=document.content_hash,
            meta=document.metadata or {},
            ingested_at=document.ingested_at,
        ))
        await self.session.flush()

    async def get_by_id(self, document_id: str) -> Optional[Document]:
        db_doc = await self.session.get(DocumentEntity, document_id)
        return self._to_domain(db_doc)

    async def get_by_hash(self, content_hash: str) -> Optional[Document]:
        result = await self.session.execute(
            select(DocumentEntity)
            .where(DocumentEntity.content_hash == content_hash)
            .limit(1)
        )
        return self._to_domain(result.scalar_one_or_none())

    async def get_many(self, document_ids: Sequence[str]) -> Dict[str, Document]:
        """Single query for all documents referenced by a result set."""
        if not document_ids:
            return {}
        result = await self.session.execute(
            select(DocumentEntity).where(DocumentEntity.id.in_(list(set(document_ids))))
        )
        docs = [self._to_domain(d) for d in result.scalars().all()]
        return {d.id: d for d in docs if d is not None}

    async def list_all(self) -> List[Document]:
        result = await self.session.execute(
            select(DocumentEntity).order_by(DocumentEntity.ingested_at, DocumentEntity.id)
        )
        docs = [self._to_domain(doc) for doc in result.scalars().all()]
        return [d for d in docs if d is not None]

    async def delete(self, document_id: str) -> bool:
        result = await self.session.execute(
            delete(DocumentEntity).where(DocumentEntity.id == document_id)
        )
        return (result.rowcount or 0) > 0

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(DocumentEntity))
        return int(result.scalar_one())


class SQLChunkRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_domain(self, db_chunk: ChunkEntity) -> Chunk:
        embedding = None
        if db_chunk.embedding is not None:
            embedding = bytes_to_vector(db_chunk.embedding).tolist()  # type: ignore
        return Chunk(
            id=db_chunk.id,  # type: ignore
            document_id=db_chunk.document_id,  # type: ignore
            ordinal=db_chunk.ordinal,  # type: ignore
            content=db_chunk.content,  # type: ignore
            start_char=db_chunk.start_char,  # type: ignore
            end_char=db_chunk.end_char,  # type: ignore
            embedding=embedding,
        )

    async def create_many(self, chunks: List[Chunk]) -> List[int]:
        """Insert chunks in ordinal order and return their assigned ids."""
        entities = []
        for chunk in chunks:
            entity = ChunkEntity(
                document_id=chunk.document_id,
                ordinal=chunk.ordinal,
                content=chunk.content,
                start_char=chunk.start_char,
                end_char=chunk.end_char,
            )
            self.session.add(entity)
            # Flush one at a time so ids follow ordinal order
            await self.session.flush()
            entities.append(entity)
        return [int(e.id) for e in entities]  # type: ignore

    async def get_many(self, chunk_ids: Sequence[int]) -> Dict[int, Chunk]:
        if not chunk_ids:
            return {}
        result = await self.session.execute(
            select(ChunkEntity).where(ChunkEntity.id.in_(list(set(chunk_ids))))
        )
        return {c.id: self._to_domain(c) for c in result.scalars().all()}  # type: ignore

    async def list_for_document(self, document_id: str) -> List[Chunk]:
        result = await self.session.execute(
            select(ChunkEntity)
            .where(ChunkEntity.document_id == document_id)
            .order_by(ChunkEntity.ordinal)
        )
        return [self._to_domain(c) for c in result.scalars().all()]

    async def ids_for_document(self, document_id: str) -> List[int]:
        result = await self.session.execute(
            select(ChunkEntity.id).where(ChunkEntity.document_id == document_id)
        )
        return [row[0] for row in result]

    async def list_pending(self, limit: Optional[int] = None) -> List[Chunk]:
        stmt = select(ChunkEntity).where(ChunkEntity.embedding.is_(None)).order_by(ChunkEntity.id)
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [self._to_domain(c) for c in result.scalars().all()]

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(ChunkEntity))
        return int(result.scalar_one())

    async def count_embedded(self) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(ChunkEntity).where(ChunkEntity.embedding.is_not(None))
        )
        return int(result.scalar_one())


class SQLBucketMetaRepository:
    """Key/value facts about a bucket, currently only the embedding dimension."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_embedding_dim(self) -> Optional[int]:
        entity = await self.session.get(BucketMetaEntity, EMBEDDING_DIM_KEY)
        return int(entity.value) if entity is not None else None  # type: ignore

    async def set_embedding_dim(self, dim: int) -> None:
        entity = await self.session.get(BucketMetaEntity, EMBEDDING_DIM_KEY)
        if entity is None:
            self.session.add(BucketMetaEntity(key=EMBEDDING_DIM_KEY, value=str(dim)))
        else:
            entity.value = str(dim)  # type: ignore
        await self.session.flush()

    async def stats(self) -> BucketStats:
        chunks = SQLChunkRepository(self.session)
        return BucketStats(
            documents=await SQLDocumentRepository(self.session).count(),
            chunks=await chunks.count(),
            embedded_chunks=await chunks.count_embedded(),
            embedding_dim=await self.get_embedding_dim(),
        )
