# database/session.py
"""Per-bucket SQLite schema, engine setup and session helpers."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from sqlalchemy import (JSON, Column, DateTime, ForeignKey, Integer, LargeBinary,
                        String, Text, UniqueConstraint, event)
from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession, async_sessionmaker,
                                    create_async_engine)
from sqlalchemy.orm import declarative_base

from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

Base = declarative_base()

# --- SQLAlchemy Models ---

class DocumentEntity(Base):
    __tablename__ = "documents"
    id = Column(String, primary_key=True)
    source = Column(String, nullable=False)
    media_kind = Column(String, nullable=False)
    text = Column(Text, nullable=False)
    content_hash = Column(String, index=True, nullable=False)
    meta = Column(JSON, nullable=False, default=dict)
    ingested_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

class ChunkEntity(Base):
    __tablename__ = "chunks"
    # AUTOINCREMENT keeps ids monotonic even after deletes; id order == insertion order
    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String, ForeignKey("documents.id", ondelete="CASCADE"), index=True, nullable=False)
    ordinal = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    start_char = Column(Integer, nullable=False)
    end_char = Column(Integer, nullable=False)
    embedding = Column(LargeBinary, nullable=True)  # little-endian float32; NULL while pending

    __table_args__ = (
        UniqueConstraint("document_id", "ordinal", name="uq_chunk_document_ordinal"),
        {"sqlite_autoincrement": True},
    )

class BucketMetaEntity(Base):
    __tablename__ = "bucket_meta"
    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


EMBEDDING_DIM_KEY = "embedding_dim"

# FTS5 keeps its own rowid; we set it to the chunk id.
FTS_TABLE_DDL = (
    "CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts "
    "USING fts5(content, tokenize='unicode61')"
)

# ============= Engine =============

def create_sqlite_engine(db_path: str) -> AsyncEngine:
    """
    Create an async engine for a SQLite file (bucket database or catalog).

    pysqlite/aiosqlite defer BEGIN until the first write, which would let a
    multi-statement read see two different commits. We emit BEGIN ourselves
    so every transaction, reads included, runs against one snapshot.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=False,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
        finally:
            cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


async def init_bucket_schema(engine: AsyncEngine) -> None:
    """Create tables and the FTS index if missing."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.exec_driver_sql(FTS_TABLE_DDL)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# ============= Session Helpers =============

@asynccontextmanager
async def get_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session wrapped in one transaction.

    Commits on clean exit; rolls back on any exception (including
    cancellation) and re-raises.
    """
    async with session_factory() as session:
        async with session.begin():
            yield session
