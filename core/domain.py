# core/domain.py
"""Shared enumerations and domain models used across the engine."""
from enum import Enum

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Optional, Iterator

# ============= Enums =============

class ErrorCode(str, Enum):
    """Error codes for user-facing error messages."""
    EMPTY_TEXT = "EMPTY_TEXT"
    INVALID_CHUNK_PARAMETERS = "INVALID_CHUNK_PARAMETERS"
    INVALID_QUERY = "INVALID_QUERY"
    INVALID_BUCKET_NAME = "INVALID_BUCKET_NAME"
    DIMENSION_MISMATCH = "DIMENSION_MISMATCH"
    BUCKET_NOT_FOUND = "BUCKET_NOT_FOUND"
    BUCKET_EXISTS = "BUCKET_EXISTS"
    DOCUMENT_NOT_FOUND = "DOCUMENT_NOT_FOUND"
    CHUNK_NOT_FOUND = "CHUNK_NOT_FOUND"
    NO_ACTIVE_BUCKET = "NO_ACTIVE_BUCKET"
    LAST_BUCKET = "LAST_BUCKET"
    EMBEDDING_RETRYABLE = "EMBEDDING_RETRYABLE"
    EMBEDDING_FATAL = "EMBEDDING_FATAL"
    STORAGE_FAILED = "STORAGE_FAILED"


class EmbeddingStatus(str, Enum):
    """Outcome of a single embedding call."""
    SUCCESS = "success"
    RETRYABLE = "retryable"  # network hiccup, model still loading
    FATAL = "fatal"          # input the provider will never accept


class ChunkState(str, Enum):
    """Whether a chunk participates in vector search yet."""
    EMBEDDED = "embedded"
    PENDING_EMBEDDING = "pending_embedding"


class MediaKind(str, Enum):
    """Kind of source the extracted text came from."""
    PDF = "pdf"
    TEXT = "text"
    MARKDOWN = "markdown"
    AUDIO = "audio"
    VIDEO = "video"
    IMAGE = "image"
    URL = "url"
    UNKNOWN = "unknown"

    @staticmethod
    def from_string(kind: Optional[str]) -> 'MediaKind':
        """Convert string to MediaKind enum."""
        try:
            return MediaKind((kind or "").lower())
        except ValueError:
            return MediaKind.UNKNOWN


# ============= Domain Models =============

@dataclass(frozen=True)
class BucketRef:
    """A named, isolated collection and the directory that holds it."""
    name: str
    path: str
    created_at: datetime


@dataclass(frozen=True)
class SessionContext:
    """
    Which bucket an operation targets.

    Passed explicitly to ingestion and retrieval instead of reading a global
    "current bucket", so a read against a non-active bucket stays valid while
    the active pointer moves.
    """
    bucket: Optional[BucketRef] = None

    def require_bucket(self) -> BucketRef:
        if self.bucket is None:
            from core.exceptions import NoActiveBucketError
            raise NoActiveBucketError()
        return self.bucket

    @staticmethod
    def for_bucket(bucket: BucketRef) -> 'SessionContext':
        return SessionContext(bucket=bucket)


@dataclass
class Document:
    """Domain model for documents"""
    id: str
    source: str
    media_kind: MediaKind
    text: str
    content_hash: str
    ingested_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Chunk:
    """Domain model for document chunks"""
    id: Optional[int]  # assigned by the store; insertion order within the bucket
    document_id: str
    ordinal: int
    content: str
    start_char: int
    end_char: int
    embedding: Optional[List[float]] = None

    @property
    def state(self) -> ChunkState:
        return ChunkState.EMBEDDED if self.embedding is not None else ChunkState.PENDING_EMBEDDING


@dataclass(frozen=True)
class EmbeddingResult:
    """Tagged result from an embedding provider; retry decisions read `status`."""
    status: EmbeddingStatus
    vector: Optional[List[float]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == EmbeddingStatus.SUCCESS

    @classmethod
    def success(cls, vector: List[float]) -> 'EmbeddingResult':
        return cls(status=EmbeddingStatus.SUCCESS, vector=list(vector))

    @classmethod
    def retryable(cls, error: str) -> 'EmbeddingResult':
        return cls(status=EmbeddingStatus.RETRYABLE, error=error)

    @classmethod
    def fatal(cls, error: str) -> 'EmbeddingResult':
        return cls(status=EmbeddingStatus.FATAL, error=error)


@dataclass
class DocumentCitation:
    """Source metadata attached to a retrieved chunk."""
    document_id: str
    source: str
    media_kind: MediaKind
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievedChunk:
    """One ranked hit of a retrieval."""
    chunk: Chunk
    score: float
    citation: DocumentCitation
    lexical_score: float = 0.0
    vector_score: float = 0.0


@dataclass
class RetrievalResult:
    """Ranked hits plus the bucket size, so "no match" differs from "empty bucket"."""
    hits: List[RetrievedChunk]
    bucket: str
    total_chunks: int

    @property
    def bucket_empty(self) -> bool:
        return self.total_chunks == 0

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self) -> Iterator[RetrievedChunk]:
        return iter(self.hits)

    def __getitem__(self, index: int) -> RetrievedChunk:
        return self.hits[index]


@dataclass
class IngestItem:
    """Extracted text handed over by an upstream extractor."""
    text: str
    source: str
    media_kind: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestionReport:
    """Outcome of ingesting one document."""
    document_id: str
    bucket: str
    chunk_count: int
    embedded_count: int
    pending_count: int
    duplicate: bool = False


@dataclass
class BucketStats:
    documents: int
    chunks: int
    embedded_chunks: int
    embedding_dim: Optional[int]

    @property
    def pending_chunks(self) -> int:
        return self.chunks - self.embedded_chunks
