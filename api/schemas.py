# api/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.domain import ErrorCode, MediaKind

class CreateBucketRequest(BaseModel):
    name: str

class UseBucketRequest(BaseModel):
    name: str

class BucketItem(BaseModel):
    name: str
    created_at: datetime
    active: bool = False

class BucketsListResponse(BaseModel):
    buckets: List[BucketItem]
    active: Optional[str] = None

class IngestRequest(BaseModel):
    text: str
    source: str
    media_kind: Optional[MediaKind] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    bucket: Optional[str] = None  # defaults to the active bucket

class IngestResponse(BaseModel):
    document_id: str
    bucket: str
    chunk_count: int
    embedded_count: int
    pending_count: int
    duplicate: bool = False

class DocumentsListItem(BaseModel):
    id: str
    source: str
    media_kind: MediaKind
    ingested_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

class DocumentsListResponse(BaseModel):
    bucket: str
    documents: List[DocumentsListItem]

class RetrieveRequest(BaseModel):
    query: str
    k: Optional[int] = Field(default=None, ge=1, le=100)
    bucket: Optional[str] = None  # defaults to the active bucket

class RetrievedChunkItem(BaseModel):
    chunk_id: int
    document_id: str
    ordinal: int
    content: str
    score: float
    lexical_score: float
    vector_score: float
    source: str
    media_kind: MediaKind
    metadata: Dict[str, Any] = Field(default_factory=dict)

class RetrieveResponse(BaseModel):
    bucket: str
    query: str
    results: List[RetrievedChunkItem]
    total_results: int
    bucket_empty: bool

class StatusResponse(BaseModel):
    active_bucket: Optional[str] = None
    documents: int = 0
    chunks: int = 0
    embedded_chunks: int = 0
    pending_chunks: int = 0
    ready_for_queries: bool = False

class ReembedResponse(BaseModel):
    bucket: str
    embedded: int

class DeleteResponse(BaseModel):
    status: str
    message: str

class ErrorResponse(BaseModel):
    error: str
    error_code: ErrorCode
