# api/endpoints.py
"""
HTTP surface of the retrieval engine.

Every engine error is a RetrievalEngineError; engine_error_handler (registered
in main.py) maps its kind to a status code so endpoints stay free of
try/except boilerplate.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from config import settings
from core.domain import SessionContext
from core.exceptions import (BucketExistsError, ConsistencyError,
                             DimensionMismatchError, EmbeddingRetryableError,
                             InputError, LastBucketError, ProviderError,
                             RetrievalEngineError)
from services.bucket_registry import BucketRegistry
from services.factory import (get_bucket_registry, get_hybrid_retriever,
                              get_ingestion_service)
from services.hybrid_retriever import HybridRetriever
from services.ingestion_service import IngestionService
from api.schemas import (
    BucketItem,
    BucketsListResponse,
    CreateBucketRequest,
    DeleteResponse,
    DocumentsListItem,
    DocumentsListResponse,
    ErrorResponse,
    IngestRequest,
    IngestResponse,
    ReembedResponse,
    RetrievedChunkItem,
    RetrieveRequest,
    RetrieveResponse,
    StatusResponse,
    UseBucketRequest,
)

logger = logging.getLogger(settings.LOGGER_NAME)

router = APIRouter()


# ---------- Error mapping ----------
def status_for_error(exc: RetrievalEngineError) -> int:
    if isinstance(exc, InputError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (BucketExistsError, LastBucketError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, DimensionMismatchError):
        return 422
    if isinstance(exc, ConsistencyError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, EmbeddingRetryableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, ProviderError):
        return 422
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def engine_error_handler(request: Request, exc: RetrievalEngineError) -> JSONResponse:
    code = status_for_error(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    body = ErrorResponse(error=exc.message, error_code=exc.error_code)
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


# ---------- Helper: resolve target bucket ----------
async def _session_for(registry: BucketRegistry, bucket: Optional[str]) -> SessionContext:
    """Explicit bucket when given, otherwise whatever is active (possibly none)."""
    if bucket:
        return SessionContext.for_bucket(await registry.get(bucket))
    return await registry.session()


# ---------- Buckets ----------
@router.post("/buckets", response_model=BucketItem, status_code=status.HTTP_201_CREATED)
async def create_bucket(
    request: CreateBucketRequest,
    registry: BucketRegistry = Depends(get_bucket_registry),
) -> BucketItem:
    ref = await registry.create(request.name)
    return BucketItem(name=ref.name, created_at=ref.created_at)


@router.get("/buckets", response_model=BucketsListResponse)
async def list_buckets(registry: BucketRegistry = Depends(get_bucket_registry)) -> BucketsListResponse:
    active = await registry.active()
    active_name = active.name if active else None
    buckets = [
        BucketItem(name=b.name, created_at=b.created_at, active=(b.name == active_name))
        for b in await registry.list_buckets()
    ]
    return BucketsListResponse(buckets=buckets, active=active_name)


@router.put("/buckets/active", response_model=BucketItem)
async def use_bucket(
    request: UseBucketRequest,
    registry: BucketRegistry = Depends(get_bucket_registry),
) -> BucketItem:
    session = await registry.use(request.name)
    ref = session.require_bucket()
    return BucketItem(name=ref.name, created_at=ref.created_at, active=True)


@router.delete("/buckets/{name}", response_model=DeleteResponse)
async def delete_bucket(
    name: str,
    registry: BucketRegistry = Depends(get_bucket_registry),
) -> DeleteResponse:
    await registry.delete(name)
    return DeleteResponse(status="success", message=f"Bucket '{name}' deleted")


# ---------- Documents ----------
@router.post("/documents", response_model=IngestResponse)
async def ingest_document(
    request: IngestRequest,
    registry: BucketRegistry = Depends(get_bucket_registry),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> IngestResponse:
    session = await _session_for(registry, request.bucket)
    report = await ingestion.ingest_text(
        session,
        request.text,
        request.source,
        media_kind=request.media_kind.value if request.media_kind else None,
        metadata=request.metadata,
    )
    return IngestResponse(
        document_id=report.document_id,
        bucket=report.bucket,
        chunk_count=report.chunk_count,
        embedded_count=report.embedded_count,
        pending_count=report.pending_count,
        duplicate=report.duplicate,
    )


@router.get("/documents", response_model=DocumentsListResponse)
async def list_documents(
    bucket: Optional[str] = None,
    registry: BucketRegistry = Depends(get_bucket_registry),
) -> DocumentsListResponse:
    ref = (await _session_for(registry, bucket)).require_bucket()
    store = await registry.open_store(ref)
    documents = [
        DocumentsListItem(
            id=d.id,
            source=d.source,
            media_kind=d.media_kind,
            ingested_at=d.ingested_at,
            metadata=d.metadata,
        )
        for d in await store.list_documents()
    ]
    return DocumentsListResponse(bucket=ref.name, documents=documents)


@router.delete("/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(
    document_id: str,
    bucket: Optional[str] = None,
    registry: BucketRegistry = Depends(get_bucket_registry),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> DeleteResponse:
    session = await _session_for(registry, bucket)
    removed = await ingestion.delete_document(session, document_id)
    return DeleteResponse(status="success", message=f"Document {document_id} deleted ({removed} chunks)")


@router.post("/documents/reembed", response_model=ReembedResponse)
async def reembed_pending(
    bucket: Optional[str] = None,
    registry: BucketRegistry = Depends(get_bucket_registry),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> ReembedResponse:
    session = await _session_for(registry, bucket)
    embedded = await ingestion.reembed_pending(session)
    return ReembedResponse(bucket=session.require_bucket().name, embedded=embedded)


# ---------- Retrieval ----------
@router.post("/retrieve", response_model=RetrieveResponse)
async def retrieve(
    request: RetrieveRequest,
    registry: BucketRegistry = Depends(get_bucket_registry),
    retriever: HybridRetriever = Depends(get_hybrid_retriever),
) -> RetrieveResponse:
    session = await _session_for(registry, request.bucket)
    result = await retriever.retrieve(session, request.query, request.k)

    items = [
        RetrievedChunkItem(
            chunk_id=hit.chunk.id,  # type: ignore
            document_id=hit.chunk.document_id,
            ordinal=hit.chunk.ordinal,
            content=hit.chunk.content,
            score=round(hit.score, 4),
            lexical_score=round(hit.lexical_score, 4),
            vector_score=round(hit.vector_score, 4),
            source=hit.citation.source,
            media_kind=hit.citation.media_kind,
            metadata=hit.citation.metadata,
        )
        for hit in result
    ]
    return RetrieveResponse(
        bucket=result.bucket,
        query=request.query,
        results=items,
        total_results=len(items),
        bucket_empty=result.bucket_empty,
    )


# ---------- Status ----------
@router.get("/status", response_model=StatusResponse)
async def get_status(registry: BucketRegistry = Depends(get_bucket_registry)) -> StatusResponse:
    active = await registry.active()
    if active is None:
        return StatusResponse()
    stats = await (await registry.open_store(active)).stats()
    return StatusResponse(
        active_bucket=active.name,
        documents=stats.documents,
        chunks=stats.chunks,
        embedded_chunks=stats.embedded_chunks,
        pending_chunks=stats.pending_chunks,
        ready_for_queries=stats.chunks > 0,
    )
