# services/factory.py
"""Provider functions used as FastAPI dependencies; override them in tests."""
from functools import lru_cache

from fastapi import Depends

from config import settings
from core.interfaces import IEmbeddingService
from infrastructure.embedding_services import SentenceTransformerEmbedding
from services.bucket_registry import BucketRegistry
from services.hybrid_retriever import HybridRetriever
from services.ingestion_service import IngestionService


@lru_cache
def get_bucket_registry() -> BucketRegistry:
    """Process-wide registry; the app lifespan initializes and closes it."""
    return BucketRegistry(data_dir=settings.DATA_DIR)


@lru_cache
def get_embedding_service() -> IEmbeddingService:
    """Create embedding service based on configuration."""
    return SentenceTransformerEmbedding(settings.EMBEDDING_MODEL_NAME)


@lru_cache
def get_ingestion_service(
    registry: BucketRegistry = Depends(get_bucket_registry),
    embedding_service: IEmbeddingService = Depends(get_embedding_service),
) -> IngestionService:
    """
    One service per (registry, provider) pair, so the embedding concurrency
    limit is shared by every request instead of applying per request.
    """
    return IngestionService(registry=registry, embedding_service=embedding_service)


def get_hybrid_retriever(
    registry: BucketRegistry = Depends(get_bucket_registry),
    embedding_service: IEmbeddingService = Depends(get_embedding_service),
) -> HybridRetriever:
    return HybridRetriever(registry=registry, embedding_service=embedding_service)
