"""
Shared test fixtures for the whole suite.

Provides: a registry rooted in a temporary data directory, a session bound to
a fresh bucket, deterministic embedding providers, and services wired to them.
"""

import pytest

from core.domain import SessionContext
from services.bucket_registry import BucketRegistry
from services.hybrid_retriever import HybridRetriever
from services.ingestion_service import IngestionService
from tests.helpers import ConceptEmbedding


@pytest.fixture
async def registry(tmp_path):
    """
    Initialized BucketRegistry under tmp_path.

    Yields:
        BucketRegistry: closed (stores and catalog disposed) after the test
    """
    registry = BucketRegistry(data_dir=str(tmp_path / "data"))
    await registry.initialize()
    yield registry
    await registry.close()


@pytest.fixture
async def session(registry: BucketRegistry) -> SessionContext:
    """Session targeting a freshly created and activated 'notes' bucket."""
    await registry.create("notes")
    return await registry.use("notes")


@pytest.fixture
def embedder() -> ConceptEmbedding:
    """Provide the hashing concept embedder."""
    return ConceptEmbedding()


@pytest.fixture
def ingestion(registry: BucketRegistry, embedder: ConceptEmbedding) -> IngestionService:
    """IngestionService with the default 1000/200 chunking and no retry waits."""
    return IngestionService(
        registry=registry,
        embedding_service=embedder,
        chunk_size=1000,
        chunk_overlap=200,
        retry_attempts=3,
        retry_initial_wait=0,
        retry_max_wait=0,
    )


@pytest.fixture
def retriever(registry: BucketRegistry, embedder: ConceptEmbedding) -> HybridRetriever:
    """HybridRetriever with equal weights and no deduplication."""
    return HybridRetriever(
        registry=registry,
        embedding_service=embedder,
        lexical_weight=0.5,
        vector_weight=0.5,
        top_k=5,
        dedup_threshold=None,
    )
