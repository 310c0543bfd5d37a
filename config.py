# config.py
"""Engine configuration loaded from environment and .env"""
from typing import Optional
from pydantic_settings import BaseSettings
from utils.common import get_log_file_path, get_project_root

class Settings(BaseSettings):
    """Application configuration"""

    # Logger configuration
    LOG_FILE_PATH: str = get_log_file_path()
    LOGGER_NAME: str = "bucket_rag"
    LOG_LEVEL: str = "INFO"
    LOG_MAX_BYTES: int = 5 * 1024 * 1024  # 5MB per file
    LOG_BACKUP_COUNT: int = 5

    # Storage root: buckets/<name>/bucket.db plus the registry catalog
    DATA_DIR: str = f"{get_project_root()}/data"
    CATALOG_DB_NAME: str = "catalog.db"
    BUCKET_DB_NAME: str = "bucket.db"

    # Embedding model
    EMBEDDING_MODEL_NAME: str = "all-MiniLM-L6-v2"
    EMBEDDING_CONCURRENCY: int = 4
    EMBED_RETRY_ATTEMPTS: int = 3
    EMBED_RETRY_INITIAL_WAIT: float = 0.5
    EMBED_RETRY_MAX_WAIT: float = 8.0
    ALLOW_PENDING_EMBEDDINGS: bool = True  # Keep chunks searchable lexically while the provider is down

    # Chunking
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 200

    # Retrieval
    TOP_K: int = 5
    RETRIEVAL_OVERSAMPLING: int = 4
    FUSION_LEXICAL_WEIGHT: float = 0.5
    FUSION_VECTOR_WEIGHT: float = 0.5
    RETRIEVAL_DEDUP_THRESHOLD: Optional[float] = None
    QUERY_ENHANCEMENT_ENABLED: bool = True
    LEXICAL_MAX_QUERY_TERMS: int = 64
    MAX_QUERY_LENGTH: int = 2000

    # Registry
    REGISTRY_DELETE_LAST_POLICY: str = "clear_active"  # or "refuse"

    # App metadata
    APP_TITLE: str = "Bucket Retrieval Engine"
    APP_VERSION: str = "1.0.0"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
