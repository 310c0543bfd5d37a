# core/exceptions.py
"""
Engine error taxonomy.

Four kinds, each a separate base class so callers can branch on kind:
input errors (rejected before any write), consistency errors, provider
errors (transient or permanent embedding failures) and storage errors
(raised after the failing transaction has been rolled back).
"""
from typing import Optional

from core.domain import ErrorCode


class RetrievalEngineError(Exception):
    """Base error carrying a specific error code"""

    default_code: ErrorCode = ErrorCode.STORAGE_FAILED

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        self.message = message
        self.error_code = error_code or self.default_code
        super().__init__(message)

    def __str__(self):
        # Format used for logging and API error payloads
        return f"[{self.error_code.value}] {self.message}"


# ============= Input =============

class InputError(RetrievalEngineError):
    pass


class EmptyTextError(InputError):
    default_code = ErrorCode.EMPTY_TEXT

    def __init__(self, source: str = ""):
        where = f" from {source}" if source else ""
        super().__init__(f"Document text{where} is empty after normalization")


class InvalidChunkParametersError(InputError):
    default_code = ErrorCode.INVALID_CHUNK_PARAMETERS

    def __init__(self, max_len: int, overlap: int):
        self.max_len = max_len
        self.overlap = overlap
        super().__init__(
            f"Chunk parameters must satisfy 0 < overlap < max_len "
            f"(got max_len={max_len}, overlap={overlap})"
        )


class InvalidQueryError(InputError):
    default_code = ErrorCode.INVALID_QUERY


class InvalidBucketNameError(InputError):
    default_code = ErrorCode.INVALID_BUCKET_NAME

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Bucket name '{name}' contains no usable characters")


# ============= Consistency =============

class ConsistencyError(RetrievalEngineError):
    pass


class DimensionMismatchError(ConsistencyError):
    default_code = ErrorCode.DIMENSION_MISMATCH

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector dimension {actual} does not match bucket dimension {expected}")


class BucketNotFoundError(ConsistencyError):
    default_code = ErrorCode.BUCKET_NOT_FOUND

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Bucket '{name}' does not exist")


class BucketExistsError(ConsistencyError):
    default_code = ErrorCode.BUCKET_EXISTS

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Bucket '{name}' already exists")


class DocumentNotFoundError(ConsistencyError):
    default_code = ErrorCode.DOCUMENT_NOT_FOUND

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found")


class ChunkNotFoundError(ConsistencyError):
    default_code = ErrorCode.CHUNK_NOT_FOUND

    def __init__(self, chunk_id: int):
        self.chunk_id = chunk_id
        super().__init__(f"Chunk {chunk_id} not found")


class NoActiveBucketError(ConsistencyError):
    default_code = ErrorCode.NO_ACTIVE_BUCKET

    def __init__(self, message: str = "No active bucket. Create or select a bucket first."):
        super().__init__(message)


class LastBucketError(ConsistencyError):
    default_code = ErrorCode.LAST_BUCKET

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Refusing to delete '{name}': it is the last remaining bucket")


# ============= Provider =============

class ProviderError(RetrievalEngineError):
    pass


class EmbeddingRetryableError(ProviderError):
    """Transient provider failure; the same call may succeed later."""
    default_code = ErrorCode.EMBEDDING_RETRYABLE


class EmbeddingFatalError(ProviderError):
    """Permanent provider failure; retrying the same input is pointless."""
    default_code = ErrorCode.EMBEDDING_FATAL


# ============= Storage =============

class StorageError(RetrievalEngineError):
    default_code = ErrorCode.STORAGE_FAILED
