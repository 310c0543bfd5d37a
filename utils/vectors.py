# utils/vectors.py
"""Vector helpers: BLOB encoding, normalization and cosine similarity"""
from typing import Sequence

import numpy as np

# Stored embeddings are little-endian float32 regardless of host byte order
_BLOB_DTYPE = np.dtype("<f4")


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=_BLOB_DTYPE).tobytes()


def bytes_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=_BLOB_DTYPE).astype(np.float32)


def l2_normalize(arr: np.ndarray) -> np.ndarray:
    """
    L2 normalize rows to unit length.

    Zero rows stay zero, so their dot product with anything is 0 rather
    than NaN.
    """
    arr = np.atleast_2d(np.asarray(arr, dtype=np.float32))
    norms = np.linalg.norm(arr, axis=1, keepdims=True)
    safe = np.where(norms == 0, 1.0, norms)
    return (arr / safe).astype(np.float32)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero magnitude or lengths differ."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / (na * nb), -1.0, 1.0))
