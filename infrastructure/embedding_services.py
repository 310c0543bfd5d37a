# infrastructure/embedding_services.py
"""Embedding generation with L2 normalization for consistent similarity scoring"""
import asyncio
import logging
import threading
from typing import List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from core.domain import EmbeddingResult
from core.interfaces import IEmbeddingService
from config import settings
from utils.vectors import l2_normalize

logger = logging.getLogger(settings.LOGGER_NAME)

class SentenceTransformerEmbedding(IEmbeddingService):
    """
    Sentence transformer producing unit vectors.

    With normalized vectors the inner product is the cosine, which is what
    the vector index scores with.

    The model is loaded lazily, once per process, and shared by every
    instance. Failures are reported as tagged results instead of exceptions:
    a model that cannot be loaded or a runtime error during encoding is
    RETRYABLE (cache/network/hardware can recover); input the model can never
    encode is FATAL.
    """

    _model: Optional[SentenceTransformer] = None  # Singleton cache
    _model_name: Optional[str] = None
    _load_lock = threading.Lock()

    def __init__(self, model_name: str = settings.EMBEDDING_MODEL_NAME):
        self.model_name = model_name
        self._dimension: Optional[int] = None

    @classmethod
    def _load(cls, model_name: str) -> SentenceTransformer:
        """Load the heavy model only once; runs in a worker thread."""
        with cls._load_lock:
            if cls._model is not None and cls._model_name == model_name:
                return cls._model
            try:
                logger.info(f"[EMBED] Attempting to load model {model_name} from local cache...")
                model = SentenceTransformer(model_name, local_files_only=True)
                logger.info(f"[EMBED] Successfully loaded {model_name} from local cache.")
            except (OSError, ValueError) as e:
                logger.warning(
                    f"[EMBED] Model {model_name} not found in cache. Attempting online download. "
                    f"This may take a few minutes. Error: {e}"
                )
                model = SentenceTransformer(model_name)
                logger.info(f"[EMBED] Successfully downloaded and loaded {model_name}.")
            cls._model = model
            cls._model_name = model_name
            return model

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            model = self._load(self.model_name)
            self._dimension = int(model.get_sentence_embedding_dimension() or 0)
        return self._dimension

    def _encode(self, texts: List[str]) -> np.ndarray:
        model = self._load(self.model_name)
        raw = model.encode(texts, convert_to_tensor=False)
        return l2_normalize(np.asarray(raw, dtype="float32"))

    async def embed(self, text: str) -> EmbeddingResult:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: List[str]) -> List[EmbeddingResult]:
        """
        Encode a batch in one model call.

        Invalid entries get a FATAL result of their own; the rest of the batch
        is still encoded.
        """
        results: List[Optional[EmbeddingResult]] = [None] * len(texts)
        valid: List[int] = []
        for i, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                results[i] = EmbeddingResult.fatal("Cannot embed empty or non-string input")
            else:
                valid.append(i)

        if valid:
            try:
                vectors = await asyncio.to_thread(self._encode, [texts[i] for i in valid])
            except (OSError, RuntimeError, ValueError, MemoryError) as e:
                logger.warning(f"[EMBED] Encoding failed, caller may retry: {e}")
                for i in valid:
                    results[i] = EmbeddingResult.retryable(str(e))
            else:
                for i, vec in zip(valid, vectors):
                    results[i] = EmbeddingResult.success(vec.tolist())

        return [r for r in results if r is not None]
