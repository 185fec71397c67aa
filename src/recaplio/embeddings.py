"""
Query embedding with dimension checks, bounded retry, and an LRU cache.
"""
from __future__ import annotations

import math
import threading
from collections import OrderedDict

from langchain_core.embeddings import Embeddings
from langchain_huggingface import HuggingFaceEmbeddings

from .config import (
    EMBEDDING_CACHE_SIZE,
    EMBEDDING_DIMENSIONS,
    EMBEDDING_MAX_RETRIES,
    EMBEDDING_MODEL_NAME,
    EMBEDDING_TIMEOUT_S,
    RETRY_BACKOFF_INITIAL_S,
    get_model_kwargs,
)
from .errors import EmbeddingUnavailable
from .observability import get_logger
from .resilience import bounded_retrying, call_with_timeout

logger = get_logger(__name__)

_EMBEDDING_MODEL = None


def get_embeddings() -> Embeddings:
    global _EMBEDDING_MODEL
    if _EMBEDDING_MODEL is None:
        _EMBEDDING_MODEL = HuggingFaceEmbeddings(
            model_name=EMBEDDING_MODEL_NAME,
            model_kwargs=get_model_kwargs(),
        )
    return _EMBEDDING_MODEL


class EmbeddingDimensionError(ValueError):
    """Upstream returned a vector of the wrong shape; retrying will not help."""


class _LRUCache:
    """Simple thread-safe LRU cache using OrderedDict."""

    def __init__(self, max_size: int):
        self._cache: OrderedDict[str, tuple[float, ...]] = OrderedDict()
        self._max = max(1, int(max_size))
        self._lock = threading.Lock()

    def get(self, key: str) -> tuple[float, ...] | None:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                return self._cache[key]
        return None

    def put(self, key: str, value: tuple[float, ...]) -> None:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            else:
                if len(self._cache) >= self._max:
                    self._cache.popitem(last=False)
            self._cache[key] = value

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class EmbeddingProvider:
    """Turns query text into a fixed-dimension vector or raises EmbeddingUnavailable."""

    def __init__(
        self,
        embeddings: Embeddings | None = None,
        *,
        dimensions: int = EMBEDDING_DIMENSIONS,
        timeout_s: float = EMBEDDING_TIMEOUT_S,
        max_retries: int = EMBEDDING_MAX_RETRIES,
        cache_size: int = EMBEDDING_CACHE_SIZE,
        backoff_initial_s: float = RETRY_BACKOFF_INITIAL_S,
    ):
        self._embeddings = embeddings
        self.dimensions = int(dimensions)
        self.timeout_s = float(timeout_s)
        self._cache = _LRUCache(cache_size)
        self._retrying = bounded_retrying(
            label="embedding",
            max_retries=min(1, max(0, int(max_retries))),
            should_retry=lambda exc: not isinstance(exc, EmbeddingDimensionError),
            backoff_initial_s=backoff_initial_s,
        )

    @property
    def embeddings(self) -> Embeddings:
        if self._embeddings is None:
            self._embeddings = get_embeddings()
        return self._embeddings

    def _embed_once(self, text: str) -> tuple[float, ...]:
        raw = self.embeddings.embed_query(text)
        try:
            vector = tuple(float(v) for v in raw)
        except (TypeError, ValueError) as exc:
            raise EmbeddingDimensionError("embedding response is not a numeric vector") from exc
        if len(vector) != self.dimensions:
            raise EmbeddingDimensionError(
                f"embedding has dimension {len(vector)}, expected {self.dimensions}"
            )
        if not all(math.isfinite(v) for v in vector):
            raise EmbeddingDimensionError("embedding contains non-finite values")
        return vector

    def embed(self, text: str) -> tuple[float, ...]:
        key = str(text)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            vector = self._retrying.copy()(call_with_timeout, self._embed_once, self.timeout_s, key)
        except Exception as exc:
            logger.error(
                "embedding_failed",
                error_type=type(exc).__name__,
                text_chars=len(key),
            )
            raise EmbeddingUnavailable(f"embedding failed: {type(exc).__name__}: {exc}") from exc
        self._cache.put(key, vector)
        return vector
