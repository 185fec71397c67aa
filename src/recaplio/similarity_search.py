"""
Book-scoped similarity search.

Access is checked before any ranking so a denied reader cannot infer passage
existence from scores. Ranking is cosine similarity over the cached per-book
matrix (a linear scan), descending, with ties broken by ascending ordinal.
"""
from __future__ import annotations

from typing import Sequence

import numpy as np

from .access_control import AccessPolicy
from .chunk_store import BookIndex, ChunkStore
from .config import SEARCH_TIMEOUT_S
from .errors import AccessDenied, SearchUnavailable
from .models import RetrievalResult
from .observability import get_logger
from .resilience import call_with_timeout

logger = get_logger(__name__)


def rank_book_index(query_vector: Sequence[float], index: BookIndex, k: int) -> list[RetrievalResult]:
    """Returns the top ``k`` chunks of ``index`` for ``query_vector``."""
    if k <= 0 or len(index) == 0:
        return []
    query = np.asarray(query_vector, dtype=np.float32)
    if query.ndim != 1 or query.shape[0] != index.matrix.shape[1]:
        raise SearchUnavailable(
            f"query vector has dimension {query.shape[-1] if query.ndim else 0}, "
            f"index expects {index.matrix.shape[1]}"
        )
    norm = float(np.linalg.norm(query))
    if norm == 0.0:
        scores = np.zeros(len(index), dtype=np.float32)
    else:
        scores = index.matrix @ (query / norm)

    # lexsort uses the last key as primary: score descending, then ordinal ascending.
    order = np.lexsort((index.ordinals, -scores))
    return [
        RetrievalResult(chunk=index.chunks[int(i)], score=float(scores[int(i)]))
        for i in order[:k]
    ]


class SimilaritySearch:
    def __init__(self, chunk_store: ChunkStore, access_policy: AccessPolicy, timeout_s: float = SEARCH_TIMEOUT_S):
        self.chunk_store = chunk_store
        self.access_policy = access_policy
        self.timeout_s = float(timeout_s)

    def check_access(self, user_id: str, book_id: int):
        """Raises AccessDenied unless the reader has the book in their library."""
        try:
            allowed = bool(self.access_policy.can_read(user_id, book_id))
        except Exception as exc:
            raise SearchUnavailable(f"access check failed: {type(exc).__name__}", stage="access") from exc
        if not allowed:
            logger.warning("book_access_denied", user_id=user_id, book_id=book_id)
            raise AccessDenied(f"user {user_id} may not read book {book_id}")

    def search(self, query_vector: Sequence[float], book_id: int, k: int, user_id: str) -> list[RetrievalResult]:
        k = int(k)
        if k < 0:
            raise ValueError("k must be >= 0")
        self.check_access(user_id, book_id)
        if k == 0:
            return []

        try:
            index = call_with_timeout(self.chunk_store.get_book_index, self.timeout_s, book_id)
        except Exception as exc:
            raise SearchUnavailable(f"chunk collection unavailable: {type(exc).__name__}") from exc

        results = rank_book_index(query_vector, index, k)
        logger.info(
            "similarity_search_completed",
            book_id=book_id,
            indexed_chunks=len(index),
            k=k,
            returned=len(results),
            top_score=round(results[0].score, 4) if results else None,
        )
        return results
