"""
Request orchestration for the reading companion.

One question runs: access gate -> position check -> profile snapshot ->
embed -> search -> assemble -> generate -> response log. Each stage is timed
into the metrics collector; any RecaplioError carries the stage that failed.
"""
from __future__ import annotations

import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from .access_control import AccessPolicy, UserLibraryAccess
from .chunk_store import ChunkStore
from .config import RETRIEVAL_TOP_K, SEARCH_DEFAULT_LIMIT, SEARCH_MAX_LIMIT
from .context_assembler import ContextAssembler
from .embeddings import EmbeddingProvider
from .errors import InvalidPosition, RecaplioError, SearchUnavailable
from .feedback import FeedbackIngestor
from .generator import AnswerGenerator
from .learning_profile import LearningProfileStore
from .metrics import MetricsCollector
from .models import ConversationTurn, FeedbackAck, FeedbackCategory, LearningProfile, RAGContext, RagAnswer, RetrievalResult
from .observability import bind_request, clear_request, get_logger
from .similarity_search import SimilaritySearch
from .tokenization import extract_topics

logger = get_logger(__name__)


class RagPipeline:
    def __init__(
        self,
        chunk_store: ChunkStore,
        access_policy: AccessPolicy,
        profile_store: LearningProfileStore,
        *,
        embedder: EmbeddingProvider | None = None,
        generator: AnswerGenerator | None = None,
        assembler: ContextAssembler | None = None,
        metrics: MetricsCollector | None = None,
        top_k: int = RETRIEVAL_TOP_K,
    ):
        self.chunk_store = chunk_store
        self.access_policy = access_policy
        self.profile_store = profile_store
        self.embedder = embedder or EmbeddingProvider()
        self.search = SimilaritySearch(chunk_store, access_policy)
        self.assembler = assembler or ContextAssembler()
        self.generator = generator or AnswerGenerator()
        self.feedback = FeedbackIngestor(profile_store)
        self.metrics = metrics or MetricsCollector()
        self.top_k = int(top_k)

    @contextmanager
    def _stage(self, name: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.metrics.record_stage(name, (time.perf_counter() - start) * 1000.0)

    def _validate_position(self, context: RAGContext):
        if context.current_chunk_index is None:
            return
        try:
            total = self.chunk_store.count_chunks(context.book_id)
        except sqlite3.Error as exc:
            raise SearchUnavailable(f"chunk collection unavailable: {type(exc).__name__}") from exc
        if not 0 <= context.current_chunk_index < total:
            raise InvalidPosition(
                f"current_chunk_index {context.current_chunk_index} outside [0, {total}) for book {context.book_id}"
            )

    def _profile_snapshot(self, user_id: str) -> LearningProfile:
        try:
            return self.profile_store.get_profile(user_id)
        except (sqlite3.Error, RuntimeError) as exc:
            # Profile adjustments are soft biases; answer without them.
            logger.warning("profile_snapshot_failed", error_type=type(exc).__name__)
            return LearningProfile(user_id=str(user_id))

    def _log_response(self, message_id: str, query: str, context: RAGContext, ordinals: list[int]):
        try:
            self.profile_store.log_response(
                message_id,
                user_id=context.user_id,
                book_id=context.book_id,
                topics=extract_topics(query),
                ordinals=ordinals,
            )
        except (sqlite3.Error, RuntimeError) as exc:
            logger.warning("response_log_failed", message_id=message_id, error_type=type(exc).__name__)

    def answer(
        self, query: str, context: RAGContext, history: list[ConversationTurn] | None = None
    ) -> RagAnswer:
        """Answers one question about one book for one reader, optionally following on from ``history``."""
        query = str(query or "").strip()
        if not query:
            raise ValueError("query is required")

        message_id = str(uuid.uuid4())
        bind_request(message_id, user_id=context.user_id, book_id=context.book_id, tier=context.user_tier.value)
        try:
            return self._answer(query, context, message_id, list(history or ()))
        finally:
            clear_request()

    def _answer(
        self, query: str, context: RAGContext, message_id: str, history: list[ConversationTurn]
    ) -> RagAnswer:
        start = time.perf_counter()
        input_tokens = output_tokens = 0
        try:
            with self._stage("access"):
                self.search.check_access(context.user_id, context.book_id)
                self._validate_position(context)
            profile = self._profile_snapshot(context.user_id)

            with self._stage("embedding"):
                query_vector = self.embedder.embed(query)
            with self._stage("search"):
                results = self.search.search(query_vector, context.book_id, self.top_k, context.user_id)
                current = None
                if context.current_chunk_index is not None:
                    current = self.chunk_store.get_chunk(context.book_id, context.current_chunk_index)
            with self._stage("assembly"):
                prompt = self.assembler.assemble(
                    query, context, results, profile, current_passage=current, history=history
                )
            with self._stage("generation"):
                text, input_tokens, output_tokens = self.generator.generate(prompt)
        except RecaplioError as exc:
            latency_ms = (time.perf_counter() - start) * 1000.0
            logger.warning("query_failed", stage=exc.stage, error_type=type(exc).__name__, latency_ms=round(latency_ms, 2))
            self.metrics.record_request(
                "query", latency_ms, success=False, tier=context.user_tier.value, error_stage=exc.stage
            )
            raise

        self._log_response(message_id, query, context, prompt.ordinals)
        latency_ms = (time.perf_counter() - start) * 1000.0
        self.metrics.record_request(
            "query",
            latency_ms,
            success=True,
            tier=context.user_tier.value,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        logger.info(
            "query_answered",
            retrieved=len(results),
            passages=len(prompt.passages),
            latency_ms=round(latency_ms, 2),
        )
        return RagAnswer(
            response_text=text,
            message_id=message_id,
            context=context,
            timestamp=datetime.now(timezone.utc).isoformat(),
            passage_ordinals=tuple(prompt.ordinals),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def semantic_search(
        self, user_id: str, book_id: int, query: str, limit: int = SEARCH_DEFAULT_LIMIT
    ) -> list[RetrievalResult]:
        """Embeds ``query`` and returns up to ``limit`` passages of the book, best first."""
        query = str(query or "").strip()
        if not query:
            raise ValueError("query is required")
        limit = int(limit)
        if limit < 0:
            raise ValueError("limit must be >= 0")
        limit = min(limit, SEARCH_MAX_LIMIT)

        start = time.perf_counter()
        try:
            self.search.check_access(user_id, book_id)
            with self._stage("embedding"):
                query_vector = self.embedder.embed(query)
            with self._stage("search"):
                results = self.search.search(query_vector, book_id, limit, user_id)
        except RecaplioError as exc:
            self.metrics.record_request(
                "search", (time.perf_counter() - start) * 1000.0, success=False, error_stage=exc.stage
            )
            raise
        self.metrics.record_request("search", (time.perf_counter() - start) * 1000.0, success=True)
        return results

    def record_feedback(self, user_id: str, message_id: str, category: FeedbackCategory | str) -> FeedbackAck:
        start = time.perf_counter()
        try:
            ack = self.feedback.ingest(user_id, message_id, category)
        except RecaplioError as exc:
            self.metrics.record_request(
                "feedback", (time.perf_counter() - start) * 1000.0, success=False, error_stage=exc.stage
            )
            raise
        self.metrics.record_request("feedback", (time.perf_counter() - start) * 1000.0, success=True)
        return ack

    def get_profile(self, user_id: str) -> LearningProfile:
        return self.profile_store.get_profile(user_id)

    def close(self):
        self.profile_store.close()
        self.chunk_store.close()
        close_access = getattr(self.access_policy, "close", None)
        if callable(close_access):
            close_access()


def build_pipeline() -> RagPipeline:
    """Wires the pipeline against the configured SQLite stores and model backends."""
    return RagPipeline(
        chunk_store=ChunkStore(),
        access_policy=UserLibraryAccess(),
        profile_store=LearningProfileStore(),
    )
