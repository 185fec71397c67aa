import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from recaplio.access_control import UserLibraryAccess
from recaplio.chunk_store import ChunkStore
from recaplio.embeddings import EmbeddingProvider
from recaplio.errors import AccessDenied, EmbeddingUnavailable, GenerationFailed, InvalidCategory, InvalidPosition
from recaplio.generator import AnswerGenerator
from recaplio.learning_profile import LearningProfileStore
from recaplio.metrics import MetricsCollector
from recaplio.models import ConversationTurn, FeedbackCategory, RAGContext, UserTier
from recaplio.pipeline import RagPipeline

QUERY_VECTORS = {
    "What does the lighthouse keeper hide?": [0.5, 0.1, 0.9],
    "Tell me about the themes of the storm.": [1.0, 0.0, 0.0],
}


class _LookupEmbeddings:
    def __init__(self):
        self.calls = 0

    def embed_query(self, text):
        self.calls += 1
        return QUERY_VECTORS.get(text, [0.2, 0.2, 0.2])

    def embed_documents(self, texts):
        return [self.embed_query(t) for t in texts]


class _RecordingLLM:
    def __init__(self, answer="Lio's answer.", error=None):
        self.answer = answer
        self.error = error
        self.calls = 0
        self.last_messages = None

    def invoke(self, messages):
        self.calls += 1
        self.last_messages = messages
        if self.error is not None:
            raise self.error
        return self.answer


class TestRagPipeline(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.chunks = ChunkStore(root / "chunks.sqlite", dimensions=3)
        self.library = UserLibraryAccess(root / "library.sqlite")
        self.profiles = LearningProfileStore(root / "profiles.sqlite")
        self.metrics = MetricsCollector(root / "metrics")
        self.chunks.register_chunks(
            42,
            [
                {"ordinal": 0, "text": "The storm reaches the harbor at dusk.", "embedding": [1.0, 0.0, 0.0]},
                {"ordinal": 1, "text": "Mara counts the lanterns twice.", "embedding": [0.0, 1.0, 0.0]},
                {"ordinal": 2, "text": "The lighthouse keeper hides a letter.", "embedding": [0.0, 0.0, 1.0]},
            ],
        )
        self.chunks.register_chunks(43, [])
        self.library.grant("u1", 42)
        self.library.grant("u1", 43)
        self.embeddings = _LookupEmbeddings()
        self.llm = _RecordingLLM()
        self.pipeline = self._build(self.llm, top_k=2)

    def _build(self, llm, top_k=2):
        return RagPipeline(
            self.chunks,
            self.library,
            self.profiles,
            embedder=EmbeddingProvider(self.embeddings, dimensions=3, backoff_initial_s=0),
            generator=AnswerGenerator(lambda tier, max_tokens: llm, backoff_initial_s=0),
            metrics=self.metrics,
            top_k=top_k,
        )

    def tearDown(self):
        self.pipeline.close()
        self.tmp.cleanup()

    def test_answer_uses_top_k_in_ordinal_order(self):
        context = RAGContext(book_id=42, user_id="u1")
        with patch.object(self.pipeline.assembler, "assemble", wraps=self.pipeline.assembler.assemble) as assemble:
            answer = self.pipeline.answer("What does the lighthouse keeper hide?", context)
        results = assemble.call_args.args[2]
        self.assertEqual([r.ordinal for r in results], [2, 0])
        self.assertEqual(answer.passage_ordinals, (0, 2))
        self.assertEqual(answer.response_text, "Lio's answer.")

        payload = answer.to_payload()
        self.assertEqual(payload["messageId"], answer.message_id)
        self.assertEqual(
            payload["usedContext"],
            {"userTier": "FREE", "readingMode": "fiction", "knowledgeLens": "literary", "currentChunkIndex": None},
        )

    def test_denied_reader_never_reaches_search(self):
        context = RAGContext(book_id=42, user_id="u2")
        with patch.object(self.pipeline.search, "search") as search:
            with self.assertRaises(AccessDenied):
                self.pipeline.answer("What does the lighthouse keeper hide?", context)
        search.assert_not_called()
        self.assertEqual(self.embeddings.calls, 0)
        self.assertEqual(self.llm.calls, 0)

    def test_empty_book_still_generates(self):
        context = RAGContext(book_id=43, user_id="u1")
        answer = self.pipeline.answer("Anything here?", context)
        self.assertEqual(self.llm.calls, 1)
        self.assertEqual(answer.passage_ordinals, ())
        self.assertIn("No relevant passages", self.llm.last_messages[0].content)

    def test_position_outside_book_is_rejected(self):
        context = RAGContext(book_id=42, user_id="u1", current_chunk_index=3)
        with self.assertRaises(InvalidPosition):
            self.pipeline.answer("Where am I?", context)
        self.assertEqual(self.llm.calls, 0)

    def test_current_passage_is_included_once(self):
        context = RAGContext(book_id=42, user_id="u1", current_chunk_index=1)
        answer = self.pipeline.answer("What does the lighthouse keeper hide?", context)
        self.assertIn(1, answer.passage_ordinals)
        self.assertEqual(list(answer.passage_ordinals), sorted(set(answer.passage_ordinals)))
        self.assertIn("[Current Passage - Chunk 2]", self.llm.last_messages[0].content)

    def test_embedding_failure_surfaces_with_stage(self):
        context = RAGContext(book_id=42, user_id="u1")
        with patch.object(self.embeddings, "embed_query", side_effect=ConnectionError("down")):
            with self.assertRaises(EmbeddingUnavailable) as ctx:
                self.pipeline.answer("What does the lighthouse keeper hide?", context)
        self.assertEqual(ctx.exception.stage, "embedding")
        self.assertEqual(self.metrics.get_summary()["errors"]["by_stage"], {"embedding": 1})

    def test_generation_failure_after_retries(self):
        failing = _RecordingLLM(error=ConnectionError("model reset"))
        pipeline = self._build(failing)
        with self.assertRaises(GenerationFailed):
            pipeline.answer("Why?", RAGContext(book_id=42, user_id="u1"))
        self.assertEqual(failing.calls, 3)

    def test_answer_survives_closed_profile_store(self):
        self.profiles.close()
        answer = self.pipeline.answer("What does the lighthouse keeper hide?", RAGContext(book_id=42, user_id="u1"))
        self.assertEqual(answer.response_text, "Lio's answer.")
        self.assertEqual(self.llm.calls, 1)

    def test_history_reaches_the_model(self):
        history = [ConversationTurn("user", "Who is Mara?"), ConversationTurn("assistant", "The keeper's niece.")]
        self.pipeline.answer("What does she count?", RAGContext(book_id=42, user_id="u1"), history)
        contents = [m.content for m in self.llm.last_messages]
        self.assertEqual(contents[1:], ["Who is Mara?", "The keeper's niece.", "What does she count?"])

    def test_blank_query_is_rejected(self):
        with self.assertRaises(ValueError):
            self.pipeline.answer("   ", RAGContext(book_id=42, user_id="u1"))

    def test_too_long_feedback_shrinks_next_answer_budget(self):
        context = RAGContext(book_id=42, user_id="u1", user_tier=UserTier.PREMIUM)
        with patch.object(self.pipeline.generator, "generate", return_value=("ok", 1, 1)) as generate:
            self.pipeline.answer("Why?", context)
            baseline = generate.call_args.args[0].max_response_tokens
            for _ in range(5):
                self.pipeline.record_feedback("u1", "m-prev", "too_long")
            self.pipeline.answer("Why?", context)
            adapted = generate.call_args.args[0].max_response_tokens
        self.assertLess(adapted, baseline)

    def test_feedback_credits_topics_of_the_answered_question(self):
        context = RAGContext(book_id=42, user_id="u1")
        answer = self.pipeline.answer("Tell me about the themes of the storm.", context)
        ack = self.pipeline.record_feedback("u1", answer.message_id, FeedbackCategory.HELPFUL)
        self.assertTrue(ack.acknowledged)
        self.assertEqual(ack.message_id, answer.message_id)
        profile = self.pipeline.get_profile("u1")
        self.assertEqual(profile.count("helpful"), 1.0)
        self.assertEqual(profile.topic_affinity.get("theme"), 1.0)

        self.pipeline.record_feedback("u1", answer.message_id, "off_topic")
        self.assertEqual(self.pipeline.get_profile("u1").topic_affinity.get("theme"), 0.0)

    def test_feedback_from_another_reader_does_not_move_topics(self):
        answer = self.pipeline.answer("Tell me about the themes of the storm.", RAGContext(book_id=42, user_id="u1"))
        self.pipeline.record_feedback("u9", answer.message_id, "helpful")
        self.assertEqual(self.pipeline.get_profile("u9").topic_affinity, {})
        self.assertEqual(self.pipeline.get_profile("u9").count("helpful"), 1.0)

    def test_invalid_feedback_category(self):
        with self.assertRaises(InvalidCategory):
            self.pipeline.record_feedback("u1", "m1", "meh")
        self.assertTrue(self.pipeline.get_profile("u1").is_empty)

    def test_semantic_search_returns_ranked_results(self):
        results = self.pipeline.semantic_search("u1", 42, "What does the lighthouse keeper hide?", limit=3)
        self.assertEqual([r.ordinal for r in results], [2, 0, 1])
        self.assertEqual(self.pipeline.semantic_search("u1", 42, "q", limit=0), [])
        with self.assertRaises(AccessDenied):
            self.pipeline.semantic_search("u2", 42, "q")

    def test_metrics_record_stages_and_requests(self):
        self.pipeline.answer("Why?", RAGContext(book_id=42, user_id="u1"))
        summary = self.metrics.get_summary()
        self.assertEqual(summary["throughput"]["by_operation"], {"query": 1})
        for stage in ("access", "embedding", "search", "assembly", "generation"):
            self.assertEqual(summary["latency"][stage]["count"], 1)
        self.assertTrue(self.metrics.log_path.exists())


if __name__ == "__main__":
    unittest.main()
