import json
import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from recaplio import config, tokenization
from recaplio.db_migrations import SqliteMigration, applied_versions, apply_sqlite_migrations
from recaplio.metrics import MetricsCollector
from recaplio.models import Chunk, PromptPassage, RAGContext, RetrievalResult
from recaplio.tokenization import estimate_token_count, extract_topics, tokenize_for_matching


class TestSqliteMigrations(unittest.TestCase):
    def setUp(self):
        self.conn = sqlite3.connect(":memory:")

    def tearDown(self):
        self.conn.close()

    def test_applies_pending_versions_once_in_order(self):
        seen = []
        migrations = [
            SqliteMigration(version=2, name="add_index", runner=lambda conn: seen.append(2)),
            SqliteMigration(version=1, name="create", statements=("CREATE TABLE t (id INTEGER)",)),
        ]
        self.assertEqual(apply_sqlite_migrations(self.conn, component="demo", migrations=migrations), [1, 2])
        self.assertEqual(apply_sqlite_migrations(self.conn, component="demo", migrations=migrations), [])
        self.assertEqual(seen, [2])
        self.assertEqual(applied_versions(self.conn, "demo"), {1, 2})
        self.assertEqual(applied_versions(self.conn, "other"), set())

    def test_duplicate_versions_are_rejected(self):
        migrations = [
            SqliteMigration(version=1, name="a"),
            SqliteMigration(version=1, name="b"),
        ]
        with self.assertRaises(ValueError):
            apply_sqlite_migrations(self.conn, component="demo", migrations=migrations)


class TestMetricsCollector(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.metrics = MetricsCollector(Path(self.tmp.name))

    def tearDown(self):
        self.tmp.cleanup()

    def test_summary_aggregates_requests_stages_and_errors(self):
        self.metrics.record_stage("embedding", 10.0)
        self.metrics.record_stage("embedding", 30.0)
        self.metrics.record_request("query", 100.0, True, tier="FREE", input_tokens=1000, output_tokens=200)
        self.metrics.record_request("query", 50.0, False, tier="PRO", error_stage="generation")
        self.metrics.record_request("feedback", 5.0, True)

        summary = self.metrics.get_summary()
        self.assertEqual(summary["throughput"]["total_requests"], 3)
        self.assertEqual(summary["throughput"]["by_operation"], {"query": 2, "feedback": 1})
        self.assertEqual(summary["latency"]["embedding"], {"count": 2, "avg_ms": 20.0, "min_ms": 10.0, "max_ms": 30.0})
        self.assertEqual(summary["errors"]["by_stage"], {"generation": 1})
        self.assertEqual(summary["cost"]["total_input_tokens"], 1000)
        self.assertGreater(summary["cost"]["total_usd"], 0.0)
        self.assertGreater(summary["memory"]["rss_mb"], 0.0)

    def test_each_request_is_appended_as_json_line(self):
        self.metrics.record_request("search", 12.5, True)
        lines = self.metrics.log_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(lines), 1)
        entry = json.loads(lines[0])
        self.assertEqual(entry["operation"], "search")
        self.assertTrue(entry["success"])


class TestTokenization(unittest.TestCase):
    def test_tokenize_for_matching_is_unicode_aware(self):
        self.assertEqual(tokenize_for_matching("Élan, naïve_ 東京!"), ["élan", "naïve", "東京"])
        self.assertEqual(tokenize_for_matching("a bb ccc", min_len=2, limit=1), ["bb"])

    def test_extract_topics_prefix_matches_keywords(self):
        self.assertEqual(extract_topics("How do the characters shape the themes?"), ["character", "theme"])
        self.assertEqual(extract_topics("Where is the cat?"), [])

    def test_estimate_token_count_falls_back_to_words_offline(self):
        with patch.object(tokenization, "_get_token_encoder", return_value=None):
            self.assertEqual(estimate_token_count("three small words"), 3)
        self.assertEqual(estimate_token_count(""), 0)


class TestModels(unittest.TestCase):
    def test_rag_context_validates_and_coerces(self):
        context = RAGContext(book_id=1, user_id="u1", user_tier="PRO", reading_mode="non-fiction", knowledge_lens="knowledge")
        self.assertEqual(context.used_context()["userTier"], "PRO")
        with self.assertRaises(ValueError):
            RAGContext(book_id=1, user_id="")
        with self.assertRaises(ValueError):
            RAGContext(book_id=1, user_id="u1", current_chunk_index=-1)
        with self.assertRaises(ValueError):
            RAGContext(book_id=1, user_id="u1", user_tier="GOLD")

    def test_preview_breaks_on_word_boundary(self):
        result = RetrievalResult(Chunk(1, 0, "one two three four five"), 0.5)
        self.assertEqual(result.preview(12), "one two...")
        self.assertEqual(result.preview(200), "one two three four five")

    def test_passage_labels(self):
        self.assertEqual(PromptPassage(0, "t", 0.5, chapter="Ch 1").label(), "[Related Passage - Chunk 1, Ch 1]")
        self.assertEqual(PromptPassage(4, "t", 1.0, is_current=True).label(), "[Current Passage - Chunk 5]")


class TestConfigHelpers(unittest.TestCase):
    def test_env_number_follows_default_type_and_minimum(self):
        with patch.dict("os.environ", {"RECAPLIO_TEST_TURNS": "9", "RECAPLIO_TEST_RATE": "0.25"}):
            self.assertEqual(config._env_number("RECAPLIO_TEST_TURNS", 6, minimum=0), 9)
            self.assertEqual(config._env_number("RECAPLIO_TEST_RATE", 1.0), 0.25)
        with patch.dict("os.environ", {"RECAPLIO_TEST_TURNS": "lots"}):
            self.assertEqual(config._env_number("RECAPLIO_TEST_TURNS", 6, minimum=0), 6)
        with patch.dict("os.environ", {"RECAPLIO_TEST_TURNS": "-3"}):
            self.assertEqual(config._env_number("RECAPLIO_TEST_TURNS", 6, minimum=0), 0)
        self.assertEqual(config._env_number("RECAPLIO_TEST_UNSET", 4.0), 4.0)

    def test_env_flag(self):
        with patch.dict("os.environ", {"RECAPLIO_TEST_FLAG": "Yes"}):
            self.assertTrue(config._env_flag("RECAPLIO_TEST_FLAG", False))
        self.assertFalse(config._env_flag("RECAPLIO_TEST_UNSET", False))

    def test_model_kwargs_name_a_torch_device(self):
        self.assertIn(config.get_model_kwargs()["device"], ("cpu", "cuda"))


if __name__ == "__main__":
    unittest.main()
