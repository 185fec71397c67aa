import tempfile
import threading
import unittest
from pathlib import Path

from recaplio.errors import InvalidCategory
from recaplio.learning_profile import LearningProfileStore
from recaplio.models import FeedbackCategory, LearningProfile, ResponseStyle


class TestLearningProfileStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = LearningProfileStore(Path(self.tmp.name) / "profiles.sqlite")

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_unknown_user_gets_empty_default(self):
        profile = self.store.get_profile("nobody")
        self.assertTrue(profile.is_empty)
        self.assertEqual(profile.verbosity_bias, 0.0)
        self.assertEqual(profile.focus_bias, 0.0)
        self.assertEqual(profile.satisfaction_score, 0.75)

    def test_repeated_feedback_adds_exactly(self):
        self.store.record_feedback("u1", "too_long")
        self.store.record_feedback("u1", FeedbackCategory.TOO_LONG)
        profile = self.store.get_profile("u1")
        self.assertEqual(profile.count(FeedbackCategory.TOO_LONG), 2.0)
        self.assertEqual(profile.count(FeedbackCategory.HELPFUL), 0.0)

    def test_weighted_value_is_added(self):
        self.store.record_feedback("u1", "helpful", value=2.5)
        self.assertEqual(self.store.get_profile("u1").count("helpful"), 2.5)
        with self.assertRaises(ValueError):
            self.store.record_feedback("u1", "helpful", value=0)

    def test_invalid_category_is_rejected(self):
        with self.assertRaises(InvalidCategory) as ctx:
            self.store.record_feedback("u1", "boring")
        self.assertEqual(ctx.exception.stage, "feedback")
        self.assertTrue(self.store.get_profile("u1").is_empty)

    def test_concurrent_feedback_never_loses_updates(self):
        def worker():
            for _ in range(25):
                self.store.record_feedback("u1", "helpful")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.store.get_profile("u1").count("helpful"), 200.0)

    def test_topic_affinity_accumulates(self):
        self.store.adjust_topic_affinity("u1", ["theme", "character"], 1.0)
        self.store.adjust_topic_affinity("u1", ["theme"], 1.0)
        self.store.adjust_topic_affinity("u1", ["character"], -1.0)
        profile = self.store.get_profile("u1")
        self.assertEqual(profile.topic_affinity, {"theme": 2.0, "character": 0.0})
        self.assertEqual(profile.top_topics(), ["theme"])

    def test_response_log_roundtrip(self):
        self.store.log_response("m1", user_id="u1", book_id=42, topics=["plot"], ordinals=[0, 2])
        logged = self.store.get_response("m1")
        self.assertEqual(logged["user_id"], "u1")
        self.assertEqual(logged["book_id"], 42)
        self.assertEqual(logged["topics"], ["plot"])
        self.assertEqual(logged["ordinals"], [0, 2])
        self.assertIsNone(self.store.get_response("missing"))

    def test_feedback_events_are_not_deduplicated(self):
        self.store.record_feedback_event("u1", "m1", "helpful")
        self.store.record_feedback_event("u1", "m1", "helpful")
        self.assertEqual(self.store.count_feedback_events("u1"), 2)

    def test_decay_scales_counts_and_affinity(self):
        self.store.record_feedback("u1", "too_short", value=4)
        self.store.adjust_topic_affinity("u1", ["plot"], 2.0)
        touched = self.store.decay(0.5)
        self.assertEqual(touched, 2)
        profile = self.store.get_profile("u1")
        self.assertEqual(profile.count("too_short"), 2.0)
        self.assertEqual(profile.topic_affinity["plot"], 1.0)
        for bad in (0.0, 1.5, -0.2):
            with self.assertRaises(ValueError):
                self.store.decay(bad)

    def test_reopening_store_keeps_data_and_skips_applied_migrations(self):
        self.store.record_feedback("u1", "off_topic")
        self.store.close()
        self.store = LearningProfileStore(Path(self.tmp.name) / "profiles.sqlite")
        self.assertEqual(self.store.get_profile("u1").count("off_topic"), 1.0)


class TestLearningProfileBiases(unittest.TestCase):
    def test_verbosity_bias_sign_and_range(self):
        longer = LearningProfile("u", counts={"too_short": 3})
        shorter = LearningProfile("u", counts={"too_long": 5})
        self.assertAlmostEqual(longer.verbosity_bias, 3 / 5)
        self.assertAlmostEqual(shorter.verbosity_bias, -5 / 7)
        self.assertEqual(shorter.response_style, ResponseStyle.CONCISE)
        self.assertEqual(LearningProfile("u", counts={"too_short": 1}).response_style, ResponseStyle.DETAILED)
        self.assertEqual(LearningProfile("u", counts={"too_short": 8}).response_style, ResponseStyle.COMPREHENSIVE)
        self.assertEqual(LearningProfile("u").response_style, ResponseStyle.BALANCED)

    def test_focus_bias_is_off_topic_share(self):
        profile = LearningProfile("u", counts={"off_topic": 1, "helpful": 3})
        self.assertAlmostEqual(profile.focus_bias, 0.25)

    def test_satisfaction_weights(self):
        profile = LearningProfile("u", counts={"helpful": 1, "off_topic": 1})
        self.assertAlmostEqual(profile.satisfaction_score, 0.65)

    def test_summary_uses_camel_case(self):
        summary = LearningProfile("u", counts={"helpful": 1}, topic_affinity={"theme": 1.0}).summary()
        self.assertEqual(summary["userId"], "u")
        self.assertEqual(summary["topTopics"], ["theme"])
        self.assertIn("verbosityBias", summary)


if __name__ == "__main__":
    unittest.main()
