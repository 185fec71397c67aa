"""Feedback ingestion: validates a rating on an answer and updates the learning profile."""
from __future__ import annotations

from datetime import datetime, timezone

from .learning_profile import LearningProfileStore, parse_category
from .models import FeedbackAck, FeedbackCategory
from .observability import get_logger

logger = get_logger(__name__)

# Topic affinity credit for the question behind a rated answer.
TOPIC_CREDIT = {
    FeedbackCategory.HELPFUL: 1.0,
    FeedbackCategory.OFF_TOPIC: -1.0,
}


class FeedbackIngestor:
    def __init__(self, profile_store: LearningProfileStore):
        self.profile_store = profile_store

    def ingest(self, user_id: str, message_id: str, category: FeedbackCategory | str) -> FeedbackAck:
        parsed = parse_category(category)
        if not str(message_id or "").strip():
            raise ValueError("message_id is required")
        if not str(user_id or "").strip():
            raise ValueError("user_id is required")

        self.profile_store.record_feedback(user_id, parsed)
        self.profile_store.record_feedback_event(user_id, message_id, parsed)

        credited_topics: list[str] = []
        delta = TOPIC_CREDIT.get(parsed)
        if delta:
            logged = self.profile_store.get_response(message_id)
            # Only the reader who received the answer can move its topic weights.
            if logged is not None and logged["user_id"] == str(user_id):
                credited_topics = list(logged["topics"])
                self.profile_store.adjust_topic_affinity(user_id, credited_topics, delta)

        logger.info(
            "feedback_recorded",
            user_id=str(user_id),
            message_id=str(message_id),
            category=parsed.value,
            credited_topics=len(credited_topics),
        )
        return FeedbackAck(
            acknowledged=True,
            message_id=str(message_id),
            category=parsed,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
