"""
Value types shared across the RAG core.

Request-scoped objects are frozen dataclasses; closed vocabularies are enums so
malformed input is rejected at the boundary instead of deep inside assembly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class UserTier(str, Enum):
    FREE = "FREE"
    PREMIUM = "PREMIUM"
    PRO = "PRO"


class ReadingMode(str, Enum):
    FICTION = "fiction"
    NON_FICTION = "non-fiction"


class KnowledgeLens(str, Enum):
    LITERARY = "literary"
    KNOWLEDGE = "knowledge"


class FeedbackCategory(str, Enum):
    HELPFUL = "helpful"
    TOO_LONG = "too_long"
    TOO_SHORT = "too_short"
    OFF_TOPIC = "off_topic"


class ResponseStyle(str, Enum):
    CONCISE = "concise"
    BALANCED = "balanced"
    DETAILED = "detailed"
    COMPREHENSIVE = "comprehensive"


@dataclass(frozen=True)
class Chunk:
    book_id: int
    ordinal: int
    text: str
    embedding: tuple[float, ...] = ()
    chapter: str | None = None


@dataclass(frozen=True)
class RetrievalResult:
    chunk: Chunk
    score: float

    @property
    def ordinal(self) -> int:
        return self.chunk.ordinal

    def preview(self, max_chars: int = 200) -> str:
        text = " ".join(self.chunk.text.split())
        if len(text) <= max_chars:
            return text
        return text[:max_chars].rsplit(" ", 1)[0] + "..."


@dataclass(frozen=True)
class RAGContext:
    book_id: int
    user_id: str
    user_tier: UserTier = UserTier.FREE
    reading_mode: ReadingMode = ReadingMode.FICTION
    knowledge_lens: KnowledgeLens = KnowledgeLens.LITERARY
    current_chunk_index: int | None = None

    def __post_init__(self):
        # Coerce raw strings so callers outside the API layer get the same checks.
        object.__setattr__(self, "user_tier", UserTier(self.user_tier))
        object.__setattr__(self, "reading_mode", ReadingMode(self.reading_mode))
        object.__setattr__(self, "knowledge_lens", KnowledgeLens(self.knowledge_lens))
        if not str(self.user_id or "").strip():
            raise ValueError("user_id is required")
        if self.current_chunk_index is not None and int(self.current_chunk_index) < 0:
            raise ValueError("current_chunk_index must be >= 0")

    def used_context(self) -> dict[str, Any]:
        return {
            "userTier": self.user_tier.value,
            "readingMode": self.reading_mode.value,
            "knowledgeLens": self.knowledge_lens.value,
            "currentChunkIndex": self.current_chunk_index,
        }


@dataclass(frozen=True)
class ConversationTurn:
    """One earlier message of the reader's chat, supplied by the caller."""

    role: str
    content: str

    def __post_init__(self):
        if self.role not in ("user", "assistant"):
            raise ValueError(f"role must be 'user' or 'assistant', got {self.role!r}")


@dataclass(frozen=True)
class PromptPassage:
    ordinal: int
    text: str
    score: float
    chapter: str | None = None
    is_current: bool = False

    def label(self) -> str:
        prefix = "Current Passage" if self.is_current else "Related Passage"
        label = f"[{prefix} - Chunk {self.ordinal + 1}"
        if self.chapter:
            label += f", {self.chapter}"
        return label + "]"


@dataclass(frozen=True)
class PromptContext:
    system_prompt: str
    user_query: str
    passages: tuple[PromptPassage, ...]
    max_response_tokens: int
    context: RAGContext
    response_style: ResponseStyle = ResponseStyle.BALANCED
    context_tokens: int = 0
    dropped_ordinals: tuple[int, ...] = ()
    history: tuple[ConversationTurn, ...] = ()

    @property
    def ordinals(self) -> list[int]:
        return [p.ordinal for p in self.passages]

    @property
    def has_passages(self) -> bool:
        return bool(self.passages)

    def passages_text(self) -> str:
        return "\n\n---\n\n".join(f"{p.label()}\n{p.text}" for p in self.passages)


@dataclass
class LearningProfile:
    """Snapshot of a reader's accumulated feedback."""

    user_id: str
    counts: dict[str, float] = field(default_factory=dict)
    topic_affinity: dict[str, float] = field(default_factory=dict)

    def count(self, category: FeedbackCategory | str) -> float:
        return float(self.counts.get(FeedbackCategory(category).value, 0.0))

    @property
    def total_feedback(self) -> float:
        return sum(self.counts.values())

    @property
    def is_empty(self) -> bool:
        return self.total_feedback <= 0 and not self.topic_affinity

    @property
    def verbosity_bias(self) -> float:
        """Signed length preference in [-1, 1]; negative asks for shorter answers."""
        too_long = self.count(FeedbackCategory.TOO_LONG)
        too_short = self.count(FeedbackCategory.TOO_SHORT)
        return (too_short - too_long) / (too_short + too_long + 2.0)

    @property
    def focus_bias(self) -> float:
        """Share of feedback that flagged answers as off topic, in [0, 1]."""
        total = self.total_feedback
        if total <= 0:
            return 0.0
        return self.count(FeedbackCategory.OFF_TOPIC) / total

    @property
    def response_style(self) -> ResponseStyle:
        bias = self.verbosity_bias
        if bias <= -0.4:
            return ResponseStyle.CONCISE
        if bias >= 0.6:
            return ResponseStyle.COMPREHENSIVE
        if bias >= 0.3:
            return ResponseStyle.DETAILED
        return ResponseStyle.BALANCED

    @property
    def satisfaction_score(self) -> float:
        weights = {
            FeedbackCategory.HELPFUL.value: 1.0,
            FeedbackCategory.TOO_LONG.value: 0.6,
            FeedbackCategory.TOO_SHORT.value: 0.7,
            FeedbackCategory.OFF_TOPIC.value: 0.3,
        }
        total = self.total_feedback
        if total <= 0:
            return 0.75
        weighted = sum(weights.get(key, 0.5) * value for key, value in self.counts.items())
        return weighted / total

    def top_topics(self, limit: int = 3) -> list[str]:
        positive = [(topic, weight) for topic, weight in self.topic_affinity.items() if weight > 0]
        positive.sort(key=lambda item: (-item[1], item[0]))
        return [topic for topic, _ in positive[:limit]]

    def summary(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "counts": dict(self.counts),
            "verbosityBias": round(self.verbosity_bias, 4),
            "focusBias": round(self.focus_bias, 4),
            "responseStyle": self.response_style.value,
            "satisfactionScore": round(self.satisfaction_score, 4),
            "topTopics": self.top_topics(),
        }


@dataclass(frozen=True)
class FeedbackAck:
    acknowledged: bool
    message_id: str
    category: FeedbackCategory
    timestamp: str


@dataclass(frozen=True)
class RagAnswer:
    response_text: str
    message_id: str
    context: RAGContext
    timestamp: str
    passage_ordinals: tuple[int, ...] = ()
    input_tokens: int = 0
    output_tokens: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "responseText": self.response_text,
            "messageId": self.message_id,
            "usedContext": self.context.used_context(),
            "timestamp": self.timestamp,
        }
