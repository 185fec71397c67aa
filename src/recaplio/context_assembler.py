"""
Builds the bounded, reader-specific prompt context for one question.

Passages are chosen by priority (similarity, nudged toward the reader's
position and away from passages they have not reached), cut by dropping whole
passages from the bottom until the whole prompt (framing, passages, question
and any caller-supplied history) fits the tier's token budget, and finally
presented in book order. Reading mode, knowledge lens, tier, and learning
profile only change the framing instructions, never which passages are
eligible. The framing itself is never cut.
"""
from __future__ import annotations

import math

from .config import (
    HISTORY_MAX_TURNS,
    MIN_RESPONSE_TOKENS,
    POSITION_DECAY_CHUNKS,
    POSITION_LOOKAHEAD_CHUNKS,
    TIER_CONTEXT_TOKEN_BUDGETS,
    TIER_RESPONSE_TOKEN_LIMITS,
    VERBOSITY_ADJUSTMENT,
)
from .models import (
    Chunk,
    ConversationTurn,
    KnowledgeLens,
    LearningProfile,
    PromptContext,
    PromptPassage,
    RAGContext,
    ReadingMode,
    ResponseStyle,
    RetrievalResult,
    UserTier,
)
from .observability import get_logger
from .tokenization import estimate_token_count

logger = get_logger(__name__)

PROXIMITY_BONUS = 0.15
SPOILER_PENALTY = 0.30
FOCUS_BIAS_THRESHOLD = 0.2

BASE_PERSONA = (
    "You are Lio, Recaplio's reading companion, an intelligent assistant helping "
    "readers understand and analyze the book they are reading."
)

TIER_GUIDANCE = {
    UserTier.FREE: (
        "Provide clear, concise responses in 1-2 paragraphs maximum. Keep summaries brief "
        "and focus on key points."
    ),
    UserTier.PREMIUM: (
        "Provide detailed, insightful responses in 2-3 paragraphs maximum. Offer deeper "
        "analysis while completing every key point within your limit."
    ),
    UserTier.PRO: (
        "Provide professional-grade analysis in 3-4 paragraphs maximum, with critical "
        "thinking and nuanced interpretation."
    ),
}

TIER_STRUCTURE = {
    UserTier.FREE: "Response Structure: a focused answer in 1-2 short paragraphs. If listing points, limit to 2-3 items.",
    UserTier.PREMIUM: "Response Structure: 2-3 paragraphs or 3-5 key points. Ensure each section is complete.",
    UserTier.PRO: "Response Structure: 3-4 well-developed paragraphs or 4-6 detailed points.",
}

READING_MODE_FRAMING = {
    ReadingMode.FICTION: (
        "You are discussing a work of fiction. Frame answers around characters, plot, "
        "setting and theme as the reader has experienced them."
    ),
    ReadingMode.NON_FICTION: (
        "You are discussing a non-fiction work. Frame answers around the author's "
        "arguments, claims and the evidence offered for them."
    ),
}

LENS_FRAMING = {
    KnowledgeLens.LITERARY: (
        "Focus on literary elements: characters, themes, motifs, narrative structure, "
        "symbolism, and the author's style."
    ),
    KnowledgeLens.KNOWLEDGE: (
        "Focus on knowledge extraction: arguments, takeaways, concepts, frameworks, "
        "logical flow, evidence, and critical evaluation."
    ),
}

STYLE_GUIDANCE = {
    ResponseStyle.CONCISE: "This reader prefers brevity. Keep the answer short and to the point.",
    ResponseStyle.BALANCED: "Balance depth and clarity.",
    ResponseStyle.DETAILED: "This reader enjoys fuller explanations, so elaborate where the passages support it.",
    ResponseStyle.COMPREHENSIVE: "This reader wants in-depth analysis with rich supporting detail.",
}

NO_PASSAGES_FRAMING = (
    "No relevant passages from the book were found for this question. Say so plainly, "
    "answer only what you can state confidently about the book, and invite the reader "
    "to quote the passage they mean."
)

ANSWER_RULES = (
    "Use the provided passages to answer accurately and mention which chunk a detail "
    "comes from. If the passages are not enough, say so clearly. Finish every point you "
    "start; never end mid-sentence."
)

SHORT_QUERY_MARKERS = ("summarize", "summary", "what is", "who is")
ANALYSIS_QUERY_MARKERS = ("analyze", "analyse", "compare", "explain why", "themes")
LIST_QUERY_MARKERS = ("list", "main points", "key concepts")


def response_token_target(query: str, tier: UserTier, profile: LearningProfile | None = None) -> int:
    """Max tokens for the answer: tier base, shaped by question type and learning profile."""
    tier = UserTier(tier)
    base = int(TIER_RESPONSE_TOKEN_LIMITS[tier.value])
    lowered = str(query or "").lower()
    if any(marker in lowered for marker in ANALYSIS_QUERY_MARKERS):
        pass
    elif any(marker in lowered for marker in SHORT_QUERY_MARKERS):
        base = max(200, int(base * 0.8))
    elif any(marker in lowered for marker in LIST_QUERY_MARKERS):
        base = int(base * 0.9)

    bias = profile.verbosity_bias if profile is not None else 0.0
    adjusted = base * (1.0 + VERBOSITY_ADJUSTMENT * bias)
    return max(int(MIN_RESPONSE_TOKENS), int(round(adjusted)))


def passage_priority(result: RetrievalResult, current_index: int | None) -> float:
    if current_index is None:
        return float(result.score)
    distance = result.ordinal - int(current_index)
    priority = float(result.score) + PROXIMITY_BONUS * math.exp(-abs(distance) / POSITION_DECAY_CHUNKS)
    if distance > POSITION_LOOKAHEAD_CHUNKS:
        priority -= SPOILER_PENALTY
    return priority


EXCERPT_HEADER = "Relevant excerpts from the book:"
PASSAGE_SEPARATOR = "\n\n---\n\n"


class ContextAssembler:
    def __init__(self, context_budgets: dict[str, int] | None = None):
        self.context_budgets = dict(context_budgets or TIER_CONTEXT_TOKEN_BUDGETS)

    def budget_for(self, tier: UserTier) -> int:
        return int(self.context_budgets[UserTier(tier).value])

    @staticmethod
    def passage_cost(passage: PromptPassage) -> int:
        return estimate_token_count(f"{passage.label()}\n{passage.text}") + estimate_token_count(PASSAGE_SEPARATOR)

    @staticmethod
    def prompt_tokens(system_prompt: str, query: str, history: tuple[ConversationTurn, ...] = ()) -> int:
        """Tokens the model receives: system prompt, question, and history turns."""
        return (
            estimate_token_count(system_prompt)
            + estimate_token_count(query)
            + sum(estimate_token_count(turn.content) for turn in history)
        )

    def _candidates(
        self,
        context: RAGContext,
        results: list[RetrievalResult],
        current_passage: Chunk | None,
    ) -> list[PromptPassage]:
        """Eligible passages, highest priority first. The current passage always leads."""
        current_index = context.current_chunk_index
        ranked: list[tuple[float, float, int, PromptPassage]] = []
        seen: set[int] = set()

        if current_passage is not None and current_passage.book_id == context.book_id:
            seen.add(current_passage.ordinal)
            ranked.append(
                (
                    math.inf,
                    math.inf,
                    current_passage.ordinal,
                    PromptPassage(
                        ordinal=current_passage.ordinal,
                        text=current_passage.text,
                        score=1.0,
                        chapter=current_passage.chapter,
                        is_current=True,
                    ),
                )
            )

        for result in results:
            if result.ordinal in seen or result.chunk.book_id != context.book_id:
                continue
            seen.add(result.ordinal)
            ranked.append(
                (
                    passage_priority(result, current_index),
                    float(result.score),
                    result.ordinal,
                    PromptPassage(
                        ordinal=result.ordinal,
                        text=result.chunk.text,
                        score=float(result.score),
                        chapter=result.chunk.chapter,
                    ),
                )
            )

        ranked.sort(key=lambda item: (-item[0], -item[1], item[2]))
        return [item[3] for item in ranked]

    def _framing(self, context: RAGContext, profile: LearningProfile, has_passages: bool) -> list[str]:
        parts = [
            BASE_PERSONA,
            TIER_GUIDANCE[context.user_tier],
            READING_MODE_FRAMING[context.reading_mode],
            LENS_FRAMING[context.knowledge_lens],
            STYLE_GUIDANCE[profile.response_style],
        ]
        if context.current_chunk_index is not None:
            parts.append(
                f"The reader is currently at chunk {context.current_chunk_index + 1}. Favor passages near "
                "that point and do not reveal events or conclusions the reader has not reached yet."
            )
        if profile.focus_bias >= FOCUS_BIAS_THRESHOLD:
            parts.append(
                "This reader has flagged earlier answers as off topic. Answer exactly the question "
                "asked and stay close to the passages."
            )
        topics = profile.top_topics()
        if topics:
            parts.append(f"This reader often asks about: {', '.join(topics)}.")
        parts.append(ANSWER_RULES if has_passages else NO_PASSAGES_FRAMING)
        return parts

    def _render(self, context: RAGContext, profile: LearningProfile, passages: list[PromptPassage]) -> str:
        sections = [" ".join(self._framing(context, profile, bool(passages)))]
        if passages:
            ordered = sorted(passages, key=lambda p: p.ordinal)
            block = PASSAGE_SEPARATOR.join(f"{p.label()}\n{p.text}" for p in ordered)
            sections.append(f"{EXCERPT_HEADER}\n{block}")
        sections.append(TIER_STRUCTURE[context.user_tier])
        return "\n\n".join(sections)

    def overhead_tokens(self, query: str, context: RAGContext, profile: LearningProfile | None = None) -> int:
        """Budget consumed before any passage or history turn: framing, excerpt header, question."""
        profile = profile if profile is not None else LearningProfile(user_id=context.user_id)
        return (
            self.prompt_tokens(self._render(context, profile, []), str(query or "").strip())
            - estimate_token_count(NO_PASSAGES_FRAMING)
            + estimate_token_count(ANSWER_RULES)
            + estimate_token_count(EXCERPT_HEADER)
        )

    def assemble(
        self,
        query: str,
        context: RAGContext,
        results: list[RetrievalResult],
        profile: LearningProfile | None = None,
        current_passage: Chunk | None = None,
        history: list[ConversationTurn] | tuple[ConversationTurn, ...] | None = None,
    ) -> PromptContext:
        profile = profile if profile is not None else LearningProfile(user_id=context.user_id)
        query = str(query or "").strip()
        budget = self.budget_for(context.user_tier)
        turns = list(history or ())[-HISTORY_MAX_TURNS:] if HISTORY_MAX_TURNS else []

        # Passages: drop the lowest priority until the rest fit beside the framing.
        kept = self._candidates(context, list(results or []), current_passage)
        costs = [self.passage_cost(p) for p in kept]
        available = budget - self.overhead_tokens(query, context, profile)
        dropped: list[int] = []
        while kept and sum(costs) > available:
            dropped.append(kept.pop().ordinal)
            costs.pop()

        # History: newest turns first, into whatever budget the passages left.
        remaining = available - sum(costs)
        fitted: list[ConversationTurn] = []
        for turn in reversed(turns):
            cost = estimate_token_count(turn.content)
            if cost > remaining:
                break
            fitted.insert(0, turn)
            remaining -= cost

        # Token counts are not strictly additive; measure the real prompt and trim until it fits.
        system_prompt = self._render(context, profile, kept)
        total = self.prompt_tokens(system_prompt, query, tuple(fitted))
        while total > budget and (fitted or kept):
            if fitted:
                fitted.pop(0)
            else:
                dropped.append(kept.pop().ordinal)
            system_prompt = self._render(context, profile, kept)
            total = self.prompt_tokens(system_prompt, query, tuple(fitted))

        prompt = PromptContext(
            system_prompt=system_prompt,
            user_query=query,
            passages=tuple(sorted(kept, key=lambda p: p.ordinal)),
            max_response_tokens=response_token_target(query, context.user_tier, profile),
            context=context,
            response_style=profile.response_style,
            context_tokens=total,
            dropped_ordinals=tuple(dropped),
            history=tuple(fitted),
        )
        logger.info(
            "context_assembled",
            book_id=context.book_id,
            passages=len(prompt.passages),
            dropped=len(dropped),
            history_turns=len(fitted),
            context_tokens=total,
            budget=budget,
            max_response_tokens=prompt.max_response_tokens,
            response_style=prompt.response_style.value,
        )
        return prompt
