"""
Answer generation against a chat model selected by the reader's tier.

The prompt is sent as explicit system and human messages rather than a prompt
template, because book passages routinely contain braces.
"""
from __future__ import annotations

import os
import re
import threading
from typing import Any, Callable

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from .config import (
    GENERATION_MAX_RETRIES,
    GENERATION_TEMPERATURE,
    GENERATION_TIMEOUT_S,
    GENERATION_TOP_P,
    GROQ_API_AVAILABLE,
    LOCAL_MODEL_NAME,
    OLLAMA_AVAILABLE,
    RETRY_BACKOFF_INITIAL_S,
    TIER_MODEL_NAMES,
    USE_API_LLM,
    console,
)
from .errors import GenerationFailed
from .models import PromptContext, UserTier
from .observability import get_logger
from .resilience import bounded_retrying, call_with_timeout
from .tokenization import estimate_token_count

try:
    from langchain_groq import ChatGroq
except ImportError:
    ChatGroq = None
try:
    from langchain_ollama import OllamaLLM
except ImportError:
    OllamaLLM = None

logger = get_logger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)


class MalformedGeneration(ValueError):
    """The model answered, but with nothing usable."""


class BackendUnavailable(RuntimeError):
    pass


def _initialize_llm(tier: UserTier, max_tokens: int):
    """Builds the chat model for a tier based on global configuration."""
    if USE_API_LLM:
        if not GROQ_API_AVAILABLE or ChatGroq is None or not os.getenv("GROQ_API_KEY"):
            console.print("[bold red]Groq API key or library not found. LLM disabled.[/bold red]")
            raise BackendUnavailable("Groq API key or langchain-groq not available")
        return ChatGroq(
            model_name=TIER_MODEL_NAMES[UserTier(tier).value],
            temperature=GENERATION_TEMPERATURE,
            top_p=GENERATION_TOP_P,
            max_tokens=int(max_tokens),
            groq_api_key=os.getenv("GROQ_API_KEY"),
            timeout=GENERATION_TIMEOUT_S,
        )
    if not OLLAMA_AVAILABLE or OllamaLLM is None:
        console.print("[bold red]'ollama' library not installed. Local LLM disabled.[/bold red]")
        raise BackendUnavailable("langchain-ollama not available")
    return OllamaLLM(
        model=LOCAL_MODEL_NAME,
        temperature=GENERATION_TEMPERATURE,
        top_p=GENERATION_TOP_P,
        num_predict=int(max_tokens),
        client_kwargs={"timeout": GENERATION_TIMEOUT_S},
    )


def clean_model_output(raw: Any) -> str:
    text = getattr(raw, "content", raw)
    if isinstance(text, list):
        text = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in text)
    return _THINK_RE.sub("", str(text or "")).strip()


def _usage(raw: Any) -> tuple[int | None, int | None]:
    usage = getattr(raw, "usage_metadata", None) or {}
    return usage.get("input_tokens"), usage.get("output_tokens")


class AnswerGenerator:
    """Calls the tier's model with a per-call timeout and at most two retries."""

    def __init__(
        self,
        llm_factory: Callable[[UserTier, int], Any] | None = None,
        *,
        timeout_s: float = GENERATION_TIMEOUT_S,
        max_retries: int = GENERATION_MAX_RETRIES,
        backoff_initial_s: float = RETRY_BACKOFF_INITIAL_S,
    ):
        self._llm_factory = llm_factory or _initialize_llm
        self._models: dict[tuple[str, int], Any] = {}
        self._lock = threading.Lock()
        self.timeout_s = float(timeout_s)
        self.max_retries = min(2, max(0, int(max_retries)))
        self._retrying = bounded_retrying(
            label="generation",
            max_retries=self.max_retries,
            # A timed-out call may still be running upstream; retrying would stack another one.
            should_retry=lambda exc: not isinstance(exc, (BackendUnavailable, TimeoutError)),
            backoff_initial_s=backoff_initial_s,
        )

    def _model_for(self, tier: UserTier, max_tokens: int):
        key = (UserTier(tier).value, int(max_tokens))
        with self._lock:
            model = self._models.get(key)
            if model is None:
                model = self._llm_factory(UserTier(tier), int(max_tokens))
                self._models[key] = model
            return model

    @staticmethod
    def build_messages(prompt: PromptContext) -> list:
        messages = [SystemMessage(content=prompt.system_prompt)]
        for turn in prompt.history:
            if turn.role == "assistant":
                messages.append(AIMessage(content=turn.content))
            else:
                messages.append(HumanMessage(content=turn.content))
        messages.append(HumanMessage(content=prompt.user_query))
        return messages

    def _generate_once(self, model, messages: list) -> tuple[str, int | None, int | None]:
        raw = model.invoke(messages)
        text = clean_model_output(raw)
        if not text:
            raise MalformedGeneration("model returned an empty answer")
        input_tokens, output_tokens = _usage(raw)
        return text, input_tokens, output_tokens

    def generate(self, prompt: PromptContext) -> tuple[str, int, int]:
        """Returns (answer_text, input_tokens, output_tokens) or raises GenerationFailed."""
        tier = prompt.context.user_tier
        messages = self.build_messages(prompt)
        try:
            model = self._model_for(tier, prompt.max_response_tokens)
            text, input_tokens, output_tokens = self._retrying.copy()(
                call_with_timeout, self._generate_once, self.timeout_s, model, messages
            )
        except Exception as exc:
            logger.error(
                "generation_failed",
                tier=UserTier(tier).value,
                error_type=type(exc).__name__,
                max_retries=self.max_retries,
            )
            raise GenerationFailed(f"generation failed: {type(exc).__name__}: {exc}") from exc

        if input_tokens is None:
            input_tokens = prompt.context_tokens or (
                estimate_token_count(prompt.system_prompt) + estimate_token_count(prompt.user_query)
            )
        if output_tokens is None:
            output_tokens = estimate_token_count(text)
        logger.info(
            "generation_completed",
            tier=UserTier(tier).value,
            max_tokens=prompt.max_response_tokens,
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
        )
        return text, int(input_tokens), int(output_tokens)
