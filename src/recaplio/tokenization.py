"""
Token helpers: budget estimation for prompt assembly and keyword extraction
for topic affinity.
"""
from __future__ import annotations

import re

import tiktoken

_UNICODE_WORD_RE = re.compile(r"\w+", flags=re.UNICODE)
_TOKEN_ENCODER = None
_ENCODER_UNAVAILABLE = False

# Reading-discussion vocabulary credited to a reader's topic affinity.
TOPIC_KEYWORDS = (
    "character", "theme", "plot", "setting", "symbolism", "meaning",
    "author", "style", "chapter", "book", "story", "analysis",
    "concept", "idea", "argument", "theory", "framework",
)


def tokenize_for_matching(text: str, *, min_len: int = 1, limit: int | None = None) -> list[str]:
    """
    Tokenizes text with Unicode-aware word boundaries.
    Keeps letters/numbers from non-Latin scripts and normalizes via casefold().
    """
    safe_min_len = max(1, int(min_len))
    max_tokens = int(limit) if limit is not None else None

    out: list[str] = []
    for raw in _UNICODE_WORD_RE.findall(str(text or "").casefold()):
        token = raw.strip("_")
        if not token or len(token) < safe_min_len:
            continue
        out.append(token)
        if max_tokens is not None and len(out) >= max_tokens:
            break
    return out


def extract_topics(*texts: str) -> list[str]:
    """Returns topic keywords mentioned in the texts, in keyword order."""
    words = set()
    for text in texts:
        words.update(tokenize_for_matching(text, min_len=3))
    topics = []
    for keyword in TOPIC_KEYWORDS:
        # Prefix match so "characters" and "themes" count.
        if any(word.startswith(keyword) for word in words):
            topics.append(keyword)
    return topics


def _get_token_encoder():
    global _TOKEN_ENCODER, _ENCODER_UNAVAILABLE
    if _TOKEN_ENCODER is None and not _ENCODER_UNAVAILABLE:
        try:
            _TOKEN_ENCODER = tiktoken.get_encoding("cl100k_base")
        except Exception:
            # BPE files are fetched on first use; offline hosts fall back to word counts.
            _ENCODER_UNAVAILABLE = True
    return _TOKEN_ENCODER


def estimate_token_count(text: str) -> int:
    payload = str(text or "")
    if not payload:
        return 0
    encoder = _get_token_encoder()
    if encoder is not None:
        return int(len(encoder.encode(payload)))
    return max(1, len(payload.split()))
