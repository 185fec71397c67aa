# /recaplio/config.py
"""
Settings for the reading-companion RAG core, read from the environment
(and a local .env): model names, per-tier budgets, timeouts, and paths.
"""
import functools
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

console = Console()
load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    return bool(default) if raw is None else raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default, minimum=None):
    """Reads an int or float (typed after ``default``); unparsable values fall back to ``default``."""
    cast = type(default)
    try:
        value = cast(os.getenv(name, default))
    except ValueError:
        value = default
    return value if minimum is None else max(cast(minimum), value)


@functools.cache
def embedding_device() -> str:
    """'cuda' when torch sees a GPU, else 'cpu'. torch is only imported on first use."""
    try:
        import torch
    except ImportError:
        return "cpu"
    return "cuda" if torch.cuda.is_available() else "cpu"


def get_model_kwargs() -> dict[str, str]:
    return {"device": embedding_device()}


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Generation Backend ---
USE_API_LLM = _env_flag("USE_API_LLM", True)               # True for Groq API, False for local Ollama
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "granite3.3:2b")
TIER_MODEL_NAMES = {
    "FREE": os.getenv("FREE_MODEL_NAME", "llama-3.1-8b-instant"),
    "PREMIUM": os.getenv("PREMIUM_MODEL_NAME", "llama-3.3-70b-versatile"),
    "PRO": os.getenv("PRO_MODEL_NAME", "llama-3.3-70b-versatile"),
}
GENERATION_TEMPERATURE = _env_number("GENERATION_TEMPERATURE", 0.7, minimum=0.0)
GENERATION_TOP_P = _env_number("GENERATION_TOP_P", 0.9, minimum=0.0)

# --- Embeddings ---
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "sentence-transformers/all-MiniLM-L6-v2")
EMBEDDING_DIMENSIONS = _env_number("EMBEDDING_DIMENSIONS", 384, minimum=1)
EMBEDDING_CACHE_SIZE = _env_number("EMBEDDING_CACHE_SIZE", 512, minimum=1)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/recaplio/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = _BASE_DIR / "data"

CACHE_DIR = Path(os.getenv("CACHE_DIR", str(_DATA_DIR / "runtime_cache")))
CHUNK_DB_PATH = Path(os.getenv("CHUNK_DB_PATH", str(CACHE_DIR / "book_chunks.sqlite")))
LIBRARY_DB_PATH = Path(os.getenv("LIBRARY_DB_PATH", str(CACHE_DIR / "user_library.sqlite")))
PROFILE_DB_PATH = Path(os.getenv("PROFILE_DB_PATH", str(CACHE_DIR / "learning_profiles.sqlite")))
METRICS_LOG_DIR = Path(os.getenv("METRICS_LOG_DIR", str(CACHE_DIR / "metrics")))

# --- Retrieval Tuning ---
RETRIEVAL_TOP_K = _env_number("RETRIEVAL_TOP_K", 5, minimum=1)
SEARCH_DEFAULT_LIMIT = _env_number("SEARCH_DEFAULT_LIMIT", 10, minimum=1)
SEARCH_MAX_LIMIT = _env_number("SEARCH_MAX_LIMIT", 50, minimum=1)
PREVIEW_CHARS = _env_number("PREVIEW_CHARS", 200, minimum=20)

# --- Context Budgets (tokens of passage text per tier) ---
TIER_CONTEXT_TOKEN_BUDGETS = {
    "FREE": _env_number("FREE_CONTEXT_TOKEN_BUDGET", 1200, minimum=128),
    "PREMIUM": _env_number("PREMIUM_CONTEXT_TOKEN_BUDGET", 2400, minimum=128),
    "PRO": _env_number("PRO_CONTEXT_TOKEN_BUDGET", 4000, minimum=128),
}
# Base max_tokens for the generated answer.
TIER_RESPONSE_TOKEN_LIMITS = {
    "FREE": _env_number("FREE_RESPONSE_TOKENS", 300, minimum=64),
    "PREMIUM": _env_number("PREMIUM_RESPONSE_TOKENS", 500, minimum=64),
    "PRO": _env_number("PRO_RESPONSE_TOKENS", 800, minimum=64),
}
MIN_RESPONSE_TOKENS = _env_number("MIN_RESPONSE_TOKENS", 120, minimum=16)
# Max fractional change the learning profile may apply to the response target.
VERBOSITY_ADJUSTMENT = _env_number("VERBOSITY_ADJUSTMENT", 0.5, minimum=0.0)
# Passages this many chunks ahead of the reader count as spoilers.
POSITION_LOOKAHEAD_CHUNKS = _env_number("POSITION_LOOKAHEAD_CHUNKS", 2, minimum=0)
POSITION_DECAY_CHUNKS = _env_number("POSITION_DECAY_CHUNKS", 10.0, minimum=1.0)
# Most recent conversation turns a caller may send along with a question.
HISTORY_MAX_TURNS = _env_number("HISTORY_MAX_TURNS", 6, minimum=0)

# --- Timeouts & Retries ---
EMBEDDING_TIMEOUT_S = _env_number("EMBEDDING_TIMEOUT_S", 15.0, minimum=0.1)
SEARCH_TIMEOUT_S = _env_number("SEARCH_TIMEOUT_S", 10.0, minimum=0.1)
GENERATION_TIMEOUT_S = _env_number("GENERATION_TIMEOUT_S", 60.0, minimum=0.1)
EMBEDDING_MAX_RETRIES = min(1, _env_number("EMBEDDING_MAX_RETRIES", 1, minimum=0))
# Generation is billed per call; never allow more than two retries.
GENERATION_MAX_RETRIES = min(2, _env_number("GENERATION_MAX_RETRIES", 2, minimum=0))
RETRY_BACKOFF_INITIAL_S = _env_number("RETRY_BACKOFF_INITIAL_S", 0.5, minimum=0.0)
RETRY_BACKOFF_MAX_S = _env_number("RETRY_BACKOFF_MAX_S", 4.0, minimum=0.0)

# --- API Service ---
API_WORKERS = _env_number("API_WORKERS", 8, minimum=1)

# --- Create necessary directories ---
CACHE_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)

# --- Dependency Availability Flags ---
try:
    import langchain_groq
    GROQ_API_AVAILABLE = True
except ImportError:
    GROQ_API_AVAILABLE = False

try:
    import langchain_ollama
    OLLAMA_AVAILABLE = True
except ImportError:
    OLLAMA_AVAILABLE = False
