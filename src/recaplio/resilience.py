"""
Per-call timeouts and bounded retries for calls to external model backends.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Any, Callable

from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import API_WORKERS, RETRY_BACKOFF_INITIAL_S, RETRY_BACKOFF_MAX_S
from .observability import get_logger

logger = get_logger(__name__)

# Each in-flight request holds at most one outbound call at a time.
_CALL_POOL = ThreadPoolExecutor(max_workers=max(4, API_WORKERS * 2), thread_name_prefix="recaplio-call")


def call_with_timeout(fn: Callable[..., Any], timeout_s: float, *args, **kwargs) -> Any:
    """Runs ``fn`` on the call pool and raises TimeoutError after ``timeout_s``."""
    future = _CALL_POOL.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=float(timeout_s))
    except FuturesTimeout as exc:
        future.cancel()
        name = getattr(fn, "__name__", "call")
        raise TimeoutError(f"{name} exceeded {float(timeout_s):.1f}s") from exc


def bounded_retrying(
    *,
    label: str,
    max_retries: int,
    should_retry: Callable[[BaseException], bool],
    backoff_initial_s: float = RETRY_BACKOFF_INITIAL_S,
    backoff_max_s: float = RETRY_BACKOFF_MAX_S,
) -> Retrying:
    """Builds a tenacity retrier allowing ``max_retries`` extra attempts with exponential backoff."""

    def _log_retry(retry_state):
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        logger.warning(
            "backend_call_retry",
            stage=label,
            attempt=retry_state.attempt_number,
            max_attempts=max_retries + 1,
            error_type=type(error).__name__ if error else None,
        )

    return Retrying(
        stop=stop_after_attempt(max(0, int(max_retries)) + 1),
        wait=wait_exponential(multiplier=max(0.0, backoff_initial_s), max=max(0.0, backoff_max_s)),
        retry=retry_if_exception(should_retry),
        before_sleep=_log_retry,
        reraise=True,
    )
