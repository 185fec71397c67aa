"""
Error taxonomy for the RAG core.

Every error records the pipeline stage that failed so logs and metrics can
attribute it. ``public_message`` and ``error_code`` are the only things ever
returned to callers; the stage stays internal.
"""
from __future__ import annotations


class RecaplioError(Exception):
    stage = "pipeline"
    error_code = "internal_error"
    public_message = "The reading assistant could not complete this request."

    def __init__(self, detail: str = "", *, stage: str | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail
        if stage:
            self.stage = stage


class EmbeddingUnavailable(RecaplioError):
    stage = "embedding"
    error_code = "generation_failed"
    public_message = "The reading assistant could not generate an answer. Please try again later."


class AccessDenied(RecaplioError):
    stage = "access"
    error_code = "access_denied"
    public_message = "This book is not in your library."


class InvalidCategory(RecaplioError):
    stage = "feedback"
    error_code = "invalid_category"
    public_message = "Feedback must be one of: helpful, too_long, too_short, off_topic."


class SearchUnavailable(RecaplioError):
    stage = "search"
    error_code = "search_unavailable"
    public_message = "Passage search is temporarily unavailable. Please try again shortly."


class GenerationFailed(RecaplioError):
    stage = "generation"
    error_code = "generation_failed"
    public_message = "The reading assistant could not generate an answer. Please try again later."


class InvalidPosition(RecaplioError):
    stage = "request"
    error_code = "invalid_position"
    public_message = "The current reading position is outside this book."
