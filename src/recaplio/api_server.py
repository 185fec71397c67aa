"""
FastAPI service layer for the Recaplio reading companion.

Exposes POST /query, POST /feedback, POST /search, GET /profile/{user_id},
GET /metrics and GET /health. The synchronous pipeline runs on a bounded
thread pool so slow model calls never block the event loop.

Run with:
    uvicorn recaplio.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from typing import Annotated, Any, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from .config import API_WORKERS, HISTORY_MAX_TURNS, PREVIEW_CHARS, SEARCH_DEFAULT_LIMIT, SEARCH_MAX_LIMIT
from .errors import (
    AccessDenied,
    EmbeddingUnavailable,
    GenerationFailed,
    InvalidCategory,
    InvalidPosition,
    RecaplioError,
    SearchUnavailable,
)
from .models import ConversationTurn, FeedbackCategory, KnowledgeLens, RAGContext, ReadingMode, UserTier
from .observability import get_logger
from .pipeline import RagPipeline, build_pipeline

logger = get_logger(__name__)

_STATUS_BY_ERROR: dict[type[RecaplioError], int] = {
    AccessDenied: 403,
    InvalidCategory: 400,
    InvalidPosition: 400,
    EmbeddingUnavailable: 502,
    SearchUnavailable: 503,
    GenerationFailed: 502,
}


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

# Strings that must carry something other than whitespace.
NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class HistoryTurn(_CamelModel):
    role: Literal["user", "assistant"]
    content: NonBlank


class QueryRequest(_CamelModel):
    query: NonBlank = Field(..., description="Reader question")
    book_id: int = Field(..., alias="bookId")
    current_chunk_index: Optional[int] = Field(default=None, alias="currentChunkIndex", ge=0)
    user_tier: UserTier = Field(default=UserTier.FREE, alias="userTier")
    reading_mode: ReadingMode = Field(default=ReadingMode.FICTION, alias="readingMode")
    knowledge_lens: KnowledgeLens = Field(default=KnowledgeLens.LITERARY, alias="knowledgeLens")
    user_id: NonBlank = Field(..., alias="userId")
    history: list[HistoryTurn] = Field(
        default_factory=list, description=f"Earlier turns, oldest first; only the last {HISTORY_MAX_TURNS} are used"
    )


class UsedContext(_CamelModel):
    user_tier: UserTier = Field(alias="userTier")
    reading_mode: ReadingMode = Field(alias="readingMode")
    knowledge_lens: KnowledgeLens = Field(alias="knowledgeLens")
    current_chunk_index: Optional[int] = Field(default=None, alias="currentChunkIndex")


class QueryResponse(_CamelModel):
    response_text: str = Field(alias="responseText")
    message_id: str = Field(alias="messageId")
    used_context: UsedContext = Field(alias="usedContext")
    timestamp: str


class FeedbackRequest(_CamelModel):
    message_id: NonBlank = Field(..., alias="messageId")
    feedback_category: str = Field(..., alias="feedbackCategory")
    user_id: NonBlank = Field(..., alias="userId")


class FeedbackResponse(_CamelModel):
    acknowledged: bool
    message_id: str = Field(alias="messageId")
    category: FeedbackCategory
    timestamp: str


class SearchRequest(_CamelModel):
    query: NonBlank
    book_id: int = Field(..., alias="bookId")
    user_id: NonBlank = Field(..., alias="userId")
    limit: int = Field(default=SEARCH_DEFAULT_LIMIT, ge=0, le=SEARCH_MAX_LIMIT)


class SearchHit(_CamelModel):
    chunk_index: int = Field(alias="chunkIndex")
    chapter: Optional[str] = None
    similarity: float
    preview: str


class SearchResponse(_CamelModel):
    query: str
    results: list[SearchHit]
    total_results: int = Field(alias="totalResults")
    timestamp: str


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}

# Thread pool for running synchronous pipeline calls off the event loop.
_executor = ThreadPoolExecutor(max_workers=API_WORKERS, thread_name_prefix="recaplio-api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the pipeline once at startup unless one was injected; closes it on shutdown."""
    owned = "pipeline" not in _state
    if owned:
        _state["pipeline"] = build_pipeline()
    logger.info("api_started", workers=API_WORKERS)

    yield

    pipeline = _state.pop("pipeline", None)
    if owned and pipeline is not None:
        pipeline.close()


app = FastAPI(
    title="Recaplio API",
    description="Book-scoped reading companion powered by retrieval-augmented generation",
    version="1.0.0",
    lifespan=lifespan,
)


def set_pipeline(pipeline: RagPipeline | None) -> None:
    """Injects a prebuilt pipeline (used by tests and embedding hosts)."""
    if pipeline is None:
        _state.pop("pipeline", None)
    else:
        _state["pipeline"] = pipeline


def _pipeline() -> RagPipeline:
    pipeline = _state.get("pipeline")
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Reading assistant is not initialized.")
    return pipeline


async def _run(fn, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, partial(fn, *args, **kwargs))


@app.exception_handler(RecaplioError)
async def recaplio_error_handler(request: Request, exc: RecaplioError):
    status = _STATUS_BY_ERROR.get(type(exc), 500)
    # Upstream detail goes to the log only; callers get the fixed public message.
    logger.warning(
        "request_failed",
        path=request.url.path,
        status=status,
        stage=exc.stage,
        error_code=exc.error_code,
        error_type=type(exc).__name__,
        detail=exc.detail,
    )
    return JSONResponse(status_code=status, content={"detail": exc.public_message, "error": exc.error_code})


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/query", response_model=QueryResponse, response_model_by_alias=True)
async def query_endpoint(request: QueryRequest):
    """Answers a reader's question about one book."""
    pipeline = _pipeline()
    try:
        context = RAGContext(
            book_id=request.book_id,
            user_id=request.user_id,
            user_tier=request.user_tier,
            reading_mode=request.reading_mode,
            knowledge_lens=request.knowledge_lens,
            current_chunk_index=request.current_chunk_index,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        history = [ConversationTurn(role=turn.role, content=turn.content) for turn in request.history]
        result = await _run(pipeline.answer, request.query, context, history)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.to_payload()


@app.post("/feedback", response_model=FeedbackResponse, response_model_by_alias=True)
async def feedback_endpoint(request: FeedbackRequest):
    """Records a reader's rating of an earlier answer."""
    try:
        ack = await _run(
            _pipeline().record_feedback,
            request.user_id,
            request.message_id,
            request.feedback_category,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "acknowledged": ack.acknowledged,
        "messageId": ack.message_id,
        "category": ack.category,
        "timestamp": ack.timestamp,
    }


@app.post("/search", response_model=SearchResponse, response_model_by_alias=True)
async def search_endpoint(request: SearchRequest):
    """Semantic passage search within one book, without generation."""
    try:
        results = await _run(
            _pipeline().semantic_search,
            request.user_id,
            request.book_id,
            request.query,
            request.limit,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "query": request.query,
        "results": [
            {
                "chunkIndex": r.ordinal,
                "chapter": r.chunk.chapter,
                "similarity": round(r.score, 6),
                "preview": r.preview(PREVIEW_CHARS),
            }
            for r in results
        ],
        "totalResults": len(results),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/profile/{user_id}")
async def profile_endpoint(user_id: str):
    """Returns the reader's learning profile summary."""
    profile = await _run(_pipeline().get_profile, user_id)
    return profile.summary()


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated service metrics."""
    return _pipeline().metrics.get_summary()


@app.get("/health")
async def health_endpoint():
    return {"status": "ok" if _state.get("pipeline") is not None else "starting"}
