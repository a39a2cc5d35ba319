from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from loguru import logger

from kbcontext import config as CFG
from kbcontext.conversation import build_conversation_history
from kbcontext.engine import ContextEngine, create_engine
from kbcontext.errors import (
    ContextEngineError,
    EmbeddingError,
    ErrorSeverity,
    ValidationError,
    format_error_for_logging,
    get_error_severity,
    is_retryable,
)
from kbcontext.logging_config import log_error, setup_logging
from kbcontext.models import (
    ResolveRequest,
    ResolveResponseModel,
    SearchRequest,
    SearchResponseModel,
)

_engine: Optional[ContextEngine] = None


def get_engine() -> ContextEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="engine not ready")
    return _engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine on startup and close its HTTP clients on shutdown."""
    global _engine
    setup_logging()
    _engine = create_engine()
    logger.info(f"Context engine ready: knowledge bases={[kb.id for kb in _engine.knowledge_bases]}")
    yield
    try:
        await _engine.close()
    except Exception as e:
        logger.warning(f"Error closing engine clients: {e}")
    _engine = None


app = FastAPI(default_response_class=ORJSONResponse, lifespan=lifespan)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests with timing and status information."""
    request_id = str(uuid4())
    start_time = time.time()
    logger.info(f"[{request_id}] → {request.method} {request.url.path}")
    response = await call_next(request)
    duration = time.time() - start_time
    logger.info(
        f"[{request_id}] ← {request.method} {request.url.path} "
        f"status={response.status_code} duration={duration:.3f}s"
    )
    return response


@app.exception_handler(ContextEngineError)
async def engine_error_handler(request: Request, exc: ContextEngineError):
    if isinstance(exc, ValidationError):
        status = 422
    elif isinstance(exc, EmbeddingError):
        status = 502
    else:
        status = 500
    severity = get_error_severity(exc)
    level = "error" if severity in (ErrorSeverity.CRITICAL, ErrorSeverity.HIGH) else "warning"
    log_error(
        type(exc).__name__,
        exc.message,
        level=level,
        path=request.url.path,
        details=format_error_for_logging(exc),
    )
    content = exc.to_dict()
    content["retryable"] = is_retryable(exc)
    return ORJSONResponse(status_code=status, content=content)


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    summary = CFG.health_summary()
    summary["ok"] = True
    if _engine is not None:
        summary["context_store_stats"] = _engine.store.stats()
    return summary


@app.post("/search", response_model=SearchResponseModel)
async def search(req: SearchRequest, engine: ContextEngine = Depends(get_engine)):
    history = req.history if req.history is not None else build_conversation_history(req.messages)
    response = await engine.perform_search(
        req.query,
        history_text=history,
        model_hint=req.model_hint,
        source_selection=req.sources,
    )
    return response.to_dict()


@app.get("/context/{message_id}")
def get_context(message_id: str, engine: ContextEngine = Depends(get_engine)) -> Dict[str, Any]:
    if not engine.has_context(message_id):
        raise HTTPException(status_code=404, detail="context not found")
    return {
        "message_id": message_id,
        "citations": [c.to_dict() for c in engine.get_context(message_id)],
    }


@app.post("/context/{message_id}/resolve", response_model=ResolveResponseModel)
def resolve_context(message_id: str, req: ResolveRequest, engine: ContextEngine = Depends(get_engine)):
    if not engine.has_context(message_id):
        raise HTTPException(status_code=404, detail="context not found")
    resolution = engine.resolve_answer(message_id, req.answer)
    return {
        "message_id": message_id,
        "cited": [{"marker": f"[CIT{c.ordinal}]", "citation": c.to_dict()} for c in resolution.cited],
        "unknown_ordinals": resolution.unknown_ordinals,
        "unused_ordinals": resolution.unused_ordinals,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=CFG.API_HOST, port=CFG.API_PORT)
