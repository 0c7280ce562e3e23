from __future__ import annotations

import logging
import sqlite3

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from marginalia.core.engine import Engine, build_engine
from marginalia.core.search import SearchError, parse_tag_ids
from marginalia.core.settings import Settings
from marginalia.core.storage import StorageError

logger = logging.getLogger(__name__)

app = FastAPI(title="marginalia")


@app.on_event("startup")
async def _startup() -> None:
    engine = build_engine(Settings.from_env())
    app.state.engine = engine
    await engine.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    engine: Engine | None = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.shutdown()


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


@app.exception_handler(SearchError)
async def _search_error(request: Request, exc: SearchError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


@app.exception_handler(StorageError)
async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse({"error": "Storage unavailable"}, status_code=500)


@app.exception_handler(sqlite3.Error)
async def _sqlite_error(request: Request, exc: sqlite3.Error) -> JSONResponse:
    logger.exception(f"Database error on {request.url.path}")
    return JSONResponse({"error": "Storage unavailable"}, status_code=500)


# ==================== Search API ====================


@app.get("/api/search")
async def api_search(
    request: Request,
    q: str = "",
    tagIds: str | None = None,
    limit: str | None = None,
    x_user_id: str = Header(...),
):
    """Hybrid search over the caller's highlights.

    Args:
        q: Search query
        tagIds: Comma-separated tag ids; a highlight matches if it or its book carries one
        limit: Max results (default 10, max 50)
    """
    engine = get_engine(request)
    response = await engine.search.search(
        user_id=x_user_id,
        query=q,
        tag_ids=parse_tag_ids(tagIds),
        limit=limit,
    )
    return response.to_dict()


@app.post("/api/search/generate-embeddings")
async def api_generate_embeddings(request: Request, x_user_id: str = Header(...)):
    """Queue the caller's highlights that have no embedding yet."""
    engine = get_engine(request)
    queued = await engine.search.request_reembedding(x_user_id)
    return {
        "message": f"Queued {queued} highlights for embedding generation",
        "queued": queued,
    }


@app.get("/api/search/status")
async def api_embedding_status(request: Request, x_user_id: str = Header(...)):
    """Embedding completeness for the caller plus queue and model state."""
    engine = get_engine(request)
    return await engine.search.embedding_status(x_user_id)


@app.get("/api/embeddings/health")
async def api_embeddings_health(request: Request):
    """Check that the configured provider can produce an embedding."""
    engine = get_engine(request)
    result = await engine.embedder.provider.health_check()
    return result.to_dict()
