"""Shared helpers for the report API routers."""

from collections.abc import AsyncIterator

from fastapi import HTTPException, Request

from app.core.engine_context import EngineContext
from app.core.errors import EngineError
from app.core.events import SSE_DONE, is_terminal, to_sse
from app.core.logging import get_logger

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

ERROR_STATUS = {
    "validation_error": 422,
    "not_found": 404,
    "conflict": 409,
    "cancelled": 409,
    "provider_error": 502,
    "parse_error": 502,
    "store_error": 503,
}


def get_engine_context(request: Request) -> EngineContext:
    """FastAPI dependency: the context built at startup."""
    return request.app.state.engine


def client_key(request: Request) -> str:
    """Rate-limit key: explicit user header, else client address."""
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return user_id
    return request.client.host if request.client else "anonymous"


def http_error(error: EngineError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(error.code, 500), detail=str(error))


async def sse_events(events: AsyncIterator) -> AsyncIterator[str]:
    """Translate a run's events to SSE frames, ending with [DONE]."""
    finished = False
    async for event in events:
        finished = finished or is_terminal(event)
        yield to_sse(event)
    if not finished:
        logger.warning("Run stream ended without a terminal event")
    yield SSE_DONE
