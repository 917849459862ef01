"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api import router as api_router
from app.api.report_helpers import ERROR_STATUS
from app.core.engine_context import EngineContext
from app.core.errors import EngineError
from app.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = await EngineContext.start()
    try:
        yield
    finally:
        await app.state.engine.shutdown()


app = FastAPI(
    title="Report Stream Engine",
    description="Streaming report generation with live, section-level editing",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Engine errors that escape an endpoint map to their HTTP status."""
    logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.code, 500),
        content={"detail": str(exc), "code": exc.code},
    )


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    content = {"status": "ok"}
    ctx = getattr(request.app.state, "engine", None)
    if ctx is not None:
        content.update(cache=ctx.cache.backend_name, bus=ctx.bus.backend_name)
    return JSONResponse(content=content, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
