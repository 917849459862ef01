"""API endpoints for report generation, retrieval and export."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from app.api.report_helpers import (
    SSE_HEADERS,
    client_key,
    get_engine_context,
    http_error,
    sse_events,
)
from app.core.engine_context import EngineContext
from app.core.errors import EngineError
from app.core.logging import get_logger
from app.core.rate_limiter import (
    check_generation_rate_limit,
    get_generation_rate_limit_stats,
)
from app.core.report_export import export_report
from app.core.schemas_reports import CreateReportRequest, GenerationRequest, Report

logger = get_logger(__name__)

router = APIRouter()


async def _start_generation(ctx: EngineContext, body: GenerationRequest):
    try:
        prepared = await ctx.engine.prepare(body)
    except EngineError as e:
        raise http_error(e) from e

    if body.options.stream:
        events = ctx.runs.spawn(prepared.handle, ctx.engine.run(prepared))
        return StreamingResponse(
            sse_events(events), media_type="text/event-stream", headers=SSE_HEADERS
        )

    task = ctx.runs.spawn_task(prepared.handle, ctx.engine.complete(prepared))
    try:
        # Shielded: a client that goes away does not stop the run
        result = await asyncio.shield(task)
    except EngineError as e:
        raise http_error(e) from e
    return result.to_wire()


@router.post("/reports")
async def create_report(
    body: CreateReportRequest,
    ctx: EngineContext = Depends(get_engine_context),
) -> dict:
    """Create an empty report so viewers can subscribe before generation starts."""
    report = await ctx.store.create_report(Report(thread_id=body.thread_id, title=body.title))
    return {"report": report.to_wire()}


@router.get("/reports/rate-limit-status")
async def get_rate_limit_status(request: Request) -> dict:
    """Generation rate limit status for the calling client."""
    return {"status": "ok", "rate_limit": get_generation_rate_limit_stats(client_key(request))}


@router.post("/reports/generate")
async def generate_report(
    body: GenerationRequest,
    request: Request,
    ctx: EngineContext = Depends(get_engine_context),
):
    """
    Generate a new report.

    Streams SSE frames when ``options.stream`` is true, otherwise returns
    the completed payload as JSON (served from cache when possible).
    """
    check_generation_rate_limit(client_key(request))
    return await _start_generation(ctx, body)


@router.post("/reports/{report_id}/generate")
async def generate_into_report(
    report_id: str,
    body: GenerationRequest,
    request: Request,
    ctx: EngineContext = Depends(get_engine_context),
):
    """Generate into an existing, still-empty report."""
    check_generation_rate_limit(client_key(request))
    return await _start_generation(ctx, body.model_copy(update={"report_id": report_id}))


@router.post("/reports/{report_id}/cancel")
async def cancel_report_runs(
    report_id: str,
    ctx: EngineContext = Depends(get_engine_context),
) -> dict:
    try:
        await ctx.store.get_report(report_id)
    except EngineError as e:
        raise http_error(e) from e
    cancelled = ctx.runs.cancel(report_id)
    logger.info(f"Cancel requested for report {report_id}: {cancelled} run(s) signalled")
    return {"reportId": report_id, "cancelled": cancelled}


@router.get("/reports/{report_id}")
async def get_report(
    report_id: str,
    ctx: EngineContext = Depends(get_engine_context),
) -> dict:
    """Report with its ordered sections and entity mentions."""
    try:
        report = await ctx.store.get_report(report_id)
        sections = await ctx.store.list_sections(report_id)
        mentions = await ctx.store.list_report_entities(report_id)
    except EngineError as e:
        raise http_error(e) from e

    return {
        "report": report.to_wire(),
        "sections": [section.to_wire() for section in sections],
        "entities": [
            {**entity.to_wire(), "mention": mention.to_wire()} for entity, mention in mentions
        ],
        "generating": ctx.runs.is_busy(report_id),
        "liveViewers": ctx.gateway.connection_count(report_id),
    }


@router.post("/reports/{report_id}/convert-to-interactive")
async def convert_to_interactive(
    report_id: str,
    ctx: EngineContext = Depends(get_engine_context),
) -> dict:
    try:
        report, sections = await ctx.engine.convert_to_interactive(report_id)
    except EngineError as e:
        raise http_error(e) from e
    return {
        "report": report.to_wire(),
        "sections": [section.to_wire() for section in sections],
    }


@router.get("/reports/{report_id}/export/{export_format}")
async def export(
    report_id: str,
    export_format: str,
    ctx: EngineContext = Depends(get_engine_context),
) -> dict:
    try:
        return await export_report(
            ctx.store, ctx.cache, report_id, export_format, ttl=ctx.settings.EXPORT_CACHE_TTL
        )
    except EngineError as e:
        raise http_error(e) from e
    except Exception as e:
        logger.error(f"Export failed for report {report_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Export failed") from e
