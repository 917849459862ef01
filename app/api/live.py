"""Live sync endpoint: one SSE connection per report viewer."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.api.report_helpers import SSE_HEADERS, get_engine_context, http_error
from app.core.engine_context import EngineContext
from app.core.errors import EngineError

router = APIRouter()


@router.get("/reports/{report_id}/live")
async def live_report(
    report_id: str,
    request: Request,
    ctx: EngineContext = Depends(get_engine_context),
) -> StreamingResponse:
    """
    Stream every event published for the report.

    Frames use the same shapes as generation streams. The stream does not
    end with [DONE]; it stays open until the viewer disconnects.
    """
    try:
        await ctx.store.get_report(report_id)
    except EngineError as e:
        raise http_error(e) from e

    return StreamingResponse(
        ctx.gateway.stream(report_id, request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
