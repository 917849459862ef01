"""API endpoints for section listing, AI editing and manual changes."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from app.api.report_helpers import SSE_HEADERS, get_engine_context, http_error, sse_events
from app.core.engine_context import EngineContext
from app.core.errors import EngineError
from app.core.logging import get_logger
from app.core.schemas_reports import AddSectionRequest, SectionPatchRequest

logger = get_logger(__name__)

router = APIRouter()


@router.get("/reports/{report_id}/sections")
async def list_sections(
    report_id: str,
    ctx: EngineContext = Depends(get_engine_context),
) -> dict:
    try:
        sections = await ctx.store.list_sections(report_id)
    except EngineError as e:
        raise http_error(e) from e
    return {"sections": [section.to_wire() for section in sections]}


@router.post("/reports/{report_id}/sections")
async def add_section(
    report_id: str,
    body: AddSectionRequest,
    ctx: EngineContext = Depends(get_engine_context),
) -> StreamingResponse:
    """Generate a new section at ``position`` (appended when omitted). Streams SSE."""
    try:
        prepared = await ctx.editor.prepare_add(
            report_id,
            body.prompt,
            body.position,
            section_type=body.type,
            model=body.model,
        )
    except EngineError as e:
        raise http_error(e) from e

    events = ctx.runs.spawn(prepared.handle, ctx.editor.run_add(prepared))
    return StreamingResponse(sse_events(events), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/reports/{report_id}/sections/{section_id}")
async def get_section(
    report_id: str,
    section_id: str,
    ctx: EngineContext = Depends(get_engine_context),
) -> dict:
    try:
        section = await ctx.store.get_section(section_id)
    except EngineError as e:
        raise http_error(e) from e
    if section.report_id != report_id:
        raise HTTPException(status_code=404, detail="Section not found")
    return {"section": section.to_wire()}


@router.patch("/reports/{report_id}/sections/{section_id}")
async def update_section(
    report_id: str,
    section_id: str,
    body: SectionPatchRequest,
    ctx: EngineContext = Depends(get_engine_context),
):
    """
    Change a section.

    ``action`` selects the change:
    - edit: AI rewrite from ``prompt`` (SSE stream)
    - content: commit ``htmlContent`` as a new version
    - title: rename
    - move-up / move-down: swap with the neighbouring section
    - duplicate: copy directly after this section
    """
    editor = ctx.editor
    try:
        if body.action == "edit":
            prepared = await editor.prepare_edit(
                section_id, body.prompt or "", report_id=report_id, model=body.model
            )
            events = ctx.runs.spawn(prepared.handle, editor.run_edit(prepared))
            return StreamingResponse(
                sse_events(events), media_type="text/event-stream", headers=SSE_HEADERS
            )

        if body.action == "content":
            section = await editor.update_section_content(
                section_id,
                body.content or "",
                report_id=report_id,
                expected_version=body.expected_version,
            )
            return {"section": section.to_wire(), "version": section.version}

        if body.action == "title":
            section = await editor.rename_section(section_id, body.title or "", report_id=report_id)
            return {"section": section.to_wire()}

        if body.action in ("move-up", "move-down"):
            direction = "up" if body.action == "move-up" else "down"
            sections = await editor.move_section(section_id, direction, report_id=report_id)
            return {"sections": [section.to_wire() for section in sections]}

        if body.action == "duplicate":
            section = await editor.duplicate_section(section_id, report_id=report_id)
            return {"section": section.to_wire()}
    except EngineError as e:
        raise http_error(e) from e

    raise HTTPException(status_code=422, detail=f"Unknown action '{body.action}'")


@router.delete("/reports/{report_id}/sections/{section_id}")
async def delete_section(
    report_id: str,
    section_id: str,
    ctx: EngineContext = Depends(get_engine_context),
) -> dict:
    try:
        await ctx.editor.delete_section(section_id, report_id=report_id)
        sections = await ctx.store.list_sections(report_id)
    except EngineError as e:
        raise http_error(e) from e
    return {"deleted": section_id, "sections": [section.to_wire() for section in sections]}


@router.post("/reports/{report_id}/sections/{section_id}/cancel")
async def cancel_section_runs(
    report_id: str,
    section_id: str,
    ctx: EngineContext = Depends(get_engine_context),
) -> dict:
    cancelled = ctx.runs.cancel(report_id, section_id=section_id)
    return {"sectionId": section_id, "cancelled": cancelled}
