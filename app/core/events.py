"""Generation events and their SSE wire translation.

A run (generation, edit, add-section or backfill) produces an ordered
stream of immutable events ending in exactly one of ``Completed``,
``Failed`` or ``Cancelled``. The same events feed persistence, the
broadcast bus and the requester's own stream.
"""

from __future__ import annotations

import json
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.core.schemas_reports import ExtractedEntity, Report, RunSummary, Section

RunMode = Literal["generate", "edit", "add", "convert"]

SSE_DONE = "data: [DONE]\n\n"


class _BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    report_id: str


class Started(_BaseEvent):
    type: Literal["started"] = "started"
    mode: RunMode = "generate"
    section_id: str | None = None


class ContentDelta(_BaseEvent):
    type: Literal["content-delta"] = "content-delta"
    text: str
    section_id: str | None = None


class SectionDetected(_BaseEvent):
    type: Literal["section-detected"] = "section-detected"
    section: Section


class EntitiesDetected(_BaseEvent):
    type: Literal["entities-detected"] = "entities-detected"
    entities: list[ExtractedEntity]


class Completed(_BaseEvent):
    type: Literal["completed"] = "completed"
    summary: RunSummary
    report: Report | None = None
    section: Section | None = None
    version: int | None = None


class Failed(_BaseEvent):
    type: Literal["failed"] = "failed"
    reason: str
    code: str = "engine_error"
    section_id: str | None = None


class Cancelled(_BaseEvent):
    type: Literal["cancelled"] = "cancelled"
    reason: str


GenerationEvent = Annotated[
    Union[Started, ContentDelta, SectionDetected, EntitiesDetected, Completed, Failed, Cancelled],
    Field(discriminator="type"),
]

TERMINAL_EVENTS = (Completed, Failed, Cancelled)

_event_adapter: TypeAdapter = TypeAdapter(GenerationEvent)


def encode_event(event: BaseModel) -> str:
    """Serialize an event for the broadcast bus."""
    return event.model_dump_json()


def decode_event(raw: str | bytes):
    """Parse a bus payload back into its event variant.

    Raises:
        pydantic.ValidationError: If the payload is not a known event
    """
    return _event_adapter.validate_json(raw)


def is_terminal(event: BaseModel) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


# =============================================================================
# Wire protocol
# =============================================================================


def sse_frame(data: dict) -> str:
    """Format a dict as one SSE data frame."""
    return f"data: {json.dumps(data)}\n\n"


def to_wire_frames(event: BaseModel) -> list[dict]:
    """
    Translate an event into the JSON frames clients receive.

    Args:
        event: Any GenerationEvent variant

    Returns:
        Frames in send order (entities fan out to one frame each)

    Raises:
        TypeError: If the event is not a known variant
    """
    if isinstance(event, Started):
        if event.mode in ("edit", "add"):
            return [
                {"type": "section_id", "sectionId": event.section_id, "reportId": event.report_id}
            ]
        return [{"type": "report_id", "reportId": event.report_id}]

    if isinstance(event, ContentDelta):
        frame = {"type": "content", "content": event.text}
        if event.section_id:
            frame["sectionId"] = event.section_id
        return [frame]

    if isinstance(event, SectionDetected):
        return [{"type": "section", "section": event.section.to_wire()}]

    if isinstance(event, EntitiesDetected):
        return [{"type": "entity", "entity": entity.to_wire()} for entity in event.entities]

    if isinstance(event, Completed):
        frame = {"type": "complete", "summary": event.summary.to_wire()}
        if event.report is not None:
            frame["report"] = event.report.to_wire()
        if event.section is not None:
            frame["section"] = event.section.to_wire()
        if event.version is not None:
            frame["version"] = event.version
        return [frame]

    if isinstance(event, Failed):
        frame = {"type": "error", "error": event.reason, "code": event.code}
        if event.section_id:
            frame["sectionId"] = event.section_id
        return [frame]

    if isinstance(event, Cancelled):
        return [{"type": "cancelled", "reason": event.reason}]

    raise TypeError(f"Unhandled generation event: {type(event).__name__}")


def to_sse(event: BaseModel) -> str:
    return "".join(sse_frame(frame) for frame in to_wire_frames(event))
