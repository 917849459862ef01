"""Pydantic models for reports, sections and entities.

Everything here serializes with camelCase aliases for the wire
(``model_dump(by_alias=True)``) and accepts either snake_case or
camelCase on input.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Closed vocabularies
# =============================================================================

SectionType = Literal["text", "table", "chart", "metric", "insight", "custom"]

ReportStatus = Literal["pending", "generating", "completed", "failed", "cancelled"]

EntityType = Literal[
    "COMPANY",
    "STOCK",
    "PERSON",
    "PRODUCT",
    "SECTOR",
    "CRYPTOCURRENCY",
    "COMMODITY",
    "INDEX",
    "ETF",
    "MUTUAL_FUND",
    "COUNTRY",
    "CURRENCY",
]

ENTITY_TYPES: frozenset[str] = frozenset(EntityType.__args__)


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class CamelModel(BaseModel):
    """Base model with camelCase wire aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Sections
# =============================================================================


class EditHistoryEntry(CamelModel):
    """Content committed as one version of a section. Append-only."""

    version: int
    content: str = Field(alias="htmlContent")
    instruction: str | None = Field(default=None, alias="prompt")
    edited_by: str = "ai"
    edited_at: datetime = Field(default_factory=utcnow)


class SectionMetadata(CamelModel):
    original_prompt: str | None = None
    model: str | None = None
    originally_generated_by: str = "ai"
    last_modified_by: str = "ai"


class Section(CamelModel):
    """An addressable, independently editable slice of a report.

    ``edit_history`` holds one entry per version, so
    ``len(edit_history) == version`` always holds for a stored section.
    """

    id: str = Field(default_factory=new_id)
    report_id: str
    type: SectionType = "text"
    title: str
    content: str = Field(alias="htmlContent")
    order: int = 0
    version: int = 1
    edit_history: list[EditHistoryEntry] = Field(default_factory=list)
    metadata: SectionMetadata = Field(default_factory=SectionMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Reports
# =============================================================================


class Report(CamelModel):
    id: str = Field(default_factory=new_id)
    thread_id: str | None = None
    title: str | None = None
    prompt: str = ""
    raw_content: str = ""
    is_interactive: bool = False
    section_ids: list[str] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    model: str | None = None
    status: ReportStatus = "pending"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Entities
# =============================================================================


class ExtractedEntity(CamelModel):
    """One entity as returned by the extraction model, after clamping."""

    name: str
    type: EntityType = "COMPANY"
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    sentiment: float = Field(default=0.0, ge=-1.0, le=1.0)
    context: str = ""
    mentions: int = 1


class Entity(CamelModel):
    id: str = Field(default_factory=new_id)
    name: str
    slug: str
    type: EntityType
    mention_count: int = 0
    first_mentioned: datetime = Field(default_factory=utcnow)
    last_mentioned: datetime = Field(default_factory=utcnow)


class EntityMention(CamelModel):
    id: str = Field(default_factory=new_id)
    entity_id: str
    report_id: str
    context: str = ""
    sentiment: float = Field(default=0.0, ge=-1.0, le=1.0)
    relevance: float = Field(default=0.8, ge=0.0, le=1.0)


# =============================================================================
# Requests
# =============================================================================


class GenerationOptions(CamelModel):
    stream: bool = True
    extract_entities: bool = True
    generate_charts: bool = True
    include_market_data: bool = True
    language: str = "en"


class GenerationRequest(CamelModel):
    """A request to generate a report.

    Only types are checked here; configured bounds (prompt length, model
    allow-list, token budget) are enforced by ``GenerationEngine.prepare``.
    """

    prompt: str
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    thread_id: str | None = None
    report_id: str | None = None


class CreateReportRequest(CamelModel):
    thread_id: str | None = None
    title: str | None = None


class AddSectionRequest(CamelModel):
    prompt: str
    position: int | None = None
    type: SectionType | None = None
    model: str | None = None


SectionAction = Literal["edit", "content", "title", "move-up", "move-down", "duplicate"]


class SectionPatchRequest(CamelModel):
    """PATCH body for a section. ``action`` selects which of the fields apply."""

    action: SectionAction = "edit"
    prompt: str | None = None
    content: str | None = Field(default=None, alias="htmlContent")
    title: str | None = None
    expected_version: int | None = None
    model: str | None = None


# =============================================================================
# Results
# =============================================================================


class RunSummary(CamelModel):
    run_id: str
    report_id: str
    section_count: int = 0
    entity_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float = 0.0
    duration_ms: int = 0
    cached: bool = False  # served from a stored result
    shared: bool = False  # joined another caller's in-flight run


class GenerationResult(CamelModel):
    """Completed generation payload, as cached and returned to blocking callers."""

    report: Report
    sections: list[Section] = Field(default_factory=list)
    entities: list[ExtractedEntity] = Field(default_factory=list)
    summary: RunSummary
