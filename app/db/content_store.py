"""Content store interface shared by the in-memory and Supabase backends.

The store is the single source of truth for reports, sections and
entities. Every multi-row change (order allocation, insert-with-shift,
delete-with-renumber, entity sighting) is atomic within the backend.
"""

from typing import Literal, Protocol

from app.core.schemas_reports import (
    EditHistoryEntry,
    Entity,
    EntityMention,
    ExtractedEntity,
    Report,
    Section,
    SectionMetadata,
    new_id,
    utcnow,
)


class StaleVersionError(Exception):
    """Optimistic commit failed: the section is no longer at the expected version."""

    def __init__(self, section_id: str, expected_version: int, current_version: int):
        super().__init__(
            f"Section {section_id} is at version {current_version}, expected {expected_version}"
        )
        self.section_id = section_id
        self.expected_version = expected_version
        self.current_version = current_version


MoveDirection = Literal["up", "down"]


def new_section(
    report_id: str,
    title: str,
    content: str,
    section_type: str,
    *,
    editor: str = "ai",
    instruction: str | None = None,
    model: str | None = None,
    section_id: str | None = None,
) -> Section:
    """
    Build a version-1 section with its first history entry.

    Order is left at 0; the store allocates the real order on insert.
    """
    now = utcnow()
    return Section(
        id=section_id or new_id(),
        report_id=report_id,
        type=section_type,
        title=title,
        content=content,
        version=1,
        edit_history=[
            EditHistoryEntry(
                version=1, content=content, instruction=instruction, edited_by=editor, edited_at=now
            )
        ],
        metadata=SectionMetadata(
            original_prompt=instruction,
            model=model,
            originally_generated_by=editor,
            last_modified_by=editor,
        ),
        created_at=now,
        updated_at=now,
    )


class ContentStore(Protocol):
    """Persistence operations used by the engine and editor.

    Reads of unknown ids raise ``NotFoundError``; backend failures raise
    ``StoreError``.
    """

    # Reports
    async def create_report(self, report: Report) -> Report: ...

    async def get_report(self, report_id: str) -> Report: ...

    async def update_report(self, report_id: str, **fields) -> Report: ...

    # Sections
    async def list_sections(self, report_id: str) -> list[Section]: ...

    async def get_section(self, section_id: str) -> Section: ...

    async def append_section(self, section: Section) -> Section:
        """Store a new section after the report's current last one."""
        ...

    async def insert_section_at(self, section: Section, position: int | None) -> Section:
        """Insert at ``position``, shifting sections at or after it down by one.

        Also marks the report interactive.
        """
        ...

    async def commit_section_version(
        self,
        section_id: str,
        expected_version: int,
        content: str,
        entry: EditHistoryEntry,
        *,
        modified_by: str,
    ) -> Section:
        """Swap content and append ``entry`` as version ``expected_version + 1``.

        Raises:
            StaleVersionError: If the stored version is not ``expected_version``
        """
        ...

    async def rename_section(self, section_id: str, title: str) -> Section: ...

    async def move_section(self, section_id: str, direction: MoveDirection) -> list[Section]:
        """Swap order with the neighbouring section. Returns the report's sections."""
        ...

    async def delete_section(self, section_id: str) -> None:
        """Delete and renumber later sections."""
        ...

    # Entities
    async def record_entity_sighting(
        self, report_id: str, extracted: ExtractedEntity, slug: str
    ) -> tuple[Entity, EntityMention]: ...

    async def list_report_entities(self, report_id: str) -> list[tuple[Entity, EntityMention]]: ...

    async def close(self) -> None: ...
