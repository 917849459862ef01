"""In-memory content store.

Default backend for development and tests. A single asyncio lock makes
every operation atomic with respect to the others; callers always get
copies, never the stored objects.
"""

import asyncio

from app.core.errors import NotFoundError, ValidationError
from app.core.schemas_reports import (
    EditHistoryEntry,
    Entity,
    EntityMention,
    ExtractedEntity,
    Report,
    Section,
    utcnow,
)
from app.db.content_store import MoveDirection, StaleVersionError


class InMemoryContentStore:
    """Dict-backed implementation of ContentStore."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.reports: dict[str, Report] = {}
        self.sections: dict[str, Section] = {}
        self.entities: dict[str, Entity] = {}  # slug -> entity
        self.mentions: dict[tuple[str, str], EntityMention] = {}  # (entity_id, report_id)

    # =========================================================================
    # Internal helpers (call with the lock held)
    # =========================================================================

    def _report(self, report_id: str) -> Report:
        report = self.reports.get(report_id)
        if report is None:
            raise NotFoundError(f"Report {report_id} not found")
        return report

    def _section(self, section_id: str) -> Section:
        section = self.sections.get(section_id)
        if section is None:
            raise NotFoundError(f"Section {section_id} not found")
        return section

    def _ordered(self, report_id: str) -> list[Section]:
        return sorted(
            (s for s in self.sections.values() if s.report_id == report_id),
            key=lambda s: s.order,
        )

    def _sync_section_ids(self, report_id: str, **fields) -> None:
        report = self._report(report_id)
        section_ids = [s.id for s in self._ordered(report_id)]
        if not section_ids:
            fields["is_interactive"] = False
        self.reports[report_id] = report.model_copy(
            update={"section_ids": section_ids, "updated_at": utcnow(), **fields}
        )

    # =========================================================================
    # Reports
    # =========================================================================

    async def create_report(self, report: Report) -> Report:
        async with self._lock:
            self.reports[report.id] = report.model_copy(deep=True)
            return report.model_copy(deep=True)

    async def get_report(self, report_id: str) -> Report:
        async with self._lock:
            return self._report(report_id).model_copy(deep=True)

    async def update_report(self, report_id: str, **fields) -> Report:
        async with self._lock:
            report = self._report(report_id)
            updated = report.model_copy(update={**fields, "updated_at": utcnow()})
            self.reports[report_id] = updated
            return updated.model_copy(deep=True)

    # =========================================================================
    # Sections
    # =========================================================================

    async def list_sections(self, report_id: str) -> list[Section]:
        async with self._lock:
            self._report(report_id)
            return [s.model_copy(deep=True) for s in self._ordered(report_id)]

    async def get_section(self, section_id: str) -> Section:
        async with self._lock:
            return self._section(section_id).model_copy(deep=True)

    async def append_section(self, section: Section) -> Section:
        async with self._lock:
            self._report(section.report_id)
            existing = self._ordered(section.report_id)
            order = existing[-1].order + 1 if existing else 0
            stored = section.model_copy(update={"order": order}, deep=True)
            self.sections[stored.id] = stored
            self._sync_section_ids(section.report_id)
            return stored.model_copy(deep=True)

    async def insert_section_at(self, section: Section, position: int | None) -> Section:
        async with self._lock:
            self._report(section.report_id)
            existing = self._ordered(section.report_id)
            if position is None:
                order = existing[-1].order + 1 if existing else 0
            else:
                order = min(max(position, 0), len(existing))
                for other in existing:
                    if other.order >= order:
                        self.sections[other.id] = other.model_copy(
                            update={"order": other.order + 1, "updated_at": utcnow()}
                        )
            stored = section.model_copy(update={"order": order}, deep=True)
            self.sections[stored.id] = stored
            self._sync_section_ids(section.report_id, is_interactive=True)
            return stored.model_copy(deep=True)

    async def commit_section_version(
        self,
        section_id: str,
        expected_version: int,
        content: str,
        entry: EditHistoryEntry,
        *,
        modified_by: str,
    ) -> Section:
        async with self._lock:
            section = self._section(section_id)
            if section.version != expected_version:
                raise StaleVersionError(section_id, expected_version, section.version)

            new_version = expected_version + 1
            history = [*section.edit_history, entry.model_copy(update={"version": new_version})]
            metadata = section.metadata.model_copy(update={"last_modified_by": modified_by})
            updated = section.model_copy(
                update={
                    "content": content,
                    "version": new_version,
                    "edit_history": history,
                    "metadata": metadata,
                    "updated_at": utcnow(),
                },
                deep=True,
            )
            self.sections[section_id] = updated
            return updated.model_copy(deep=True)

    async def rename_section(self, section_id: str, title: str) -> Section:
        async with self._lock:
            section = self._section(section_id)
            updated = section.model_copy(update={"title": title, "updated_at": utcnow()})
            self.sections[section_id] = updated
            return updated.model_copy(deep=True)

    async def move_section(self, section_id: str, direction: MoveDirection) -> list[Section]:
        async with self._lock:
            section = self._section(section_id)
            ordered = self._ordered(section.report_id)
            index = next(i for i, s in enumerate(ordered) if s.id == section_id)
            neighbour_index = index - 1 if direction == "up" else index + 1
            if neighbour_index < 0 or neighbour_index >= len(ordered):
                raise ValidationError(f"Section is already at the {'top' if direction == 'up' else 'bottom'}")

            neighbour = ordered[neighbour_index]
            now = utcnow()
            self.sections[section.id] = section.model_copy(
                update={"order": neighbour.order, "updated_at": now}
            )
            self.sections[neighbour.id] = neighbour.model_copy(
                update={"order": section.order, "updated_at": now}
            )
            self._sync_section_ids(section.report_id)
            return [s.model_copy(deep=True) for s in self._ordered(section.report_id)]

    async def delete_section(self, section_id: str) -> None:
        async with self._lock:
            section = self._section(section_id)
            del self.sections[section_id]
            for other in self._ordered(section.report_id):
                if other.order > section.order:
                    self.sections[other.id] = other.model_copy(
                        update={"order": other.order - 1, "updated_at": utcnow()}
                    )
            self._sync_section_ids(section.report_id)

    # =========================================================================
    # Entities
    # =========================================================================

    async def record_entity_sighting(
        self, report_id: str, extracted: ExtractedEntity, slug: str
    ) -> tuple[Entity, EntityMention]:
        async with self._lock:
            now = utcnow()
            entity = self.entities.get(slug)
            if entity is None:
                entity = Entity(
                    name=extracted.name,
                    slug=slug,
                    type=extracted.type,
                    mention_count=1,
                    first_mentioned=now,
                    last_mentioned=now,
                )
            else:
                entity = entity.model_copy(
                    update={"mention_count": entity.mention_count + 1, "last_mentioned": now}
                )
            self.entities[slug] = entity

            key = (entity.id, report_id)
            mention = self.mentions.get(key)
            fields = {
                "context": extracted.context,
                "sentiment": extracted.sentiment,
                "relevance": extracted.confidence,
            }
            if mention is None:
                mention = EntityMention(entity_id=entity.id, report_id=report_id, **fields)
            else:
                mention = mention.model_copy(update=fields)
            self.mentions[key] = mention
            return entity.model_copy(), mention.model_copy()

    async def list_report_entities(self, report_id: str) -> list[tuple[Entity, EntityMention]]:
        async with self._lock:
            by_id = {entity.id: entity for entity in self.entities.values()}
            return [
                (by_id[entity_id].model_copy(), mention.model_copy())
                for (entity_id, mention_report_id), mention in self.mentions.items()
                if mention_report_id == report_id and entity_id in by_id
            ]

    async def close(self) -> None:
        return None
