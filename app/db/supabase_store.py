"""Supabase-backed content store.

Single-row reads and writes go through the table API; multi-row atomic
changes are Postgres functions (see migrations/0001_report_engine.sql)
called through ``rpc``. supabase-py is synchronous, so every call runs
in a worker thread.
"""

import asyncio
from typing import Any

from pydantic_core import to_jsonable_python
from supabase import Client

from app.core.errors import NotFoundError, StoreError, ValidationError
from app.core.logging import get_logger
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

logger = get_logger(__name__)

REPORTS = "reports"
SECTIONS = "report_sections"
ENTITIES = "entities"
MENTIONS = "entity_mentions"

# =============================================================================
# Row mapping
# =============================================================================


def _report_from_row(row: dict[str, Any]) -> Report:
    return Report.model_validate(row)


def _report_to_row(report: Report) -> dict[str, Any]:
    return report.model_dump(mode="json")


def _section_from_row(row: dict[str, Any]) -> Section:
    data = dict(row)
    data["content"] = data.pop("html_content", "")
    data["order"] = data.pop("section_order", 0)
    return Section.model_validate(data)


def _section_to_row(section: Section) -> dict[str, Any]:
    row = section.model_dump(mode="json")
    row["html_content"] = row.pop("content")
    row["section_order"] = row.pop("order")
    # Persisted history entries use the wire shape (htmlContent, prompt, editedBy, editedAt)
    row["edit_history"] = [entry.to_wire() for entry in section.edit_history]
    return row


def _entity_from_row(row: dict[str, Any]) -> Entity:
    return Entity.model_validate(row)


def _mention_from_row(row: dict[str, Any]) -> EntityMention:
    return EntityMention.model_validate(row)


class SupabaseContentStore:
    """ContentStore implementation over a Supabase client."""

    def __init__(self, client: Client):
        self._client = client

    async def _run(self, description: str, fn):
        """Run a blocking supabase call in a thread, mapping failures to StoreError."""
        try:
            return await asyncio.to_thread(fn)
        except (NotFoundError, StaleVersionError, ValidationError):
            raise
        except Exception as e:
            logger.error(f"Supabase {description} failed: {e}", exc_info=True)
            raise StoreError(f"Failed to {description}: {e}") from e

    # =========================================================================
    # Reports
    # =========================================================================

    async def create_report(self, report: Report) -> Report:
        def _insert():
            response = self._client.table(REPORTS).insert(_report_to_row(report)).execute()
            return _report_from_row(response.data[0])

        return await self._run("create report", _insert)

    async def get_report(self, report_id: str) -> Report:
        def _select():
            response = self._client.table(REPORTS).select("*").eq("id", report_id).execute()
            if not response.data:
                raise NotFoundError(f"Report {report_id} not found")
            return _report_from_row(response.data[0])

        return await self._run("get report", _select)

    async def update_report(self, report_id: str, **fields) -> Report:
        updates = to_jsonable_python(fields)
        updates["updated_at"] = utcnow().isoformat()

        def _update():
            response = (
                self._client.table(REPORTS).update(updates).eq("id", report_id).execute()
            )
            if not response.data:
                raise NotFoundError(f"Report {report_id} not found")
            return _report_from_row(response.data[0])

        return await self._run("update report", _update)

    # =========================================================================
    # Sections
    # =========================================================================

    async def list_sections(self, report_id: str) -> list[Section]:
        await self.get_report(report_id)

        def _select():
            response = (
                self._client.table(SECTIONS)
                .select("*")
                .eq("report_id", report_id)
                .order("section_order")
                .execute()
            )
            return [_section_from_row(row) for row in response.data or []]

        return await self._run("list sections", _select)

    async def get_section(self, section_id: str) -> Section:
        def _select():
            response = self._client.table(SECTIONS).select("*").eq("id", section_id).execute()
            if not response.data:
                raise NotFoundError(f"Section {section_id} not found")
            return _section_from_row(response.data[0])

        return await self._run("get section", _select)

    async def append_section(self, section: Section) -> Section:
        return await self.insert_section_at(section, None, mark_interactive=False)

    async def insert_section_at(
        self, section: Section, position: int | None, mark_interactive: bool = True
    ) -> Section:
        def _rpc():
            response = self._client.rpc(
                "insert_report_section",
                {
                    "p_section": _section_to_row(section),
                    "p_position": position,
                    "p_mark_interactive": mark_interactive,
                },
            ).execute()
            if not response.data:
                raise NotFoundError(f"Report {section.report_id} not found")
            row = response.data[0] if isinstance(response.data, list) else response.data
            return _section_from_row(row)

        return await self._run("insert section", _rpc)

    async def commit_section_version(
        self,
        section_id: str,
        expected_version: int,
        content: str,
        entry: EditHistoryEntry,
        *,
        modified_by: str,
    ) -> Section:
        current = await self.get_section(section_id)
        if current.version != expected_version:
            raise StaleVersionError(section_id, expected_version, current.version)

        new_version = expected_version + 1
        history = [*current.edit_history, entry.model_copy(update={"version": new_version})]
        metadata = current.metadata.model_copy(update={"last_modified_by": modified_by})
        updates = {
            "html_content": content,
            "version": new_version,
            "edit_history": [item.to_wire() for item in history],
            "metadata": metadata.model_dump(mode="json"),
            "updated_at": utcnow().isoformat(),
        }

        def _update():
            # Conditional on the version we read: a concurrent commit makes this a no-op
            response = (
                self._client.table(SECTIONS)
                .update(updates)
                .eq("id", section_id)
                .eq("version", expected_version)
                .execute()
            )
            return response.data

        rows = await self._run("commit section version", _update)
        if not rows:
            latest = await self.get_section(section_id)
            raise StaleVersionError(section_id, expected_version, latest.version)
        return _section_from_row(rows[0])

    async def rename_section(self, section_id: str, title: str) -> Section:
        def _update():
            response = (
                self._client.table(SECTIONS)
                .update({"title": title, "updated_at": utcnow().isoformat()})
                .eq("id", section_id)
                .execute()
            )
            if not response.data:
                raise NotFoundError(f"Section {section_id} not found")
            return _section_from_row(response.data[0])

        return await self._run("rename section", _update)

    async def move_section(self, section_id: str, direction: MoveDirection) -> list[Section]:
        section = await self.get_section(section_id)

        def _rpc():
            response = self._client.rpc(
                "swap_report_section", {"p_section_id": section_id, "p_direction": direction}
            ).execute()
            if response.data is False:
                raise ValidationError("Section cannot move further in that direction")

        await self._run("move section", _rpc)
        return await self.list_sections(section.report_id)

    async def delete_section(self, section_id: str) -> None:
        def _rpc():
            response = self._client.rpc(
                "delete_report_section", {"p_section_id": section_id}
            ).execute()
            if response.data is False:
                raise NotFoundError(f"Section {section_id} not found")

        await self._run("delete section", _rpc)

    # =========================================================================
    # Entities
    # =========================================================================

    async def record_entity_sighting(
        self, report_id: str, extracted: ExtractedEntity, slug: str
    ) -> tuple[Entity, EntityMention]:
        def _rpc():
            response = self._client.rpc(
                "record_entity_sighting",
                {
                    "p_report_id": report_id,
                    "p_name": extracted.name,
                    "p_slug": slug,
                    "p_type": extracted.type,
                    "p_context": extracted.context,
                    "p_sentiment": extracted.sentiment,
                    "p_relevance": extracted.confidence,
                },
            ).execute()
            row = response.data[0] if isinstance(response.data, list) else response.data
            return _entity_from_row(row["entity"]), _mention_from_row(row["mention"])

        return await self._run("record entity sighting", _rpc)

    async def list_report_entities(self, report_id: str) -> list[tuple[Entity, EntityMention]]:
        def _select():
            response = (
                self._client.table(MENTIONS)
                .select("*, entities(*)")
                .eq("report_id", report_id)
                .execute()
            )
            pairs = []
            for row in response.data or []:
                entity_row = row.pop("entities", None)
                if entity_row:
                    pairs.append((_entity_from_row(entity_row), _mention_from_row(row)))
            return pairs

        return await self._run("list report entities", _select)

    async def close(self) -> None:
        return None
