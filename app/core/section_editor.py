"""Section editor: AI and manual edits with optimistic versioning.

An edit reads the section at version *v*, streams the rewritten content,
then commits it as *v + 1* only if the stored version is still *v*. On a
collision the section is re-read; if the intervening commit did not
change the content the edit was based on, the commit is retried once
against the newer version. Otherwise, or on a second collision, the edit
fails with ``ConflictError``. Nothing is ever silently overwritten.
"""

import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass

from app.core.broadcast import BroadcastBus
from app.core.cache import Cache, export_cache_pattern
from app.core.config import Settings
from app.core.errors import ConflictError, EngineError, NotFoundError, ProviderError, ValidationError
from app.core.events import Cancelled, Completed, ContentDelta, Failed, SectionDetected, Started
from app.core.llm import ProviderRouter, strip_llm_fences
from app.core.llm_usage import UsageTally
from app.core.logging import get_logger, log_with_context
from app.core.prompt_profiles import (
    SECTION_EDITOR_SYSTEM_PROMPT,
    build_add_section_prompt,
    build_edit_prompt,
)
from app.core.runs import RunHandle, RunInterrupted, RunRegistry, guarded
from app.core.schemas_reports import EditHistoryEntry, RunSummary, Section, new_id, utcnow
from app.core.section_parser import first_heading_title
from app.db.content_store import ContentStore, MoveDirection, StaleVersionError, new_section

logger = get_logger(__name__)

DEFAULT_SECTION_TITLE = "New Section"
DEFAULT_ADDED_TYPE = "custom"


@dataclass
class PreparedEdit:
    handle: RunHandle
    section: Section  # base the edit is derived from
    instruction: str
    editor: str
    model: str


@dataclass
class PreparedAdd:
    handle: RunHandle
    section_id: str
    instruction: str
    position: int | None
    section_type: str | None
    editor: str
    model: str


class SectionEditor:
    def __init__(
        self,
        *,
        settings: Settings,
        store: ContentStore,
        cache: Cache,
        bus: BroadcastBus,
        providers: ProviderRouter,
        runs: RunRegistry,
    ):
        self.settings = settings
        self.store = store
        self.cache = cache
        self.bus = bus
        self.providers = providers
        self.runs = runs

    # =========================================================================
    # Helpers
    # =========================================================================

    def _check_instruction(self, instruction: str) -> str:
        instruction = (instruction or "").strip()
        if not instruction:
            raise ValidationError("An edit instruction is required")
        if len(instruction) > self.settings.PROMPT_MAX_CHARS:
            raise ValidationError(
                f"Instruction must be at most {self.settings.PROMPT_MAX_CHARS} characters"
            )
        return instruction

    def _resolve_model(self, model: str | None) -> str:
        model = model or self.settings.DEFAULT_MODEL
        if model not in self.settings.ALLOWED_MODELS:
            raise ValidationError(f"Model '{model}' is not allowed")
        self.providers.for_model(model)
        return model

    async def _section_in_report(self, report_id: str | None, section_id: str) -> Section:
        section = await self.store.get_section(section_id)
        if report_id is not None and section.report_id != report_id:
            raise NotFoundError(f"Section {section_id} not found in report {report_id}")
        return section

    async def _require_interactive(self, report_id: str) -> None:
        """Structural inserts need a report whose sections cover its text."""
        report = await self.store.get_report(report_id)
        if not report.is_interactive and report.raw_content.strip():
            raise ConflictError(
                f"Report {report_id} has static content; convert it to interactive first"
            )

    async def _emit(self, event):
        await self.bus.publish(event.report_id, event)
        return event

    async def _invalidate_exports(self, report_id: str) -> None:
        await self.cache.delete_pattern(export_cache_pattern(report_id))

    async def _stream_text(
        self, handle: RunHandle, model: str, prompt: str, usage: UsageTally
    ) -> AsyncIterator[str]:
        provider = self.providers.for_model(model)
        fragments = provider.stream(
            model=model,
            system=SECTION_EDITOR_SYSTEM_PROMPT,
            prompt=prompt,
            max_tokens=self.settings.EDIT_MAX_TOKENS,
            temperature=self.settings.DEFAULT_TEMPERATURE,
        )
        async for chunk in guarded(handle, fragments):
            usage.add(chunk.input_tokens, chunk.output_tokens)
            if chunk.text:
                yield chunk.text

    async def commit(
        self,
        base: Section,
        content: str,
        *,
        instruction: str | None,
        editor: str,
        allow_rebase: bool = True,
    ) -> Section:
        """
        Commit ``content`` as the version after ``base``.

        Args:
            base: Section as read when the edit started
            content: New content
            instruction: Edit instruction recorded in history
            editor: Who made the change
            allow_rebase: Retry once when the intervening commit left content unchanged

        Raises:
            ConflictError: If another commit changed the section first
        """
        entry = EditHistoryEntry(
            version=base.version + 1,
            content=content,
            instruction=instruction,
            edited_by=editor,
            edited_at=utcnow(),
        )
        try:
            return await self.store.commit_section_version(
                base.id, base.version, content, entry, modified_by=editor
            )
        except StaleVersionError as e:
            if not allow_rebase:
                raise ConflictError(
                    f"Section {base.id} is at version {e.current_version}, expected {base.version}"
                ) from e
            current = await self.store.get_section(base.id)
            if current.content != base.content:
                raise ConflictError(
                    f"Section {base.id} was changed by another edit (now version {current.version})"
                ) from e

        try:
            return await self.store.commit_section_version(
                base.id,
                current.version,
                content,
                entry.model_copy(update={"version": current.version + 1}),
                modified_by=editor,
            )
        except StaleVersionError as e:
            raise ConflictError(
                f"Section {base.id} kept changing during the edit (now version {e.current_version})"
            ) from e

    # =========================================================================
    # AI edit
    # =========================================================================

    async def prepare_edit(
        self,
        section_id: str,
        instruction: str,
        editor: str = "user",
        *,
        report_id: str | None = None,
        model: str | None = None,
    ) -> PreparedEdit:
        """
        Validate an edit and register its run.

        Raises:
            ValidationError: Empty or oversized instruction, unknown model
            NotFoundError: Unknown section (or not in ``report_id``)
        """
        instruction = self._check_instruction(instruction)
        model = self._resolve_model(model)
        section = await self._section_in_report(report_id, section_id)
        handle = self.runs.acquire(
            section.report_id, "edit", exclusive=False, section_id=section.id
        )
        return PreparedEdit(
            handle=handle, section=section, instruction=instruction, editor=editor, model=model
        )

    async def edit_section(
        self,
        section_id: str,
        instruction: str,
        editor: str = "user",
        *,
        report_id: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator:
        """Rewrite one section from an instruction, yielding section-scoped events."""
        prepared = await self.prepare_edit(
            section_id, instruction, editor, report_id=report_id, model=model
        )
        async for event in self.run_edit(prepared):
            yield event

    async def run_edit(self, prepared: PreparedEdit) -> AsyncIterator:
        handle = prepared.handle
        base = prepared.section
        run_id, report_id, section_id = handle.run_id, base.report_id, base.id
        usage = UsageTally(prepared.model)
        started_at = time.monotonic()

        try:
            yield await self._emit(
                Started(run_id=run_id, report_id=report_id, mode="edit", section_id=section_id)
            )

            parts: list[str] = []
            prompt = build_edit_prompt(base, prepared.instruction)
            async for text in self._stream_text(handle, prepared.model, prompt, usage):
                parts.append(text)
                yield await self._emit(
                    ContentDelta(run_id=run_id, report_id=report_id, text=text, section_id=section_id)
                )

            content = strip_llm_fences("".join(parts))
            if not content:
                raise ProviderError("Model returned no content for the edit")

            handle.check()
            section = await self.commit(
                base, content, instruction=prepared.instruction, editor=prepared.editor
            )
            await self._invalidate_exports(report_id)
            usage.finalize(prompt, content)

            log_with_context(
                logger,
                logging.INFO,
                "Section edit committed",
                run_id=run_id,
                report_id=report_id,
                section_id=section_id,
                version=section.version,
            )
            yield await self._emit(
                Completed(
                    run_id=run_id,
                    report_id=report_id,
                    summary=self._summary(handle, usage, started_at, section_count=1),
                    section=section,
                    version=section.version,
                )
            )

        except ConflictError as e:
            log_with_context(
                logger,
                logging.WARNING,
                f"Section edit conflict: {e}",
                run_id=run_id,
                report_id=report_id,
                section_id=section_id,
            )
            # Delivered to the editing caller only
            yield Failed(
                run_id=run_id,
                report_id=report_id,
                reason=str(e),
                code=e.code,
                section_id=section_id,
            )

        except RunInterrupted as e:
            yield await self._emit(Cancelled(run_id=run_id, report_id=report_id, reason=e.reason))

        except EngineError as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Section edit failed: {e}",
                run_id=run_id,
                report_id=report_id,
                section_id=section_id,
            )
            yield await self._emit(
                Failed(
                    run_id=run_id,
                    report_id=report_id,
                    reason=str(e),
                    code=e.code,
                    section_id=section_id,
                )
            )

        except Exception as e:
            logger.error(f"Unexpected error editing section {section_id}: {e}", exc_info=True)
            yield await self._emit(
                Failed(
                    run_id=run_id,
                    report_id=report_id,
                    reason="Section edit failed",
                    section_id=section_id,
                )
            )

        finally:
            self.runs.release(handle)

    @staticmethod
    def _summary(
        handle: RunHandle, usage: UsageTally, started_at: float, section_count: int
    ) -> RunSummary:
        return RunSummary(
            run_id=handle.run_id,
            report_id=handle.report_id,
            section_count=section_count,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            estimated_cost_usd=usage.cost_usd,
            duration_ms=int((time.monotonic() - started_at) * 1000),
        )

    # =========================================================================
    # AI add section
    # =========================================================================

    async def prepare_add(
        self,
        report_id: str,
        instruction: str,
        position: int | None = None,
        editor: str = "user",
        *,
        section_type: str | None = None,
        model: str | None = None,
    ) -> PreparedAdd:
        instruction = self._check_instruction(instruction)
        model = self._resolve_model(model)
        if position is not None and position < 0:
            raise ValidationError("Position must be zero or greater")
        await self._require_interactive(report_id)

        section_id = new_id()
        handle = self.runs.acquire(report_id, "add", exclusive=False, section_id=section_id)
        return PreparedAdd(
            handle=handle,
            section_id=section_id,
            instruction=instruction,
            position=position,
            section_type=section_type,
            editor=editor,
            model=model,
        )

    async def add_section(
        self,
        report_id: str,
        instruction: str,
        position: int | None = None,
        editor: str = "user",
        *,
        section_type: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator:
        """Generate a new section and insert it at ``position`` (None appends)."""
        prepared = await self.prepare_add(
            report_id, instruction, position, editor, section_type=section_type, model=model
        )
        async for event in self.run_add(prepared):
            yield event

    async def run_add(self, prepared: PreparedAdd) -> AsyncIterator:
        handle = prepared.handle
        run_id, report_id, section_id = handle.run_id, handle.report_id, prepared.section_id
        usage = UsageTally(prepared.model)
        started_at = time.monotonic()

        try:
            yield await self._emit(
                Started(run_id=run_id, report_id=report_id, mode="add", section_id=section_id)
            )

            report = await self.store.get_report(report_id)
            sections = await self.store.list_sections(report_id)
            prompt = build_add_section_prompt(
                report, sections, prepared.instruction, prepared.section_type
            )

            parts: list[str] = []
            async for text in self._stream_text(handle, prepared.model, prompt, usage):
                parts.append(text)
                yield await self._emit(
                    ContentDelta(run_id=run_id, report_id=report_id, text=text, section_id=section_id)
                )

            content = strip_llm_fences("".join(parts))
            if not content:
                raise ProviderError("Model returned no content for the new section")

            handle.check()
            section = new_section(
                report_id,
                first_heading_title(content) or DEFAULT_SECTION_TITLE,
                content,
                prepared.section_type or DEFAULT_ADDED_TYPE,
                editor=prepared.editor,
                instruction=prepared.instruction,
                model=prepared.model,
                section_id=section_id,
            )
            stored = await self.store.insert_section_at(section, prepared.position)
            report = await self.store.get_report(report_id)
            await self._invalidate_exports(report_id)
            usage.finalize(prompt, content)

            log_with_context(
                logger,
                logging.INFO,
                "Section added",
                run_id=run_id,
                report_id=report_id,
                section_id=section_id,
                order=stored.order,
            )
            yield await self._emit(
                SectionDetected(run_id=run_id, report_id=report_id, section=stored)
            )
            yield await self._emit(
                Completed(
                    run_id=run_id,
                    report_id=report_id,
                    summary=self._summary(handle, usage, started_at, section_count=1),
                    report=report,
                    section=stored,
                    version=stored.version,
                )
            )

        except RunInterrupted as e:
            yield await self._emit(Cancelled(run_id=run_id, report_id=report_id, reason=e.reason))

        except EngineError as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Add section failed: {e}",
                run_id=run_id,
                report_id=report_id,
            )
            yield await self._emit(
                Failed(
                    run_id=run_id,
                    report_id=report_id,
                    reason=str(e),
                    code=e.code,
                    section_id=section_id,
                )
            )

        except Exception as e:
            logger.error(f"Unexpected error adding section to {report_id}: {e}", exc_info=True)
            yield await self._emit(
                Failed(
                    run_id=run_id,
                    report_id=report_id,
                    reason="Add section failed",
                    section_id=section_id,
                )
            )

        finally:
            self.runs.release(handle)

    # =========================================================================
    # Manual operations
    # =========================================================================

    async def update_section_content(
        self,
        section_id: str,
        content: str,
        editor: str = "user",
        *,
        report_id: str | None = None,
        expected_version: int | None = None,
    ) -> Section:
        """
        Commit hand-written content through the same optimistic protocol.

        With ``expected_version`` the commit must land on exactly that
        version; without it, one rebase is allowed as for AI edits.
        """
        if not content or not content.strip():
            raise ValidationError("Section content cannot be empty")
        base = await self._section_in_report(report_id, section_id)
        if expected_version is not None and expected_version != base.version:
            raise ConflictError(
                f"Section {section_id} is at version {base.version}, expected {expected_version}"
            )

        section = await self.commit(
            base,
            content,
            instruction=None,
            editor=editor,
            allow_rebase=expected_version is None,
        )
        await self._invalidate_exports(section.report_id)

        run_id = new_id()
        await self._emit(
            Completed(
                run_id=run_id,
                report_id=section.report_id,
                summary=RunSummary(run_id=run_id, report_id=section.report_id, section_count=1),
                section=section,
                version=section.version,
            )
        )
        return section

    async def rename_section(
        self, section_id: str, title: str, *, report_id: str | None = None
    ) -> Section:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Section title cannot be empty")
        await self._section_in_report(report_id, section_id)
        section = await self.store.rename_section(section_id, title)
        await self._invalidate_exports(section.report_id)
        return section

    async def move_section(
        self, section_id: str, direction: MoveDirection, *, report_id: str | None = None
    ) -> list[Section]:
        section = await self._section_in_report(report_id, section_id)
        sections = await self.store.move_section(section_id, direction)
        await self._invalidate_exports(section.report_id)
        return sections

    async def duplicate_section(
        self, section_id: str, editor: str = "user", *, report_id: str | None = None
    ) -> Section:
        """Copy a section (at version 1) directly after the original."""
        original = await self._section_in_report(report_id, section_id)
        await self._require_interactive(original.report_id)
        copy = new_section(
            original.report_id,
            f"{original.title} (Copy)",
            original.content,
            original.type,
            editor=editor,
            instruction=original.metadata.original_prompt,
            model=original.metadata.model,
        )
        stored = await self.store.insert_section_at(copy, original.order + 1)
        await self._invalidate_exports(original.report_id)

        run_id = new_id()
        await self._emit(
            SectionDetected(run_id=run_id, report_id=original.report_id, section=stored)
        )
        return stored

    async def delete_section(self, section_id: str, *, report_id: str | None = None) -> None:
        section = await self._section_in_report(report_id, section_id)
        await self.store.delete_section(section_id)
        await self._invalidate_exports(section.report_id)
        log_with_context(
            logger,
            logging.INFO,
            "Section deleted",
            report_id=section.report_id,
            section_id=section_id,
        )
