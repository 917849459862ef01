"""Generation engine: streams a model's report into persisted sections.

A generation run opens a provider stream, forwards every fragment as a
``ContentDelta``, slices finalized sections out of the buffered text and
persists each one before announcing it, extracts entities once the
stream ends, then finalizes the report. Every event is published on the
broadcast bus before it is yielded to the caller.

Failures and cancellation end the run with ``Failed`` or ``Cancelled``;
sections already persisted stay in place.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass

from app.core.broadcast import BroadcastBus
from app.core.cache import Cache, export_cache_pattern, report_cache_key
from app.core.config import Settings
from app.core.entity_extraction import EntityExtractor
from app.core.errors import (
    ConflictError,
    EngineError,
    RunCancelledError,
    ValidationError,
)
from app.core.events import (
    Cancelled,
    Completed,
    ContentDelta,
    EntitiesDetected,
    Failed,
    SectionDetected,
    Started,
)
from app.core.llm import ProviderRouter
from app.core.llm_usage import UsageTally
from app.core.logging import get_logger, log_with_context
from app.core.prompt_profiles import enhance_prompt, select_profile
from app.core.runs import RunHandle, RunInterrupted, RunRegistry, guarded
from app.core.schemas_reports import (
    ExtractedEntity,
    GenerationRequest,
    GenerationResult,
    Report,
    RunSummary,
    Section,
    new_id,
)
from app.core.section_parser import DraftSection, SectionAssembler, split_sections
from app.db.content_store import ContentStore, new_section

logger = get_logger(__name__)


@dataclass
class PreparedGeneration:
    """A validated request that owns its report's run slot."""

    handle: RunHandle
    request: GenerationRequest
    model: str
    temperature: float
    max_tokens: int
    cache_key: str | None

    @property
    def run_id(self) -> str:
        return self.handle.run_id

    @property
    def report_id(self) -> str:
        return self.handle.report_id


class GenerationEngine:
    def __init__(
        self,
        *,
        settings: Settings,
        store: ContentStore,
        cache: Cache,
        bus: BroadcastBus,
        providers: ProviderRouter,
        runs: RunRegistry,
        extractor: EntityExtractor,
    ):
        self.settings = settings
        self.store = store
        self.cache = cache
        self.bus = bus
        self.providers = providers
        self.runs = runs
        self.extractor = extractor

    # =========================================================================
    # Entry points
    # =========================================================================

    async def prepare(self, request: GenerationRequest) -> PreparedGeneration:
        """
        Validate a request and claim the report's run slot.

        Nothing is emitted or persisted here, so every error surfaces
        before the first event.

        Raises:
            ValidationError: If the request is out of bounds
            NotFoundError: If ``request.report_id`` does not exist
            ConflictError: If a generation is already running for the report
        """
        settings = self.settings
        prompt = request.prompt.strip()
        if len(prompt) < settings.PROMPT_MIN_CHARS:
            raise ValidationError(
                f"Prompt must be at least {settings.PROMPT_MIN_CHARS} characters"
            )
        if len(prompt) > settings.PROMPT_MAX_CHARS:
            raise ValidationError(f"Prompt must be at most {settings.PROMPT_MAX_CHARS} characters")

        model = request.model or settings.DEFAULT_MODEL
        if model not in settings.ALLOWED_MODELS:
            raise ValidationError(f"Model '{model}' is not allowed")
        self.providers.for_model(model)

        temperature = (
            settings.DEFAULT_TEMPERATURE if request.temperature is None else request.temperature
        )
        if not 0.0 <= temperature <= 1.0:
            raise ValidationError("Temperature must be between 0 and 1")

        max_tokens = request.max_tokens or settings.DEFAULT_MAX_TOKENS
        if not settings.MIN_OUTPUT_TOKENS <= max_tokens <= settings.MAX_OUTPUT_TOKENS:
            raise ValidationError(
                f"max_tokens must be between {settings.MIN_OUTPUT_TOKENS} "
                f"and {settings.MAX_OUTPUT_TOKENS}"
            )

        cache_key = None
        if request.report_id:
            report = await self.store.get_report(request.report_id)
            if report.section_ids or report.raw_content:
                raise ConflictError(f"Report {report.id} already has content")
            report_id = report.id
        else:
            report_id = new_id()
            options = request.options.model_dump(exclude={"stream"})
            options.update(temperature=temperature, max_tokens=max_tokens)
            cache_key = report_cache_key(prompt, model, options)

        handle = self.runs.acquire(report_id, "generate", exclusive=True)
        return PreparedGeneration(
            handle=handle,
            request=request.model_copy(update={"prompt": prompt}),
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            cache_key=cache_key,
        )

    async def generate(self, request: GenerationRequest) -> AsyncIterator:
        """Validate then run a request, yielding its events."""
        prepared = await self.prepare(request)
        async for event in self.run(prepared):
            yield event

    async def generate_blocking(self, request: GenerationRequest) -> GenerationResult:
        """Validate then run a request to completion, going through the cache."""
        prepared = await self.prepare(request)
        return await self.complete(prepared)

    async def run(self, prepared: PreparedGeneration) -> AsyncIterator:
        """
        Run a prepared generation.

        Streaming requests yield every event; blocking requests yield only
        the terminal event, served through the cache.
        """
        if prepared.request.options.stream:
            async for event in self.stream(prepared):
                yield event
            return

        try:
            result = await self.complete(prepared)
        except RunCancelledError as e:
            yield Cancelled(run_id=prepared.run_id, report_id=prepared.report_id, reason=str(e))
        except EngineError as e:
            yield Failed(
                run_id=prepared.run_id, report_id=prepared.report_id, reason=str(e), code=e.code
            )
        else:
            yield Completed(
                run_id=prepared.run_id,
                report_id=result.report.id,
                summary=result.summary,
                report=result.report,
            )

    async def complete(self, prepared: PreparedGeneration) -> GenerationResult:
        """
        Run to completion and return the result payload.

        Identical concurrent requests share one provider run through
        ``Cache.get_or_set``; a cache hit skips the provider entirely. The
        summary says which happened: ``cached`` for a stored result,
        ``shared`` for a caller that joined another request's run.

        Raises:
            EngineError: The run's failure, with its code
            RunCancelledError: If the run was cancelled or timed out
        """
        produced = False

        async def _produce() -> dict:
            nonlocal produced
            produced = True
            result = await self._collect(prepared)
            return result.to_wire()

        try:
            if prepared.cache_key is None:
                return await self._collect(prepared)
            data = await self.cache.get(prepared.cache_key)
            hit = data is not None
            if not hit:
                data = await self.cache.get_or_set(
                    prepared.cache_key, _produce, ttl=self.settings.REPORT_CACHE_TTL
                )
        finally:
            self.runs.release(prepared.handle)

        result = GenerationResult.model_validate(data)
        if not produced:
            source = "cache" if hit else "shared run"
            log_with_context(
                logger,
                logging.INFO,
                f"Served generation from {source}",
                run_id=prepared.run_id,
                report_id=result.report.id,
            )
            result.summary = result.summary.model_copy(
                update={"run_id": prepared.run_id, "cached": hit, "shared": not hit}
            )
        return result

    async def _collect(self, prepared: PreparedGeneration) -> GenerationResult:
        sections: list[Section] = []
        entities: list[ExtractedEntity] = []
        async for event in self.stream(prepared):
            if isinstance(event, SectionDetected):
                sections.append(event.section)
            elif isinstance(event, EntitiesDetected):
                entities.extend(event.entities)
            elif isinstance(event, Completed):
                return GenerationResult(
                    report=event.report, sections=sections, entities=entities, summary=event.summary
                )
            elif isinstance(event, Cancelled):
                raise RunCancelledError(event.reason)
            elif isinstance(event, Failed):
                raise EngineError(event.reason, code=event.code)
        raise EngineError("Generation ended without a terminal event")

    # =========================================================================
    # Streaming run
    # =========================================================================

    async def _emit(self, event):
        await self.bus.publish(event.report_id, event)
        return event

    async def _persist(self, prepared: PreparedGeneration, draft: DraftSection) -> Section:
        section = new_section(
            prepared.report_id,
            draft.title,
            draft.content,
            draft.type,
            instruction=prepared.request.prompt,
            model=prepared.model,
        )
        stored = await self.store.append_section(section)
        log_with_context(
            logger,
            logging.DEBUG,
            "Section committed",
            run_id=prepared.run_id,
            report_id=prepared.report_id,
            section_id=stored.id,
            order=stored.order,
        )
        return stored

    async def _mark_report(self, report_id: str, status: str, raw_content: str) -> None:
        """Best-effort status update for a run that did not complete."""
        try:
            await self.store.update_report(report_id, status=status, raw_content=raw_content)
        except EngineError as e:
            logger.warning(f"Could not mark report {report_id} as {status}: {e}")
        await self._invalidate_exports(report_id)

    async def _invalidate_exports(self, report_id: str) -> None:
        await self.cache.delete_pattern(export_cache_pattern(report_id))

    async def stream(self, prepared: PreparedGeneration) -> AsyncIterator:
        """
        Drive a prepared generation, yielding events as they happen.

        Always ends with exactly one Completed, Failed or Cancelled event
        and always releases the run slot.
        """
        handle = prepared.handle
        request = prepared.request
        run_id, report_id = prepared.run_id, prepared.report_id
        started_at = time.monotonic()
        raw_parts: list[str] = []
        sections: list[Section] = []
        entities: list[ExtractedEntity] = []
        usage = UsageTally(prepared.model)

        log_with_context(
            logger,
            logging.INFO,
            "Generation started",
            run_id=run_id,
            report_id=report_id,
            model=prepared.model,
        )

        try:
            if request.report_id:
                report = await self.store.update_report(
                    report_id, status="generating", prompt=request.prompt, model=prepared.model
                )
            else:
                report = await self.store.create_report(
                    Report(
                        id=report_id,
                        thread_id=request.thread_id,
                        prompt=request.prompt,
                        model=prepared.model,
                        status="generating",
                    )
                )
            yield await self._emit(Started(run_id=run_id, report_id=report_id, mode="generate"))

            profile = select_profile(request.prompt)
            provider = self.providers.for_model(prepared.model)
            assembler = SectionAssembler(threshold=self.settings.SECTION_BUFFER_THRESHOLD)
            fragments = provider.stream(
                model=prepared.model,
                system=profile.system_prompt,
                prompt=enhance_prompt(request.prompt, request.options),
                max_tokens=prepared.max_tokens,
                temperature=prepared.temperature,
            )

            async for chunk in guarded(handle, fragments):
                usage.add(chunk.input_tokens, chunk.output_tokens)
                if not chunk.text:
                    continue
                raw_parts.append(chunk.text)
                yield await self._emit(
                    ContentDelta(run_id=run_id, report_id=report_id, text=chunk.text)
                )
                for draft in assembler.feed(chunk.text):
                    section = await self._persist(prepared, draft)
                    sections.append(section)
                    yield await self._emit(
                        SectionDetected(run_id=run_id, report_id=report_id, section=section)
                    )

            handle.check()
            for draft in assembler.flush():
                section = await self._persist(prepared, draft)
                sections.append(section)
                yield await self._emit(
                    SectionDetected(run_id=run_id, report_id=report_id, section=section)
                )

            raw_content = "".join(raw_parts)
            if request.options.extract_entities:
                entities = await handle.race(self.extractor.extract(raw_content, run_id=run_id))
                if entities:
                    await self.extractor.record(report_id, entities)
                    yield await self._emit(
                        EntitiesDetected(run_id=run_id, report_id=report_id, entities=entities)
                    )

            usage.finalize(request.prompt, raw_content)
            report = await self.store.update_report(
                report_id,
                raw_content=raw_content,
                status="completed",
                is_interactive=bool(sections),
                title=report.title or (sections[0].title if sections else None),
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                total_tokens=usage.total_tokens,
                estimated_cost_usd=usage.cost_usd,
            )
            await self._invalidate_exports(report_id)
            summary = RunSummary(
                run_id=run_id,
                report_id=report_id,
                section_count=len(sections),
                entity_count=len(entities),
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                estimated_cost_usd=usage.cost_usd,
                duration_ms=int((time.monotonic() - started_at) * 1000),
            )
            if prepared.cache_key:
                result = GenerationResult(
                    report=report, sections=sections, entities=entities, summary=summary
                )
                await self.cache.set(
                    prepared.cache_key, result.to_wire(), ttl=self.settings.REPORT_CACHE_TTL
                )

            log_with_context(
                logger,
                logging.INFO,
                "Generation completed",
                run_id=run_id,
                report_id=report_id,
                sections=len(sections),
                entities=len(entities),
                duration_ms=summary.duration_ms,
            )
            yield await self._emit(
                Completed(run_id=run_id, report_id=report_id, summary=summary, report=report)
            )

        except RunInterrupted as e:
            log_with_context(
                logger,
                logging.INFO,
                f"Generation cancelled: {e.reason}",
                run_id=run_id,
                report_id=report_id,
                sections=len(sections),
            )
            await self._mark_report(report_id, "cancelled", "".join(raw_parts))
            yield await self._emit(Cancelled(run_id=run_id, report_id=report_id, reason=e.reason))

        except asyncio.CancelledError:
            await self._mark_report(report_id, "cancelled", "".join(raw_parts))
            await self.bus.publish(
                report_id,
                Cancelled(run_id=run_id, report_id=report_id, reason="Server shutting down"),
            )
            raise

        except EngineError as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Generation failed: {e}",
                run_id=run_id,
                report_id=report_id,
                code=e.code,
            )
            await self._mark_report(report_id, "failed", "".join(raw_parts))
            yield await self._emit(
                Failed(run_id=run_id, report_id=report_id, reason=str(e), code=e.code)
            )

        except Exception as e:
            logger.error(f"Unexpected error in generation run {run_id}: {e}", exc_info=True)
            await self._mark_report(report_id, "failed", "".join(raw_parts))
            yield await self._emit(
                Failed(run_id=run_id, report_id=report_id, reason="Report generation failed")
            )

        finally:
            self.runs.release(handle)

    # =========================================================================
    # Backfill
    # =========================================================================

    async def convert_to_interactive(self, report_id: str) -> tuple[Report, list[Section]]:
        """
        Slice a static report's raw text into sections.

        Sections left by an interrupted run are kept; only the text after
        them is sliced. No-op for a report that is already interactive.

        Raises:
            NotFoundError: If the report does not exist
            ConflictError: If a run owns the report, or existing sections do
                not match the report's text
            ValidationError: If the report has no content
        """
        report = await self.store.get_report(report_id)
        if report.is_interactive:
            return report, await self.store.list_sections(report_id)

        handle = self.runs.acquire(report_id, "convert", exclusive=True)
        run_id = handle.run_id
        try:
            existing = await self.store.list_sections(report_id)
            prefix = "".join(section.content for section in existing)
            raw = report.raw_content
            offset = raw.find(prefix) if prefix else 0
            if offset < 0 or raw[:offset].strip():
                raise ConflictError(
                    f"Report {report_id} has sections that do not match its content"
                )
            remainder = raw[offset + len(prefix):]
            if not existing and not remainder.strip():
                raise ValidationError(f"Report {report_id} has no content to convert")

            await self._emit(Started(run_id=run_id, report_id=report_id, mode="convert"))
            sections = list(existing)
            drafts = split_sections(remainder) if remainder.strip() else []
            for draft in drafts:
                section = new_section(
                    report_id,
                    draft.title,
                    draft.content,
                    draft.type,
                    instruction="Converted from static report",
                    model=report.model,
                )
                stored = await self.store.append_section(section)
                sections.append(stored)
                await self._emit(SectionDetected(run_id=run_id, report_id=report_id, section=stored))

            report = await self.store.update_report(report_id, is_interactive=True)
            await self._invalidate_exports(report_id)
            await self._emit(
                Completed(
                    run_id=run_id,
                    report_id=report_id,
                    summary=RunSummary(
                        run_id=run_id, report_id=report_id, section_count=len(sections)
                    ),
                    report=report,
                )
            )
            log_with_context(
                logger,
                logging.INFO,
                "Report converted to interactive",
                run_id=run_id,
                report_id=report_id,
                sections=len(sections),
            )
            return report, sections
        finally:
            self.runs.release(handle)

