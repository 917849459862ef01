"""Tests for the streaming generation engine.

Covers:
- section detection and progressive persistence
- entity extraction (success, unusable output, provider failure)
- validation and run exclusion before any event
- provider/store failures and cancellation leaving partial state
- cached blocking generation
"""

import asyncio
import json

import pytest

from app.core.cache import export_cache_key
from app.core.errors import ConflictError, ProviderError, StoreError, ValidationError
from app.core.events import (
    Cancelled,
    Completed,
    ContentDelta,
    EntitiesDetected,
    Failed,
    SectionDetected,
    Started,
)
from app.core.schemas_reports import GenerationOptions, GenerationRequest, Report
from app.db.content_store import new_section
from app.db.memory_store import InMemoryContentStore
from tests.conftest import make_context
from tests.fakes.scripted_provider import ScriptedProvider

PROMPT = "Summarize Q3 results"


def _request(**overrides) -> GenerationRequest:
    options = overrides.pop("options", GenerationOptions(extract_entities=False))
    return GenerationRequest(prompt=overrides.pop("prompt", PROMPT), options=options, **overrides)


async def _collect(events) -> list:
    return [event async for event in events]


class _FailingAppendStore(InMemoryContentStore):
    """Store whose section writes fail after the first one."""

    def __init__(self, succeed: int = 1):
        super().__init__()
        self._succeed = succeed

    async def append_section(self, section):
        if self._succeed <= 0:
            raise StoreError("database unavailable")
        self._succeed -= 1
        return await super().append_section(section)


# ──────────────────────────────────────────────────────────────────────
# Happy path
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_two_headings_yield_two_sections(ctx):
    events = await _collect(ctx.engine.generate(_request()))

    assert isinstance(events[0], Started)
    assert isinstance(events[-1], Completed)
    assert sum(isinstance(e, (Completed, Failed, Cancelled)) for e in events) == 1

    report_id = events[0].report_id
    sections = await ctx.store.list_sections(report_id)
    assert [s.order for s in sections] == [0, 1]
    assert [s.version for s in sections] == [1, 1]
    assert [s.title for s in sections] == ["Revenue", "Outlook"]
    for section in sections:
        assert len(section.edit_history) == section.version
        assert section.edit_history[0].version == 1

    report = await ctx.store.get_report(report_id)
    assert report.status == "completed"
    assert report.is_interactive is True
    assert report.section_ids == [s.id for s in sections]
    assert report.raw_content == "".join(s.content for s in sections)
    assert report.title == "Revenue"


@pytest.mark.asyncio
async def test_deltas_cover_full_output_in_order(ctx, provider):
    events = await _collect(ctx.engine.generate(_request()))

    deltas = [e.text for e in events if isinstance(e, ContentDelta)]
    assert deltas == provider.chunks


@pytest.mark.asyncio
async def test_sections_are_stored_before_they_are_announced(ctx):
    prepared = await ctx.engine.prepare(_request())

    async for event in ctx.engine.run(prepared):
        if isinstance(event, SectionDetected):
            stored = await ctx.store.get_section(event.section.id)
            assert stored.content == event.section.content


@pytest.mark.asyncio
async def test_section_types_are_sniffed(ctx):
    events = await _collect(ctx.engine.generate(_request()))

    detected = [e.section for e in events if isinstance(e, SectionDetected)]
    assert [s.type for s in detected] == ["metric", "text"]


@pytest.mark.asyncio
async def test_usage_and_cost_recorded_on_report(ctx):
    events = await _collect(ctx.engine.generate(_request()))

    completed = events[-1]
    assert completed.summary.input_tokens == 120
    assert completed.summary.output_tokens == 80
    assert completed.summary.section_count == 2
    assert completed.report.total_tokens == 200
    assert completed.report.estimated_cost_usd > 0


@pytest.mark.asyncio
async def test_profile_selected_from_prompt(ctx, provider):
    await _collect(ctx.engine.generate(_request(prompt="Technical chart review of AAPL")))

    assert "technical analyst" in provider.stream_calls[0]["system"]


@pytest.mark.asyncio
async def test_every_event_is_broadcast(ctx):
    prepared = await ctx.engine.prepare(_request())
    received = []
    async with ctx.bus.subscribe(prepared.report_id) as subscription:
        yielded = await _collect(ctx.engine.run(prepared))
        for _ in yielded:
            received.append(await asyncio.wait_for(anext(subscription), 1))

    assert [type(e) for e in received] == [type(e) for e in yielded]


# ──────────────────────────────────────────────────────────────────────
# Entities
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_entities_extracted_and_recorded(settings):
    completion = json.dumps(
        [
            {"name": "Apple Inc.", "type": "COMPANY", "confidence": 0.95, "sentiment": 0.4},
            {"name": "apple inc", "type": "STOCK"},
            {"name": "Tim Cook", "type": "PERSON", "confidence": 3, "sentiment": -7},
        ]
    )
    provider = ScriptedProvider(completion=completion)
    ctx = make_context(settings, provider)

    events = await _collect(ctx.engine.generate(_request(options=GenerationOptions())))

    detected = [e for e in events if isinstance(e, EntitiesDetected)]
    assert len(detected) == 1
    names = [entity.name for entity in detected[0].entities]
    assert names == ["Apple Inc.", "Tim Cook"]
    tim = detected[0].entities[1]
    assert tim.confidence == 1.0
    assert tim.sentiment == -1.0

    report_id = events[0].report_id
    recorded = await ctx.store.list_report_entities(report_id)
    assert {entity.slug for entity, _ in recorded} == {"apple-inc", "tim-cook"}
    assert events[-1].summary.entity_count == 2


@pytest.mark.asyncio
async def test_unparseable_entity_output_degrades_to_zero(settings):
    provider = ScriptedProvider(completion="Sorry, I cannot help with that.")
    ctx = make_context(settings, provider)

    events = await _collect(ctx.engine.generate(_request(options=GenerationOptions())))

    assert isinstance(events[-1], Completed)
    assert not any(isinstance(e, EntitiesDetected) for e in events)
    assert events[-1].summary.entity_count == 0


@pytest.mark.asyncio
async def test_entity_provider_failure_degrades_to_zero(settings):
    provider = ScriptedProvider(completion=ProviderError("overloaded"))
    ctx = make_context(settings, provider)

    events = await _collect(ctx.engine.generate(_request(options=GenerationOptions())))

    assert isinstance(events[-1], Completed)
    assert events[-1].summary.entity_count == 0


# ──────────────────────────────────────────────────────────────────────
# Validation and exclusion
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"prompt": "too short"},
        {"prompt": "x" * 5001},
        {"model": "not-a-model"},
        {"max_tokens": 50},
        {"temperature": 1.5},
    ],
)
async def test_invalid_requests_fail_before_any_event(ctx, provider, overrides):
    with pytest.raises(ValidationError):
        await ctx.engine.prepare(_request(**overrides))

    assert provider.stream_calls == []
    assert ctx.store.reports == {}
    assert ctx.runs.active() == []


@pytest.mark.asyncio
async def test_second_generation_for_same_report_is_rejected(ctx):
    report = await ctx.store.create_report(Report())
    first = await ctx.engine.prepare(_request(report_id=report.id))

    with pytest.raises(ConflictError):
        await ctx.engine.prepare(_request(report_id=report.id))

    await _collect(ctx.engine.run(first))
    assert not ctx.runs.is_busy(report.id)


@pytest.mark.asyncio
async def test_generate_into_report_with_content_conflicts(ctx):
    events = await _collect(ctx.engine.generate(_request()))

    with pytest.raises(ConflictError):
        await ctx.engine.prepare(_request(report_id=events[0].report_id))


@pytest.mark.asyncio
async def test_generate_into_existing_report_keeps_its_id(ctx):
    report = await ctx.store.create_report(Report(title="Quarterly"))

    events = await _collect(ctx.engine.generate(_request(report_id=report.id)))

    assert events[0].report_id == report.id
    stored = await ctx.store.get_report(report.id)
    assert stored.status == "completed"
    assert stored.title == "Quarterly"
    assert len(stored.section_ids) == 2


# ──────────────────────────────────────────────────────────────────────
# Failures and cancellation
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_provider_failure_keeps_committed_sections(settings):
    provider = ScriptedProvider(fail_after=3)
    ctx = make_context(settings, provider)

    events = await _collect(ctx.engine.generate(_request()))

    terminal = events[-1]
    assert isinstance(terminal, Failed)
    assert terminal.code == "provider_error"

    report_id = events[0].report_id
    sections = await ctx.store.list_sections(report_id)
    assert [s.title for s in sections] == ["Revenue"]
    report = await ctx.store.get_report(report_id)
    assert report.status == "failed"
    assert not ctx.runs.is_busy(report_id)


@pytest.mark.asyncio
async def test_failed_run_clears_export_cache(settings):
    ctx = make_context(settings, ScriptedProvider(fail_after=3))
    report = await ctx.store.create_report(Report(title="Q3"))
    stale_key = export_cache_key(report.id, "markdown")
    await ctx.cache.set(stale_key, {"content": "# Q3\n"})

    events = await _collect(ctx.engine.generate(_request(report_id=report.id)))

    assert isinstance(events[-1], Failed)
    assert await ctx.cache.get(stale_key) is None


@pytest.mark.asyncio
async def test_store_failure_is_never_announced(settings, provider):
    ctx = make_context(settings, provider, store=_FailingAppendStore(succeed=1))

    events = await _collect(ctx.engine.generate(_request()))

    detected = [e.section.title for e in events if isinstance(e, SectionDetected)]
    assert detected == ["Revenue"]
    assert isinstance(events[-1], Failed)
    assert events[-1].code == "store_error"


@pytest.mark.asyncio
async def test_cancel_after_first_section_leaves_exactly_one(settings):
    provider = ScriptedProvider(hold_after=3)
    ctx = make_context(settings, provider)
    prepared = await ctx.engine.prepare(_request())

    consumer = asyncio.create_task(_collect(ctx.engine.run(prepared)))
    await asyncio.wait_for(provider.held.wait(), 1)
    assert ctx.runs.cancel(prepared.report_id) == 1
    events = await asyncio.wait_for(consumer, 1)

    terminal = events[-1]
    assert isinstance(terminal, Cancelled)
    assert not any(isinstance(e, (Completed, Failed)) for e in events)

    sections = await ctx.store.list_sections(prepared.report_id)
    assert len(sections) == 1
    assert sections[0].version == len(sections[0].edit_history) == 1
    report = await ctx.store.get_report(prepared.report_id)
    assert report.status == "cancelled"
    assert not ctx.runs.is_busy(prepared.report_id)


@pytest.mark.asyncio
async def test_run_deadline_cancels(settings):
    settings = settings.model_copy(update={"GENERATION_TIMEOUT_SECONDS": 0.05})
    provider = ScriptedProvider(hold_after=1)
    ctx = make_context(settings, provider)

    events = await asyncio.wait_for(_collect(ctx.engine.generate(_request())), 2)

    assert isinstance(events[-1], Cancelled)
    assert "timed out" in events[-1].reason


# ──────────────────────────────────────────────────────────────────────
# Blocking generation and cache
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_blocking_generation_is_served_from_cache(ctx, provider):
    request = _request(options=GenerationOptions(stream=False, extract_entities=False))

    first = await ctx.engine.generate_blocking(request)
    respaced = request.model_copy(update={"prompt": "  summarize   q3 RESULTS "})
    second = await ctx.engine.generate_blocking(respaced)

    assert len(provider.stream_calls) == 1
    assert first.summary.cached is False
    assert second.summary.cached is True
    assert second.summary.shared is False
    assert second.report.id == first.report.id
    assert [s.id for s in second.sections] == [s.id for s in first.sections]


@pytest.mark.asyncio
async def test_concurrent_blocking_requests_share_one_run(ctx, provider):
    request = _request(options=GenerationOptions(stream=False, extract_entities=False))

    results = await asyncio.gather(
        *(ctx.engine.generate_blocking(request) for _ in range(3))
    )

    assert len(provider.stream_calls) == 1
    assert len({result.report.id for result in results}) == 1
    # Joiners shared the first request's run; nothing came from a stored result
    assert [r.summary.cached for r in results] == [False, False, False]
    assert [r.summary.shared for r in results] == [False, True, True]


@pytest.mark.asyncio
async def test_different_models_do_not_share_cache(ctx, provider):
    options = GenerationOptions(stream=False, extract_entities=False)

    await ctx.engine.generate_blocking(_request(options=options))
    await ctx.engine.generate_blocking(_request(options=options, model="gpt-4o"))

    assert len(provider.stream_calls) == 2


@pytest.mark.asyncio
async def test_non_stream_run_yields_single_terminal_event(ctx):
    prepared = await ctx.engine.prepare(
        _request(options=GenerationOptions(stream=False, extract_entities=False))
    )

    events = await _collect(ctx.engine.run(prepared))

    assert len(events) == 1
    assert isinstance(events[0], Completed)
    assert events[0].report.status == "completed"


# ──────────────────────────────────────────────────────────────────────
# Convert to interactive
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_convert_static_report(ctx):
    raw = "Intro paragraph.\n## Summary\nRevenue was $4,000.\n## Risks\nSupply chain.\n"
    report = await ctx.store.create_report(Report(raw_content=raw, status="completed"))

    report, sections = await ctx.engine.convert_to_interactive(report.id)

    assert report.is_interactive is True
    assert [s.title for s in sections] == ["Overview", "Summary", "Risks"]
    assert [s.order for s in sections] == [0, 1, 2]
    assert "".join(s.content for s in sections) == raw


@pytest.mark.asyncio
async def test_convert_keeps_sections_from_interrupted_run(ctx):
    raw = "## Revenue\nUp 12%.\n## Outlook\nSteady.\n"
    report = await ctx.store.create_report(Report(raw_content=raw, status="cancelled"))
    existing = new_section(report.id, "Revenue", "## Revenue\nUp 12%.\n", "metric")
    await ctx.store.append_section(existing)

    _, sections = await ctx.engine.convert_to_interactive(report.id)

    assert [s.title for s in sections] == ["Revenue", "Outlook"]
    assert "".join(s.content for s in sections) == raw


@pytest.mark.asyncio
async def test_convert_without_headings_makes_full_report_section(ctx):
    report = await ctx.store.create_report(Report(raw_content="Plain text only."))

    _, sections = await ctx.engine.convert_to_interactive(report.id)

    assert len(sections) == 1
    assert sections[0].title == "Full Report"
    assert sections[0].type == "custom"


@pytest.mark.asyncio
async def test_convert_empty_report_is_rejected(ctx):
    report = await ctx.store.create_report(Report())

    with pytest.raises(ValidationError):
        await ctx.engine.convert_to_interactive(report.id)
