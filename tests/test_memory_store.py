"""Tests for the in-memory content store."""

import pytest

from app.core.errors import NotFoundError, ValidationError
from app.core.schemas_reports import EditHistoryEntry, ExtractedEntity, Report, utcnow
from app.db.content_store import StaleVersionError, new_section
from app.db.memory_store import InMemoryContentStore


@pytest.fixture
def store():
    return InMemoryContentStore()


async def _report_with(store, count: int):
    report = await store.create_report(Report())
    sections = []
    for i in range(count):
        section = new_section(report.id, f"S{i}", f"## S{i}\nbody {i}\n", "text")
        sections.append(await store.append_section(section))
    return report, sections


@pytest.mark.asyncio
async def test_append_allocates_next_order(store):
    report, sections = await _report_with(store, 3)

    assert [s.order for s in sections] == [0, 1, 2]
    stored = await store.get_report(report.id)
    assert stored.section_ids == [s.id for s in sections]
    assert stored.is_interactive is False


@pytest.mark.asyncio
async def test_new_section_seeds_first_history_entry():
    section = new_section("r1", "Title", "content", "text", instruction="prompt", model="m")

    assert section.version == 1
    assert len(section.edit_history) == 1
    assert section.edit_history[0].instruction == "prompt"
    assert section.metadata.model == "m"


@pytest.mark.asyncio
async def test_insert_shifts_later_sections(store):
    report, sections = await _report_with(store, 3)

    inserted = await store.insert_section_at(new_section(report.id, "New", "x", "custom"), 1)

    listed = await store.list_sections(report.id)
    assert [s.id for s in listed] == [sections[0].id, inserted.id, sections[1].id, sections[2].id]
    assert [s.order for s in listed] == [0, 1, 2, 3]
    assert (await store.get_report(report.id)).is_interactive is True


@pytest.mark.asyncio
async def test_insert_past_end_appends_without_order_gaps(store):
    report, _ = await _report_with(store, 2)

    inserted = await store.insert_section_at(new_section(report.id, "New", "x", "custom"), 10)

    listed = await store.list_sections(report.id)
    assert listed[-1].id == inserted.id
    assert [s.order for s in listed] == [0, 1, 2]


@pytest.mark.asyncio
async def test_commit_appends_history(store):
    _, (section,) = await _report_with(store, 1)
    entry = EditHistoryEntry(version=2, content="new", edited_by="user", edited_at=utcnow())

    committed = await store.commit_section_version(
        section.id, 1, "new", entry, modified_by="user"
    )

    assert committed.version == 2
    assert committed.content == "new"
    assert [e.version for e in committed.edit_history] == [1, 2]
    assert committed.metadata.last_modified_by == "user"


@pytest.mark.asyncio
async def test_commit_rejects_stale_version(store):
    _, (section,) = await _report_with(store, 1)
    entry = EditHistoryEntry(version=2, content="new", edited_at=utcnow())
    await store.commit_section_version(section.id, 1, "new", entry, modified_by="ai")

    with pytest.raises(StaleVersionError) as exc_info:
        await store.commit_section_version(section.id, 1, "other", entry, modified_by="ai")

    assert exc_info.value.current_version == 2
    assert (await store.get_section(section.id)).content == "new"


@pytest.mark.asyncio
async def test_returned_objects_are_copies(store):
    _, (section,) = await _report_with(store, 1)

    section.edit_history.clear()

    assert len((await store.get_section(section.id)).edit_history) == 1


@pytest.mark.asyncio
async def test_move_swaps_neighbours_and_rejects_edges(store):
    report, sections = await _report_with(store, 2)

    moved = await store.move_section(sections[0].id, "down")

    assert [s.id for s in moved] == [sections[1].id, sections[0].id]
    assert [s.order for s in moved] == [0, 1]
    assert (await store.get_report(report.id)).section_ids == [s.id for s in moved]
    with pytest.raises(ValidationError):
        await store.move_section(sections[0].id, "down")


@pytest.mark.asyncio
async def test_delete_renumbers_and_clears_interactive_when_empty(store):
    report, sections = await _report_with(store, 2)
    await store.update_report(report.id, is_interactive=True)

    await store.delete_section(sections[0].id)
    remaining = await store.list_sections(report.id)
    assert [(s.id, s.order) for s in remaining] == [(sections[1].id, 0)]

    await store.delete_section(sections[1].id)
    stored = await store.get_report(report.id)
    assert stored.section_ids == []
    assert stored.is_interactive is False


@pytest.mark.asyncio
async def test_unknown_ids_raise_not_found(store):
    with pytest.raises(NotFoundError):
        await store.get_report("missing")
    with pytest.raises(NotFoundError):
        await store.list_sections("missing")
    with pytest.raises(NotFoundError):
        await store.delete_section("missing")


@pytest.mark.asyncio
async def test_entity_sightings_upsert(store):
    first = await store.create_report(Report())
    second = await store.create_report(Report())
    apple = ExtractedEntity(name="Apple", confidence=0.9, sentiment=0.5, context="iPhone sales")

    entity, mention = await store.record_entity_sighting(first.id, apple, "apple")
    assert entity.mention_count == 1
    assert mention.relevance == 0.9

    again, updated = await store.record_entity_sighting(
        first.id, apple.model_copy(update={"sentiment": -0.2}), "apple"
    )
    assert again.id == entity.id
    assert again.mention_count == 2
    assert updated.id == mention.id
    assert updated.sentiment == -0.2

    await store.record_entity_sighting(second.id, apple, "apple")
    assert len(await store.list_report_entities(first.id)) == 1
    assert len(await store.list_report_entities(second.id)) == 1
    assert store.entities["apple"].mention_count == 3
