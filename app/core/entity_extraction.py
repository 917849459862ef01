"""Entity extraction from finished report text.

A fast secondary model returns a JSON array of entities. The response is
parsed defensively: a missing or malformed array yields no entities,
malformed items are skipped and scores are clamped into range. Extraction
never fails the run that asked for it.
"""

import logging
import re

from app.core.errors import ParseError, ProviderError
from app.core.llm import ProviderRouter, extract_json_array
from app.core.logging import get_logger, log_with_context
from app.core.schemas_reports import ENTITY_TYPES, ExtractedEntity
from app.db.content_store import ContentStore

logger = get_logger(__name__)

ENTITY_SYSTEM_PROMPT = f"""You are an entity extraction specialist. Extract all financial entities from the text and return them as a JSON array.
Each entity should have: name, type (one of {", ".join(sorted(ENTITY_TYPES))}), confidence (0-1), sentiment (-1 to 1), and brief context.
Return only the JSON array."""

ENTITY_TEMPERATURE = 0.3
MAX_NAME_CHARS = 200
MAX_CONTEXT_CHARS = 500


def slugify(name: str) -> str:
    """Canonical entity key: lowercase, runs of non-alphanumerics become '-'."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _clamp(value, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return min(max(number, low), high)


def parse_entities(raw_output: str) -> list[ExtractedEntity]:
    """
    Parse the extraction model's response.

    Args:
        raw_output: Raw model text, expected to contain a JSON array

    Returns:
        Valid entities, de-duplicated by slug (first occurrence wins)

    Raises:
        ParseError: If no JSON array can be read from the output
    """
    items = extract_json_array(raw_output)

    entities: list[ExtractedEntity] = []
    seen: set[str] = set()
    for item in items:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()[:MAX_NAME_CHARS]
        slug = slugify(name)
        if not slug or slug in seen:
            continue

        entity_type = str(item.get("type") or "COMPANY").upper()
        if entity_type not in ENTITY_TYPES:
            entity_type = "COMPANY"

        try:
            mentions = max(int(item.get("mentions") or 1), 1)
        except (TypeError, ValueError):
            mentions = 1

        seen.add(slug)
        entities.append(
            ExtractedEntity(
                name=name,
                type=entity_type,
                confidence=_clamp(item.get("confidence"), 0.0, 1.0, 0.8),
                sentiment=_clamp(item.get("sentiment"), -1.0, 1.0, 0.0),
                context=str(item.get("context") or "")[:MAX_CONTEXT_CHARS],
                mentions=mentions,
            )
        )
    return entities


class EntityExtractor:
    """Runs the extraction model and records sightings in the content store."""

    def __init__(
        self,
        providers: ProviderRouter,
        store: ContentStore,
        *,
        model: str,
        max_tokens: int = 2000,
        text_limit: int = 10_000,
    ):
        self.providers = providers
        self.store = store
        self.model = model
        self.max_tokens = max_tokens
        self.text_limit = text_limit

    async def extract(self, text: str, run_id: str | None = None) -> list[ExtractedEntity]:
        if not text.strip():
            return []

        try:
            completion = await self.providers.for_model(self.model).complete(
                model=self.model,
                system=ENTITY_SYSTEM_PROMPT,
                prompt=(
                    "Extract entities from this text and return as JSON array:\n\n"
                    f"{text[: self.text_limit]}"
                ),
                max_tokens=self.max_tokens,
                temperature=ENTITY_TEMPERATURE,
            )
        except ProviderError as e:
            log_with_context(
                logger, logging.WARNING, f"Entity extraction call failed: {e}", run_id=run_id
            )
            return []

        try:
            entities = parse_entities(completion.text)
        except ParseError as e:
            log_with_context(
                logger, logging.WARNING, f"Entity extraction output unusable: {e}", run_id=run_id
            )
            return []

        log_with_context(
            logger, logging.INFO, "Entities extracted", run_id=run_id, entity_count=len(entities)
        )
        return entities

    async def record(self, report_id: str, entities: list[ExtractedEntity]) -> None:
        """Upsert each entity and its mention for the report."""
        for entity in entities:
            await self.store.record_entity_sighting(report_id, entity, slugify(entity.name))
