"""Markdown export of a report, served through the export cache."""

from app.core.cache import Cache, export_cache_key
from app.core.errors import ValidationError
from app.core.schemas_reports import Report, Section
from app.db.content_store import ContentStore

# Formats rendered in-process; pdf/html/docx are produced by an external renderer
SUPPORTED_FORMATS = ("markdown",)


def render_markdown(report: Report, sections: list[Section]) -> str:
    """Sections in order when the report is interactive, raw text otherwise."""
    if report.is_interactive and sections:
        body = "\n\n".join(section.content.strip() for section in sections)
    else:
        body = report.raw_content.strip()

    if report.title and not body.lstrip().startswith("# "):
        return f"# {report.title}\n\n{body}\n"
    return f"{body}\n"


async def export_report(
    store: ContentStore, cache: Cache, report_id: str, export_format: str, ttl: int
) -> dict:
    """
    Return an export payload, rendering it once per cache lifetime.

    Raises:
        ValidationError: If the format is not rendered here
        NotFoundError: If the report does not exist
    """
    if export_format not in SUPPORTED_FORMATS:
        raise ValidationError(f"Unsupported export format '{export_format}'")

    report = await store.get_report(report_id)

    async def _render() -> dict:
        sections = await store.list_sections(report_id)
        return {
            "reportId": report_id,
            "format": export_format,
            "content": render_markdown(report, sections),
        }

    return await cache.get_or_set(export_cache_key(report_id, export_format), _render, ttl=ttl)
