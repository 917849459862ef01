"""Incremental section slicing for streamed report text.

Sections are delimited by heading markers: Markdown ``#`` to ``###`` at
the start of a line, or HTML ``<h1>`` to ``<h3>`` tags. A section runs
from its heading to the next heading, so it is only final once the next
heading has been seen (or the stream has ended). Content keeps its
heading, which means concatenating section contents in order gives back
the document.

Known limitation: heading markers inside code fences or nested markup
are treated as real headings.
"""

import re
from dataclasses import dataclass

HEADING_RE = re.compile(
    r"(?:^#{1,3}[ \t]+(?=\S)|<h[1-3](?=[\s>]))",
    re.IGNORECASE | re.MULTILINE,
)

_HTML_HEADING_RE = re.compile(r"<h([1-3])[^>]*>(.*?)</h\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_MD_TABLE_RE = re.compile(r"^\s*\|.*\|\s*$\n^\s*\|?\s*:?-{3,}", re.MULTILINE)
_METRIC_RE = re.compile(r"\d+(?:\.\d+)?\s?%|\$\s?[\d,]+")

PREAMBLE_TITLE = "Overview"
FALLBACK_TITLE = "Full Report"
MAX_TITLE_CHARS = 120


@dataclass
class DraftSection:
    """A finalized slice of text that has not been persisted yet."""

    title: str
    content: str
    type: str


def strip_markup(text: str) -> str:
    """Drop HTML tags and collapse whitespace."""
    return re.sub(r"\s+", " ", _TAG_RE.sub(" ", text)).strip()


def heading_title(content: str) -> str | None:
    """Return the text of the heading that opens ``content``, if any."""
    stripped = content.lstrip()
    html = _HTML_HEADING_RE.match(stripped)
    if html:
        title = strip_markup(html.group(2))
        return title[:MAX_TITLE_CHARS] or None
    if stripped[:3].lower() in ("<h1", "<h2", "<h3"):
        # Unclosed heading tag
        title = strip_markup(stripped.split("\n", 1)[0])
        return title[:MAX_TITLE_CHARS] or None
    if stripped.startswith("#"):
        first_line = stripped.split("\n", 1)[0]
        title = strip_markup(first_line.lstrip("#")).strip("*_ ")
        return title[:MAX_TITLE_CHARS] or None
    return None


def first_heading_title(content: str) -> str | None:
    """Title of the first heading anywhere in ``content``."""
    match = HEADING_RE.search(content)
    if not match:
        return None
    return heading_title(content[match.start():])


def _body(content: str) -> str:
    """Section content with its opening heading removed."""
    stripped = content.lstrip()
    html = _HTML_HEADING_RE.match(stripped)
    if html:
        return stripped[html.end():]
    if stripped.startswith("#"):
        parts = stripped.split("\n", 1)
        return parts[1] if len(parts) > 1 else ""
    return content


def sniff_section_type(content: str) -> str:
    """
    Classify a section by lexical signals in its body.

    Priority: tabular markup, then chart/graph mentions, then a
    percentage or currency amount, then insight/recommendation wording.

    Args:
        content: Full section content (heading included)

    Returns:
        One of "table", "chart", "metric", "insight", "text"
    """
    body = _body(content)
    lowered = body.lower()
    if "<table" in lowered or _MD_TABLE_RE.search(body):
        return "table"
    if "chart" in lowered or "graph" in lowered:
        return "chart"
    if _METRIC_RE.search(body):
        return "metric"
    if "insight" in lowered or "recommendation" in lowered:
        return "insight"
    return "text"


def _draft(piece: str) -> DraftSection | None:
    if not piece.strip():
        return None
    title = heading_title(piece)
    if title is None:
        title = PREAMBLE_TITLE
    return DraftSection(title=title, content=piece, type=sniff_section_type(piece))


class SectionAssembler:
    """Turns a chunked text stream into finalized sections.

    ``feed`` returns sections whose closing heading has arrived, once the
    buffered text exceeds ``threshold`` characters. ``flush`` closes the
    open tail at end of stream.
    """

    def __init__(self, threshold: int = 500):
        self.threshold = threshold
        self._buffer = ""

    def feed(self, text: str) -> list[DraftSection]:
        self._buffer += text
        if len(self._buffer) <= self.threshold:
            return []
        return self._drain(final=False)

    def flush(self) -> list[DraftSection]:
        return self._drain(final=True)

    def _drain(self, final: bool) -> list[DraftSection]:
        starts = [m.start() for m in HEADING_RE.finditer(self._buffer)]
        bounds = sorted({0, *starts})

        if final:
            cuts = bounds + [len(self._buffer)]
        else:
            # The last boundary opens a section whose end is unknown
            cuts = bounds

        drafts = []
        for begin, end in zip(cuts, cuts[1:]):
            draft = _draft(self._buffer[begin:end])
            if draft:
                drafts.append(draft)

        self._buffer = "" if final else self._buffer[cuts[-1]:]
        return drafts


def split_sections(text: str) -> list[DraftSection]:
    """
    Slice a complete document into sections.

    A document without any heading becomes a single "custom" section
    titled "Full Report".
    """
    if not HEADING_RE.search(text):
        if not text.strip():
            return []
        return [DraftSection(title=FALLBACK_TITLE, content=text, type="custom")]

    assembler = SectionAssembler(threshold=0)
    drafts = assembler.feed(text)
    drafts.extend(assembler.flush())
    return drafts
