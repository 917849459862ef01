"""System prompt profiles and prompt builders for generation and editing."""

import re
from dataclasses import dataclass
from datetime import UTC, datetime

from app.core.schemas_reports import GenerationOptions, Report, Section
from app.core.section_parser import strip_markup

_SECTION_FORMAT_RULES = """
Structure the report into clearly separated sections. Start every section with a
level-2 heading (an HTML <h2> tag or a Markdown "## " line) and use level-3 headings
only for sub-sections."""


@dataclass(frozen=True)
class PromptProfile:
    name: str
    system_prompt: str


FINANCIAL_ANALYSIS = PromptProfile(
    name="financial_analysis",
    system_prompt=(
        """You are a world-class financial analyst with expertise in market analysis, fundamental analysis, and technical analysis.
You provide comprehensive, data-driven insights that rival institutional research reports.
Your analysis should be:
- Data-driven with specific metrics and numbers
- Professional and institutional-grade
- Actionable with clear recommendations
- Comprehensive covering multiple aspects
- Visually structured with clear sections

Include tables, lists, and structured data where appropriate.
Always identify and highlight key entities (companies, stocks, people, etc.) for extraction."""
        + _SECTION_FORMAT_RULES
    ),
)

MARKET_RESEARCH = PromptProfile(
    name="market_research",
    system_prompt=(
        """You are a senior market research analyst specializing in comprehensive industry analysis and competitive intelligence.
Your reports should include:
- Market size and growth projections
- Competitive landscape analysis
- Key players and market share
- Trends and opportunities
- Risk factors and challenges
- Investment recommendations

Use professional formatting with clear sections, data tables, and actionable insights."""
        + _SECTION_FORMAT_RULES
    ),
)

TECHNICAL_ANALYSIS = PromptProfile(
    name="technical_analysis",
    system_prompt=(
        """You are an expert technical analyst with deep knowledge of chart patterns, indicators, and market psychology.
Your analysis should include:
- Price action analysis
- Support and resistance levels
- Technical indicators (RSI, MACD, Moving Averages)
- Chart patterns identification
- Volume analysis
- Entry and exit recommendations

Present data in a clear, structured format with specific price levels and timeframes."""
        + _SECTION_FORMAT_RULES
    ),
)

# Checked in order; the first rule with a matching keyword wins.
PROFILE_RULES: list[tuple[tuple[str, ...], PromptProfile]] = [
    (("technical", "chart", "indicator"), TECHNICAL_ANALYSIS),
    (("market", "industry", "competitive"), MARKET_RESEARCH),
]

SECTION_EDITOR_SYSTEM_PROMPT = (
    "You rewrite individual sections of financial reports. "
    "Return only the section content, with no explanations and no code fences."
)


def select_profile(prompt: str) -> PromptProfile:
    """Pick a system prompt profile from lexical signals. Always returns a profile."""
    lowered = prompt.lower()
    for keywords, profile in PROFILE_RULES:
        if any(keyword in lowered for keyword in keywords):
            return profile
    return FINANCIAL_ANALYSIS


def enhance_prompt(prompt: str, options: GenerationOptions, today: datetime | None = None) -> str:
    """Append date and option-driven requirements to the user's prompt."""
    today = today or datetime.now(UTC)
    requirements = [f"Current date: {today.date().isoformat()}"]

    if options.include_market_data:
        requirements.append("Include relevant real-time market data and prices where applicable.")
    if options.generate_charts:
        requirements.append("Suggest appropriate charts and visualizations with specific data points.")
    if options.extract_entities:
        requirements.append(
            "Clearly identify all companies, stocks, people, and other entities mentioned."
        )
    if options.language and options.language != "en":
        requirements.append(f"Generate the report in {options.language}.")

    return f"{prompt}\n\nAdditional requirements:\n" + "\n".join(requirements)


def build_edit_prompt(section: Section, instruction: str) -> str:
    return f"""You are editing a section of a financial report.

Current Section:
Title: {section.title}
Current Content:
{section.content}

User's Edit Request: {instruction}

Generate the UPDATED content for this section based on the user's request.
Keep the section's opening heading and overall structure unless the request changes them.
Return only the section content, no explanations."""


_DATA_POINT_RE = re.compile(r"[\$£€¥]?\d+(?:,\d{3})*(?:\.\d+)?%?")
PREVIEW_CHARS = 300


def _sections_context(sections: list[Section]) -> str:
    if not sections:
        return "This is the first section of the report."

    previews = []
    for idx, section in enumerate(sections, start=1):
        text = strip_markup(section.content)
        preview = text[:PREVIEW_CHARS] + ("..." if len(text) > PREVIEW_CHARS else "")
        previews.append(f"{idx}. {section.title} ({section.type})\n   Content Preview: {preview}")
    context = "Existing Report Sections:\n" + "\n\n".join(previews)

    data_points = []
    for section in sections:
        numbers = _DATA_POINT_RE.findall(strip_markup(section.content))
        if numbers:
            data_points.append(f"- {section.title}: {', '.join(numbers[:5])}")
    if data_points:
        context += "\n\nKey Data Points from Existing Sections:\n" + "\n".join(data_points)

    return context


def build_add_section_prompt(
    report: Report,
    sections: list[Section],
    instruction: str,
    section_type: str | None = None,
) -> str:
    """Prompt for a brand-new section that fits the existing report."""
    report_title = report.title or report.prompt or "Financial Report"
    type_hint = f"\nRequested section type: {section_type}" if section_type else ""

    return f"""You are generating a new section for a financial report. Your goal is to create content that is coherent with the existing report, matches its style and tone, and adds meaningful value.

REPORT CONTEXT:
=================
Report Title: {report_title}
Created: {report.created_at.date().isoformat()}

{_sections_context(sections)}

STYLE GUIDELINES:
=================
- Match the tone and complexity of existing sections
- Use consistent terminology with previous sections
- Reference data points from existing sections when relevant
- Maintain professional financial reporting standards

USER'S NEW SECTION REQUEST:
===========================
{instruction}{type_hint}

INSTRUCTIONS:
=============
1. Create a new section that fits naturally with the existing content
2. Start with a level-2 heading for the section title, use level-3 headings for sub-sections
3. Include tables or chart suggestions if appropriate
4. Return ONLY the section content, no explanations or code fences

Generate the new section now:"""
