"""Tests for prompt profile selection and prompt builders."""

from datetime import UTC, datetime

import pytest

from app.core.prompt_profiles import (
    FINANCIAL_ANALYSIS,
    MARKET_RESEARCH,
    TECHNICAL_ANALYSIS,
    build_add_section_prompt,
    build_edit_prompt,
    enhance_prompt,
    select_profile,
)
from app.core.schemas_reports import GenerationOptions, Report, Section


@pytest.mark.parametrize(
    "prompt, profile",
    [
        ("Technical outlook for NVDA", TECHNICAL_ANALYSIS),
        ("Read the RSI indicator on gold", TECHNICAL_ANALYSIS),
        ("Competitive landscape of cloud vendors", MARKET_RESEARCH),
        ("Chart the market share of EV makers", TECHNICAL_ANALYSIS),
        ("Summarize Apple's quarterly earnings", FINANCIAL_ANALYSIS),
    ],
)
def test_select_profile(prompt, profile):
    assert select_profile(prompt) is profile


def test_every_profile_asks_for_headed_sections():
    for profile in (FINANCIAL_ANALYSIS, MARKET_RESEARCH, TECHNICAL_ANALYSIS):
        assert "level-2 heading" in profile.system_prompt


def test_enhance_prompt_lists_requirements():
    options = GenerationOptions(
        include_market_data=True, generate_charts=False, extract_entities=True, language="de"
    )

    enhanced = enhance_prompt("Outlook for DAX", options, today=datetime(2024, 3, 1, tzinfo=UTC))

    assert enhanced.startswith("Outlook for DAX\n\nAdditional requirements:\n")
    assert "Current date: 2024-03-01" in enhanced
    assert "real-time market data" in enhanced
    assert "charts and visualizations" not in enhanced
    assert "identify all companies" in enhanced
    assert "Generate the report in de." in enhanced


def test_enhance_prompt_skips_english_language_line():
    enhanced = enhance_prompt("Outlook", GenerationOptions(language="en"))

    assert "Generate the report in" not in enhanced


def test_edit_prompt_carries_section_and_instruction():
    section = Section(report_id="r1", title="Revenue", content="## Revenue\nUp 12%.")

    prompt = build_edit_prompt(section, "Add a comparison to last year")

    assert "Title: Revenue" in prompt
    assert "## Revenue\nUp 12%." in prompt
    assert "User's Edit Request: Add a comparison to last year" in prompt


def test_add_section_prompt_summarizes_existing_sections():
    report = Report(title="Q3 Review", created_at=datetime(2024, 10, 2, tzinfo=UTC))
    sections = [
        Section(report_id=report.id, title="Revenue", type="metric", content="<h2>Revenue</h2><p>$4.1B, up 12%</p>"),
        Section(report_id=report.id, title="Outlook", content="## Outlook\n" + "steady " * 80),
    ]

    prompt = build_add_section_prompt(report, sections, "Add a risks section", "insight")

    assert "Report Title: Q3 Review" in prompt
    assert "Created: 2024-10-02" in prompt
    assert "1. Revenue (metric)" in prompt
    assert "<h2>" not in prompt
    assert "..." in prompt
    assert "- Revenue: $4.1, 12%" in prompt
    assert "- Outlook:" not in prompt
    assert "Requested section type: insight" in prompt


def test_add_section_prompt_for_empty_report():
    prompt = build_add_section_prompt(Report(prompt="Gold outlook"), [], "Start with a summary")

    assert "Report Title: Gold outlook" in prompt
    assert "This is the first section of the report." in prompt
    assert "Requested section type" not in prompt
