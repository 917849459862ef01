"""Tests for the section API endpoints."""

import pytest
from fastapi.testclient import TestClient

from app.api.report_helpers import get_engine_context
from app.main import app
from tests.conftest import make_context
from tests.test_reports_api import PROMPT, parse_sse_events

REWRITE = ["## Revenue\n", "Revenue rose 12% on subscription growth."]


@pytest.fixture
def client(settings, provider):
    ctx = make_context(settings, provider)
    app.dependency_overrides[get_engine_context] = lambda: ctx
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def report(client):
    """A generated two-section report: (report_id, [revenue_id, outlook_id])."""
    resp = client.post("/v1/reports/generate", json={"prompt": PROMPT})
    report_id = parse_sse_events(resp.text)[0]["reportId"]
    sections = client.get(f"/v1/reports/{report_id}/sections").json()["sections"]
    return report_id, [s["id"] for s in sections]


def _patch(client, report_id, section_id, **body):
    return client.patch(f"/v1/reports/{report_id}/sections/{section_id}", json=body)


class TestSectionReads:
    def test_list_and_get(self, client, report):
        report_id, (revenue_id, _) = report

        listed = client.get(f"/v1/reports/{report_id}/sections").json()["sections"]
        single = client.get(f"/v1/reports/{report_id}/sections/{revenue_id}").json()["section"]

        assert [s["title"] for s in listed] == ["Revenue", "Outlook"]
        assert single["htmlContent"].startswith("## Revenue")
        assert single["version"] == 1

    def test_section_of_another_report_is_404(self, client, report):
        _, (revenue_id, _) = report
        other = client.post("/v1/reports", json={}).json()["report"]["id"]

        assert client.get(f"/v1/reports/{other}/sections/{revenue_id}").status_code == 404
        assert client.get(f"/v1/reports/{other}/sections/missing").status_code == 404


class TestSectionEdit:
    def test_ai_edit_streams_and_commits_next_version(self, client, report, provider):
        report_id, (revenue_id, _) = report
        provider.chunks = list(REWRITE)

        resp = _patch(client, report_id, revenue_id, action="edit", prompt="Mention subscriptions")

        assert resp.status_code == 200
        events = parse_sse_events(resp.text)
        assert events[0] == {"type": "section_id", "sectionId": revenue_id, "reportId": report_id}
        assert [e["content"] for e in events if e["type"] == "content"] == REWRITE
        assert all(e["sectionId"] == revenue_id for e in events if e["type"] == "content")
        assert events[-1]["type"] == "complete"
        assert events[-1]["version"] == 2

        section = client.get(f"/v1/reports/{report_id}/sections/{revenue_id}").json()["section"]
        assert section["htmlContent"] == "".join(REWRITE)
        assert [h["version"] for h in section["editHistory"]] == [1, 2]

    def test_edit_with_blank_prompt_is_422(self, client, report, provider):
        report_id, (revenue_id, _) = report
        calls_before = len(provider.stream_calls)

        resp = _patch(client, report_id, revenue_id, action="edit", prompt="  ")

        assert resp.status_code == 422
        assert len(provider.stream_calls) == calls_before

    def test_manual_content_with_expected_version(self, client, report):
        report_id, (revenue_id, _) = report

        first = _patch(
            client, report_id, revenue_id, action="content", htmlContent="## Revenue\nFlat.",
            expectedVersion=1,
        )
        stale = _patch(
            client, report_id, revenue_id, action="content", htmlContent="## Revenue\nDown.",
            expectedVersion=1,
        )

        assert first.status_code == 200
        assert first.json()["version"] == 2
        assert stale.status_code == 409

    def test_unknown_action_is_422(self, client, report):
        report_id, (revenue_id, _) = report

        assert _patch(client, report_id, revenue_id, action="explode").status_code == 422


class TestSectionStructure:
    def test_rename(self, client, report):
        report_id, (revenue_id, _) = report

        resp = _patch(client, report_id, revenue_id, action="title", title="  Top Line  ")

        assert resp.json()["section"]["title"] == "Top Line"

    def test_move_and_edge(self, client, report):
        report_id, (revenue_id, outlook_id) = report

        moved = _patch(client, report_id, revenue_id, action="move-down")
        edge = _patch(client, report_id, revenue_id, action="move-down")

        assert [s["id"] for s in moved.json()["sections"]] == [outlook_id, revenue_id]
        assert edge.status_code == 422

    def test_duplicate_lands_after_original(self, client, report):
        report_id, (revenue_id, outlook_id) = report

        copy = _patch(client, report_id, revenue_id, action="duplicate").json()["section"]

        listed = client.get(f"/v1/reports/{report_id}/sections").json()["sections"]
        assert [s["id"] for s in listed] == [revenue_id, copy["id"], outlook_id]
        assert copy["title"] == "Revenue (Copy)"

    def test_delete_renumbers(self, client, report):
        report_id, (revenue_id, outlook_id) = report

        resp = client.delete(f"/v1/reports/{report_id}/sections/{revenue_id}")

        assert resp.json()["deleted"] == revenue_id
        assert [(s["id"], s["order"]) for s in resp.json()["sections"]] == [(outlook_id, 0)]

    def test_add_section_at_position(self, client, report, provider):
        report_id, (revenue_id, outlook_id) = report
        provider.chunks = ["## Risks\n", "Churn could rise."]

        resp = client.post(
            f"/v1/reports/{report_id}/sections",
            json={"prompt": "Add a short risks section", "position": 1},
        )

        events = parse_sse_events(resp.text)
        assert events[0]["type"] == "section_id"
        new_id = events[0]["sectionId"]
        assert events[-1]["type"] == "complete"

        listed = client.get(f"/v1/reports/{report_id}/sections").json()["sections"]
        assert [s["id"] for s in listed] == [revenue_id, new_id, outlook_id]
        assert listed[1]["title"] == "Risks"

    def test_cancel_section_without_runs(self, client, report):
        report_id, (revenue_id, _) = report

        resp = client.post(f"/v1/reports/{report_id}/sections/{revenue_id}/cancel")

        assert resp.json() == {"sectionId": revenue_id, "cancelled": 0}
