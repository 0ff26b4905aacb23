"""Unit tests for research_graph.nodes.follow_up - follow-up search terms."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from research_graph.exceptions import MalformedResponseError
from research_graph.nodes.follow_up import generate_follow_up, terms_from_lines
from research_graph.state import Report, ReportSection

if TYPE_CHECKING:
    from research_graph.retry import RetryPolicy


@pytest.fixture()
def report() -> Report:
    return Report(
        title="Solid-State Batteries",
        summary="Progress and obstacles.",
        sections=[
            ReportSection(title="Manufacturing", content="Yield is low."),
            ReportSection(title="Safety", content="No liquid electrolyte."),
        ],
    )


class TestTermsFromLines:
    """Line-based recovery strips markers and skips structural lines."""

    def test_strips_markers(self) -> None:
        text = '1. "first term"\n- second term\n\n* third term\n4) fourth term'
        assert terms_from_lines(text) == ["first term", "second term", "third term"]

    def test_skips_brackets_and_fences(self) -> None:
        text = "```\n{\nalpha\n]\nbeta\n```"
        assert terms_from_lines(text) == ["alpha", "beta"]


class TestGenerateFollowUp:
    """Exactly three terms are always produced or the stage fails."""

    @pytest.mark.asyncio()
    async def test_structured(
        self, fake_model, report: Report, follow_up_json: dict[str, Any], retry: RetryPolicy
    ) -> None:
        fake_model.queue(follow_up_json)
        terms = await generate_follow_up(report, fake_model, "openai__gpt-4o", retry)
        assert terms == follow_up_json["searchTerms"]
        prompt = fake_model.calls[0][0]
        assert "Solid-State Batteries" in prompt
        assert "Manufacturing: Yield is low." in prompt

    @pytest.mark.asyncio()
    async def test_truncates_extra_terms(
        self, fake_model, report: Report, retry: RetryPolicy
    ) -> None:
        fake_model.queue({"searchTerms": ["a", "b", "c", "d", "e"]})
        terms = await generate_follow_up(report, fake_model, "openai__gpt-4o", retry)
        assert terms == ["a", "b", "c"]

    @pytest.mark.asyncio()
    async def test_bare_array(self, fake_model, report: Report, retry: RetryPolicy) -> None:
        fake_model.queue('["x", "y", "z"]')
        assert await generate_follow_up(report, fake_model, "openai__gpt-4o", retry) == [
            "x",
            "y",
            "z",
        ]

    @pytest.mark.asyncio()
    async def test_line_fallback(self, fake_model, report: Report, retry: RetryPolicy) -> None:
        fake_model.queue("1. sulfide electrolytes\n2. dendrite suppression\n3. pilot lines")
        terms = await generate_follow_up(report, fake_model, "openai__gpt-4o", retry)
        assert terms == ["sulfide electrolytes", "dendrite suppression", "pilot lines"]

    @pytest.mark.asyncio()
    async def test_pads_from_report(
        self, fake_model, report: Report, retry: RetryPolicy
    ) -> None:
        fake_model.queue({"searchTerms": ["only one"]})
        terms = await generate_follow_up(report, fake_model, "openai__gpt-4o", retry)
        assert terms == [
            "only one",
            "Solid-State Batteries Manufacturing",
            "Solid-State Batteries Safety",
        ]

    @pytest.mark.asyncio()
    async def test_fails_when_unpaddable(self, fake_model, retry: RetryPolicy) -> None:
        bare = Report(title="T", summary="S")
        fake_model.queue({"searchTerms": []})
        with pytest.raises(MalformedResponseError, match="follow-up"):
            await generate_follow_up(bare, fake_model, "openai__gpt-4o", retry)
