"""Unit tests for research_graph.nodes.synthesizer - report synthesis."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import pytest

from research_graph.exceptions import MalformedResponseError
from research_graph.nodes.synthesizer import (
    MANUAL_REPORT_PROMPT,
    agent_report_prompt,
    build_report_prompt,
    sources_from_results,
    synthesize_report,
)
from research_graph.state import Article, ReportSource, SearchResult

if TYPE_CHECKING:
    from research_graph.retry import RetryPolicy

ARTICLES = [
    Article(url="https://a.org", title="Alpha", content="Alpha content"),
    Article(url="https://b.org", title="Beta", content="Beta content"),
]
SOURCES = [
    ReportSource(id="a", url="https://a.org", name="Alpha"),
    ReportSource(id="b", url="https://b.org", name="Beta"),
]


class TestPrompts:
    def test_agent_prompt(self) -> None:
        assert agent_report_prompt("Compare A and B") == (
            "Compare A and B. Provide comprehensive analysis."
        )

    def test_build_includes_every_article(self) -> None:
        prompt = build_report_prompt(MANUAL_REPORT_PROMPT, ARTICLES)
        assert MANUAL_REPORT_PROMPT in prompt
        for article in ARTICLES:
            assert f"Title: {article.title}" in prompt
            assert article.content in prompt

    def test_sources_from_results(self) -> None:
        results = [SearchResult(id="r1", url="https://r.org", title="R")]
        assert sources_from_results(results) == [
            ReportSource(id="r1", url="https://r.org", name="R")
        ]


class TestSynthesizeReport:
    """Model output becomes a Report with caller-supplied sources."""

    @pytest.mark.asyncio()
    async def test_report(
        self, fake_model, report_json: dict[str, Any], retry: RetryPolicy
    ) -> None:
        fake_model.queue(f"```json\n{json.dumps(report_json)}\n```")
        report = await synthesize_report(
            "Compare", ARTICLES, SOURCES, fake_model, "openai__gpt-4o", retry
        )
        assert report.title == report_json["title"]
        assert [s.title for s in report.sections] == ["Peer Review", "Replication"]
        assert report.sources == SOURCES
        assert "Alpha content" in fake_model.calls[0][0]

    @pytest.mark.asyncio()
    async def test_rejects_bad_shape(self, fake_model, retry: RetryPolicy) -> None:
        fake_model.queue({"headline": "no title here"})
        with pytest.raises(MalformedResponseError):
            await synthesize_report(
                "Compare", ARTICLES, SOURCES, fake_model, "openai__gpt-4o", retry
            )
