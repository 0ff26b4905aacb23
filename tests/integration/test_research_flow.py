"""Integration tests: full rounds, branching and consolidation on one graph."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, patch

import pytest
import respx

from research_graph.config import Settings
from research_graph.consolidation import ConsolidationEngine
from research_graph.graph import ResearchGraph
from research_graph.persistence import DebouncedSaver, ProjectStore
from research_graph.pipeline import ResearchPipeline
from research_graph.state import (
    EdgeKind,
    NodeKind,
    NodeStatus,
    ReportPayload,
    SearchResult,
    SelectionPayload,
    SourceStatus,
)

if TYPE_CHECKING:
    from pathlib import Path

    from research_graph.retry import RetryPolicy

pytestmark = pytest.mark.integration


class TestTestTopicRound:
    """The "test" topic runs end to end without any network access."""

    @pytest.mark.asyncio()
    async def test_selects_first_canned_result_only(
        self,
        graph: ResearchGraph,
        fake_model,
        settings: Settings,
        retry: RetryPolicy,
        report_json: dict[str, Any],
        follow_up_json: dict[str, Any],
    ) -> None:
        fake_model.queue(report_json, follow_up_json)
        pipeline = ResearchPipeline(graph, fake_model, settings, retry)

        with respx.mock(assert_all_called=False) as router:
            outcome = await pipeline.run_agent_round("test")

        assert not router.calls
        assert outcome.ok
        selection = graph.get(outcome.round.selection_id).payload
        assert isinstance(selection, SelectionPayload)
        assert [(r.id, r.score) for r in selection.results] == [
            ("test-1", 1.0),
            ("test-2", 0.5),
            ("test-3", 0.5),
        ]

        report = graph.get(outcome.report.report_id)
        assert isinstance(report.payload, ReportPayload)
        assert [s.id for s in report.payload.report.sources] == ["test-1"]
        assert report.payload.source_statuses == {"test-1": SourceStatus.PREVIEW}

        follow_up = graph.get(outcome.report.follow_up_id)
        assert follow_up.status is NodeStatus.READY
        assert len(follow_up.payload.search_terms) == 3
        # Only synthesis and follow-up generation reach the Model Service
        assert len(fake_model.calls) == 2


class TestFetchFallback:
    """Report generation proceeds when some sources cannot be fetched."""

    @pytest.mark.asyncio()
    async def test_two_of_four_sources_fail(
        self,
        tmp_path: Path,
        graph: ResearchGraph,
        fake_model,
        retry: RetryPolicy,
        report_json: dict[str, Any],
        follow_up_json: dict[str, Any],
    ) -> None:
        settings = Settings.load(
            selection={"max_selected": 4},
            persistence={"directory": tmp_path / "projects"},
        )
        results = [
            SearchResult(id=f"r{i}", url=f"https://site{i}.org/a", snippet=f"snippet {i}")
            for i in range(4)
        ]

        async def fetcher(url: str) -> str | None:
            if "site1" in url or "site2" in url:
                return None
            return f"full text from {url}"

        pipeline = ResearchPipeline(graph, fake_model, settings, retry, fetcher=fetcher)
        fake_model.queue(
            {"query": "q", "optimizedPrompt": "p"},
            report_json,
            follow_up_json,
        )
        with patch("research_graph.pipeline.search", AsyncMock(return_value=results)):
            round_result = await pipeline.start_round("battery recycling")
        outcome = await pipeline.generate_report(
            round_result.selection_id, ["r0", "r1", "r2", "r3"]
        )

        assert outcome.error is None
        payload = graph.get(outcome.report_id).payload
        assert payload.source_statuses == {
            "r0": SourceStatus.FETCHED,
            "r1": SourceStatus.PREVIEW,
            "r2": SourceStatus.PREVIEW,
            "r3": SourceStatus.FETCHED,
        }
        synthesis_prompt = fake_model.calls[1][0]
        assert "snippet 1" in synthesis_prompt
        assert "full text from https://site3.org/a" in synthesis_prompt


class TestBranchAndConsolidate:
    """Two report chains merged into one, persisted and reloaded."""

    @pytest.mark.asyncio()
    async def test_consolidated_project_round_trip(
        self,
        fake_model,
        settings: Settings,
        retry: RetryPolicy,
        report_json: dict[str, Any],
        follow_up_json: dict[str, Any],
    ) -> None:
        store = ProjectStore(settings.persistence.directory)
        project = store.create_project("Methods")
        graph = ResearchGraph(state=project.graph)
        saver = DebouncedSaver(store, settings.persistence.debounce_seconds)
        saver.watch(graph, project)
        pipeline = ResearchPipeline(graph, fake_model, settings, retry)

        second_report = dict(report_json, title="Replication In Depth")
        consolidated = dict(report_json, title="Methods Overview")
        fake_model.queue(
            report_json, follow_up_json, second_report, follow_up_json, consolidated
        )

        first = await pipeline.run_agent_round("test")
        second = await pipeline.branch(first.report.report_id, "test", agent=True)
        assert first.ok
        assert second.ok
        for outcome in (first, second):
            graph.select(outcome.report.report_id)

        engine = ConsolidationEngine(graph, fake_model, settings.model.platform_model, retry)
        report_id = await engine.consolidate()
        await saver.flush()

        loaded = store.load_project(project.id)
        node = loaded.graph.nodes[report_id]
        assert node.status is NodeStatus.READY
        assert node.payload.report.title == "Methods Overview"
        incoming = [
            e.source for e in loaded.graph.incoming(report_id) if e.kind is EdgeKind.CONSOLIDATED
        ]
        assert sorted(incoming) == sorted([first.report.report_id, second.report.report_id])
        assert loaded.graph.selected_reports == []

        second_group = loaded.graph.nodes[second.round.group_id]
        assert second_group.parent_id == first.report.report_id
        assert len(loaded.graph.nodes_of_kind(NodeKind.REPORT)) == 3
