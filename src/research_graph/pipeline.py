"""Research round orchestration.

Drives each node's lifecycle through the stage adapters in
:mod:`research_graph.nodes`::

    Group -> Search (optimize, search) -> Selection
          -> Report (rank, select, fetch, synthesize) -> FollowUp

A stage failure marks the owning node Failed with a readable message and
never touches sibling nodes. A new round may be rooted at any Report node,
which is how the graph branches.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import structlog

from research_graph.exceptions import (
    MalformedResponseError,
    PreconditionFailedError,
)
from research_graph.logging import stage_logging_context
from research_graph.nodes.follow_up import generate_follow_up
from research_graph.nodes.optimizer import is_test_topic, optimize_query
from research_graph.nodes.ranker import apply_rankings, rank_results
from research_graph.nodes.scraper import fetch_content, fetch_sources
from research_graph.nodes.searcher import merge_results, normalize_url, search
from research_graph.nodes.selector import hostname, select_diverse
from research_graph.nodes.synthesizer import (
    MANUAL_REPORT_PROMPT,
    agent_report_prompt,
    sources_from_results,
    synthesize_report,
)
from research_graph.retry import RetryPolicy
from research_graph.state import (
    FollowUpPayload,
    GroupPayload,
    NodeKind,
    NodeStatus,
    ReportPayload,
    SearchPayload,
    SearchResult,
    SelectionPayload,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from research_graph.config import Settings
    from research_graph.graph import ResearchGraph
    from research_graph.models import ModelService
    from research_graph.nodes.optimizer import OptimizedQuery
    from research_graph.state import ResearchNode

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

DOCUMENT_SNIPPET_LENGTH = 500


# ---------------------------------------------------------------------------
# Round results
# ---------------------------------------------------------------------------


@dataclass
class RoundResult:
    """Node ids created by :meth:`ResearchPipeline.start_round`."""

    group_id: str
    search_id: str
    selection_id: str | None = None
    optimization: OptimizedQuery | None = None
    error: str | None = None


@dataclass
class ReportResult:
    """Node ids created by :meth:`ResearchPipeline.generate_report`."""

    report_id: str
    follow_up_id: str
    error: str | None = None
    insights: list[str] = field(default_factory=list)


@dataclass
class AgentRoundResult:
    round: RoundResult
    report: ReportResult | None = None

    @property
    def ok(self) -> bool:
        return (
            self.round.error is None
            and self.report is not None
            and self.report.error is None
        )


def _error_message(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


async def _snippet_only(url: str) -> str | None:
    return None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ResearchPipeline:
    """Runs research rounds against one :class:`ResearchGraph`.

    Args:
        graph: The graph manager that owns node state.
        model: Model Service used by every model-backed stage.
        settings: Loaded application settings.
        retry: Retry policy applied to every remote call.
        fetcher: Content fetch coroutine ``url -> text | None``.
    """

    def __init__(
        self,
        graph: ResearchGraph,
        model: ModelService,
        settings: Settings,
        retry: RetryPolicy | None = None,
        fetcher: Callable[[str], Awaitable[str | None]] | None = None,
    ) -> None:
        self.graph = graph
        self.model = model
        self.settings = settings
        self.retry = retry or RetryPolicy.from_settings(settings.retry)
        self._fetcher = fetcher or self._default_fetcher

    async def _default_fetcher(self, url: str) -> str | None:
        return await fetch_content(
            url,
            timeout=self.settings.fetch.timeout,
            max_content_length=self.settings.fetch.max_content_length,
        )

    def _platform_model(self, platform_model: str | None) -> str:
        return platform_model or self.settings.model.platform_model

    def _require_kind(self, node_id: str, kind: NodeKind) -> ResearchNode:
        node = self.graph.get(node_id)
        if node.kind is not kind:
            raise PreconditionFailedError(f"Node {node_id!r} is a {node.kind}, not a {kind}")
        return node

    # -- search round -------------------------------------------------------

    async def start_round(
        self,
        topic: str,
        parent_report_id: str | None = None,
        *,
        time_filter: str = "all",
        platform_model: str | None = None,
    ) -> RoundResult:
        """Create a Group/Search pair and run optimization and search.

        On success the Search node is Ready and a Selection node seeded
        with the results hangs below it. On failure the Search node is
        Failed and no Selection node is created.

        Args:
            topic: Free-form research topic.
            parent_report_id: Report node to branch from, if any.
            time_filter: Search time window.
            platform_model: Model selector override.
        """
        topic = topic.strip()
        if not topic:
            raise PreconditionFailedError("Topic is required")
        if parent_report_id is not None:
            self._require_kind(parent_report_id, NodeKind.REPORT)

        self.graph.set_topic(topic)
        group_id = self.graph.create_node(
            NodeKind.GROUP,
            GroupPayload(label=topic),
            parent_id=parent_report_id,
            status=NodeStatus.READY,
        )
        search_id = self.graph.create_node(
            NodeKind.SEARCH,
            SearchPayload(query=topic, time_filter=time_filter),
            parent_id=group_id,
            group_id=group_id,
        )
        self.graph.start(search_id)
        result = RoundResult(group_id=group_id, search_id=search_id)
        logger.info("round_start", group_id=group_id, topic=topic, parent=parent_report_id)

        model_id = self._platform_model(platform_model)
        is_test = is_test_topic(topic)
        try:
            with stage_logging_context("optimize", node_id=search_id):
                optimization = await optimize_query(topic, self.model, model_id, self.retry)
            with stage_logging_context("search", node_id=search_id):
                results = await search(
                    optimization.query,
                    self.settings.search,
                    time_filter,
                    is_test_query=is_test,
                    retry=self.retry,
                )
        except Exception as exc:
            result.error = _error_message(exc)
            logger.error("round_search_failed", search_id=search_id, error=result.error)
            self.graph.fail(search_id, result.error)
            return result

        result.optimization = optimization
        result.selection_id = self.graph.create_node(
            NodeKind.SELECTION,
            SelectionPayload(
                results=merge_results([], results),
                prompt_draft=optimization.optimized_prompt,
                is_test_query=is_test,
            ),
            parent_id=search_id,
            group_id=group_id,
            status=NodeStatus.READY,
        )
        self.graph.complete(
            search_id,
            SearchPayload(query=optimization.query, time_filter=time_filter),
        )
        insights = []
        if optimization.explanation:
            insights.append(f"Query optimization: {optimization.explanation}")
        if optimization.suggested_structure:
            outline = ", ".join(optimization.suggested_structure)
            insights.append(f"Suggested structure: {outline}")
        self._record_insights(group_id, insights)
        logger.info(
            "round_search_ready",
            search_id=search_id,
            selection_id=result.selection_id,
            results=len(results),
        )
        return result

    # -- report -------------------------------------------------------------

    async def generate_report(
        self,
        selection_id: str,
        result_ids: Sequence[str] | None = None,
        *,
        platform_model: str | None = None,
    ) -> ReportResult:
        """Create Report and FollowUp nodes under a Selection and fill them.

        With explicit *result_ids* the user's picks are used as-is (at most
        K) and ranking is skipped. Without them the results are ranked and
        the diversity selector picks the sources.

        Raises:
            PreconditionFailedError: If the selection is unusable or more
                than K results were picked. Raised before any node is made.
        """
        selection = self._require_kind(selection_id, NodeKind.SELECTION)
        payload = selection.payload
        assert isinstance(payload, SelectionPayload)
        max_selected = self.settings.selection.max_selected

        picked: list[SearchResult] | None = None
        if result_ids is not None:
            by_id = {r.id: r for r in payload.results}
            missing = [rid for rid in result_ids if rid not in by_id]
            if missing:
                raise PreconditionFailedError(f"Unknown result ids: {', '.join(missing)}")
            if not result_ids:
                raise PreconditionFailedError("No results selected")
            if len(result_ids) > max_selected:
                raise PreconditionFailedError(
                    f"At most {max_selected} sources can be selected"
                )
            picked = [by_id[rid] for rid in dict.fromkeys(result_ids)]
        elif not payload.results:
            raise PreconditionFailedError("No search results found")

        group_id = selection.group_id
        report_id = self.graph.create_node(
            NodeKind.REPORT,
            ReportPayload(),
            parent_id=selection_id,
            group_id=group_id,
        )
        follow_up_id = self.graph.create_node(
            NodeKind.FOLLOW_UP,
            FollowUpPayload(),
            parent_id=report_id,
            group_id=group_id,
        )
        self.graph.start(report_id)
        self.graph.start(follow_up_id)
        outcome = ReportResult(report_id=report_id, follow_up_id=follow_up_id)
        model_id = self._platform_model(platform_model)

        try:
            if picked is None:
                picked, insights = await self._rank_and_select(selection_id, model_id)
                outcome.insights = insights
                prompt = agent_report_prompt(payload.prompt_draft or self.graph.state.topic)
            else:
                prompt = MANUAL_REPORT_PROMPT

            fetcher = _snippet_only if payload.is_test_query else self._fetcher
            with stage_logging_context("fetch", node_id=report_id, sources=len(picked)):
                articles, statuses = await fetch_sources(picked, fetcher, self.retry)
            with stage_logging_context("synthesize", node_id=report_id):
                report = await synthesize_report(
                    prompt,
                    articles,
                    sources_from_results(picked),
                    self.model,
                    model_id,
                    self.retry,
                )
        except Exception as exc:
            outcome.error = _error_message(exc)
            logger.error("report_failed", report_id=report_id, error=outcome.error)
            self.graph.fail(report_id, outcome.error)
            self.graph.fail(follow_up_id, "Report unavailable")
            return outcome

        self.graph.complete(
            report_id,
            ReportPayload(report=report, source_statuses=statuses),
        )
        if group_id is not None:
            self._record_insights(group_id, outcome.insights)
        logger.info("report_ready", report_id=report_id, title=report.title)

        try:
            with stage_logging_context("follow_up", node_id=follow_up_id):
                terms = await generate_follow_up(report, self.model, model_id, self.retry)
        except Exception as exc:
            logger.error("follow_up_failed", follow_up_id=follow_up_id, error=str(exc))
            self.graph.fail(follow_up_id, _error_message(exc))
            return outcome

        self.graph.complete(follow_up_id, FollowUpPayload(search_terms=terms))
        return outcome

    async def _rank_and_select(
        self,
        selection_id: str,
        platform_model: str,
    ) -> tuple[list[SearchResult], list[str]]:
        payload = self.graph.get(selection_id).payload
        assert isinstance(payload, SelectionPayload)
        prompt = payload.prompt_draft or self.graph.state.topic

        with stage_logging_context("rank", node_id=selection_id):
            ranking = await rank_results(
                prompt,
                payload.results,
                self.model,
                platform_model,
                is_test_query=payload.is_test_query,
                retry=self.retry,
            )
        ranked = apply_rankings(payload.results, ranking)
        self.graph.update_payload(
            selection_id,
            payload.model_copy(update={"results": ranked}),
        )
        if all(result.score == 0 for result in ranked):
            raise MalformedResponseError("No relevant results found")

        selected = select_diverse(
            ranked,
            max_selected=self.settings.selection.max_selected,
            min_score=self.settings.selection.min_score,
        )
        domains = {hostname(r.url) for r in selected}
        insights = [
            f"Search analysis: {ranking.analysis}" if ranking.analysis else "",
            f"Selected {len(selected)} diverse sources from {len(domains)} unique domains",
        ]
        logger.info("rank_complete", selected=len(selected), domains=len(domains))
        return selected, insights

    # -- automated round ----------------------------------------------------

    async def run_agent_round(
        self,
        topic: str,
        parent_report_id: str | None = None,
        *,
        time_filter: str = "all",
        platform_model: str | None = None,
    ) -> AgentRoundResult:
        """Run one full round without user selection.

        Optimize, search, rank, diversity-select, fetch, synthesize and
        propose follow-ups, recording the round's insights on its Group.
        """
        round_result = await self.start_round(
            topic,
            parent_report_id,
            time_filter=time_filter,
            platform_model=platform_model,
        )
        outcome = AgentRoundResult(round=round_result)
        if round_result.selection_id is None:
            return outcome

        selection = self.graph.get(round_result.selection_id).payload
        assert isinstance(selection, SelectionPayload)
        if not selection.results:
            round_result.error = "No search results found"
            logger.warning("agent_round_no_results", selection_id=round_result.selection_id)
            return outcome

        outcome.report = await self.generate_report(
            round_result.selection_id,
            platform_model=platform_model,
        )
        logger.info(
            "agent_round_complete",
            group_id=round_result.group_id,
            report_id=outcome.report.report_id,
            ok=outcome.ok,
        )
        return outcome

    async def branch(
        self,
        report_id: str,
        term: str,
        *,
        agent: bool = False,
        time_filter: str = "all",
        platform_model: str | None = None,
    ) -> RoundResult | AgentRoundResult:
        """Start a new round rooted at an existing Report node."""
        if agent:
            return await self.run_agent_round(
                term, report_id, time_filter=time_filter, platform_model=platform_model
            )
        return await self.start_round(
            term, report_id, time_filter=time_filter, platform_model=platform_model
        )

    # -- insights -----------------------------------------------------------

    def _record_insights(self, group_id: str, insights: Sequence[str]) -> None:
        kept = [item for item in insights if item]
        if not kept:
            return
        payload = self.graph.get(group_id).payload
        assert isinstance(payload, GroupPayload)
        self.graph.update_payload(
            group_id,
            payload.model_copy(update={"insights": [*payload.insights, *kept]}),
        )

    # -- custom sources -----------------------------------------------------

    def _selection(self, selection_id: str) -> SelectionPayload:
        payload = self._require_kind(selection_id, NodeKind.SELECTION).payload
        assert isinstance(payload, SelectionPayload)
        return payload

    def add_custom_url(self, selection_id: str, url: str) -> SearchResult | None:
        """Prepend a user-supplied URL to a Selection node's results.

        Returns:
            The new result, or ``None`` if the URL was already present.

        Raises:
            PreconditionFailedError: If *url* is not an absolute http(s) URL.
        """
        url = url.strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise PreconditionFailedError(f"Invalid URL: {url!r}")

        payload = self._selection(selection_id)
        if normalize_url(url) in {normalize_url(r.url) for r in payload.results}:
            logger.info("custom_url_duplicate", selection_id=selection_id, url=url)
            return None

        result = SearchResult(
            id=f"custom-{time.time_ns()}-{url}",
            url=url,
            title="Custom URL",
            snippet="Custom URL added by user",
            is_custom_url=True,
        )
        self.graph.update_payload(
            selection_id,
            payload.model_copy(update={"results": [result, *payload.results]}),
        )
        logger.info("custom_url_added", selection_id=selection_id, url=url)
        return result

    def add_document(self, selection_id: str, name: str, content: str) -> SearchResult:
        """Prepend an uploaded document as a result with inline content.

        The Content Fetcher uses the inline content and skips the fetch.
        """
        if not content.strip():
            raise PreconditionFailedError("Document is empty")

        payload = self._selection(selection_id)
        snippet = content[:DOCUMENT_SNIPPET_LENGTH]
        if len(content) > DOCUMENT_SNIPPET_LENGTH:
            snippet += "..."
        stamp = time.time_ns()
        result = SearchResult(
            id=f"file-{stamp}-{name}",
            url=f"file://{stamp}-{name}",
            title=name,
            snippet=snippet,
            content=content,
            is_custom_url=True,
        )
        self.graph.update_payload(
            selection_id,
            payload.model_copy(update={"results": [result, *payload.results]}),
        )
        logger.info("document_added", selection_id=selection_id, name=name, chars=len(content))
        return result

    def remove_result(self, selection_id: str, result_id: str) -> bool:
        """Drop a result from a Selection node. Returns ``False`` if absent."""
        payload = self._selection(selection_id)
        kept = [r for r in payload.results if r.id != result_id]
        if len(kept) == len(payload.results):
            return False
        self.graph.update_payload(selection_id, payload.model_copy(update={"results": kept}))
        logger.info("result_removed", selection_id=selection_id, result_id=result_id)
        return True


