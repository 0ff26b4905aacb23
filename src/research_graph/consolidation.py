"""Consolidation of several report chains into one report.

The only operation that gives a node more than one incoming edge: the new
consolidated Report node sits in its own Group and receives one
``consolidated`` edge from every contributing report.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from research_graph.exceptions import InsufficientReportsError, NodeNotFoundError
from research_graph.logging import stage_logging_context
from research_graph.nodes.synthesizer import complete_report
from research_graph.retry import RetryPolicy
from research_graph.state import (
    EdgeKind,
    GroupPayload,
    NodeKind,
    NodeStatus,
    ReportPayload,
    ReportSource,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from research_graph.graph import ResearchGraph
    from research_graph.models import ModelService
    from research_graph.state import Report

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

MIN_REPORTS = 2
CONSOLIDATED_GROUP_LABEL = "Consolidated Research"

_CONSOLIDATE_PROMPT = """\
Create a comprehensive consolidated report that synthesizes the following \
research reports:
{reports}

Analyze and synthesize these reports to create a comprehensive consolidated \
report that:
1. Identifies common themes and patterns across the reports
2. Highlights key insights and findings
3. Shows how different reports complement or contrast each other
4. Draws overarching conclusions
5. Suggests potential areas for further research

Format the response as a structured report with:
- A clear title that encompasses the overall research topic
- An executive summary of the consolidated findings
- Detailed sections that analyze different aspects
- A conclusion that ties everything together

Return the response in the following JSON format:
{{"title": "Overall Research Topic Title", "summary": "Executive summary of findings", \
"sections": [{{"title": "Section Title", "content": "Section content"}}]}}
"""


def build_consolidation_prompt(reports: Sequence[Report]) -> str:
    """Concatenate each report's title, summary and sections into one prompt."""
    blocks = []
    for index, report in enumerate(reports, start=1):
        findings = "\n".join(f"- {s.title}: {s.content}" for s in report.sections)
        blocks.append(
            f"\nReport {index} Title: {report.title}\n"
            f"Report {index} Summary: {report.summary}\n"
            f"Key Findings:\n{findings}\n"
        )
    return _CONSOLIDATE_PROMPT.format(reports="\n\n".join(blocks))


class ConsolidationEngine:
    """Merges two or more Ready report nodes into one consolidated report."""

    def __init__(
        self,
        graph: ResearchGraph,
        model: ModelService,
        platform_model: str,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.graph = graph
        self.model = model
        self.platform_model = platform_model
        self.retry = retry or RetryPolicy()

    def _contributors(self, report_ids: Iterable[str]) -> list[tuple[str, Report]]:
        usable: list[tuple[str, Report]] = []
        for node_id in dict.fromkeys(report_ids):
            node = self.graph.state.get(node_id)
            if node is None:
                raise NodeNotFoundError(f"Node {node_id!r} does not exist")
            payload = node.payload
            if (
                node.kind is NodeKind.REPORT
                and node.status is NodeStatus.READY
                and isinstance(payload, ReportPayload)
                and payload.report is not None
            ):
                usable.append((node_id, payload.report))
            else:
                logger.warning("consolidation_input_skipped", node_id=node_id)
        return usable

    async def consolidate(
        self,
        report_ids: Iterable[str] | None = None,
        platform_model: str | None = None,
    ) -> str:
        """Synthesize one report from the given (or currently selected) reports.

        Args:
            report_ids: Report node ids; defaults to the project's
                selected reports.
            platform_model: Model selector override.

        Returns:
            The id of the new consolidated Report node. It is Failed, not
            missing, if synthesis fails.

        Raises:
            InsufficientReportsError: Fewer than two Ready reports with
                content were given. Nothing is created and no remote call
                is made.
            NodeNotFoundError: An id does not exist.
        """
        ids = list(report_ids) if report_ids is not None else self.graph.state.selected_reports
        contributors = self._contributors(ids)
        if len(contributors) < MIN_REPORTS:
            raise InsufficientReportsError(
                f"Select at least {MIN_REPORTS} reports to consolidate"
            )

        group_id = self.graph.create_node(
            NodeKind.GROUP,
            GroupPayload(label=CONSOLIDATED_GROUP_LABEL),
            status=NodeStatus.READY,
        )
        report_id = self.graph.create_node(
            NodeKind.REPORT,
            ReportPayload(is_consolidated=True),
            parent_id=group_id,
            group_id=group_id,
        )
        for source_id, _ in contributors:
            self.graph.add_edge(source_id, report_id, EdgeKind.CONSOLIDATED)
        self.graph.start(report_id)

        sources = [
            ReportSource(id=node_id, url="", name=report.title)
            for node_id, report in contributors
        ]
        prompt = build_consolidation_prompt([report for _, report in contributors])
        logger.info(
            "consolidation_start",
            report_id=report_id,
            reports=len(contributors),
            titles=[report.title for _, report in contributors],
        )

        try:
            with stage_logging_context("consolidate", node_id=report_id):
                report = await complete_report(
                    prompt,
                    sources,
                    self.model,
                    platform_model or self.platform_model,
                    self.retry,
                )
        except Exception as exc:
            message = str(exc) or "Failed to generate consolidated report"
            logger.error("consolidation_failed", report_id=report_id, error=message)
            self.graph.fail(report_id, message)
            return report_id

        self.graph.complete(
            report_id,
            ReportPayload(report=report, is_consolidated=True),
        )
        self.graph.clear_selection()
        logger.info("consolidation_ready", report_id=report_id, title=report.title)
        return report_id
