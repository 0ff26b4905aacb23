"""Report synthesis stage.

Turns fetched source content plus a research prompt into a structured
:class:`~research_graph.state.Report`. Model output is decoded with the
structured-text recovery chain; a synthesis with no recoverable
``{title, summary, sections}`` shape is rejected. Source bookkeeping is
attached afterwards from the caller's selection.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from research_graph.retry import RetryPolicy
from research_graph.state import Report, ReportSection, ReportSource
from research_graph.structured import decode_report_body

if TYPE_CHECKING:
    from collections.abc import Sequence

    from research_graph.models import ModelService
    from research_graph.state import Article, SearchResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

MANUAL_REPORT_PROMPT = "Provide comprehensive analysis of the selected sources."

_REPORT_PROMPT = """\
You are a research assistant tasked with creating a comprehensive report \
based on multiple sources.
The report should specifically address this request: "{prompt}"

Your report should:
1. Have a clear title that reflects the specific analysis requested
2. Begin with a concise executive summary
3. Be organized into relevant sections based on the analysis requested
4. Use markdown formatting for emphasis, lists, and structure
5. Integrate information from sources naturally without referencing them by number
6. Maintain objectivity while addressing the specific aspects requested
7. Compare and contrast the information from each source, noting areas of \
consensus or points of contention
8. Showcase key insights, important data, or innovative ideas

Here are the source articles to analyze:
{articles}

Format the report as a JSON object with the following structure:
{{"title": "Report title", "summary": "Executive summary (can include markdown)", \
"sections": [{{"title": "Section title", "content": "Section content with markdown"}}]}}

Do not use phrases like "Source 1" or "According to Source 2". Reference \
sources by their titles when necessary.
"""


def agent_report_prompt(optimized_prompt: str) -> str:
    """Prompt used when a round runs without user selection."""
    return f"{optimized_prompt}. Provide comprehensive analysis."


def build_report_prompt(prompt: str, articles: Sequence[Article]) -> str:
    blocks = "\n".join(
        f"\nTitle: {a.title}\nURL: {a.url}\nContent: {a.content}\n---\n"
        for a in articles
    )
    return _REPORT_PROMPT.format(prompt=prompt, articles=blocks)


def sources_from_results(results: Sequence[SearchResult]) -> list[ReportSource]:
    return [ReportSource(id=r.id, url=r.url, name=r.title) for r in results]


async def complete_report(
    full_prompt: str,
    sources: Sequence[ReportSource],
    model: ModelService,
    platform_model: str,
    retry: RetryPolicy | None = None,
) -> Report:
    """Send a fully rendered synthesis prompt and decode the report.

    Args:
        full_prompt: The prompt text sent to the Model Service.
        sources: Source references attached to the accepted report.
        model: Model Service used for the completion.
        platform_model: Opaque ``"<provider>__<model>"`` selector.
        retry: Retry policy for the remote call.

    Returns:
        The decoded report with *sources* attached.

    Raises:
        MalformedResponseError: If no well-formed report body is found.
    """
    policy = retry or RetryPolicy()
    text = await policy.run(lambda: model.complete(full_prompt, platform_model))
    body = decode_report_body(text)

    report = Report(
        title=body.title,
        summary=body.summary,
        sections=[ReportSection(title=s.title, content=s.content) for s in body.sections],
        sources=list(sources),
    )
    logger.info(
        "report_synthesized",
        title=report.title,
        sections=len(report.sections),
        sources=len(report.sources),
    )
    return report


async def synthesize_report(
    prompt: str,
    articles: Sequence[Article],
    sources: Sequence[ReportSource],
    model: ModelService,
    platform_model: str,
    retry: RetryPolicy | None = None,
) -> Report:
    """Synthesize a report for *prompt* from fetched *articles*."""
    return await complete_report(
        build_report_prompt(prompt, articles),
        sources,
        model,
        platform_model,
        retry,
    )
