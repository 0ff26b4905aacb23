"""Follow-up search term generation.

Given a report, proposes exactly three search terms for the next round.
If the model output holds no usable structure, terms are recovered from
its non-empty lines instead of failing.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import structlog

from research_graph.exceptions import MalformedResponseError
from research_graph.retry import RetryPolicy
from research_graph.structured import extract_structured

if TYPE_CHECKING:
    from research_graph.models import ModelService
    from research_graph.state import Report

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

FOLLOW_UP_COUNT = 3

_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")

_FOLLOW_UP_PROMPT = """\
Based on the following research report, generate {count} follow-up search \
terms that would help deepen or expand the research in a meaningful way. \
Each term should explore an important aspect that wasn't fully covered.

Report Title: {title}
Summary: {summary}

Key Sections:
{sections}

Respond with ONLY a JSON object in this format:
{{"searchTerms": ["<term 1>", "<term 2>", "<term 3>"]}}
"""


def _terms_from_structure(data: Any) -> list[str]:
    if isinstance(data, dict):
        data = data.get("searchTerms") or data.get("search_terms") or []
    if not isinstance(data, list):
        return []
    return [item.strip() for item in data if isinstance(item, str) and item.strip()]


def terms_from_lines(text: str, limit: int = FOLLOW_UP_COUNT) -> list[str]:
    """Take up to *limit* non-empty lines, stripped of list markers and quotes."""
    terms: list[str] = []
    for line in text.splitlines():
        term = _LIST_MARKER_RE.sub("", line).strip().strip('"').strip()
        if not term or term.startswith(("{", "}", "[", "]", "```")):
            continue
        terms.append(term)
        if len(terms) == limit:
            break
    return terms


def _pad_from_report(terms: list[str], report: Report) -> list[str]:
    candidates = [f"{report.title} {s.title}" for s in report.sections]
    candidates.append(report.title)
    for candidate in candidates:
        if len(terms) >= FOLLOW_UP_COUNT:
            break
        if candidate and candidate not in terms:
            terms.append(candidate)
    return terms


async def generate_follow_up(
    report: Report,
    model: ModelService,
    platform_model: str,
    retry: RetryPolicy | None = None,
) -> list[str]:
    """Propose exactly three follow-up search terms for *report*.

    Structured output is tried first, then the line-based fallback. Short
    answers are topped up from the report's own section titles.

    Raises:
        MalformedResponseError: If three terms cannot be assembled.
    """
    sections = "\n".join(f"{s.title}: {s.content}" for s in report.sections)
    prompt = _FOLLOW_UP_PROMPT.format(
        count=FOLLOW_UP_COUNT,
        title=report.title,
        summary=report.summary,
        sections=sections,
    )

    policy = retry or RetryPolicy()
    text = await policy.run(lambda: model.complete(prompt, platform_model))

    try:
        terms = _terms_from_structure(extract_structured(text))
    except MalformedResponseError:
        terms = []
    if not terms:
        logger.info("follow_up_line_fallback")
        terms = terms_from_lines(text)

    terms = _pad_from_report(terms[:FOLLOW_UP_COUNT], report)
    if len(terms) < FOLLOW_UP_COUNT:
        raise MalformedResponseError("Could not generate follow-up search terms")

    logger.info("follow_up_complete", terms=terms)
    return terms
