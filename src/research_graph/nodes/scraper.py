"""Content retrieval stage.

Fetches full text for each selected source with httpx and extracts the
main content with Trafilatura. A page answering HTTP 429 raises
:class:`RateLimitedError` so the batch can back off and retry it; any
other failure yields ``None``. Once retries are spent the batch falls back
to the result's snippet and marks the source as ``preview``.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import httpx
import structlog

from research_graph.exceptions import RateLimitedError
from research_graph.state import Article, SourceStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from research_graph.retry import RetryPolicy
    from research_graph.state import SearchResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_TIMEOUT = 30
_DEFAULT_MAX_CONTENT_LENGTH = 500_000

_USER_AGENT = "Mozilla/5.0 (compatible; research-graph/0.1)"


# ---------------------------------------------------------------------------
# Fetch and extract
# ---------------------------------------------------------------------------


async def fetch_content(
    url: str,
    timeout: int = _DEFAULT_TIMEOUT,
    max_content_length: int = _DEFAULT_MAX_CONTENT_LENGTH,
) -> str | None:
    """Fetch *url* and return its extracted main text.

    Args:
        url: Page to fetch.
        timeout: HTTP request timeout in seconds.
        max_content_length: Maximum characters to retain.

    Returns:
        The extracted text, or ``None`` if the fetch or extraction failed.

    Raises:
        RateLimitedError: If the site answers HTTP 429.
    """
    import trafilatura

    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        ) as client:
            response = await client.get(url)
    except Exception as exc:
        logger.warning("fetch_failed", url=url, error=str(exc))
        return None

    if response.status_code == 429:
        raise RateLimitedError(f"Rate limited fetching {url}")
    try:
        response.raise_for_status()
        html = response.text
    except httpx.HTTPError as exc:
        logger.warning("fetch_failed", url=url, error=str(exc))
        return None

    try:
        extracted = trafilatura.extract(
            html,
            include_comments=False,
            include_tables=True,
            no_fallback=False,
        )
    except Exception as exc:
        logger.warning("extract_failed", url=url, error=str(exc))
        return None

    if not extracted:
        logger.debug("extract_empty", url=url)
        return None

    content = extracted[:max_content_length]
    logger.info("fetch_ok", url=url, chars=len(content))
    return content


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


async def fetch_sources(
    results: Sequence[SearchResult],
    fetcher: Callable[[str], Awaitable[str | None]] | None = None,
    retry: RetryPolicy | None = None,
) -> tuple[list[Article], dict[str, SourceStatus]]:
    """Resolve content for every selected result concurrently.

    Results that already carry inline ``content`` skip the fetch. A fetch
    that fails or returns nothing falls back to the snippet and the source
    is marked :attr:`SourceStatus.PREVIEW`; a failure never cancels its
    siblings.

    Args:
        results: The selected sources.
        fetcher: Coroutine ``url -> text | None``; defaults to
            :func:`fetch_content`.
        retry: Policy applied to each fetch; rate-limited pages are retried
            with backoff before falling back to the snippet.

    Returns:
        ``(articles, source_statuses)`` where articles keep the order of
        *results* and statuses are keyed by result id.
    """
    fetch = fetcher or fetch_content

    async def _resolve(result: SearchResult) -> str | None:
        if result.content:
            return result.content
        try:
            if retry is None:
                return await fetch(result.url)
            return await retry.run(lambda: fetch(result.url))
        except Exception as exc:
            logger.warning("fetch_failed", url=result.url, error=str(exc))
            return None

    contents = await asyncio.gather(*(_resolve(r) for r in results))

    articles: list[Article] = []
    statuses: dict[str, SourceStatus] = {}
    for result, content in zip(results, contents, strict=True):
        if content:
            statuses[result.id] = SourceStatus.FETCHED
        else:
            logger.info("source_fetch_fallback", url=result.url)
            statuses[result.id] = SourceStatus.PREVIEW
            content = result.snippet
        articles.append(Article(url=result.url, title=result.title, content=content))

    logger.info(
        "fetch_batch_complete",
        sources=len(results),
        previews=sum(1 for s in statuses.values() if s is SourceStatus.PREVIEW),
    )
    return articles, statuses
