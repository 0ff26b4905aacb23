"""Search retrieval stage.

Issues an optimized query to one of several Search Service providers
(Tavily, Bing Web Search, Google Custom Search, Exa) and normalizes the
provider payload into a common ``webPages`` envelope before turning it
into :class:`~research_graph.state.SearchResult` models with score 0.

No deduplication happens here; callers merging with pre-existing results
use :func:`merge_results`.
"""

from __future__ import annotations

import os
import re
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import httpx
import structlog

from research_graph.exceptions import (
    RateLimitedError,
    UpstreamUnavailableError,
    is_rate_limited,
)
from research_graph.retry import RetryPolicy
from research_graph.state import SearchResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from research_graph.config import SearchSettings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

TimeFilter = Literal["24h", "week", "month", "year", "all"]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BING_ENDPOINT = "https://api.bing.microsoft.com/v7.0/search"
GOOGLE_ENDPOINT = "https://customsearch.googleapis.com/customsearch/v1"
EXA_ENDPOINT = "https://api.exa.ai/search"

_BING_FRESHNESS: dict[str, str] = {
    "24h": "Day",
    "week": "Week",
    "month": "Month",
    "year": "Year",
}

_GOOGLE_DATE_RESTRICT: dict[str, str] = {
    "24h": "d1",
    "week": "w1",
    "month": "m1",
    "year": "y1",
}

_TAVILY_TIME_RANGE: dict[str, str] = {
    "24h": "day",
    "week": "week",
    "month": "month",
    "year": "year",
}

_FILTER_WINDOW: dict[str, timedelta] = {
    "24h": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}

_BING_SAFE_SEARCH = {"off": "Off", "moderate": "Moderate", "strict": "Strict"}
_GOOGLE_SAFE_SEARCH = {"off": "off", "moderate": "active", "strict": "active"}

# Google Custom Search caps ``num`` at 10
_GOOGLE_MAX_RESULTS = 10

TEST_RESULTS: list[dict[str, str]] = [
    {
        "id": "test-1",
        "url": "https://example.com/test-1",
        "name": "Test Result 1",
        "snippet": (
            "This is a test search result for testing purposes. It contains "
            "some sample text about research and analysis."
        ),
    },
    {
        "id": "test-2",
        "url": "https://example.com/test-2",
        "name": "Test Result 2",
        "snippet": (
            "Another test result with different content. This one discusses "
            "methodology and data collection."
        ),
    },
    {
        "id": "test-3",
        "url": "https://example.com/test-3",
        "name": "Test Result 3",
        "snippet": (
            "A third test result focusing on academic research and scientific papers."
        ),
    },
]

_TRACKING_PARAMS: re.Pattern[str] = re.compile(
    r"^(utm_\w+|fbclid|gclid|gclsrc|dclid|msclkid|mc_[ce]id|"
    r"ref|affiliate|campaign_id|ad_id|_ga|_gid|_gl|yclid|wbraid|gbraid)$",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# URL normalization and merging
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Normalize a URL for deduplication comparison.

    Lowercases scheme and host, strips a trailing slash, drops the
    fragment and tracking query parameters, and sorts what remains.
    """
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    path = parsed.path.rstrip("/") or "/"

    if parsed.query:
        params = parse_qs(parsed.query, keep_blank_values=True)
        filtered = {k: v for k, v in params.items() if not _TRACKING_PARAMS.match(k)}
        query = urlencode(sorted(filtered.items()), doseq=True)
    else:
        query = ""

    return urlunparse((scheme, netloc, path, parsed.params, query, ""))


def merge_results(
    existing: Iterable[SearchResult],
    incoming: Iterable[SearchResult],
) -> list[SearchResult]:
    """Append *incoming* to *existing*, skipping URLs already present.

    Args:
        existing: Results already held by a Selection node.
        incoming: Newly retrieved or user-supplied results.

    Returns:
        A new list; the first occurrence of each normalized URL wins.
    """
    merged: list[SearchResult] = []
    seen: set[str] = set()
    for result in (*existing, *incoming):
        key = normalize_url(result.url)
        if key in seen:
            continue
        seen.add(key)
        merged.append(result)
    return merged


# ---------------------------------------------------------------------------
# Envelope normalization
# ---------------------------------------------------------------------------


def _envelope(items: list[dict[str, Any]]) -> dict[str, Any]:
    return {"webPages": {"value": items}}


def _from_tavily(payload: dict[str, Any]) -> dict[str, Any]:
    return _envelope(
        [
            {
                "id": item.get("url", ""),
                "url": item.get("url", ""),
                "name": item.get("title") or "Untitled",
                "snippet": item.get("content", ""),
            }
            for item in payload.get("results", [])
        ]
    )


def _from_google(payload: dict[str, Any]) -> dict[str, Any]:
    return _envelope(
        [
            {
                "id": item.get("cacheId") or item.get("link", ""),
                "url": item.get("link", ""),
                "name": item.get("title", ""),
                "snippet": item.get("snippet", ""),
            }
            for item in payload.get("items") or []
        ]
    )


def _from_exa(payload: dict[str, Any]) -> dict[str, Any]:
    if "results" not in payload:
        raise UpstreamUnavailableError("Unexpected Exa API response format")
    return _envelope(
        [
            {
                "id": item.get("id") or item.get("url", ""),
                "url": item.get("url", ""),
                "name": item.get("title") or "Untitled",
                "snippet": item.get("text") or "",
            }
            for item in payload["results"]
        ]
    )


def results_from_envelope(envelope: dict[str, Any]) -> list[SearchResult]:
    """Turn a ``{"webPages": {"value": [...]}}`` payload into results.

    Items without a URL are dropped. A missing id falls back to the URL.
    """
    items = (envelope.get("webPages") or {}).get("value") or []
    results: list[SearchResult] = []
    for item in items:
        url = item.get("url")
        if not url:
            continue
        results.append(
            SearchResult(
                id=str(item.get("id") or url),
                url=url,
                title=item.get("name") or "",
                snippet=item.get("snippet") or "",
            )
        )
    return results


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


def _require_env(name: str, provider: str) -> str:
    value = os.environ.get(name, "")
    if not value:
        raise UpstreamUnavailableError(
            f"{provider} search API is not properly configured: {name} is not set"
        )
    return value


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.status_code == 429:
        raise RateLimitedError(f"{provider} rate limit exceeded")
    if response.is_error:
        raise UpstreamUnavailableError(
            f"{provider} search API returned error {response.status_code}",
            status_code=response.status_code,
        )


async def _search_tavily(
    query: str, time_filter: str, settings: SearchSettings
) -> dict[str, Any]:
    from tavily import AsyncTavilyClient

    kwargs: dict[str, Any] = {"max_results": settings.results_per_page}
    if time_filter in _TAVILY_TIME_RANGE:
        kwargs["time_range"] = _TAVILY_TIME_RANGE[time_filter]

    try:
        client = AsyncTavilyClient()
        payload = await client.search(query=query, **kwargs)
    except Exception as exc:
        if is_rate_limited(exc):
            raise RateLimitedError(f"tavily rate limit exceeded: {exc}") from exc
        raise UpstreamUnavailableError(f"tavily search failed: {exc}") from exc
    return _from_tavily(payload)


async def _search_bing(
    client: httpx.AsyncClient, query: str, time_filter: str, settings: SearchSettings
) -> dict[str, Any]:
    key = _require_env("AZURE_SUB_KEY", "bing")
    params = {
        "q": query,
        "count": str(settings.results_per_page),
        "mkt": settings.market,
        "safeSearch": _BING_SAFE_SEARCH[settings.safe_search],
        "textFormat": "HTML",
        "textDecorations": "true",
    }
    if time_filter in _BING_FRESHNESS:
        params["freshness"] = _BING_FRESHNESS[time_filter]

    response = await client.get(
        BING_ENDPOINT,
        params=params,
        headers={"Ocp-Apim-Subscription-Key": key, "Accept-Language": "en-US"},
    )
    _raise_for_status(response, "bing")
    payload: dict[str, Any] = response.json()
    return payload


async def _search_google(
    client: httpx.AsyncClient, query: str, time_filter: str, settings: SearchSettings
) -> dict[str, Any]:
    key = _require_env("GOOGLE_SEARCH_API_KEY", "google")
    cx = _require_env("GOOGLE_SEARCH_CX", "google")
    params = {
        "q": query,
        "key": key,
        "cx": cx,
        "num": str(min(settings.results_per_page, _GOOGLE_MAX_RESULTS)),
        "safe": _GOOGLE_SAFE_SEARCH[settings.safe_search],
    }
    if time_filter in _GOOGLE_DATE_RESTRICT:
        params["dateRestrict"] = _GOOGLE_DATE_RESTRICT[time_filter]

    response = await client.get(GOOGLE_ENDPOINT, params=params)
    if response.is_error:
        try:
            message = response.json().get("error", {}).get("message", "")
        except ValueError:
            message = ""
        if "Quota exceeded" in message:
            raise RateLimitedError("google daily search quota exceeded")
    _raise_for_status(response, "google")
    return _from_google(response.json())


async def _search_exa(
    client: httpx.AsyncClient, query: str, time_filter: str, settings: SearchSettings
) -> dict[str, Any]:
    key = _require_env("EXA_API_KEY", "exa")
    body: dict[str, Any] = {
        "query": query,
        "type": "auto",
        "numResults": settings.results_per_page,
        "contents": {"text": {"maxCharacters": 500}},
    }
    if time_filter in _FILTER_WINDOW:
        start = datetime.now(tz=UTC) - _FILTER_WINDOW[time_filter]
        body["startPublishedDate"] = start.strftime("%Y-%m-%dT%H:%M:%S.000Z")

    response = await client.post(
        EXA_ENDPOINT,
        json=body,
        headers={"Authorization": f"Bearer {key}"},
    )
    _raise_for_status(response, "exa")
    return _from_exa(response.json())


async def fetch_envelope(
    query: str,
    time_filter: str,
    settings: SearchSettings,
) -> dict[str, Any]:
    """Query the configured provider and return a ``webPages`` envelope."""
    if settings.provider == "tavily":
        return await _search_tavily(query, time_filter, settings)

    handlers = {"bing": _search_bing, "google": _search_google, "exa": _search_exa}
    handler = handlers[settings.provider]
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(settings.timeout)) as client:
            return await handler(client, query, time_filter, settings)
    except httpx.HTTPError as exc:
        raise UpstreamUnavailableError(
            f"{settings.provider} search request failed: {exc}"
        ) from exc


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------


async def search(
    query: str,
    settings: SearchSettings,
    time_filter: TimeFilter | str = "all",
    *,
    is_test_query: bool = False,
    retry: RetryPolicy | None = None,
) -> list[SearchResult]:
    """Run *query* against the configured Search Service.

    The literal query ``"test"`` (any case) or ``is_test_query=True``
    returns three canned results without any network call. Zero results
    is a valid outcome.

    Args:
        query: Search query string.
        settings: Provider and paging configuration.
        time_filter: One of ``24h``, ``week``, ``month``, ``year``, ``all``.
        is_test_query: Force the canned deterministic result set.
        retry: Retry policy for the remote call.

    Returns:
        Normalized results, each with score 0, in provider order.

    Raises:
        RateLimitedError: If the provider keeps rate limiting after retries.
        UpstreamUnavailableError: On configuration or provider failures.
    """
    if not query.strip():
        raise UpstreamUnavailableError("Query parameter is required", status_code=400)

    if query.strip().lower() == "test" or is_test_query:
        logger.info("search_test_bypass")
        return results_from_envelope(_envelope([dict(item) for item in TEST_RESULTS]))

    policy = retry or RetryPolicy()
    envelope = await policy.run(lambda: fetch_envelope(query, time_filter, settings))
    results = results_from_envelope(envelope)

    logger.info(
        "search_complete",
        provider=settings.provider,
        time_filter=time_filter,
        results=len(results),
    )
    return results
