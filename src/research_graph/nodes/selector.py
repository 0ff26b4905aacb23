"""Diversity-aware source selection.

A greedy, single-pass heuristic: walk results by descending score and
accept a result iff it scores strictly above the threshold, its hostname
is not yet represented, and fewer than ``max_selected`` results have been
accepted. Nothing is backtracked.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urlparse

import structlog

from research_graph.exceptions import NoDiverseSourcesError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from research_graph.state import SearchResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

DEFAULT_MAX_SELECTED = 3
DEFAULT_MIN_SCORE = 0.5


def hostname(url: str) -> str:
    """Return the lowercased hostname of *url*, or ``""`` if it has none."""
    return (urlparse(url).hostname or "").lower()


def select_diverse(
    results: Sequence[SearchResult],
    max_selected: int = DEFAULT_MAX_SELECTED,
    min_score: float = DEFAULT_MIN_SCORE,
) -> list[SearchResult]:
    """Pick a bounded, hostname-diverse, high-score subset of *results*.

    Args:
        results: Ranked results. Re-sorted by score descending with a
            stable sort, so equal scores keep their incoming order.
        max_selected: Maximum number of results to accept (K).
        min_score: A result must score strictly above this (T).

    Returns:
        The accepted results in descending score order.

    Raises:
        NoDiverseSourcesError: If no result qualifies.
    """
    ordered = sorted(results, key=lambda r: r.score, reverse=True)
    accepted: list[SearchResult] = []
    seen_hosts: set[str] = set()

    for result in ordered:
        if len(accepted) >= max_selected:
            break
        if result.score <= min_score:
            continue
        host = hostname(result.url)
        if host in seen_hosts:
            continue
        seen_hosts.add(host)
        accepted.append(result)

    if not accepted:
        raise NoDiverseSourcesError(
            "Could not find enough diverse, high-quality sources. "
            "Please try a different search query."
        )

    logger.info(
        "selection_complete",
        candidates=len(results),
        selected=len(accepted),
        domains=len(seen_hosts),
    )
    return accepted
