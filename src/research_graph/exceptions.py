"""Centralized exception hierarchy for the research-graph package.

All domain-specific exceptions inherit from ``ResearchGraphError`` so
callers can catch the entire family with a single ``except`` clause.
"""

from __future__ import annotations


class ResearchGraphError(Exception):
    """Base exception for all research-graph errors."""


# ---------------------------------------------------------------------------
# Remote call errors
# ---------------------------------------------------------------------------


class RateLimitedError(ResearchGraphError):
    """Raised when an upstream service signals HTTP 429 / rate limiting."""

    status_code = 429


class UpstreamUnavailableError(ResearchGraphError):
    """Raised when a Model or Search Service call fails for any other reason."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(ResearchGraphError):
    """Raised when a remote call succeeded but its payload could not be decoded."""


class StructuredDecodeError(MalformedResponseError):
    """Raised by a single structured-text decode strategy."""


# ---------------------------------------------------------------------------
# Precondition errors
# ---------------------------------------------------------------------------


class PreconditionFailedError(ResearchGraphError):
    """Raised before any remote call when a stage's inputs are unusable."""


class NoDiverseSourcesError(PreconditionFailedError):
    """Raised when no ranked result clears the diversity selector."""

    def __init__(
        self,
        message: str = "No qualifying diverse sources",
    ) -> None:
        super().__init__(message)


class InsufficientReportsError(PreconditionFailedError):
    """Raised when consolidation is requested with fewer than 2 usable reports."""


# ---------------------------------------------------------------------------
# Graph errors
# ---------------------------------------------------------------------------


class GraphError(ResearchGraphError):
    """Base exception for research graph mutations."""


class NodeNotFoundError(GraphError):
    """Raised when an intent references a node id that does not exist."""


class InvalidTransitionError(GraphError):
    """Raised when a node status change would move backward."""


# ---------------------------------------------------------------------------
# Persistence errors
# ---------------------------------------------------------------------------


class PersistenceError(ResearchGraphError):
    """Raised when project state cannot be read or written."""


class ProjectNotFoundError(PersistenceError):
    """Raised when a project id is not present in the store."""


def is_rate_limited(exc: BaseException) -> bool:
    """Return ``True`` if *exc* carries an HTTP 429 rate-limit signal.

    Recognises :class:`RateLimitedError`, any exception exposing
    ``status_code == 429`` (httpx, litellm), an ``httpx.HTTPStatusError``
    whose response is a 429, and messages mentioning ``429``.
    """
    if isinstance(exc, RateLimitedError):
        return True
    if getattr(exc, "status_code", None) == 429:
        return True
    response = getattr(exc, "response", None)
    if getattr(response, "status_code", None) == 429:
        return True
    return "429" in str(exc)
