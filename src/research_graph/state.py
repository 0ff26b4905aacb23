"""Research graph data model.

Nodes live in a flat id-indexed arena (:class:`GraphState.nodes`) with
child-id lists for the tree structure and separate :class:`Edge` records,
which also carry the multi-parent edges introduced by consolidation.
Each node's ``payload`` is a tagged union discriminated on ``kind``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=UTC).isoformat()


class _CamelModel(BaseModel):
    """Base model that serializes with the camelCase wire names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class NodeKind(StrEnum):
    """Kinds of research graph nodes."""

    SEARCH = "search"
    SELECTION = "selection"
    REPORT = "report"
    FOLLOW_UP = "follow_up"
    GROUP = "group"


class NodeStatus(StrEnum):
    """Node lifecycle: PENDING -> LOADING -> READY | FAILED."""

    PENDING = "pending"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class EdgeKind(StrEnum):
    TREE = "tree"
    CONSOLIDATED = "consolidated"


class SourceStatus(StrEnum):
    """Whether a source's content was fully fetched or fell back to its snippet."""

    FETCHED = "fetched"
    PREVIEW = "preview"


_ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.LOADING}),
    NodeStatus.LOADING: frozenset({NodeStatus.READY, NodeStatus.FAILED}),
    NodeStatus.READY: frozenset(),
    NodeStatus.FAILED: frozenset(),
}


def can_transition(current: NodeStatus, target: NodeStatus) -> bool:
    """Return ``True`` if ``current -> target`` is a forward lifecycle move."""
    return target in _ALLOWED_TRANSITIONS[current]


# ---------------------------------------------------------------------------
# Search results and reports
# ---------------------------------------------------------------------------


class SearchResult(_CamelModel):
    """A single normalized search result (or user-supplied source)."""

    id: str
    url: str
    title: str = ""
    snippet: str = ""
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    content: str | None = None
    is_custom_url: bool = False

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: object) -> float:
        try:
            score = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0.0
        return min(max(score, 0.0), 1.0)


class ReportSection(_CamelModel):
    title: str
    content: str


class ReportSource(_CamelModel):
    """A source reference attached to a report after synthesis."""

    id: str
    url: str
    name: str = ""


class Report(_CamelModel):
    """A structured research report."""

    title: str
    summary: str
    sections: list[ReportSection] = Field(default_factory=list)
    sources: list[ReportSource] = Field(default_factory=list)


class Article(_CamelModel):
    """Content handed to the Report Synthesizer for one source."""

    url: str
    title: str
    content: str


class RankingEntry(_CamelModel):
    url: str
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: object) -> float:
        try:
            score = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0.0
        return min(max(score, 0.0), 1.0)


# ---------------------------------------------------------------------------
# Node payloads (tagged union keyed by ``kind``)
# ---------------------------------------------------------------------------


class SearchPayload(_CamelModel):
    kind: Literal["search"] = "search"
    query: str
    time_filter: str = "all"


class SelectionPayload(_CamelModel):
    kind: Literal["selection"] = "selection"
    results: list[SearchResult] = Field(default_factory=list)
    prompt_draft: str = ""
    is_test_query: bool = False


class ReportPayload(_CamelModel):
    kind: Literal["report"] = "report"
    report: Report | None = None
    is_consolidated: bool = False
    source_statuses: dict[str, SourceStatus] = Field(default_factory=dict)


class FollowUpPayload(_CamelModel):
    kind: Literal["follow_up"] = "follow_up"
    search_terms: list[str] = Field(default_factory=list)


class GroupPayload(_CamelModel):
    kind: Literal["group"] = "group"
    label: str = ""
    insights: list[str] = Field(default_factory=list)


NodePayload = Annotated[
    SearchPayload | SelectionPayload | ReportPayload | FollowUpPayload | GroupPayload,
    Field(discriminator="kind"),
]


class ResearchNode(_CamelModel):
    """A node in the research graph.

    ``parent_id`` is a weak back-reference used for traversal only.
    ``group_id`` names the Group node that scopes the node's round.
    """

    id: str
    kind: NodeKind
    parent_id: str | None = None
    group_id: str | None = None
    child_ids: list[str] = Field(default_factory=list)
    payload: NodePayload
    status: NodeStatus = NodeStatus.PENDING
    error: str | None = None
    created_at: str = Field(default_factory=utc_now)


class Edge(_CamelModel):
    id: str
    source: str
    target: str
    kind: EdgeKind = EdgeKind.TREE


# ---------------------------------------------------------------------------
# Graph state and project
# ---------------------------------------------------------------------------


class GraphState(_CamelModel):
    """Immutable-by-convention snapshot of one project's research graph."""

    nodes: dict[str, ResearchNode] = Field(default_factory=dict)
    edges: list[Edge] = Field(default_factory=list)
    topic: str = ""
    selected_reports: list[str] = Field(default_factory=list)

    def get(self, node_id: str) -> ResearchNode | None:
        return self.nodes.get(node_id)

    def children(self, node_id: str) -> list[ResearchNode]:
        node = self.nodes.get(node_id)
        if node is None:
            return []
        return [self.nodes[cid] for cid in node.child_ids if cid in self.nodes]

    def nodes_of_kind(self, kind: NodeKind) -> list[ResearchNode]:
        return [node for node in self.nodes.values() if node.kind == kind]

    def roots(self) -> list[ResearchNode]:
        return [node for node in self.nodes.values() if node.parent_id is None]

    def incoming(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]


class Project(_CamelModel):
    """A named, persisted research graph."""

    id: str
    name: str
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    graph: GraphState = Field(default_factory=GraphState)
