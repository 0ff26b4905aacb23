"""Research Graph Manager.

The graph for one project is an explicit typed state (:class:`GraphState`)
changed only by a pure reducer over intents::

    CreateNode -> AdvanceStage -> (AdvanceStage | FailStage)
    UpdatePayload, AddEdge, SelectNode, DeleteNode, SetTopic

:class:`ResearchGraph` owns the current snapshot, allocates node ids and
notifies listeners (persistence, CLI rendering) after every change.
External callers read snapshots and submit intents; they never mutate
node internals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog

from research_graph.exceptions import (
    GraphError,
    InvalidTransitionError,
    NodeNotFoundError,
)
from research_graph.state import (
    Edge,
    EdgeKind,
    GraphState,
    NodeKind,
    NodeStatus,
    ResearchNode,
    can_transition,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from research_graph.state import NodePayload

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateNode:
    """Insert *node* and wire it under ``node.parent_id`` with a tree edge."""

    node: ResearchNode


@dataclass(frozen=True)
class AdvanceStage:
    """Move a node forward in its lifecycle, optionally replacing its payload."""

    node_id: str
    status: NodeStatus
    payload: NodePayload | None = None


@dataclass(frozen=True)
class FailStage:
    node_id: str
    error: str


@dataclass(frozen=True)
class UpdatePayload:
    """Replace a node's payload without touching its status."""

    node_id: str
    payload: NodePayload


@dataclass(frozen=True)
class AddEdge:
    source: str
    target: str
    kind: EdgeKind = EdgeKind.TREE


@dataclass(frozen=True)
class SelectNode:
    """Toggle a Report node in the project's consolidation selection."""

    node_id: str
    selected: bool = True


@dataclass(frozen=True)
class DeleteNode:
    """Remove a node, its descendants and every edge touching them."""

    node_id: str


@dataclass(frozen=True)
class SetTopic:
    topic: str


@dataclass(frozen=True)
class ClearSelection:
    pass


Intent = (
    CreateNode
    | AdvanceStage
    | FailStage
    | UpdatePayload
    | AddEdge
    | SelectNode
    | DeleteNode
    | SetTopic
    | ClearSelection
)


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def edge_id(source: str, target: str) -> str:
    return f"edge-{source}-{target}"


def _require(state: GraphState, node_id: str) -> ResearchNode:
    node = state.nodes.get(node_id)
    if node is None:
        raise NodeNotFoundError(f"Node {node_id!r} does not exist")
    return node


def _check_payload(node: ResearchNode, payload: NodePayload) -> None:
    if payload.kind != node.kind:
        raise GraphError(
            f"Payload kind {payload.kind!r} does not match node kind {node.kind!r}"
        )


def _descendants(state: GraphState, node_id: str) -> list[str]:
    found: list[str] = []
    stack = [node_id]
    while stack:
        current = stack.pop()
        if current in found or current not in state.nodes:
            continue
        found.append(current)
        stack.extend(state.nodes[current].child_ids)
    return found


def reduce(state: GraphState, intent: Intent) -> GraphState:
    """Apply *intent* to *state* and return the new snapshot.

    *state* is never modified.

    Raises:
        NodeNotFoundError: If the intent references an unknown node.
        InvalidTransitionError: If a status change would move backward.
        GraphError: On any other structurally invalid intent.
    """
    new = state.model_copy(deep=True)

    if isinstance(intent, CreateNode):
        node = intent.node.model_copy(deep=True)
        if node.id in new.nodes:
            raise GraphError(f"Node {node.id!r} already exists")
        _check_payload(node, node.payload)
        if node.parent_id is not None:
            parent = _require(new, node.parent_id)
            if node.id not in parent.child_ids:
                parent.child_ids.append(node.id)
            new.edges.append(
                Edge(id=edge_id(parent.id, node.id), source=parent.id, target=node.id)
            )
        new.nodes[node.id] = node

    elif isinstance(intent, AdvanceStage):
        node = _require(new, intent.node_id)
        if intent.status is NodeStatus.FAILED:
            raise InvalidTransitionError("Use FailStage to fail a node")
        if not can_transition(node.status, intent.status):
            raise InvalidTransitionError(
                f"Node {node.id!r} cannot move from {node.status} to {intent.status}"
            )
        if intent.payload is not None:
            _check_payload(node, intent.payload)
            node.payload = intent.payload
        node.status = intent.status
        node.error = None

    elif isinstance(intent, FailStage):
        node = _require(new, intent.node_id)
        if node.status is NodeStatus.PENDING:
            node.status = NodeStatus.LOADING
        if not can_transition(node.status, NodeStatus.FAILED):
            raise InvalidTransitionError(
                f"Node {node.id!r} cannot move from {node.status} to failed"
            )
        node.status = NodeStatus.FAILED
        node.error = intent.error or "Stage failed"

    elif isinstance(intent, UpdatePayload):
        node = _require(new, intent.node_id)
        _check_payload(node, intent.payload)
        node.payload = intent.payload

    elif isinstance(intent, AddEdge):
        _require(new, intent.source)
        _require(new, intent.target)
        new_id = edge_id(intent.source, intent.target)
        if all(edge.id != new_id for edge in new.edges):
            new.edges.append(
                Edge(
                    id=new_id,
                    source=intent.source,
                    target=intent.target,
                    kind=intent.kind,
                )
            )

    elif isinstance(intent, SelectNode):
        node = _require(new, intent.node_id)
        if node.kind is not NodeKind.REPORT:
            raise GraphError(f"Only report nodes can be selected, not {node.kind}")
        if intent.selected and node.id not in new.selected_reports:
            new.selected_reports.append(node.id)
        elif not intent.selected and node.id in new.selected_reports:
            new.selected_reports.remove(node.id)

    elif isinstance(intent, DeleteNode):
        node = _require(new, intent.node_id)
        doomed = set(_descendants(new, node.id))
        if node.parent_id is not None and node.parent_id in new.nodes:
            parent = new.nodes[node.parent_id]
            parent.child_ids = [cid for cid in parent.child_ids if cid != node.id]
        for node_id in doomed:
            del new.nodes[node_id]
        new.edges = [
            edge
            for edge in new.edges
            if edge.source not in doomed and edge.target not in doomed
        ]
        new.selected_reports = [rid for rid in new.selected_reports if rid not in doomed]

    elif isinstance(intent, SetTopic):
        new.topic = intent.topic

    elif isinstance(intent, ClearSelection):
        new.selected_reports = []

    else:  # pragma: no cover
        raise GraphError(f"Unknown intent: {intent!r}")

    return new


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


@dataclass
class ResearchGraph:
    """Owner of one project's graph snapshot.

    Attributes:
        state: The current snapshot. Replace only via :meth:`dispatch`.
    """

    state: GraphState = field(default_factory=GraphState)
    _listeners: list[Callable[[GraphState], None]] = field(
        default_factory=list, init=False, repr=False
    )
    _allocated: set[str] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        self._allocated.update(self.state.nodes)

    # -- observation --------------------------------------------------------

    def subscribe(self, listener: Callable[[GraphState], None]) -> None:
        """Call *listener* with every new snapshot."""
        self._listeners.append(listener)

    def get(self, node_id: str) -> ResearchNode:
        return _require(self.state, node_id)

    # -- mutation -----------------------------------------------------------

    def dispatch(self, intent: Intent) -> GraphState:
        self.state = reduce(self.state, intent)
        for listener in self._listeners:
            listener(self.state)
        return self.state

    def new_id(self, kind: NodeKind) -> str:
        """Allocate an opaque id that has never been used in this graph."""
        while True:
            candidate = f"{kind.value}-{uuid4().hex[:12]}"
            if candidate not in self._allocated:
                self._allocated.add(candidate)
                return candidate

    def create_node(
        self,
        kind: NodeKind,
        payload: NodePayload,
        *,
        parent_id: str | None = None,
        group_id: str | None = None,
        status: NodeStatus = NodeStatus.PENDING,
    ) -> str:
        node = ResearchNode(
            id=self.new_id(kind),
            kind=kind,
            parent_id=parent_id,
            group_id=group_id,
            payload=payload,
            status=status,
        )
        self.dispatch(CreateNode(node))
        logger.debug(
            "node_created", node_id=node.id, kind=kind.value, parent_id=parent_id
        )
        return node.id

    def start(self, node_id: str) -> None:
        self.dispatch(AdvanceStage(node_id, NodeStatus.LOADING))

    def complete(self, node_id: str, payload: NodePayload | None = None) -> None:
        self.dispatch(AdvanceStage(node_id, NodeStatus.READY, payload))

    def fail(self, node_id: str, error: str) -> None:
        self.dispatch(FailStage(node_id, error))
        logger.info("node_failed", node_id=node_id, error=error)

    def update_payload(self, node_id: str, payload: NodePayload) -> None:
        self.dispatch(UpdatePayload(node_id, payload))

    def add_edge(self, source: str, target: str, kind: EdgeKind = EdgeKind.TREE) -> None:
        self.dispatch(AddEdge(source, target, kind))

    def select(self, node_id: str, selected: bool = True) -> None:
        self.dispatch(SelectNode(node_id, selected))

    def delete(self, node_id: str) -> None:
        self.dispatch(DeleteNode(node_id))
        logger.info("node_deleted", node_id=node_id)

    def set_topic(self, topic: str) -> None:
        self.dispatch(SetTopic(topic))

    def clear_selection(self) -> None:
        self.dispatch(ClearSelection())
