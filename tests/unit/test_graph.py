"""Unit tests for research_graph.graph - intent reducer and graph manager."""

from __future__ import annotations

import pytest

from research_graph.exceptions import GraphError, InvalidTransitionError, NodeNotFoundError
from research_graph.graph import (
    AddEdge,
    AdvanceStage,
    CreateNode,
    FailStage,
    ResearchGraph,
    SelectNode,
    edge_id,
    reduce,
)
from research_graph.state import (
    EdgeKind,
    GraphState,
    GroupPayload,
    NodeKind,
    NodeStatus,
    ReportPayload,
    ResearchNode,
    SearchPayload,
    can_transition,
)


def _chain(graph: ResearchGraph) -> tuple[str, str, str]:
    """Group -> Search -> Report, returning their ids."""
    group = graph.create_node(NodeKind.GROUP, GroupPayload(label="g"), status=NodeStatus.READY)
    search = graph.create_node(NodeKind.SEARCH, SearchPayload(query="q"), parent_id=group)
    report = graph.create_node(NodeKind.REPORT, ReportPayload(), parent_id=search)
    return group, search, report


class TestLifecycle:
    """Status only ever moves forward."""

    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (NodeStatus.PENDING, NodeStatus.LOADING, True),
            (NodeStatus.LOADING, NodeStatus.READY, True),
            (NodeStatus.LOADING, NodeStatus.FAILED, True),
            (NodeStatus.PENDING, NodeStatus.READY, False),
            (NodeStatus.READY, NodeStatus.LOADING, False),
            (NodeStatus.FAILED, NodeStatus.LOADING, False),
            (NodeStatus.READY, NodeStatus.FAILED, False),
        ],
    )
    def test_can_transition(
        self, current: NodeStatus, target: NodeStatus, allowed: bool
    ) -> None:
        assert can_transition(current, target) is allowed

    def test_forward_path(self, graph: ResearchGraph) -> None:
        _, search, _ = _chain(graph)
        graph.start(search)
        graph.complete(search, SearchPayload(query="optimized"))
        node = graph.get(search)
        assert node.status is NodeStatus.READY
        assert node.payload == SearchPayload(query="optimized")

    def test_cannot_move_backward(self, graph: ResearchGraph) -> None:
        _, search, _ = _chain(graph)
        graph.start(search)
        graph.complete(search)
        with pytest.raises(InvalidTransitionError):
            graph.start(search)

    def test_cannot_skip_loading(self, graph: ResearchGraph) -> None:
        _, search, _ = _chain(graph)
        with pytest.raises(InvalidTransitionError):
            graph.complete(search)

    def test_advance_to_failed_rejected(self, graph: ResearchGraph) -> None:
        _, search, _ = _chain(graph)
        with pytest.raises(InvalidTransitionError):
            graph.dispatch(AdvanceStage(search, NodeStatus.FAILED))

    def test_fail_from_pending(self, graph: ResearchGraph) -> None:
        _, search, _ = _chain(graph)
        graph.fail(search, "Search failed")
        node = graph.get(search)
        assert node.status is NodeStatus.FAILED
        assert node.error == "Search failed"

    def test_fail_after_ready_rejected(self, graph: ResearchGraph) -> None:
        _, search, _ = _chain(graph)
        graph.start(search)
        graph.complete(search)
        with pytest.raises(InvalidTransitionError):
            graph.fail(search, "late")

    def test_failure_leaves_siblings_alone(self, graph: ResearchGraph) -> None:
        group, search, _ = _chain(graph)
        sibling = graph.create_node(NodeKind.SEARCH, SearchPayload(query="s"), parent_id=group)
        graph.start(sibling)
        graph.fail(search, "boom")
        assert graph.get(sibling).status is NodeStatus.LOADING
        assert graph.get(sibling).error is None

    def test_payload_kind_must_match(self, graph: ResearchGraph) -> None:
        _, search, _ = _chain(graph)
        graph.start(search)
        with pytest.raises(GraphError, match="does not match"):
            graph.complete(search, ReportPayload())


class TestStructure:
    """Tree wiring, edges and unique ids."""

    def test_create_wires_parent_and_edge(self, graph: ResearchGraph) -> None:
        group, search, report = _chain(graph)
        assert graph.get(group).child_ids == [search]
        assert graph.get(report).parent_id == search
        assert [(e.source, e.target) for e in graph.state.edges] == [
            (group, search),
            (search, report),
        ]
        assert graph.state.edges[0].id == edge_id(group, search)

    def test_unknown_parent(self, graph: ResearchGraph) -> None:
        with pytest.raises(NodeNotFoundError):
            graph.create_node(NodeKind.SEARCH, SearchPayload(query="q"), parent_id="missing")

    def test_duplicate_id_rejected(self) -> None:
        node = ResearchNode(id="group-1", kind=NodeKind.GROUP, payload=GroupPayload())
        state = reduce(GraphState(), CreateNode(node))
        with pytest.raises(GraphError, match="already exists"):
            reduce(state, CreateNode(node))

    def test_ids_never_reused(self, graph: ResearchGraph) -> None:
        group, _, _ = _chain(graph)
        graph.delete(group)
        fresh = {graph.new_id(NodeKind.GROUP) for _ in range(50)}
        assert group not in fresh
        assert len(fresh) == 50

    def test_ids_carry_kind(self, graph: ResearchGraph) -> None:
        assert graph.new_id(NodeKind.FOLLOW_UP).startswith("follow_up-")

    def test_add_edge_idempotent(self, graph: ResearchGraph) -> None:
        _, search, report = _chain(graph)
        other = graph.create_node(NodeKind.REPORT, ReportPayload(), parent_id=search)
        graph.add_edge(report, other, EdgeKind.CONSOLIDATED)
        graph.add_edge(report, other, EdgeKind.CONSOLIDATED)
        assert len(graph.state.incoming(other)) == 2

    def test_add_edge_unknown_node(self, graph: ResearchGraph) -> None:
        _, search, _ = _chain(graph)
        with pytest.raises(NodeNotFoundError):
            graph.dispatch(AddEdge(search, "nowhere"))


class TestDelete:
    """Deleting removes the whole subtree and dangling references."""

    def test_removes_descendants_and_edges(self, graph: ResearchGraph) -> None:
        group, search, report = _chain(graph)
        graph.select(report)
        graph.delete(search)

        assert set(graph.state.nodes) == {group}
        assert graph.get(group).child_ids == []
        assert graph.state.edges == []
        assert graph.state.selected_reports == []

    def test_unknown(self, graph: ResearchGraph) -> None:
        with pytest.raises(NodeNotFoundError):
            graph.delete("nope")


class TestSelection:
    def test_select_and_clear(self, graph: ResearchGraph) -> None:
        _, _, report = _chain(graph)
        graph.select(report)
        graph.select(report)
        assert graph.state.selected_reports == [report]
        graph.select(report, selected=False)
        assert graph.state.selected_reports == []
        graph.select(report)
        graph.clear_selection()
        assert graph.state.selected_reports == []

    def test_only_reports(self, graph: ResearchGraph) -> None:
        group, _, _ = _chain(graph)
        with pytest.raises(GraphError, match="Only report nodes"):
            graph.dispatch(SelectNode(group))


class TestPurity:
    """The reducer never mutates its input snapshot."""

    def test_reduce_returns_new_state(self, graph: ResearchGraph) -> None:
        _, search, _ = _chain(graph)
        before = graph.state
        after = reduce(before, FailStage(search, "x"))
        assert before.nodes[search].status is NodeStatus.PENDING
        assert after.nodes[search].status is NodeStatus.FAILED

    def test_listeners_see_each_snapshot(self, graph: ResearchGraph) -> None:
        seen: list[int] = []
        graph.subscribe(lambda state: seen.append(len(state.nodes)))
        _chain(graph)
        graph.set_topic("topic")
        assert seen == [1, 2, 3, 3]
        assert graph.state.topic == "topic"

    def test_existing_ids_reserved(self) -> None:
        node = ResearchNode(id="group-abc", kind=NodeKind.GROUP, payload=GroupPayload())
        graph = ResearchGraph(state=reduce(GraphState(), CreateNode(node)))
        assert "group-abc" in graph._allocated
