"""Tests for the event fold and tree queries."""

import json

import pytest

from rlm_orchestrator.events import (
    DelegationFinished,
    DelegationStarted,
    ExecutionComplete,
    ExecutionError,
    ExecutionNode,
    NodeCreated,
    NodeErrored,
    NodeOutputAppended,
    NodeStatus,
    NodeStatusChanged,
    encode_sse,
    event_from_dict,
    is_terminal_event,
)
from rlm_orchestrator.tree_state import (
    COMPLETED,
    ERROR,
    IDLE,
    RUNNING,
    apply_event,
    can_transition,
    fold_events,
    get_children,
    get_node,
    get_root,
    initial_state,
    tree_stats,
)


def _node(node_id, parent_id=None, depth=0, status=NodeStatus.PENDING, started_at=100.0):
    return ExecutionNode(
        id=node_id,
        parent_id=parent_id,
        depth=depth,
        status=status,
        context_id="ctx-1",
        started_at=started_at,
    )


def _scenario():
    """Root delegates one batch of two prompts; both children answer directly."""
    return [
        NodeCreated(node=_node("root"), ts=100.0),
        DelegationStarted(node_id="root", prompt="count pairs", ts=100.0),
        NodeStatusChanged(node_id="root", status=NodeStatus.EXECUTING, code="print(1)", ts=101.0),
        NodeOutputAppended(node_id="root", text="Processing 2 queries", ts=101.5),
        NodeStatusChanged(node_id="root", status=NodeStatus.LLM_CALLING, ts=102.0),
        NodeCreated(
            node=_node("c1", "root", 1, NodeStatus.LLM_CALLING, started_at=102.0), ts=102.0
        ),
        NodeCreated(
            node=_node("c2", "root", 1, NodeStatus.LLM_CALLING, started_at=102.1), ts=102.1
        ),
        DelegationFinished(node_id="c1", response="0", ts=103.0),
        NodeStatusChanged(node_id="c1", status=NodeStatus.COMPLETED, ts=103.0),
        NodeErrored(node_id="c2", error="rate limited", ts=103.5),
        NodeStatusChanged(node_id="c2", status=NodeStatus.ERROR, ts=103.5),
        NodeStatusChanged(node_id="root", status=NodeStatus.EXECUTING, ts=104.0),
        NodeOutputAppended(node_id="root", text="1", ts=104.5),
        DelegationFinished(node_id="root", response="1", ts=105.0),
        NodeStatusChanged(node_id="root", status=NodeStatus.COMPLETED, ts=105.0),
        ExecutionComplete(result="1", ts=105.0),
    ]


def test_initial_state():
    state = initial_state()
    assert state.status == IDLE
    assert state.nodes == {}
    assert get_root(state) is None


def test_first_node_starts_the_run():
    state = apply_event(initial_state(), NodeCreated(node=_node("root"), ts=100.0))
    assert state.status == RUNNING
    assert state.root_context_id == "ctx-1"
    assert get_root(state).id == "root"


def test_full_scenario():
    state = fold_events(_scenario())

    assert state.status == COMPLETED
    assert state.final_result == "1"
    root = get_node(state, "root")
    assert root.status == NodeStatus.COMPLETED
    assert root.code == "print(1)"
    assert root.output == "Processing 2 queries\n1\n"
    assert root.delegated_prompt == "count pairs"
    assert root.delegated_response == "1"
    assert root.completed_at == 105.0

    assert [n.id for n in get_children(state, "root")] == ["c1", "c2"]
    c2 = get_node(state, "c2")
    assert c2.status == NodeStatus.ERROR
    assert c2.error == "rate limited"
    assert c2.completed_at == 103.5


def test_depth_is_parent_depth_plus_one():
    state = fold_events(_scenario())
    for node in state.nodes.values():
        if node.parent_id is not None:
            assert node.depth == state.nodes[node.parent_id].depth + 1


def test_fold_is_pure_and_deterministic():
    events = _scenario()
    before = fold_events(events[:5])
    snapshot = before.to_dict()

    after = fold_events(events[5:], before)

    assert before.to_dict() == snapshot
    assert after.to_dict() == fold_events(events).to_dict()
    assert fold_events(events).to_dict() == fold_events(events).to_dict()


def test_terminal_nodes_are_never_resurrected():
    events = _scenario() + [
        NodeStatusChanged(node_id="c1", status=NodeStatus.EXECUTING, ts=200.0),
        NodeErrored(node_id="c1", error="late", ts=201.0),
        NodeStatusChanged(node_id="c2", status=NodeStatus.COMPLETED, ts=202.0),
    ]
    state = fold_events(events)
    c1 = get_node(state, "c1")
    assert c1.status == NodeStatus.COMPLETED
    assert c1.error is None
    assert c1.completed_at == 103.0
    assert get_node(state, "c2").status == NodeStatus.ERROR


def test_completed_at_never_precedes_started_at():
    events = [
        NodeCreated(node=_node("root", started_at=500.0), ts=500.0),
        NodeStatusChanged(node_id="root", status=NodeStatus.ERROR, ts=499.0),
    ]
    assert get_node(fold_events(events), "root").completed_at == 500.0


def test_recreating_a_node_does_not_replace_it():
    events = [
        NodeCreated(node=_node("a"), ts=1.0),
        NodeStatusChanged(node_id="a", status=NodeStatus.EXECUTING, ts=2.0),
        NodeStatusChanged(node_id="a", status=NodeStatus.COMPLETED, ts=3.0),
        NodeCreated(node=_node("a", status=NodeStatus.EXECUTING, started_at=4.0), ts=4.0),
    ]
    node = get_node(fold_events(events), "a")
    assert node.status == NodeStatus.COMPLETED
    assert node.completed_at == 3.0


@pytest.mark.parametrize(
    "path,expected",
    [
        ([NodeStatus.EXECUTING, NodeStatus.PENDING], NodeStatus.EXECUTING),
        ([NodeStatus.LLM_CALLING], NodeStatus.PENDING),
        ([NodeStatus.COMPLETED], NodeStatus.PENDING),
        ([NodeStatus.EXECUTING, NodeStatus.LLM_CALLING, NodeStatus.PENDING], NodeStatus.LLM_CALLING),
        ([NodeStatus.EXECUTING, NodeStatus.LLM_CALLING, NodeStatus.EXECUTING], NodeStatus.EXECUTING),
        ([NodeStatus.ERROR], NodeStatus.ERROR),
    ],
)
def test_status_only_moves_forward(path, expected):
    events = [NodeCreated(node=_node("a"), ts=1.0)]
    events += [
        NodeStatusChanged(node_id="a", status=status, ts=2.0 + i) for i, status in enumerate(path)
    ]
    assert get_node(fold_events(events), "a").status == expected


def test_can_transition():
    assert can_transition(NodeStatus.PENDING, NodeStatus.EXECUTING)
    assert can_transition(NodeStatus.LLM_CALLING, NodeStatus.COMPLETED)
    assert not can_transition(NodeStatus.EXECUTING, NodeStatus.PENDING)
    assert not can_transition(NodeStatus.COMPLETED, NodeStatus.ERROR)


def test_terminal_execution_ignores_later_events():
    events = _scenario() + [ExecutionError(error="too late", ts=300.0)]
    state = fold_events(events)
    assert state.status == COMPLETED
    assert state.error is None

    failed = fold_events(
        [NodeCreated(node=_node("root"), ts=1.0), ExecutionError(error="boom", ts=2.0)]
        + [ExecutionComplete(result="x", ts=3.0)]
    )
    assert failed.status == ERROR
    assert failed.error == "boom"
    assert failed.final_result is None


def test_events_for_unknown_nodes_are_ignored():
    state = fold_events([NodeCreated(node=_node("root"), ts=1.0)])
    after = apply_event(state, NodeOutputAppended(node_id="ghost", text="boo", ts=2.0))
    assert after is state


def test_tree_stats():
    stats = tree_stats(fold_events(_scenario()))
    assert stats == {
        "total_nodes": 3,
        "completed_nodes": 2,
        "error_nodes": 1,
        "running_nodes": 0,
        "max_depth": 1,
        "duration": 5.0,
    }


def test_tree_stats_while_running_uses_now():
    state = fold_events(_scenario()[:6])
    stats = tree_stats(state, now=110.0)
    assert stats["running_nodes"] == 2
    assert stats["duration"] == 10.0


# =============================================================================
# Wire format
# =============================================================================


def test_event_wire_form():
    event = NodeStatusChanged(node_id="abc", status=NodeStatus.LLM_CALLING, ts=1.5)
    assert event.to_dict() == {"type": "node:status", "nodeId": "abc", "status": "llm-calling", "ts": 1.5}


def test_sse_frame():
    frame = encode_sse(ExecutionComplete(result="héllo", ts=2.0))
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "execution:complete", "result": "héllo", "ts": 2.0}


def test_replay_from_wire_form():
    events = _scenario()
    replayed = [event_from_dict(json.loads(json.dumps(e.to_dict()))) for e in events]
    assert replayed == events
    assert fold_events(replayed).to_dict() == fold_events(events).to_dict()


def test_terminal_events():
    assert is_terminal_event(ExecutionComplete(result="x"))
    assert is_terminal_event(ExecutionError(error="x"))
    assert not is_terminal_event(NodeOutputAppended(node_id="a", text="x"))
