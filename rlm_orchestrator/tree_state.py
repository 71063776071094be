"""Event-sourced projection of the recursive call tree.

`apply_event` is a pure fold step: it never mutates the state or nodes it is given, and it
reads timestamps from the events rather than the clock. Replaying the same events always
yields the same tree.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .events import (
    DelegationFinished,
    DelegationStarted,
    ExecutionComplete,
    ExecutionError,
    ExecutionEvent,
    ExecutionNode,
    NodeCreated,
    NodeErrored,
    NodeOutputAppended,
    NodeStatus,
    NodeStatusChanged,
)


IDLE = "idle"
RUNNING = "running"
COMPLETED = "completed"
ERROR = "error"


@dataclass(frozen=True)
class TreeState:
    # Insertion order of created nodes is preserved.
    nodes: Dict[str, ExecutionNode] = field(default_factory=dict)
    root_context_id: str = ""
    status: str = IDLE
    final_result: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (COMPLETED, ERROR)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "nodes": [n.to_dict() for n in self.nodes.values()],
            "rootContextId": self.root_context_id,
            "status": self.status,
        }
        if self.final_result is not None:
            d["finalResult"] = self.final_result
        if self.error is not None:
            d["error"] = self.error
        return d


# Forward moves of the node state machine; anything else is ignored by the fold.
_TRANSITIONS = {
    NodeStatus.PENDING: {NodeStatus.EXECUTING, NodeStatus.ERROR},
    NodeStatus.EXECUTING: {NodeStatus.LLM_CALLING, NodeStatus.COMPLETED, NodeStatus.ERROR},
    NodeStatus.LLM_CALLING: {NodeStatus.EXECUTING, NodeStatus.COMPLETED, NodeStatus.ERROR},
}


def can_transition(current: NodeStatus, new: NodeStatus) -> bool:
    return new in _TRANSITIONS.get(current, ())


def initial_state() -> TreeState:
    return TreeState()


def apply_event(state: TreeState, event: ExecutionEvent) -> TreeState:
    """Fold one event into the tree state, returning a new state."""

    if isinstance(event, NodeCreated):
        if event.node.id in state.nodes:
            return state
        node = dataclasses.replace(event.node)
        nodes = dict(state.nodes)
        nodes[node.id] = node
        status = RUNNING if state.status == IDLE else state.status
        return dataclasses.replace(
            state,
            nodes=nodes,
            status=status,
            root_context_id=state.root_context_id or node.context_id,
        )

    if isinstance(event, NodeStatusChanged):

        def _status(node: ExecutionNode) -> ExecutionNode:
            if not can_transition(node.status, event.status):
                return node
            changes: Dict[str, Any] = {"status": event.status}
            if event.code is not None:
                changes["code"] = event.code
            if event.status.is_terminal:
                changes["completed_at"] = max(event.ts, node.started_at)
            return dataclasses.replace(node, **changes)

        return _update_node(state, event.node_id, _status)

    if isinstance(event, NodeOutputAppended):
        return _update_node(
            state,
            event.node_id,
            lambda n: dataclasses.replace(n, output=n.output + event.text + "\n"),
        )

    if isinstance(event, DelegationStarted):
        return _update_node(
            state, event.node_id, lambda n: dataclasses.replace(n, delegated_prompt=event.prompt)
        )

    if isinstance(event, DelegationFinished):
        return _update_node(
            state, event.node_id, lambda n: dataclasses.replace(n, delegated_response=event.response)
        )

    if isinstance(event, NodeErrored):

        def _errored(node: ExecutionNode) -> ExecutionNode:
            if node.status.is_terminal:
                return node
            return dataclasses.replace(
                node,
                status=NodeStatus.ERROR,
                error=event.error,
                completed_at=max(event.ts, node.started_at),
            )

        return _update_node(state, event.node_id, _errored)

    if isinstance(event, ExecutionComplete):
        if state.is_terminal:
            return state
        return dataclasses.replace(state, status=COMPLETED, final_result=event.result)

    if isinstance(event, ExecutionError):
        if state.is_terminal:
            return state
        return dataclasses.replace(state, status=ERROR, error=event.error)

    return state


def fold_events(events: Iterable[ExecutionEvent], state: Optional[TreeState] = None) -> TreeState:
    state = state if state is not None else initial_state()
    for event in events:
        state = apply_event(state, event)
    return state


def _update_node(state: TreeState, node_id: str, fn) -> TreeState:
    node = state.nodes.get(node_id)
    if node is None:
        return state
    nodes = dict(state.nodes)
    nodes[node_id] = fn(node)
    return dataclasses.replace(state, nodes=nodes)


# ------------------------- Queries -------------------------


def get_node(state: TreeState, node_id: str) -> Optional[ExecutionNode]:
    return state.nodes.get(node_id)


def get_children(state: TreeState, node_id: str) -> List[ExecutionNode]:
    return [n for n in state.nodes.values() if n.parent_id == node_id]


def get_root(state: TreeState) -> Optional[ExecutionNode]:
    for node in state.nodes.values():
        if node.parent_id is None:
            return node
    return None


def tree_stats(state: TreeState, *, now: Optional[float] = None) -> Dict[str, Any]:
    """Counts by status, deepest level reached, and root wall-clock duration (seconds).

    `now` is only consulted while the root is still running.
    """

    nodes = list(state.nodes.values())
    root = get_root(state)
    duration = 0.0
    if root is not None:
        end = root.completed_at
        if end is None:
            end = now if now is not None else root.started_at
        duration = max(0.0, end - root.started_at)

    return {
        "total_nodes": len(nodes),
        "completed_nodes": sum(1 for n in nodes if n.status == NodeStatus.COMPLETED),
        "error_nodes": sum(1 for n in nodes if n.status == NodeStatus.ERROR),
        "running_nodes": sum(
            1 for n in nodes if n.status in (NodeStatus.EXECUTING, NodeStatus.LLM_CALLING)
        ),
        "max_depth": max((n.depth for n in nodes), default=0),
        "duration": duration,
    }
