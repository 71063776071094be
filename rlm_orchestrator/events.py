"""Execution tree nodes and the events that describe their lifecycle.

Events are immutable records stamped with the time they were built, so the tree state can
be rebuilt from an event sequence without consulting a clock. The wire form (`to_dict`)
uses the camelCase field names and `node:*` / `execution:*` type tags that clients expect.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Type


class NodeStatus(str, enum.Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    LLM_CALLING = "llm-calling"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.ERROR)


def new_node_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass
class ExecutionNode:
    id: str
    parent_id: Optional[str]
    depth: int
    status: NodeStatus
    context_id: str
    code: str = ""
    output: str = ""
    delegated_prompt: Optional[str] = None
    delegated_response: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "parentId": self.parent_id,
            "depth": self.depth,
            "status": self.status.value,
            "code": self.code,
            "output": self.output,
            "contextId": self.context_id,
            "startedAt": self.started_at,
        }
        if self.delegated_prompt is not None:
            d["delegatedPrompt"] = self.delegated_prompt
        if self.delegated_response is not None:
            d["delegatedResponse"] = self.delegated_response
        if self.completed_at is not None:
            d["completedAt"] = self.completed_at
        if self.error is not None:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExecutionNode":
        return cls(
            id=d["id"],
            parent_id=d.get("parentId"),
            depth=int(d["depth"]),
            status=NodeStatus(d["status"]),
            context_id=d.get("contextId", ""),
            code=d.get("code", ""),
            output=d.get("output", ""),
            delegated_prompt=d.get("delegatedPrompt"),
            delegated_response=d.get("delegatedResponse"),
            started_at=float(d.get("startedAt", 0.0)),
            completed_at=d.get("completedAt"),
            error=d.get("error"),
        )


# ------------------------- Events -------------------------


class ExecutionEvent:
    """Base for all lifecycle events. Subclasses are frozen dataclasses."""

    type: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.type}
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, ExecutionNode):
                value = value.to_dict()
            elif isinstance(value, enum.Enum):
                value = value.value
            d[_WIRE_NAMES.get(f.name, f.name)] = value
        return d


@dataclass(frozen=True)
class NodeCreated(ExecutionEvent):
    type: ClassVar[str] = "node:created"
    node: ExecutionNode
    ts: float = field(default_factory=time.time)


@dataclass(frozen=True)
class NodeStatusChanged(ExecutionEvent):
    type: ClassVar[str] = "node:status"
    node_id: str
    status: NodeStatus
    # Program text, sent with the first transition into `executing`.
    code: Optional[str] = None
    ts: float = field(default_factory=time.time)


@dataclass(frozen=True)
class NodeOutputAppended(ExecutionEvent):
    type: ClassVar[str] = "node:output"
    node_id: str
    text: str
    ts: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DelegationStarted(ExecutionEvent):
    type: ClassVar[str] = "node:llm-start"
    node_id: str
    prompt: str
    ts: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DelegationFinished(ExecutionEvent):
    type: ClassVar[str] = "node:llm-end"
    node_id: str
    response: str
    ts: float = field(default_factory=time.time)


@dataclass(frozen=True)
class NodeErrored(ExecutionEvent):
    type: ClassVar[str] = "node:error"
    node_id: str
    error: str
    ts: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ExecutionComplete(ExecutionEvent):
    type: ClassVar[str] = "execution:complete"
    result: str
    ts: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ExecutionError(ExecutionEvent):
    type: ClassVar[str] = "execution:error"
    error: str
    ts: float = field(default_factory=time.time)


_WIRE_NAMES = {"node_id": "nodeId"}

_EVENT_TYPES: Dict[str, Type[ExecutionEvent]] = {
    cls.type: cls
    for cls in (
        NodeCreated,
        NodeStatusChanged,
        NodeOutputAppended,
        DelegationStarted,
        DelegationFinished,
        NodeErrored,
        ExecutionComplete,
        ExecutionError,
    )
}


def event_from_dict(d: Dict[str, Any]) -> ExecutionEvent:
    """Inverse of `ExecutionEvent.to_dict` (used to replay logged streams)."""
    try:
        cls = _EVENT_TYPES[d["type"]]
    except KeyError as e:
        raise ValueError(f"Unknown event type: {d.get('type')!r}") from e

    kwargs: Dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        wire = _WIRE_NAMES.get(f.name, f.name)
        if wire not in d:
            continue
        value = d[wire]
        if f.name == "node":
            value = ExecutionNode.from_dict(value)
        elif f.name == "status":
            value = NodeStatus(value)
        kwargs[f.name] = value
    return cls(**kwargs)


def is_terminal_event(event: ExecutionEvent) -> bool:
    return isinstance(event, (ExecutionComplete, ExecutionError))


def encode_sse(event: ExecutionEvent) -> str:
    """Frame one event for a text/event-stream response."""
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
