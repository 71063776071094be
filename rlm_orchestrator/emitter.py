from __future__ import annotations

import datetime as _dt
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .events import (
    DelegationFinished,
    DelegationStarted,
    ExecutionEvent,
    NodeCreated,
    NodeErrored,
    NodeOutputAppended,
    NodeStatusChanged,
)


EventSink = Callable[[ExecutionEvent], None]


class JSONLLogger:
    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, entry: Dict[str, Any]) -> None:
        # Avoid non-serializable objects.
        def _default(o: Any) -> str:
            return f"<{type(o).__name__}>"

        line = json.dumps(entry, default=_default, ensure_ascii=False)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")


class EventEmitter:
    """Delivers events to the caller's sink in order, mirroring them to the debug log."""

    def __init__(
        self,
        sink: EventSink,
        *,
        request_id: str,
        logger: Optional[JSONLLogger] = None,
        verbose: bool = False,
    ):
        self.sink = sink
        self.request_id = request_id
        self.logger = logger
        self.verbose = verbose

    def emit(self, event: ExecutionEvent) -> None:
        self.sink(event)
        self.log({"type": "event", "event": event.to_dict()})
        if self.verbose:
            print(_describe(event))

    def output(self, node_id: str, text: str) -> None:
        self.emit(NodeOutputAppended(node_id=node_id, text=text))

    def log(self, entry: Dict[str, Any]) -> None:
        if self.logger is None:
            return
        record = {
            "ts": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
            "request_id": self.request_id,
        }
        record.update(entry)
        self.logger.write(record)


def _describe(event: ExecutionEvent) -> str:
    if isinstance(event, NodeCreated):
        n = event.node
        return f"[rlm] node {n.id} created depth={n.depth} parent={n.parent_id or '-'} status={n.status.value}"
    if isinstance(event, NodeStatusChanged):
        return f"[rlm] node {event.node_id} -> {event.status.value}"
    if isinstance(event, NodeOutputAppended):
        return f"[rlm] node {event.node_id} output:\n{event.text}"
    if isinstance(event, DelegationStarted):
        return f"[rlm] node {event.node_id} prompt: {_clip(event.prompt)}"
    if isinstance(event, DelegationFinished):
        return f"[rlm] node {event.node_id} response: {_clip(event.response)}"
    if isinstance(event, NodeErrored):
        return f"[rlm] node {event.node_id} error: {event.error}"
    return f"[rlm] {event.type}: {json.dumps(event.to_dict(), ensure_ascii=False)[:400]}"


def _clip(text: str, limit: int = 200) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[:limit] + "..."
