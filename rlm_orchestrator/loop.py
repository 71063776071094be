"""Iterate-intercept-resume loop for one node.

Each iteration runs the whole program from the top. Prompts resolved so far are replayed
through the cache snippet, so only the first unanswered call reaches the orchestrator:

    pending -> executing -> (llm-calling <-> executing)* -> completed | error

The loop only emits `executing` / `llm-calling` transitions and output. Whoever owns the
node reports its terminal state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List

from . import protocol
from .errors import IterationBudgetExceeded, ProgramError, SessionCrashed
from .events import NodeStatus, NodeStatusChanged
from .protocol import FinalResult, PendingCall

if TYPE_CHECKING:
    from .emitter import EventEmitter
    from .resolver import DelegationResolver
    from .sandbox import SandboxSession


IMPLICIT_RESULT = "Execution completed (no FINAL() called)"


@dataclass(frozen=True)
class LoopResult:
    result: str
    # Marker-free output of every iteration, joined.
    output: str
    iterations: int
    # False when the program exited cleanly without calling FINAL().
    explicit: bool


class ExecutionLoop:
    def __init__(
        self,
        *,
        resolver: "DelegationResolver",
        emitter: "EventEmitter",
        max_iterations: int = 100,
        log_limit: int = 200_000,
    ):
        self.resolver = resolver
        self.emitter = emitter
        self.max_iterations = max_iterations
        self.log_limit = log_limit

    async def run(
        self,
        *,
        session: "SandboxSession",
        body: str,
        node_id: str,
        depth: int,
        context_id: str,
    ) -> LoopResult:
        cache: Dict[str, str] = {}
        outputs: List[str] = []
        code = body

        for iteration in range(1, self.max_iterations + 1):
            self.emitter.emit(
                NodeStatusChanged(
                    node_id=node_id,
                    status=NodeStatus.EXECUTING,
                    code=body if iteration == 1 else None,
                )
            )

            run = await session.run(code)

            cleaned = protocol.strip_markers(run.output)
            if cleaned:
                outputs.append(cleaned)
                self.emitter.output(node_id, cleaned)

            if run.exit_status is None:
                self._log_iteration(node_id, depth, iteration, code, run, "crashed")
                raise SessionCrashed("Sandbox crashed without an exit status", run.output)

            decoded = protocol.decode(run.stdout)
            self._log_iteration(node_id, depth, iteration, code, run, _kind(decoded))

            if isinstance(decoded, FinalResult):
                return LoopResult(
                    result=decoded.text,
                    output="\n".join(outputs),
                    iterations=iteration,
                    explicit=True,
                )

            if isinstance(decoded, PendingCall):
                # No run left to consume the answers.
                if iteration == self.max_iterations:
                    break
                self.emitter.emit(NodeStatusChanged(node_id=node_id, status=NodeStatus.LLM_CALLING))
                responses = await self.resolver.resolve(
                    decoded,
                    parent_id=node_id,
                    parent_depth=depth,
                    context_id=context_id,
                )
                cache.update(responses)
                code = protocol.encode_cache(cache) + "\n" + body
                continue

            if run.ok:
                return LoopResult(
                    result=cleaned or IMPLICIT_RESULT,
                    output="\n".join(outputs),
                    iterations=iteration,
                    explicit=False,
                )

            raise ProgramError(
                f"Program exited with status {run.exit_status}",
                run.output.strip(),
                run.exit_status,
            )

        raise IterationBudgetExceeded(
            f"Max iterations exceeded ({self.max_iterations}) without a FINAL() result"
        )

    def _log_iteration(self, node_id, depth, iteration, code, run, decoded_kind) -> None:
        self.emitter.log(
            {
                "type": "step",
                "node_id": node_id,
                "depth": depth,
                "iteration": iteration,
                "code": _truncate_for_log(code, self.log_limit),
                "output": _truncate_for_log(run.output, self.log_limit),
                "exit_status": run.exit_status,
                "decoded": decoded_kind,
            }
        )


def _kind(decoded) -> str:
    if isinstance(decoded, FinalResult):
        return "final"
    return protocol.pending_summary(decoded)


def _truncate_for_log(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n...[truncated for log; chars={len(text)} limit={limit}]"
