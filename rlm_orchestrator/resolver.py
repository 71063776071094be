"""Resolution of pending calls into child nodes.

A child below `max_depth` runs its own generated program in a fresh sandbox (recursive
delegation); a child at the cap gets one direct model answer (leaf delegation). Batches are
throttled in fixed groups to stay under the upstream rate limit.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import DelegationError
from .events import (
    DelegationFinished,
    DelegationStarted,
    ExecutionNode,
    NodeCreated,
    NodeErrored,
    NodeStatus,
    NodeStatusChanged,
    new_node_id,
)
from .protocol import BATCH, PendingCall
from .prompts import SUB_SYSTEM_PROMPT

if TYPE_CHECKING:
    from .emitter import EventEmitter
    from .engine import LLMClient


# (prompt, child node id, child depth) -> response text
SubtaskRunner = Callable[[str, str, int], Awaitable[str]]


class DelegationResolver:
    def __init__(
        self,
        *,
        client: "LLMClient",
        emitter: "EventEmitter",
        max_depth: int,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
        subtask_runner: Optional[SubtaskRunner] = None,
        group_size: int = 10,
        stagger_seconds: float = 0.1,
        cooldown_seconds: float = 2.0,
        system_prompt: str = SUB_SYSTEM_PROMPT,
    ):
        self.client = client
        self.emitter = emitter
        self.max_depth = max_depth
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.subtask_runner = subtask_runner
        self.group_size = max(1, group_size)
        self.stagger_seconds = stagger_seconds
        self.cooldown_seconds = cooldown_seconds
        self.system_prompt = system_prompt

    async def resolve(
        self,
        call: PendingCall,
        *,
        parent_id: str,
        parent_depth: int,
        context_id: str,
    ) -> Dict[str, str]:
        """Resolve every prompt in `call`; returns prompt -> response.

        Failed prompts are reported on their own child nodes while the rest keep going.
        Once everything has settled, any failure raises `DelegationError` so nothing
        unresolved ends up cached.
        """

        prompts = list(dict.fromkeys(call.prompts))
        if not prompts:
            return {}

        is_batch = call.kind == BATCH
        total = len(prompts)
        responses: Dict[str, str] = {}
        failures: Dict[str, str] = {}

        if is_batch:
            self.emitter.output(
                parent_id,
                f"Processing {total} queries ({self.group_size} at a time, throttled)...",
            )

        for start in range(0, total, self.group_size):
            group = prompts[start : start + self.group_size]

            # Child nodes are created lazily, one group at a time.
            children = [
                (self._create_child(prompt, parent_id, parent_depth, context_id), prompt)
                for prompt in group
            ]
            results = await asyncio.gather(
                *(
                    self._resolve_child(idx, node_id, prompt, parent_depth + 1)
                    for idx, (node_id, prompt) in enumerate(children)
                ),
                return_exceptions=True,
            )

            for (_, prompt), result in zip(children, results):
                if isinstance(result, Exception):
                    failures[prompt] = str(result) or type(result).__name__
                elif isinstance(result, BaseException):
                    raise result
                else:
                    responses[prompt] = result

            done = min(start + self.group_size, total)
            if is_batch:
                self.emitter.output(parent_id, f"Completed {done}/{total}")

            if done < total and self.cooldown_seconds > 0:
                if is_batch:
                    self.emitter.output(
                        parent_id, f"Cooling down {int(self.cooldown_seconds * 1000)}ms..."
                    )
                await asyncio.sleep(self.cooldown_seconds)

        if failures:
            raise DelegationError(_failure_message(failures), failures)
        return responses

    def _create_child(self, prompt: str, parent_id: str, parent_depth: int, context_id: str) -> str:
        node = ExecutionNode(
            id=new_node_id(),
            parent_id=parent_id,
            depth=parent_depth + 1,
            status=NodeStatus.LLM_CALLING,
            context_id=context_id,
            delegated_prompt=prompt,
        )
        self.emitter.emit(NodeCreated(node=node))
        self.emitter.emit(DelegationStarted(node_id=node.id, prompt=prompt))
        return node.id

    async def _resolve_child(self, idx: int, node_id: str, prompt: str, depth: int) -> str:
        if idx > 0 and self.stagger_seconds > 0:
            await asyncio.sleep(idx * self.stagger_seconds)

        try:
            if depth < self.max_depth and self.subtask_runner is not None:
                response = await self.subtask_runner(prompt, node_id, depth)
            else:
                response = await self._leaf(prompt, node_id, depth)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            self.emitter.emit(NodeErrored(node_id=node_id, error=message))
            self.emitter.emit(NodeStatusChanged(node_id=node_id, status=NodeStatus.ERROR))
            raise

        self.emitter.emit(DelegationFinished(node_id=node_id, response=response))
        self.emitter.emit(NodeStatusChanged(node_id=node_id, status=NodeStatus.COMPLETED))
        return response

    async def _leaf(self, prompt: str, node_id: str, depth: int) -> str:
        self.emitter.output(node_id, f"[depth {depth}] Max depth reached, answering directly...")
        # The answer is used verbatim; it is never parsed as a program.
        return await self.client.complete(
            model=self.model,
            messages=[
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


def _failure_message(failures: Dict[str, str]) -> str:
    items: List[Tuple[str, str]] = list(failures.items())
    first_prompt, first_error = items[0]
    preview = first_prompt.replace("\n", " ")[:80]
    extra = f" (+{len(items) - 1} more)" if len(items) > 1 else ""
    return f"Delegation failed for {len(items)} prompt(s){extra}: {preview!r}: {first_error}"
