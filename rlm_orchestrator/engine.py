from __future__ import annotations

import ast
import asyncio
import datetime as _dt
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Union

from .emitter import EventEmitter, EventSink, JSONLLogger
from .events import (
    DelegationFinished,
    DelegationStarted,
    ExecutionComplete,
    ExecutionError,
    ExecutionEvent,
    ExecutionNode,
    NodeCreated,
    NodeErrored,
    NodeStatus,
    NodeStatusChanged,
    new_node_id,
)
from .loop import ExecutionLoop
from .prompts import ROOT_SYSTEM_PROMPT, SUB_SYSTEM_PROMPT, build_root_prompt, build_sub_agent_prompt
from .resolver import DelegationResolver
from .sandbox import LocalSandboxProvider, SandboxProvider


class LLMClient:
    """Minimal interface for chat-style LLM calls. Must tolerate concurrent calls."""

    async def complete(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.0,
        max_tokens: Optional[int] = None,
    ) -> str:
        raise NotImplementedError


class LiteLLMClient(LLMClient):
    """LLM client backed by `litellm`.

    This is a thin wrapper so the rest of the codebase doesn't depend on a specific SDK.
    """

    async def complete(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.0,
        max_tokens: Optional[int] = None,
    ) -> str:
        try:
            from litellm import acompletion  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError(
                "litellm is required. Install dependencies (e.g., `uv pip install -e .`) and retry."
            ) from e

        kwargs: Dict[str, Any] = {}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        resp = await acompletion(
            model=model,
            messages=messages,
            temperature=temperature,
            **kwargs,
        )

        # LiteLLM typically returns an object with `.choices[0].message.content`, but we
        # handle dict-like returns too.
        try:
            return resp.choices[0].message.content or ""
        except Exception:
            try:
                return resp["choices"][0]["message"]["content"] or ""
            except Exception as e:  # pragma: no cover
                raise RuntimeError(f"Unexpected litellm response shape: {type(resp)}") from e


@dataclass(frozen=True)
class RLMConfig:
    root_model: str = os.environ.get("RLM_MODEL", "anthropic/claude-opus-4-5-20251101")
    sub_model: str = os.environ.get("RLM_SUB_MODEL", "")  # Empty = same as root_model

    temperature: float = float(os.environ.get("RLM_TEMPERATURE", "0.0"))
    root_max_tokens: int = int(os.environ.get("RLM_ROOT_MAX_TOKENS", "8192"))
    sub_max_tokens: int = int(os.environ.get("RLM_SUB_MAX_TOKENS", "4096"))

    max_iterations: int = int(os.environ.get("RLM_MAX_ITERATIONS", "100"))
    default_max_depth: int = int(os.environ.get("RLM_MAX_DEPTH", "1"))

    # What the code-writing model sees of the context.
    context_preview_chars: int = int(os.environ.get("RLM_CONTEXT_PREVIEW_CHARS", "5000"))

    # Batch throttle (fixed window, tuned to the upstream rate limit).
    batch_group_size: int = int(os.environ.get("RLM_BATCH_GROUP_SIZE", "10"))
    stagger_seconds: float = float(os.environ.get("RLM_STAGGER_SECONDS", "0.1"))
    group_cooldown_seconds: float = float(os.environ.get("RLM_GROUP_COOLDOWN_SECONDS", "2.0"))

    # Sandbox.
    run_timeout_seconds: float = float(os.environ.get("RLM_RUN_TIMEOUT_SECONDS", "300"))
    inline_context_limit: int = int(os.environ.get("RLM_INLINE_CONTEXT_LIMIT", str(1024 * 1024)))
    provision_attempts: int = int(os.environ.get("RLM_PROVISION_ATTEMPTS", "3"))
    provision_backoff_seconds: float = float(os.environ.get("RLM_PROVISION_BACKOFF_SECONDS", "1.0"))

    # Persistent debug logs (empty disables).
    log_dir: str = os.environ.get("RLM_LOG_DIR", ".rlm_logs")
    verbose: bool = False

    @property
    def resolved_sub_model(self) -> str:
        return self.sub_model or self.root_model


@dataclass(frozen=True)
class ExecutionRequest:
    query: str
    context: str
    context_id: Optional[str] = None
    max_depth: Optional[int] = None

    @classmethod
    def coerce(cls, request: Union["ExecutionRequest", Mapping[str, Any]]) -> "ExecutionRequest":
        if isinstance(request, ExecutionRequest):
            return request
        return cls(
            query=request["query"],
            context=request["context"],
            context_id=request.get("contextId", request.get("context_id")),
            max_depth=request.get("maxDepth", request.get("max_depth")),
        )


CompletionHook = Callable[[Dict[str, Any]], None]


class RLMEngine:
    """Recursive Language Model orchestrator.

    For each request:
      - a model writes a delegation-aware Python program for the query
      - the program runs in a sandbox with the full context bound to `context`
      - `llm_query` / `llm_query_batch` calls pause the program; the orchestrator resolves
        them (leaf model call, or a recursive sandboxed sub-execution) and re-runs the
        program with the answers cached
      - every lifecycle transition is streamed as an event

    The event stream always ends with exactly one `ExecutionComplete` or `ExecutionError`,
    unless the run is cancelled.
    """

    def __init__(
        self,
        *,
        client: LLMClient,
        sandbox_provider: Optional[SandboxProvider] = None,
        config: RLMConfig | None = None,
        on_complete: Optional[CompletionHook] = None,
    ):
        self.client = client
        self.config = config or RLMConfig()
        self.sandbox_provider = sandbox_provider or LocalSandboxProvider(
            run_timeout=self.config.run_timeout_seconds,
            inline_context_limit=self.config.inline_context_limit,
            provision_attempts=self.config.provision_attempts,
            provision_backoff=self.config.provision_backoff_seconds,
        )
        self.on_complete = on_complete

    async def execute_with_delegation(
        self,
        request: Union[ExecutionRequest, Mapping[str, Any]],
        sink: EventSink,
    ) -> Optional[str]:
        """Run one request, delivering events to `sink`. Returns the result, or None on error."""

        req = ExecutionRequest.coerce(request)
        max_depth = self.config.default_max_depth if req.max_depth is None else int(req.max_depth)
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")

        request_id = uuid.uuid4().hex
        logger = None
        if self.config.log_dir:
            stamp = _dt.datetime.now().strftime("%Y%m%d_%H%M%S")
            logger = JSONLLogger(Path(self.config.log_dir) / f"rlm_{stamp}_{request_id}.jsonl")
        emitter = EventEmitter(sink, request_id=request_id, logger=logger, verbose=self.config.verbose)

        execution = _Execution(
            engine=self,
            request=req,
            max_depth=max_depth,
            context_id=req.context_id or f"ctx-{uuid.uuid4().hex[:8]}",
            emitter=emitter,
        )
        result = await execution.run()

        if self.config.verbose and logger is not None:
            print(f"[rlm] log: {logger.path}")
        return result

    async def stream(
        self, request: Union[ExecutionRequest, Mapping[str, Any]]
    ) -> AsyncIterator[ExecutionEvent]:
        """Async iterator over the events of one request.

        Closing the iterator early (`aclose()`) cancels the run and closes its sandboxes.
        """

        queue: "asyncio.Queue[object]" = asyncio.Queue()
        done = object()

        async def _runner() -> None:
            try:
                await self.execute_with_delegation(request, queue.put_nowait)
            finally:
                queue.put_nowait(done)

        task = asyncio.ensure_future(_runner())
        try:
            while True:
                item = await queue.get()
                if item is done:
                    break
                yield item  # type: ignore[misc]
            await task
        finally:
            if not task.done():
                task.cancel()
                await asyncio.wait([task])

    async def generate_code(self, prompt: str, *, system_prompt: str, max_tokens: int) -> str:
        raw = await self.client.complete(
            model=self.config.root_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            temperature=self.config.temperature,
            max_tokens=max_tokens,
        )
        return extract_python_code(raw or "")


class _Execution:
    """State for one top-level request: the root node and the per-request loop/resolver."""

    def __init__(
        self,
        *,
        engine: RLMEngine,
        request: ExecutionRequest,
        max_depth: int,
        context_id: str,
        emitter: EventEmitter,
    ):
        cfg = engine.config
        self.engine = engine
        self.request = request
        self.max_depth = max_depth
        self.context_id = context_id
        self.emitter = emitter

        self.resolver = DelegationResolver(
            client=engine.client,
            emitter=emitter,
            max_depth=max_depth,
            model=cfg.resolved_sub_model,
            temperature=cfg.temperature,
            max_tokens=cfg.sub_max_tokens,
            subtask_runner=self._run_subtask,
            group_size=cfg.batch_group_size,
            stagger_seconds=cfg.stagger_seconds,
            cooldown_seconds=cfg.group_cooldown_seconds,
            system_prompt=SUB_SYSTEM_PROMPT,
        )
        self.loop = ExecutionLoop(
            resolver=self.resolver,
            emitter=emitter,
            max_iterations=cfg.max_iterations,
        )

    async def run(self) -> Optional[str]:
        cfg = self.engine.config
        req = self.request
        emit = self.emitter.emit

        root = ExecutionNode(
            id=new_node_id(),
            parent_id=None,
            depth=0,
            status=NodeStatus.PENDING,
            context_id=self.context_id,
        )
        emit(NodeCreated(node=root))
        emit(DelegationStarted(node_id=root.id, prompt=req.query))
        self.emitter.log(
            {
                "type": "request",
                "query": req.query,
                "context_chars": len(req.context),
                "max_depth": self.max_depth,
                "context_id": self.context_id,
            }
        )

        code = ""
        try:
            code = await self.engine.generate_code(
                build_root_prompt(
                    req.query,
                    req.context,
                    max_depth=self.max_depth,
                    preview_chars=cfg.context_preview_chars,
                ),
                system_prompt=ROOT_SYSTEM_PROMPT,
                max_tokens=cfg.root_max_tokens,
            )
            session = await self.engine.sandbox_provider.open(req.context)
            async with session:
                outcome = await self.loop.run(
                    session=session,
                    body=code,
                    node_id=root.id,
                    depth=0,
                    context_id=self.context_id,
                )
        except asyncio.CancelledError:
            self.emitter.log({"type": "cancelled", "node_id": root.id})
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            emit(NodeErrored(node_id=root.id, error=message))
            emit(NodeStatusChanged(node_id=root.id, status=NodeStatus.ERROR))
            emit(ExecutionError(error=message))
            self.emitter.log({"type": "error", "error": message, "error_type": type(e).__name__})
            return None

        emit(DelegationFinished(node_id=root.id, response=outcome.result))
        emit(NodeStatusChanged(node_id=root.id, status=NodeStatus.COMPLETED))
        emit(ExecutionComplete(result=outcome.result))
        self.emitter.log({"type": "final", "final": outcome.result, "iterations": outcome.iterations})

        if self.engine.on_complete is not None:
            self.engine.on_complete(
                {
                    "query": req.query,
                    "code": code,
                    "output": outcome.output,
                    "result": outcome.result,
                    "context_id": self.context_id,
                }
            )
        return outcome.result

    async def _run_subtask(self, prompt: str, node_id: str, depth: int) -> str:
        """Recursive delegation: generate a program for `prompt` and run it in its own sandbox."""

        cfg = self.engine.config
        self.emitter.output(node_id, f"[depth {depth}] Generating Python code (can spawn sub-agents)...")
        code = await self.engine.generate_code(
            build_sub_agent_prompt(prompt, depth=depth, max_depth=self.max_depth),
            system_prompt=ROOT_SYSTEM_PROMPT,
            max_tokens=cfg.sub_max_tokens,
        )
        line_count = len(code.split("\n")) if code else 0
        self.emitter.output(node_id, f"[depth {depth}] Generated {line_count} lines, creating sandbox...")

        session = await self.engine.sandbox_provider.open(prompt)
        async with session:
            outcome = await self.loop.run(
                session=session,
                body=code,
                node_id=node_id,
                depth=depth,
                context_id=self.context_id,
            )

        self.emitter.output(node_id, f"[depth {depth}] Execution complete")
        if outcome.explicit:
            return outcome.result
        return outcome.output or outcome.result


# ------------------------- Helpers (LLM output sanitization) -------------------------


_CODE_START_PREFIXES = ("import ", "from ", "#", "context", "def ", "for ", "while ")


def extract_python_code(text: str) -> str:
    """Extract raw python code from an LLM response.

    - If response contains a fenced code block, prefer its contents.
    - Otherwise, if the whole response parses as Python, return it unchanged.
    - Otherwise skip any prose before the first line that looks like code.
    """

    if not text:
        return ""

    # Prefer fenced code blocks.
    fenced = re.findall(r"```(?:python|py)?[ \t]*\n(.*?)```", text, re.DOTALL)
    if fenced:
        return "\n\n".join(block.strip() for block in fenced).strip()

    # Some models emit "---" between code blocks.
    lines = [line for line in text.split("\n") if line.strip() != "---"]
    code = "\n".join(lines).strip()
    try:
        ast.parse(code)
        return code
    except SyntaxError:
        pass

    for i, line in enumerate(lines):
        if line.startswith(_CODE_START_PREFIXES):
            return "\n".join(lines[i:]).strip()
    return code
