"""Test doubles: scripted model client, scripted sandbox sessions, helpers for marker output."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Union

from rlm_orchestrator.emitter import EventEmitter
from rlm_orchestrator.engine import LLMClient, RLMConfig
from rlm_orchestrator.prompts import ROOT_SYSTEM_PROMPT
from rlm_orchestrator.protocol import (
    BATCH_END,
    BATCH_EXIT_STATUS,
    BATCH_START,
    FINAL_END,
    FINAL_START,
    QUERY_END,
    QUERY_EXIT_STATUS,
    QUERY_START,
)
from rlm_orchestrator.sandbox import RunResult, SandboxProvider, SandboxSession


def make_config(**overrides: Any) -> RLMConfig:
    values: Dict[str, Any] = dict(
        root_model="test/root",
        sub_model="test/sub",
        log_dir="",
        stagger_seconds=0.0,
        group_cooldown_seconds=0.0,
        provision_backoff_seconds=0.0,
        run_timeout_seconds=30.0,
        default_max_depth=1,
    )
    values.update(overrides)
    return RLMConfig(**values)


class ScriptedLLMClient(LLMClient):
    """Answers with `handler(system_prompt, user_prompt)`; exceptions returned are raised."""

    def __init__(self, handler: Callable[[str, str], Union[str, BaseException]]):
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, *, model, messages, temperature=0.0, max_tokens=None) -> str:
        system = messages[0]["content"] if messages[0]["role"] == "system" else ""
        user = messages[-1]["content"]
        self.calls.append({"model": model, "system": system, "user": user, "max_tokens": max_tokens})
        result = self.handler(system, user)
        if isinstance(result, BaseException):
            raise result
        return result

    @property
    def leaf_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["system"] != ROOT_SYSTEM_PROMPT]

    @property
    def codegen_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["system"] == ROOT_SYSTEM_PROMPT]


def is_codegen(system: str) -> bool:
    return system == ROOT_SYSTEM_PROMPT


RunStep = Union[RunResult, Callable[[str], RunResult]]


class FakeSession(SandboxSession):
    """Replays scripted run results; the last one repeats forever."""

    def __init__(self, steps: List[RunStep]):
        self.steps = list(steps)
        self.codes: List[str] = []
        self.close_count = 0

    async def run(self, code: str) -> RunResult:
        self.codes.append(code)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if callable(step):
            return step(code)
        return step

    async def close(self) -> None:
        self.close_count += 1


class FakeProvider(SandboxProvider):
    def __init__(self, factory: Callable[[str], SandboxSession]):
        self.factory = factory
        self.sessions: List[SandboxSession] = []
        self.contexts: List[str] = []

    async def open(self, context: str) -> SandboxSession:
        self.contexts.append(context)
        session = self.factory(context)
        self.sessions.append(session)
        return session


class CountingProvider(SandboxProvider):
    """Wraps a real provider, remembering every session it opened."""

    def __init__(self, inner: SandboxProvider):
        self.inner = inner
        self.sessions: List[SandboxSession] = []

    async def open(self, context: str) -> SandboxSession:
        session = await self.inner.open(context)
        self.sessions.append(session)
        return session


# ------------------------- Marker output builders -------------------------


def final_run(text: str, prefix: str = "") -> RunResult:
    out = f"{prefix}{FINAL_START}\n{text}\n{FINAL_END}\n"
    return RunResult(stdout=out, output=out, exit_status=0)


def single_run(prompt: str, prefix: str = "") -> RunResult:
    out = f"{prefix}{QUERY_START}\n{prompt}\n{QUERY_END}\n"
    return RunResult(stdout=out, output=out, exit_status=QUERY_EXIT_STATUS)


def batch_run(prompts: List[str], prefix: str = "") -> RunResult:
    out = f"{prefix}{BATCH_START}\n{json.dumps(prompts)}\n{BATCH_END}\n"
    return RunResult(stdout=out, output=out, exit_status=BATCH_EXIT_STATUS)


def plain_run(text: str, exit_status: Optional[int] = 0) -> RunResult:
    return RunResult(stdout=text, output=text, exit_status=exit_status)


def recording_emitter(events: list) -> EventEmitter:
    return EventEmitter(events.append, request_id="test")


def fenced(code: str) -> str:
    return "Here is the program:\n```python\n" + code.strip("\n") + "\n```\n"
