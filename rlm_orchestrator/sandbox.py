"""Sandboxed interpreter sessions.

A session binds one context payload to an isolated environment and runs programs in it.
Every run is a clean interpreter invocation: the session preamble (context binding plus the
delegation stubs) is prepended each time and nothing else survives between runs.

The local backend runs each program in a fresh `python -I` subprocess inside a private
working directory. Environments can be recycled through an explicit `SandboxPool`.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import shutil
import sys
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from . import protocol
from .errors import ProvisioningError, RLMError, SessionCrashed


STDERR_TAG = "[stderr] "
READY_TIMEOUT = 30.0


@dataclass(frozen=True)
class RunResult:
    # Primary channel only; this is what the marker codec reads.
    stdout: str
    # Both channels in arrival order, diagnostic lines tagged with STDERR_TAG.
    output: str
    # None when the environment died instead of reporting a status.
    exit_status: Optional[int]

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class SandboxSession:
    """One isolated place to run programs against a bound context."""

    async def run(self, code: str) -> RunResult:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def __aenter__(self) -> "SandboxSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class SandboxProvider:
    """Creates sessions. `open` must raise `ProvisioningError` when it gives up."""

    async def open(self, context: str) -> SandboxSession:
        raise NotImplementedError


# ------------------------- Local environments -------------------------


class SandboxEnvironment:
    """A private working directory plus the interpreter used to run programs in it."""

    def __init__(self, path: Path, *, python: str = sys.executable):
        self.path = path
        self.python = python
        self.id = uuid.uuid4().hex[:8]
        self.destroyed = False

    @classmethod
    def create(cls, *, python: str = sys.executable) -> "SandboxEnvironment":
        path = Path(tempfile.mkdtemp(prefix="rlm_sandbox_"))
        return cls(path, python=python)

    async def execute(self, program: str, *, timeout: float) -> RunResult:
        if self.destroyed:
            raise RuntimeError(f"Sandbox environment {self.id} was destroyed")

        script = self.path / f"run_{uuid.uuid4().hex[:8]}.py"
        script.write_text(program, encoding="utf-8")

        stdout_parts: List[str] = []
        merged: List[str] = []

        proc = await asyncio.create_subprocess_exec(
            self.python,
            "-I",
            "-u",
            "-X",
            "utf8",
            str(script),
            cwd=str(self.path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={"PATH": os.environ.get("PATH", "")},
        )

        async def _pump_stdout() -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await proc.stdout.read(65536)
                text = decoder.decode(chunk, final=not chunk)
                if text:
                    stdout_parts.append(text)
                    merged.append(text)
                if not chunk:
                    return

        async def _pump_stderr() -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            pending = ""
            while True:
                chunk = await proc.stderr.read(65536)
                pending += decoder.decode(chunk, final=not chunk)
                *lines, pending = pending.split("\n")
                for line in lines:
                    merged.append(f"{STDERR_TAG}{line}\n")
                if not chunk:
                    if pending:
                        merged.append(f"{STDERR_TAG}{pending}\n")
                    return

        async def _communicate() -> int:
            await asyncio.gather(_pump_stdout(), _pump_stderr())
            return await proc.wait()

        try:
            returncode = await asyncio.wait_for(_communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            raise SessionCrashed(f"Run exceeded the {timeout:g}s timeout", "".join(merged)) from None
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            script.unlink(missing_ok=True)

        # Negative return codes mean the process was killed by a signal.
        exit_status = returncode if returncode >= 0 else None
        return RunResult(stdout="".join(stdout_parts), output="".join(merged), exit_status=exit_status)

    def reset(self) -> None:
        """Remove everything a previous session left behind."""
        for child in self.path.iterdir():
            if child.is_dir():
                shutil.rmtree(child, ignore_errors=True)
            else:
                child.unlink(missing_ok=True)

    def destroy(self) -> None:
        if not self.destroyed:
            self.destroyed = True
            shutil.rmtree(self.path, ignore_errors=True)


class SandboxPool:
    """Explicit pool of idle environments with checkout/checkin and idle reaping.

    Pooled environments never carry state between sessions: checkin wipes the directory,
    and every program is self-contained anyway.
    """

    def __init__(
        self,
        factory: Callable[[], Awaitable[SandboxEnvironment]],
        *,
        max_size: int = 4,
        max_idle_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.factory = factory
        self.max_size = max_size
        self.max_idle_seconds = max_idle_seconds
        self.clock = clock
        self._idle: List[Tuple[SandboxEnvironment, float]] = []
        self._closed = False

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    async def checkout(self) -> SandboxEnvironment:
        if self._closed:
            raise RuntimeError("Sandbox pool is closed")
        self.reap_idle()
        if self._idle:
            env, _ = self._idle.pop()
            return env
        return await self.factory()

    def checkin(self, env: SandboxEnvironment) -> None:
        if env.destroyed:
            return
        if self._closed or len(self._idle) >= self.max_size:
            env.destroy()
            return
        try:
            env.reset()
        except OSError:
            # Directory vanished or is unreadable; the environment cannot be reused.
            env.destroy()
            return
        self._idle.append((env, self.clock()))

    def reap_idle(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        keep: List[Tuple[SandboxEnvironment, float]] = []
        reaped = 0
        for env, last_used in self._idle:
            if now - last_used > self.max_idle_seconds:
                env.destroy()
                reaped += 1
            else:
                keep.append((env, last_used))
        self._idle = keep
        return reaped

    def close(self) -> None:
        self._closed = True
        for env, _ in self._idle:
            env.destroy()
        self._idle = []


class LocalSandboxSession(SandboxSession):
    def __init__(
        self,
        env: SandboxEnvironment,
        preamble: str,
        *,
        timeout: float,
        pool: Optional[SandboxPool] = None,
    ):
        self.env = env
        self.preamble = preamble
        self.timeout = timeout
        self.pool = pool
        self.closed = False
        self._lock = asyncio.Lock()

    async def run(self, code: str) -> RunResult:
        if self.closed:
            raise RuntimeError("Sandbox session is closed")
        async with self._lock:
            return await self.env.execute(
                protocol.build_program(self.preamble, code), timeout=self.timeout
            )

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.pool is not None:
            self.pool.checkin(self.env)
        else:
            self.env.destroy()


class LocalSandboxProvider(SandboxProvider):
    """Sessions backed by local `python -I` subprocesses."""

    def __init__(
        self,
        *,
        python: str = sys.executable,
        pool: Optional[SandboxPool] = None,
        run_timeout: float = 300.0,
        inline_context_limit: int = 1024 * 1024,
        provision_attempts: int = 3,
        provision_backoff: float = 1.0,
    ):
        self.python = python
        self.pool = pool
        self.run_timeout = run_timeout
        self.inline_context_limit = inline_context_limit
        self.provision_attempts = provision_attempts
        self.provision_backoff = provision_backoff

    async def open(self, context: str) -> SandboxSession:
        env = await self._provision()
        try:
            loader = self._context_loader(env, context)
        except OSError:
            self._release(env)
            raise
        preamble = protocol.render_runtime(loader)
        return LocalSandboxSession(env, preamble, timeout=self.run_timeout, pool=self.pool)

    async def create_environment(self) -> SandboxEnvironment:
        return SandboxEnvironment.create(python=self.python)

    async def _provision(self) -> SandboxEnvironment:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.provision_attempts + 1):
            env: Optional[SandboxEnvironment] = None
            try:
                if self.pool is not None:
                    env = await self.pool.checkout()
                else:
                    env = await self.create_environment()
                await self._verify(env)
                return env
            except (OSError, RLMError) as e:
                last_error = e
                if env is not None:
                    env.destroy()
                if attempt < self.provision_attempts:
                    await asyncio.sleep(self.provision_backoff * 2 ** (attempt - 1))

        raise ProvisioningError(
            f"Could not create a sandbox after {self.provision_attempts} attempts: {last_error}"
        ) from last_error

    async def _verify(self, env: SandboxEnvironment) -> None:
        ready = await env.execute('print("sandbox-ready")', timeout=READY_TIMEOUT)
        if ready.exit_status != 0 or "sandbox-ready" not in ready.stdout:
            raise ProvisioningError(
                f"Sandbox readiness check failed (exit={ready.exit_status}): {ready.output[:500]}"
            )

    def _context_loader(self, env: SandboxEnvironment, context: str) -> str:
        if len(context.encode("utf-8")) <= self.inline_context_limit:
            return protocol.inline_context_loader(context)
        # Large payloads go through a side-channel file instead of the program text.
        path = env.path / f"context_{uuid.uuid4().hex[:8]}.txt"
        with path.open("w", encoding="utf-8", newline="") as f:
            f.write(context)
        return protocol.file_context_loader(str(path))

    def _release(self, env: SandboxEnvironment) -> None:
        if self.pool is not None:
            self.pool.checkin(env)
        else:
            env.destroy()
