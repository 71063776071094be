"""Failure classes raised by the orchestrator.

Every class derives from `RLMError` so callers can catch the whole family. Cancellation
is not part of this hierarchy: a cancelled run surfaces as `asyncio.CancelledError` and is
never reported as a failure.
"""

from __future__ import annotations

from typing import Dict, Optional


class RLMError(Exception):
    """Base class for orchestrator failures."""


class ProvisioningError(RLMError):
    """The sandbox environment could not be created after all retries."""


class SessionCrashed(RLMError):
    """The environment died mid-run (no exit status, or the run timed out)."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        if output:
            message = f"{message}\n--- partial output ---\n{output}"
        super().__init__(message)


class ProgramError(RLMError):
    """The program ran and exited non-zero without a pending-call marker."""

    def __init__(self, message: str, output: str = "", exit_status: Optional[int] = None):
        self.output = output
        self.exit_status = exit_status
        if output:
            message = f"{message}\n{output}"
        super().__init__(message)


class DecodeError(RLMError):
    """A marker payload could not be decoded (e.g. malformed batch JSON)."""


class IterationBudgetExceeded(RLMError):
    """The loop ran out of iterations without reaching a FINAL marker."""


class DelegationError(RLMError):
    """One or more delegated prompts could not be resolved."""

    def __init__(self, message: str, failures: Optional[Dict[str, str]] = None):
        self.failures = dict(failures or {})
        super().__init__(message)
