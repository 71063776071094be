"""Recursive Language Model (RLM) orchestrator.

A model writes a Python program for the query; the program runs in a sandbox with the
(potentially huge) context bound to `context`, and its `llm_query` / `llm_query_batch`
calls are intercepted and delegated to further model calls, recursively up to a maximum
depth. The execution tree is streamed as events.

Public API is intentionally small; most users will use the CLI:

    rlm execute --query "..." --context-file data.txt --max-depth 2

"""

from .engine import ExecutionRequest, LiteLLMClient, LLMClient, RLMConfig, RLMEngine
from .errors import (
    DecodeError,
    DelegationError,
    IterationBudgetExceeded,
    ProgramError,
    ProvisioningError,
    RLMError,
    SessionCrashed,
)
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
from .sandbox import LocalSandboxProvider, SandboxPool, SandboxProvider, SandboxSession
from .tree_state import TreeState, fold_events

__all__ = [
    "DecodeError",
    "DelegationError",
    "DelegationFinished",
    "DelegationStarted",
    "ExecutionComplete",
    "ExecutionError",
    "ExecutionEvent",
    "ExecutionNode",
    "ExecutionRequest",
    "IterationBudgetExceeded",
    "LLMClient",
    "LiteLLMClient",
    "LocalSandboxProvider",
    "NodeCreated",
    "NodeErrored",
    "NodeOutputAppended",
    "NodeStatus",
    "NodeStatusChanged",
    "ProgramError",
    "ProvisioningError",
    "RLMConfig",
    "RLMEngine",
    "RLMError",
    "SandboxPool",
    "SandboxProvider",
    "SandboxSession",
    "SessionCrashed",
    "TreeState",
    "fold_events",
]
