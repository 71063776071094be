"""Text protocol between sandboxed programs and the orchestrator.

A program cannot call back into the orchestrator across the sandbox boundary, so the stub
functions installed in every run print marker-delimited blocks to stdout instead:

    __LLM_QUERY_START__        __LLM_BATCH_START__        __RLM_FINAL_START__
    <prompt text>              <JSON array of prompts>    <result text>
    __LLM_QUERY_END__          __LLM_BATCH_END__          __RLM_FINAL_END__

A pending call is followed by an immediate exit (status 42 for a single query, 43 for a
batch). The orchestrator resolves the prompts, prepends a cache snippet that answers them,
and runs the whole program again from the top.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Union

from .errors import DecodeError


QUERY_START = "__LLM_QUERY_START__"
QUERY_END = "__LLM_QUERY_END__"
BATCH_START = "__LLM_BATCH_START__"
BATCH_END = "__LLM_BATCH_END__"
FINAL_START = "__RLM_FINAL_START__"
FINAL_END = "__RLM_FINAL_END__"

QUERY_EXIT_STATUS = 42
BATCH_EXIT_STATUS = 43

SINGLE = "single"
BATCH = "batch"


@dataclass(frozen=True)
class PendingCall:
    kind: str  # SINGLE or BATCH
    payload: Union[str, List[str]]

    @property
    def prompts(self) -> List[str]:
        if self.kind == SINGLE:
            return [self.payload]  # type: ignore[list-item]
        return list(self.payload)


@dataclass(frozen=True)
class FinalResult:
    text: str


Decoded = Union[FinalResult, PendingCall, None]


def _block(start: str, end: str) -> "re.Pattern[str]":
    return re.compile(re.escape(start) + r"\n(.*?)\n" + re.escape(end), re.DOTALL)


_FINAL_RE = _block(FINAL_START, FINAL_END)
_BATCH_RE = _block(BATCH_START, BATCH_END)
_QUERY_RE = _block(QUERY_START, QUERY_END)

_PENDING_BLOCK_RE = re.compile(
    r"(?:{qs}\n.*?\n{qe}|{bs}\n.*?\n{be})\n?".format(
        qs=re.escape(QUERY_START),
        qe=re.escape(QUERY_END),
        bs=re.escape(BATCH_START),
        be=re.escape(BATCH_END),
    ),
    re.DOTALL,
)
_MARKER_LINE_RE = re.compile(r"__(?:LLM_QUERY|LLM_BATCH|RLM_FINAL)_(?:START|END)__\n?")


def decode(stdout: str) -> Decoded:
    """Classify one run's primary output.

    FINAL wins over BATCH, which wins over SINGLE. A start marker without its end marker
    counts as no pending call (the output may have been cut off).
    """

    m = _FINAL_RE.search(stdout)
    if m:
        return FinalResult(text=m.group(1).strip())

    m = _BATCH_RE.search(stdout)
    if m:
        raw = m.group(1)
        try:
            prompts = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Malformed batch payload: {e}: {raw[:200]!r}") from e
        if not isinstance(prompts, list) or not all(isinstance(p, str) for p in prompts):
            raise DecodeError(f"Batch payload must be a JSON array of strings: {raw[:200]!r}")
        return PendingCall(kind=BATCH, payload=prompts)

    m = _QUERY_RE.search(stdout)
    if m:
        return PendingCall(kind=SINGLE, payload=m.group(1))

    return None


def strip_markers(output: str) -> str:
    """Remove protocol noise from captured output.

    Pending-call blocks go entirely (their prompts show up on the child nodes); FINAL
    markers go but the result text between them stays.
    """

    text = _PENDING_BLOCK_RE.sub("", output)
    text = _MARKER_LINE_RE.sub("", text)
    return text.strip()


# ------------------------- Program preambles -------------------------


_STUBS = '''
def llm_query(prompt):
    """Ask a sub-LLM. Returns the cached answer, or pauses the program for delegation."""
    prompt = str(prompt)
    if prompt in _llm_cache:
        return _llm_cache[prompt]
    print("{query_start}")
    print(prompt)
    print("{query_end}", flush=True)
    _rlm_sys.exit({query_exit})


def llm_query_batch(prompts):
    """Ask sub-LLMs about many prompts at once (resolved in parallel)."""
    prompts = [str(p) for p in prompts]
    missing = [p for p in dict.fromkeys(prompts) if p not in _llm_cache]
    if not missing:
        return [_llm_cache[p] for p in prompts]
    print("{batch_start}")
    print(_rlm_json.dumps(missing))
    print("{batch_end}", flush=True)
    _rlm_sys.exit({batch_exit})


def FINAL(result):
    print("{final_start}")
    print(str(result))
    print("{final_end}", flush=True)


def FINAL_VAR(var_name):
    FINAL(globals()[var_name])
'''.format(
    query_start=QUERY_START,
    query_end=QUERY_END,
    query_exit=QUERY_EXIT_STATUS,
    batch_start=BATCH_START,
    batch_end=BATCH_END,
    batch_exit=BATCH_EXIT_STATUS,
    final_start=FINAL_START,
    final_end=FINAL_END,
)

_IMPORTS = "import json as _rlm_json\nimport sys as _rlm_sys\n"


def encode_cache(cache: Mapping[str, str]) -> str:
    """Snippet that seeds `_llm_cache` and redefines the stubs.

    Self-contained: it does not rely on anything surviving from an earlier run.
    """

    lines = [_IMPORTS, "_llm_cache = {}"]
    for prompt, response in cache.items():
        lines.append(f"_llm_cache[{prompt!r}] = {response!r}")
    lines.append(_STUBS)
    return "\n".join(lines)


def inline_context_loader(context: str) -> str:
    return f"context = {context!r}"


def file_context_loader(path: str) -> str:
    return (
        f"with open({path!r}, 'r', encoding='utf-8', newline='') as _rlm_f:\n"
        "    context = _rlm_f.read()\n"
        "del _rlm_f"
    )


def render_runtime(context_loader: str) -> str:
    """Session preamble: binds `context`, an empty cache and the stubs."""
    return "\n".join([_IMPORTS, context_loader, "", "_llm_cache = {}", _STUBS])


def build_program(preamble: str, code: str) -> str:
    return f"{preamble}\n# ---- program ----\n{code}\n"


def pending_summary(call: Optional[PendingCall]) -> str:
    if call is None:
        return "none"
    return f"{call.kind}({len(call.prompts)})"
