from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from . import datasets
from .engine import ExecutionRequest, LiteLLMClient, RLMConfig, RLMEngine
from .events import ExecutionComplete, ExecutionError, encode_sse


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rlm", description="Recursive Language Model orchestrator")

    sub = p.add_subparsers(dest="cmd", required=True)

    ex = sub.add_parser("execute", help="Answer a query over a context, streaming the execution tree")
    ex.add_argument("--query", type=str, default=None, help="Question to answer (defaults to the demo's query with --demo)")

    src = ex.add_mutually_exclusive_group(required=True)
    src.add_argument("--context", type=str, help="Context text")
    src.add_argument("--context-file", type=str, help="Path to a file holding the context")
    src.add_argument("--demo", type=str, choices=sorted(datasets.PRESETS), help="Run a preset demo (dataset + query)")

    ex.add_argument("--count", type=int, default=None, help="Demo dataset size (default: the preset's size)")
    ex.add_argument("--context-id", type=str, default=None, help="Existing context/session id")
    ex.add_argument("--max-depth", type=int, default=RLMConfig().default_max_depth, help="Maximum recursion depth")
    ex.add_argument("--model", type=str, default=RLMConfig().root_model, help="Model name (litellm)")
    ex.add_argument("--sub-model", type=str, default="", help="Model for leaf calls (default: same as --model)")
    ex.add_argument(
        "--max-iterations",
        type=int,
        default=RLMConfig().max_iterations,
        help="Maximum re-execution iterations per node",
    )
    ex.add_argument("--result-only", action="store_true", help="Print only the final result instead of events")
    ex.add_argument("--verbose", action="store_true", help="Print events as they happen and the log path")

    demo = sub.add_parser("demo", help="Print a preset demo dataset")
    demo.add_argument("name", choices=sorted(datasets.PRESETS))
    demo.add_argument("--count", type=int, default=None)
    demo.add_argument("--show-query", action="store_true", help="Print the preset query to stderr")

    return p


def _load_context(args: argparse.Namespace) -> str:
    if args.context is not None:
        return args.context
    if args.context_file:
        return Path(args.context_file).read_text(encoding="utf-8")
    return datasets.get_preset(args.demo).context(args.count)


async def _execute(engine: RLMEngine, request: ExecutionRequest, *, result_only: bool) -> int:
    status = 1
    async for event in engine.stream(request):
        if not result_only:
            sys.stdout.write(encode_sse(event))
            sys.stdout.flush()
        if isinstance(event, ExecutionComplete):
            status = 0
            if result_only:
                print(event.result)
        elif isinstance(event, ExecutionError):
            print(f"[rlm] error: {event.error}", file=sys.stderr)
    return status


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "demo":
        preset = datasets.get_preset(args.name)
        if args.show_query:
            print(preset.query, file=sys.stderr)
        print(preset.context(args.count))
        return 0

    if args.cmd != "execute":
        parser.print_help()
        return 2

    query = args.query
    if query is None:
        if not args.demo:
            parser.error("--query is required unless --demo is given")
        query = datasets.get_preset(args.demo).query

    try:
        context = _load_context(args)
    except (OSError, ValueError) as e:
        print(f"[rlm] error: {e}", file=sys.stderr)
        return 2

    cfg = RLMConfig(
        root_model=args.model,
        sub_model=args.sub_model,
        max_iterations=args.max_iterations,
        verbose=args.verbose,
    )
    engine = RLMEngine(client=LiteLLMClient(), config=cfg)
    request = ExecutionRequest(
        query=query,
        context=context,
        context_id=args.context_id,
        max_depth=args.max_depth,
    )

    try:
        return asyncio.run(_execute(engine, request, result_only=args.result_only))
    except KeyboardInterrupt:
        print("[rlm] cancelled", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
