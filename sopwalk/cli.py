"""Command-line tools for procedure authors.

Usage:
    python -m sopwalk validate procedures/order-delay.json
    python -m sopwalk inspect order-delay            # bundled procedure by name
    python -m sopwalk inspect order-delay --dump     # normalised JSON document
    python -m sopwalk run order-delay --user-id test-user-001 --set orderId=12345 \\
        --message hi --message yes --server python -m tests.order_tools_server
    python -m sopwalk run order-delay --user-id test-user-001 --model gpt4o_mini \\
        --message "hi, my order is 12345" --message "yes" --server python -m tests.order_tools_server
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from sopwalk.config import EngineSettings
from sopwalk.engine.session import Session
from sopwalk.exceptions import GraphValidationError, ProcedureError
from sopwalk.graph.loader import bundled_procedures, dump_procedure, load_bundled, load_procedure_file
from sopwalk.graph.nodes import ProcedureGraph
from sopwalk.llm.config import ModelID
from sopwalk.llm.interpreter import ChatModelInterpreter
from sopwalk.llm.router import LLMRouter
from sopwalk.mcp.stdio_client import ServerCommand
from sopwalk.mcp.tools import McpToolCollaborator


def _load(ref: str) -> ProcedureGraph:
    path = Path(ref)
    if path.exists():
        return load_procedure_file(path)
    if ref in bundled_procedures():
        return load_bundled(ref)
    print(f"ERROR: no procedure file or bundled procedure named {ref!r}", file=sys.stderr)
    sys.exit(1)


def _parse_assignment(text: str) -> tuple[str, Any]:
    key, sep, raw = text.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {text!r}")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return key, value


def cmd_validate(args: argparse.Namespace) -> None:
    """Validate one or more procedure documents."""
    failed = 0
    for ref in args.procedures:
        try:
            graph = _load(ref)
        except GraphValidationError as exc:
            failed += 1
            print(f"FAIL {ref}: {len(exc.errors)} problem(s)")
            for problem in exc.errors:
                print(f"  - {problem}")
            continue
        except (OSError, ValueError) as exc:
            failed += 1
            print(f"FAIL {ref}: {exc}")
            continue
        print(f"OK   {ref}: {graph.name!r} ({len(graph)} nodes)")
    if failed:
        sys.exit(1)


def cmd_inspect(args: argparse.Namespace) -> None:
    """Print a summary (or the normalised document) of a procedure."""
    try:
        graph = _load(args.procedure)
    except (GraphValidationError, OSError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.dump:
        print(json.dumps(dump_procedure(graph), indent=2))
        return

    summary = graph.describe()
    print(f"Procedure: {summary['name']} (version {summary['version']})")
    print(f"Start:     {summary['start']}")
    print(f"Nodes:     {summary['nodes']} " + ", ".join(f"{k}={v}" for k, v in summary["by_kind"].items()))
    print(f"Tools:     {', '.join(summary['tools']) or '-'}")
    if summary["unreachable"]:
        print(f"Unreachable: {', '.join(summary['unreachable'])}")
    for node in graph:
        succ = " -> " + ", ".join(node.next) if node.next else ""
        keys = graph.referenced_keys(node.id)
        reads = f"  reads: {', '.join(keys)}" if keys else ""
        print(f"  [{node.kind:<8}] {node.id}{succ}{reads}")


async def _run(args: argparse.Namespace, graph: ProcedureGraph) -> int:
    settings = EngineSettings()
    server = ServerCommand(command=args.server[0], args=list(args.server[1:]), cwd=args.cwd)
    interpreter = None
    if args.model:
        interpreter = ChatModelInterpreter.from_router(LLMRouter(), ModelID(args.model))
    async with McpToolCollaborator(server, timeout_s=settings.tool_timeout_s) as tools:
        session = Session.create(
            graph,
            tools,
            interpreter,
            user_id=args.user_id,
            context=dict(args.set or []),
            settings=settings,
        )
        for message in args.message or [""]:
            if not session.state.in_progress:
                break
            result = await session.process_turn(message)
            print(f"> {message}")
            print(result.reply or "(no reply)")
            print(f"  [{result.state.current_node}: {result.stop}]")
        print(json.dumps(session.state.to_dict(), indent=2, default=str))
    return 0


def cmd_run(args: argparse.Namespace) -> None:
    """Drive a procedure non-interactively against an MCP tool server."""
    try:
        graph = _load(args.procedure)
        code = asyncio.run(_run(args, graph))
    except ProcedureError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="sopwalk",
        description="Validate, inspect and run conversational procedures",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    # validate
    p_validate = sub.add_parser("validate", help="Validate procedure documents")
    p_validate.add_argument("procedures", nargs="+", help="Paths or bundled procedure names")
    p_validate.set_defaults(func=cmd_validate)

    # inspect
    p_inspect = sub.add_parser("inspect", help="Summarise a procedure")
    p_inspect.add_argument("procedure", help="Path or bundled procedure name")
    p_inspect.add_argument("--dump", action="store_true", help="Print the normalised JSON document")
    p_inspect.set_defaults(func=cmd_inspect)

    # run
    p_run = sub.add_parser("run", help="Run a procedure against an MCP stdio tool server")
    p_run.add_argument("procedure", help="Path or bundled procedure name")
    p_run.add_argument("--server", nargs=argparse.REMAINDER, required=True, help="Server command line (must come last)")
    p_run.add_argument("--cwd", help="Working directory for the server")
    p_run.add_argument("--user-id", help="Seeded as context.userId and sent with every tool call")
    p_run.add_argument("--set", action="append", type=_parse_assignment, metavar="KEY=VALUE", help="Initial fact (value parsed as JSON when possible)")
    p_run.add_argument("--message", action="append", help="User message (repeatable)")
    p_run.add_argument(
        "--model",
        choices=[m.value for m in ModelID],
        help="Interpret messages with this chat model (default: reply with procedure messages only)",
    )
    p_run.set_defaults(func=cmd_run)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else EngineSettings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
