"""dkit command-line interface."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from . import __version__
from .config import DkitSettings, get_settings
from .errors import NotFoundError, RegistryError
from .project import resolve_project_root
from .runner import CommandRunner, RunnerError
from .server import configure_logging, create_server, run_stdio
from .storage import ProcessStore
from .tools import ToolHandles

logger = logging.getLogger(__name__)


def open_store(settings: DkitSettings, *, create: bool = False) -> ProcessStore:
    """Nearest existing data directory, else the one belonging to the project root (or cwd)."""

    try:
        return ProcessStore.discover(dir_name=settings.data_dir_name)
    except NotFoundError:
        root = resolve_project_root(marker=settings.project_marker)
        if create:
            return ProcessStore.create(root, dir_name=settings.data_dir_name)
        return ProcessStore(root / settings.data_dir_name)


def load_tools(settings: DkitSettings) -> ToolHandles:
    store = open_store(settings)
    server = create_server(settings, store_provider=lambda: store)
    if server.tool_handles is None:
        raise RuntimeError("registry tools were not registered")
    return server.tool_handles


def _invoke(tool: Any, arguments: dict[str, Any]) -> Any:
    try:
        return tool.invoke({key: value for key, value in arguments.items() if value is not None})
    except RegistryError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1)


def cmd_run(args: argparse.Namespace, settings: DkitSettings) -> int:
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("error: no command specified", file=sys.stderr)
        return 2

    store = open_store(settings, create=True)
    runner = CommandRunner(store, add_local_bin=settings.add_local_bin and not args.ignore_local_bin)
    workdir = store.project_root if args.workspace else Path.cwd()
    try:
        result = asyncio.run(runner.run(command, cwd=workdir))
    except (RunnerError, RegistryError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return result.returncode if result.returncode >= 0 else 1


def cmd_mcp(args: argparse.Namespace, settings: DkitSettings) -> int:
    try:
        run_stdio(settings)
    except OSError as exc:
        logger.error("MCP stream failed", extra={"error": str(exc)})
        return 1
    return 0


def cmd_ps(args: argparse.Namespace, settings: DkitSettings) -> int:
    tools = load_tools(settings)
    result = _invoke(tools.process_list, {"status": args.status, "limit": args.limit})
    if args.json:
        print(json.dumps(result, indent=2))
        return 0
    for process in result["processes"]:
        exit_code = process.get("exit_code")
        print(
            f"{process['id']} [{process['status']}] pid={process.get('pid', 0)} "
            f"exit={'-' if exit_code is None else exit_code} {process['command']}"
        )
    print(f"{result['filtered']} of {result['total']} process(es)")
    return 0


def cmd_show(args: argparse.Namespace, settings: DkitSettings) -> int:
    tools = load_tools(settings)
    print(json.dumps(_invoke(tools.process_show, {"process_id": args.process_id}), indent=2))
    return 0


def cmd_logs(args: argparse.Namespace, settings: DkitSettings) -> int:
    tools = load_tools(settings)
    result = _invoke(
        tools.process_logs,
        {"process_id": args.process_id, "stream": args.stream, "lines": args.lines},
    )
    if args.json:
        print(json.dumps(result, indent=2))
        return 0
    for stream in ("stdout", "stderr"):
        if stream not in result:
            continue
        if args.stream == "both":
            print(f"==> {stream} <==")
        for line in result[stream]:
            print(line)
    return 0


def cmd_kill(args: argparse.Namespace, settings: DkitSettings) -> int:
    tools = load_tools(settings)
    print(json.dumps(_invoke(tools.process_kill, {"process_id": args.process_id, "signal": args.signal}), indent=2))
    return 0


def cmd_clean(args: argparse.Namespace, settings: DkitSettings) -> int:
    tools = load_tools(settings)
    result = _invoke(
        tools.process_clean,
        {"all": args.all, "completed": args.completed, "failed": args.failed, "before": args.before},
    )
    print(json.dumps(result, indent=2))
    return 1 if result["errors"] else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dkit",
        description="Run commands with persistent logs and inspect them, or serve them to AI agents over MCP.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Execute a command in the foreground with logging")
    p_run.add_argument("-w", "--workspace", action="store_true", help="Execute in the project root directory")
    p_run.add_argument(
        "--ignore-local-bin",
        action="store_true",
        help="Skip adding <project-root>/bin to PATH",
    )
    p_run.add_argument("command", nargs=argparse.REMAINDER, help="Command to run (after --)")
    p_run.set_defaults(func=cmd_run)

    p_mcp = sub.add_parser("mcp", help="Start the MCP server on stdin/stdout")
    p_mcp.set_defaults(func=cmd_mcp)

    p_ps = sub.add_parser("ps", help="List recorded processes")
    p_ps.add_argument("--status", choices=["running", "completed", "failed"])
    p_ps.add_argument("--limit", type=int, default=None)
    p_ps.add_argument("--json", action="store_true", help="Output JSON")
    p_ps.set_defaults(func=cmd_ps)

    p_show = sub.add_parser("show", help="Show one process record")
    p_show.add_argument("process_id")
    p_show.set_defaults(func=cmd_show)

    p_logs = sub.add_parser("logs", help="Print the tail of a process' logs")
    p_logs.add_argument("process_id")
    p_logs.add_argument("--stream", choices=["both", "stdout", "stderr"], default="both")
    p_logs.add_argument("--lines", type=int, default=None, help="Lines per stream (0 for all)")
    p_logs.add_argument("--json", action="store_true", help="Output JSON")
    p_logs.set_defaults(func=cmd_logs)

    p_kill = sub.add_parser("kill", help="Signal a running process")
    p_kill.add_argument("process_id")
    p_kill.add_argument("--signal", choices=["SIGTERM", "SIGKILL"], default="SIGTERM")
    p_kill.set_defaults(func=cmd_kill)

    p_clean = sub.add_parser("clean", help="Remove process logs and metadata")
    p_clean.add_argument("--all", action="store_true", help="Clean all processes")
    p_clean.add_argument("--completed", action="store_true", help="Only completed processes")
    p_clean.add_argument("--failed", action="store_true", help="Only failed processes")
    p_clean.add_argument("--before", help="Processes started before this RFC 3339 timestamp")
    p_clean.set_defaults(func=cmd_clean)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    settings = get_settings()
    configure_logging(settings.log_level)
    code = args.func(args, settings)
    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
