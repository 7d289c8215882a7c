"""Tool registration for the dkit MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from ..config import DkitSettings
from ..errors import InvalidStateError
from ..liveness import LivenessProbe, reconcile, send_signal
from ..storage import SENTINEL_EXIT_CODE, ProcessStatus, ProcessStore, read_tail
from .arguments import CleanArgs, KillArgs, ListArgs, LogsArgs, ShowArgs, ToolArguments, parse_arguments

logger = logging.getLogger(__name__)

StoreProvider = Callable[[], ProcessStore]


class ToolServer(Protocol):
    """The registration surface a server offers to :func:`register_tools`."""

    def tool(
        self,
        *,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        arguments: type[ToolArguments],
    ) -> Callable[[Callable[..., Any]], Any]:
        ...


@dataclass(slots=True)
class ToolHandles:
    process_list: Any
    process_show: Any
    process_logs: Any
    process_kill: Any
    process_clean: Any


def register_tools(
    server: ToolServer,
    *,
    store_provider: StoreProvider,
    probe: LivenessProbe,
    settings: DkitSettings,
    clock: Callable[[], datetime] | None = None,
) -> ToolHandles:
    """Register the process registry tools on the server.

    ``store_provider`` is called on every invocation so that nothing read from
    disk outlives a single request.
    """

    now = clock or (lambda: datetime.now(timezone.utc))

    def _process_list(args: ListArgs) -> dict[str, Any]:
        """List processes newest first, correcting stale running entries."""

        records = store_provider().list()
        matching = [reconcile(record, probe) for record in records]
        if args.status is not None:
            matching = [record for record in matching if record.status is args.status]
        matching.sort(key=lambda record: record.started_at, reverse=True)
        if args.limit > 0:
            matching = matching[: args.limit]
        filtered = len(matching)

        _emit_log(
            "debug",
            "Listed processes",
            extra={"total": len(records), "filtered": filtered},
        )
        return {
            "processes": [record.to_payload() for record in matching],
            "total": len(records),
            "filtered": filtered,
        }

    def _process_show(args: ShowArgs) -> dict[str, Any]:
        """Return one record plus the current size of its log files."""

        store = store_provider()
        record = reconcile(store.get(args.process_id), probe)
        payload = record.to_payload(include_unset=True)
        payload["log_size"] = {
            "stdout": store.log_size(record.id, "stdout"),
            "stderr": store.log_size(record.id, "stderr"),
        }
        return payload

    def _process_logs(args: LogsArgs) -> dict[str, Any]:
        store = store_provider()
        store.get(args.process_id)
        lines = settings.default_log_lines if args.lines is None else args.lines

        result: dict[str, Any] = {"process_id": args.process_id}
        if args.stream in ("stdout", "both"):
            result["stdout"] = read_tail(store.log_path(args.process_id, "stdout"), lines)
        if args.stream in ("stderr", "both"):
            result["stderr"] = read_tail(store.log_path(args.process_id, "stderr"), lines)
        return result

    def _process_kill(args: KillArgs) -> dict[str, Any]:
        """Signal a running process and mark its record failed.

        The record is updated as soon as the signal is delivered; there is no
        wait for the process to actually exit.
        """

        store = store_provider()
        stored = store.get(args.process_id)
        if not stored.is_running:
            raise InvalidStateError(f"process is not running (status: {stored.status.value})")
        if not reconcile(stored, probe).is_running:
            raise InvalidStateError("process is no longer running")

        send_signal(stored.pid, args.signal)

        killed_at = now()
        store.put(
            stored.model_copy(
                update={
                    "status": ProcessStatus.FAILED,
                    "exit_code": SENTINEL_EXIT_CODE,
                    "ended_at": killed_at,
                }
            )
        )
        _emit_log(
            "info",
            "Signalled process",
            extra={"process_id": stored.id, "pid": stored.pid, "signal": args.signal},
        )
        return {"process_id": stored.id, "signal": args.signal, "killed_at": killed_at.isoformat()}

    def _process_clean(args: CleanArgs) -> dict[str, Any]:
        """Delete records selected by status flags or start time.

        ``cleaned`` counts attempted deletions; failures are listed in ``errors``.
        """

        store = store_provider()
        doomed: list[str] = []
        for record in store.list():
            current = reconcile(record, probe)
            if (
                args.all
                or (args.completed and current.status is ProcessStatus.COMPLETED)
                or (args.failed and current.status is ProcessStatus.FAILED)
                or (args.before is not None and record.started_at < args.before)
            ):
                doomed.append(record.id)

        errors = store.delete_many(doomed)
        _emit_log(
            "info" if doomed else "debug",
            "Cleaned processes",
            extra={"cleaned": len(doomed), "errors": len(errors)},
        )
        return {"cleaned": len(doomed), "errors": errors}

    tool_list = server.tool(
        name="process_list",
        description="List all processes started by dkit run",
        input_schema={
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "description": "Filter by status",
                    "enum": ["running", "completed", "failed"],
                },
                "limit": {
                    "type": "number",
                    "description": "Limit number of results",
                },
            },
        },
        arguments=ListArgs,
    )(_process_list)

    tool_show = server.tool(
        name="process_show",
        description="Show detailed information about a specific process",
        input_schema={
            "type": "object",
            "properties": {
                "process_id": {"type": "string", "description": "Process ID to show"},
            },
            "required": ["process_id"],
        },
        arguments=ShowArgs,
    )(_process_show)

    tool_logs = server.tool(
        name="process_logs",
        description="View process logs (stdout and stderr)",
        input_schema={
            "type": "object",
            "properties": {
                "process_id": {"type": "string", "description": "Process ID"},
                "stream": {
                    "type": "string",
                    "description": "Which stream to show",
                    "enum": ["stdout", "stderr", "both"],
                    "default": "both",
                },
                "lines": {
                    "type": "number",
                    "description": "Number of lines to show",
                    "default": settings.default_log_lines,
                },
            },
            "required": ["process_id"],
        },
        arguments=LogsArgs,
    )(_process_logs)

    tool_kill = server.tool(
        name="process_kill",
        description="Send signal to terminate a running process",
        input_schema={
            "type": "object",
            "properties": {
                "process_id": {"type": "string", "description": "Process ID to kill"},
                "signal": {
                    "type": "string",
                    "description": "Signal to send",
                    "enum": ["SIGTERM", "SIGKILL"],
                    "default": "SIGTERM",
                },
            },
            "required": ["process_id"],
        },
        arguments=KillArgs,
    )(_process_kill)

    tool_clean = server.tool(
        name="process_clean",
        description=(
            "Remove process logs and metadata. Status filters match the current status, "
            "so a running entry whose process has exited counts as failed"
        ),
        input_schema={
            "type": "object",
            "properties": {
                "all": {"type": "boolean", "description": "Clean all processes"},
                "completed": {"type": "boolean", "description": "Only completed processes"},
                "failed": {
                    "type": "boolean",
                    "description": "Only failed processes (including exited running entries)",
                },
                "before": {
                    "type": "string",
                    "description": "Processes started before date (ISO 8601)",
                },
            },
        },
        arguments=CleanArgs,
    )(_process_clean)

    return ToolHandles(
        process_list=tool_list,
        process_show=tool_show,
        process_logs=tool_logs,
        process_kill=tool_kill,
        process_clean=tool_clean,
    )


def _emit_log(
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=extra or {})


__all__ = ["StoreProvider", "ToolHandles", "ToolServer", "parse_arguments", "register_tools"]
