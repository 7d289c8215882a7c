"""Line-delimited JSON-RPC 2.0 server exposing the process registry to MCP clients."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, TextIO

from pydantic import BaseModel, StrictStr, ValidationError

from . import __version__
from .config import DkitSettings, get_settings
from .errors import ProtocolError, RegistryError
from .liveness import LivenessProbe, default_probe
from .storage import ProcessStore
from .tools import StoreProvider, ToolHandles, register_tools
from .tools.arguments import ToolArguments, parse_arguments

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "dkit-mcp"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


def configure_logging(level: str) -> None:
    """Configure root logging; stdout is reserved for protocol traffic."""

    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


class JsonRpcRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: Any = None
    method: StrictStr
    params: Any = None


class ToolCallParams(BaseModel):
    name: StrictStr
    arguments: Optional[dict[str, Any]] = None


@dataclass(slots=True)
class RegisteredTool:
    """A named tool with its schema and typed argument model."""

    name: str
    description: str
    input_schema: dict[str, Any]
    arguments: type[ToolArguments]
    fn: Callable[[Any], Any]

    def descriptor(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}

    def invoke(self, raw_arguments: Mapping[str, Any] | None) -> Any:
        return self.fn(parse_arguments(self.arguments, raw_arguments))


def format_tool_result(result: Any) -> str:
    return json.dumps(result, indent=2, default=str)


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'params'}: {error['msg']}"
        for error in exc.errors()
    )


def _response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error(request_id: Any, exc: ProtocolError) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": exc.to_error()}


class Dispatcher:
    """Stateless router from JSON-RPC requests to registered tools.

    One request is handled to completion before the next line is read; every
    input line, parseable or not, yields exactly one response line.
    """

    def __init__(self, *, name: str = SERVER_NAME, version: str = __version__) -> None:
        self.name = name
        self.version = version
        self._tools: dict[str, RegisteredTool] = {}
        self.tool_handles: ToolHandles | None = None

    @property
    def tools(self) -> list[RegisteredTool]:
        return list(self._tools.values())

    def tool(
        self,
        *,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        arguments: type[ToolArguments],
    ) -> Callable[[Callable[[Any], Any]], RegisteredTool]:
        def decorator(fn: Callable[[Any], Any]) -> RegisteredTool:
            registered = RegisteredTool(
                name=name,
                description=description,
                input_schema=input_schema,
                arguments=arguments,
                fn=fn,
            )
            self._tools[name] = registered
            return registered

        return decorator

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    def handle_line(self, line: str) -> dict[str, Any]:
        try:
            payload = json.loads(line)
        except (ValueError, RecursionError) as exc:
            logger.debug("Unparseable request line", extra={"error": str(exc)})
            return _error(None, ProtocolError(PARSE_ERROR, "Parse error", str(exc)))
        return self.handle_message(payload)

    def handle_message(self, payload: Any) -> dict[str, Any]:
        request_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(payload, dict):
            return _error(None, ProtocolError(INVALID_REQUEST, "Invalid Request", "request must be a JSON object"))
        try:
            request = JsonRpcRequest.model_validate(payload)
        except ValidationError as exc:
            return _error(request_id, ProtocolError(INVALID_REQUEST, "Invalid Request", _describe(exc)))

        handlers: dict[str, Callable[[Any], Any]] = {
            "initialize": self._initialize,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
        }
        handler = handlers.get(request.method)
        if handler is None:
            return _error(request.id, ProtocolError(METHOD_NOT_FOUND, "Method not found", request.method))

        try:
            return _response(request.id, handler(request.params))
        except ProtocolError as exc:
            return _error(request.id, exc)

    def _initialize(self, _params: Any) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": self.name, "version": self.version},
        }

    def _list_tools(self, _params: Any) -> dict[str, Any]:
        return {"tools": [tool.descriptor() for tool in self._tools.values()]}

    def _call_tool(self, params: Any) -> dict[str, Any]:
        if not isinstance(params, dict):
            raise ProtocolError(INVALID_PARAMS, "Invalid params", "params must be an object")
        try:
            call = ToolCallParams.model_validate(params)
        except ValidationError as exc:
            raise ProtocolError(INVALID_PARAMS, "Invalid params", _describe(exc)) from exc

        tool = self._tools.get(call.name)
        if tool is None:
            raise ProtocolError(INVALID_PARAMS, "Unknown tool", call.name)

        try:
            result = tool.invoke(call.arguments)
        except RegistryError as exc:
            logger.info("Tool failed", extra={"tool": call.name, "error": str(exc)})
            raise ProtocolError(INTERNAL_ERROR, "Tool execution failed", str(exc)) from exc
        except Exception as exc:  # pragma: no cover
            logger.exception("Tool raised unexpectedly", extra={"tool": call.name})
            raise ProtocolError(INTERNAL_ERROR, "Tool execution failed", str(exc)) from exc

        return {"content": [{"type": "text", "text": format_tool_result(result)}]}

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def serve(self, stdin: TextIO, stdout: TextIO) -> None:
        """Answer requests from ``stdin`` until end of input."""

        for line in stdin:
            response = self.handle_line(line)
            stdout.write(json.dumps(response, separators=(",", ":")) + "\n")
            stdout.flush()


def create_server(
    settings: DkitSettings | None = None,
    *,
    store_provider: StoreProvider | None = None,
    probe: LivenessProbe | None = None,
    clock=None,
) -> Dispatcher:
    """Instantiate the dispatcher with the registry tools registered."""

    settings = settings or get_settings()

    def _discover_store() -> ProcessStore:
        return ProcessStore.discover(dir_name=settings.data_dir_name)

    server = Dispatcher()
    server.tool_handles = register_tools(
        server,
        store_provider=store_provider or _discover_store,
        probe=probe or default_probe(),
        settings=settings,
        clock=clock,
    )
    return server


def run_stdio(settings: DkitSettings | None = None) -> None:
    """Serve the registry over this process' stdin/stdout."""

    settings = settings or get_settings()
    server = create_server(settings)
    logger.info(
        "Launching dkit MCP server",
        extra={"version": __version__, "tools": len(server.tools), "log_level": settings.log_level},
    )
    for stream in (sys.stdin, sys.stdout):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(encoding="utf-8", errors="replace")
    server.serve(sys.stdin, sys.stdout)
    logger.info("Input closed; shutting down")


def main() -> None:
    """Entry point for running the MCP server directly."""

    settings = get_settings()
    configure_logging(settings.log_level)
    run_stdio(settings)


if __name__ == "__main__":
    main()
