from __future__ import annotations

import io
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

from dkit import __version__
from dkit.config import DkitSettings
from dkit.server import create_server
from dkit.storage import ProcessRecord, ProcessStatus, ProcessStore


class DeadProbe:
    def is_alive(self, pid: int) -> bool:
        return False


def _server(tmp_path: Path, *, with_store: bool = True):
    settings = DkitSettings()
    if with_store:
        store = ProcessStore.create(tmp_path)
        return create_server(settings, store_provider=lambda: store, probe=DeadProbe()), store

    def _missing() -> ProcessStore:
        return ProcessStore.discover(tmp_path)

    return create_server(settings, store_provider=_missing, probe=DeadProbe()), None


def _call(name: str, arguments=None, request_id: int = 1) -> dict:
    params: dict = {"name": name}
    if arguments is not None:
        params["arguments"] = arguments
    return {"jsonrpc": "2.0", "id": request_id, "method": "tools/call", "params": params}


def _serve(server, *messages: str) -> list[dict]:
    stdin = io.StringIO("".join(message + "\n" for message in messages))
    stdout = io.StringIO()
    server.serve(stdin, stdout)
    return [json.loads(line) for line in stdout.getvalue().splitlines()]


def test_initialize_reports_server_info(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    response = server.handle_message({"jsonrpc": "2.0", "id": 7, "method": "initialize", "params": {}})

    assert response["id"] == 7
    assert response["result"] == {
        "protocolVersion": "2024-11-05",
        "capabilities": {"tools": {}},
        "serverInfo": {"name": "dkit-mcp", "version": __version__},
    }


def test_tools_list_describes_all_tools(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    response = server.handle_message({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})

    tools = {tool["name"]: tool for tool in response["result"]["tools"]}
    assert set(tools) == {"process_list", "process_show", "process_logs", "process_kill", "process_clean"}
    assert tools["process_show"]["inputSchema"]["required"] == ["process_id"]
    assert tools["process_kill"]["inputSchema"]["properties"]["signal"]["enum"] == ["SIGTERM", "SIGKILL"]


def test_show_missing_process_wraps_not_found(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    response = server.handle_message(_call("process_show", {"process_id": "missing"}))

    assert response["id"] == 1
    assert response["error"]["code"] == -32603
    assert response["error"]["message"] == "Tool execution failed"
    assert "not found" in response["error"]["data"]


def test_missing_data_directory_is_a_tool_failure(tmp_path: Path) -> None:
    server, _ = _server(tmp_path, with_store=False)

    response = server.handle_message(_call("process_list", {}))

    assert response["error"]["code"] == -32603
    assert "data directory" in response["error"]["data"]


def test_parse_error_does_not_end_session(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    responses = _serve(
        server,
        "{bad json",
        json.dumps({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}),
    )

    assert len(responses) == 2
    assert responses[0]["id"] is None
    assert responses[0]["error"]["code"] == -32700
    assert responses[1]["id"] == 1
    assert responses[1]["result"]["serverInfo"]["name"] == "dkit-mcp"


def test_blank_line_is_a_parse_error(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    responses = _serve(server, "")

    assert len(responses) == 1
    assert responses[0]["error"]["code"] == -32700


def test_responses_are_single_compact_lines(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)
    stdout = io.StringIO()

    server.serve(io.StringIO(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "tools/list"}) + "\n"), stdout)

    output = stdout.getvalue()
    assert output.count("\n") == 1
    assert '"jsonrpc":"2.0"' in output


def test_unknown_method(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    response = server.handle_message({"jsonrpc": "2.0", "id": 3, "method": "resources/list"})

    assert response["error"]["code"] == -32601
    assert response["error"]["data"] == "resources/list"


def test_invalid_envelopes(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    not_object = server.handle_line("[1, 2]")
    no_method = server.handle_message({"jsonrpc": "2.0", "id": 4})

    assert not_object["error"]["code"] == -32600
    assert not_object["id"] is None
    assert no_method["error"]["code"] == -32600
    assert no_method["id"] == 4


def test_tools_call_param_errors(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    no_params = server.handle_message({"jsonrpc": "2.0", "id": 1, "method": "tools/call"})
    bad_name = server.handle_message({"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": {"name": 5}})
    bad_args = server.handle_message(
        {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "process_list", "arguments": [1]}}
    )
    unknown = server.handle_message(_call("process_nuke", {}, request_id=4))

    assert no_params["error"]["code"] == -32602
    assert bad_name["error"]["code"] == -32602
    assert bad_args["error"]["code"] == -32602
    assert unknown["error"] == {"code": -32602, "message": "Unknown tool", "data": "process_nuke"}


def test_argument_validation_is_a_tool_failure(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    response = server.handle_message(_call("process_clean", {"before": "last tuesday"}))

    assert response["error"]["code"] == -32603
    assert "invalid date format" in response["error"]["data"]


def test_tool_result_is_indented_json_text(tmp_path: Path) -> None:
    server, store = _server(tmp_path)
    store.put(
        ProcessRecord(
            id="1",
            pid=99999,
            command="make test",
            args=["make", "test"],
            cwd=str(tmp_path),
            started_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            status=ProcessStatus.RUNNING,
        )
    )

    response = server.handle_message(_call("process_list"))

    content = response["result"]["content"]
    assert content[0]["type"] == "text"
    assert content[0]["text"].startswith("{\n  ")
    payload = json.loads(content[0]["text"])
    assert payload["total"] == 1
    assert payload["processes"][0]["status"] == "failed"
    assert store.get("1").status is ProcessStatus.RUNNING


def test_deeply_nested_line_is_a_parse_error(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    responses = _serve(
        server,
        "[" * 100000,
        json.dumps({"jsonrpc": "2.0", "id": 2, "method": "initialize", "params": {}}),
    )

    assert len(responses) == 2
    assert responses[0]["id"] is None
    assert responses[0]["error"]["code"] == -32700
    assert responses[1]["id"] == 2
    assert responses[1]["result"]["protocolVersion"] == "2024-11-05"


@pytest.mark.skipif(not hasattr(sys, "get_int_max_str_digits"), reason="no integer digit limit")
def test_oversized_integer_is_a_parse_error(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)
    huge_id = "9" * 5000

    responses = _serve(
        server,
        '{"jsonrpc":"2.0","id":' + huge_id + ',"method":"initialize","params":{}}',
        json.dumps({"jsonrpc": "2.0", "id": 3, "method": "initialize", "params": {}}),
    )

    assert len(responses) == 2
    assert responses[1]["id"] == 3
    assert responses[0]["error"]["code"] == -32700
    assert responses[0]["id"] is None


def test_clean_description_explains_status_matching(tmp_path: Path) -> None:
    server, _ = _server(tmp_path)

    response = server.handle_message({"jsonrpc": "2.0", "id": 5, "method": "tools/list"})

    [clean] = [tool for tool in response["result"]["tools"] if tool["name"] == "process_clean"]
    assert "counts as failed" in clean["description"]
