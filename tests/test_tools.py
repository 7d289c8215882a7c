from __future__ import annotations

import subprocess
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from dkit.config import DkitSettings
from dkit.errors import InvalidArgumentError, InvalidStateError, NotFoundError
from dkit.liveness import SignalProbe
from dkit.storage import ProcessRecord, ProcessStatus, ProcessStore
from dkit.tools import parse_arguments, register_tools

BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
KILL_TIME = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


class StubServer:
    def __init__(self) -> None:
        self.registered: dict[str, object] = {}

    def tool(self, *, name, description, input_schema, arguments):
        def decorator(fn):
            tool = _BoundTool(fn, arguments)
            self.registered[name] = tool
            return tool

        return decorator


class _BoundTool:
    def __init__(self, fn, arguments) -> None:
        self.fn = fn
        self.arguments = arguments

    def __call__(self, **kwargs):
        return self.fn(self.arguments.model_validate(kwargs))


class FakeProbe:
    def __init__(self, alive: set[int] | None = None) -> None:
        self.alive = alive or set()

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive


def _record(process_id: str, *, minutes: int = 0, **overrides) -> ProcessRecord:
    fields = {
        "id": process_id,
        "pid": 1000 + int(process_id),
        "command": f"job {process_id}",
        "args": ["job", process_id],
        "cwd": "/work",
        "started_at": BASE_TIME + timedelta(minutes=minutes),
        "status": ProcessStatus.RUNNING,
    }
    fields.update(overrides)
    return ProcessRecord(**fields)


def _setup(tmp_path: Path, probe=None):
    store = ProcessStore.create(tmp_path)
    server = StubServer()
    handles = register_tools(
        server,  # type: ignore[arg-type]
        store_provider=lambda: store,
        probe=probe or FakeProbe(),
        settings=DkitSettings(default_log_lines=100),
        clock=lambda: KILL_TIME,
    )
    return store, server, handles


def test_register_tools_exposes_five_tools(tmp_path: Path) -> None:
    _, server, _ = _setup(tmp_path)

    assert sorted(server.registered) == [
        "process_clean",
        "process_kill",
        "process_list",
        "process_logs",
        "process_show",
    ]


def test_process_list_filters_sorts_and_limits(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path, FakeProbe({1002, 1003}))
    store.put(_record("1", minutes=0, status=ProcessStatus.COMPLETED, exit_code=0))
    store.put(_record("2", minutes=10))
    store.put(_record("3", minutes=20))
    store.put(_record("4", minutes=30, status=ProcessStatus.FAILED, exit_code=2))

    everything = handles.process_list()
    assert [item["id"] for item in everything["processes"]] == ["4", "3", "2", "1"]
    assert everything["total"] == 4
    assert everything["filtered"] == 4

    running = handles.process_list(status="running", limit=1)
    assert [item["id"] for item in running["processes"]] == ["3"]
    assert running["total"] == 4
    assert running["filtered"] == 1


def test_process_list_reconciles_without_persisting(tmp_path: Path) -> None:
    probe = FakeProbe({1001})
    store, _, handles = _setup(tmp_path, probe)
    store.put(_record("1"))

    first = handles.process_list()
    assert first["processes"][0]["status"] == "running"

    probe.alive.clear()
    second = handles.process_list()

    assert second["processes"][0]["status"] == "failed"
    assert second["processes"][0]["exit_code"] == -1
    assert store.get("1").status is ProcessStatus.RUNNING


def test_process_list_limit_accepts_json_floats(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path)
    for index in range(1, 4):
        store.put(_record(str(index), minutes=index, status=ProcessStatus.COMPLETED, exit_code=0))

    result = handles.process_list(limit=2.0)

    assert len(result["processes"]) == 2


def test_process_show_includes_unset_fields_and_log_sizes(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path, FakeProbe({1001}))
    store.put(_record("1"))
    store.log_path("1", "stdout").write_bytes(b"hello\nworld\n")

    shown = handles.process_show(process_id="1")

    assert shown["id"] == "1"
    assert shown["status"] == "running"
    assert shown["ended_at"] is None
    assert shown["exit_code"] is None
    assert shown["log_size"] == {"stdout": 12, "stderr": 0}


def test_process_show_missing_raises_not_found(tmp_path: Path) -> None:
    _, _, handles = _setup(tmp_path)

    with pytest.raises(NotFoundError):
        handles.process_show(process_id="missing")


def test_process_logs_streams_and_line_limits(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path)
    store.put(_record("1", status=ProcessStatus.COMPLETED, exit_code=0))
    store.log_path("1", "stdout").write_text("".join(f"out {n}\n" for n in range(150)), encoding="utf-8")
    store.log_path("1", "stderr").write_text("boom\n", encoding="utf-8")

    both = handles.process_logs(process_id="1")
    assert both["process_id"] == "1"
    assert len(both["stdout"]) == 100
    assert both["stdout"][-1] == "out 149"
    assert both["stderr"] == ["boom"]

    only_err = handles.process_logs(process_id="1", stream="stderr", lines=5)
    assert "stdout" not in only_err
    assert only_err["stderr"] == ["boom"]

    everything = handles.process_logs(process_id="1", stream="stdout", lines=0)
    assert len(everything["stdout"]) == 150


def test_process_logs_missing_log_files_are_empty(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path)
    store.put(_record("1", status=ProcessStatus.FAILED, exit_code=-1))

    assert handles.process_logs(process_id="1") == {"process_id": "1", "stdout": [], "stderr": []}


def test_process_logs_unknown_id(tmp_path: Path) -> None:
    _, _, handles = _setup(tmp_path)

    with pytest.raises(NotFoundError):
        handles.process_logs(process_id="nope")


def test_process_kill_refuses_finished_record(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path)
    finished = _record("1", status=ProcessStatus.COMPLETED, exit_code=0)
    store.put(finished)

    with pytest.raises(InvalidStateError, match="not running"):
        handles.process_kill(process_id="1")

    assert store.get("1") == finished


def test_process_kill_refuses_dead_pid(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path, FakeProbe())
    stale = _record("1")
    store.put(stale)

    with pytest.raises(InvalidStateError, match="no longer running"):
        handles.process_kill(process_id="1")

    assert store.get("1") == stale


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_process_kill_signals_live_child(tmp_path: Path) -> None:
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    try:
        store, _, handles = _setup(tmp_path, SignalProbe())
        store.put(_record("1", pid=child.pid))

        result = handles.process_kill(process_id="1", signal="SIGTERM")

        assert result == {
            "process_id": "1",
            "signal": "SIGTERM",
            "killed_at": KILL_TIME.isoformat(),
        }
        assert child.wait(timeout=10) != 0
        updated = store.get("1")
        assert updated.status is ProcessStatus.FAILED
        assert updated.exit_code == -1
        assert updated.ended_at == KILL_TIME
    finally:
        if child.poll() is None:
            child.kill()
            child.wait(timeout=10)


def test_process_clean_all_empties_registry(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path)
    for index in range(1, 4):
        store.put(_record(str(index), minutes=index, status=ProcessStatus.COMPLETED, exit_code=0))

    result = handles.process_clean(all=True)

    assert result == {"cleaned": 3, "errors": []}
    assert store.list() == []
    for index in range(1, 4):
        with pytest.raises(NotFoundError):
            store.get(str(index))


def test_process_clean_by_status_uses_reconciled_state(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path, FakeProbe({1003}))
    store.put(_record("1", status=ProcessStatus.COMPLETED, exit_code=0))
    store.put(_record("2"))
    store.put(_record("3"))

    result = handles.process_clean(failed=True)

    assert result["cleaned"] == 1
    assert [record.id for record in store.list()] == ["1", "3"]


def test_process_clean_before_timestamp(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path)
    store.put(_record("1", minutes=0, status=ProcessStatus.COMPLETED, exit_code=0))
    store.put(_record("2", minutes=60, status=ProcessStatus.COMPLETED, exit_code=0))

    result = handles.process_clean(before="2025-03-01T09:30:00Z")

    assert result["cleaned"] == 1
    assert [record.id for record in store.list()] == ["2"]


def test_process_clean_without_selectors_is_noop(tmp_path: Path) -> None:
    store, _, handles = _setup(tmp_path)
    store.put(_record("1", status=ProcessStatus.COMPLETED, exit_code=0))

    assert handles.process_clean() == {"cleaned": 0, "errors": []}
    assert len(store.list()) == 1


def test_process_clean_rejects_bad_timestamp(tmp_path: Path) -> None:
    _, _, handles = _setup(tmp_path)

    with pytest.raises(ValueError):
        handles.process_clean(before="yesterday")

    with pytest.raises(ValueError):
        handles.process_clean(before="2025-03-01T09:30:00")


def test_invalid_arguments_surface_as_invalid_argument(tmp_path: Path) -> None:
    _, server, _ = _setup(tmp_path)

    tool = server.registered["process_list"]
    with pytest.raises(InvalidArgumentError):
        tool.fn(parse_arguments(tool.arguments, {"status": "zombie"}))
