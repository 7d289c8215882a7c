"""Filesystem-backed process registry.

Layout under the data directory::

    index.json                    every record, pretty-printed, insertion order
    processes/<id>/meta.json      the authoritative copy of one record
    processes/<id>/stdout.log     written by the runner
    processes/<id>/stderr.log     written by the runner

Every JSON file is replaced atomically (temp file + ``os.replace``) so a
concurrent reader never sees a torn record. There is no cross-process lock;
the index is last-writer-wins.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
import tempfile
from collections import deque
from pathlib import Path
from typing import Iterable, Literal

from pydantic import ValidationError

from ..errors import InvalidArgumentError, InvalidStateError, NotFoundError, RegistryIOError
from ..project import DEFAULT_DATA_DIR_NAME, ensure_data_dir, find_data_dir
from .models import ProcessIndex, ProcessRecord

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
PROCESSES_DIR = "processes"
META_FILE = "meta.json"
LOG_FILES = {"stdout": "stdout.log", "stderr": "stderr.log"}

Stream = Literal["stdout", "stderr"]


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def read_tail(path: Path, max_lines: int) -> list[str]:
    """Return up to the last ``max_lines`` lines of ``path``.

    A missing file yields an empty list. ``max_lines <= 0`` returns every line.
    The final newline does not produce a trailing empty entry; an unterminated
    last line is kept.
    """

    try:
        with Path(path).open("rb") as handle:
            tail = deque(handle, maxlen=max_lines if max_lines > 0 else None)
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise RegistryIOError(f"failed to read log file {path}: {exc}") from exc

    lines: list[str] = []
    for raw in tail:
        if raw.endswith(b"\n"):
            raw = raw[:-1]
        lines.append(raw.decode("utf-8", errors="replace"))
    return lines


class ProcessStore:
    """Read/write access to one project's process registry."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)

    @classmethod
    def discover(cls, start: Path | None = None, *, dir_name: str = DEFAULT_DATA_DIR_NAME) -> "ProcessStore":
        """Locate an existing data directory above ``start``; never creates one."""

        return cls(find_data_dir(start, dir_name=dir_name))

    @classmethod
    def create(cls, project_root: Path, *, dir_name: str = DEFAULT_DATA_DIR_NAME) -> "ProcessStore":
        """Establish (or reuse) the data directory of ``project_root``."""

        return cls(ensure_data_dir(project_root, dir_name=dir_name))

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def project_root(self) -> Path:
        return self._data_dir.parent

    @property
    def index_path(self) -> Path:
        return self._data_dir / INDEX_FILE

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def process_dir(self, process_id: str) -> Path:
        if not process_id or process_id in {".", ".."} or "/" in process_id or "\\" in process_id:
            raise InvalidArgumentError(f"invalid process id: {process_id!r}")
        return self._data_dir / PROCESSES_DIR / process_id

    def log_path(self, process_id: str, stream: Stream) -> Path:
        return self.process_dir(process_id) / LOG_FILES[stream]

    def relative_log_path(self, process_id: str, stream: Stream) -> str:
        """Log path relative to the project root, as recorded in ``stdout_path``/``stderr_path``."""

        return "/".join((self._data_dir.name, PROCESSES_DIR, process_id, LOG_FILES[stream]))

    def ensure_process_dir(self, process_id: str) -> Path:
        path = self.process_dir(process_id)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RegistryIOError(f"failed to create process directory {path}: {exc}") from exc
        return path

    def log_size(self, process_id: str, stream: Stream) -> int:
        try:
            return self.log_path(process_id, stream).stat().st_size
        except OSError:
            return 0

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def load_index(self) -> ProcessIndex:
        try:
            text = self.index_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ProcessIndex()
        except OSError as exc:
            raise RegistryIOError(f"failed to read {INDEX_FILE}: {exc}") from exc
        try:
            return ProcessIndex.model_validate_json(text)
        except ValidationError as exc:
            raise RegistryIOError(f"failed to parse {INDEX_FILE}: {exc}") from exc

    def _save_index(self, index: ProcessIndex) -> None:
        payload = {"processes": [record.to_payload() for record in index.processes]}
        try:
            _atomic_write(self.index_path, json.dumps(payload, indent=2))
        except OSError as exc:
            raise RegistryIOError(f"failed to write {INDEX_FILE}: {exc}") from exc

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def put(self, record: ProcessRecord) -> None:
        """Write the record's detail file and upsert it into the index."""

        if record.is_running:
            try:
                existing: ProcessRecord | None = self.get(record.id)
            except NotFoundError:
                existing = None
            if existing is not None and not existing.is_running:
                raise InvalidStateError(
                    f"process {record.id} already finished (status: {existing.status.value})"
                )

        meta_path = self.process_dir(record.id) / META_FILE
        try:
            _atomic_write(meta_path, json.dumps(record.to_payload(), indent=2))
        except OSError as exc:
            raise RegistryIOError(f"failed to write metadata for {record.id}: {exc}") from exc

        index = self.load_index()
        index.upsert(record)
        self._save_index(index)
        logger.debug(
            "Stored process record",
            extra={"process_id": record.id, "status": record.status.value, "pid": record.pid},
        )

    def get(self, process_id: str) -> ProcessRecord:
        meta_path = self.process_dir(process_id) / META_FILE
        try:
            text = meta_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFoundError(f"process not found: {process_id}") from exc
        except OSError as exc:
            raise RegistryIOError(f"failed to read metadata for {process_id}: {exc}") from exc
        try:
            return ProcessRecord.model_validate_json(text)
        except ValidationError as exc:
            raise RegistryIOError(f"failed to parse metadata for {process_id}: {exc}") from exc

    def list(self) -> list[ProcessRecord]:
        return list(self.load_index().processes)

    def delete(self, process_id: str) -> None:
        """Remove one record; the index entry goes even when directory removal fails."""

        errors = self.delete_many([process_id])
        if errors:
            raise RegistryIOError(errors[0])

    def delete_many(self, process_ids: Iterable[str]) -> list[str]:
        """Remove several records, rewriting the index once.

        Returns ``"<id>: <reason>"`` for each directory that could not be removed.
        """

        doomed = list(process_ids)
        errors: list[str] = []
        for process_id in doomed:
            path = self.process_dir(process_id)
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning(
                    "Failed to remove process directory",
                    extra={"process_id": process_id, "error": str(exc)},
                )
                errors.append(f"{process_id}: failed to remove process directory: {exc}")

        if doomed:
            removed = set(doomed)
            index = self.load_index()
            index.processes = [record for record in index.processes if record.id not in removed]
            self._save_index(index)
        return errors


__all__ = ["INDEX_FILE", "LOG_FILES", "META_FILE", "PROCESSES_DIR", "ProcessStore", "Stream", "read_tail"]
