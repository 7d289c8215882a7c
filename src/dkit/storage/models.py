"""Data models for the process registry."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

# Exit code recorded when a process was killed, died of a signal or never started.
SENTINEL_EXIT_CODE = -1


class ProcessStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessRecord(BaseModel):
    """One watched command execution, as stored in ``meta.json`` and the index."""

    id: str = Field(..., description="Unique token; also the name of the record's directory.")
    pid: int = Field(default=0, description="OS process id, 0 until the child has started.")
    command: str = Field(..., description="Display form of the command line.")
    args: list[str] = Field(default_factory=list, description="Literal argv.")
    cwd: str = Field(..., description="Absolute directory the command ran in.")
    started_at: datetime
    ended_at: datetime | None = None
    status: ProcessStatus = ProcessStatus.RUNNING
    exit_code: int | None = None
    stdout_path: str = Field(default="", description="Project-relative path of stdout.log.")
    stderr_path: str = Field(default="", description="Project-relative path of stderr.log.")

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        if not value or value in {".", ".."} or "/" in value or "\\" in value:
            raise ValueError(f"Invalid process id {value!r}: must be a single path component")
        return value

    @field_validator("args", mode="before")
    @classmethod
    def _ensure_args(cls, value: Any):  # type: ignore[override]
        return [] if value is None else value

    @field_validator("started_at", "ended_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_running(self) -> bool:
        return self.status is ProcessStatus.RUNNING

    def to_payload(self, *, include_unset: bool = False) -> dict[str, Any]:
        """JSON-ready dict; absent optional fields are dropped unless ``include_unset``."""

        return self.model_dump(mode="json", exclude_none=not include_unset)


class ProcessIndex(BaseModel):
    """Aggregate of every known record, in insertion order."""

    processes: list[ProcessRecord] = Field(default_factory=list)

    @field_validator("processes", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        return [] if value is None else value

    def upsert(self, record: ProcessRecord) -> None:
        for position, existing in enumerate(self.processes):
            if existing.id == record.id:
                self.processes[position] = record
                return
        self.processes.append(record)


def new_process_id() -> str:
    """Return a fresh id derived from a nanosecond timestamp."""

    return str(time.time_ns())


__all__ = [
    "ProcessIndex",
    "ProcessRecord",
    "ProcessStatus",
    "SENTINEL_EXIT_CODE",
    "new_process_id",
]
