"""Typed argument models for each registry tool.

``tools/call`` hands over an arbitrary JSON object; it is validated into one of
these models once, before any registry work happens.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import InvalidArgumentError
from ..storage.models import ProcessStatus

_RFC3339 = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[Tt]\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>[Zz]|[+-]\d{2}:\d{2})$"
)


def parse_timestamp(value: str) -> datetime:
    """Parse a strict RFC 3339 timestamp (offset or ``Z`` required)."""

    match = _RFC3339.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise InvalidArgumentError(f"invalid date format (use ISO 8601 / RFC 3339): {value!r}")

    fraction = match.group("fraction")
    offset = match.group("offset")
    normalized = match.group("base").replace("t", "T")
    if fraction:
        normalized += "." + fraction[:6].ljust(6, "0")
    normalized += "+00:00" if offset in {"Z", "z"} else offset
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise InvalidArgumentError(f"invalid date format (use ISO 8601 / RFC 3339): {value!r}") from exc


def _whole_number(value: Any) -> Any:
    # JSON numbers arrive as floats; fractional parts are dropped.
    if isinstance(value, bool):
        raise ValueError("expected a number")
    if isinstance(value, float):
        return int(value)
    return value


class ToolArguments(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class ListArgs(ToolArguments):
    status: ProcessStatus | None = None
    limit: int = 0

    @field_validator("limit", mode="before")
    @classmethod
    def _limit(cls, value: Any) -> Any:
        return 0 if value is None else _whole_number(value)


class ShowArgs(ToolArguments):
    process_id: str = Field(..., min_length=1, strict=True)


class LogsArgs(ToolArguments):
    process_id: str = Field(..., min_length=1, strict=True)
    stream: Literal["both", "stdout", "stderr"] = "both"
    lines: int | None = None

    @field_validator("lines", mode="before")
    @classmethod
    def _lines(cls, value: Any) -> Any:
        return None if value is None else _whole_number(value)


class KillArgs(ToolArguments):
    process_id: str = Field(..., min_length=1, strict=True)
    signal: Literal["SIGTERM", "SIGKILL"] = "SIGTERM"


class CleanArgs(ToolArguments):
    all: bool = Field(default=False, strict=True)
    completed: bool = Field(default=False, strict=True)
    failed: bool = Field(default=False, strict=True)
    before: datetime | None = None

    @field_validator("before", mode="before")
    @classmethod
    def _before(cls, value: Any) -> Any:
        if value is None or isinstance(value, datetime):
            return value
        return parse_timestamp(value)


ArgsT = TypeVar("ArgsT", bound=ToolArguments)


def parse_arguments(model: type[ArgsT], arguments: Mapping[str, Any] | None) -> ArgsT:
    """Validate a raw argument map into ``model`` or raise :class:`InvalidArgumentError`."""

    try:
        return model.model_validate(dict(arguments or {}))
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}"
            for error in exc.errors()
        )
        raise InvalidArgumentError(details) from exc


__all__ = [
    "CleanArgs",
    "KillArgs",
    "ListArgs",
    "LogsArgs",
    "ShowArgs",
    "ToolArguments",
    "parse_arguments",
    "parse_timestamp",
]
