"""Exception hierarchy shared by the registry, the tools and the JSON-RPC server."""

from __future__ import annotations

from typing import Any


class RegistryError(RuntimeError):
    """Base class for process registry errors."""


class NotFoundError(RegistryError):
    """Raised when a process id or the project data directory does not exist."""


class InvalidArgumentError(RegistryError, ValueError):
    """Raised when tool arguments or timestamps cannot be interpreted."""


class InvalidStateError(RegistryError):
    """Raised when an operation's preconditions on a record are not met."""


class RegistryIOError(RegistryError):
    """Raised on filesystem faults while reading or writing the registry."""


class ProtocolError(Exception):
    """A JSON-RPC level failure that maps directly onto an error response."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_error(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


__all__ = [
    "InvalidArgumentError",
    "InvalidStateError",
    "NotFoundError",
    "ProtocolError",
    "RegistryError",
    "RegistryIOError",
]
