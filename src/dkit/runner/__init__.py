"""Foreground command execution with registry bookkeeping."""

from .runner import CommandNotFoundError, CommandRunner, RunResult, RunnerError

__all__ = [
    "CommandNotFoundError",
    "CommandRunner",
    "RunResult",
    "RunnerError",
]
