"""Async runner that tees a child's output to the terminal and the registry logs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Sequence

from ..errors import RegistryError
from ..storage import SENTINEL_EXIT_CODE, ProcessRecord, ProcessStatus, ProcessStore, new_process_id
from .utils import build_environment

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 4096


class RunnerError(RuntimeError):
    """Base class for runner errors."""


class CommandNotFoundError(RunnerError):
    """Raised when the command executable cannot be located."""


@dataclass(slots=True)
class RunResult:
    """Holds the final record of a finished command."""

    record: ProcessRecord

    @property
    def returncode(self) -> int:
        code = self.record.exit_code
        return SENTINEL_EXIT_CODE if code is None else code

    @property
    def ok(self) -> bool:
        return self.record.status is ProcessStatus.COMPLETED


async def _pump(reader: asyncio.StreamReader, terminal: BinaryIO, log: BinaryIO) -> None:
    while True:
        chunk = await reader.read(_CHUNK_SIZE)
        if not chunk:
            break
        log.write(chunk)
        log.flush()
        terminal.write(chunk)
        terminal.flush()


class CommandRunner:
    """Run one command in the foreground and record it in a :class:`ProcessStore`.

    The record is written three times: ``running`` before the spawn, again
    with the pid, and once more with the final status.
    """

    def __init__(
        self,
        store: ProcessStore,
        *,
        add_local_bin: bool = True,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
        clock: Callable[[], datetime] | None = None,
        forward_signals: bool = True,
    ) -> None:
        self._store = store
        self._add_local_bin = add_local_bin
        self._stdout = stdout
        self._stderr = stderr
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._forward_signals = forward_signals

    async def run(self, argv: Sequence[str], *, cwd: Path | None = None) -> RunResult:
        if not argv:
            raise RunnerError("no command specified")

        workdir = Path(cwd or Path.cwd()).resolve()
        process_id = new_process_id()
        self._store.ensure_process_dir(process_id)

        record = ProcessRecord(
            id=process_id,
            command=" ".join(argv),
            args=list(argv),
            cwd=str(workdir),
            started_at=self._clock(),
            status=ProcessStatus.RUNNING,
            stdout_path=self._store.relative_log_path(process_id, "stdout"),
            stderr_path=self._store.relative_log_path(process_id, "stderr"),
        )
        # Single arguments are shell snippets; anything longer is an argv.
        command = ["sh", "-c", argv[0]] if len(argv) == 1 else list(argv)

        with self._store.log_path(process_id, "stdout").open("wb") as out_log, \
                self._store.log_path(process_id, "stderr").open("wb") as err_log:
            self._store.put(record)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(workdir),
                    env=build_environment(self._store.project_root, add_local_bin=self._add_local_bin),
                )
            except OSError as exc:
                self._save(
                    record.model_copy(
                        update={
                            "status": ProcessStatus.FAILED,
                            "exit_code": SENTINEL_EXIT_CODE,
                            "ended_at": self._clock(),
                        }
                    )
                )
                if isinstance(exc, FileNotFoundError):
                    raise CommandNotFoundError(f"command not found: {argv[0]}") from exc
                raise RunnerError(f"failed to start command: {exc}") from exc

            record = record.model_copy(update={"pid": process.pid})
            self._save(record)
            logger.info("Started command", extra={"process_id": process_id, "pid": process.pid})

            terminal_out = self._stdout or sys.stdout.buffer
            terminal_err = self._stderr or sys.stderr.buffer
            pumps = [
                asyncio.create_task(_pump(process.stdout, terminal_out, out_log)),  # type: ignore[arg-type]
                asyncio.create_task(_pump(process.stderr, terminal_err, err_log)),  # type: ignore[arg-type]
            ]
            returncode: int | None = None
            try:
                with self._relay_signals(process):
                    await asyncio.gather(*pumps)
                    returncode = await process.wait()
            finally:
                if returncode is None:
                    await self._abandon(process, pumps)
                    self._save(
                        record.model_copy(
                            update={
                                "status": ProcessStatus.FAILED,
                                "exit_code": SENTINEL_EXIT_CODE,
                                "ended_at": self._clock(),
                            }
                        )
                    )
                    logger.warning("Command aborted", extra={"process_id": process_id, "pid": process.pid})

        # Negative return codes mean the child died from a signal.
        exit_code = returncode if returncode >= 0 else SENTINEL_EXIT_CODE
        final = record.model_copy(
            update={
                "status": ProcessStatus.COMPLETED if exit_code == 0 else ProcessStatus.FAILED,
                "exit_code": exit_code,
                "ended_at": self._clock(),
            }
        )
        self._save(final)
        logger.info("Command finished", extra={"process_id": process_id, "exit_code": exit_code})
        return RunResult(record=final)

    def _save(self, record: ProcessRecord) -> None:
        try:
            self._store.put(record)
        except RegistryError as exc:
            logger.warning(
                "Failed to save process metadata",
                extra={"process_id": record.id, "error": str(exc)},
            )

    @staticmethod
    async def _abandon(process: asyncio.subprocess.Process, pumps: list[asyncio.Task]) -> None:
        """Stop the tee tasks, then kill and reap the child."""

        for task in pumps:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        await process.wait()

    @contextlib.contextmanager
    def _relay_signals(self, process: asyncio.subprocess.Process) -> Iterator[None]:
        """Forward SIGINT/SIGTERM received by the runner to the child as SIGINT."""

        installed: list[int] = []
        if self._forward_signals:
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(signum, self._interrupt, process)
                except (NotImplementedError, RuntimeError, ValueError):
                    continue
                installed.append(signum)
        try:
            yield
        finally:
            loop = asyncio.get_running_loop()
            for signum in installed:
                loop.remove_signal_handler(signum)

    @staticmethod
    def _interrupt(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(signal.SIGINT)


__all__ = ["CommandNotFoundError", "CommandRunner", "RunResult", "RunnerError"]
