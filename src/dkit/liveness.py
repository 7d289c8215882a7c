"""OS process liveness probes and stale-status reconciliation."""

from __future__ import annotations

import logging
import os
import signal
from datetime import datetime
from typing import Protocol

import psutil

from .errors import InvalidArgumentError, InvalidStateError, RegistryError
from .storage.models import SENTINEL_EXIT_CODE, ProcessRecord, ProcessStatus

logger = logging.getLogger(__name__)

SIGNALS: dict[str, int] = {
    "SIGTERM": signal.SIGTERM,
    "SIGKILL": getattr(signal, "SIGKILL", signal.SIGTERM),
}


class LivenessProbe(Protocol):
    """Answers whether a pid currently refers to a live process."""

    def is_alive(self, pid: int) -> bool:
        ...


class SignalProbe:
    """POSIX probe: delivers signal 0 to the pid."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to another user.
            return True
        except OSError:
            return False
        return True


class PsutilProbe:
    """Portable probe backed by psutil; any probe error counts as not running."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            if not psutil.pid_exists(pid):
                return False
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.Error, OSError):
            return False


def default_probe() -> LivenessProbe:
    """Pick the probe for the running platform."""

    if os.name == "posix":
        return SignalProbe()
    return PsutilProbe()


def reconcile(record: ProcessRecord, probe: LivenessProbe, *, now: datetime | None = None) -> ProcessRecord:
    """Return ``record`` corrected for a dead pid.

    Only ``running`` records whose pid is gone change: they become ``failed``
    with the sentinel exit code (kept if one is already set). ``ended_at`` is
    stamped only when ``now`` is given. The input is never mutated.
    """

    if not record.is_running or probe.is_alive(record.pid):
        return record

    update: dict[str, object] = {"status": ProcessStatus.FAILED}
    if record.exit_code is None:
        update["exit_code"] = SENTINEL_EXIT_CODE
    if now is not None:
        update["ended_at"] = now
    logger.debug("Reconciled stale running record", extra={"process_id": record.id, "pid": record.pid})
    return record.model_copy(update=update)


def send_signal(pid: int, name: str) -> None:
    """Deliver ``SIGTERM`` or ``SIGKILL`` (by name) to ``pid`` without waiting."""

    try:
        signum = SIGNALS[name]
    except KeyError as exc:
        raise InvalidArgumentError(f"unknown signal: {name}") from exc
    try:
        os.kill(pid, signum)
    except ProcessLookupError as exc:
        raise InvalidStateError("process is no longer running") from exc
    except OSError as exc:
        raise RegistryError(f"failed to send signal: {exc}") from exc


__all__ = [
    "LivenessProbe",
    "PsutilProbe",
    "SIGNALS",
    "SignalProbe",
    "default_probe",
    "reconcile",
    "send_signal",
]
