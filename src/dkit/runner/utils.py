"""Environment helpers for the command runner."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping


def build_environment(
    project_root: Path | None,
    *,
    add_local_bin: bool = True,
    additional: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the child environment, with ``<project_root>/bin`` first on PATH when present."""

    env = dict(os.environ)
    if add_local_bin and project_root is not None:
        bin_dir = Path(project_root) / "bin"
        if bin_dir.is_dir():
            current = env.get("PATH", "")
            env["PATH"] = str(bin_dir) + (os.pathsep + current if current else "")
    if additional:
        env.update(additional)
    return env
