"""Project root and data directory discovery."""

from __future__ import annotations

from pathlib import Path

from .errors import NotFoundError, RegistryIOError

DEFAULT_DATA_DIR_NAME = ".dkit"
DEFAULT_PROJECT_MARKER = ".git"


def _walk_up(start: Path | None, marker: str, *, require_dir: bool) -> Path | None:
    current = Path(start) if start is not None else Path.cwd()
    current = current.expanduser().resolve()
    for candidate in (current, *current.parents):
        target = candidate / marker
        if target.is_dir() if require_dir else target.exists():
            return candidate
    return None


def find_project_root(start: Path | None = None, *, marker: str = DEFAULT_PROJECT_MARKER) -> Path:
    """Return the closest ancestor of ``start`` containing ``marker`` (a file or directory)."""

    root = _walk_up(start, marker, require_dir=False)
    if root is None:
        raise NotFoundError(f"project root ({marker}) not found above {start or Path.cwd()}")
    return root


def find_data_dir(start: Path | None = None, *, dir_name: str = DEFAULT_DATA_DIR_NAME) -> Path:
    """Return the closest existing ``dir_name`` directory walking up from ``start``."""

    root = _walk_up(start, dir_name, require_dir=True)
    if root is None:
        raise NotFoundError(f"data directory ({dir_name}) not found in project")
    return root / dir_name


def resolve_project_root(start: Path | None = None, *, marker: str = DEFAULT_PROJECT_MARKER) -> Path:
    """Project root when inside one, otherwise ``start`` (or the working directory) itself."""

    try:
        return find_project_root(start, marker=marker)
    except NotFoundError:
        return (Path(start) if start is not None else Path.cwd()).expanduser().resolve()


def ensure_data_dir(project_root: Path, *, dir_name: str = DEFAULT_DATA_DIR_NAME) -> Path:
    """Create ``<project_root>/<dir_name>`` if needed and return it."""

    data_dir = Path(project_root) / dir_name
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RegistryIOError(f"failed to create data directory {data_dir}: {exc}") from exc
    return data_dir


__all__ = [
    "DEFAULT_DATA_DIR_NAME",
    "DEFAULT_PROJECT_MARKER",
    "ensure_data_dir",
    "find_data_dir",
    "find_project_root",
    "resolve_project_root",
]
